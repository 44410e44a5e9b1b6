from agency_portal.services.onboarding_steps import (
    StepContext,
    StepKind,
    StepSubmission,
    STEP_HANDLERS,
    config_status,
    document_view,
    handler_for,
    is_incomplete_document_url,
)
from agency_portal.services.contract_composer import build_default_contract_html
from tests.test_utils.decorators import use_app_context
from tests.test_utils.test_utils import (
    test_app,
    basic_flow,
    basic_node,
    basic_org,
    basic_user,
)

STORAGE_URL = "https://project.supabase.co/storage/v1/object/public/onboarding-documents/12/34/"
BARE_UUID = "3f2b8c4e-1a2b-4c3d-8e9f-0a1b2c3d4e5f"


def test_every_step_kind_has_a_handler():
    assert set(STEP_HANDLERS) == set(StepKind)
    assert handler_for("payment") is handler_for("consent")
    assert handler_for("terms") is STEP_HANDLERS[StepKind.TERMS]


def test_incomplete_document_url_heuristic():
    assert is_incomplete_document_url(STORAGE_URL + BARE_UUID)
    assert is_incomplete_document_url(STORAGE_URL + BARE_UUID.upper())
    assert not is_incomplete_document_url(STORAGE_URL + BARE_UUID + ".pdf")
    assert not is_incomplete_document_url(STORAGE_URL + "1700000000000_scope.pdf")
    assert not is_incomplete_document_url("https://example.com/files/welcome")
    assert not is_incomplete_document_url("data:application/pdf;base64,JVBERi0xLjQ=")
    assert not is_incomplete_document_url(None)
    assert not is_incomplete_document_url("")


def test_document_view_states():
    assert document_view({}).state == "none"
    assert document_view(None).state == "none"
    assert document_view({"document_file": {"url": STORAGE_URL + BARE_UUID}}).state == "unavailable"
    assert document_view({"document_file": {"url": STORAGE_URL + "scope.pdf"}}).state == "pdf"
    assert document_view({"document_file": {"url": STORAGE_URL + "logo.png"}}).state == "image"
    assert document_view({"document_file": {"data": "data:image/png;base64,AAAA"}}).state == "image"
    assert document_view({"document_file": {"url": "https://example.com/brief", "type": "application/pdf"}}).state == "pdf"
    assert document_view({"document_file": {"url": "https://example.com/brief.docx"}}).state == "file"


def test_submission_from_json_only_accepts_true():
    submission = StepSubmission.from_json({"termsAccepted": "yes", "privacyAccepted": True, "metadata": "x"})
    assert submission.terms_accepted is False
    assert submission.privacy_accepted is True
    assert submission.metadata is None


@use_app_context
def test_config_status_reports_missing_fields():
    org = basic_org()
    flow = basic_flow(org, published=False)

    welcome = basic_node(flow, type="welcome")
    status = config_status(welcome)
    assert status == {
        "is_complete": False,
        "missing_fields": ["Welcome content"],
        "message": "Missing: Welcome content",
    }

    welcome.config = {"html_content": "<p>Hello</p>"}
    assert config_status(welcome)["is_complete"]
    assert config_status(welcome)["message"] == "Complete"

    terms = basic_node(flow, type="terms", title="", config={"terms_url": "https://agency.com/terms"})
    assert config_status(terms)["missing_fields"] == ["Title", "Privacy URL", "Checkbox text"]

    invoice = basic_node(flow, type="invoice", config={"stripe_url": "https://pay.stripe.com/x"})
    assert config_status(invoice)["missing_fields"] == ["Amount label"]

    unknown = basic_node(flow, type="payment")
    assert "Unknown node type" in config_status(unknown)["missing_fields"]


@use_app_context
def test_contract_config_flags_untouched_default():
    org = basic_org(name="Acme Marketing")
    flow = basic_flow(org, published=False)

    empty = basic_node(flow, type="contract")
    assert config_status(empty)["missing_fields"] == ["Contract content"]

    default = basic_node(flow, type="contract", config={"html_content": build_default_contract_html(org.name)})
    assert config_status(default)["missing_fields"] == ["Customize contract content"]

    custom = basic_node(flow, type="contract", config={"html_content": "<p>Our agreement</p>"})
    assert config_status(custom)["is_complete"]


@use_app_context
def test_unpaid_invoice_view_renders_invoice():
    org = basic_org(name="Acme Marketing")
    user = basic_user()
    flow = basic_flow(org)
    node = basic_node(flow, type="invoice", title="First invoice", config={
        "stripe_url": "https://pay.stripe.com/abc",
        "amount_label": "$1,500.00",
    })

    view = handler_for(node.type).view(node, StepContext(org=org, user=user, member_email=user.email))
    assert not view.can_complete
    assert view.details["paid"] is False
    assert view.details["invoice_number"].startswith("INV-")
    assert view.details["invoice_number"].endswith(f"{node.id:05d}")
    assert "https://pay.stripe.com/abc" in view.html
    assert user.email in view.html
    assert "template" not in view.to_dict()

    node.config = dict(node.config, payment_status="confirmed", invoice_number="INV-7")
    paid_view = handler_for(node.type).view(node, StepContext(org=org, user=user))
    assert paid_view.can_complete
    assert paid_view.html is None
    assert paid_view.details["invoice_number"] == "INV-7"


@use_app_context
def test_completed_step_view_cannot_complete_again():
    org = basic_org()
    user = basic_user()
    flow = basic_flow(org)
    node = basic_node(flow, type="welcome", config={"html_content": "<p>Hi</p>"})

    view = handler_for(node.type).view(node, StepContext(org=org, user=user, completed=True))
    assert view.completed
    assert not view.can_complete
    assert view.html == "<p>Hi</p>"
    assert view.document.state == "none"


@use_app_context
def test_unknown_step_view_is_placeholder():
    org = basic_org()
    user = basic_user()
    flow = basic_flow(org)
    node = basic_node(flow, type="questionnaire")

    view = handler_for(node.type).view(node, StepContext(org=org, user=user))
    assert view.can_complete
    assert "not yet implemented" in view.html
