import mock
import pytest
from sqlalchemy.exc import IntegrityError

from agency_portal.errors import Conflict, StorageError, ValidationError
from agency_portal.models import db, ContractSignature, OnboardingProgress
from agency_portal.services.contract_composer import contract_hash
from agency_portal.services.contract_service import sign_contract
from agency_portal.services.progress_service import is_onboarding_complete, next_step
from tests.test_utils.decorators import use_app_context
from tests.test_utils.test_utils import (
    test_app,
    basic_admin,
    basic_flow,
    basic_member,
    basic_node,
    basic_org,
    basic_user,
    SIGNATURE_DATA_URL,
)

CONTRACT_HTML = (
    "<p>Agreement with [Client Name]</p>"
    '<p><span id="client-signature"></span> <span id="client-name"></span> '
    '<span id="client-date"></span></p>'
)


def _contract_setup():
    org = basic_org(name="Acme Marketing")
    basic_admin(org)
    user = basic_user(email="jordan@client.com")
    basic_member(org, user)
    flow = basic_flow(org)
    node = basic_node(flow, type="contract", title="Agreement", config={"html_content": CONTRACT_HTML})
    return org, user, node


def _sign(org, user, node, **kwargs):
    params = dict(
        signed_name="Jordan Client",
        signature_data_url=SIGNATURE_DATA_URL,
        terms_accepted=True,
        privacy_accepted=True,
        ip="10.0.0.1",
        user_agent="pytest",
    )
    params.update(kwargs)
    return sign_contract(org, user, node.id, **params)


@use_app_context
def test_sign_contract_stores_signature_and_completes_step():
    org, user, node = _contract_setup()

    signature = _sign(org, user, node, contract_sha256=contract_hash(CONTRACT_HTML))

    assert signature.id is not None
    assert signature.signed_name == "Jordan Client"
    assert signature.contract_sha256 == contract_hash(CONTRACT_HTML)
    # No Supabase in tests, so the image is kept inline
    assert signature.signature_image_url.startswith("data:image/png;base64,")
    assert "jordan@client.com" in signature.contract_html
    assert '<span id="client-name"></span>' not in signature.contract_html
    assert signature.terms_version == "v1.0"

    progress = OnboardingProgress.query.filter_by(node_id=node.id, user_id=user.id).one()
    assert progress.status == "completed"
    assert progress.meta == {"signature_id": signature.id}
    assert next_step(org.id, user.id) is None
    assert is_onboarding_complete(org.id, user.id)


@use_app_context
def test_signing_twice_returns_existing_signature():
    org, user, node = _contract_setup()
    first = _sign(org, user, node)
    second = _sign(org, user, node, signed_name="Someone Else")

    assert second.id == first.id
    assert ContractSignature.query.count() == 1
    assert OnboardingProgress.query.count() == 1


@use_app_context
def test_stale_contract_hash_is_rejected():
    org, user, node = _contract_setup()

    with pytest.raises(Conflict):
        _sign(org, user, node, contract_sha256="0" * 64)
    assert ContractSignature.query.count() == 0
    assert OnboardingProgress.query.count() == 0


@use_app_context
def test_signing_requires_acceptances():
    org, user, node = _contract_setup()

    with pytest.raises(ValidationError):
        _sign(org, user, node, privacy_accepted=False)
    with pytest.raises(ValidationError):
        _sign(org, user, node, signed_name="")
    assert ContractSignature.query.count() == 0


@use_app_context
def test_signing_a_non_contract_step_fails():
    org, user, node = _contract_setup()
    welcome = basic_node(node.flow, type="welcome", order_index=0)

    with pytest.raises(ValidationError):
        _sign(org, user, welcome)


@use_app_context
@mock.patch("agency_portal.services.contract_service.StorageService.upload")
def test_failed_upload_writes_nothing(upload_mock):
    upload_mock.side_effect = StorageError("Failed to upload file: bucket missing")
    org, user, node = _contract_setup()

    with pytest.raises(StorageError):
        _sign(org, user, node)
    assert ContractSignature.query.count() == 0
    assert OnboardingProgress.query.count() == 0


def _stored_signature(org, user, node, signed_name="Jordan Client"):
    signature = ContractSignature(
        org_id=org.id,
        node_id=node.id,
        user_id=user.id,
        signed_name=signed_name,
        signature_image_url=SIGNATURE_DATA_URL,
        contract_sha256=contract_hash(CONTRACT_HTML),
    )
    db.session.add(signature)
    db.session.commit()
    return signature


@use_app_context
def test_one_signature_per_node_and_user():
    org, user, node = _contract_setup()
    _stored_signature(org, user, node)

    with pytest.raises(IntegrityError):
        _stored_signature(org, user, node, signed_name="Second Try")
    db.session.rollback()
    assert ContractSignature.query.filter_by(node_id=node.id, user_id=user.id).count() == 1


@use_app_context
def test_concurrent_submit_keeps_first_signature():
    org, user, node = _contract_setup()
    winner = _stored_signature(org, user, node)
    winner_id = winner.id

    # Both submits passed the existence check before either committed
    with mock.patch(
        "agency_portal.services.contract_service.get_signature",
        side_effect=[None, winner],
    ):
        signature = _sign(org, user, node, signed_name="Jordan C.")

    assert signature.id == winner_id
    assert ContractSignature.query.count() == 1
    progress = OnboardingProgress.query.filter_by(node_id=node.id, user_id=user.id).one()
    assert progress.status == "completed"
    assert progress.meta == {"signature_id": winner_id}
