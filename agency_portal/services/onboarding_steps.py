"""
Per-type behaviour of onboarding steps.

Each node type has one handler class that knows how to build its view, what a
completion request must contain, which metadata to record and which config
fields the flow builder still needs. `handler_for` is the single dispatch
point; unknown types fall back to a placeholder that never blocks traversal.
"""
import os
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from flask import render_template

from agency_portal.errors import ValidationError
from agency_portal.models import get_now
from agency_portal.services import contract_composer


class StepKind(str, Enum):
    WELCOME = 'welcome'
    SCOPE = 'scope'
    CONTRACT = 'contract'
    INVOICE = 'invoice'
    TERMS = 'terms'


UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
DOCUMENT_EXTENSIONS = {'.pdf', '.png', '.jpg', '.jpeg', '.gif', '.webp'}
IMAGE_TYPES = {'image/png', 'image/jpeg', 'image/jpg', 'image/gif', 'image/webp'}
PAID_STATUSES = ('paid', 'confirmed')


def is_incomplete_document_url(url):
    """
    Heuristic: storage URLs that end in a bare UUID without an extension were
    truncated on upload and will not resolve.
    """
    if not url or url.startswith('data:'):
        return False
    last_segment = urlparse(url).path.rstrip('/').rsplit('/', 1)[-1]
    _, extension = os.path.splitext(last_segment)
    if extension.lower() in DOCUMENT_EXTENSIONS:
        return False
    return bool(UUID_RE.match(last_segment))


@dataclass
class DocumentView:
    state: str  # pdf | image | file | none | unavailable
    url: Optional[str] = None
    name: Optional[str] = None
    content_type: Optional[str] = None


def document_view(config):
    document = (config or {}).get('document_file') or {}
    url = document.get('url') or document.get('data')
    name = document.get('name') or document.get('filename')
    content_type = (document.get('type') or '').lower()

    if not url:
        return DocumentView(state='none')
    if is_incomplete_document_url(url):
        return DocumentView(state='unavailable', url=url, name=name, content_type=content_type)

    lowered = urlparse(url).path.lower() if not url.startswith('data:') else url[:40].lower()
    if content_type == 'application/pdf' or lowered.endswith('.pdf') or lowered.startswith('data:application/pdf'):
        state = 'pdf'
    elif content_type in IMAGE_TYPES or lowered.startswith('data:image/') or \
            os.path.splitext(lowered)[1] in DOCUMENT_EXTENSIONS - {'.pdf'}:
        state = 'image'
    else:
        state = 'file'
    return DocumentView(state=state, url=url, name=name, content_type=content_type or None)


@dataclass
class StepContext:
    """Everything about the viewer a step needs besides the node itself."""
    org: object
    user: object
    completed: bool = False
    member_email: Optional[str] = None
    admin_email: Optional[str] = None
    signature: object = None


@dataclass
class StepSubmission:
    terms_accepted: bool = False
    privacy_accepted: bool = False
    metadata: Optional[dict] = None

    @classmethod
    def from_json(cls, data):
        data = data or {}
        metadata = data.get('metadata')
        return cls(
            terms_accepted=data.get('termsAccepted') is True,
            privacy_accepted=data.get('privacyAccepted') is True,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


@dataclass
class StepView:
    node_id: int
    kind: str
    title: str
    description: Optional[str]
    template: str
    completed: bool
    can_complete: bool
    blocked_reason: Optional[str] = None
    html: Optional[str] = None
    document: Optional[DocumentView] = None
    details: dict = field(default_factory=dict)

    def to_dict(self):
        data = asdict(self)
        data.pop('template')
        return data


class StepHandler:
    kind = None
    template = 'onboarding/step_unsupported.html'
    required_config = ()

    def view(self, node, ctx):
        return self._base_view(node, ctx, can_complete=True)

    def _base_view(self, node, ctx, can_complete, **kwargs):
        return StepView(
            node_id=node.id,
            kind=node.type,
            title=node.title,
            description=node.description,
            template=self.template,
            completed=ctx.completed,
            can_complete=can_complete and not ctx.completed,
            **kwargs
        )

    def check_completion(self, node, submission, ctx):
        """Raises ValidationError when the step cannot be completed yet."""

    def completion_metadata(self, node, submission):
        return submission.metadata

    def missing_config(self, node):
        config = node.config or {}
        missing = []
        if not (node.title or '').strip():
            missing.append('Title')
        for key, label in self.required_config:
            if not str(config.get(key) or '').strip():
                missing.append(label)
        return missing


class DocumentStep(StepHandler):
    template = 'onboarding/step_document.html'

    def view(self, node, ctx):
        config = node.config or {}
        return self._base_view(
            node, ctx,
            can_complete=True,
            html=config.get('html_content'),
            document=document_view(config),
        )


class WelcomeStep(DocumentStep):
    kind = StepKind.WELCOME
    required_config = (('html_content', 'Welcome content'),)


class ScopeStep(DocumentStep):
    kind = StepKind.SCOPE
    required_config = (('html_content', 'Scope content'),)


class TermsStep(StepHandler):
    kind = StepKind.TERMS
    template = 'onboarding/step_terms.html'
    required_config = (
        ('terms_url', 'Terms URL'),
        ('privacy_url', 'Privacy URL'),
        ('checkbox_text', 'Checkbox text'),
    )

    def view(self, node, ctx):
        config = node.config or {}
        return self._base_view(
            node, ctx,
            can_complete=True,
            document=document_view(config),
            details={
                'terms_url': config.get('terms_url'),
                'privacy_url': config.get('privacy_url'),
                'checkbox_text': config.get('checkbox_text') or 'I agree to the Terms of Service and Privacy Policy',
            },
        )

    def check_completion(self, node, submission, ctx):
        if not (submission.terms_accepted and submission.privacy_accepted):
            raise ValidationError("Please accept both the Terms of Service and Privacy Policy to continue.")

    def completion_metadata(self, node, submission):
        config = node.config or {}
        return {
            'terms_version': config.get('terms_url') or 'v1.0',
            'privacy_version': config.get('privacy_url') or 'v1.0',
            'accepted_at': get_now().isoformat(),
        }


class InvoiceStep(StepHandler):
    kind = StepKind.INVOICE
    template = 'onboarding/step_invoice.html'
    required_config = (
        ('stripe_url', 'Stripe payment URL'),
        ('amount_label', 'Amount label'),
    )

    @staticmethod
    def is_paid(node):
        return ((node.config or {}).get('payment_status') or '').lower() in PAID_STATUSES

    @staticmethod
    def invoice_number(node):
        config = node.config or {}
        if config.get('invoice_number'):
            return config['invoice_number']
        issued = node.created_at or get_now()
        return f"INV-{issued.year}-{node.id:05d}"

    def view(self, node, ctx):
        config = node.config or {}
        paid = self.is_paid(node)
        details = {
            'paid': paid,
            'stripe_url': config.get('stripe_url'),
            'amount_label': config.get('amount_label'),
            'invoice_number': self.invoice_number(node),
            'admin_email': ctx.admin_email,
            'member_email': ctx.member_email,
        }
        html = None
        if not paid:
            html = render_template(
                'invoices/invoice.html',
                org_name=ctx.org.name,
                node=node,
                **details
            )
        return self._base_view(
            node, ctx,
            can_complete=paid,
            blocked_reason=None if paid else "Payment has not been confirmed yet.",
            html=html,
            details=details,
        )

    def check_completion(self, node, submission, ctx):
        if not self.is_paid(node):
            raise ValidationError("This invoice has not been paid yet.")


class ContractStep(StepHandler):
    kind = StepKind.CONTRACT
    template = 'onboarding/step_contract.html'

    def view(self, node, ctx):
        config = node.config or {}
        template_html = contract_composer.contract_template_for(node, ctx.org.name, ctx.admin_email)
        if ctx.signature is not None and ctx.signature.contract_html:
            html = ctx.signature.contract_html
        else:
            html = contract_composer.compose_contract(template_html, client_email=ctx.member_email)
        return self._base_view(
            node, ctx,
            # Signing goes through the contract endpoint
            can_complete=False,
            blocked_reason=None if ctx.signature else "Sign the agreement to continue.",
            html=html,
            document=document_view(config),
            details={
                'contract_sha256': contract_composer.contract_hash(template_html),
                'signature_required': config.get('signature_required', True),
                'signed': ctx.signature is not None,
                'signed_at': ctx.signature.signed_at.isoformat() if ctx.signature else None,
            },
        )

    def check_completion(self, node, submission, ctx):
        if ctx.signature is None:
            raise ValidationError("Please sign the contract to continue.")

    def missing_config(self, node):
        missing = [] if (node.title or '').strip() else ['Title']
        content = ((node.config or {}).get('html_content') or '').strip()
        if not content:
            missing.append('Contract content')
        elif contract_composer.is_default_contract(content):
            missing.append('Customize contract content')
        return missing


class UnsupportedStep(StepHandler):
    """Placeholder for node types this service does not render."""

    def view(self, node, ctx):
        return self._base_view(
            node, ctx,
            can_complete=True,
            html='<p>This step type is not yet implemented.</p>',
        )

    def missing_config(self, node):
        missing = super().missing_config(node)
        missing.append('Unknown node type')
        return missing


STEP_HANDLERS = {
    StepKind.WELCOME: WelcomeStep(),
    StepKind.SCOPE: ScopeStep(),
    StepKind.CONTRACT: ContractStep(),
    StepKind.INVOICE: InvoiceStep(),
    StepKind.TERMS: TermsStep(),
}

_missing_handlers = set(StepKind) - set(STEP_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"No step handler registered for: {sorted(k.value for k in _missing_handlers)}")

UNSUPPORTED_STEP = UnsupportedStep()


def handler_for(node_type):
    try:
        return STEP_HANDLERS[StepKind(node_type)]
    except ValueError:
        return UNSUPPORTED_STEP


def is_known_type(node_type):
    return node_type in {kind.value for kind in StepKind}


def config_status(node):
    missing = handler_for(node.type).missing_config(node)
    return {
        'is_complete': not missing,
        'missing_fields': missing,
        'message': 'Complete' if not missing else f"Missing: {', '.join(missing)}",
    }
