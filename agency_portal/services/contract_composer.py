import hashlib
import re

from flask import current_app, render_template
from markupsafe import escape

from agency_portal.errors import ValidationError
from agency_portal.utils import format_long_date

CLIENT_NAME_PLACEHOLDER = '[Client Name]'
SIGNATURE_ANCHOR = '<span id="client-signature"></span>'
NAME_ANCHOR = '<span id="client-name"></span>'
DATE_ANCHOR_RE = re.compile(r'<span id="client-date">.*?</span>', re.DOTALL)
SIGNATURE_IMG = (
    '<img src="{src}" style="max-width: 200px; max-height: 60px; '
    'display: inline-block; vertical-align: middle;" alt="Signature" />'
)
DATA_URL_RE = re.compile(r'^data:image/[\w.+-]+;base64,[A-Za-z0-9+/=\s]+$')

# Phrases that only appear in the untouched default agreement
DEFAULT_TEMPLATE_MARKERS = (
    'Service Provider',
    'This Service Agreement',
    'as outlined in the Scope of Services document',
    'Payment terms and amounts will be as specified',
)


def build_default_contract_html(provider_name=None, admin_email=None):
    provider_name = provider_name or current_app.config.get('DEFAULT_PROVIDER_NAME', 'Service Provider')
    return render_template(
        'contracts/default_contract.html',
        provider_name=provider_name,
        admin_email=admin_email,
    )


def is_default_contract(html):
    content = (html or '').strip()
    return all(marker in content for marker in DEFAULT_TEMPLATE_MARKERS)


def contract_template_for(node, provider_name=None, admin_email=None):
    """Custom HTML from the node config, or the generated default agreement."""
    config = node.config or {}
    html = (config.get('html_content') or '').strip()
    if html:
        return html
    return build_default_contract_html(provider_name, admin_email)


def contract_hash(template_html):
    return hashlib.sha256(template_html.encode('utf-8')).hexdigest()


def is_signature_data_url(value):
    return bool(value) and bool(DATA_URL_RE.match(value))


def compose_contract(template_html, signer_name=None, signature_data_url=None,
                     signing_date=None, client_email=None):
    """
    Merges the signer's details into the contract HTML.

    Every substitution is a plain replacement, so composing the output again
    with the same inputs returns it unchanged.
    """
    html = template_html
    display_name = client_email or signer_name
    if display_name:
        html = html.replace(CLIENT_NAME_PLACEHOLDER, str(escape(display_name)))

    if signature_data_url:
        if not is_signature_data_url(signature_data_url):
            raise ValidationError("Signature must be an image data URL")
        html = html.replace(SIGNATURE_ANCHOR, SIGNATURE_IMG.format(src=signature_data_url))

    if signer_name:
        html = html.replace(NAME_ANCHOR, str(escape(signer_name)))

    date_text = signing_date or format_long_date()
    date_span = f'<span id="client-date">{escape(date_text)}</span>'
    html = DATE_ANCHOR_RE.sub(lambda match: date_span, html)
    return html


def validate_signing(signed_name, signature_data_url, terms_accepted, privacy_accepted):
    if not (signed_name or '').strip():
        raise ValidationError("Please enter your full legal name.")
    if not (signature_data_url or '').strip():
        raise ValidationError("Please draw your signature before signing.")
    if not is_signature_data_url(signature_data_url):
        raise ValidationError("Signature must be an image data URL")
    if not (terms_accepted and privacy_accepted):
        raise ValidationError("Please accept the Terms of Service and Privacy Policy to sign.")
