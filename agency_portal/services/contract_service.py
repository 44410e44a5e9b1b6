import base64
import logging
import re

from flask import current_app
from sqlalchemy.exc import IntegrityError

from agency_portal.errors import Conflict, ValidationError
from agency_portal.models import db, get_now, ContractSignature, FLOW_STATUS_PUBLISHED
from agency_portal.services import contract_composer
from agency_portal.services.progress_service import (
    ensure_current_step, get_node_for_org, get_signature, invoice_emails, record_completion,
)
from agency_portal.services.supabase_service import StorageService
from agency_portal.utils import format_long_date

logger = logging.getLogger(__name__)

DATA_URL_PREFIX_RE = re.compile(r'^data:image/[\w.+-]+;base64,')


def decode_signature_image(signature_data_url):
    try:
        return base64.b64decode(DATA_URL_PREFIX_RE.sub('', signature_data_url), validate=False)
    except (ValueError, TypeError):
        raise ValidationError("Signature image could not be decoded")


def sign_contract(org, user, node_id, signed_name, signature_data_url,
                  terms_accepted, privacy_accepted, contract_sha256=None,
                  terms_version=None, privacy_version=None, ip=None, user_agent=None):
    """
    Stores a signature for a contract step and completes the step.

    The signature image is uploaded before anything is written to the
    database, so a failed upload leaves no signature row behind. A step that
    was already signed returns its existing signature.
    """
    node = get_node_for_org(org.id, node_id)
    if node.type != 'contract':
        raise ValidationError("This step is not a contract")

    existing = get_signature(node.id, user.id)
    if existing is not None:
        logger.info("Node %s already signed by user %s, returning existing signature", node.id, user.id)
        record_completion(org.id, node.id, user.id, {'signature_id': existing.id})
        return existing

    contract_composer.validate_signing(signed_name, signature_data_url, terms_accepted, privacy_accepted)
    if node.flow is None or node.flow.status != FLOW_STATUS_PUBLISHED:
        raise Conflict("This onboarding flow is not published.")
    ensure_current_step(org.id, user.id, node)

    emails = invoice_emails(org.id, user)
    template_html = contract_composer.contract_template_for(node, org.name, emails['admin_email'])
    template_hash = contract_composer.contract_hash(template_html)
    if contract_sha256 and contract_sha256 != template_hash:
        raise Conflict("The contract has changed since it was displayed. Please review it again.")

    signed_html = contract_composer.compose_contract(
        template_html,
        signer_name=signed_name.strip(),
        signature_data_url=signature_data_url,
        signing_date=format_long_date(),
        client_email=emails['member_email'],
    )

    image_bytes = decode_signature_image(signature_data_url)
    timestamp = int(get_now().timestamp() * 1000)
    path = f"signatures/{org.id}/{user.id}/{timestamp}.png"
    image_url = StorageService.upload(current_app.config['SIGNATURE_BUCKET'], path, image_bytes, 'image/png')

    config = node.config or {}
    signature = ContractSignature(
        org_id=org.id,
        node_id=node.id,
        user_id=user.id,
        signed_name=signed_name.strip(),
        signature_image_url=image_url,
        contract_sha256=template_hash,
        contract_html=signed_html,
        terms_version=terms_version or config.get('terms_url') or 'v1.0',
        privacy_version=privacy_version or config.get('privacy_url') or 'v1.0',
        ip=ip,
        user_agent=(user_agent or '')[:500] or None,
    )
    db.session.add(signature)
    try:
        db.session.commit()
        logger.info("Contract node %s signed by user %s (signature %s)", node.id, user.id, signature.id)
    except IntegrityError:
        # A concurrent submit stored the signature first
        db.session.rollback()
        signature = get_signature(node.id, user.id)
        if signature is None:
            raise
        logger.info("Node %s was signed concurrently by user %s, keeping signature %s", node.id, user.id, signature.id)

    record_completion(org.id, node.id, user.id, {'signature_id': signature.id})
    return signature
