from flask import Blueprint, current_app, render_template, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from agency_portal.auth import admin_required, org_member_required, viewer_is_admin
from agency_portal.errors import NotFound, ValidationError
from agency_portal.models import db, FLOW_STATUS_PUBLISHED
from agency_portal.services import contract_service, flow_service, progress_service
from agency_portal.services.onboarding_steps import StepSubmission, handler_for
from agency_portal.utils import api_response, as_bool

onboarding_bp = Blueprint('onboarding', __name__)

STEP_FAILED_MESSAGE = "Failed to complete step. Please try again."


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return data


# --- FLOW ---

@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/flow', methods=['GET'])
@org_member_required
def get_flow(org):
    include_draft = as_bool(request.args.get('draft')) and viewer_is_admin()
    flow = flow_service.get_flow(org.id, include_draft=include_draft)
    if flow is None:
        return api_response(data=None)
    return api_response(data=flow_service.flow_payload(flow))


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/flow', methods=['POST'])
@org_member_required
@admin_required
def flow_action(org):
    data = _json_body()
    action = data.get('action')
    if action == 'init':
        flow = flow_service.initialize_default_flow(org, data.get('name'))
        return api_response(data=flow_service.flow_payload(flow), status=201)
    if action == 'publish':
        flow = flow_service.publish_flow(org.id, data.get('flowId'))
        return api_response(data=flow_service.flow_payload(flow))
    raise ValidationError("Invalid action. Must be init or publish")


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/flow', methods=['PUT'])
@org_member_required
@admin_required
def rename_flow(org):
    data = _json_body()
    flow = flow_service.rename_flow(org.id, data.get('flowId'), data.get('name'))
    return api_response(data=flow.to_dict(include_graph=False))


# --- NODES & EDGES ---

@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/nodes', methods=['POST'])
@org_member_required
@admin_required
def create_node(org):
    data = _json_body()
    node = flow_service.create_node(org.id, {
        'flow_id': data.get('flowId'),
        'type': data.get('type'),
        'title': data.get('title'),
        'description': data.get('description'),
        'required': data.get('required', True),
        'config': data.get('config'),
        'position': data.get('position'),
        'order_index': data.get('orderIndex'),
    })
    return api_response(data=node.to_dict(), status=201)


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/nodes/<int:node_id>', methods=['PUT'])
@org_member_required
@admin_required
def update_node(org, node_id):
    data = _json_body()
    if 'orderIndex' in data:
        data['order_index'] = data.pop('orderIndex')
    node = flow_service.update_node(org.id, node_id, data)
    return api_response(data=node.to_dict())


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/nodes/<int:node_id>', methods=['DELETE'])
@org_member_required
@admin_required
def delete_node(org, node_id):
    flow_service.delete_node(org.id, node_id)
    return api_response(data={'deleted': node_id})


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/nodes/reorder', methods=['POST'])
@org_member_required
@admin_required
def reorder_nodes(org):
    data = _json_body()
    flow = flow_service.reorder_nodes(org.id, data.get('flowId'), data.get('nodeIds') or [])
    return api_response(data=flow_service.flow_payload(flow))


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/edges', methods=['POST'])
@org_member_required
@admin_required
def create_edge(org):
    data = _json_body()
    edge = flow_service.create_edge(
        org.id, data.get('flowId'), data.get('sourceNodeId'), data.get('targetNodeId'), data.get('condition')
    )
    return api_response(data=edge.to_dict(), status=201)


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/edges/<int:edge_id>', methods=['DELETE'])
@org_member_required
@admin_required
def delete_edge(org, edge_id):
    flow_service.delete_edge(org.id, edge_id)
    return api_response(data={'deleted': edge_id})


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/upload-document', methods=['POST'])
@org_member_required
@admin_required
def upload_document(org):
    node_id = request.form.get('nodeId')
    result = flow_service.upload_node_document(org.id, request.files.get('file'), node_id)
    return api_response(data=result, status=201)


# --- CLIENT PROGRESS ---

@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/progress', methods=['GET'])
@org_member_required
def get_progress(org):
    progress = progress_service.get_progress(org.id, current_user.id)
    current = progress_service.next_step(org.id, current_user.id)
    return api_response(data={
        'progress': [p.to_dict() for p in progress],
        'next_node_id': current.id if current else None,
        'is_complete': progress_service.is_onboarding_complete(org.id, current_user.id),
    })


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/progress', methods=['POST'])
@org_member_required
def record_progress(org):
    data = _json_body()
    node_id = data.get('nodeId')
    if not node_id:
        raise ValidationError("Missing nodeId")
    if data.get('status', 'completed') != 'completed':
        raise ValidationError("Only completed status can be recorded")

    submission = StepSubmission.from_json(data)
    try:
        progress = progress_service.complete_step(org, current_user, node_id, submission)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record progress for node %s", node_id)
        return api_response(False, error=STEP_FAILED_MESSAGE, status=500)
    return api_response(data=progress.to_dict())


def _step_view(org, node):
    ctx = progress_service.build_step_context(org, current_user, node)
    return handler_for(node.type).view(node, ctx)


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/current', methods=['GET'])
@org_member_required
def current_step(org):
    node = progress_service.next_step(org.id, current_user.id)
    if node is None:
        return api_response(data={'step': None, 'is_complete': True})
    return api_response(data={'step': _step_view(org, node).to_dict(), 'is_complete': False})


def _published_node(org, node_id):
    node = progress_service.get_node_for_org(org.id, node_id)
    if not viewer_is_admin() and (node.flow is None or node.flow.status != FLOW_STATUS_PUBLISHED):
        raise NotFound("Onboarding step not found")
    return node


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/nodes/<int:node_id>/view', methods=['GET'])
@org_member_required
def node_view(org, node_id):
    view = _step_view(org, _published_node(org, node_id))
    if request.args.get('format') == 'json':
        return api_response(data=view.to_dict())
    return render_template(view.template, step=view, org=org)


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/contract', methods=['POST'])
@org_member_required
def sign_contract(org):
    data = _json_body()
    node_id = data.get('nodeId')
    if not node_id or not data.get('signed_name') or not data.get('signature_data_url'):
        raise ValidationError("Missing required fields: nodeId, signed_name, signature_data_url")

    signature = contract_service.sign_contract(
        org,
        current_user,
        node_id,
        signed_name=data.get('signed_name'),
        signature_data_url=data.get('signature_data_url'),
        # Sending the accepted versions counts as accepting them
        terms_accepted=data.get('termsAccepted') is True or bool(data.get('terms_version')),
        privacy_accepted=data.get('privacyAccepted') is True or bool(data.get('privacy_version')),
        contract_sha256=data.get('contract_sha256'),
        terms_version=data.get('terms_version'),
        privacy_version=data.get('privacy_version'),
        ip=request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip() or None,
        user_agent=request.headers.get('User-Agent'),
    )
    return api_response(data=signature.to_dict(), status=201)


@onboarding_bp.route('/api/orgs/<org_ref>/onboarding/invoice-emails', methods=['GET'])
@org_member_required
def invoice_emails(org):
    emails = progress_service.invoice_emails(org.id, current_user)
    return api_response(data={'adminEmail': emails['admin_email'], 'memberEmail': emails['member_email']})


@onboarding_bp.route('/api/orgs/<org_ref>/admin/onboarding/status', methods=['GET'])
@org_member_required
@admin_required
def admin_status(org):
    return api_response(data={
        'onboarding_enabled': org.onboarding_enabled,
        'members': progress_service.onboarding_status_for_members(org.id),
    })


@onboarding_bp.route('/api/orgs/<org_ref>/admin/onboarding/settings', methods=['PUT'])
@org_member_required
@admin_required
def update_settings(org):
    data = _json_body()
    if 'onboarding_enabled' in data:
        org.onboarding_enabled = bool(data['onboarding_enabled'])
    db.session.commit()
    return api_response(data=org.to_dict())
