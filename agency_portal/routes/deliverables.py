from flask import Blueprint, request

from agency_portal.auth import admin_required, org_member_required, viewer_is_admin
from agency_portal.errors import ValidationError
from agency_portal.services import deliverable_service
from agency_portal.utils import api_response, parse_period

deliverables_bp = Blueprint('deliverables', __name__)


@deliverables_bp.route('/api/orgs/<org_ref>/deliverables', methods=['GET'])
@org_member_required
def list_deliverables(org):
    deliverables = deliverable_service.list_deliverables(org.id, client_view=not viewer_is_admin())
    return api_response(data=[d.to_dict() for d in deliverables])


@deliverables_bp.route('/api/orgs/<org_ref>/deliverables', methods=['POST'])
@org_member_required
@admin_required
def create_deliverable(org):
    # Multipart when a file is attached, JSON otherwise
    if request.mimetype == 'multipart/form-data':
        data = request.form.to_dict()
        file = request.files.get('file')
    else:
        data = request.get_json(silent=True) or {}
        file = None

    deliverable, warning = deliverable_service.create_with_file(org.id, data, file)
    payload = {'deliverable': deliverable.to_dict(), 'warning': warning}
    return api_response(data=payload, status=201)


@deliverables_bp.route('/api/orgs/<org_ref>/deliverables/<int:deliverable_id>/status', methods=['POST'])
@org_member_required
@admin_required
def update_status(org, deliverable_id):
    data = request.get_json(silent=True) or {}
    if not data.get('status'):
        raise ValidationError("Missing status")
    deliverable = deliverable_service.update_status(org.id, deliverable_id, data['status'])
    return api_response(data=deliverable.to_dict())


@deliverables_bp.route('/api/orgs/<org_ref>/deliverables/<int:deliverable_id>/upload', methods=['POST'])
@org_member_required
@admin_required
def upload_file(org, deliverable_id):
    file = request.files.get('file')
    if file is None or not file.filename:
        raise ValidationError("No file provided")
    deliverable = deliverable_service.get_deliverable(org.id, deliverable_id)
    deliverable_service.attach_file(org.id, deliverable, file)
    return api_response(data=deliverable.to_dict())


@deliverables_bp.route('/api/orgs/<org_ref>/deliverables/completed', methods=['GET'])
@org_member_required
def completed_deliverables(org):
    period_start, period_end = parse_period(request.args.get('periodStart'), request.args.get('periodEnd'))
    deliverables = deliverable_service.completed_in_period(org.id, period_start, period_end)
    return api_response(data=[d.to_dict() for d in deliverables])
