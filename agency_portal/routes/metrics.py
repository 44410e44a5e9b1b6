from flask import Blueprint, request

from agency_portal.auth import admin_required, org_member_required
from agency_portal.errors import ValidationError
from agency_portal.services import metrics_service
from agency_portal.utils import api_response, parse_period

metrics_bp = Blueprint('metrics', __name__)

FIELD_ALIASES = {
    'periodStart': 'period_start',
    'periodEnd': 'period_end',
    'websiteTraffic': 'website_traffic',
}


def _metric_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return {FIELD_ALIASES.get(key, key): value for key, value in data.items()}


@metrics_bp.route('/api/orgs/<org_ref>/metrics', methods=['GET'])
@org_member_required
def list_metrics(org):
    return api_response(data=[m.to_dict() for m in metrics_service.list_metrics(org.id)])


@metrics_bp.route('/api/orgs/<org_ref>/metrics', methods=['POST'])
@org_member_required
@admin_required
def create_metric(org):
    metric = metrics_service.create_metric(org.id, _metric_body())
    return api_response(data=metric.to_dict(), status=201)


@metrics_bp.route('/api/orgs/<org_ref>/metrics/<int:metric_id>', methods=['PUT'])
@org_member_required
@admin_required
def update_metric(org, metric_id):
    metric = metrics_service.update_metric(org.id, metric_id, _metric_body())
    return api_response(data=metric.to_dict())


@metrics_bp.route('/api/orgs/<org_ref>/metrics/<int:metric_id>', methods=['DELETE'])
@org_member_required
@admin_required
def delete_metric(org, metric_id):
    metrics_service.delete_metric(org.id, metric_id)
    return api_response(data={'deleted': metric_id})


@metrics_bp.route('/api/orgs/<org_ref>/metrics/summary', methods=['GET'])
@org_member_required
def metrics_summary(org):
    period_start, period_end = parse_period(request.args.get('periodStart'), request.args.get('periodEnd'))
    summary = metrics_service.aggregate_metrics(org.id, period_start, period_end)
    return api_response(data={
        'has_data': summary is not None,
        'summary': summary.to_dict() if summary else None,
        'text': metrics_service.format_metrics_block(summary),
    })
