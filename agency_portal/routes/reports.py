import io

from flask import Blueprint, Response, current_app, render_template, request, send_file
from flask_login import current_user

from agency_portal.auth import admin_required, org_member_required, viewer_is_admin
from agency_portal.errors import ValidationError
from agency_portal.services import report_service
from agency_portal.services.csv_import import parse_csv, read_csv_text
from agency_portal.services.pdf_service import PdfService
from agency_portal.services.report_generation import REPORT_TEMPLATES
from agency_portal.services.report_parsing import render_section
from agency_portal.utils import api_response

reports_bp = Blueprint('reports', __name__)


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return data


@reports_bp.route('/api/orgs/<org_ref>/reports', methods=['GET'])
@org_member_required
def list_reports(org):
    reports = report_service.list_reports(org.id, is_admin=viewer_is_admin())
    return api_response(data=[r.to_dict(include_sections=False) for r in reports])


@reports_bp.route('/api/orgs/<org_ref>/reports', methods=['POST'])
@org_member_required
@admin_required
def create_report(org):
    data = _json_body()
    report = report_service.create_report(org.id, {
        'title': data.get('title'),
        'period_start': data.get('periodStart'),
        'period_end': data.get('periodEnd'),
        'client_visible': data.get('clientVisible', True),
        'template': data.get('template'),
    }, user_id=current_user.id)
    return api_response(data=report.to_dict(), status=201)


@reports_bp.route('/api/orgs/<org_ref>/reports/templates', methods=['GET'])
@org_member_required
@admin_required
def report_templates(org):
    data = [{
        'key': key,
        'name': template['name'],
        'sections': [{'section_type': s[0], 'title': s[1]} for s in template['sections']],
    } for key, template in REPORT_TEMPLATES.items()]
    return api_response(data=data)


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>', methods=['GET'])
@org_member_required
def get_report(org, report_id):
    report = report_service.get_report(org.id, report_id, is_admin=viewer_is_admin())
    return api_response(data=report.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>', methods=['PUT'])
@org_member_required
@admin_required
def update_report(org, report_id):
    data = _json_body()
    mapped = {}
    for source, target in (('title', 'title'), ('periodStart', 'period_start'), ('periodEnd', 'period_end'),
                           ('clientVisible', 'client_visible'), ('status', 'status')):
        if source in data:
            mapped[target] = data[source]
    report = report_service.update_report(org.id, report_id, mapped)
    return api_response(data=report.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>', methods=['DELETE'])
@org_member_required
@admin_required
def delete_report(org, report_id):
    report_service.delete_report(org.id, report_id)
    return api_response(data={'deleted': report_id})


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/publish', methods=['POST'])
@org_member_required
@admin_required
def publish_report(org, report_id):
    report = report_service.publish_report(org.id, report_id)
    return api_response(data=report.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/sections', methods=['POST'])
@org_member_required
@admin_required
def add_section(org, report_id):
    section = report_service.add_section(org.id, report_id, _json_body())
    return api_response(data=section.to_dict(), status=201)


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/sections/<int:section_id>', methods=['PUT'])
@org_member_required
@admin_required
def update_section(org, report_id, section_id):
    section = report_service.update_section(org.id, report_id, section_id, _json_body())
    return api_response(data=section.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/sections/<int:section_id>', methods=['DELETE'])
@org_member_required
@admin_required
def delete_section(org, report_id, section_id):
    report_service.delete_section(org.id, report_id, section_id)
    return api_response(data={'deleted': section_id})


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/proof-of-work', methods=['POST'])
@org_member_required
@admin_required
def refresh_proof_of_work(org, report_id):
    section = report_service.refresh_proof_of_work(org.id, report_id)
    return api_response(data=section.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/generate', methods=['POST'])
@org_member_required
@admin_required
def generate_report(org):
    kpi_data = None
    csv_text = None
    if request.mimetype == 'multipart/form-data':
        tier = 'csv'
        period_start = request.form.get('periodStart')
        period_end = request.form.get('periodEnd')
        csv_file = request.files.get('file')
        if csv_file is not None and csv_file.filename:
            csv_text = read_csv_text(csv_file)
    else:
        data = _json_body()
        tier = data.get('tier')
        period_start = data.get('periodStart')
        period_end = data.get('periodEnd')
        kpi_data = data.get('kpiData')

    report = report_service.generate_report(
        org.id, tier, period_start, period_end,
        kpi_data=kpi_data, csv_text=csv_text, user_id=current_user.id,
    )
    return api_response(data=report.to_dict(), status=201)


@reports_bp.route('/api/orgs/<org_ref>/reports/csv/parse', methods=['POST'])
@org_member_required
@admin_required
def parse_csv_preview(org):
    csv_file = request.files.get('file')
    if csv_file is None or not csv_file.filename:
        raise ValidationError("Missing CSV file")
    preview = parse_csv(read_csv_text(csv_file))
    return api_response(data=preview.to_dict())


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/export/csv', methods=['GET'])
@org_member_required
def export_csv(org, report_id):
    report = report_service.get_report(org.id, report_id, is_admin=viewer_is_admin())
    output = report_service.export_csv(report)
    return Response(
        output,
        mimetype="text/csv",
        headers={"Content-disposition": f"attachment; filename=report-{report.id}.csv"}
    )


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/export/pdf', methods=['GET'])
@org_member_required
def export_pdf(org, report_id):
    report = report_service.get_report(org.id, report_id, is_admin=viewer_is_admin())
    try:
        pdf_bytes = PdfService.generate_report_pdf(report, org.name)
    except Exception as e:
        current_app.logger.error(f"Failed to generate PDF for report {report_id}: {str(e)}")
        raise
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f"report-{report.id}.pdf"
    )


@reports_bp.route('/api/orgs/<org_ref>/reports/<int:report_id>/view', methods=['GET'])
@org_member_required
def view_report(org, report_id):
    report = report_service.get_report(org.id, report_id, is_admin=viewer_is_admin())
    sections = [(section, render_section(section)) for section in report.sections]
    return render_template('reports/report.html', report=report, sections=sections, org=org)
