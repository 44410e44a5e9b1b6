import csv
import io
import logging

from sqlalchemy import func

from agency_portal.errors import NotFound, ValidationError
from agency_portal.models import (
    db, get_now, Report, ReportSection, SECTION_TYPES,
    REPORT_STATUS_DRAFT, REPORT_STATUS_PUBLISHED,
)
from agency_portal.services import metrics_service, report_generation
from agency_portal.services.csv_import import parse_csv
from agency_portal.services.metrics_service import MetricsSummary
from agency_portal.utils import parse_period

logger = logging.getLogger(__name__)

TIERS = ('auto', 'kpi', 'csv')


def is_client_visible(report):
    return report.status == REPORT_STATUS_PUBLISHED and bool(report.client_visible)


def client_visible_reports(reports):
    """Only published reports flagged for the client leave the agency view."""
    return [r for r in reports if is_client_visible(r)]


def list_reports(org_id, is_admin):
    reports = Report.query.filter_by(org_id=org_id).order_by(Report.period_end.desc(), Report.id.desc()).all()
    return reports if is_admin else client_visible_reports(reports)


def get_report(org_id, report_id, is_admin=True):
    report = Report.query.filter_by(id=report_id, org_id=org_id).first()
    if report is None:
        raise NotFound("Report not found")
    if not is_admin and not is_client_visible(report):
        # Hidden reports do not exist as far as clients can tell
        raise NotFound("Report not found")
    return report


def create_report(org_id, data, user_id=None):
    title = (data.get('title') or '').strip()
    if not title:
        raise ValidationError("Title is required")
    template_key = data.get('template')
    if template_key and template_key not in report_generation.REPORT_TEMPLATES:
        raise ValidationError(f"Unknown report template: {template_key}")
    period_start, period_end = parse_period(data.get('period_start'), data.get('period_end'))
    report = Report(
        org_id=org_id,
        title=title,
        period_start=period_start,
        period_end=period_end,
        status=REPORT_STATUS_DRAFT,
        client_visible=data.get('client_visible', True) is not False,
        data_source=data.get('data_source') or 'manual',
        created_by=user_id,
    )
    db.session.add(report)
    db.session.flush()

    if template_key:
        apply_template(report, template_key)

    db.session.commit()
    return report


def apply_template(report, template_key):
    template = report_generation.REPORT_TEMPLATES[template_key]
    for index, (section_type, title, content) in enumerate(template['sections']):
        if section_type == 'metrics':
            summary = metrics_service.aggregate_metrics(report.org_id, report.period_start, report.period_end)
            content = metrics_service.format_metrics_block(summary)
        elif section_type == 'proof_of_work':
            content = report_generation.auto_populate_proof_of_work(
                report.org_id, report.period_start, report.period_end
            )
        db.session.add(ReportSection(
            report_id=report.id, section_type=section_type, title=title,
            content=content or '', order_index=index,
        ))


def update_report(org_id, report_id, data):
    report = get_report(org_id, report_id)
    if 'title' in data:
        if not (data['title'] or '').strip():
            raise ValidationError("Title is required")
        report.title = data['title'].strip()
    if 'period_start' in data or 'period_end' in data:
        report.period_start, report.period_end = parse_period(
            data.get('period_start', report.period_start), data.get('period_end', report.period_end)
        )
    if 'client_visible' in data:
        report.client_visible = bool(data['client_visible'])
    if data.get('status') in (REPORT_STATUS_DRAFT, REPORT_STATUS_PUBLISHED):
        set_status(report, data['status'])
    db.session.commit()
    return report


def set_status(report, status):
    report.status = status
    if status == REPORT_STATUS_PUBLISHED and report.published_at is None:
        report.published_at = get_now()


def publish_report(org_id, report_id):
    report = get_report(org_id, report_id)
    set_status(report, REPORT_STATUS_PUBLISHED)
    db.session.commit()
    logger.info("Report %s published", report.id)
    return report


def delete_report(org_id, report_id):
    db.session.delete(get_report(org_id, report_id))
    db.session.commit()


def _validate_section_type(section_type):
    if section_type not in SECTION_TYPES:
        raise ValidationError(f"Invalid section type: {section_type}")


def add_section(org_id, report_id, data):
    report = get_report(org_id, report_id)
    section_type = data.get('section_type') or 'custom'
    _validate_section_type(section_type)
    order_index = data.get('order_index')
    if order_index is None:
        current_max = db.session.query(func.max(ReportSection.order_index)).filter_by(report_id=report.id).scalar()
        order_index = 0 if current_max is None else current_max + 1
    section = ReportSection(
        report_id=report.id,
        section_type=section_type,
        title=data.get('title') or section_type.replace('_', ' ').title(),
        content=data.get('content') or '',
        order_index=order_index,
    )
    db.session.add(section)
    db.session.commit()
    return section


def get_section(org_id, report_id, section_id):
    report = get_report(org_id, report_id)
    section = ReportSection.query.filter_by(id=section_id, report_id=report.id).first()
    if section is None:
        raise NotFound("Section not found")
    return section


def update_section(org_id, report_id, section_id, data):
    section = get_section(org_id, report_id, section_id)
    if 'section_type' in data:
        _validate_section_type(data['section_type'])
        section.section_type = data['section_type']
    for key in ('title', 'content', 'order_index'):
        if key in data:
            setattr(section, key, data[key])
    db.session.commit()
    return section


def delete_section(org_id, report_id, section_id):
    db.session.delete(get_section(org_id, report_id, section_id))
    db.session.commit()


def refresh_proof_of_work(org_id, report_id):
    """Rewrites (or adds) the proof-of-work section from the period's deliverables."""
    report = get_report(org_id, report_id)
    content = report_generation.auto_populate_proof_of_work(org_id, report.period_start, report.period_end)
    section = next((s for s in report.sections if s.section_type == 'proof_of_work'), None)
    if section is None:
        return add_section(org_id, report.id, {
            'section_type': 'proof_of_work', 'title': 'Proof of Work', 'content': content,
        })
    section.content = content
    db.session.commit()
    return section


def _build_report(org_id, period_start, period_end, data_source, summary, user_id, snapshot=None):
    title = f"Performance Report: {period_start.isoformat()} - {period_end.isoformat()}"
    report = Report(
        org_id=org_id,
        title=title,
        period_start=period_start,
        period_end=period_end,
        status=REPORT_STATUS_DRAFT,
        client_visible=True,
        data_source=data_source,
        kpi_snapshot=snapshot,
        created_by=user_id,
    )
    db.session.add(report)
    db.session.flush()

    sections = [
        ('summary', 'Summary', report_generation.generate_summary_block(org_id, period_start, period_end)),
        ('metrics', 'Key Metrics', metrics_service.format_metrics_block(summary)),
        ('custom', 'Work Completed', report_generation.generate_work_block(org_id, period_start, period_end)),
        ('proof_of_work', 'Proof of Work',
         report_generation.auto_populate_proof_of_work(org_id, period_start, period_end)),
        ('insights', 'Insights', report_generation.generate_insights_block(org_id, period_start, period_end)),
        ('next_steps', 'Next Steps', report_generation.generate_next_steps_block(org_id)),
    ]
    for index, (section_type, section_title, content) in enumerate(sections):
        db.session.add(ReportSection(
            report_id=report.id, section_type=section_type, title=section_title,
            content=content, order_index=index,
        ))
    db.session.commit()
    logger.info("Generated %s report %s for org %s", data_source, report.id, org_id)
    return report


def generate_report(org_id, tier, period_start, period_end, kpi_data=None, csv_text=None, user_id=None):
    if not tier or not period_start or not period_end:
        raise ValidationError("Missing required fields: tier, periodStart, periodEnd")
    if tier not in TIERS:
        raise ValidationError("Invalid tier. Must be auto, kpi, or csv")
    period_start, period_end = parse_period(period_start, period_end)

    if tier == 'auto':
        summary = metrics_service.aggregate_metrics(org_id, period_start, period_end)
        return _build_report(org_id, period_start, period_end, 'auto', summary, user_id)

    if tier == 'kpi':
        if kpi_data is not None and not isinstance(kpi_data, dict):
            raise ValidationError("kpiData must be an object")
        if not kpi_data or kpi_data.get('leads') is None:
            raise ValidationError("Missing required KPI data: leads")
        values = metrics_service.metric_values(kpi_data)
        summary = MetricsSummary.from_totals(**values)
        return _build_report(org_id, period_start, period_end, 'kpi', summary, user_id, snapshot=summary.to_dict())

    if csv_text is None:
        raise ValidationError("Missing CSV file")
    preview = parse_csv(csv_text)
    summary = preview.summary()
    snapshot = dict(summary.to_dict(), column_mapping=preview.column_mapping, row_count=preview.row_count)
    return _build_report(org_id, period_start, period_end, 'csv', summary, user_id, snapshot=snapshot)


def _blank(value):
    return '' if value is None else value


def export_csv(report):
    """CSV export: report metadata, metric rows for the period, then the sections."""
    si = io.StringIO()
    cw = csv.writer(si, lineterminator='\n')

    cw.writerow(['Report Metadata'])
    cw.writerow(['Title', report.title])
    cw.writerow(['Period Start', report.period_start.isoformat()])
    cw.writerow(['Period End', report.period_end.isoformat()])
    cw.writerow(['Status', report.status])
    cw.writerow(['Created', report.created_at.isoformat() if report.created_at else ''])
    if report.published_at:
        cw.writerow(['Published', report.published_at.isoformat()])
    cw.writerow([])

    if report.kpi_snapshot:
        metric_rows = [dict(report.kpi_snapshot,
                            period_start=report.period_start.isoformat(),
                            period_end=report.period_end.isoformat())]
    else:
        metric_rows = [m.to_dict() for m in
                       metrics_service.metrics_in_period(report.org_id, report.period_start, report.period_end)]

    if metric_rows:
        cw.writerow(['Metrics Data'])
        cw.writerow(['Period Start', 'Period End', 'Leads', 'Spend', 'Revenue', 'ROAS', 'CPL',
                     'Traffic', 'Conversions', 'Conversion Rate'])
        for m in metric_rows:
            cw.writerow([
                m['period_start'], m['period_end'],
                m.get('leads') or 0, m.get('spend') or 0, m.get('revenue') or 0,
                _blank(m.get('roas')), _blank(m.get('cpl')),
                m.get('website_traffic') or 0, m.get('conversions') or 0,
                _blank(m.get('conversion_rate')),
            ])
        cw.writerow([])

    if report.sections:
        cw.writerow(['Report Sections'])
        cw.writerow(['Section Type', 'Title', 'Content'])
        for section in report.sections:
            cw.writerow([section.section_type, section.title or '', (section.content or '').replace('\n', ' ')])

    output = si.getvalue()
    si.close()
    return output
