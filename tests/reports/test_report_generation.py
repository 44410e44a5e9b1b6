from datetime import date, datetime

import pytest

from agency_portal.errors import NotFound, ValidationError
from agency_portal.services import report_service
from agency_portal.services.metrics_service import NO_METRICS_TEXT
from agency_portal.services.report_generation import (
    NEXT_STEPS_HEADER,
    NO_NEXT_STEPS_TEXT,
    NO_WORK_TEXT,
    auto_populate_proof_of_work,
    generate_insights_block,
    generate_next_steps_block,
    generate_summary_block,
    generate_work_block,
)
from tests.test_utils.decorators import use_app_context
from tests.test_utils.test_utils import (
    test_app,
    basic_deliverable,
    basic_metric,
    basic_org,
    basic_report,
    basic_section,
)

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)


def _january_work(org):
    basic_deliverable(org, title="Landing page", status="complete",
                      created_at=datetime(2026, 1, 2), completed_at=datetime(2026, 1, 12))
    basic_deliverable(org, title="Internal audit", status="approved", client_visible=False,
                      created_at=datetime(2026, 1, 3), completed_at=datetime(2026, 1, 13))
    basic_deliverable(org, title="Ad set B", status="in_review", created_at=datetime(2026, 1, 5),
                      due_date=date(2026, 2, 3))
    basic_deliverable(org, title="Old banner", status="complete",
                      created_at=datetime(2025, 11, 1), completed_at=datetime(2025, 12, 1))


@use_app_context
def test_generate_report_validates_input():
    org = basic_org()

    with pytest.raises(ValidationError) as error:
        report_service.generate_report(org.id, None, "2026-01-01", "2026-01-31")
    assert error.value.message == "Missing required fields: tier, periodStart, periodEnd"

    with pytest.raises(ValidationError) as error:
        report_service.generate_report(org.id, "magic", "2026-01-01", "2026-01-31")
    assert error.value.message == "Invalid tier. Must be auto, kpi, or csv"

    with pytest.raises(ValidationError) as error:
        report_service.generate_report(org.id, "kpi", "2026-01-01", "2026-01-31", kpi_data={"spend": 10})
    assert error.value.message == "Missing required KPI data: leads"

    with pytest.raises(ValidationError) as error:
        report_service.generate_report(org.id, "kpi", "2026-01-01", "2026-01-31", kpi_data=5)
    assert error.value.message == "kpiData must be an object"

    with pytest.raises(ValidationError) as error:
        report_service.generate_report(org.id, "csv", "2026-01-01", "2026-01-31")
    assert error.value.message == "Missing CSV file"

    with pytest.raises(ValidationError):
        report_service.generate_report(org.id, "auto", "2026-02-01", "2026-01-01")


@use_app_context
def test_auto_report_without_metrics():
    org = basic_org()
    report = report_service.generate_report(org.id, "auto", "2026-01-01", "2026-01-31")

    assert report.title == "Performance Report: 2026-01-01 - 2026-01-31"
    assert report.status == "draft"
    assert report.data_source == "auto"
    assert [s.section_type for s in report.sections] == [
        "summary", "metrics", "custom", "proof_of_work", "insights", "next_steps",
    ]
    sections = {s.section_type: s.content for s in report.sections}
    assert sections["metrics"] == NO_METRICS_TEXT
    assert sections["custom"] == NO_WORK_TEXT
    assert sections["next_steps"] == NO_NEXT_STEPS_TEXT


@use_app_context
def test_auto_report_uses_stored_metrics():
    org = basic_org()
    basic_metric(org, JAN_START, date(2026, 1, 15), leads=10, spend=100.0, revenue=200.0)
    basic_metric(org, date(2026, 1, 16), JAN_END, leads=20, spend=300.0, revenue=1000.0)

    report = report_service.generate_report(org.id, "auto", "2026-01-01", "2026-01-31")
    metrics = next(s for s in report.sections if s.section_type == "metrics")
    assert "• CPL/CPA: $13.33" in metrics.content
    assert "• ROAS: 3.00x" in metrics.content
    assert report.kpi_snapshot is None


@use_app_context
def test_kpi_report_snapshots_totals():
    org = basic_org()
    report = report_service.generate_report(
        org.id, "kpi", "2026-01-01", "2026-01-31", kpi_data={"leads": 30, "spend": 400, "revenue": 1200}
    )
    assert report.data_source == "kpi"
    assert report.kpi_snapshot["cpl"] == 13.33
    assert report.kpi_snapshot["roas"] == 3.0

    exported = report_service.export_csv(report)
    assert "Metrics Data" in exported
    assert "2026-01-01,2026-01-31,30,400.0,1200.0,3.0,13.33,0,0," in exported


@use_app_context
def test_csv_report():
    org = basic_org()
    csv_text = "Date,Spend,Leads,Revenue\n2026-01-02,100,4,250\n2026-01-09,300,6,750\n"
    report = report_service.generate_report(org.id, "csv", "2026-01-01", "2026-01-31", csv_text=csv_text)

    assert report.data_source == "csv"
    assert report.kpi_snapshot["leads"] == 10
    assert report.kpi_snapshot["cpl"] == 40.0
    assert report.kpi_snapshot["row_count"] == 2
    metrics = next(s for s in report.sections if s.section_type == "metrics")
    assert "• Leads/Bookings: 10" in metrics.content


@use_app_context
def test_work_blocks_only_show_client_visible_completions():
    org = basic_org()
    _january_work(org)

    work = generate_work_block(org.id, JAN_START, JAN_END)
    assert work.startswith("- Landing page (landing_page) - Completed Jan 12, 2026 | [View Deliverable](/projects?deliverable=")
    assert "Internal audit" not in work
    assert "Old banner" not in work

    proof = auto_populate_proof_of_work(org.id, JAN_START, JAN_END)
    assert proof.startswith("DELIVERABLES COMPLETED:\n- Landing page (landing_page) - Jan 12, 2026")
    assert "CHANGES SHIPPED:" in proof
    assert "TESTS LAUNCHED:" in proof

    assert NO_WORK_TEXT in auto_populate_proof_of_work(org.id, date(2026, 3, 1), date(2026, 3, 31))


@use_app_context
def test_summary_and_insights_blocks():
    org = basic_org()
    _january_work(org)

    summary = generate_summary_block(org.id, JAN_START, JAN_END)
    assert "• 3 deliverables created" in summary
    assert "• 1 deliverables completed" in summary

    insights = generate_insights_block(org.id, JAN_START, JAN_END)
    assert insights.startswith("INSIGHT 1:\nObservation: Completion rate: 67% (2 of 3 deliverables)")
    assert "Average time to complete: 10 days" in insights
    assert "1 deliverable in review" in insights
    assert insights.count("INSIGHT") <= 5


@use_app_context
def test_next_steps_block():
    org = basic_org()
    assert generate_next_steps_block(org.id) == NO_NEXT_STEPS_TEXT

    _january_work(org)
    basic_deliverable(org, title="Blocked brief", status="blocked")
    lines = generate_next_steps_block(org.id).split("\n")
    assert lines[0] == NEXT_STEPS_HEADER
    assert lines[1] == 'Review "Ad set B" | Awaiting review | Unassigned | Feb 3 | In Review'
    assert lines[2] == 'Unblock "Blocked brief" | Blocked | Unassigned | Not set | Blocked'
    assert len(lines) == 3

    for index in range(10):
        basic_deliverable(org, title=f"Task {index}")
    assert len(generate_next_steps_block(org.id).split("\n")) == 7


@use_app_context
def test_client_visibility_filter():
    org = basic_org()
    draft = basic_report(org, status="draft", title="Draft")
    hidden = basic_report(org, status="published", client_visible=False, title="Hidden")
    shared = basic_report(org, status="published", title="Shared")

    assert {r.id for r in report_service.list_reports(org.id, is_admin=True)} == {draft.id, hidden.id, shared.id}
    assert [r.id for r in report_service.list_reports(org.id, is_admin=False)] == [shared.id]
    assert report_service.client_visible_reports([draft, hidden, shared]) == [shared]

    with pytest.raises(NotFound):
        report_service.get_report(org.id, draft.id, is_admin=False)
    assert report_service.get_report(org.id, draft.id, is_admin=True).id == draft.id


@use_app_context
def test_templates_and_publishing():
    org = basic_org()
    basic_metric(org, JAN_START, JAN_END, leads=10, spend=100.0)
    report = report_service.create_report(org.id, {
        "title": "January",
        "period_start": "2026-01-01",
        "period_end": "2026-01-31",
        "template": "monthly",
    })
    assert [s.section_type for s in report.sections] == [
        "summary", "metrics", "proof_of_work", "insights", "next_steps",
    ]
    assert "• CPL/CPA: $10.00" in report.sections[1].content
    assert report.sections[4].content.startswith(NEXT_STEPS_HEADER)

    with pytest.raises(ValidationError):
        report_service.create_report(org.id, {"title": "X", "period_start": "2026-01-01",
                                              "period_end": "2026-01-31", "template": "weekly"})

    published = report_service.publish_report(org.id, report.id)
    first_published_at = published.published_at
    assert first_published_at is not None
    report_service.update_report(org.id, report.id, {"status": "draft"})
    report_service.update_report(org.id, report.id, {"status": "published"})
    assert report.published_at == first_published_at


@use_app_context
def test_sections_and_proof_of_work_refresh():
    org = basic_org()
    report = basic_report(org)
    basic_section(report, "summary", "Hello", order_index=0)

    section = report_service.add_section(org.id, report.id, {"section_type": "next_steps"})
    assert section.order_index == 1
    assert section.title == "Next Steps"

    with pytest.raises(ValidationError):
        report_service.add_section(org.id, report.id, {"section_type": "poem"})

    basic_deliverable(org, status="complete", completed_at=datetime(2026, 1, 20))
    proof = report_service.refresh_proof_of_work(org.id, report.id)
    assert proof.section_type == "proof_of_work"
    assert "Landing page" in proof.content

    again = report_service.refresh_proof_of_work(org.id, report.id)
    assert again.id == proof.id


@use_app_context
def test_export_csv_layout():
    org = basic_org()
    basic_metric(org, JAN_START, JAN_END, leads=10, spend=100.0, revenue=300.0)
    report = basic_report(org)
    basic_section(report, "summary", "Line one\nLine two")

    lines = report_service.export_csv(report).split("\n")
    assert lines[0] == "Report Metadata"
    assert lines[1] == "Title,January Report"
    assert "Metrics Data" in lines
    assert "2026-01-01,2026-01-31,10,100.0,300.0,3.0,10.0,0,0," in lines
    assert "Report Sections" in lines
    assert "summary,Summary,Line one Line two" in lines
