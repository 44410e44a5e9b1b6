from datetime import date

import pytest

from agency_portal.errors import ValidationError
from agency_portal.services.metrics_service import (
    NO_METRICS_TEXT,
    MetricsSummary,
    aggregate_metrics,
    create_metric,
    derive_ratios,
    format_metrics_block,
    update_metric,
)
from tests.test_utils.decorators import use_app_context
from tests.test_utils.test_utils import test_app, basic_metric, basic_org

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)


def test_derive_ratios():
    assert derive_ratios(30, 400.0, 1200.0) == {"cpl": 13.33, "roas": 3.0, "conversion_rate": None}
    assert derive_ratios(0, 0, 0) == {"cpl": None, "roas": None, "conversion_rate": None}
    assert derive_ratios(10, 100, 0, website_traffic=1000, conversions=25)["conversion_rate"] == 2.5
    assert derive_ratios(10, 100, 0, website_traffic=0, conversions=25)["conversion_rate"] is None


@use_app_context
def test_ratios_come_from_summed_totals():
    org = basic_org()
    basic_metric(org, date(2026, 1, 1), date(2026, 1, 15), leads=10, spend=100.0, revenue=200.0)
    basic_metric(org, date(2026, 1, 16), date(2026, 1, 31), leads=20, spend=300.0, revenue=1000.0)

    summary = aggregate_metrics(org.id, JAN_START, JAN_END)
    assert summary.leads == 30
    assert summary.spend == 400.0
    # 400 / 30, not the average of 10.00 and 15.00
    assert summary.cpl == 13.33
    assert summary.roas == 3.0
    assert summary.period_count == 2


@use_app_context
def test_only_overlapping_rows_are_counted():
    org = basic_org()
    other = basic_org(name="Other Co")
    basic_metric(org, date(2025, 12, 20), date(2026, 1, 5), leads=5, spend=50.0)
    basic_metric(org, date(2026, 2, 1), date(2026, 2, 28), leads=99, spend=999.0)
    basic_metric(other, JAN_START, JAN_END, leads=1000, spend=1.0)

    summary = aggregate_metrics(org.id, JAN_START, JAN_END)
    assert summary.leads == 5
    assert summary.period_count == 1


@use_app_context
def test_no_rows_is_different_from_zero_rows():
    org = basic_org()
    assert aggregate_metrics(org.id, JAN_START, JAN_END) is None
    assert format_metrics_block(None) == NO_METRICS_TEXT

    basic_metric(org, JAN_START, JAN_END, leads=0, spend=0.0, revenue=0.0)
    summary = aggregate_metrics(org.id, JAN_START, JAN_END)
    assert summary is not None
    assert summary.cpl is None
    assert summary.roas is None

    text = format_metrics_block(summary)
    assert text != NO_METRICS_TEXT
    assert "• Leads/Bookings: 0" in text
    assert "• Spend: $0.00" in text
    assert "CPL" not in text
    assert "ROAS" not in text


def test_format_metrics_block():
    summary = MetricsSummary.from_totals(
        leads=1234, spend=2500.5, revenue=7501.5, website_traffic=4000, conversions=50
    )
    assert format_metrics_block(summary).split("\n") == [
        "• Leads/Bookings: 1,234",
        "• Spend: $2,500.50",
        "• Revenue: $7,501.50",
        "• CPL/CPA: $2.03",
        "• ROAS: 3.00x",
        "• Conversions: 50",
        "• Website Traffic: 4,000",
        "• Conversion Rate: 1.25%",
    ]


@use_app_context
def test_create_and_update_metric_validation():
    org = basic_org()
    metric = create_metric(org.id, {
        "period_start": "2026-01-01",
        "period_end": "2026-01-31T00:00:00Z",
        "leads": "12",
        "spend": "240.5",
    })
    assert metric.period_end == JAN_END
    assert metric.leads == 12
    assert metric.to_dict()["cpl"] == 20.04

    with pytest.raises(ValidationError):
        create_metric(org.id, {"period_start": "2026-02-01", "period_end": "2026-01-01"})
    with pytest.raises(ValidationError):
        create_metric(org.id, {"period_start": "2026-01-01", "period_end": "2026-01-31", "spend": -5})
    with pytest.raises(ValidationError):
        create_metric(org.id, {"period_start": "2026-01-01", "period_end": "2026-01-31", "leads": "many"})

    updated = update_metric(org.id, metric.id, {"revenue": 481})
    assert updated.revenue == 481.0
    assert updated.leads == 12
