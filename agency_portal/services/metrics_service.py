import logging
from dataclasses import asdict, dataclass
from typing import Optional

from agency_portal.errors import NotFound, ValidationError
from agency_portal.models import db, Metric
from agency_portal.utils import format_currency, format_number, parse_period

logger = logging.getLogger(__name__)

NO_METRICS_TEXT = 'No metrics data available for this period.'


def _ratio(numerator, denominator, scale=1):
    if not denominator:
        return None
    return round(numerator / denominator * scale, 2)


def derive_ratios(leads, spend, revenue, website_traffic=None, conversions=None):
    """CPL, ROAS and conversion rate; undefined ratios are None, never zero."""
    return {
        'cpl': _ratio(spend or 0, leads),
        'roas': _ratio(revenue or 0, spend),
        'conversion_rate': _ratio(conversions or 0, website_traffic, 100) if conversions is not None else None,
    }


@dataclass
class MetricsSummary:
    leads: int
    spend: float
    revenue: float
    website_traffic: Optional[int]
    conversions: Optional[int]
    cpl: Optional[float]
    roas: Optional[float]
    conversion_rate: Optional[float]
    period_count: int = 1

    @classmethod
    def from_totals(cls, leads=0, spend=0.0, revenue=0.0, website_traffic=None, conversions=None, period_count=1):
        return cls(
            leads=int(leads or 0),
            spend=round(float(spend or 0), 2),
            revenue=round(float(revenue or 0), 2),
            website_traffic=website_traffic,
            conversions=conversions,
            period_count=period_count,
            **derive_ratios(leads, spend, revenue, website_traffic, conversions)
        )

    def to_dict(self):
        return asdict(self)


def _optional_sum(values):
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def aggregate_metrics(org_id, period_start, period_end):
    """
    Sums every metric row overlapping the period, then derives the ratios
    from the summed totals.

    Returns None when no row overlaps the period.
    """
    rows = metrics_in_period(org_id, period_start, period_end)
    if not rows:
        return None

    return MetricsSummary.from_totals(
        leads=sum(row.leads or 0 for row in rows),
        spend=sum(row.spend or 0 for row in rows),
        revenue=sum(row.revenue or 0 for row in rows),
        website_traffic=_optional_sum(row.website_traffic for row in rows),
        conversions=_optional_sum(row.conversions for row in rows),
        period_count=len(rows),
    )


def format_metrics_block(summary):
    if summary is None:
        return NO_METRICS_TEXT

    lines = [
        f"• Leads/Bookings: {format_number(summary.leads)}",
        f"• Spend: {format_currency(summary.spend)}",
        f"• Revenue: {format_currency(summary.revenue)}",
    ]
    if summary.cpl is not None:
        lines.append(f"• CPL/CPA: {format_currency(summary.cpl)}")
    if summary.roas is not None:
        lines.append(f"• ROAS: {summary.roas:.2f}x")
    if summary.conversions is not None:
        lines.append(f"• Conversions: {format_number(summary.conversions)}")
    if summary.website_traffic is not None:
        lines.append(f"• Website Traffic: {format_number(summary.website_traffic)}")
    if summary.conversion_rate is not None:
        lines.append(f"• Conversion Rate: {summary.conversion_rate:.2f}%")
    return '\n'.join(lines)


def _number(data, key, cast, default=None):
    value = data.get(key, default)
    if value is None or value == '':
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for {key}")
    if number < 0:
        raise ValidationError(f"{key} cannot be negative")
    return number


def metric_values(data):
    return {
        'leads': _number(data, 'leads', int, 0),
        'spend': _number(data, 'spend', float, 0.0),
        'revenue': _number(data, 'revenue', float, 0.0),
        'website_traffic': _number(data, 'website_traffic', int),
        'conversions': _number(data, 'conversions', int),
    }


def create_metric(org_id, data):
    period_start, period_end = parse_period(data.get('period_start'), data.get('period_end'))
    metric = Metric(org_id=org_id, period_start=period_start, period_end=period_end, **metric_values(data))
    db.session.add(metric)
    db.session.commit()
    logger.info("Recorded metrics %s for org %s (%s to %s)", metric.id, org_id, period_start, period_end)
    return metric


def get_metric(org_id, metric_id):
    metric = Metric.query.filter_by(id=metric_id, org_id=org_id).first()
    if metric is None:
        raise NotFound("Metric not found")
    return metric


def update_metric(org_id, metric_id, data):
    metric = get_metric(org_id, metric_id)
    if 'period_start' in data or 'period_end' in data:
        metric.period_start, metric.period_end = parse_period(
            data.get('period_start', metric.period_start), data.get('period_end', metric.period_end)
        )
    values = metric_values(data)
    for key in values:
        if key in data:
            setattr(metric, key, values[key])
    db.session.commit()
    return metric


def delete_metric(org_id, metric_id):
    db.session.delete(get_metric(org_id, metric_id))
    db.session.commit()


def list_metrics(org_id):
    return Metric.query.filter_by(org_id=org_id).order_by(Metric.period_start.desc()).all()


def metrics_in_period(org_id, period_start, period_end):
    return Metric.query.filter(
        Metric.org_id == org_id,
        Metric.period_start <= period_end,
        Metric.period_end >= period_start,
    ).order_by(Metric.period_start.asc()).all()
