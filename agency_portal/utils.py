from datetime import datetime, date
from flask import jsonify

from agency_portal.errors import ValidationError
from agency_portal.models import get_now


def api_response(success=True, data=None, error=None, status=200):
    """Standardized JSON response for all API routes."""
    response = {
        'success': success,
        'data': data,
        'error': error
    }
    return jsonify(response), status


def format_long_date(value=None):
    """Returns a date in the format: March 5, 2026"""
    value = value or get_now()
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def format_short_date(value):
    """Mar 5, 2026"""
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def parse_date(value, field='date'):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(f"Missing {field}")
    # Accept plain dates and ISO timestamps ("2026-03-01T00:00:00Z")
    text = str(value).strip()[:10]
    try:
        return datetime.strptime(text, '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")


def parse_period(start, end):
    period_start = parse_date(start, 'periodStart')
    period_end = parse_date(end, 'periodEnd')
    if period_end < period_start:
        raise ValidationError("periodEnd must be on or after periodStart")
    return period_start, period_end


def format_currency(value):
    return f"${value:,.2f}"


def format_number(value):
    return f"{int(value):,}"


def as_bool(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
