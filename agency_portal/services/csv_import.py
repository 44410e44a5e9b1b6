import csv
import io
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime

from agency_portal.errors import ValidationError
from agency_portal.services.metrics_service import MetricsSummary

logger = logging.getLogger(__name__)

# Checked in this order; a header maps to the first field whose synonym it contains.
# Revenue comes before conversions so "Conversion Value" is read as revenue.
FIELD_SYNONYMS = [
    ('revenue', ['revenue', 'revenues', 'conv_value', 'conversion_value', 'value', 'sales', 'income']),
    ('spend', ['spend', 'cost', 'costs', 'amount_spent', 'ad_spend']),
    ('leads', ['leads', 'lead', 'results', 'bookings']),
    ('conversions', ['conversions', 'conversion', 'purchases']),
    ('website_traffic', ['website_traffic', 'traffic', 'sessions', 'visits', 'pageviews']),
    ('date', ['day', 'date', 'timestamp', 'time']),
]
# Ratio columns are derived from the totals instead
IGNORED_TOKENS = {'per', 'cpl', 'cpa', 'cpc', 'cpm', 'ctr', 'roas', 'rate', 'avg', 'average'}
INTEGER_FIELDS = ('leads', 'conversions', 'website_traffic')
DATE_FORMATS = ('%Y-%m-%d', '%m/%d/%Y', '%d/%m/%Y', '%Y/%m/%d', '%b %d, %Y')


def normalize_header(header):
    """'  Total Spend ($) ' -> 'total_spend'"""
    return re.sub(r'[^a-z0-9]+', '_', (header or '').strip().lower()).strip('_')


def match_field(header):
    normalized = normalize_header(header)
    if not normalized:
        return None
    tokens = normalized.split('_')
    if IGNORED_TOKENS.intersection(tokens):
        return None
    padded = f"_{normalized}_"
    for canonical, synonyms in FIELD_SYNONYMS:
        if any(f"_{synonym}_" in padded for synonym in synonyms):
            return canonical
    return None


def map_columns(headers):
    """Returns ({canonical: original header}, [ignored headers]); the first matching column wins."""
    mapping = {}
    ignored = []
    for header in headers:
        canonical = match_field(header)
        if canonical is None or canonical in mapping:
            ignored.append(header)
            continue
        mapping[canonical] = header
    return mapping, ignored


def parse_number(value):
    text = str(value or '').strip()
    if not text:
        return 0.0
    negative = text.startswith('(') and text.endswith(')')
    cleaned = re.sub(r'[^0-9.\-]', '', text)
    try:
        number = float(cleaned)
    except ValueError:
        return 0.0
    return -number if negative else number


def parse_row_date(value):
    text = str(value or '').strip()
    # Full value first, then the date part of an ISO timestamp
    for candidate in (text, text[:10]):
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
    return None


@dataclass
class CsvPreview:
    totals: dict
    column_mapping: dict
    ignored_columns: list = field(default_factory=list)
    row_count: int = 0
    date_range: dict = None

    def to_dict(self):
        return asdict(self)

    def summary(self):
        totals = self.totals
        return MetricsSummary.from_totals(
            leads=totals['leads'],
            spend=totals['spend'],
            revenue=totals['revenue'],
            website_traffic=totals.get('website_traffic'),
            conversions=totals.get('conversions'),
        )


def read_csv_text(file_storage):
    raw = file_storage.read()
    if isinstance(raw, bytes):
        try:
            return raw.decode('utf-8-sig')
        except UnicodeDecodeError:
            return raw.decode('latin-1')
    return raw


def parse_csv(text):
    """
    Maps recognized columns to KPI fields and sums them over every row.

    Unrecognized columns are reported in `ignored_columns` and otherwise
    skipped.
    """
    reader = csv.DictReader(io.StringIO(text))
    headers = reader.fieldnames or []
    if not headers:
        raise ValidationError("CSV file is empty")

    mapping, ignored = map_columns(headers)
    numeric_fields = [f for f in ('leads', 'spend', 'revenue', 'conversions', 'website_traffic') if f in mapping]
    if not numeric_fields:
        raise ValidationError("No recognized metric columns found in CSV")

    sums = {name: 0.0 for name in numeric_fields}
    dates = []
    row_count = 0
    for row in reader:
        if not any((value or '').strip() for value in row.values() if isinstance(value, str)):
            continue
        row_count += 1
        for name in numeric_fields:
            sums[name] += parse_number(row.get(mapping[name]))
        if 'date' in mapping:
            parsed = parse_row_date(row.get(mapping['date']))
            if parsed:
                dates.append(parsed)

    totals = {
        'leads': int(round(sums.get('leads', 0))),
        'spend': round(sums.get('spend', 0.0), 2),
        'revenue': round(sums.get('revenue', 0.0), 2),
        'conversions': int(round(sums['conversions'])) if 'conversions' in sums else None,
        'website_traffic': int(round(sums['website_traffic'])) if 'website_traffic' in sums else None,
    }
    derived = MetricsSummary.from_totals(**totals)
    totals.update({'cpl': derived.cpl, 'roas': derived.roas, 'conversion_rate': derived.conversion_rate})

    date_range = None
    if dates:
        date_range = {'start': min(dates).isoformat(), 'end': max(dates).isoformat()}

    logger.info("Parsed CSV with %s rows, mapped columns %s", row_count, sorted(mapping))
    return CsvPreview(
        totals=totals,
        column_mapping=mapping,
        ignored_columns=ignored,
        row_count=row_count,
        date_range=date_range,
    )
