import pytest

from agency_portal.errors import ValidationError
from agency_portal.services.csv_import import (
    map_columns,
    match_field,
    normalize_header,
    parse_csv,
    parse_number,
)

ADS_EXPORT = """Date,Campaign,Total Spend ($),Leads,Cost per Lead,Conversion Value,ROAS
2026-01-03,Search,"$1,200.50",40,$30.01,"$3,000.00",2.5
2026-01-10,Social,$799.50,20,$39.98,$1000,1.25

2026-01-24T00:00:00Z,Search,$0,0,,$0,
"""


def test_normalize_header():
    assert normalize_header("  Total Spend ($) ") == "total_spend"
    assert normalize_header("Website-Traffic") == "website_traffic"
    assert normalize_header("") == ""


def test_match_field_synonyms():
    assert match_field("Total Spend ($)") == "spend"
    assert match_field("Amount Spent") == "spend"
    assert match_field("Conversion Value") == "revenue"
    assert match_field("Conversions") == "conversions"
    assert match_field("Sessions") == "website_traffic"
    assert match_field("Results") == "leads"
    assert match_field("Day") == "date"
    # Ratio columns are derived, never imported
    assert match_field("Cost per Lead") is None
    assert match_field("CPL") is None
    assert match_field("Conversion Rate") is None
    assert match_field("Campaign") is None


def test_first_matching_column_wins():
    mapping, ignored = map_columns(["Spend", "Ad Spend", "Campaign"])
    assert mapping == {"spend": "Spend"}
    assert ignored == ["Ad Spend", "Campaign"]


def test_parse_number():
    assert parse_number("$1,234.50") == 1234.5
    assert parse_number("(20)") == -20.0
    assert parse_number("") == 0.0
    assert parse_number(None) == 0.0
    assert parse_number("n/a") == 0.0
    assert parse_number("12%") == 12.0


def test_parse_csv_sums_rows_and_derives_ratios():
    preview = parse_csv(ADS_EXPORT)

    assert preview.column_mapping == {
        "date": "Date",
        "spend": "Total Spend ($)",
        "leads": "Leads",
        "revenue": "Conversion Value",
    }
    assert set(preview.ignored_columns) == {"Campaign", "Cost per Lead", "ROAS"}
    assert preview.row_count == 3
    assert preview.totals["spend"] == 2000.0
    assert preview.totals["leads"] == 60
    assert preview.totals["revenue"] == 4000.0
    assert preview.totals["cpl"] == 33.33
    assert preview.totals["roas"] == 2.0
    assert preview.totals["conversions"] is None
    assert preview.date_range == {"start": "2026-01-03", "end": "2026-01-24"}

    summary = preview.summary()
    assert summary.cpl == 33.33
    assert preview.to_dict()["totals"]["leads"] == 60


def test_parse_csv_errors():
    with pytest.raises(ValidationError) as error:
        parse_csv("")
    assert error.value.message == "CSV file is empty"

    with pytest.raises(ValidationError) as error:
        parse_csv("Campaign,Clicks\nSearch,10\n")
    assert error.value.message == "No recognized metric columns found in CSV"
