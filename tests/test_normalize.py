"""
Tests for toll export cell normalization.
"""
from datetime import date, datetime, time
from decimal import Decimal

import pytest

from toll_engine.errors import ParseError
from toll_engine.normalize import (
    map_country,
    normalize_plate,
    normalize_row,
    parse_date,
    parse_money,
    parse_usage_time,
    parse_vat,
    time_from_date_cell,
    week_id_for,
    weekday_name,
)


def test_belgian_row_with_comma_amount_and_blank_vat():
    """Country spelling, plate case, day-first date, comma decimal and blank VAT."""
    row = {
        "country": "Belgie",
        "license_plate": "ab-12-cd",
        "usage_date": "05-01-2026",
        "amount": "12,50",
        "vat_rate": "",
    }
    record = normalize_row(row, source="export.xlsx", default_country="NL", row_number=2)

    assert record.country == "BE"
    assert record.license_plate == "AB-12-CD"
    assert record.usage_date == date(2026, 1, 5)
    assert record.amount == Decimal("12.50")
    assert record.vat_rate == 21
    assert record.week_id == "2026-02"
    assert record.weekday == "maandag"
    assert record.usage_time is None
    assert record.application_link is None


@pytest.mark.parametrize("cell, expected", [("0,21", 21), ("21", 21), (0.21, 21), (21, 21), ("9%", 9), ("0.06", 6)])
def test_vat_fraction_and_percentage(cell, expected):
    assert parse_vat(cell) == expected


def test_vat_rejects_out_of_range():
    assert parse_vat("-5") is None
    assert parse_vat("250") is None
    assert parse_vat("n/a") is None


def test_money_formats():
    assert parse_money("12,50") == Decimal("12.50")
    assert parse_money("€ 1.234,56") == Decimal("1234.56")
    assert parse_money("EUR 3.10") == Decimal("3.10")
    assert parse_money(7.125) == Decimal("7.13")
    assert parse_money(4) == Decimal("4.00")
    assert parse_money("abc") is None
    assert parse_money(None) is None


def test_date_formats():
    assert parse_date("05-01-2026") == date(2026, 1, 5)
    assert parse_date("5/1/26") == date(2026, 1, 5)
    assert parse_date("05.01.2026 14:22") == date(2026, 1, 5)
    assert parse_date("2026-01-05") == date(2026, 1, 5)
    assert parse_date(datetime(2026, 1, 5, 14, 22)) == date(2026, 1, 5)
    # Excel serial for 2026-01-05
    assert parse_date(46027) == date(2026, 1, 5)


def test_date_rejects_amounts_and_garbage():
    assert parse_date(12.5) is None
    assert parse_date("31-02-2026") is None
    assert parse_date("hello") is None
    assert parse_date("") is None


def test_usage_time_sources():
    assert parse_usage_time("14:22") == "14:22:00"
    assert parse_usage_time("7:05:09") == "07:05:09"
    assert parse_usage_time(time(6, 30)) == "06:30:00"
    assert parse_usage_time(0.5) == "12:00:00"
    assert parse_usage_time("25:00") is None
    assert parse_usage_time("soon") is None


def test_time_recovered_from_combined_date_cell():
    assert time_from_date_cell("05-01-2026 14:22") == "14:22:00"
    assert time_from_date_cell("05-01-2026") is None
    assert time_from_date_cell(datetime(2026, 1, 5, 8, 15)) == "08:15:00"
    assert time_from_date_cell(datetime(2026, 1, 5)) is None


def test_country_mapping():
    assert map_country("Belgie") == "BE"
    assert map_country("België") == "BE"
    assert map_country("nl") == "NL"
    assert map_country("DEU") == "DE"
    assert map_country("Frankrijk") == "FR"
    assert map_country("Atlantis") == "ATLANTIS"
    assert map_country("  ") is None


def test_plate_whitespace_collapsed():
    assert normalize_plate("  ab 12  cd ") == "AB 12 CD"
    assert normalize_plate(None) is None


def test_iso_week_at_year_boundary():
    assert week_id_for(date(2026, 1, 1)) == "2026-01"
    assert week_id_for(date(2027, 1, 1)) == "2026-53"


def test_weekday_name_is_dutch():
    assert weekday_name(date(2026, 1, 5)) == "maandag"
    assert weekday_name(date(2026, 1, 11)) == "zondag"


def test_time_column_wins_over_date_cell():
    row = {
        "license_plate": "AB-12-CD",
        "usage_date": "05-01-2026 09:00",
        "usage_time": "10:15",
        "amount": "3,00",
    }
    record = normalize_row(row, source="x.csv", default_country="NL")
    assert record.usage_time == "10:15:00"
    assert record.country == "NL"


def test_missing_vat_uses_country_default():
    row = {"license_plate": "AB-12-CD", "usage_date": "05-01-2026", "amount": "3,00", "country": "Duitsland"}
    record = normalize_row(row, source="x.csv", default_country="NL")
    assert record.country == "DE"
    assert record.vat_rate == 19


def test_unusable_row_raises_parse_error_with_all_reasons():
    row = {"license_plate": "", "usage_date": "not a date", "amount": "-4,00", "country": "BE"}
    with pytest.raises(ParseError) as excinfo:
        normalize_row(row, source="x.csv", default_country="NL", row_number=7)

    assert excinfo.value.row_number == 7
    assert "missing plate" in excinfo.value.reason
    assert "missing/invalid date" in excinfo.value.reason
    assert "negative amount" in excinfo.value.reason


def test_mapped_but_empty_country_is_rejected():
    row = {"license_plate": "AB-12-CD", "usage_date": "05-01-2026", "amount": "3,00", "country": None}
    with pytest.raises(ParseError, match="missing country"):
        normalize_row(row, source="x.csv", default_country="NL")
