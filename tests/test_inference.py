"""
Tests for header detection, content scoring and column mapping resolution.
"""
import pytest

from toll_engine.canonical_fields import CanonicalField
from toll_engine.errors import ColumnMappingError
from toll_engine.inference import detect_header_row, infer_columns, resolve_column_mapping, score_columns
from toll_engine.mappings import apply_column_mapping

HEADER = ["Datum", "Tijd", "Kenteken", "Serviceland", "Bedrag", "BTW"]
DATA = [
    ["05-01-2026", "08:00", "AB-12-CD", "Belgie", "12,50", "21"],
    ["05-01-2026", "12:30", "AB-12-CD", "Belgie", "12,50", "21"],
    ["06-01-2026", "09:10", "XY-99-ZZ", "Nederland", "3,10", "21"],
]


def test_header_row_found_below_preamble():
    rows = [["Toll export januari"], [], HEADER] + DATA
    detection = detect_header_row(rows)

    assert detection.index == 2
    assert detection.score == 3
    assert detection.labels[0] == CanonicalField.USAGE_DATE
    assert detection.labels[2] == CanonicalField.LICENSE_PLATE


def test_header_mapping_covers_optional_columns():
    mapping = resolve_column_mapping([HEADER] + DATA)

    assert mapping.method == "header"
    assert mapping.data_start_index == 1
    assert mapping.index_of(CanonicalField.USAGE_DATE) == 0
    assert mapping.index_of(CanonicalField.USAGE_TIME) == 1
    assert mapping.index_of(CanonicalField.LICENSE_PLATE) == 2
    assert mapping.index_of(CanonicalField.COUNTRY) == 3
    assert mapping.index_of(CanonicalField.AMOUNT) == 4
    assert mapping.index_of(CanonicalField.VAT_RATE) == 5


def test_headerless_sheet_is_inferred_from_content():
    rows = [
        ["AB-12-CD", "05-01-2026", "BE", "12,50"],
        ["XY-99-ZZ", "06-01-2026", "NL", "3,10"],
        ["AB-12-CD", "07-01-2026", "DE", "8,00"],
    ]
    mapping = resolve_column_mapping(rows)

    assert mapping.method == "inferred"
    assert mapping.header_row_index is None
    assert mapping.index_of(CanonicalField.LICENSE_PLATE) == 0
    assert mapping.index_of(CanonicalField.USAGE_DATE) == 1
    assert mapping.index_of(CanonicalField.COUNTRY) == 2
    assert mapping.index_of(CanonicalField.AMOUNT) == 3

    frame = apply_column_mapping(rows[mapping.data_start_index:], mapping)
    assert len(frame) == 3
    assert frame["license_plate"].tolist() == ["AB-12-CD", "XY-99-ZZ", "AB-12-CD"]


def test_score_ties_go_to_lowest_column():
    rows = [
        ["05-01-2026", "05-01-2026", "AB-12-CD", "1,00"],
        ["06-01-2026", "06-01-2026", "XY-99-ZZ", "2,00"],
    ]
    scores = score_columns(rows)
    assert scores.loc["usage_date", 0] == 1.0
    assert scores.loc["usage_date", 1] == 1.0

    assigned = infer_columns(rows)
    assert assigned[CanonicalField.USAGE_DATE] == 0
    assert assigned[CanonicalField.LICENSE_PLATE] == 2
    assert assigned[CanonicalField.AMOUNT] == 3
    assert CanonicalField.COUNTRY not in assigned


def test_low_scores_leave_field_unassigned():
    rows = [["AB-12-CD", "x"], ["hello", "y"], ["world", "z"]]
    assigned = infer_columns(rows, min_score=0.5)
    assert CanonicalField.LICENSE_PLATE not in assigned


def test_explicit_mapping_by_label_and_index():
    headers = ["Date of use", "Vehicle", "Cost", "Nation"]
    rows = [headers, ["05-01-2026", "AB-12-CD", "12,50", "BE"]]
    mapping = resolve_column_mapping(
        rows, {"transaction_date": "date of use", "plate": "Vehicle", "amount": 2, "country": "Nation"}
    )

    assert mapping.method == "explicit"
    assert mapping.data_start_index == 1
    assert mapping.index_of(CanonicalField.USAGE_DATE) == 0
    assert mapping.index_of(CanonicalField.LICENSE_PLATE) == 1
    assert mapping.index_of(CanonicalField.AMOUNT) == 2
    assert mapping.index_of(CanonicalField.COUNTRY) == 3


def test_missing_required_columns_raise_with_available_headers():
    rows = [["Omschrijving", "Opmerking"], ["iets", "niets"], ["meer", "minder"]]
    with pytest.raises(ColumnMappingError) as excinfo:
        resolve_column_mapping(rows, {"plate": "Omschrijving"})

    assert "usage_date" in excinfo.value.missing
    assert "amount" in excinfo.value.missing
    assert excinfo.value.available == ["Omschrijving", "Opmerking"]
    assert isinstance(excinfo.value, ValueError)


def test_country_names_in_data_rows_do_not_make_a_header():
    rows = [
        ["AB-12-CD", "05-01-2026", "Nederland", "12,50"],
        ["XY-99-ZZ", "06-01-2026", "Nederland", "3,10"],
        ["AB-12-CD", "07-01-2026", "Duitsland", "8,00"],
    ]

    assert detect_header_row(rows).score == 0

    mapping = resolve_column_mapping(rows)
    assert mapping.header_row_index is None
    assert mapping.data_start_index == 0
    assert mapping.index_of(CanonicalField.COUNTRY) == 2
