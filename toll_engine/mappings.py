"""
Header-label and value mappings for toll operator exports.

This module is the ONLY place where raw spreadsheet header labels and country
spellings should appear. All other modules use CanonicalField enums exclusively.

Mappings define how raw toll exports are turned into canonical columns:
1. Header label variants (raw label -> canonical field)
2. Country keyword lists (free text -> ISO-2)
3. Column assignments (canonical field -> column index)
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import pandas as pd

from .canonical_fields import CanonicalField, REQUIRED_MAPPED_FIELDS

logger = logging.getLogger(__name__)


# ==================== Raw Header Labels ====================
# Checked in this order; the first field whose variant occurs in a label wins.
# Amount is checked before VAT so "Bedrag excl. BTW" maps to the amount.

HEADER_LABEL_VARIANTS: Tuple[Tuple[CanonicalField, Tuple[str, ...]], ...] = (
    (CanonicalField.LICENSE_PLATE, (
        "kenteken", "nummerplaat", "license", "licence", "plate", "kennzeichen",
        "immatriculation", "registration",
    )),
    (CanonicalField.USAGE_DATE, (
        "datum", "date",
    )),
    (CanonicalField.USAGE_TIME, (
        "tijd", "time", "uur", "zeit", "heure",
    )),
    (CanonicalField.AMOUNT, (
        "bedrag", "amount", "prijs", "totaal", "total", "betrag", "montant", "price", "kosten",
    )),
    (CanonicalField.VAT_RATE, (
        "btw", "vat", "mwst", "tva",
    )),
    (CanonicalField.COUNTRY, (
        "serviceland", "land", "country", "pays",
    )),
    (CanonicalField.LOCATION, (
        "locatie", "location", "plaats", "route", "traject", "lieu",
    )),
)
"""Known header label fragments per canonical field (Dutch, English, German, French, vendor)"""


# ==================== Country Tables ====================

COUNTRY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "NL": ("nederland", "netherlands", "holland", "niederlande", "pays-bas"),
    "BE": ("belgi", "belgique", "belgium"),
    "DE": ("duitsland", "deutschland", "germany", "allemagne"),
    "FR": ("frankrijk", "france", "frankreich"),
    "LU": ("luxemb", "luxemburg"),
    "AT": ("oostenrijk", "österreich", "osterreich", "austria", "autriche"),
    "CH": ("zwitserland", "schweiz", "switzerland", "suisse"),
    "DK": ("denemarken", "danmark", "denmark", "dänemark"),
    "IT": ("itali",),
    "ES": ("spanje", "spain", "espa", "spanien"),
    "PL": ("polen", "poland", "polska", "pologne"),
}
"""Case-insensitive substrings identifying a country in free text"""

COUNTRY_ALPHA3: Dict[str, str] = {
    "NLD": "NL", "BEL": "BE", "DEU": "DE", "FRA": "FR", "LUX": "LU", "AUT": "AT",
    "CHE": "CH", "DNK": "DK", "ITA": "IT", "ESP": "ES", "POL": "PL",
}

COUNTRY_DESCRIPTION_LABELS: Dict[str, str] = {
    "NL": "Nederland",
    "BE": "België",
    "DE": "Duitsland",
    "FR": "Frankrijk",
    "LU": "Luxemburg",
    "AT": "Oostenrijk",
    "CH": "Zwitserland",
    "DK": "Denemarken",
    "IT": "Italië",
    "ES": "Spanje",
    "PL": "Polen",
}
"""Country names as written on invoice lines"""

DEFAULT_VAT_BY_COUNTRY: Dict[str, int] = {
    "NL": 21,
    "BE": 21,
    "DE": 19,
    "FR": 20,
    "LU": 17,
    "CH": 0,
    "AT": 20,
    "DK": 25,
    "IT": 22,
    "ES": 21,
    "PL": 23,
}

DEFAULT_VAT_RATE = 21

DUTCH_WEEKDAYS: Tuple[str, ...] = (
    "maandag", "dinsdag", "woensdag", "donderdag", "vrijdag", "zaterdag", "zondag",
)
"""Weekday names indexed by date.weekday()"""


# ==================== Column Mapping ====================

@dataclass
class ColumnAssignment:
    """Binds one spreadsheet column to a canonical field."""
    column_index: int
    canonical_field: CanonicalField
    header_label: Optional[str] = None

    def apply(self, rows: Sequence[Sequence[Any]]) -> pd.Series:
        """Extract this column's raw cells from a row grid."""
        return pd.Series(
            [row[self.column_index] if self.column_index < len(row) else None for row in rows],
            dtype=object,
        )


@dataclass
class TollColumnMapping:
    """
    Resolved column layout of a toll export.

    method records how the layout was found: 'explicit' (operator supplied),
    'header' (label detection) or 'inferred' (content scoring).
    """
    assignments: Dict[CanonicalField, ColumnAssignment] = field(default_factory=dict)
    header_row_index: Optional[int] = None
    method: str = "header"
    headers: List[str] = field(default_factory=list)

    def assign(self, canonical_field: CanonicalField, column_index: int, header_label: Optional[str] = None):
        self.assignments[canonical_field] = ColumnAssignment(column_index, canonical_field, header_label)

    def has(self, canonical_field: CanonicalField) -> bool:
        return canonical_field in self.assignments

    def index_of(self, canonical_field: CanonicalField) -> Optional[int]:
        assignment = self.assignments.get(canonical_field)
        return assignment.column_index if assignment else None

    def missing_required(self) -> List[str]:
        return sorted(f.value for f in REQUIRED_MAPPED_FIELDS if f not in self.assignments)

    @property
    def data_start_index(self) -> int:
        """First row index holding data."""
        return 0 if self.header_row_index is None else self.header_row_index + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "header_row_index": self.header_row_index,
            "headers": self.headers,
            "columns": {
                f.value: {"index": a.column_index, "label": a.header_label}
                for f, a in self.assignments.items()
            },
        }


def apply_column_mapping(rows: Sequence[Sequence[Any]], mapping: TollColumnMapping) -> pd.DataFrame:
    """
    Project raw data rows onto canonical columns.

    Cells are left raw; typing happens in normalize.py.

    Args:
        rows: Data rows (header row already excluded)
        mapping: Resolved TollColumnMapping

    Returns:
        DataFrame with one column per mapped CanonicalField
    """
    missing = mapping.missing_required()
    if missing:
        raise ValueError(
            f"Column mapping is missing required fields: {missing}. \n"
            f"Available columns: {mapping.headers}"
        )

    result_data = {
        canonical_field.value: assignment.apply(rows)
        for canonical_field, assignment in mapping.assignments.items()
    }
    result_df = pd.DataFrame(result_data, index=range(len(rows)))

    logger.debug(f"[MAPPING] {mapping.method} mapping -> {result_df.shape}, columns: {result_df.columns.tolist()}")
    return result_df
