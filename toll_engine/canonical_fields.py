"""
Canonical field definitions for the Toll Reconciliation Engine.

This module is the single source of truth for all field names used throughout
the importer, reconciler, reporting and storage layers. Raw spreadsheet header
labels should NEVER be referenced outside of mappings.py.
"""
from enum import Enum
from typing import Tuple, FrozenSet


class CanonicalField(str, Enum):
    """
    Canonical field names used throughout the toll engine.

    Inheriting from str makes these usable as dictionary keys and
    compatible with pandas DataFrame column operations.
    """

    # ==================== Identifiers ====================
    RECORD_ID = "id"
    """Unique identifier for a toll record"""

    INVOICE_ID = "invoice_id"
    """Identifier of the invoice a record is billed on"""

    INVOICE_LINE_ID = "invoice_line_id"
    """Identifier of the invoice line a record is billed on"""

    # ==================== Usage Facts ====================
    COUNTRY = "country"
    """ISO-2 country code where the toll was incurred"""

    LICENSE_PLATE = "license_plate"
    """Normalized (uppercased) vehicle license plate"""

    USAGE_DATE = "usage_date"
    """Calendar date of the toll usage"""

    USAGE_TIME = "usage_time"
    """Clock time of the toll usage (HH:MM:SS), optional"""

    AMOUNT = "amount"
    """VAT-exclusive toll amount"""

    VAT_RATE = "vat_rate"
    """VAT percentage (0-100)"""

    LOCATION = "location"
    """Free-text location or route, optional"""

    # ==================== Derived Time Dimensions ====================
    WEEK_ID = "week_id"
    """ISO week bucket (YYYY-WW)"""

    WEEKDAY = "weekday"
    """Dutch weekday name of the usage date"""

    # ==================== Provenance & Link State ====================
    SOURCE = "source"
    """Provenance label (e.g. uploaded file name)"""

    CREATED_AT = "created_at"
    """Timestamp the record was imported"""

    APPLIED_AT = "applied_at"
    """Timestamp the record was linked to an invoice line"""

    # ==================== Aggregates ====================
    TOTAL = "total"
    """Sum of amounts within a group"""

    RECORD_COUNT = "record_count"
    """Number of records within a group"""


# ==================== Field Groups ====================

# Required fields for header detection scoring
REQUIRED_HEADER_FIELDS: FrozenSet[CanonicalField] = frozenset({
    CanonicalField.COUNTRY,
    CanonicalField.LICENSE_PLATE,
    CanonicalField.USAGE_DATE,
})
"""Fields whose header labels count towards the header-row score"""

# Fields a column mapping must resolve before rows can be normalized
REQUIRED_MAPPED_FIELDS: FrozenSet[CanonicalField] = frozenset({
    CanonicalField.LICENSE_PLATE,
    CanonicalField.USAGE_DATE,
    CanonicalField.AMOUNT,
})
"""Minimum mapped columns for an import"""

# Fields recognised in spreadsheet headers
MAPPABLE_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.COUNTRY,
    CanonicalField.LICENSE_PLATE,
    CanonicalField.USAGE_DATE,
    CanonicalField.USAGE_TIME,
    CanonicalField.AMOUNT,
    CanonicalField.VAT_RATE,
    CanonicalField.LOCATION,
)
"""Fields a spreadsheet column can be mapped to"""

# Inference assigns columns in this order
INFERENCE_PRIORITY: Tuple[CanonicalField, ...] = (
    CanonicalField.USAGE_DATE,
    CanonicalField.LICENSE_PLATE,
    CanonicalField.COUNTRY,
    CanonicalField.AMOUNT,
    CanonicalField.VAT_RATE,
)
"""Priority order for content-based column inference"""

# Group key fields define the billing grain
GROUP_KEY_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.WEEK_ID,
    CanonicalField.WEEKDAY,
    CanonicalField.LICENSE_PLATE,
    CanonicalField.COUNTRY,
    CanonicalField.VAT_RATE,
)
"""Fields that define one billed toll line"""


def get_field_names(fields) -> Tuple[str, ...]:
    """
    Convert a collection of CanonicalField enums to a tuple of string names.

    Useful for pandas operations that require string column names.
    """
    return tuple(f.value for f in fields)

