"""
Error taxonomy for the toll engine.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class TollEngineError(Exception):
    """Base class for toll engine errors."""


class ParseError(TollEngineError):
    """A single row could not be normalized. Recorded as a skip, never aborts a batch."""

    def __init__(self, reason: str, row_number: Optional[int] = None):
        self.reason = reason
        self.row_number = row_number
        super().__init__(f"Row {row_number}: {reason}" if row_number is not None else reason)


class ColumnMappingError(TollEngineError, ValueError):
    """Required columns could not be resolved from the spreadsheet."""

    def __init__(self, missing: List[str], available: Optional[List[str]] = None):
        self.missing = list(missing)
        self.available = list(available or [])
        message = f"Missing required columns: {self.missing}"
        if self.available:
            message += f"\nAvailable columns: {self.available}"
        super().__init__(message)


class DuplicateError(TollEngineError):
    """Informational: an incoming row matches an existing usage fact."""

    def __init__(self, classification: str, row_number: Optional[int] = None):
        self.classification = classification
        self.row_number = row_number
        super().__init__(f"Row {row_number}: {classification}")

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row_number, "reason": "already imported", "classification": self.classification}


class ConflictReason(str, Enum):
    """Distinct rejection reasons for apply."""
    PLATE_MISMATCH = "plate_mismatch"
    WEEK_MISMATCH = "week_mismatch"
    ALREADY_APPLIED = "already_applied"
    DUPLICATE_LINE = "duplicate_line"
    NO_TARGET = "no_target"
    AMBIGUOUS_TARGET = "ambiguous_target"
    INVOICE_NOT_FOUND = "invoice_not_found"
    INVOICE_NOT_CONCEPT = "invoice_not_concept"
    MIXED_GROUP = "mixed_group"
    UNKNOWN_RECORDS = "unknown_records"


class ApplyConflict(TollEngineError):
    """Apply was rejected by one of its guards."""

    def __init__(self, reason: ConflictReason, detail: str = ""):
        self.reason = ConflictReason(reason)
        self.detail = detail
        super().__init__(f"{self.reason.value}: {detail}" if detail else self.reason.value)


class StorageError(TollEngineError):
    """Persistence failed. Propagated to the caller verbatim."""
