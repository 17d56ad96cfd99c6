"""
Toll Engine - Toll usage import and invoice reconciliation modules.
"""
from .io import DataSourceLoader, ExcelSourceLoader, CsvSourceLoader, load_rows
from .inference import detect_header_row, infer_columns, resolve_column_mapping, score_columns
from .normalize import normalize_row, parse_date, parse_money, parse_vat, map_country, week_id_for, weekday_name
from .dedup import Deduplicator, dedup_key
from .importer import ImportResult, import_rows, import_file, preview_columns
from .descriptions import DescriptionRule, LineDescriptionMatcher, default_matcher
from .reconcile import (
    ApplyResult,
    group_key,
    build_groups,
    find_target_invoice,
    apply,
    unapply,
    reconcile,
    reconcile_invoice,
)
from .findings import Finding, check_consistency
from .reporting import dashboard_query, concept_invoice_toll_status
from .canonical_fields import CanonicalField, GROUP_KEY_FIELDS
from .schemas import ApplicationLink, TollRecord, Invoice, InvoiceLine, Group
from .errors import (
    TollEngineError,
    ParseError,
    ColumnMappingError,
    DuplicateError,
    ApplyConflict,
    ConflictReason,
    StorageError,
)

__all__ = [
    "DataSourceLoader",
    "ExcelSourceLoader",
    "CsvSourceLoader",
    "load_rows",
    "detect_header_row",
    "infer_columns",
    "resolve_column_mapping",
    "score_columns",
    "normalize_row",
    "parse_date",
    "parse_money",
    "parse_vat",
    "map_country",
    "week_id_for",
    "weekday_name",
    "Deduplicator",
    "dedup_key",
    "ImportResult",
    "import_rows",
    "import_file",
    "preview_columns",
    "DescriptionRule",
    "LineDescriptionMatcher",
    "default_matcher",
    "ApplyResult",
    "group_key",
    "build_groups",
    "find_target_invoice",
    "apply",
    "unapply",
    "reconcile",
    "reconcile_invoice",
    "Finding",
    "check_consistency",
    "dashboard_query",
    "concept_invoice_toll_status",
    "CanonicalField",
    "GROUP_KEY_FIELDS",
    "ApplicationLink",
    "TollRecord",
    "Invoice",
    "InvoiceLine",
    "Group",
    "TollEngineError",
    "ParseError",
    "ColumnMappingError",
    "DuplicateError",
    "ApplyConflict",
    "ConflictReason",
    "StorageError",
]
