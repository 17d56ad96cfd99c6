"""
Toll export import pipeline.

raw rows -> column mapping -> normalization -> deduplication -> chunked insert

Rows that cannot be normalized are skipped with a reason; the batch continues.
Each chunk is committed on its own, so a failure part-way leaves earlier chunks
stored. Re-running the same import is safe because accepted keys are deduplicated.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from config import config
from .canonical_fields import CanonicalField
from .dedup import Deduplicator, DUPLICATE_LINKED, DUPLICATE_UNLINKED, NEW
from .errors import DuplicateError, ParseError
from .inference import resolve_column_mapping
from .io import load_rows
from .mappings import apply_column_mapping
from .normalize import MIDNIGHT, is_empty_row, normalize_row
from .reconcile import reconcile

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Counts and diagnostics of one import."""
    inserted: int = 0
    duplicates_unlinked: int = 0
    duplicates_linked: int = 0
    skipped: int = 0
    warnings: List[str] = field(default_factory=list)
    skipped_rows: List[Dict[str, Any]] = field(default_factory=list)
    column_mapping: Dict[str, Any] = field(default_factory=dict)
    chunks_committed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "duplicates_unlinked": self.duplicates_unlinked,
            "duplicates_linked": self.duplicates_linked,
            "skipped": self.skipped,
            "warnings": self.warnings,
            "skipped_rows": self.skipped_rows,
            "column_mapping": self.column_mapping,
            "chunks_committed": self.chunks_committed,
        }


def _mapping_warnings(mapping, default_country: str) -> List[str]:
    warnings = []
    if not mapping.has(CanonicalField.COUNTRY):
        warnings.append(f"No country column found; all rows are booked as {default_country}.")
    if not mapping.has(CanonicalField.USAGE_TIME):
        warnings.append(
            "No time column mapped; times are taken from the date column where present. "
            "Rows without a time deduplicate on plate, date, country, amount and vat only."
        )
    if not mapping.has(CanonicalField.VAT_RATE):
        warnings.append("No VAT column found; the country default VAT rate is used.")
    return warnings


def import_rows(
    storage,
    rows: Sequence[Sequence[Any]],
    column_mapping: Optional[Dict[str, Union[str, int]]] = None,
    source: str = "upload",
    chunk_size: Optional[int] = None,
    default_country: Optional[str] = None,
) -> ImportResult:
    """
    Import raw spreadsheet rows as toll records.

    Args:
        storage: StorageService
        rows: Raw row grid (header row included)
        column_mapping: Optional operator mapping, canonical field -> header label or column index
        source: Provenance label stored on each record
        chunk_size: Rows per committed chunk
        default_country: Country for exports without a country column

    Returns:
        ImportResult

    Raises:
        ColumnMappingError: If plate, date or amount columns cannot be resolved
        StorageError: If a chunk cannot be committed (earlier chunks stay committed)
    """
    chunk_size = chunk_size or config.imports.chunk_size
    default_country = (default_country or config.imports.default_country).upper()

    mapping = resolve_column_mapping(rows, column_mapping)
    start = mapping.data_start_index
    frame = apply_column_mapping(rows[start:], mapping)
    mapped_rows = frame.to_dict("records")

    result = ImportResult(
        warnings=_mapping_warnings(mapping, default_country),
        column_mapping=mapping.to_dict(),
    )
    dedup = Deduplicator(storage.list_records())
    midnight_or_missing = 0
    normalized_count = 0

    logger.info(f"[IMPORT] {source}: {len(mapped_rows)} data rows, {len(dedup)} existing keys, chunk size {chunk_size}")

    for chunk_start in range(0, len(mapped_rows), chunk_size):
        accepted = []
        for offset, row in enumerate(mapped_rows[chunk_start:chunk_start + chunk_size]):
            # 1-based spreadsheet row number
            row_number = start + chunk_start + offset + 1
            if is_empty_row(row.values()):
                continue
            try:
                record = normalize_row(row, source, default_country, row_number)
            except ParseError as e:
                logger.debug(f"[IMPORT] Skipping row {row_number}: {e.reason}")
                result.skipped += 1
                result.skipped_rows.append({"row": row_number, "reason": e.reason})
                continue

            normalized_count += 1
            if record.usage_time in (None, MIDNIGHT):
                midnight_or_missing += 1

            classification = dedup.classify(record)
            if classification == NEW:
                dedup.accept(record)
                accepted.append(record)
                continue

            if classification == DUPLICATE_LINKED:
                result.duplicates_linked += 1
            elif classification == DUPLICATE_UNLINKED:
                result.duplicates_unlinked += 1
            result.skipped_rows.append(DuplicateError(classification, row_number).to_dict())

        if accepted:
            result.inserted += storage.insert_records(accepted)
        result.chunks_committed += 1
        logger.info(f"[IMPORT] Chunk {result.chunks_committed}: {len(accepted)} inserted (total {result.inserted})")

    if normalized_count and midnight_or_missing / normalized_count > config.imports.midnight_warning_ratio:
        result.warnings.append(
            f"{midnight_or_missing} of {normalized_count} rows have no time or 00:00; "
            "check the time column mapping."
        )

    for warning in result.warnings:
        logger.warning(f"[IMPORT] {warning}")
    logger.info(
        f"[IMPORT] {source}: inserted={result.inserted} duplicates_unlinked={result.duplicates_unlinked} "
        f"duplicates_linked={result.duplicates_linked} skipped={result.skipped}"
    )
    return result


def _preview_cell(cell: Any) -> Any:
    if cell is None or isinstance(cell, (bool, int, float, str)):
        return cell
    return str(cell)


def preview_columns(rows: Sequence[Sequence[Any]], sample_size: int = 5) -> Dict[str, Any]:
    """
    Header labels, the resolved mapping and a few data rows, for confirming a mapping.

    Raises:
        ColumnMappingError: If required columns cannot be resolved
    """
    mapping = resolve_column_mapping(rows)
    start = mapping.data_start_index
    sample = [[_preview_cell(cell) for cell in row] for row in rows[start:start + sample_size]]
    return {
        "headers": mapping.headers,
        "mapping": mapping.to_dict(),
        "sample_rows": sample,
    }


def import_file(
    storage,
    file_path: Path,
    filename: Optional[str] = None,
    column_mapping: Optional[Dict[str, Union[str, int]]] = None,
) -> Dict[str, Any]:
    """
    Load an uploaded export, import it and reconcile.

    Returns:
        Dict with 'import' (ImportResult dict) and 'reconcile' (reconcile summary)
    """
    source = filename or Path(file_path).name
    rows = load_rows(file_path, filename)
    import_result = import_rows(storage, rows, column_mapping, source=source)
    reconcile_result = reconcile(storage)
    return {
        "import": import_result.to_dict(),
        "reconcile": reconcile_result,
    }
