"""
Column inference for toll exports.

Two strategies resolve which spreadsheet column holds which canonical field:
1. detect_header_row: label-based, scans the top rows for known header labels
2. infer_columns: content-based, scores every column over a sample of rows

resolve_column_mapping combines them with an optional operator-supplied mapping.
"""
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from config import config
from .canonical_fields import (
    CanonicalField,
    INFERENCE_PRIORITY,
    MAPPABLE_FIELDS,
    REQUIRED_HEADER_FIELDS,
)
from .errors import ColumnMappingError
from .mappings import COUNTRY_KEYWORDS, HEADER_LABEL_VARIANTS, TollColumnMapping
from .normalize import is_blank, is_empty_row, map_country, parse_date, parse_money

logger = logging.getLogger(__name__)

# Operator-facing names accepted in explicit mappings
FIELD_ALIASES: Dict[str, CanonicalField] = {
    "transaction_date": CanonicalField.USAGE_DATE,
    "transaction_time": CanonicalField.USAGE_TIME,
    "plate": CanonicalField.LICENSE_PLATE,
    "vat": CanonicalField.VAT_RATE,
}

_PLATE_RE = re.compile(r"^[A-Z0-9]{1,4}(?:[- ]?[A-Z0-9]{1,4}){1,3}$")
_PERCENT_NUMBER_RE = re.compile(r"^\d+(?:[.,]\d+)?$")


@dataclass
class HeaderDetection:
    """Result of header-row detection."""
    index: int
    labels: List[Optional[CanonicalField]]
    raw_labels: List[str] = field(default_factory=list)
    score: int = 0


def normalize_label(cell: Any) -> Optional[CanonicalField]:
    """Map a header cell to a canonical field by substring match on known label variants."""
    if is_blank(cell):
        return None
    key = " ".join(str(cell).strip().lower().split())
    for canonical_field, variants in HEADER_LABEL_VARIANTS:
        if any(variant in key for variant in variants):
            return canonical_field
    return None


def detect_header_row(rows: Sequence[Sequence[Any]], max_scan: Optional[int] = None) -> Optional[HeaderDetection]:
    """
    Find the header row among the first rows of a sheet.

    Each row is scored by how many of country / license_plate / usage_date
    its cells name. The highest score wins; the first row wins ties. A row
    holding a plate or a date is data and scores 0, so a country name such
    as "Nederland" cannot turn a data row into a header.

    Returns:
        HeaderDetection, or None when rows is empty
    """
    limit = min(len(rows), max_scan or config.imports.header_scan_rows)
    best = None
    for i in range(limit):
        labels = [normalize_label(cell) for cell in rows[i]]
        if _looks_like_data_row(rows[i]):
            score = 0
        else:
            score = len({label for label in labels if label in REQUIRED_HEADER_FIELDS})
        if best is None or score > best.score:
            best = HeaderDetection(
                index=i,
                labels=labels,
                raw_labels=["" if is_blank(c) else str(c).strip() for c in rows[i]],
                score=score,
            )
    return best


# ==================== Content Scoring ====================

def _looks_like_plate(cell: Any) -> bool:
    if is_blank(cell) or not isinstance(cell, str):
        return False
    text = " ".join(cell.strip().upper().split())
    compact = re.sub(r"[- ]", "", text)
    if not (5 <= len(compact) <= 9):
        return False
    if not (re.search(r"[A-Z]", compact) and re.search(r"\d", compact)):
        return False
    return bool(_PLATE_RE.match(text))


def _looks_like_data_row(row: Sequence[Any]) -> bool:
    return any(_looks_like_plate(cell) or parse_date(cell) is not None for cell in row)


def _looks_like_country(cell: Any) -> bool:
    if is_blank(cell) or not isinstance(cell, str):
        return False
    text = cell.strip()
    if re.fullmatch(r"[A-Za-z]{2}", text):
        return True
    return map_country(text) in COUNTRY_KEYWORDS


def _looks_like_amount(cell: Any) -> bool:
    amount = parse_money(cell)
    return amount is not None and amount >= 0


def _looks_like_vat(cell: Any) -> bool:
    """A fraction in [0, 1] or a whole percentage in [0, 100]."""
    if is_blank(cell) or isinstance(cell, bool):
        return False
    text = str(cell).replace("%", "").strip()
    if not _PERCENT_NUMBER_RE.match(text):
        return False
    number = Decimal(text.replace(",", "."))
    if number <= 1:
        return True
    return number <= 100 and number == number.to_integral_value()


FIELD_PREDICATES = {
    CanonicalField.USAGE_DATE: lambda cell: parse_date(cell) is not None,
    CanonicalField.LICENSE_PLATE: _looks_like_plate,
    CanonicalField.COUNTRY: _looks_like_country,
    CanonicalField.AMOUNT: _looks_like_amount,
    CanonicalField.VAT_RATE: _looks_like_vat,
}


def score_columns(sample_rows: Sequence[Sequence[Any]]) -> pd.DataFrame:
    """
    Score every column against every inferable field.

    Returns:
        DataFrame indexed by field name with one column per column index,
        holding the fraction of non-empty sample rows whose cell fits the field
    """
    rows = [row for row in sample_rows if not is_empty_row(row)]
    width = max((len(row) for row in rows), default=0)
    fields = [f.value for f in INFERENCE_PRIORITY]
    if not rows or width == 0:
        return pd.DataFrame(0.0, index=fields, columns=[])

    grid = pd.DataFrame([list(row) + [None] * (width - len(row)) for row in rows], dtype=object)
    scores = {
        f.value: grid.apply(lambda column, predicate=FIELD_PREDICATES[f]: column.map(predicate).mean())
        for f in INFERENCE_PRIORITY
    }
    return pd.DataFrame(scores).T.reindex(fields).astype(float)


def infer_columns(
    sample_rows: Sequence[Sequence[Any]],
    min_score: Optional[float] = None,
    exclude_columns: Iterable[int] = (),
    skip_fields: Iterable[CanonicalField] = (),
) -> Dict[CanonicalField, int]:
    """
    Assign columns to fields from cell content.

    Fields are assigned in priority order date -> plate -> country -> amount -> vat.
    An assigned column leaves the candidate pool, ties go to the lowest column
    index, and a field stays unassigned when its best score is below min_score.

    Args:
        sample_rows: Rows to score (truncated to the configured sample size)
        min_score: Minimum fraction required to assign a field
        exclude_columns: Column indexes already taken
        skip_fields: Fields already resolved elsewhere
    """
    if min_score is None:
        min_score = config.imports.inference_min_score
    sample = list(sample_rows)[:config.imports.inference_sample_rows]
    scores = score_columns(sample)

    taken = set(exclude_columns)
    skip = set(skip_fields)
    assigned: Dict[CanonicalField, int] = {}
    for canonical_field in INFERENCE_PRIORITY:
        if canonical_field in skip:
            continue
        available = [c for c in scores.columns if c not in taken]
        if not available:
            break
        candidates = scores.loc[canonical_field.value, available]
        best_column = candidates.idxmax()
        best_score = candidates[best_column]
        if best_score >= min_score:
            assigned[canonical_field] = int(best_column)
            taken.add(best_column)
            logger.debug(f"[INFERENCE] {canonical_field.value} -> column {best_column} (score {best_score:.2f})")
    return assigned


# ==================== Mapping Resolution ====================

def _canonical_field_for(name: str) -> Optional[CanonicalField]:
    key = str(name).strip().lower()
    if key in FIELD_ALIASES:
        return FIELD_ALIASES[key]
    try:
        canonical_field = CanonicalField(key)
    except ValueError:
        return None
    return canonical_field if canonical_field in MAPPABLE_FIELDS else None


def _find_header_index(headers: List[str], label: str) -> Optional[int]:
    """Exact label match first, then case-insensitive."""
    wanted = str(label).strip()
    if not wanted:
        return None
    for i, header in enumerate(headers):
        if header == wanted:
            return i
    lowered = wanted.lower()
    for i, header in enumerate(headers):
        if header.lower() == lowered:
            return i
    return None


def _explicit_mapping(
    rows: Sequence[Sequence[Any]],
    column_mapping: Dict[str, Union[str, int]],
    detection: Optional[HeaderDetection],
) -> TollColumnMapping:
    uses_labels = any(isinstance(v, str) and v.strip() for v in column_mapping.values())
    if detection is not None and (detection.score > 0 or uses_labels):
        header_index = detection.index if detection.score > 0 else 0
        headers = ["" if is_blank(c) else str(c).strip() for c in rows[header_index]]
    else:
        header_index = None
        headers = []

    mapping = TollColumnMapping(header_row_index=header_index, method="explicit", headers=headers)
    for name, target in column_mapping.items():
        if target is None or (isinstance(target, str) and not target.strip()):
            continue
        canonical_field = _canonical_field_for(name)
        if canonical_field is None:
            logger.warning(f"[INFERENCE] Ignoring unknown mapping key '{name}'")
            continue
        if isinstance(target, int) and not isinstance(target, bool):
            label = headers[target] if target < len(headers) else None
            mapping.assign(canonical_field, target, label)
            continue
        index = _find_header_index(headers, target)
        if index is None:
            logger.warning(f"[INFERENCE] Column '{target}' for {canonical_field.value} not found in headers")
            continue
        mapping.assign(canonical_field, index, headers[index])
    return mapping


def resolve_column_mapping(
    rows: Sequence[Sequence[Any]],
    column_mapping: Optional[Dict[str, Union[str, int]]] = None,
) -> TollColumnMapping:
    """
    Resolve the column layout of a sheet.

    An explicit operator mapping (field -> header label or column index) wins.
    Otherwise the detected header row supplies labelled columns and content
    inference fills in required fields the labels did not cover.

    Raises:
        ColumnMappingError: If license_plate, usage_date or amount stay unresolved
    """
    detection = detect_header_row(rows)

    if column_mapping:
        mapping = _explicit_mapping(rows, column_mapping, detection)
    else:
        if detection is not None and detection.score > 0:
            mapping = TollColumnMapping(
                header_row_index=detection.index,
                method="header",
                headers=detection.raw_labels,
            )
            for index, label in enumerate(detection.labels):
                if label is not None and not mapping.has(label):
                    mapping.assign(label, index, detection.raw_labels[index])
        else:
            mapping = TollColumnMapping(header_row_index=None, method="inferred")

        is_valid, _ = config.imports.column_mapping.validate([f.value for f in mapping.assignments])
        if not is_valid:
            data_rows = rows[mapping.data_start_index:]
            taken = [a.column_index for a in mapping.assignments.values()]
            inferred = infer_columns(data_rows, exclude_columns=taken, skip_fields=mapping.assignments.keys())
            for canonical_field, index in inferred.items():
                label = mapping.headers[index] if index < len(mapping.headers) else None
                mapping.assign(canonical_field, index, label)
            if inferred:
                mapping.method = "inferred"
            inferred_names = {f.value: i for f, i in inferred.items()}
            logger.info(f"[INFERENCE] Inferred columns: {inferred_names}")

    is_valid, missing = config.imports.column_mapping.validate([f.value for f in mapping.assignments])
    if not is_valid:
        available = mapping.headers or (detection.raw_labels if detection is not None else [])
        raise ColumnMappingError(missing, available)

    logger.info(f"[INFERENCE] Resolved {mapping.method} mapping: {mapping.to_dict()['columns']}")
    return mapping
