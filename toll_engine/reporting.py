"""
Dashboard read model for toll reconciliation.
"""
import logging
from collections import Counter
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from config import config
from .canonical_fields import CanonicalField
from .descriptions import DescriptionContext, LineDescriptionMatcher, default_matcher
from .errors import ApplyConflict, ConflictReason
from .normalize import normalize_plate, week_id_for
from .reconcile import ReconcileContext, build_groups, is_concept, parse_invoice_reference
from .schemas import records_to_frame

logger = logging.getLogger(__name__)

PLATE = CanonicalField.LICENSE_PLATE.value
USAGE_DATE = CanonicalField.USAGE_DATE.value
AMOUNT = CanonicalField.AMOUNT.value
WEEK_ID = CanonicalField.WEEK_ID.value
INVOICE_ID = CanonicalField.INVOICE_ID.value
INVOICE_LINE_ID = CanonicalField.INVOICE_LINE_ID.value
RECORD_ID = CanonicalField.RECORD_ID.value


def _matched_rows(frame: pd.DataFrame, invoices: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Applied records totalled per (invoice line, plate, date)."""
    applied = frame[frame[INVOICE_LINE_ID].notna()]
    if applied.empty:
        return []

    summary = applied.groupby([INVOICE_ID, INVOICE_LINE_ID, PLATE, USAGE_DATE]).agg(
        total=(AMOUNT, "sum"),
        record_count=(RECORD_ID, "count"),
    ).reset_index()

    rows = []
    for row in summary.to_dict("records"):
        invoice = invoices.get(row[INVOICE_ID])
        rows.append({
            INVOICE_ID: row[INVOICE_ID],
            "reference": invoice.reference if invoice else None,
            INVOICE_LINE_ID: row[INVOICE_LINE_ID],
            PLATE: row[PLATE],
            USAGE_DATE: row[USAGE_DATE].isoformat(),
            "total": round(float(row["total"]), 2),
            "record_count": int(row["record_count"]),
        })
    return sorted(rows, key=lambda r: (r[USAGE_DATE], r[PLATE]))


def _unmatched_rows(storage, records, context: ReconcileContext,
                    matcher: LineDescriptionMatcher) -> List[Dict[str, Any]]:
    """Unapplied groups with the invoice they would go to, or why there is none."""
    rows = []
    for group in build_groups(records):
        row = group.to_dict()
        row.update({"reason": None, "detail": "", "suggested_invoice_id": None, "suggested_reference": None})
        try:
            invoice = context.target_for(group)
        except ApplyConflict as e:
            row.update({"reason": e.reason.value, "detail": e.detail})
            rows.append(row)
            continue

        row.update({"suggested_invoice_id": invoice.id, "suggested_reference": invoice.reference})
        duplicates = matcher.find_duplicate_lines(
            storage.list_invoice_lines(invoice.id), DescriptionContext.for_group(group)
        )
        if duplicates:
            row.update({
                "reason": ConflictReason.DUPLICATE_LINE.value,
                "detail": f"line {duplicates[0].id} already bills {duplicates[0].description!r}",
            })
        rows.append(row)
    return rows


def _missing_toll(storage, context: ReconcileContext, matcher: LineDescriptionMatcher, since: date,
                  expected_toll_days: Optional[Iterable[Tuple[str, date]]]) -> List[Dict[str, Any]]:
    """
    Toll the concept invoices still wait for.

    - placeholder: an unfilled toll line no record links to
    - expected_day: a day the plate drove toll roads without a toll line on its week invoice
    """
    linked_lines = {
        r.application_link.invoice_line_id for r in storage.list_records() if r.application_link is not None
    }

    missing = []
    for invoice in storage.list_invoices(status=config.reconciliation.concept_status):
        ref = parse_invoice_reference(invoice.reference)
        for line in storage.list_invoice_lines(invoice.id):
            if not matcher.is_placeholder(line) or line.id in linked_lines:
                continue
            line_date = matcher.line_date(line)
            if line_date is not None and line_date < since:
                continue
            missing.append({
                "kind": "placeholder",
                INVOICE_ID: invoice.id,
                "reference": invoice.reference,
                INVOICE_LINE_ID: line.id,
                "description": line.description,
                PLATE: ref.plate if ref else None,
                WEEK_ID: ref.week_id if ref else None,
                USAGE_DATE: line_date.isoformat() if line_date else None,
            })

    for plate, usage_date in expected_toll_days or ():
        plate = normalize_plate(plate)
        if not plate or usage_date < since:
            continue
        week_id = week_id_for(usage_date)
        invoices = context.invoices_for(week_id, plate)
        billed = any(
            matcher.is_toll_line(line) and matcher.line_date(line) == usage_date
            for invoice in invoices
            for line in storage.list_invoice_lines(invoice.id)
        )
        if billed:
            continue
        missing.append({
            "kind": "expected_day",
            INVOICE_ID: invoices[0].id if len(invoices) == 1 else None,
            "reference": invoices[0].reference if len(invoices) == 1 else None,
            INVOICE_LINE_ID: None,
            "description": None,
            PLATE: plate,
            WEEK_ID: week_id,
            USAGE_DATE: usage_date.isoformat(),
        })
    return missing


def _week_overview(frame: pd.DataFrame, missing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Matched and unmatched amounts per (week, plate), with the open toll count."""
    missing_counts = Counter(
        (m[WEEK_ID], m[PLATE]) for m in missing if m[WEEK_ID] and m[PLATE]
    )

    totals: Dict[Tuple[str, str], Dict[str, float]] = {}
    if not frame.empty:
        applied = frame[INVOICE_LINE_ID].notna()
        amounts = frame.assign(
            matched_amount=frame[AMOUNT].where(applied, 0.0),
            unmatched_amount=frame[AMOUNT].where(~applied, 0.0),
        )
        summary = amounts.groupby([WEEK_ID, PLATE]).agg(
            matched_amount=("matched_amount", "sum"),
            unmatched_amount=("unmatched_amount", "sum"),
        )
        for (week_id, plate), row in summary.iterrows():
            totals[(week_id, plate)] = {
                "matched_amount": round(float(row["matched_amount"]), 2),
                "unmatched_amount": round(float(row["unmatched_amount"]), 2),
            }

    overview = []
    for key in sorted(set(totals) | set(missing_counts)):
        week_id, plate = key
        amounts = totals.get(key, {"matched_amount": 0.0, "unmatched_amount": 0.0})
        missing_count = missing_counts.get(key, 0)
        overview.append({
            WEEK_ID: week_id,
            PLATE: plate,
            "matched_amount": amounts["matched_amount"],
            "unmatched_amount": amounts["unmatched_amount"],
            "missing_toll_count": missing_count,
            "ok": amounts["unmatched_amount"] == 0 and missing_count == 0,
        })
    return overview


def dashboard_query(
    storage,
    days_back: Optional[int] = None,
    today: Optional[date] = None,
    expected_toll_days: Optional[Iterable[Tuple[str, date]]] = None,
    matcher: Optional[LineDescriptionMatcher] = None,
) -> Dict[str, Any]:
    """
    Reconciliation state for records used in the last days_back days.

    Args:
        storage: StorageService
        days_back: Window size (defaults to config.dashboard.default_days_back)
        today: Window end override
        expected_toll_days: Optional (plate, date) pairs from an external timesheet source
        matcher: Description rule set

    Returns:
        Dict with matched, unmatched, missing_toll and week_overview lists
    """
    if days_back is None:
        days_back = config.dashboard.default_days_back
    matcher = matcher or default_matcher
    since = (today or date.today()) - timedelta(days=days_back)

    records = storage.list_records(since=since)
    invoices = {i.id: i for i in storage.list_invoices()}
    context = ReconcileContext(storage)
    frame = records_to_frame(records)

    matched = _matched_rows(frame, invoices)
    unmatched = _unmatched_rows(storage, [r for r in records if not r.is_applied], context, matcher)
    missing = _missing_toll(storage, context, matcher, since, expected_toll_days)
    overview = _week_overview(frame, missing)

    logger.info(
        f"[DASHBOARD] since {since}: {len(records)} records, {len(matched)} matched rows, "
        f"{len(unmatched)} unmatched groups, {len(missing)} missing toll"
    )
    return {
        "since": since.isoformat(),
        "matched": matched,
        "unmatched": unmatched,
        "missing_toll": missing,
        "week_overview": overview,
    }


def concept_invoice_toll_status(
    storage,
    needs_toll_only: bool = False,
    limit: Optional[int] = None,
    matcher: Optional[LineDescriptionMatcher] = None,
) -> List[Dict[str, Any]]:
    """
    Concept invoices with their number of open toll placeholder lines.

    toll_status is config.reconciliation.status_needs_toll while any placeholder
    is open, else status_toll_added. Newest invoice date first.
    """
    matcher = matcher or default_matcher
    invoices = [i for i in storage.list_invoices() if is_concept(i)]
    invoices.sort(key=lambda i: (i.invoice_date or date.min, i.id), reverse=True)

    result = []
    for invoice in invoices:
        open_lines = sum(1 for line in storage.list_invoice_lines(invoice.id) if matcher.is_placeholder(line))
        if needs_toll_only and open_lines == 0:
            continue
        entry = invoice.to_dict()
        entry["open_toll_lines"] = open_lines
        entry["toll_status"] = (
            config.reconciliation.status_needs_toll if open_lines
            else config.reconciliation.status_toll_added
        )
        result.append(entry)
        if limit is not None and len(result) >= limit:
            break
    return result
