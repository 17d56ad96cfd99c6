"""
Reconciliation of toll records against concept invoices.

Records are grouped into billable units (one invoice line per group):
1. group_key / build_groups: (week, weekday, plate, country, vat) grain
2. find_target_invoice: concept invoice whose reference encodes week + plate
3. apply / unapply: link management guarded against double billing
4. reconcile: apply every unapplied group to its target, reporting the rest
"""
import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from config import config
from .canonical_fields import CanonicalField, GROUP_KEY_FIELDS, get_field_names
from .descriptions import DescriptionContext, LineDescriptionMatcher, default_matcher
from .errors import ApplyConflict, ConflictReason
from .findings import check_consistency
from .normalize import normalize_plate
from .schemas import ApplicationLink, Group, Invoice, InvoiceLine, TollRecord, records_to_frame

logger = logging.getLogger(__name__)

GROUP_KEY_COLUMNS = list(get_field_names(GROUP_KEY_FIELDS))

_REFERENCE_RE = re.compile(r"week\s+(\d{1,2})\s*-\s*(\d{4}).*\(([A-Za-z0-9 -]+)\)", re.IGNORECASE)


# ==================== Grouping ====================

def group_key(record: TollRecord) -> Tuple[str, str, str, str, int]:
    """(week_id, weekday, plate, country, vat_rate)"""
    return (record.week_id, record.weekday, record.license_plate, record.country, record.vat_rate)


def build_groups(records: Sequence[TollRecord]) -> List[Group]:
    """
    Aggregate records into billing groups.

    Returns:
        Groups ordered by usage date, plate, country and vat rate
    """
    if not records:
        return []

    by_id = {r.id: r for r in records}
    frame = records_to_frame(list(records))
    grouped = frame.groupby(GROUP_KEY_COLUMNS, sort=False)[CanonicalField.RECORD_ID.value].agg(list)

    groups = []
    for (week_id, weekday, plate, country, vat_rate), record_ids in grouped.items():
        members = tuple(sorted(
            (by_id[i] for i in record_ids),
            key=lambda r: (r.usage_time or "", r.id),
        ))
        groups.append(Group(
            week_id=week_id,
            weekday=weekday,
            license_plate=plate,
            country=country,
            vat_rate=int(vat_rate),
            usage_date=members[0].usage_date,
            records=members,
        ))
    return sorted(groups, key=lambda g: (g.usage_date, g.license_plate, g.country, g.vat_rate))


# ==================== Target Lookup ====================

@dataclass(frozen=True)
class InvoiceReference:
    """Week, year and plate encoded in an invoice reference."""
    week: int
    year: int
    plate: str

    @property
    def week_id(self) -> str:
        return f"{self.year}-{self.week:02d}"


def parse_invoice_reference(reference: Optional[str]) -> Optional[InvoiceReference]:
    """Parse 'Week 02 - 2026 (AB-12-CD)' style references."""
    if not reference:
        return None
    match = _REFERENCE_RE.search(reference)
    if not match:
        return None
    week, year, plate = match.groups()
    return InvoiceReference(week=int(week), year=int(year), plate=normalize_plate(plate))


def is_concept(invoice: Invoice) -> bool:
    return (invoice.status or "").lower() == config.reconciliation.concept_status.lower()


def find_target_invoice(group: Group, invoices: Iterable[Invoice]) -> Invoice:
    """
    The single concept invoice referencing the group's week and plate.

    Raises:
        ApplyConflict: no_target when nothing qualifies, ambiguous_target when
            several invoices qualify (never resolved by picking one)
    """
    candidates = []
    for invoice in invoices:
        if not is_concept(invoice):
            continue
        ref = parse_invoice_reference(invoice.reference)
        if ref and ref.week_id == group.week_id and ref.plate == group.license_plate:
            candidates.append(invoice)

    if not candidates:
        raise ApplyConflict(
            ConflictReason.NO_TARGET,
            f"no concept invoice for week {group.week_id} and plate {group.license_plate}",
        )
    if len(candidates) > 1:
        raise ApplyConflict(
            ConflictReason.AMBIGUOUS_TARGET,
            f"{len(candidates)} concept invoices match: {sorted(i.id for i in candidates)}",
        )
    return candidates[0]


class ReconcileContext:
    """
    Lookups scoped to one reconcile or dashboard call.

    Concept invoices are indexed once by (week_id, plate) and discarded with
    the context.
    """

    def __init__(self, storage):
        self.storage = storage
        self._targets: Optional[Dict[Tuple[str, str], List[Invoice]]] = None

    def _index(self) -> Dict[Tuple[str, str], List[Invoice]]:
        if self._targets is None:
            self._targets = defaultdict(list)
            for invoice in self.storage.list_invoices(status=config.reconciliation.concept_status):
                ref = parse_invoice_reference(invoice.reference)
                if ref is not None:
                    self._targets[(ref.week_id, ref.plate)].append(invoice)
        return self._targets

    def invoices_for(self, week_id: str, plate: str) -> List[Invoice]:
        return self._index().get((week_id, plate), [])

    def target_for(self, group: Group) -> Invoice:
        return find_target_invoice(group, self.invoices_for(group.week_id, group.license_plate))


# ==================== Apply / Unapply ====================

@dataclass
class ApplyResult:
    """Outcome of one apply call."""
    ok: bool
    reason: Optional[str] = None
    detail: str = ""
    invoice_id: Optional[str] = None
    invoice_line_id: Optional[str] = None
    total: Optional[Decimal] = None
    record_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {"ok": self.ok}
        if self.reason:
            result["reason"] = self.reason
            result["detail"] = self.detail
        if self.ok:
            result["invoice_id"] = self.invoice_id
            result["invoice_line_id"] = self.invoice_line_id
            result["total"] = f"{self.total:.2f}"
            result["record_ids"] = self.record_ids
        return result


def _resolve_group(storage, group_or_record_ids: Union[Group, Sequence[str]]) -> Group:
    if isinstance(group_or_record_ids, Group):
        return group_or_record_ids

    record_ids = list(dict.fromkeys(group_or_record_ids))
    if not record_ids:
        raise ApplyConflict(ConflictReason.UNKNOWN_RECORDS, "no record ids given")
    records = storage.get_records(record_ids)
    if len(records) != len(record_ids):
        found = {r.id for r in records}
        raise ApplyConflict(
            ConflictReason.UNKNOWN_RECORDS,
            f"unknown records: {[i for i in record_ids if i not in found]}",
        )
    keys = {group_key(r) for r in records}
    if len(keys) != 1:
        raise ApplyConflict(
            ConflictReason.MIXED_GROUP,
            f"records span {len(keys)} groups; one plate, date, country and vat rate required",
        )
    return build_groups(records)[0]


def _write_line(storage, lines: List[InvoiceLine], group: Group, invoice_id: str,
                matcher: LineDescriptionMatcher) -> InvoiceLine:
    """Fill a matching placeholder line, or append a new toll line."""
    context = DescriptionContext.for_group(group)
    total = group.total

    placeholder = matcher.find_placeholder(lines, context)
    if placeholder is not None:
        placeholder.quantity = Decimal("1")
        placeholder.unit_price = total
        placeholder.total = total
        placeholder.vat_rate = group.vat_rate
        if not matcher.get_rule("COUNTRY_LABEL").matches(placeholder, context):
            placeholder.description = matcher.format_line_description(context)
        logger.info(f"[APPLY] Filling placeholder line {placeholder.id} on invoice {invoice_id} with {total}")
        return storage.update_invoice_line(placeholder)

    line = InvoiceLine(
        id=str(uuid.uuid4()),
        invoice_id=invoice_id,
        description=matcher.format_line_description(context),
        quantity=Decimal("1"),
        unit_price=total,
        vat_rate=group.vat_rate,
        total=total,
    )
    logger.info(f"[APPLY] Adding toll line to invoice {invoice_id}: {line.description!r} {total}")
    return storage.add_invoice_line(line)


def _apply(storage, group_or_record_ids, invoice_id: str, matcher: LineDescriptionMatcher,
           now: Optional[datetime]) -> ApplyResult:
    group = _resolve_group(storage, group_or_record_ids)

    invoice = storage.get_invoice(invoice_id)
    if invoice is None:
        raise ApplyConflict(ConflictReason.INVOICE_NOT_FOUND, f"invoice {invoice_id} does not exist")
    if not is_concept(invoice):
        raise ApplyConflict(ConflictReason.INVOICE_NOT_CONCEPT, f"invoice {invoice_id} has status {invoice.status!r}")

    ref = parse_invoice_reference(invoice.reference)
    if ref is None or ref.plate != group.license_plate:
        raise ApplyConflict(
            ConflictReason.PLATE_MISMATCH,
            f"invoice reference {invoice.reference!r} does not encode plate {group.license_plate}",
        )
    if ref.week_id != group.week_id:
        raise ApplyConflict(
            ConflictReason.WEEK_MISMATCH,
            f"invoice is for week {ref.week_id}, records are in week {group.week_id}",
        )

    with storage.transaction():
        current = storage.get_records(group.record_ids)
        if len(current) != len(group.records):
            raise ApplyConflict(ConflictReason.UNKNOWN_RECORDS, "records were deleted")

        elsewhere = [
            r.id for r in current
            if r.application_link is not None and r.application_link.invoice_id != invoice_id
        ]
        if elsewhere:
            raise ApplyConflict(ConflictReason.ALREADY_APPLIED, f"records linked to another invoice: {elsewhere}")

        lines = storage.list_invoice_lines(invoice_id)
        duplicates = matcher.find_duplicate_lines(lines, DescriptionContext.for_group(group))
        if duplicates:
            raise ApplyConflict(
                ConflictReason.DUPLICATE_LINE,
                f"line {duplicates[0].id} already bills {duplicates[0].description!r}",
            )

        line = _write_line(storage, lines, group, invoice_id, matcher)
        link = ApplicationLink(invoice_id=invoice_id, invoice_line_id=line.id, applied_at=now or datetime.now())
        storage.link_records(group.record_ids, link)

    return ApplyResult(
        ok=True,
        invoice_id=invoice_id,
        invoice_line_id=line.id,
        total=group.total,
        record_ids=group.record_ids,
    )


def apply(
    storage,
    group_or_record_ids: Union[Group, Sequence[str]],
    invoice_id: str,
    matcher: Optional[LineDescriptionMatcher] = None,
    now: Optional[datetime] = None,
) -> ApplyResult:
    """
    Bill one group of toll records on one invoice line.

    Guards run in order and each rejects with its own reason: invoice exists and
    is a concept, plate_mismatch, week_mismatch, already_applied, duplicate_line.
    The line write and the record links commit together or not at all.

    Args:
        storage: StorageService
        group_or_record_ids: A Group, or record ids forming exactly one group
        invoice_id: Target invoice
        matcher: Description rule set (defaults to the built-in one)
        now: Link timestamp override
    """
    matcher = matcher or default_matcher
    try:
        return _apply(storage, group_or_record_ids, invoice_id, matcher, now)
    except ApplyConflict as e:
        logger.info(f"[APPLY] Rejected apply to invoice {invoice_id}: {e}")
        return ApplyResult(ok=False, reason=e.reason.value, detail=e.detail, invoice_id=invoice_id)


def unapply(storage, record_ids: Iterable[str]) -> Dict[str, Any]:
    """
    Clear the application link on the given records.

    The invoice line is left as it is; removing or editing it is a separate
    operator action.
    """
    record_ids = list(record_ids)
    cleared = storage.unlink_records(record_ids)
    logger.info(f"[APPLY] Unlinked {cleared} of {len(record_ids)} records")
    return {"ok": True, "unlinked": cleared}


# ==================== Reconciliation ====================

def reconcile(storage, matcher: Optional[LineDescriptionMatcher] = None,
              now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Apply every unapplied group to its target invoice.

    Returns:
        Dict with matched_count (records linked), matched_groups,
        unmatched_groups ([{group, reason, detail}]) and inconsistencies
    """
    matcher = matcher or default_matcher
    groups = build_groups(storage.list_records(unapplied_only=True))
    context = ReconcileContext(storage)

    matched_count = 0
    matched_groups = 0
    unmatched = []
    for group in groups:
        try:
            invoice = context.target_for(group)
        except ApplyConflict as e:
            unmatched.append({"group": group.to_dict(), "reason": e.reason.value, "detail": e.detail})
            continue

        result = apply(storage, group, invoice.id, matcher, now)
        if result.ok:
            matched_count += len(group.records)
            matched_groups += 1
        else:
            unmatched.append({"group": group.to_dict(), "reason": result.reason, "detail": result.detail})

    inconsistencies = [f.to_dict() for f in check_consistency(storage, matcher)]

    logger.info(
        f"[RECONCILE] {len(groups)} groups: {matched_groups} applied ({matched_count} records), "
        f"{len(unmatched)} unmatched, {len(inconsistencies)} inconsistencies"
    )
    return {
        "matched_count": matched_count,
        "matched_groups": matched_groups,
        "unmatched_groups": unmatched,
        "inconsistencies": inconsistencies,
    }


def reconcile_invoice(storage, invoice_id: str, matcher: Optional[LineDescriptionMatcher] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Apply all unapplied groups for the week and plate one invoice references.

    Raises:
        ApplyConflict: If the invoice is missing, not a concept, or has no week/plate reference
    """
    invoice = storage.get_invoice(invoice_id)
    if invoice is None:
        raise ApplyConflict(ConflictReason.INVOICE_NOT_FOUND, f"invoice {invoice_id} does not exist")
    if not is_concept(invoice):
        raise ApplyConflict(ConflictReason.INVOICE_NOT_CONCEPT, f"invoice {invoice_id} has status {invoice.status!r}")
    ref = parse_invoice_reference(invoice.reference)
    if ref is None:
        raise ApplyConflict(ConflictReason.PLATE_MISMATCH, f"invoice reference {invoice.reference!r} has no week/plate")

    records = [
        r for r in storage.list_records(unapplied_only=True)
        if r.week_id == ref.week_id and r.license_plate == ref.plate
    ]
    results = [apply(storage, group, invoice_id, matcher, now) for group in build_groups(records)]
    applied = [r for r in results if r.ok]
    return {
        "matched_count": sum(len(r.record_ids) for r in applied),
        "updated_lines": len(applied),
        "rejected": [r.to_dict() for r in results if not r.ok],
    }
