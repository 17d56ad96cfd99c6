"""
Consistency findings between toll record links and invoice lines.

A crash between writing a line and linking its records (or an operator edit
afterwards) leaves one side without the other. These checks surface such
states on every reconciliation pass.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, asdict, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import config

logger = logging.getLogger(__name__)

LINE_WITHOUT_LINKS = "LINE_WITHOUT_LINKS"
LINK_WITHOUT_LINE = "LINK_WITHOUT_LINE"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"

SEVERITY_BY_KIND = {
    LINE_WITHOUT_LINKS: "medium",
    LINK_WITHOUT_LINE: "high",
    AMOUNT_MISMATCH: "high",
}


@dataclass
class Finding:
    """Structured consistency finding."""
    finding_id: str
    kind: str
    severity: str
    description: str
    invoice_id: Optional[str] = None
    invoice_line_id: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)
    impact_amount: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _finding(kind: str, description: str, **kwargs) -> Finding:
    return Finding(
        finding_id=str(uuid.uuid4()),
        kind=kind,
        severity=SEVERITY_BY_KIND.get(kind, "medium"),
        description=description,
        **kwargs,
    )


def check_consistency(storage, matcher) -> List[Finding]:
    """
    Compare application links against invoice lines.

    - LINK_WITHOUT_LINE: records linked to a line or invoice that no longer exists
    - LINE_WITHOUT_LINKS: a billed toll line on a concept invoice no record links to
    - AMOUNT_MISMATCH: a line total differing from the sum of its linked records
    """
    invoices = {i.id: i for i in storage.list_invoices()}
    lines = {line.id: line for line in storage.list_invoice_lines()}

    linked_by_line: Dict[str, List] = defaultdict(list)
    for record in storage.list_records():
        if record.application_link is not None:
            linked_by_line[record.application_link.invoice_line_id].append(record)

    findings = []
    for line_id, records in linked_by_line.items():
        link = records[0].application_link
        if line_id not in lines or link.invoice_id not in invoices:
            findings.append(_finding(
                LINK_WITHOUT_LINE,
                f"{len(records)} records are linked to missing line {line_id} on invoice {link.invoice_id}",
                invoice_id=link.invoice_id,
                invoice_line_id=line_id,
                record_ids=[r.id for r in records],
                impact_amount=float(sum((r.amount for r in records), Decimal("0"))),
            ))
            continue

        linked_total = sum((r.amount for r in records), Decimal("0.00"))
        line = lines[line_id]
        if line.total != linked_total:
            findings.append(_finding(
                AMOUNT_MISMATCH,
                f"Line total {line.total:.2f} differs from linked records total {linked_total:.2f}",
                invoice_id=line.invoice_id,
                invoice_line_id=line_id,
                record_ids=[r.id for r in records],
                impact_amount=float(abs(line.total - linked_total)),
            ))

    concept = config.reconciliation.concept_status.lower()
    for line in lines.values():
        invoice = invoices.get(line.invoice_id)
        if invoice is None or (invoice.status or "").lower() != concept:
            continue
        if line.id in linked_by_line or line.amount_is_zero or not matcher.is_toll_line(line):
            continue
        findings.append(_finding(
            LINE_WITHOUT_LINKS,
            f"Toll line {line.description!r} ({line.total:.2f}) has no linked toll records",
            invoice_id=line.invoice_id,
            invoice_line_id=line.id,
            impact_amount=float(line.total),
        ))

    if findings:
        logger.warning(f"[RECONCILE] {len(findings)} consistency findings")
    return findings

