"""
Record types for the Toll Reconciliation Engine.

TollRecord is an immutable usage fact; only its application link changes over
its lifetime, and that is done by replacing the record, never by mutation.
InvoiceLine belongs to the external invoicing subsystem and is the only
mutable type here.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd

from .canonical_fields import CanonicalField
from .mappings import DUTCH_WEEKDAYS


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class ApplicationLink:
    """Association between a toll record and the invoice line that billed it."""
    invoice_id: str
    invoice_line_id: str
    applied_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "invoice_line_id": self.invoice_line_id,
            "applied_at": self.applied_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationLink":
        return cls(
            invoice_id=str(data["invoice_id"]),
            invoice_line_id=str(data["invoice_line_id"]),
            applied_at=_to_datetime(data["applied_at"]),
        )


@dataclass(frozen=True)
class TollRecord:
    """One normalized toll usage fact."""
    id: str
    country: str
    license_plate: str
    usage_date: date
    usage_time: Optional[str]
    amount: Decimal
    vat_rate: int
    week_id: str
    source: str
    location: Optional[str] = None
    created_at: Optional[datetime] = None
    application_link: Optional[ApplicationLink] = None

    @property
    def weekday(self) -> str:
        return DUTCH_WEEKDAYS[self.usage_date.weekday()]

    @property
    def is_applied(self) -> bool:
        return self.application_link is not None

    def with_link(self, link: Optional[ApplicationLink]) -> "TollRecord":
        return replace(self, application_link=link)

    def to_dict(self) -> Dict[str, Any]:
        return {
            CanonicalField.RECORD_ID.value: self.id,
            CanonicalField.COUNTRY.value: self.country,
            CanonicalField.LICENSE_PLATE.value: self.license_plate,
            CanonicalField.USAGE_DATE.value: self.usage_date.isoformat(),
            CanonicalField.USAGE_TIME.value: self.usage_time,
            CanonicalField.AMOUNT.value: f"{self.amount:.2f}",
            CanonicalField.VAT_RATE.value: self.vat_rate,
            CanonicalField.WEEK_ID.value: self.week_id,
            CanonicalField.SOURCE.value: self.source,
            CanonicalField.LOCATION.value: self.location,
            CanonicalField.CREATED_AT.value: self.created_at.isoformat() if self.created_at else None,
            "application_link": self.application_link.to_dict() if self.application_link else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TollRecord":
        link = data.get("application_link")
        return cls(
            id=str(data[CanonicalField.RECORD_ID.value]),
            country=data[CanonicalField.COUNTRY.value],
            license_plate=data[CanonicalField.LICENSE_PLATE.value],
            usage_date=_to_date(data[CanonicalField.USAGE_DATE.value]),
            usage_time=data.get(CanonicalField.USAGE_TIME.value),
            amount=_to_decimal(data[CanonicalField.AMOUNT.value]),
            vat_rate=int(data[CanonicalField.VAT_RATE.value]),
            week_id=data[CanonicalField.WEEK_ID.value],
            source=data.get(CanonicalField.SOURCE.value) or "",
            location=data.get(CanonicalField.LOCATION.value),
            created_at=_to_datetime(data.get(CanonicalField.CREATED_AT.value)),
            application_link=ApplicationLink.from_dict(link) if link else None,
        )


@dataclass
class Invoice:
    """Invoice header as exposed by the invoicing subsystem."""
    id: str
    reference: str
    status: str
    invoice_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "status": self.status,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Invoice":
        invoice_date = data.get("invoice_date")
        return cls(
            id=str(data["id"]),
            reference=data.get("reference") or "",
            status=data.get("status") or "",
            invoice_date=_to_date(invoice_date) if invoice_date else None,
        )


@dataclass
class InvoiceLine:
    """Invoice line; the engine only writes toll-tagged lines."""
    id: str
    invoice_id: str
    description: str
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0.00")
    vat_rate: int = 21
    total: Decimal = Decimal("0.00")

    @property
    def amount_is_zero(self) -> bool:
        return self.quantity == 0 and self.unit_price == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": f"{self.unit_price:.2f}",
            "vat_rate": self.vat_rate,
            "total": f"{self.total:.2f}",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvoiceLine":
        return cls(
            id=str(data["id"]),
            invoice_id=str(data["invoice_id"]),
            description=data.get("description") or "",
            quantity=Decimal(str(data.get("quantity") or 0)),
            unit_price=_to_decimal(data.get("unit_price") or 0),
            vat_rate=int(data.get("vat_rate") if data.get("vat_rate") is not None else 21),
            total=_to_decimal(data.get("total") or 0),
        )


@dataclass(frozen=True)
class Group:
    """
    All toll records billed as one invoice line.

    Key: (week_id, weekday, license_plate, country, vat_rate).
    """
    week_id: str
    weekday: str
    license_plate: str
    country: str
    vat_rate: int
    usage_date: date
    records: Tuple[TollRecord, ...] = field(default_factory=tuple)

    @property
    def key(self) -> Tuple[str, str, str, str, int]:
        return (self.week_id, self.weekday, self.license_plate, self.country, self.vat_rate)

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.records), Decimal("0.00"))

    @property
    def record_ids(self) -> List[str]:
        return [r.id for r in self.records]

    def to_dict(self) -> Dict[str, Any]:
        return {
            CanonicalField.WEEK_ID.value: self.week_id,
            CanonicalField.WEEKDAY.value: self.weekday,
            CanonicalField.LICENSE_PLATE.value: self.license_plate,
            CanonicalField.COUNTRY.value: self.country,
            CanonicalField.VAT_RATE.value: self.vat_rate,
            CanonicalField.USAGE_DATE.value: self.usage_date.isoformat(),
            CanonicalField.TOTAL.value: f"{self.total:.2f}",
            CanonicalField.RECORD_COUNT.value: len(self.records),
            "record_ids": self.record_ids,
        }


RECORD_FRAME_COLUMNS = [
    CanonicalField.RECORD_ID.value,
    CanonicalField.COUNTRY.value,
    CanonicalField.LICENSE_PLATE.value,
    CanonicalField.USAGE_DATE.value,
    CanonicalField.USAGE_TIME.value,
    CanonicalField.AMOUNT.value,
    CanonicalField.VAT_RATE.value,
    CanonicalField.WEEK_ID.value,
    CanonicalField.WEEKDAY.value,
    CanonicalField.SOURCE.value,
    CanonicalField.INVOICE_ID.value,
    CanonicalField.INVOICE_LINE_ID.value,
    CanonicalField.APPLIED_AT.value,
]


def records_to_frame(records: List[TollRecord]) -> pd.DataFrame:
    """
    Flatten toll records into a DataFrame with canonical columns.

    Amounts become floats for aggregation; dates stay datetime.date objects.
    """
    rows = []
    for r in records:
        link = r.application_link
        rows.append({
            CanonicalField.RECORD_ID.value: r.id,
            CanonicalField.COUNTRY.value: r.country,
            CanonicalField.LICENSE_PLATE.value: r.license_plate,
            CanonicalField.USAGE_DATE.value: r.usage_date,
            CanonicalField.USAGE_TIME.value: r.usage_time,
            CanonicalField.AMOUNT.value: float(r.amount),
            CanonicalField.VAT_RATE.value: r.vat_rate,
            CanonicalField.WEEK_ID.value: r.week_id,
            CanonicalField.WEEKDAY.value: r.weekday,
            CanonicalField.SOURCE.value: r.source,
            CanonicalField.INVOICE_ID.value: link.invoice_id if link else None,
            CanonicalField.INVOICE_LINE_ID.value: link.invoice_line_id if link else None,
            CanonicalField.APPLIED_AT.value: link.applied_at if link else None,
        })
    return pd.DataFrame(rows, columns=RECORD_FRAME_COLUMNS)
