"""
Shared fixtures for the toll engine tests.
"""
import uuid
from datetime import date, datetime
from decimal import Decimal

import pytest

from storage.service import StorageService
from toll_engine.normalize import week_id_for
from toll_engine.schemas import Invoice, InvoiceLine, TollRecord


@pytest.fixture
def storage(tmp_path):
    return StorageService(base_dir=tmp_path / "toll")


def make_record(plate="AB-12-CD", usage_date=date(2026, 1, 5), amount="12.50", usage_time="08:00:00",
                country="BE", vat_rate=21, source="test.xlsx"):
    return TollRecord(
        id=str(uuid.uuid4()),
        country=country,
        license_plate=plate,
        usage_date=usage_date,
        usage_time=usage_time,
        amount=Decimal(amount),
        vat_rate=vat_rate,
        week_id=week_id_for(usage_date),
        source=source,
        created_at=datetime(2026, 1, 12, 9, 0),
    )


def add_invoice(storage, reference="Week 02 - 2026 (AB-12-CD)", status="concept", invoice_id=None,
                invoice_date=date(2026, 1, 12)):
    invoice = Invoice(
        id=invoice_id or str(uuid.uuid4()),
        reference=reference,
        status=status,
        invoice_date=invoice_date,
    )
    return storage.upsert_invoice(invoice)


def add_line(storage, invoice_id, description, quantity="0", unit_price="0.00", vat_rate=21):
    line = InvoiceLine(
        id=str(uuid.uuid4()),
        invoice_id=invoice_id,
        description=description,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        vat_rate=vat_rate,
        total=Decimal(quantity) * Decimal(unit_price),
    )
    return storage.add_invoice_line(line)


@pytest.fixture
def three_record_group(storage):
    """Scenario group: three Belgian toll passages on Monday 05-01-2026, total 37.50."""
    records = [
        make_record(usage_time="08:00:00"),
        make_record(usage_time="12:30:00"),
        make_record(usage_time="17:45:00"),
    ]
    storage.insert_records(records)
    return records
