"""
Storage service for toll records, invoices and invoice lines.
Persists each table as a JSON file on the local filesystem.
"""
import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from toll_engine.errors import ApplyConflict, ConflictReason, StorageError
from toll_engine.schemas import ApplicationLink, Invoice, InvoiceLine, TollRecord

logger = logging.getLogger(__name__)

DEFAULT_TABLE_FILES = {
    "toll_records": "toll_records.json",
    "invoices": "invoices.json",
    "invoice_lines": "invoice_lines.json",
}


class StorageService:
    """
    Manage toll engine persistence on the local filesystem.

    Structure:
    instance/toll/
        toll_records.json
        invoices.json
        invoice_lines.json

    All access is serialized through one re-entrant lock. transaction() groups
    several writes into one unit: tables are flushed to disk when the outermost
    transaction exits cleanly and restored in memory when it raises.
    """

    def __init__(self, base_dir: Path, table_files: Optional[Dict[str, str]] = None):
        self.base_dir = Path(base_dir)
        self.table_files = dict(table_files or DEFAULT_TABLE_FILES)
        self._lock = threading.RLock()
        self._depth = 0

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.base_dir}: {e}") from e

        self._records: Dict[str, TollRecord] = {
            r["id"]: TollRecord.from_dict(r) for r in self._load_json("toll_records")
        }
        self._invoices: Dict[str, Invoice] = {
            i["id"]: Invoice.from_dict(i) for i in self._load_json("invoices")
        }
        self._lines: Dict[str, InvoiceLine] = {
            line["id"]: InvoiceLine.from_dict(line) for line in self._load_json("invoice_lines")
        }
        logger.info(
            f"[STORAGE] Using local filesystem: {self.base_dir} "
            f"({len(self._records)} records, {len(self._invoices)} invoices, {len(self._lines)} lines)"
        )

    # ==================== File IO ====================

    def _table_path(self, table: str) -> Path:
        return self.base_dir / self.table_files[table]

    def _load_json(self, table: str) -> List[Dict[str, Any]]:
        """Load a table; a missing file is an empty table."""
        path = self._table_path(table)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def _save_json(self, table: str, data: List[Dict[str, Any]]):
        """Write a table atomically (temp file, then rename)."""
        path = self._table_path(table)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def _flush(self):
        self._save_json("toll_records", [r.to_dict() for r in self._records.values()])
        self._save_json("invoices", [i.to_dict() for i in self._invoices.values()])
        self._save_json("invoice_lines", [line.to_dict() for line in self._lines.values()])

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self):
        """
        Unit of work. Nested calls join the outer transaction.

        Raises:
            StorageError: If the final flush fails (in-memory state is restored)
        """
        with self._lock:
            snapshot = None
            if self._depth == 0:
                snapshot = (
                    dict(self._records),
                    dict(self._invoices),
                    {k: replace(v) for k, v in self._lines.items()},
                )
            self._depth += 1
            try:
                yield self
                if self._depth == 1:
                    self._flush()
            except Exception:
                if snapshot is not None:
                    self._records, self._invoices, self._lines = snapshot
                    logger.warning("[STORAGE] Transaction rolled back")
                raise
            finally:
                self._depth -= 1

    # ==================== Toll Records ====================

    def list_records(self, since: Optional[date] = None, unapplied_only: bool = False) -> List[TollRecord]:
        """Records ordered by usage date, plate and time."""
        with self._lock:
            records = list(self._records.values())
        if since is not None:
            records = [r for r in records if r.usage_date >= since]
        if unapplied_only:
            records = [r for r in records if not r.is_applied]
        return sorted(records, key=lambda r: (r.usage_date, r.license_plate, r.usage_time or ""))

    def get_records(self, record_ids: Iterable[str]) -> List[TollRecord]:
        """Records for the given ids; unknown ids are skipped."""
        with self._lock:
            return [self._records[i] for i in record_ids if i in self._records]

    def insert_records(self, records: Iterable[TollRecord]) -> int:
        with self.transaction():
            count = 0
            for record in records:
                if record.id in self._records:
                    raise StorageError(f"Record {record.id} already exists")
                self._records[record.id] = record
                count += 1
        return count

    def delete_records(self, record_ids: Iterable[str]) -> int:
        with self.transaction():
            deleted = 0
            for record_id in record_ids:
                if self._records.pop(record_id, None) is not None:
                    deleted += 1
        logger.info(f"[STORAGE] Deleted {deleted} toll records")
        return deleted

    def link_records(self, record_ids: Iterable[str], link: ApplicationLink) -> int:
        """
        Set the application link on each record.

        A record holds at most one active link; linking an already linked record
        is rejected here, whatever the caller checked beforehand.
        """
        with self.transaction():
            count = 0
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is None:
                    raise StorageError(f"Record {record_id} does not exist")
                if record.application_link is not None:
                    raise ApplyConflict(
                        ConflictReason.ALREADY_APPLIED,
                        f"record {record_id} is linked to invoice {record.application_link.invoice_id}",
                    )
                self._records[record_id] = record.with_link(link)
                count += 1
        return count

    def unlink_records(self, record_ids: Iterable[str]) -> int:
        with self.transaction():
            count = 0
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is not None and record.application_link is not None:
                    self._records[record_id] = record.with_link(None)
                    count += 1
        return count

    # ==================== Invoices ====================

    def upsert_invoice(self, invoice: Invoice) -> Invoice:
        with self.transaction():
            self._invoices[invoice.id] = invoice
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(invoice_id)

    def list_invoices(self, status: Optional[str] = None) -> List[Invoice]:
        with self._lock:
            invoices = list(self._invoices.values())
        if status is not None:
            invoices = [i for i in invoices if (i.status or "").lower() == status.lower()]
        return invoices

    # ==================== Invoice Lines ====================

    def list_invoice_lines(self, invoice_id: Optional[str] = None) -> List[InvoiceLine]:
        """Lines in insertion order; copies, so callers cannot mutate stored state."""
        with self._lock:
            lines = [replace(line) for line in self._lines.values()]
        if invoice_id is not None:
            lines = [line for line in lines if line.invoice_id == invoice_id]
        return lines

    def get_invoice_line(self, line_id: str) -> Optional[InvoiceLine]:
        with self._lock:
            line = self._lines.get(line_id)
            return replace(line) if line is not None else None

    def add_invoice_line(self, line: InvoiceLine) -> InvoiceLine:
        with self.transaction():
            if not line.id:
                line = replace(line, id=str(uuid.uuid4()))
            if line.id in self._lines:
                raise StorageError(f"Invoice line {line.id} already exists")
            self._lines[line.id] = replace(line)
        return line

    def update_invoice_line(self, line: InvoiceLine) -> InvoiceLine:
        with self.transaction():
            if line.id not in self._lines:
                raise StorageError(f"Invoice line {line.id} does not exist")
            self._lines[line.id] = replace(line)
        return line

    def delete_invoice_line(self, line_id: str) -> bool:
        with self.transaction():
            return self._lines.pop(line_id, None) is not None
