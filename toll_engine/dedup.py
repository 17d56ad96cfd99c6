"""
Composite-key deduplication of toll records.

The key is built from normalized fields only, so the same usage fact exported
twice (or twice within one file) collapses to one key regardless of the
source spreadsheet's formatting.
"""
import logging
from typing import Dict, Iterable, Tuple

from .schemas import TollRecord

logger = logging.getLogger(__name__)

NEW = "new"
DUPLICATE_UNLINKED = "duplicate_unlinked"
DUPLICATE_LINKED = "duplicate_linked"

DedupKey = Tuple[str, str, str, str, str, int]


def dedup_key(record: TollRecord) -> DedupKey:
    """(plate, usage_date, usage_time or '', country, amount, vat_rate)"""
    return (
        record.license_plate.upper(),
        record.usage_date.isoformat(),
        record.usage_time or "",
        record.country.upper(),
        f"{record.amount:.2f}",
        int(record.vat_rate),
    )


class Deduplicator:
    """
    Working key set for one import.

    Built once from the stored records; keys of accepted rows are added as
    they are accepted so later rows (and later chunks) see them.
    """

    def __init__(self, existing_records: Iterable[TollRecord] = ()):
        # key -> True when some stored record with this key is billed
        self._keys: Dict[DedupKey, bool] = {}
        for record in existing_records:
            key = dedup_key(record)
            self._keys[key] = self._keys.get(key, False) or record.is_applied
        logger.debug(f"[DEDUP] Loaded {len(self._keys)} existing keys")

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, record: TollRecord) -> bool:
        return dedup_key(record) in self._keys

    def classify(self, record: TollRecord) -> str:
        key = dedup_key(record)
        if key not in self._keys:
            return NEW
        return DUPLICATE_LINKED if self._keys[key] else DUPLICATE_UNLINKED

    def accept(self, record: TollRecord) -> None:
        self._keys.setdefault(dedup_key(record), record.is_applied)
