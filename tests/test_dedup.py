"""
Tests for composite-key deduplication.
"""
from datetime import datetime

from conftest import make_record
from toll_engine.dedup import DUPLICATE_LINKED, DUPLICATE_UNLINKED, NEW, Deduplicator, dedup_key
from toll_engine.schemas import ApplicationLink


def test_amount_is_part_of_the_key():
    """Two passages differing only in amount are distinct usage facts."""
    first = make_record(amount="12.50")
    second = make_record(amount="12.60")
    assert dedup_key(first) != dedup_key(second)

    dedup = Deduplicator([first])
    assert dedup.classify(second) == NEW


def test_same_fact_from_another_file_is_a_duplicate():
    stored = make_record(source="week1.xlsx")
    again = make_record(source="week1-resend.csv")
    assert dedup_key(stored) == dedup_key(again)
    assert Deduplicator([stored]).classify(again) == DUPLICATE_UNLINKED


def test_linked_duplicates_are_classified_separately():
    link = ApplicationLink(invoice_id="inv-1", invoice_line_id="line-1", applied_at=datetime(2026, 1, 12))
    stored = make_record().with_link(link)
    assert Deduplicator([stored]).classify(make_record()) == DUPLICATE_LINKED


def test_missing_time_participates_as_empty():
    stored = make_record(usage_time=None)
    assert Deduplicator([stored]).classify(make_record(usage_time=None)) == DUPLICATE_UNLINKED
    assert Deduplicator([stored]).classify(make_record(usage_time="08:00:00")) == NEW


def test_accepted_rows_are_seen_by_later_rows():
    dedup = Deduplicator()
    record = make_record()
    assert dedup.classify(record) == NEW
    dedup.accept(record)

    assert record in dedup
    assert len(dedup) == 1
    assert dedup.classify(make_record()) == DUPLICATE_UNLINKED
