"""
Tests for grouping, target lookup, apply/unapply and reconciliation.
"""
import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from conftest import add_invoice, add_line, make_record
from toll_engine.errors import ApplyConflict, ConflictReason, StorageError
from toll_engine.findings import AMOUNT_MISMATCH, LINE_WITHOUT_LINKS, LINK_WITHOUT_LINE
from toll_engine.reconcile import (
    apply,
    build_groups,
    find_target_invoice,
    group_key,
    parse_invoice_reference,
    reconcile,
    reconcile_invoice,
    unapply,
)

NOW = datetime(2026, 1, 12, 10, 0)


def _ids(records):
    return [r.id for r in records]


def test_groups_follow_week_weekday_plate_country_vat():
    records = [
        make_record(usage_time="08:00:00"),
        make_record(usage_time="09:00:00"),
        make_record(usage_time="10:00:00", country="NL"),
        make_record(usage_time="11:00:00", vat_rate=0),
        make_record(usage_date=date(2026, 1, 6)),
        make_record(plate="XY-99-ZZ"),
    ]
    groups = build_groups(records)

    assert len(groups) == 5
    assert group_key(records[0]) == group_key(records[1]) == ("2026-02", "maandag", "AB-12-CD", "BE", 21)
    assert groups[0].key == ("2026-02", "maandag", "AB-12-CD", "BE", 0)
    be_group = next(g for g in groups if g.key == ("2026-02", "maandag", "AB-12-CD", "BE", 21))
    assert len(be_group.records) == 2
    assert be_group.total == Decimal("25.00")
    assert groups[-1].usage_date == date(2026, 1, 6)


def test_invoice_reference_parsing():
    ref = parse_invoice_reference("Week 2 - 2026 (ab-12-cd)")
    assert ref.week_id == "2026-02"
    assert ref.plate == "AB-12-CD"
    assert parse_invoice_reference("Factuur 2026-001") is None


def test_apply_writes_one_line_for_the_group(storage, three_record_group):
    invoice = add_invoice(storage)
    result = apply(storage, _ids(three_record_group), invoice.id, now=NOW)

    assert result.ok, result.to_dict()
    lines = storage.list_invoice_lines(invoice.id)
    assert len(lines) == 1
    line = lines[0]
    assert line.quantity == Decimal("1")
    assert line.unit_price == Decimal("37.50")
    assert line.total == Decimal("37.50")
    assert line.vat_rate == 21
    assert line.description == "Maandag 05-01-2026\nTol België"
    assert result.invoice_line_id == line.id

    for record in storage.get_records(_ids(three_record_group)):
        assert record.application_link.invoice_id == invoice.id
        assert record.application_link.invoice_line_id == line.id
        assert record.application_link.applied_at == NOW


def test_second_apply_is_rejected_as_duplicate_line(storage, three_record_group):
    invoice = add_invoice(storage)
    assert apply(storage, _ids(three_record_group), invoice.id).ok

    again = apply(storage, _ids(three_record_group), invoice.id)

    assert not again.ok
    assert again.reason == "duplicate_line"
    lines = storage.list_invoice_lines(invoice.id)
    assert len(lines) == 1
    assert sum(line.total for line in lines) == Decimal("37.50")


def test_plate_mismatch_writes_nothing(storage, three_record_group):
    invoice = add_invoice(storage, reference="Week 02 - 2026 (XY-99-ZZ)")
    result = apply(storage, _ids(three_record_group), invoice.id)

    assert not result.ok
    assert result.reason == "plate_mismatch"
    assert storage.list_invoice_lines(invoice.id) == []
    assert all(not r.is_applied for r in storage.list_records())


def test_week_mismatch(storage, three_record_group):
    invoice = add_invoice(storage, reference="Week 03 - 2026 (AB-12-CD)")
    assert apply(storage, _ids(three_record_group), invoice.id).reason == "week_mismatch"


@pytest.mark.parametrize("status, reason", [("sent", "invoice_not_concept"), ("paid", "invoice_not_concept")])
def test_only_concept_invoices_are_edited(storage, three_record_group, status, reason):
    invoice = add_invoice(storage, status=status)
    assert apply(storage, _ids(three_record_group), invoice.id).reason == reason


def test_unknown_invoice_and_records(storage, three_record_group):
    assert apply(storage, _ids(three_record_group), "missing").reason == "invoice_not_found"
    invoice = add_invoice(storage)
    assert apply(storage, ["nope"], invoice.id).reason == "unknown_records"
    assert apply(storage, [], invoice.id).reason == "unknown_records"


def test_records_from_two_groups_are_rejected(storage):
    records = [make_record(), make_record(usage_date=date(2026, 1, 6))]
    storage.insert_records(records)
    invoice = add_invoice(storage)
    assert apply(storage, _ids(records), invoice.id).reason == "mixed_group"


def test_records_billed_elsewhere_are_already_applied(storage, three_record_group):
    first = add_invoice(storage)
    second = add_invoice(storage)
    assert apply(storage, _ids(three_record_group), first.id).ok

    result = apply(storage, _ids(three_record_group), second.id)

    assert result.reason == "already_applied"
    assert storage.list_invoice_lines(second.id) == []


def test_unapply_leaves_the_invoice_line(storage, three_record_group):
    invoice = add_invoice(storage)
    applied = apply(storage, _ids(three_record_group), invoice.id)

    result = unapply(storage, _ids(three_record_group))

    assert result == {"ok": True, "unlinked": 3}
    assert all(not r.is_applied for r in storage.list_records())
    line = storage.get_invoice_line(applied.invoice_line_id)
    assert line is not None
    assert line.total == Decimal("37.50")
    # re-applying would bill the same day twice
    assert apply(storage, _ids(three_record_group), invoice.id).reason == "duplicate_line"


def test_placeholder_line_is_filled(storage, three_record_group):
    invoice = add_invoice(storage)
    placeholder = add_line(storage, invoice.id, "Maandag 05-01-2026\nTol")

    result = apply(storage, _ids(three_record_group), invoice.id)

    assert result.ok
    assert result.invoice_line_id == placeholder.id
    lines = storage.list_invoice_lines(invoice.id)
    assert len(lines) == 1
    assert lines[0].quantity == Decimal("1")
    assert lines[0].unit_price == Decimal("37.50")
    assert "België" in lines[0].description


def test_placeholder_for_another_country_is_left_alone(storage, three_record_group):
    invoice = add_invoice(storage)
    german = add_line(storage, invoice.id, "Maandag 05-01-2026\nTol Duitsland")

    result = apply(storage, _ids(three_record_group), invoice.id)

    assert result.ok
    assert result.invoice_line_id != german.id
    assert storage.get_invoice_line(german.id).amount_is_zero
    assert len(storage.list_invoice_lines(invoice.id)) == 2


def test_failed_link_rolls_back_the_line(storage, three_record_group, monkeypatch):
    invoice = add_invoice(storage)

    def broken_link(record_ids, link):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "link_records", broken_link)
    with pytest.raises(StorageError):
        apply(storage, _ids(three_record_group), invoice.id)

    assert storage.list_invoice_lines(invoice.id) == []


def test_target_lookup_never_guesses(storage, three_record_group):
    group = build_groups(three_record_group)[0]
    with pytest.raises(ApplyConflict) as excinfo:
        find_target_invoice(group, [])
    assert excinfo.value.reason == ConflictReason.NO_TARGET

    invoices = [add_invoice(storage), add_invoice(storage)]
    with pytest.raises(ApplyConflict) as excinfo:
        find_target_invoice(group, invoices)
    assert excinfo.value.reason == ConflictReason.AMBIGUOUS_TARGET


def test_reconcile_applies_matched_groups_and_reports_the_rest(storage, three_record_group):
    storage.insert_records([make_record(plate="XY-99-ZZ", amount="4.00")])
    invoice = add_invoice(storage)

    result = reconcile(storage, now=NOW)

    assert result["matched_count"] == 3
    assert result["matched_groups"] == 1
    assert len(result["unmatched_groups"]) == 1
    unmatched = result["unmatched_groups"][0]
    assert unmatched["reason"] == "no_target"
    assert unmatched["group"]["license_plate"] == "XY-99-ZZ"
    assert result["inconsistencies"] == []
    assert len(storage.list_invoice_lines(invoice.id)) == 1

    # nothing left to apply on a second pass
    assert reconcile(storage)["matched_count"] == 0


def test_reconcile_reports_ambiguous_targets(storage, three_record_group):
    add_invoice(storage)
    add_invoice(storage)

    result = reconcile(storage)

    assert result["matched_count"] == 0
    assert result["unmatched_groups"][0]["reason"] == "ambiguous_target"


def test_reconcile_invoice_covers_the_whole_week(storage, three_record_group):
    storage.insert_records([make_record(usage_date=date(2026, 1, 7), amount="6.00")])
    invoice = add_invoice(storage)

    result = reconcile_invoice(storage, invoice.id)

    assert result["matched_count"] == 4
    assert result["updated_lines"] == 2
    assert result["rejected"] == []


def test_reconcile_invoice_rejects_non_concept(storage):
    invoice = add_invoice(storage, status="sent")
    with pytest.raises(ApplyConflict) as excinfo:
        reconcile_invoice(storage, invoice.id)
    assert excinfo.value.reason == ConflictReason.INVOICE_NOT_CONCEPT


def test_consistency_findings(storage, three_record_group):
    invoice = add_invoice(storage)
    applied = apply(storage, _ids(three_record_group), invoice.id)

    line = storage.get_invoice_line(applied.invoice_line_id)
    line.total = Decimal("40.00")
    storage.update_invoice_line(line)
    kinds = [f["kind"] for f in reconcile(storage)["inconsistencies"]]
    assert kinds == [AMOUNT_MISMATCH]

    storage.delete_invoice_line(line.id)
    kinds = [f["kind"] for f in reconcile(storage)["inconsistencies"]]
    assert kinds == [LINK_WITHOUT_LINE]


def test_unlinked_billed_line_is_reported(storage, three_record_group):
    invoice = add_invoice(storage)
    apply(storage, _ids(three_record_group), invoice.id)
    unapply(storage, _ids(three_record_group))

    result = reconcile(storage)

    assert [f["kind"] for f in result["inconsistencies"]] == [LINE_WITHOUT_LINKS]
    assert result["unmatched_groups"][0]["reason"] == "duplicate_line"


def test_countries_on_the_same_day_get_their_own_lines(storage):
    belgian = make_record(amount="10.00")
    swedish = make_record(amount="7.00", country="SE")
    norwegian = make_record(amount="5.00", country="NO")
    storage.insert_records([belgian, swedish, norwegian])
    invoice = add_invoice(storage)

    for record in (belgian, swedish, norwegian):
        result = apply(storage, [record.id], invoice.id)
        assert result.ok, result.to_dict()

    descriptions = sorted(line.description for line in storage.list_invoice_lines(invoice.id))
    assert descriptions == [
        "Maandag 05-01-2026\nTol België",
        "Maandag 05-01-2026\nTol NO",
        "Maandag 05-01-2026\nTol SE",
    ]
    assert apply(storage, [swedish.id], invoice.id).reason == "duplicate_line"


def _apply_in_parallel(storage, record_ids, invoice_ids):
    barrier = threading.Barrier(len(invoice_ids))
    results = [None] * len(invoice_ids)

    def run(i, invoice_id):
        barrier.wait()
        results[i] = apply(storage, record_ids, invoice_id)

    threads = [threading.Thread(target=run, args=(i, invoice_id)) for i, invoice_id in enumerate(invoice_ids)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def test_concurrent_apply_to_two_invoices_bills_once(storage, three_record_group):
    first = add_invoice(storage)
    second = add_invoice(storage)

    results = _apply_in_parallel(storage, _ids(three_record_group), [first.id, second.id])

    assert sorted(r.ok for r in results) == [False, True]
    loser = next(r for r in results if not r.ok)
    assert loser.reason == "already_applied"
    assert len(storage.list_invoice_lines()) == 1
    winner = next(r for r in results if r.ok)
    assert {r.application_link.invoice_id for r in storage.get_records(_ids(three_record_group))} == {winner.invoice_id}


def test_concurrent_apply_to_one_invoice_writes_one_line(storage, three_record_group):
    invoice = add_invoice(storage)

    results = _apply_in_parallel(storage, _ids(three_record_group), [invoice.id, invoice.id])

    assert sorted(r.ok for r in results) == [False, True]
    assert next(r for r in results if not r.ok).reason == "duplicate_line"
    lines = storage.list_invoice_lines(invoice.id)
    assert len(lines) == 1
    assert lines[0].total == Decimal("37.50")
