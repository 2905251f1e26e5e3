"""
Receipt engine tests: merge/split rules, unknown SKUs, promotion, atomicity,
line edits and photo loading.
"""

from datetime import date, timedelta

import pytest

from conftest import FUTURE_EXPIRY, NOW, make_receipt, photo
from receipter.models import AuditLog, Pallet, ReceiptLine, ReceiptPhoto, StockItem
from receipter.services import project_service, receipt_service
from receipter.services.audit_service import parse_snapshot, snapshot_json
from receipter.services.receipt_service import ReceiptLineUpdate
from receipter.validation import (
    NotFoundError,
    ReadOnlyPalletError,
    ReadOnlyProjectError,
    ValidationError,
)


def _lines(store, pallet_id):
    with store.read_tx() as session:
        return (
            session.query(ReceiptLine)
            .filter(ReceiptLine.pallet_id == pallet_id)
            .order_by(ReceiptLine.id.asc())
            .all()
        )


def _receipt_actions(store):
    with store.read_tx() as session:
        rows = (
            session.query(AuditLog.action)
            .filter(AuditLog.entity_type == "pallet_receipts")
            .order_by(AuditLog.id.asc())
            .all()
        )
    return [row.action for row in rows]


def _photo_count(store, receipt_id):
    with store.read_tx() as session:
        return session.query(ReceiptPhoto).filter(ReceiptPhoto.pallet_receipt_id == receipt_id).count()


def _pallet_status(store, pallet_id):
    with store.read_tx() as session:
        return session.get(Pallet, pallet_id).status


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def test_same_batch_and_expiry_merges_into_one_line(store, admin, pallet):
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=5), now=NOW)
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=3), now=NOW)

    lines = _lines(store, pallet.id)
    assert len(lines) == 1
    assert lines[0].qty == 8
    assert _receipt_actions(store) == ["receipt.create", "receipt.merge"]


def test_blank_batch_with_same_expiry_merges(store, admin, pallet):
    for qty in (2, 4):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=qty, batch_number="  "), now=NOW
        )

    lines = _lines(store, pallet.id)
    assert len(lines) == 1
    assert lines[0].qty == 6
    assert lines[0].batch_number is None


def test_blank_expiry_merges(store, admin, pallet):
    for qty in (1, 1, 1):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=qty, expiry_date=None), now=NOW
        )

    lines = _lines(store, pallet.id)
    assert [line.qty for line in lines] == [3]
    assert lines[0].expiry_date is None


def test_different_batch_does_not_merge(store, admin, pallet):
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, batch_number="B1"), now=NOW)
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, batch_number="B2"), now=NOW)

    lines = _lines(store, pallet.id)
    assert [line.batch_number for line in lines] == ["B1", "B2"]
    assert _receipt_actions(store) == ["receipt.create", "receipt.create"]


@pytest.mark.parametrize("override", [
    {"uom": "EA"},
    {"case_size": 6},
    {"expiry_date": date(2026, 7, 1)},
    {"expiry_date": None},
    {"batch_number": ""},
    {"sku": "SKU-2"},
])
def test_any_key_difference_creates_second_line(store, admin, pallet, override):
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, **override), now=NOW)

    assert len(_lines(store, pallet.id)) == 2


def test_merge_records_latest_scanner_and_time(store, admin, scanner, pallet):
    later = NOW + timedelta(hours=1)
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)
    receipt_service.save_receipt(
        store, user_id=scanner.id, receipt=make_receipt(pallet.id, comment="second scan"), now=later
    )

    line = _lines(store, pallet.id)[0]
    assert line.scanned_by_user_id == scanner.id
    assert line.updated_at == later
    assert line.created_at == NOW
    assert line.comment == "second scan"


def test_merge_is_per_pallet(store, admin, make_pallet):
    first = make_pallet()
    second = make_pallet()
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(first.id), now=NOW)
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(second.id), now=NOW)

    assert len(_lines(store, first.id)) == 1
    assert len(_lines(store, second.id)) == 1


# ---------------------------------------------------------------------------
# Damage split
# ---------------------------------------------------------------------------

def test_damaged_quantity_splits_with_media_on_damaged_line(store, admin, pallet):
    receipt = make_receipt(
        pallet.id,
        qty=10,
        damaged_qty=3,
        primary_photo=photo("primary.png"),
        extra_photos=[photo("a.png"), photo("b.png")],
    )
    saved = receipt_service.save_receipt(store, user_id=admin.id, receipt=receipt, now=NOW)

    assert [(line.qty, line.damaged, line.damaged_qty) for line in saved] == [(7, False, 0), (3, True, 3)]
    good, damaged = _lines(store, pallet.id)
    assert not good.has_stock_photo
    assert damaged.has_stock_photo
    assert damaged.stock_photo_name == "primary.png"
    assert _photo_count(store, good.id) == 0
    assert _photo_count(store, damaged.id) == 2


def test_damaged_checkbox_requires_damaged_qty(store, admin, pallet):
    with pytest.raises(ValidationError, match="damaged qty is required when damaged is selected"):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, damaged=True, damaged_qty=0), now=NOW
        )


def test_damaged_qty_cannot_exceed_qty(store, admin, pallet):
    with pytest.raises(ValidationError, match="damaged qty cannot exceed qty"):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=2, damaged_qty=3), now=NOW
        )
    assert _lines(store, pallet.id) == []


def test_fully_damaged_receipt_is_one_damaged_line_with_media(store, admin, pallet):
    receipt = make_receipt(pallet.id, qty=4, damaged_qty=4, primary_photo=photo())
    saved = receipt_service.save_receipt(store, user_id=admin.id, receipt=receipt, now=NOW)

    assert len(saved) == 1
    assert saved[0].damaged and saved[0].damaged_qty == 4
    assert saved[0].has_stock_photo


def test_undamaged_receipt_keeps_media_on_its_line(store, admin, pallet):
    saved = receipt_service.save_receipt(
        store, user_id=admin.id, receipt=make_receipt(pallet.id, extra_photos=[photo()]), now=NOW
    )
    assert _photo_count(store, saved[0].id) == 1


def test_damaged_lines_merge_and_keep_damaged_qty_equal_to_qty(store, admin, pallet):
    for _ in range(2):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=5, damaged_qty=2), now=NOW
        )

    good, damaged = _lines(store, pallet.id)
    assert (good.qty, good.damaged_qty) == (6, 0)
    assert (damaged.qty, damaged.damaged_qty) == (4, 4)


def test_split_segments():
    assert receipt_service.split_segments(5, 0) == [receipt_service.Segment(5, False, True)]
    assert receipt_service.split_segments(5, 5) == [receipt_service.Segment(5, True, True)]
    assert receipt_service.split_segments(5, 2) == [
        receipt_service.Segment(3, False, False),
        receipt_service.Segment(2, True, True),
    ]


# ---------------------------------------------------------------------------
# Unknown SKU and validation
# ---------------------------------------------------------------------------

def test_unknown_sku_requires_photo(store, admin, pallet):
    with pytest.raises(ValidationError, match="unknown sku requires at least one photo"):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, sku="", unknown_sku=True), now=NOW
        )
    assert _lines(store, pallet.id) == []
    assert _pallet_status(store, pallet.id) == "created"


def test_unknown_sku_defaults_and_is_not_catalogued(store, admin, pallet):
    receipt = make_receipt(pallet.id, sku="", description="", unknown_sku=True, extra_photos=[photo()])
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=receipt, now=NOW)[0]

    assert line.sku == "UNKNOWN"
    assert line.description == "Unidentifiable item"
    assert line.unknown_sku
    with store.read_tx() as session:
        assert session.query(StockItem).count() == 0


@pytest.mark.parametrize("overrides, message", [
    ({"qty": 0}, "qty must be greater than 0"),
    ({"sku": "  "}, "sku is required"),
    ({"damaged_qty": -1}, "damaged qty must be 0 or greater"),
])
def test_invalid_receipts_write_nothing(store, admin, pallet, overrides, message):
    with pytest.raises(ValidationError, match=message):
        receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, **overrides), now=NOW)
    assert _lines(store, pallet.id) == []


def test_invalid_user_id_rejected(store, pallet):
    with pytest.raises(ValidationError, match="invalid user id"):
        receipt_service.save_receipt(store, user_id=0, receipt=make_receipt(pallet.id), now=NOW)


def test_case_size_below_one_becomes_one(store, admin, pallet):
    line = receipt_service.save_receipt(
        store, user_id=admin.id, receipt=make_receipt(pallet.id, case_size=0), now=NOW
    )[0]
    assert line.case_size == 1


def test_missing_pallet_is_not_found(store, admin, project):
    with pytest.raises(NotFoundError, match="pallet not found"):
        receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(999), now=NOW)


def test_receipt_catalogues_known_sku(store, admin, project, pallet):
    receipt_service.save_receipt(
        store, user_id=admin.id, receipt=make_receipt(pallet.id, uom="EA"), now=NOW
    )
    with store.read_tx() as session:
        item = session.query(StockItem).filter(StockItem.sku == "SKU-1").one()
    assert (item.project_id, item.description, item.uom) == (project.id, "Widget", "EA")


# ---------------------------------------------------------------------------
# Pallet guards and promotion
# ---------------------------------------------------------------------------

def test_first_receipt_promotes_created_pallet_to_open(store, admin, pallet):
    assert _pallet_status(store, pallet.id) == "created"
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)
    assert _pallet_status(store, pallet.id) == "open"


def test_open_pallet_stays_open(store, admin, make_pallet):
    p = make_pallet("open")
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(p.id), now=NOW)
    assert _pallet_status(store, p.id) == "open"


def test_closed_pallet_accepts_corrections_without_reopening(store, admin, make_pallet):
    p = make_pallet("closed")
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(p.id), now=NOW)
    assert _pallet_status(store, p.id) == "closed"


def test_cancelled_pallet_is_read_only(store, admin, make_pallet):
    p = make_pallet("cancelled")
    with pytest.raises(ReadOnlyPalletError, match="cancelled pallets are read-only"):
        receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(p.id), now=NOW)


def test_inactive_project_is_read_only(store, admin, project, pallet):
    project_service.set_project_status(store, user_id=admin.id, project_id=project.id, status="inactive", now=NOW)
    with pytest.raises(ReadOnlyProjectError):
        receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)


def test_failure_before_audit_leaves_nothing_behind(store, admin, pallet, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("audit unavailable")

    monkeypatch.setattr(receipt_service, "write_audit", boom)
    with pytest.raises(RuntimeError):
        receipt_service.save_receipt(
            store, user_id=admin.id, receipt=make_receipt(pallet.id, extra_photos=[photo()]), now=NOW
        )

    assert _lines(store, pallet.id) == []
    assert _pallet_status(store, pallet.id) == "created"
    with store.read_tx() as session:
        assert session.query(ReceiptPhoto).count() == 0
        assert session.query(StockItem).count() == 0
        assert session.query(AuditLog).filter(AuditLog.entity_type == "pallet_receipts").count() == 0


# ---------------------------------------------------------------------------
# Line edits
# ---------------------------------------------------------------------------

def _update(pallet_id, receipt_id, **overrides):
    fields = {
        "pallet_id": pallet_id,
        "receipt_id": receipt_id,
        "qty": 9,
        "sku": "SKU-1",
        "description": "Widget v2",
        "batch_number": "B1",
        "expiry_date": FUTURE_EXPIRY,
    }
    fields.update(overrides)
    return ReceiptLineUpdate(**fields)


def test_update_line_edits_in_place(store, admin, pallet):
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)[0]

    updated = receipt_service.update_line(store, user_id=admin.id, line=_update(pallet.id, line.id), now=NOW)

    assert updated.id == line.id
    assert (updated.qty, updated.description) == (9, "Widget v2")
    assert _receipt_actions(store) == ["receipt.create", "receipt.update"]


def test_update_line_damaged_covers_whole_qty(store, admin, pallet):
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)[0]

    updated = receipt_service.update_line(
        store, user_id=admin.id, line=_update(pallet.id, line.id, damaged=True), now=NOW
    )
    assert updated.damaged and updated.damaged_qty == 9


def test_update_line_requires_open_pallet(store, admin, pallet):
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)[0]
    with store.write_tx() as session:
        session.get(Pallet, pallet.id).status = "closed"

    with pytest.raises(ReadOnlyPalletError, match="receipt lines are read-only"):
        receipt_service.update_line(store, user_id=admin.id, line=_update(pallet.id, line.id), now=NOW)


def test_update_missing_line_is_not_found(store, admin, make_pallet):
    p = make_pallet("open")
    with pytest.raises(NotFoundError, match="receipt line not found"):
        receipt_service.update_line(store, user_id=admin.id, line=_update(p.id, 12345), now=NOW)


def test_update_known_line_requires_sku(store, admin, pallet):
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)[0]
    with pytest.raises(ValidationError, match="sku is required"):
        receipt_service.update_line(store, user_id=admin.id, line=_update(pallet.id, line.id, sku=""), now=NOW)


def test_delete_line_removes_line_and_photos(store, admin, pallet):
    line = receipt_service.save_receipt(
        store, user_id=admin.id, receipt=make_receipt(pallet.id, extra_photos=[photo(), photo()]), now=NOW
    )[0]

    receipt_service.delete_line(store, user_id=admin.id, pallet_id=pallet.id, receipt_id=line.id, now=NOW)

    assert _lines(store, pallet.id) == []
    assert _photo_count(store, line.id) == 0
    with store.read_tx() as session:
        entry = session.query(AuditLog).filter(AuditLog.action == "receipt.delete").one()
    assert entry.entity_id == str(line.id)
    assert entry.after_json in (None, "")


# ---------------------------------------------------------------------------
# Photos
# ---------------------------------------------------------------------------

def test_load_primary_and_extra_photos(store, admin, pallet):
    line = receipt_service.save_receipt(
        store,
        user_id=admin.id,
        receipt=make_receipt(pallet.id, primary_photo=photo("main.png"), extra_photos=[photo("extra.png")]),
        now=NOW,
    )[0]

    primary = receipt_service.load_primary_photo(store, pallet.id, line.id)
    assert (primary.mime_type, primary.file_name) == ("image/png", "main.png")

    [photo_id] = receipt_service.load_photo_ids(store, line.id)
    extra = receipt_service.load_photo(store, pallet.id, line.id, photo_id)
    assert extra.file_name == "extra.png"

    with pytest.raises(NotFoundError):
        receipt_service.load_photo(store, pallet.id + 1, line.id, photo_id)


def test_line_without_primary_photo_has_none(store, admin, pallet):
    line = receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id), now=NOW)[0]
    with pytest.raises(NotFoundError, match="photo not found"):
        receipt_service.load_primary_photo(store, pallet.id, line.id)


def test_receipt_audit_snapshots_round_trip(store, admin, pallet):
    line = receipt_service.save_receipt(
        store, user_id=admin.id, receipt=make_receipt(pallet.id, primary_photo=photo()), now=NOW
    )[0]
    receipt_service.save_receipt(store, user_id=admin.id, receipt=make_receipt(pallet.id, qty=3), now=NOW)
    receipt_service.update_line(store, user_id=admin.id, line=_update(pallet.id, line.id), now=NOW)
    receipt_service.delete_line(store, user_id=admin.id, pallet_id=pallet.id, receipt_id=line.id, now=NOW)

    with store.read_tx() as session:
        entries = (
            session.query(AuditLog)
            .filter(AuditLog.entity_type == "pallet_receipts")
            .order_by(AuditLog.id.asc())
            .all()
        )
    assert [e.action for e in entries] == ["receipt.create", "receipt.merge", "receipt.update", "receipt.delete"]
    assert {e.entity_id for e in entries} == {str(line.id)}

    create, merge, update, delete = entries
    assert parse_snapshot(create.before_json) is None
    assert parse_snapshot(delete.after_json) is None

    created = parse_snapshot(create.after_json)
    assert (created["pallet_id"], created["qty"], created["has_stock_photo"]) == (pallet.id, 5, True)
    assert "stock_photo_blob" not in created
    assert (parse_snapshot(merge.before_json)["qty"], parse_snapshot(merge.after_json)["qty"]) == (5, 8)
    assert parse_snapshot(update.before_json)["qty"] == 8
    assert (parse_snapshot(update.after_json)["qty"], parse_snapshot(update.after_json)["description"]) == (
        9, "Widget v2"
    )
    assert parse_snapshot(delete.before_json)["qty"] == 9

    # Stored snapshots are already canonical
    for entry in entries:
        for raw in (entry.before_json, entry.after_json):
            if raw:
                assert snapshot_json(parse_snapshot(raw)) == raw
