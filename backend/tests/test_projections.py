"""
Read-side projection tests: pallet content listings, line detail and the
SKU-instance summary/detail views.
"""

from datetime import datetime

import pytest
from sqlalchemy import event

from conftest import NOW, PAST_EXPIRY, make_receipt, photo
from receipter.services import (
    client_comment_service,
    export_service,
    label_service,
    pallet_content_service,
    pallet_service,
    receipt_service,
    sku_view_service,
)
from receipter.services.receipt_filters import normalize_content_filter, normalize_sku_filter
from receipter.services.sku_view_service import sanitize_sku_filter
from receipter.validation import NotFoundError, ValidationError


def _receive(store, user, pallet, **overrides):
    return receipt_service.save_receipt(store, user_id=user.id, receipt=make_receipt(pallet.id, **overrides), now=NOW)


@pytest.fixture
def mixed_pallet(store, admin, make_pallet):
    """One pallet holding a good, an expired, a damaged and an unknown line."""
    p = make_pallet("open")
    _receive(store, admin, p, sku="A-GOOD", qty=10)
    _receive(store, admin, p, sku="B-EXPIRED", qty=4, expiry_date=PAST_EXPIRY)
    _receive(store, admin, p, sku="C-DAMAGED", qty=3, damaged=True, damaged_qty=3, comment="crushed")
    _receive(store, admin, p, sku="", unknown_sku=True, qty=2, primary_photo=photo(), batch_number="", expiry_date=None)
    return p


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, expected", [
    (None, "all"),
    ("", "all"),
    (" Damaged ", "damaged"),
    ("expired", "expired"),
    ("client_comment", "all"),
    ("bogus", "all"),
])
def test_normalize_content_filter(raw, expected):
    assert normalize_content_filter(raw) == expected


def test_client_comment_filter_is_admin_only():
    assert normalize_sku_filter("client_comment") == "client_comment"
    assert sanitize_sku_filter("client_comment", is_admin=True) == "client_comment"
    assert sanitize_sku_filter("client_comment", is_admin=False) == "all"
    assert sanitize_sku_filter("unknown", is_admin=False) == "unknown"


# ---------------------------------------------------------------------------
# Pallet content
# ---------------------------------------------------------------------------

def test_pallet_content_lists_lines_in_sku_order(store, admin, mixed_pallet):
    content = pallet_content_service.load_pallet_content(store, mixed_pallet.id, now=NOW)

    assert content["filter"] == "all"
    assert content["pallet"]["id"] == mixed_pallet.id
    assert [line["sku"] for line in content["lines"]] == ["A-GOOD", "B-EXPIRED", "C-DAMAGED", "UNKNOWN"]

    by_sku = {line["sku"]: line for line in content["lines"]}
    assert by_sku["B-EXPIRED"]["expired"] is True
    assert by_sku["B-EXPIRED"]["expiry_date_uk"] == "31/12/2025"
    assert by_sku["A-GOOD"]["expired"] is False
    assert by_sku["UNKNOWN"]["has_photos"] is True
    assert by_sku["UNKNOWN"]["unknown_sku"] is True
    assert by_sku["C-DAMAGED"]["comment"] == "crushed"
    assert by_sku["A-GOOD"]["scanned_by"] == "admin"


@pytest.mark.parametrize("filter_name, expected", [
    ("success", ["A-GOOD"]),
    ("expired", ["B-EXPIRED"]),
    ("damaged", ["C-DAMAGED"]),
    ("unknown", ["UNKNOWN"]),
])
def test_pallet_content_filters(store, mixed_pallet, filter_name, expected):
    content = pallet_content_service.load_pallet_content(store, mixed_pallet.id, filter=filter_name, now=NOW)
    assert [line["sku"] for line in content["lines"]] == expected


def test_expiry_is_judged_against_supplied_clock(store, mixed_pallet):
    content = pallet_content_service.load_pallet_content(
        store, mixed_pallet.id, filter="expired", now=datetime(2025, 12, 31, 23, 59)
    )
    assert content["lines"] == []


def test_pallet_content_missing_pallet(store):
    with pytest.raises(NotFoundError):
        pallet_content_service.load_pallet_content(store, 999, now=NOW)


def test_line_detail_includes_photos_and_client_comments(store, admin, client_user, project, make_pallet):
    p = make_pallet("open")
    [line] = _receive(
        store, admin, p,
        item_barcode="5012345678900",
        primary_photo=photo("main.png"),
        extra_photos=[photo("side.png"), photo("top.png")],
    )
    client_comment_service.add_client_comment(
        store,
        user_id=client_user.id,
        project_id=project.id,
        pallet_id=p.id,
        sku="SKU-1",
        batch="B1",
        expiry_iso="2026-06-01",
        comment="  label smudged ",
        now=NOW,
    )

    detail = pallet_content_service.load_pallet_content_line_detail(store, p.id, line.id, now=NOW)

    assert detail["line"]["id"] == line.id
    assert detail["line"]["has_stock_photo"] is True
    assert detail["line"]["item_barcode"] == "5012345678900"
    assert detail["line"]["has_client_comments"] is True
    assert len(detail["photo_ids"]) == 2
    [comment] = detail["client_comments"]
    assert comment["comment"] == "label smudged"
    assert comment["actor"] == "client"
    assert comment["created_at_uk"] == "30/01/2026 09:00"


def test_line_detail_rejects_line_from_other_pallet(store, admin, make_pallet):
    first = make_pallet("open")
    second = make_pallet("open")
    [line] = _receive(store, admin, first)

    with pytest.raises(NotFoundError, match="receipt line not found"):
        pallet_content_service.load_pallet_content_line_detail(store, second.id, line.id, now=NOW)


# ---------------------------------------------------------------------------
# SKU views
# ---------------------------------------------------------------------------

def test_sku_summary_breaks_down_quantities(store, admin, project, make_pallet):
    first = make_pallet("open")
    second = make_pallet("open")
    _receive(store, admin, first, qty=10, damaged=True, damaged_qty=4)
    _receive(store, admin, second, qty=5, comment="top layer")
    _receive(store, admin, second, sku="sku-0", qty=1)

    view = sku_view_service.load_sku_summary(store, project.id, now=NOW)

    assert view["project_name"] == "Intake"
    assert view["filter"] == "all"
    # Case-insensitive sku ordering
    assert [row["sku"] for row in view["rows"]] == ["sku-0", "SKU-1"]
    row = view["rows"][1]
    assert (row["total_qty"], row["success_qty"], row["damaged_qty"], row["unknown_qty"]) == (15, 11, 4, 0)
    assert row["has_comments"] is True
    assert row["expiry_date"] == "2026-06-01"
    assert row["expiry_date_uk"] == "01/06/2026"
    assert row["batch_number"] == "B1"


def test_sku_summary_filter_applies_before_grouping(store, admin, project, make_pallet):
    p = make_pallet("open")
    _receive(store, admin, p, qty=10, damaged=True, damaged_qty=4)

    [row] = sku_view_service.load_sku_summary(store, project.id, filter="damaged", now=NOW)["rows"]
    assert row["total_qty"] == 4


def test_sku_summary_missing_project(store):
    with pytest.raises(NotFoundError):
        sku_view_service.load_sku_summary(store, 42, now=NOW)


def test_sku_detail_per_pallet_breakdown(store, admin, client_user, project, make_pallet):
    first = make_pallet("open")
    second = make_pallet("open")
    _receive(store, admin, first, qty=6, comment="wet", extra_photos=[photo()])
    _receive(store, admin, second, qty=2, damaged=True, damaged_qty=2, comment="torn", primary_photo=photo())
    _receive(store, admin, second, qty=3, comment="torn")
    client_comment_service.add_client_comment(
        store, user_id=client_user.id, project_id=project.id, pallet_id=first.id,
        sku="SKU-1", batch="B1", expiry_iso="2026-06-01", comment="please recount", now=NOW,
    )

    detail = sku_view_service.load_sku_detail(
        store, project.id, sku="SKU-1", batch="B1", expiry_iso="2026-06-01", now=NOW
    )

    summary = detail["summary"]
    assert (summary["total_qty"], summary["success_qty"], summary["damaged_qty"]) == (11, 9, 2)
    assert summary["has_client_comments"] is True

    pallets = {entry["pallet_id"]: entry for entry in detail["pallets"]}
    assert pallets[first.id]["total_qty"] == 6
    assert pallets[first.id]["comments"] == "wet"
    assert pallets[second.id]["total_qty"] == 5
    assert pallets[second.id]["damaged_qty"] == 2
    assert pallets[second.id]["comments"] == "torn"

    assert [(ref["pallet_id"], ref["is_primary"]) for ref in detail["photos"]] == [
        (first.id, False),
        (second.id, True),
    ]
    assert detail["photos"][0]["line_comment"] == "wet"
    assert detail["photos"][1]["photo_id"] == 0

    [comment] = detail["client_comments"]
    assert comment["comment"] == "please recount"


def test_sku_detail_photos_follow_their_line(store, admin, project, make_pallet):
    p = make_pallet("open")
    [first] = _receive(store, admin, p, qty=1, case_size=1, primary_photo=photo(), extra_photos=[photo(), photo()])
    [second] = _receive(store, admin, p, qty=1, case_size=6, primary_photo=photo(), extra_photos=[photo()])

    detail = sku_view_service.load_sku_detail(
        store, project.id, sku="SKU-1", batch="B1", expiry_iso="2026-06-01", now=NOW
    )

    # Each primary (photo_id 0) is followed by the extras of the same line.
    assert [(ref["receipt_id"], ref["is_primary"]) for ref in detail["photos"]] == [
        (first.id, True),
        (first.id, False),
        (first.id, False),
        (second.id, True),
        (second.id, False),
    ]
    assert [ref["photo_id"] for ref in detail["photos"] if ref["is_primary"]] == [0, 0]


def test_sku_detail_blank_batch_matches_missing_batch(store, admin, project, make_pallet):
    p = make_pallet("open")
    _receive(store, admin, p, batch_number="", expiry_date=None, qty=7)

    detail = sku_view_service.load_sku_detail(store, project.id, sku="SKU-1", batch="  ", expiry_iso="", now=NOW)
    assert detail["summary"]["total_qty"] == 7
    assert detail["summary"]["expiry_date"] == ""


def test_sku_detail_errors(store, admin, project, make_pallet):
    p = make_pallet("open")
    _receive(store, admin, p)

    with pytest.raises(ValidationError, match="sku is required"):
        sku_view_service.load_sku_detail(store, project.id, sku=" ", now=NOW)
    with pytest.raises(ValidationError, match="invalid expiry date"):
        sku_view_service.load_sku_detail(store, project.id, sku="SKU-1", expiry_iso="01/06/2026", now=NOW)
    with pytest.raises(NotFoundError, match="sku instance not found"):
        sku_view_service.load_sku_detail(store, project.id, sku="SKU-1", batch="OTHER", now=NOW)


# ---------------------------------------------------------------------------
# Photo blobs stay out of list reads
# ---------------------------------------------------------------------------

@pytest.fixture
def reader_statements(store):
    """SQL sent through the read-only engine while the test runs."""
    statements = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(store._reader, "before_cursor_execute", _capture)
    yield statements
    event.remove(store._reader, "before_cursor_execute", _capture)


def test_read_paths_do_not_select_photo_blobs(store, admin, project, make_pallet, reader_statements):
    p = make_pallet("open")
    [line] = _receive(store, admin, p, primary_photo=photo(), extra_photos=[photo()])
    pallet_service.close_pallet(store, user_id=admin.id, project_id=project.id, pallet_id=p.id, now=NOW)

    content = pallet_content_service.load_pallet_content(store, p.id, now=NOW)
    detail = pallet_content_service.load_pallet_content_line_detail(store, p.id, line.id, now=NOW)
    sku_detail = sku_view_service.load_sku_detail(
        store, project.id, sku="SKU-1", batch="B1", expiry_iso="2026-06-01", now=NOW
    )
    export_rows = sku_view_service.load_sku_detailed_export_rows(store, project.id, now=NOW)
    label_service.load_closed_pallet_label_data(store, p.id)
    label_service.load_closed_pallet_labels_data(store, p.id)
    export_service.export_project_receipts_csv(store, user_id=admin.id, project_id=project.id, now=NOW)

    assert reader_statements
    assert not [s for s in reader_statements if "pallet_receipts.stock_photo_blob AS" in s]

    # Photo flags are still computed in SQL.
    assert content["lines"][0]["has_photos"] is True
    assert detail["line"]["has_stock_photo"] is True
    assert [ref["is_primary"] for ref in sku_detail["photos"]] == [True, False]
    assert export_rows[0]["has_photos"] is True
