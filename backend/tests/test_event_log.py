"""
Activity log tests: pallet event log and project log projections over
audit_logs.
"""

import json

import pytest

from conftest import NOW, make_receipt
from receipter.models import AuditLog, Pallet
from receipter.services import event_log_service, pallet_service, project_service, receipt_service
from receipter.services.event_log_service import format_audit_expiry, pallet_event_details
from receipter.validation import NotFoundError


def _receive(store, user, pallet, **overrides):
    return receipt_service.save_receipt(store, user_id=user.id, receipt=make_receipt(pallet.id, **overrides), now=NOW)


def _add_audit(store, **fields):
    with store.write_tx() as session:
        session.add(AuditLog(created_at=NOW, **fields))


# ---------------------------------------------------------------------------
# Pallet event log
# ---------------------------------------------------------------------------

def test_pallet_event_log_newest_first(store, admin, scanner, project, pallet):
    [line] = _receive(store, scanner, pallet)
    pallet_service.close_pallet(store, user_id=admin.id, project_id=project.id, pallet_id=pallet.id, now=NOW)

    events = event_log_service.load_pallet_event_log(store, pallet.id)

    assert [e["action"] for e in events] == ["pallet.close", "receipt.create", "pallet.create"]
    close, receipt, create = events
    assert close["actor"] == "admin"
    assert close["details"] == "Status changed from open to closed"
    assert close["timestamp"] == "30/01/2026 09:00"
    assert receipt["actor"] == "scanner"
    assert receipt["details"] == (
        f"Line {line.id}, qty 5, case 1, damaged No, sku SKU-1, desc Widget, batch B1, expiry 01/06/2026"
    )
    assert create["details"] == "Status is created"


def test_pallet_event_log_ignores_other_pallets(store, admin, make_pallet):
    mine = make_pallet("open")
    other = make_pallet("open")
    _receive(store, admin, other)

    actions = [e["action"] for e in event_log_service.load_pallet_event_log(store, mine.id)]
    assert actions == ["pallet.create"]


def test_pallet_event_log_understands_legacy_snapshot_keys(store, admin, pallet):
    _add_audit(
        store,
        user_id=admin.id,
        action="receipt.create",
        entity_type="pallet_receipts",
        entity_id="77",
        before_json="",
        after_json=json.dumps({"PalletID": pallet.id, "Qty": 3, "CaseSize": 6, "Damaged": True, "SKU": "OLD-1"}),
    )
    _add_audit(
        store,
        user_id=admin.id,
        action="receipt.create",
        entity_type="pallet_receipts",
        entity_id="78",
        before_json="",
        after_json="not json",
    )

    events = event_log_service.load_pallet_event_log(store, pallet.id)

    legacy = [e for e in events if e["action"] == "receipt.create"]
    assert [e["details"] for e in legacy] == ["Line 77, qty 3, case 6, damaged Yes, sku OLD-1"]


def test_pallet_without_create_audit_gets_system_event(store, project):
    with store.write_tx() as session:
        legacy = Pallet(id=50, project_id=project.id, status="open", created_at=NOW)
        session.add(legacy)
        session.flush()
        pallet_id = legacy.id

    [event] = event_log_service.load_pallet_event_log(store, pallet_id)

    assert event == {
        "timestamp": "30/01/2026 09:00",
        "actor": "system",
        "action": "pallet.create",
        "details": f"Pallet {pallet_id} created",
    }


def test_pallet_event_log_missing_pallet(store):
    with pytest.raises(NotFoundError):
        event_log_service.load_pallet_event_log(store, 404)


@pytest.mark.parametrize("before, after, expected", [
    ({"status": "open"}, {"status": "closed"}, "Status changed from open to closed"),
    ({"Status": "closed"}, {"Status": "closed"}, "Status is closed"),
    ({"status": "open"}, None, "Previous status was open"),
    (None, None, "Pallet event recorded"),
])
def test_pallet_event_details_for_status_rows(before, after, expected):
    before_json = json.dumps(before) if before else ""
    after_json = json.dumps(after) if after else ""
    assert pallet_event_details("pallets", "1", before_json, after_json) == expected


def test_receipt_details_fall_back_to_before_snapshot():
    before = json.dumps({"pallet_id": 3, "qty": 2, "case_size": 1, "damaged": False})
    assert pallet_event_details("pallet_receipts", "9", before, "") == "Line 9, qty 2, case 1, damaged No"
    assert pallet_event_details("pallet_receipts", "9", "", "") == "Receipt event recorded"
    assert pallet_event_details("projects", "1", "", "") == "Event recorded"


@pytest.mark.parametrize("raw, expected", [
    ("2026-06-01", "01/06/2026"),
    ("2026-06-01T00:00:00Z", "01/06/2026"),
    ("", ""),
    (None, ""),
    ("null", ""),
    ("soon", "soon"),
])
def test_format_audit_expiry(raw, expected):
    assert format_audit_expiry(raw) == expected


# ---------------------------------------------------------------------------
# Project log
# ---------------------------------------------------------------------------

def test_project_log_collects_project_pallet_and_receipt_rows(store, admin, project, pallet):
    _receive(store, admin, pallet)
    project_service.set_project_status(store, user_id=admin.id, project_id=project.id, status="inactive", now=NOW)
    project_service.activate_project(store, user_id=admin.id, project_id=project.id, now=NOW)

    log = event_log_service.load_project_log(store, project.id)

    assert log["project_name"] == "Intake"
    assert log["client_name"] == "Test Client"
    assert log["project_status"] == "active"
    actions = [row["action"] for row in log["rows"]]
    assert actions == ["project.status", "receipt.create", "pallet.create", "project.create"]
    assert "project.activate" not in actions
    assert all(row["actor"] == "admin" for row in log["rows"])
    assert log["rows"][0]["entity_type"] == "projects"
    assert log["rows"][0]["created_at_uk"] == "30/01/2026 09:00"


def test_project_log_excludes_other_projects(store, admin, project):
    other = project_service.create_project(
        store, user_id=admin.id, name="Other", description="x", client_name="Else", now=NOW
    )
    pallet_service.allocate_one(store, user_id=admin.id, project_id=other.id, now=NOW)

    actions = [row["action"] for row in event_log_service.load_project_log(store, project.id)["rows"]]
    assert actions == ["project.create"]


def test_project_log_missing_project(store):
    with pytest.raises(NotFoundError):
        event_log_service.load_project_log(store, 404)
