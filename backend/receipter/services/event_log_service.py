# Overview: Service-layer operations for activity logs; pallet event log and project log built from audit rows.

"""
Event logs are projections of audit_logs; nothing here writes.

PALLET EVENT LOG:
- audit rows for the pallet itself (entity pallets / id), plus
- receipt audit rows whose before or after snapshot belongs to the pallet.
  Snapshots are parsed as JSON, never substring-matched; both snake_case
  ("pallet_id") and legacy PascalCase ("PalletID") keys are understood.
If no pallet.create row exists (pallets created before auditing), a
synthetic "system" event is appended from pallets.created_at.

PROJECT LOG:
- audit rows for the project itself, plus any row whose snapshot names the
  project (project_id / ProjectID); project.activate rows are excluded.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from sqlalchemy import and_, case, func, or_

from ..models import AuditLog, Pallet, Project, User
from ..store import CancelToken, Store
from ..time_utils import format_uk_date, format_uk_datetime
from ..validation import NotFoundError
from .audit_service import (
    ACTION_PALLET_CREATE,
    ACTION_PROJECT_ACTIVATE,
    ENTITY_PALLETS,
    ENTITY_PROJECTS,
    ENTITY_RECEIPTS,
    parse_snapshot,
)

SYSTEM_ACTOR = "system"
NO_ACTOR = "-"


def _field(snapshot: dict, snake: str, pascal: str, default: Any = None) -> Any:
    if snake in snapshot:
        return snapshot[snake]
    return snapshot.get(pascal, default)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def snapshot_pallet_id(snapshot: Optional[dict]) -> int:
    if not snapshot:
        return 0
    return _as_int(_field(snapshot, "pallet_id", "PalletID"))


def snapshot_belongs_to_pallet(raw: Optional[str], pallet_id: int) -> bool:
    return snapshot_pallet_id(parse_snapshot(raw)) == pallet_id


def format_audit_expiry(raw: Any) -> str:
    """Snapshot expiry (ISO date or RFC 3339 timestamp) as DD/MM/YYYY."""
    value = str(raw or "").strip()
    if not value or value == "null":
        return ""
    try:
        return format_uk_date(date.fromisoformat(value[:10]))
    except ValueError:
        return value


def pallet_event_details(entity_type: str, entity_id: str, before_json: str, after_json: str) -> str:
    if entity_type == ENTITY_PALLETS:
        before = parse_snapshot(before_json) or {}
        after = parse_snapshot(after_json) or {}
        before_status = str(_field(before, "status", "Status", "") or "")
        after_status = str(_field(after, "status", "Status", "") or "")
        if before_status and after_status and before_status != after_status:
            return f"Status changed from {before_status} to {after_status}"
        if after_status:
            return f"Status is {after_status}"
        if before_status:
            return f"Previous status was {before_status}"
        return "Pallet event recorded"

    if entity_type != ENTITY_RECEIPTS:
        return "Event recorded"

    snapshot = parse_snapshot(after_json)
    if snapshot_pallet_id(snapshot) <= 0:
        snapshot = parse_snapshot(before_json)
    if snapshot_pallet_id(snapshot) <= 0:
        return "Receipt event recorded"

    damaged = "Yes" if _field(snapshot, "damaged", "Damaged") else "No"
    details = [
        f"Line {entity_id}",
        f"qty {_as_int(_field(snapshot, 'qty', 'Qty'))}",
        f"case {_as_int(_field(snapshot, 'case_size', 'CaseSize'))}",
        f"damaged {damaged}",
    ]
    optional = (
        ("sku", str(_field(snapshot, "sku", "SKU", "") or "").strip()),
        ("desc", str(_field(snapshot, "description", "Description", "") or "").strip()),
        ("uom", str(_field(snapshot, "uom", "UOM", "") or "").strip()),
        ("batch", str(_field(snapshot, "batch_number", "BatchNumber", "") or "").strip()),
        ("expiry", format_audit_expiry(_field(snapshot, "expiry_date", "ExpiryDate"))),
    )
    details.extend(f"{label} {value}" for label, value in optional if value)
    return ", ".join(details)


def _json_key(column, key: str):
    # CASE keeps json_extract away from blank or malformed snapshots.
    return case((func.json_valid(column) == 1, func.json_extract(column, f"$.{key}")), else_=None)


def _json_key_equals(column, keys: tuple[str, ...], value: int):
    return or_(*(_json_key(column, key) == value for key in keys))


def load_pallet_event_log(store: Store, pallet_id: int, *, token: Optional[CancelToken] = None) -> list[dict]:
    """
    Pallet history, newest first.

    Each event: {timestamp (DD/MM/YYYY HH:MM), actor, action, details}.
    """
    pallet_keys = ("pallet_id", "PalletID")

    with store.read_tx(token) as session:
        pallet = session.get(Pallet, pallet_id)
        if pallet is None:
            raise NotFoundError("pallet not found")

        rows = (
            session.query(AuditLog, User.username)
            .outerjoin(User, User.id == AuditLog.user_id)
            .filter(or_(
                and_(AuditLog.entity_type == ENTITY_PALLETS, AuditLog.entity_id == str(pallet_id)),
                and_(
                    AuditLog.entity_type == ENTITY_RECEIPTS,
                    or_(
                        _json_key_equals(AuditLog.before_json, pallet_keys, pallet_id),
                        _json_key_equals(AuditLog.after_json, pallet_keys, pallet_id),
                    ),
                ),
            ))
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .all()
        )

    events = []
    has_create = False
    for entry, username in rows:
        if entry.entity_type == ENTITY_PALLETS and entry.action == ACTION_PALLET_CREATE:
            has_create = True
        if entry.entity_type == ENTITY_RECEIPTS and not (
            snapshot_belongs_to_pallet(entry.before_json, pallet_id)
            or snapshot_belongs_to_pallet(entry.after_json, pallet_id)
        ):
            continue
        events.append({
            "timestamp": format_uk_datetime(entry.created_at),
            "actor": (username or "").strip() or NO_ACTOR,
            "action": entry.action,
            "details": pallet_event_details(
                entry.entity_type, entry.entity_id, entry.before_json or "", entry.after_json or ""
            ),
        })

    if not has_create:
        events.append({
            "timestamp": format_uk_datetime(pallet.created_at),
            "actor": SYSTEM_ACTOR,
            "action": ACTION_PALLET_CREATE,
            "details": f"Pallet {pallet_id} created",
        })
    return events


def load_project_log(store: Store, project_id: int, *, token: Optional[CancelToken] = None) -> dict:
    """Audit rows touching a project (except activation), newest first."""
    project_keys = ("project_id", "ProjectID")

    with store.read_tx(token) as session:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError("project not found")

        rows = (
            session.query(AuditLog, User.username)
            .outerjoin(User, User.id == AuditLog.user_id)
            .filter(
                AuditLog.action != ACTION_PROJECT_ACTIVATE,
                or_(
                    and_(AuditLog.entity_type == ENTITY_PROJECTS, AuditLog.entity_id == str(project_id)),
                    _json_key_equals(AuditLog.before_json, project_keys, project_id),
                    _json_key_equals(AuditLog.after_json, project_keys, project_id),
                ),
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .all()
        )

    return {
        "project_id": project.id,
        "project_name": project.name,
        "client_name": project.client_name,
        "project_status": project.status,
        "rows": [
            {
                "created_at_uk": format_uk_datetime(entry.created_at),
                "actor": (username or "").strip() or NO_ACTOR,
                "action": (entry.action or "").strip(),
                "entity_type": (entry.entity_type or "").strip(),
                "entity_id": (entry.entity_id or "").strip(),
                "before_json": (entry.before_json or "").strip(),
                "after_json": (entry.after_json or "").strip(),
            }
            for entry, username in rows
        ],
    }
