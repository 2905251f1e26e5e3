# Overview: Service-layer operations for audit; append-only change records written in the caller's transaction.

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models import AuditLog
from ..time_utils import utcnow

"""
Audit Log Invariants (authoritative)

- Append-only: rows are never updated or deleted.
- Written inside the same transaction as the mutation it records, so a
  rollback removes both together. This module never commits.
- before/after are entity snapshots (dicts); None serialises to "".
"""

ACTION_RECEIPT_CREATE = "receipt.create"
ACTION_RECEIPT_MERGE = "receipt.merge"
ACTION_RECEIPT_UPDATE = "receipt.update"
ACTION_RECEIPT_DELETE = "receipt.delete"
ACTION_PALLET_CREATE = "pallet.create"
ACTION_PALLET_CLOSE = "pallet.close"
ACTION_PALLET_REOPEN = "pallet.reopen"
ACTION_PALLET_CANCEL = "pallet.cancel"
ACTION_PALLET_LABEL = "pallet.label"
ACTION_PROJECT_CREATE = "project.create"
ACTION_PROJECT_ACTIVATE = "project.activate"
ACTION_PROJECT_STATUS = "project.status"
ACTION_STOCK_IMPORT = "stock.import"

ENTITY_PALLETS = "pallets"
ENTITY_RECEIPTS = "pallet_receipts"
ENTITY_PROJECTS = "projects"
ENTITY_STOCK_IMPORT_RUNS = "stock_import_runs"


def snapshot_json(value: Any) -> str:
    """Canonical compact JSON for a snapshot; "" for None."""
    if value is None:
        return ""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def parse_snapshot(raw: Optional[str]) -> Optional[dict]:
    """Inverse of snapshot_json for reading; None when blank, invalid or not an object."""
    if raw is None or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def write_audit(
    session: Session,
    *,
    user_id: int,
    action: str,
    entity_type: str,
    entity_id: Any,
    before: Any,
    after: Any,
    now: Optional[datetime] = None,
) -> AuditLog:
    """
    Append one audit record to the caller's transaction.

    Flushes so the row gets its id, but does not commit.
    """
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=snapshot_json(before),
        after_json=snapshot_json(after),
        created_at=now or utcnow(),
    )
    session.add(entry)
    session.flush()
    return entry
