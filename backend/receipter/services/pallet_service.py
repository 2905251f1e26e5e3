# Overview: Service-layer operations for pallets; id allocation, lifecycle transitions and the pallet summary.

"""
Pallet Lifecycle Service

================================================================================
PURPOSE: Allocate pallet ids and enforce the pallet state machine
================================================================================

STATE MACHINE:
    created -> open -> closed <-> open
    closed -> labelled
    (anything except cancelled) -> cancelled

    created:   Allocated, label may be printed, no stock yet
    open:      Receiving stock (entered implicitly by the first receipt line)
    closed:    Finished; closed_at set, reopened_at cleared
    labelled:  Content labels printed; only cancel is still possible
    cancelled: Read-only forever; closed_at kept or set to now

RULES:
1. Every transition requires the owning project to be active (ReadOnlyProjectError).
2. A transition not allowed from the current state raises InvalidTransitionError
   and leaves the pallet untouched (closing twice is an error, not a no-op).
3. Each explicit transition writes exactly one audit row with before/after
   pallet snapshots, in the same transaction.
4. The created -> open promotion happens inside the receipt write and is
   covered by that write's receipt audit row; it has no audit row of its own.

ID ALLOCATION:
Ids are max(id)+1, read and inserted under the single writer lock, so bulk
allocation of N pallets yields k..k+N-1 with no gaps even when requests race.
================================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Pallet, Project, ReceiptLine
from ..models.pallets import (
    PALLET_STATUS_CANCELLED,
    PALLET_STATUS_CLOSED,
    PALLET_STATUS_CREATED,
    PALLET_STATUS_LABELLED,
    PALLET_STATUS_OPEN,
)
from ..models.projects import PROJECT_STATUS_ACTIVE
from ..store import CancelToken, Store
from ..time_utils import format_uk_datetime, utcnow
from ..validation import (
    InvalidTransitionError,
    NotFoundError,
    ReadOnlyProjectError,
    ValidationError,
)
from .audit_service import (
    ACTION_PALLET_CANCEL,
    ACTION_PALLET_CLOSE,
    ACTION_PALLET_CREATE,
    ACTION_PALLET_LABEL,
    ACTION_PALLET_REOPEN,
    ENTITY_PALLETS,
    write_audit,
)

logger = logging.getLogger(__name__)

MAX_BULK_PALLETS = 500

READ_ONLY_PROJECT_MESSAGE = "inactive projects are read-only"

# to_status -> (allowed from, audit action, error message)
_TRANSITIONS = {
    PALLET_STATUS_CLOSED: ({PALLET_STATUS_OPEN}, ACTION_PALLET_CLOSE, "pallet must be open to close"),
    PALLET_STATUS_OPEN: ({PALLET_STATUS_CLOSED}, ACTION_PALLET_REOPEN, "pallet must be closed to reopen"),
    PALLET_STATUS_LABELLED: ({PALLET_STATUS_CLOSED}, ACTION_PALLET_LABEL, "pallet must be closed to mark labelled"),
    PALLET_STATUS_CANCELLED: (
        {PALLET_STATUS_CREATED, PALLET_STATUS_OPEN, PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED},
        ACTION_PALLET_CANCEL,
        "pallet is already cancelled",
    ),
}

SUMMARY_STATUS_FILTERS = (PALLET_STATUS_CREATED, PALLET_STATUS_OPEN, PALLET_STATUS_CLOSED)


def require_active_project(session: Session, project_id: int) -> Project:
    """
    Load a project and refuse writes unless it is active.

    Raises:
        NotFoundError: project does not exist
        ReadOnlyProjectError: project is inactive
    """
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError("project not found")
    if project.status != PROJECT_STATUS_ACTIVE:
        raise ReadOnlyProjectError(READ_ONLY_PROJECT_MESSAGE)
    return project


def get_pallet(session: Session, pallet_id: int, *, project_id: Optional[int] = None) -> Pallet:
    query = session.query(Pallet).filter(Pallet.id == pallet_id)
    if project_id is not None:
        query = query.filter(Pallet.project_id == project_id)
    pallet = query.first()
    if pallet is None:
        raise NotFoundError("pallet not found")
    return pallet


def next_pallet_id(session: Session) -> int:
    current = session.query(func.coalesce(func.max(Pallet.id), 0)).scalar()
    return int(current) + 1


def _insert_pallets(session: Session, *, user_id: int, project_id: int, count: int, now: datetime) -> list[Pallet]:
    require_active_project(session, project_id)

    first_id = next_pallet_id(session)
    pallets = []
    for pallet_id in range(first_id, first_id + count):
        pallet = Pallet(
            id=pallet_id,
            project_id=project_id,
            status=PALLET_STATUS_CREATED,
            created_at=now,
        )
        session.add(pallet)
        session.flush()
        write_audit(
            session,
            user_id=user_id,
            action=ACTION_PALLET_CREATE,
            entity_type=ENTITY_PALLETS,
            entity_id=pallet.id,
            before=None,
            after=pallet.to_dict(),
            now=now,
        )
        pallets.append(pallet)
    return pallets


def allocate_bulk(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    count: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> list[Pallet]:
    """
    Create `count` pallets with consecutive ids in one transaction.

    Args:
        user_id: Acting user (audit actor)
        project_id: Owning project, must be active
        count: 1..500

    Returns:
        The new pallets in id order, all with status "created".

    Raises:
        ValidationError: count out of range
        NotFoundError / ReadOnlyProjectError: project missing or inactive
    """
    if count < 1 or count > MAX_BULK_PALLETS:
        raise ValidationError(f"pallet count must be between 1 and {MAX_BULK_PALLETS}")
    now = now or utcnow()

    pallets = store.with_write_tx(
        lambda session: _insert_pallets(session, user_id=user_id, project_id=project_id, count=count, now=now),
        token=token,
    )
    logger.info("Allocated pallets %d-%d for project %d", pallets[0].id, pallets[-1].id, project_id)
    return pallets


def allocate_one(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Pallet:
    """Create the next pallet for a project."""
    return allocate_bulk(store, user_id=user_id, project_id=project_id, count=1, now=now, token=token)[0]


def load_pallet(store: Store, pallet_id: int, *, token: Optional[CancelToken] = None) -> Pallet:
    with store.read_tx(token) as session:
        return get_pallet(session, pallet_id)


def transition(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    pallet_id: int,
    to_status: str,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Pallet:
    """
    Apply one explicit status transition.

    Args:
        to_status: "closed", "open" (reopen), "labelled" or "cancelled".
            "created" is never a valid target; promotion to "open" from
            "created" happens only through a receipt write.

    Returns:
        The pallet after the transition.

    Raises:
        NotFoundError: pallet not found in this project
        ReadOnlyProjectError: project inactive
        InvalidTransitionError: transition not allowed from the current status
    """
    rule = _TRANSITIONS.get(to_status)
    if rule is None:
        raise InvalidTransitionError(f"invalid pallet status transition: {to_status}")
    allowed_from, action, message = rule
    now = now or utcnow()

    def _op(session: Session) -> Pallet:
        pallet = get_pallet(session, pallet_id, project_id=project_id)
        require_active_project(session, pallet.project_id)

        if pallet.status not in allowed_from:
            raise InvalidTransitionError(message)

        before = pallet.to_dict()
        from_status = pallet.status
        pallet.status = to_status
        if to_status == PALLET_STATUS_CLOSED:
            pallet.closed_at = now
            pallet.reopened_at = None
        elif to_status == PALLET_STATUS_OPEN:
            pallet.reopened_at = now
        elif to_status == PALLET_STATUS_CANCELLED:
            pallet.closed_at = pallet.closed_at or now
        session.flush()

        write_audit(
            session,
            user_id=user_id,
            action=action,
            entity_type=ENTITY_PALLETS,
            entity_id=pallet.id,
            before=before,
            after=pallet.to_dict(),
            now=now,
        )
        logger.info("Pallet %d: %s -> %s by user %d", pallet.id, from_status, to_status, user_id)
        return pallet

    return store.with_write_tx(_op, token=token)


def close_pallet(store: Store, **kwargs) -> Pallet:
    return transition(store, to_status=PALLET_STATUS_CLOSED, **kwargs)


def reopen_pallet(store: Store, **kwargs) -> Pallet:
    return transition(store, to_status=PALLET_STATUS_OPEN, **kwargs)


def cancel_pallet(store: Store, **kwargs) -> Pallet:
    return transition(store, to_status=PALLET_STATUS_CANCELLED, **kwargs)


def mark_labelled(store: Store, **kwargs) -> Pallet:
    """closed -> labelled, after content labels were printed."""
    return transition(store, to_status=PALLET_STATUS_LABELLED, **kwargs)


def promote_to_open_if_created(session: Session, pallet: Pallet) -> bool:
    """
    created -> open on the first receipt line, inside the caller's transaction.

    No audit row: the receipt audit row that triggered it is the record.
    """
    if pallet.status != PALLET_STATUS_CREATED:
        return False
    pallet.status = PALLET_STATUS_OPEN
    pallet.reopened_at = None
    session.flush()
    return True


def normalize_summary_filter(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    return v if v in SUMMARY_STATUS_FILTERS else "all"


def load_pallet_summary(
    store: Store,
    *,
    project_id: Optional[int] = None,
    status_filter: Optional[str] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """
    Pallet board: status counts plus one row per pallet (newest first).

    Rows carry line_count, UK-formatted timestamps and whether the pallet can
    currently be closed or reopened.
    """
    status_filter = normalize_summary_filter(status_filter)

    with store.read_tx(token) as session:
        base = session.query(Pallet)
        if project_id is not None:
            base = base.filter(Pallet.project_id == project_id)

        counts = {
            f"{status}_count": base.filter(Pallet.status == status).count()
            for status in SUMMARY_STATUS_FILTERS
        }

        line_count = (
            session.query(func.count(ReceiptLine.id))
            .filter(ReceiptLine.pallet_id == Pallet.id)
            .correlate(Pallet)
            .scalar_subquery()
        )
        query = session.query(Pallet, line_count.label("line_count"))
        if project_id is not None:
            query = query.filter(Pallet.project_id == project_id)
        if status_filter != "all":
            query = query.filter(Pallet.status == status_filter)

        rows = []
        for pallet, lines in query.order_by(Pallet.id.desc()).all():
            rows.append({
                "id": pallet.id,
                "project_id": pallet.project_id,
                "status": pallet.status,
                "line_count": int(lines or 0),
                "created_at": format_uk_datetime(pallet.created_at),
                "closed_at": format_uk_datetime(pallet.closed_at),
                "reopened_at": format_uk_datetime(pallet.reopened_at),
                "can_close": pallet.status == PALLET_STATUS_OPEN,
                "can_reopen": pallet.status == PALLET_STATUS_CLOSED,
            })

    return {"status_filter": status_filter, **counts, "pallets": rows}
