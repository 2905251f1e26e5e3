# Overview: Service-layer operations for projects; creation with unique codes, status changes and client access.

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from ..models import ClientProjectAccess, Pallet, Project, User
from ..models.auth import ROLE_CLIENT
from ..models.pallets import (
    PALLET_STATUS_CLOSED,
    PALLET_STATUS_CREATED,
    PALLET_STATUS_LABELLED,
    PALLET_STATUS_OPEN,
)
from ..models.projects import PROJECT_STATUS_ACTIVE, PROJECT_STATUS_INACTIVE
from ..store import CancelToken, Store
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from .audit_service import (
    ACTION_PROJECT_ACTIVATE,
    ACTION_PROJECT_CREATE,
    ACTION_PROJECT_STATUS,
    ENTITY_PROJECTS,
    write_audit,
)

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 64
MAX_CODE_ATTEMPTS = 1000
DEFAULT_CODE = "project"

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_status(value: Optional[str]) -> str:
    """inactive stays inactive; anything else is active."""
    v = (value or "").strip().lower()
    return PROJECT_STATUS_INACTIVE if v == PROJECT_STATUS_INACTIVE else PROJECT_STATUS_ACTIVE


def normalize_list_filter(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    if v in (PROJECT_STATUS_ACTIVE, PROJECT_STATUS_INACTIVE, "all"):
        return v
    return PROJECT_STATUS_ACTIVE


def normalize_code(raw: Optional[str]) -> str:
    """Lowercase slug: runs of non [a-z0-9] become "-", trimmed, at most 64 chars."""
    v = _SLUG_RE.sub("-", (raw or "").strip().lower()).strip("-")
    return v[:MAX_CODE_LENGTH]


def next_unique_code(session: Session, base_code: str) -> str:
    """base, base-2, base-3, ... until unused."""
    candidate = base_code
    for attempt in range(MAX_CODE_ATTEMPTS):
        exists = session.query(Project.id).filter(Project.code == candidate).first()
        if exists is None:
            return candidate
        candidate = f"{base_code}-{attempt + 2}"
    raise ConflictError("unable to find unique project code")


def create_project(
    store: Store,
    *,
    user_id: int,
    name: str,
    description: str,
    client_name: str,
    project_date: Optional[date] = None,
    code: Optional[str] = None,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Project:
    """
    Create a project.

    The code is derived from `code` (or the name) and made unique by
    suffixing -2, -3, ...

    Raises:
        ValidationError: missing name, description or client name
        ConflictError: no unique code within 1000 attempts
    """
    name = (name or "").strip()
    description = (description or "").strip()
    client_name = (client_name or "").strip()
    if not name:
        raise ValidationError("project name is required")
    if not description:
        raise ValidationError("project description is required")
    if not client_name:
        raise ValidationError("client name is required")

    now = now or utcnow()
    base_code = normalize_code(code) or normalize_code(name) or DEFAULT_CODE

    def _op(session: Session) -> Project:
        project = Project(
            name=name,
            description=description,
            client_name=client_name,
            project_date=project_date or now.date(),
            code=next_unique_code(session, base_code),
            status=normalize_status(status),
            created_by_user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        session.add(project)
        session.flush()
        write_audit(
            session,
            user_id=user_id,
            action=ACTION_PROJECT_CREATE,
            entity_type=ENTITY_PROJECTS,
            entity_id=project.id,
            before=None,
            after=project.to_dict(),
            now=now,
        )
        return project

    project = store.with_write_tx(_op, token=token)
    logger.info("Created project %d (%s)", project.id, project.code)
    return project


def get_project(store: Store, project_id: int, *, token: Optional[CancelToken] = None) -> Project:
    with store.read_tx(token) as session:
        project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError("project not found")
    return project


def list_projects(store: Store, filter: Optional[str] = None, *, token: Optional[CancelToken] = None) -> list[Project]:
    """Projects newest first; filter is active (default), inactive or all."""
    filter_name = normalize_list_filter(filter)
    with store.read_tx(token) as session:
        query = session.query(Project)
        if filter_name != "all":
            query = query.filter(Project.status == filter_name)
        return query.order_by(Project.project_date.desc(), Project.id.desc()).all()


def pallet_counts_by_project(store: Store, project_ids: Iterable[int], *, token: Optional[CancelToken] = None) -> dict:
    """{project_id: {created_count, open_count, closed_count}}; labelled counts as closed."""
    ids = sorted({pid for pid in project_ids if pid and pid > 0})
    counts = {pid: {"created_count": 0, "open_count": 0, "closed_count": 0} for pid in ids}
    if not ids:
        return counts

    bucket = case(
        (Pallet.status == PALLET_STATUS_CREATED, "created_count"),
        (Pallet.status == PALLET_STATUS_OPEN, "open_count"),
        else_="closed_count",
    )
    with store.read_tx(token) as session:
        rows = (
            session.query(Pallet.project_id, bucket.label("bucket"), Pallet.id)
            .filter(
                Pallet.project_id.in_(ids),
                Pallet.status.in_((PALLET_STATUS_CREATED, PALLET_STATUS_OPEN, PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED)),
            )
            .all()
        )
    for project_id, name, _ in rows:
        counts[project_id][name] += 1
    return counts


def _change_status(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    status: str,
    action: str,
    now: Optional[datetime],
    token: Optional[CancelToken],
) -> Project:
    now = now or utcnow()

    def _op(session: Session) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError("project not found")
        before = project.to_dict()
        project.status = status
        project.updated_at = now
        session.flush()
        write_audit(
            session,
            user_id=user_id,
            action=action,
            entity_type=ENTITY_PROJECTS,
            entity_id=project.id,
            before=before,
            after=project.to_dict(),
            now=now,
        )
        return project

    project = store.with_write_tx(_op, token=token)
    logger.info("Project %d status -> %s by user %d", project_id, status, user_id)
    return project


def set_project_status(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    status: Optional[str],
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Project:
    """Set status (normalised, unknown values mean active); audited as project.status."""
    return _change_status(
        store,
        user_id=user_id,
        project_id=project_id,
        status=normalize_status(status),
        action=ACTION_PROJECT_STATUS,
        now=now,
        token=token,
    )


def activate_project(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Project:
    """Make a project active; audited as project.activate (hidden from the project log)."""
    return _change_status(
        store,
        user_id=user_id,
        project_id=project_id,
        status=PROJECT_STATUS_ACTIVE,
        action=ACTION_PROJECT_ACTIVATE,
        now=now,
        token=token,
    )


def set_client_project_access(
    store: Store,
    *,
    user_id: int,
    project_ids: Iterable[int],
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> list[int]:
    """Replace a client user's project grants. Returns the granted ids."""
    if not user_id or user_id <= 0:
        raise ValidationError("client user is required")
    ids = sorted({pid for pid in project_ids if pid and pid > 0})
    if not ids:
        raise ValidationError("at least one project is required")
    now = now or utcnow()

    def _op(session: Session) -> list[int]:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.role != ROLE_CLIENT:
            raise ValidationError("user must have client role")
        existing = session.query(Project.id).filter(Project.id.in_(ids)).count()
        if existing != len(ids):
            raise ValidationError("one or more projects are invalid")

        session.query(ClientProjectAccess).filter(ClientProjectAccess.user_id == user_id).delete(
            synchronize_session=False
        )
        for project_id in ids:
            session.add(ClientProjectAccess(user_id=user_id, project_id=project_id, created_at=now))
        session.flush()
        return ids

    return store.with_write_tx(_op, token=token)


def grant_client_access(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> None:
    """Add one project to a client user's grants (no-op when already granted)."""
    now = now or utcnow()

    def _op(session: Session) -> None:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.role != ROLE_CLIENT:
            raise ValidationError("user must have client role")
        if session.get(Project, project_id) is None:
            raise NotFoundError("project not found")
        if session.get(ClientProjectAccess, (user_id, project_id)) is None:
            session.add(ClientProjectAccess(user_id=user_id, project_id=project_id, created_at=now))

    store.with_write_tx(_op, token=token)


def client_can_access(store: Store, user_id: int, project_id: int, *, token: Optional[CancelToken] = None) -> bool:
    if not user_id or user_id <= 0 or not project_id or project_id <= 0:
        return False
    with store.read_tx(token) as session:
        return session.get(ClientProjectAccess, (user_id, project_id)) is not None


def list_client_projects(store: Store, user_id: int, *, token: Optional[CancelToken] = None) -> list[Project]:
    """Projects granted to a client user, active first, newest first."""
    if not user_id or user_id <= 0:
        return []
    with store.read_tx(token) as session:
        return (
            session.query(Project)
            .join(ClientProjectAccess, ClientProjectAccess.project_id == Project.id)
            .filter(ClientProjectAccess.user_id == user_id)
            .order_by(
                case((Project.status == PROJECT_STATUS_ACTIVE, 0), else_=1),
                Project.project_date.desc(),
                Project.id.desc(),
            )
            .all()
        )
