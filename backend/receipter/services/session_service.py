# Overview: Service-layer operations for sessions; bearer token issue, validation and revocation.

"""
Session Token Management Service

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage; the hash is the row id
- Absolute timeout (SESSION_TTL_HOURS, default 12)
- Revocable on logout

Validation only reads: checking a token never takes the writer lock, so
authenticated reads do not queue behind receipt writes.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..models import SessionToken, User
from ..store import CancelToken, Store
from ..time_utils import utcnow
from ..validation import NotFoundError

DEFAULT_SESSION_TTL = timedelta(hours=12)


@dataclass
class SessionContext:
    user: User
    session: SessionToken


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy); sent to the client, never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    store: Store,
    *,
    user_id: int,
    ttl: timedelta = DEFAULT_SESSION_TTL,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> tuple[SessionToken, str]:
    """
    Create a session for a user.

    Returns (session_record, plaintext_token).
    """
    now = now or utcnow()
    plaintext_token = generate_token()

    def _op(session: Session) -> SessionToken:
        user = session.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("user not found")
        record = SessionToken(
            id=hash_token(plaintext_token),
            user_id=user_id,
            expires_at=now + ttl,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        session.flush()
        return record

    record = store.with_write_tx(_op, token=token)
    return record, plaintext_token


def validate_session(
    store: Store,
    plaintext_token: str,
    *,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> Optional[SessionContext]:
    """
    Resolve a bearer token.

    Returns None if the token is unknown, expired or revoked, or the user is
    deactivated.
    """
    if not plaintext_token:
        return None
    now = now or utcnow()

    with store.read_tx(token) as session:
        record = session.get(SessionToken, hash_token(plaintext_token))
        if record is None or record.revoked_at is not None or record.expires_at <= now:
            return None
        user = session.get(User, record.user_id)

    if user is None or not user.is_active:
        return None
    return SessionContext(user=user, session=record)


def revoke_session(
    store: Store,
    plaintext_token: str,
    *,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> bool:
    """Revoke a session. Returns False if it was unknown or already revoked."""
    now = now or utcnow()

    def _op(session: Session) -> bool:
        record = session.get(SessionToken, hash_token(plaintext_token))
        if record is None or record.revoked_at is not None:
            return False
        record.revoked_at = now
        record.updated_at = now
        return True

    return store.with_write_tx(_op, token=token)


def revoke_all_user_sessions(store: Store, user_id: int, *, now: Optional[datetime] = None) -> int:
    """Revoke every live session of a user; returns the count."""
    now = now or utcnow()

    def _op(session: Session) -> int:
        records = (
            session.query(SessionToken)
            .filter(SessionToken.user_id == user_id, SessionToken.revoked_at.is_(None))
            .all()
        )
        for record in records:
            record.revoked_at = now
            record.updated_at = now
        return len(records)

    return store.with_write_tx(_op)
