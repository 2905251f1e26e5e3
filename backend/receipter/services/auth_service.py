# Overview: Service-layer operations for auth; users, bcrypt password hashing and login checks.

"""
Authentication Service

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 12 characters with upper, lower, digit and symbol
- Session tokens managed separately (see session_service.py)
- Deactivated users cannot authenticate
"""

import logging
import re
import unicodedata
from datetime import datetime
from typing import Optional

import bcrypt
from sqlalchemy.orm import Session

from ..models import User
from ..models.auth import ROLES
from ..store import CancelToken, Store
from ..time_utils import utcnow
from ..validation import ConflictError, ValidationError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 12
BCRYPT_ROUNDS = 12

_USERNAME_RE = re.compile(r"^[A-Za-z0-9._@-]{3,64}$")


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def _is_symbol(ch: str) -> bool:
    return unicodedata.category(ch)[0] in ("P", "S")


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 12 characters
    - At least one uppercase letter, lowercase letter, digit and symbol

    Raises PasswordValidationError if requirements not met.
    """
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

    has_upper = any(ch.isupper() for ch in password)
    has_lower = any(ch.islower() for ch in password)
    has_digit = any(ch.isdigit() for ch in password)
    has_symbol = any(_is_symbol(ch) for ch in password)
    if not (has_upper and has_lower and has_digit and has_symbol):
        raise PasswordValidationError("password must include upper, lower, digit and symbol")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe check; malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def normalize_role(role: Optional[str]) -> str:
    v = (role or "").strip().lower()
    if v not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    return v


def create_user(
    store: Store,
    *,
    username: str,
    password: str,
    role: str,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> User:
    """
    Create a user.

    Raises:
        ValidationError: bad username, role or weak password
        ConflictError: username already taken
    """
    username = (username or "").strip()
    if not _USERNAME_RE.match(username):
        raise ValidationError("username must be 3-64 characters of letters, digits or ._@-")
    role = normalize_role(role)
    password_hash = hash_password(password)
    now = now or utcnow()

    def _op(session: Session) -> User:
        if session.query(User.id).filter(User.username == username).first() is not None:
            raise ConflictError("username already exists")
        user = User(
            username=username,
            password_hash=password_hash,
            role=role,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        session.flush()
        return user

    user = store.with_write_tx(_op, token=token)
    logger.info("Created user %d (%s, %s)", user.id, user.username, user.role)
    return user


def authenticate(store: Store, username: str, password: str, *, token: Optional[CancelToken] = None) -> Optional[User]:
    """Return the active user for these credentials, or None."""
    username = (username or "").strip()
    if not username or not password:
        return None
    with store.read_tx(token) as session:
        user = session.query(User).filter(User.username == username).first()
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def list_users(store: Store, *, token: Optional[CancelToken] = None) -> list[User]:
    with store.read_tx(token) as session:
        return session.query(User).order_by(User.username.asc()).all()
