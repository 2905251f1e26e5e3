# Overview: Retry helper for write units that lose the SQLite lock race.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("database is locked", "database is busy")


def is_transient_lock_error(exc: BaseException) -> bool:
    """True for lock/busy failures that a later attempt can clear."""
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a whole write unit with retry on transient lock failures.

    `func` must open and close its own transaction so every attempt starts
    clean. Only OperationalError that looks like lock contention is retried;
    everything else (including read-only violations and cancellations)
    propagates on the first attempt.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except OperationalError as exc:
            if not is_transient_lock_error(exc):
                raise
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning("Write lock contention (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
