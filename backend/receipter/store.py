# Overview: Transactional substrate over one SQLite file; split writer/reader handles and SQL migrations.

"""
Store: the only way services touch the database.

DESIGN:
- One writer. The writer engine has a pool of exactly one connection, and
  every write transaction starts with BEGIN IMMEDIATE, so the write lock is
  taken up front instead of on the first INSERT/UPDATE (no deferred upgrade,
  no SQLITE_BUSY halfway through a unit of work). Callers queue on the pool
  with a bounded wait (pool_timeout).
- Many readers. The reader engine opens the file with mode=ro and
  PRAGMA query_only=ON; any mutation attempted inside read_tx() fails.
- Sessions are plain SQLAlchemy ORM sessions bound to one of the engines; the
  models are declared on Flask-SQLAlchemy's db.Model but never use db.session.

CANCELLATION:
A CancelToken is checked when a transaction begins and again before commit.
While a transaction is running, an SQLite progress handler aborts the next
statement once the token is cancelled or past its deadline. Either way the
transaction rolls back and OperationCancelled is raised.

MIGRATIONS:
*.sql files are applied in lexical filename order, each inside its own write
transaction. A file that declares its own transaction ("BEGIN TRANSACTION" or
"BEGIN;") is executed as-is. Bundled migrations only use IF NOT EXISTS DDL, so
re-applying them on every open is a no-op.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from .services.concurrency import run_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUNDLED_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

BUSY_TIMEOUT_MS = 5000
# Statements between cancellation checks inside a running transaction.
PROGRESS_HANDLER_STEPS = 1000


class OperationCancelled(RuntimeError):
    """Raised when a transaction is abandoned because its CancelToken fired."""


class MigrationError(RuntimeError):
    """Raised when a migration file fails to apply."""


class CancelToken:
    """
    Ambient cancellation for one operation: explicit cancel() and/or a deadline.

    timeout is in seconds from construction.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("operation cancelled")


def _raise_if_cancelled(token: Optional[CancelToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


def _declares_own_transaction(sql_text: str) -> bool:
    upper = sql_text.upper()
    return "BEGIN TRANSACTION" in upper or "BEGIN;" in upper


def _configure_connection(engine: Engine, *, begin_sql: str, read_only: bool) -> None:
    # Take transaction control away from the sqlite3 module so the "begin"
    # listener decides how each transaction starts.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        if read_only:
            cursor.execute("PRAGMA query_only = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql(begin_sql)


class Store:
    """Handle over one SQLite data file. Create with Store.open(path)."""

    def __init__(self, path: str, writer: Engine, reader: Engine):
        self.path = path
        self._writer = writer
        self._reader = reader
        self._write_sessions = sessionmaker(bind=writer, expire_on_commit=False)
        self._read_sessions = sessionmaker(bind=reader, expire_on_commit=False)

    @classmethod
    def open(
        cls,
        path: str,
        *,
        write_pool_timeout: float = 30.0,
        read_pool_size: int = 8,
    ) -> "Store":
        if not path or not str(path).strip():
            raise ValueError("sqlite path is required")
        path = os.path.abspath(str(path))

        writer = create_engine(
            f"sqlite:///{path}",
            poolclass=QueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=write_pool_timeout,
            connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_MS / 1000},
        )
        _configure_connection(writer, begin_sql="BEGIN IMMEDIATE", read_only=False)

        # The read-only URI cannot create the file, so touch it through the writer first.
        with writer.connect() as conn:
            conn.exec_driver_sql("PRAGMA user_version")

        reader = create_engine(
            f"sqlite:///file:{path}?mode=ro&uri=true",
            poolclass=QueuePool,
            pool_size=read_pool_size,
            max_overflow=0,
            pool_timeout=write_pool_timeout,
            connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_MS / 1000},
        )
        _configure_connection(reader, begin_sql="BEGIN", read_only=True)

        logger.info("Opened store at %s (read pool %d)", path, read_pool_size)
        return cls(path, writer, reader)

    def close(self) -> None:
        self._reader.dispose()
        self._writer.dispose()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @staticmethod
    def _install_cancel_hook(session: Session, token: Optional[CancelToken]):
        # session.connection() starts the transaction (BEGIN / BEGIN IMMEDIATE).
        connection = session.connection()
        if token is None:
            return None
        raw = connection.connection.driver_connection
        raw.set_progress_handler(lambda: 1 if token.cancelled else 0, PROGRESS_HANDLER_STEPS)
        return raw

    @contextmanager
    def _transaction(self, factory, token: Optional[CancelToken], *, commit: bool) -> Iterator[Session]:
        _raise_if_cancelled(token)
        session = factory()
        raw = None
        try:
            raw = self._install_cancel_hook(session, token)
            yield session
            _raise_if_cancelled(token)
            if raw is not None:
                raw.set_progress_handler(None, 0)
                raw = None
            # Read sessions just close: rollback() would expire the loaded
            # objects the caller is about to use.
            if commit:
                session.commit()
        except OperationalError as exc:
            session.rollback()
            if token is not None and token.cancelled:
                raise OperationCancelled("operation cancelled") from exc
            raise
        except BaseException:
            session.rollback()
            raise
        finally:
            if raw is not None:
                raw.set_progress_handler(None, 0)
            session.close()

    def write_tx(self, token: Optional[CancelToken] = None):
        """
        Context manager for one write transaction.

        Commits when the block completes, rolls back on any exception.
        """
        return self._transaction(self._write_sessions, token, commit=True)

    def read_tx(self, token: Optional[CancelToken] = None):
        """Context manager for one read-only transaction."""
        return self._transaction(self._read_sessions, token, commit=False)

    def with_write_tx(
        self,
        fn: Callable[[Session], T],
        *,
        token: Optional[CancelToken] = None,
        attempts: int = 3,
    ) -> T:
        """
        Run fn(session) in a write transaction, retrying the whole unit on
        transient lock contention. fn's return value is returned after commit.
        """
        def _op():
            with self.write_tx(token) as session:
                return fn(session)

        return run_with_retry(_op, attempts=attempts)

    def with_read_tx(self, fn: Callable[[Session], T], *, token: Optional[CancelToken] = None) -> T:
        with self.read_tx(token) as session:
            return fn(session)

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    def apply_migrations(self, directory: Optional[str | os.PathLike] = None) -> list[str]:
        """
        Apply *.sql files from `directory` (bundled migrations by default) in
        lexical order. Returns the applied file names.
        """
        root = Path(directory) if directory is not None else BUNDLED_MIGRATIONS_DIR
        if not root.is_dir():
            raise MigrationError(f"read migrations dir: {root} is not a directory")

        names = sorted(p.name for p in root.iterdir() if p.is_file() and p.suffix == ".sql")
        for name in names:
            sql_text = (root / name).read_text(encoding="utf-8")
            self._apply_migration(name, sql_text)
        return names

    def _apply_migration(self, name: str, sql_text: str) -> None:
        if _declares_own_transaction(sql_text):
            script = sql_text
        else:
            body = sql_text.strip()
            if body and not body.endswith(";"):
                body += ";"
            script = f"BEGIN IMMEDIATE;\n{body}\nCOMMIT;"

        raw = self._writer.raw_connection()
        try:
            dbapi_connection = raw.driver_connection
            try:
                dbapi_connection.executescript(script)
            except sqlite3.Error as exc:
                if dbapi_connection.in_transaction:
                    dbapi_connection.rollback()
                raise MigrationError(f"apply migration {name}: {exc}") from exc
        finally:
            raw.close()
        logger.info("Applied migration %s", name)
