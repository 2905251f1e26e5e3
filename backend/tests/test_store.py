"""
Store tests: migrations, read-only readers, write rollback, cancellation and
the lock-retry helper.
"""

import os
import shutil
import tempfile
import unittest

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from receipter.models import User
from receipter.services.concurrency import is_transient_lock_error, run_with_retry
from receipter.store import CancelToken, MigrationError, OperationCancelled, Store


class StoreTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = Store.open(os.path.join(self.tmpdir, "store.sqlite3"))
        self.store.apply_migrations()

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write_migration(self, name, sql):
        directory = os.path.join(self.tmpdir, "sql")
        os.makedirs(directory, exist_ok=True)
        with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
            f.write(sql)
        return directory

    def _user_count(self):
        with self.store.read_tx() as session:
            return session.query(User).count()


class TestMigrations(StoreTestCase):
    def test_bundled_migrations_are_idempotent(self):
        applied = self.store.apply_migrations()
        self.assertEqual(applied, sorted(applied))
        self.assertIn("001_init.sql", applied)
        self.assertEqual(self._user_count(), 0)

    def test_migrations_apply_in_filename_order(self):
        self._write_migration("002_fill.sql", "INSERT INTO notes (body) VALUES ('second')")
        directory = self._write_migration("001_table.sql", "CREATE TABLE notes (body TEXT NOT NULL);")

        self.assertEqual(self.store.apply_migrations(directory), ["001_table.sql", "002_fill.sql"])
        with self.store.read_tx() as session:
            self.assertEqual(session.execute(text("SELECT body FROM notes")).scalar(), "second")

    def test_migration_with_own_transaction_runs_as_is(self):
        directory = self._write_migration(
            "001_tx.sql",
            "BEGIN TRANSACTION;\nCREATE TABLE tx_notes (id INTEGER);\nCOMMIT;\n",
        )
        self.store.apply_migrations(directory)
        with self.store.read_tx() as session:
            self.assertEqual(session.execute(text("SELECT COUNT(*) FROM tx_notes")).scalar(), 0)

    def test_failing_migration_rolls_back(self):
        directory = self._write_migration(
            "001_bad.sql",
            "CREATE TABLE half_done (id INTEGER);\nINSERT INTO missing_table VALUES (1);",
        )
        with self.assertRaises(MigrationError) as ctx:
            self.store.apply_migrations(directory)
        self.assertIn("001_bad.sql", str(ctx.exception))

        with self.store.read_tx() as session:
            found = session.execute(
                text("SELECT COUNT(*) FROM sqlite_master WHERE name = 'half_done'")
            ).scalar()
        self.assertEqual(found, 0)

    def test_missing_directory(self):
        with self.assertRaises(MigrationError):
            self.store.apply_migrations(os.path.join(self.tmpdir, "nope"))


class TestTransactions(StoreTestCase):
    def _add_user(self, session, username):
        session.add(User(username=username, password_hash="!", role="scanner", is_active=True))
        session.flush()

    def test_write_commits_on_success(self):
        with self.store.write_tx() as session:
            self._add_user(session, "kept")
        self.assertEqual(self._user_count(), 1)

    def test_write_rolls_back_on_error(self):
        with self.assertRaises(ValueError):
            with self.store.write_tx() as session:
                self._add_user(session, "discarded")
                raise ValueError("boom")
        self.assertEqual(self._user_count(), 0)

    def test_with_write_tx_returns_value_after_commit(self):
        def _op(session):
            self._add_user(session, "returned")
            return "done"

        self.assertEqual(self.store.with_write_tx(_op), "done")
        self.assertEqual(self._user_count(), 1)

    def test_read_tx_refuses_writes(self):
        with self.assertRaises(OperationalError):
            with self.store.read_tx() as session:
                session.execute(text(
                    "INSERT INTO users (username, password_hash, role, is_active) "
                    "VALUES ('sneaky', '!', 'admin', 1)"
                ))
        self.assertEqual(self._user_count(), 0)

    def test_open_requires_path(self):
        with self.assertRaises(ValueError):
            Store.open("  ")


class TestCancellation(StoreTestCase):
    def test_cancelled_token_refuses_to_start(self):
        token = CancelToken()
        token.cancel()
        with self.assertRaises(OperationCancelled):
            with self.store.read_tx(token):
                pass

    def test_expired_deadline_counts_as_cancelled(self):
        token = CancelToken(timeout=0)
        self.assertTrue(token.cancelled)
        with self.assertRaises(OperationCancelled):
            self.store.with_write_tx(lambda session: None, token=token)

    def test_cancel_before_commit_rolls_back(self):
        token = CancelToken()
        with self.assertRaises(OperationCancelled):
            with self.store.write_tx(token) as session:
                session.add(User(username="late", password_hash="!", role="scanner", is_active=True))
                session.flush()
                token.cancel()
        self.assertEqual(self._user_count(), 0)

    def test_live_token_allows_work(self):
        token = CancelToken(timeout=60)
        with self.store.read_tx(token) as session:
            self.assertEqual(session.execute(text("SELECT 1")).scalar(), 1)


def _locked():
    return OperationalError("UPDATE pallets", {}, Exception("database is locked"))


class TestRunWithRetry(unittest.TestCase):
    def test_retries_transient_lock_errors(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise _locked()
            return "ok"

        self.assertEqual(run_with_retry(flaky, attempts=3, backoff_base=0), "ok")
        self.assertEqual(len(calls), 3)

    def test_gives_up_after_attempts(self):
        def always_locked():
            raise _locked()

        with self.assertRaises(OperationalError):
            run_with_retry(always_locked, attempts=2, backoff_base=0)

    def test_other_errors_propagate_immediately(self):
        calls = []

        def readonly():
            calls.append(1)
            raise OperationalError("INSERT", {}, Exception("attempt to write a readonly database"))

        with self.assertRaises(OperationalError):
            run_with_retry(readonly, attempts=3, backoff_base=0)
        self.assertEqual(len(calls), 1)

    def test_is_transient_lock_error(self):
        self.assertTrue(is_transient_lock_error(_locked()))
        self.assertTrue(is_transient_lock_error(Exception("Database is BUSY")))
        self.assertFalse(is_transient_lock_error(Exception("no such table: pallets")))


if __name__ == "__main__":
    unittest.main()
