"""Core database operations for the pivot issue cache.

Single source of truth for all SQLite access. One connection per ``PivotDB``
in WAL mode; every logical write goes through ``transaction()``, which
serializes writers with ``BEGIN IMMEDIATE`` and nests by joining the outer
transaction.

The store is shared by every configured project: ``projects`` holds the
registry, ``issues`` the cached rows, ``issue_sync_state`` one sync record
per issue.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from pivot.db_issues import IssuesMixin
from pivot.db_projects import ProjectsMixin
from pivot.db_schema import CURRENT_SCHEMA_VERSION
from pivot.errors import StorageError
from pivot.migrations import MigrationError, ensure_schema, migrate_legacy_issues
from pivot.sync_state import SyncStateMixin

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


class PivotDB(ProjectsMixin, IssuesMixin, SyncStateMixin):
    """Direct SQLite operations over the shared multi-project store."""

    def __init__(self, db_path: str | Path, *, check_same_thread: bool = True) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._txn_depth = 0

    def __enter__(self) -> PivotDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(
                    str(self.db_path),
                    isolation_level="DEFERRED",
                    check_same_thread=self._check_same_thread,
                )
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA foreign_keys=ON")
                self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            except sqlite3.Error as exc:
                self._conn = None
                msg = f"Cannot open issue database {self.db_path}: {exc}"
                raise StorageError(msg) from exc
        return self._conn

    def initialize(self) -> None:
        """Create tables (if new) or restructure and migrate (if existing).

        A legacy single-project ``issues`` table is moved aside to
        ``issues_old``; call ``migrate_legacy`` to carry its rows over.
        """
        try:
            applied = ensure_schema(self.conn)
        except (sqlite3.Error, MigrationError, ValueError) as exc:
            msg = f"Cannot initialize issue database {self.db_path}: {exc}"
            raise StorageError(msg) from exc
        if applied:
            logger.info("Applied %d schema migration(s) to %s", applied, self.db_path)

    def migrate_legacy(self, owner: str, repo: str, path: str = "") -> int:
        """Attach legacy single-project rows to ``owner/repo``. Returns rows copied."""
        try:
            return migrate_legacy_issues(self.conn, owner, repo, path)
        except (sqlite3.Error, MigrationError) as exc:
            msg = f"Legacy migration failed for {owner}/{repo}: {exc}"
            raise StorageError(msg) from exc

    def get_schema_version(self) -> int:
        """Return the current schema version from PRAGMA user_version."""
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    @property
    def is_current(self) -> bool:
        return self.get_schema_version() == CURRENT_SCHEMA_VERSION

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction.

        Nested calls join the outermost transaction; only the outermost
        commits. Any exception rolls everything back. ``sqlite3.Error`` is
        re-raised as ``StorageError``.
        """
        conn = self.conn
        if self._txn_depth:
            self._txn_depth += 1
            try:
                yield conn
            finally:
                self._txn_depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            msg = f"Cannot start transaction on {self.db_path}: {exc}"
            raise StorageError(msg) from exc
        self._txn_depth = 1
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            msg = f"Issue database write failed: {exc}"
            raise StorageError(msg) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._txn_depth = 0

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def open_store(db_path: str | Path, *, check_same_thread: bool = True) -> PivotDB:
    """Open (creating if needed) and initialize the store at *db_path*.

    A leading ``~`` is expanded and the parent directory is created.
    """
    path = Path(db_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        msg = f"Cannot create database directory {path.parent}: {exc}"
        raise StorageError(msg) from exc
    db = PivotDB(path, check_same_thread=check_same_thread)
    try:
        db.initialize()
    except BaseException:
        db.close()
        raise
    return db
