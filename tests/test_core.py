"""Tests for PivotDB lifecycle, transactions and open_store."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from pivot.core import PivotDB, open_store
from pivot.db_schema import CURRENT_SCHEMA_VERSION
from pivot.errors import StorageError


class TestLifecycle:
    def test_initialize_sets_version(self, db: PivotDB) -> None:
        assert db.get_schema_version() == CURRENT_SCHEMA_VERSION
        assert db.is_current

    def test_pragmas(self, db: PivotDB) -> None:
        assert db.conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert db.conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert db.conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000

    def test_close_and_reopen(self, tmp_path: Path) -> None:
        db = PivotDB(tmp_path / "pivot.db")
        db.initialize()
        db.close()
        db.close()
        assert db.get_schema_version() == CURRENT_SCHEMA_VERSION
        db.close()

    def test_context_manager_closes(self, tmp_path: Path) -> None:
        with PivotDB(tmp_path / "pivot.db") as db:
            db.initialize()
        assert db._conn is None

    def test_unopenable_path(self, tmp_path: Path) -> None:
        db = PivotDB(tmp_path / "missing-dir" / "pivot.db")
        with pytest.raises(StorageError, match="Cannot open issue database"):
            db.initialize()

    def test_newer_schema_is_refused(self, tmp_path: Path) -> None:
        path = tmp_path / "future.db"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE projects (id INTEGER)")
        conn.execute("PRAGMA user_version = 99")
        conn.commit()
        conn.close()
        with PivotDB(path) as db, pytest.raises(StorageError, match="Downgrade is not supported"):
            db.initialize()


class TestTransaction:
    def test_commits(self, db: PivotDB) -> None:
        with db.transaction() as conn:
            conn.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
        assert db.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 1

    def test_rolls_back_on_exception(self, db: PivotDB) -> None:
        with pytest.raises(RuntimeError), db.transaction() as conn:
            conn.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
            raise RuntimeError("abort")
        assert db.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 0

    def test_sqlite_errors_become_storage_errors(self, db: PivotDB) -> None:
        with pytest.raises(StorageError, match="write failed"), db.transaction() as conn:
            conn.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
            conn.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
        assert db.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 0

    def test_nested_joins_outer(self, db: PivotDB) -> None:
        with pytest.raises(RuntimeError), db.transaction() as outer:
            outer.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
            with db.transaction() as inner:
                inner.execute("INSERT INTO projects (owner, repo) VALUES ('c', 'd')")
            raise RuntimeError("abort")
        assert db.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 0

    def test_depth_resets_after_failure(self, db: PivotDB) -> None:
        with pytest.raises(RuntimeError), db.transaction():
            raise RuntimeError("abort")
        assert db._txn_depth == 0
        with db.transaction() as conn:
            conn.execute("INSERT INTO projects (owner, repo) VALUES ('a', 'b')")
        assert db.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 1


class TestOpenStore:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = open_store(tmp_path / "nested" / "dir" / "pivot.db")
        try:
            assert db.is_current
        finally:
            db.close()

    def test_expands_home(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        db = open_store("~/store/pivot.db")
        try:
            assert db.db_path == tmp_path / "store" / "pivot.db"
        finally:
            db.close()

    def test_parent_is_a_file(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        with pytest.raises(StorageError, match="Cannot create database directory"):
            open_store(blocker / "pivot.db")
