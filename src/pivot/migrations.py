"""Schema migration framework for pivot.

Two entry points:

``ensure_schema(conn)``
    Brings any store to the current schema. A brand-new file gets
    ``SCHEMA_SQL`` directly. A legacy single-project store (an ``issues``
    table without ``project_id``) is restructured first: the ``projects``
    table is created, a project-keyed ``issues_new`` is built, the old table
    is renamed to ``issues_old`` and ``issues_new`` is renamed into place.
    After that the version-keyed migrations run.

``migrate_legacy_issues(conn, owner, repo, path)``
    The data carry-over half: copies ``issues_old`` rows into ``issues``,
    attached to the given legacy project, then drops ``issues_old``.

Keeping the two apart lets a caller initialize a fresh store cheaply while
still upgrading a populated legacy one when it knows which project the old
rows belong to.

Version-keyed migrations:
  1. Reads the current schema version via PRAGMA user_version
  2. Applies each pending migration in order
  3. Bumps user_version after each successful migration
  4. Wraps each migration in a transaction (rollback on failure)

Adding a new migration:
  1. Increment CURRENT_SCHEMA_VERSION in db_schema.py
  2. Add a function here: def migrate_v<N>_to_v<N+1>(conn) -> None
  3. Register it in MIGRATIONS: N: migrate_v<N>_to_v<N+1>
  4. Update SCHEMA_SQL in db_schema.py to match the post-migration state
  5. Add a test in tests/test_migrations.py
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Protocol

from pivot.db_base import _now_iso, content_hash
from pivot.db_projects import upsert_project
from pivot.db_schema import (
    CURRENT_SCHEMA_VERSION,
    INDEXES_SQL,
    ISSUES_SQL,
    ISSUES_V1_SQL,
    PROJECTS_SQL,
    SCHEMA_SQL,
    SYNC_STATE_SQL,
)

logger = logging.getLogger(__name__)

LEGACY_TABLE = "issues_old"

_ISSUE_COLUMNS = (
    "github_id",
    "project_id",
    "number",
    "title",
    "body",
    "state",
    "labels",
    "assignees",
    "created_at",
    "updated_at",
    "closed_at",
    "local_modified_at",
    "sync_hash",
)
_SYNC_STATE_COLUMNS = (
    "issue_local_id",
    "github_id",
    "sync_state",
    "sync_error",
    "retry_count",
    "last_sync_attempt",
    "created_at",
    "updated_at",
)


# ---------------------------------------------------------------------------
# Introspection helpers
# ---------------------------------------------------------------------------


def has_table(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=?", (table,)).fetchone()
    return bool(row[0])


def table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return column in table_columns(conn, table)


# ---------------------------------------------------------------------------
# Migration function protocol
# ---------------------------------------------------------------------------


class MigrationFn(Protocol):
    """Protocol for migration functions."""

    def __call__(self, conn: sqlite3.Connection) -> None: ...


# ---------------------------------------------------------------------------
# Migration registry
#
# Keys are the version being migrated FROM (i.e., the current user_version).
# Values are functions that transform the schema to the next version.
# ---------------------------------------------------------------------------


def migrate_v1_to_v2(conn: sqlite3.Connection) -> None:
    """v1 → v2: Add sync bookkeeping.

    Changes:
      - issues: rebuilt with a surrogate ``id`` (taken from the old rowid so
        existing references stay valid), ``local_modified_at``, ``sync_hash``
        and per-project uniqueness of ``number``
      - new table 'issue_sync_state' (an older shape is rebuilt in place)
      - every issue without a sync row gets one: SYNCED when it has a
        remote id, LOCAL_ONLY otherwise
      - sync_hash backfilled from current content
    """
    old_cols = set(table_columns(conn, "issues"))
    mapping = {"id": "rowid"}
    mapping.update({c: c for c in _ISSUE_COLUMNS if c in old_cols})
    rebuild_table(conn, "issues", ISSUES_SQL, column_mapping=mapping)

    if has_table(conn, "issue_sync_state"):
        old_cols = set(table_columns(conn, "issue_sync_state"))
        state_mapping = {c: c for c in _SYNC_STATE_COLUMNS if c in old_cols}
        rebuild_table(conn, "issue_sync_state", SYNC_STATE_SQL, column_mapping=state_mapping)
        # rows pointing at issues that no longer exist cannot be kept
        conn.execute("DELETE FROM issue_sync_state WHERE issue_local_id NOT IN (SELECT id FROM issues)")
    else:
        conn.execute(SYNC_STATE_SQL)

    for statement in INDEXES_SQL:
        conn.execute(statement)

    now = _now_iso()
    conn.execute(
        "INSERT INTO issue_sync_state (issue_local_id, github_id, sync_state, retry_count, created_at, updated_at) "
        "SELECT id, github_id, CASE WHEN github_id IS NULL THEN 'LOCAL_ONLY' ELSE 'SYNCED' END, 0, ?, ? "
        "FROM issues WHERE id NOT IN (SELECT issue_local_id FROM issue_sync_state)",
        (now, now),
    )

    rows = conn.execute("SELECT id, title, body, state, labels, assignees FROM issues WHERE sync_hash IS NULL").fetchall()
    for row in rows:
        conn.execute(
            "UPDATE issues SET sync_hash = ? WHERE id = ?",
            (content_hash(row[1], row[2], row[3], row[4], row[5]), row[0]),
        )


MIGRATIONS: dict[int, MigrationFn] = {
    1: migrate_v1_to_v2,
}


# ---------------------------------------------------------------------------
# Migration runner
# ---------------------------------------------------------------------------


class MigrationError(Exception):
    """Raised when a migration fails."""

    def __init__(self, from_version: int, to_version: int, cause: Exception) -> None:
        self.from_version = from_version
        self.to_version = to_version
        self.cause = cause
        super().__init__(f"Migration v{from_version} → v{to_version} failed: {cause}")


def apply_pending_migrations(conn: sqlite3.Connection, target_version: int) -> int:
    """Apply all pending migrations from current version up to target_version.

    Returns:
        Number of migrations applied (0 if already up to date).

    Raises:
        MigrationError: If any individual migration fails (DB rolled back to
            the last successful migration).
        ValueError: If current version > target (downgrade not supported).
    """
    current: int = conn.execute("PRAGMA user_version").fetchone()[0]

    if current == target_version:
        return 0

    if current > target_version:
        msg = f"Database schema v{current} is newer than this version of pivot (expects v{target_version}). Downgrade is not supported."
        raise ValueError(msg)

    applied = 0
    for version in range(current, target_version):
        migration = MIGRATIONS.get(version)
        if migration is None:
            msg = (
                f"No migration registered for v{version} → v{version + 1}. "
                f"Database is at v{version}, target is v{target_version}. "
                f"Register the migration in pivot.migrations.MIGRATIONS."
            )
            raise MigrationError(version, version + 1, KeyError(msg))

        logger.info("Applying migration v%d → v%d ...", version, version + 1)
        try:
            conn.execute("BEGIN IMMEDIATE")
            migration(conn)
            conn.execute(f"PRAGMA user_version = {version + 1}")
            conn.commit()
            applied += 1
            logger.info("Migration v%d → v%d complete.", version, version + 1)
        except Exception as exc:
            conn.rollback()
            raise MigrationError(version, version + 1, exc) from exc

    return applied


# ---------------------------------------------------------------------------
# Schema entry points
# ---------------------------------------------------------------------------


def _restructure_for_projects(conn: sqlite3.Connection) -> bool:
    """Move an unversioned store onto the v1 multi-project shape.

    Returns True when a legacy issues table was renamed to ``issues_old``.
    """
    renamed = False
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(PROJECTS_SQL)
        if not has_table(conn, "issues") or not has_column(conn, "issues", "project_id"):
            conn.execute("DROP TABLE IF EXISTS issues_new")
            conn.execute(ISSUES_V1_SQL.format(table="issues_new"))
            if has_table(conn, "issues"):
                if has_table(conn, LEGACY_TABLE):
                    msg = f"Cannot restructure: a previous '{LEGACY_TABLE}' table is still waiting to be migrated"
                    raise ValueError(msg)
                conn.execute(f"ALTER TABLE issues RENAME TO {LEGACY_TABLE}")
                renamed = True
            conn.execute("ALTER TABLE issues_new RENAME TO issues")
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
    except Exception as exc:
        conn.rollback()
        raise MigrationError(0, 1, exc) from exc
    return renamed


def ensure_schema(conn: sqlite3.Connection) -> int:
    """Create or upgrade the schema in place.

    Returns:
        Number of version-keyed migrations applied.
    """
    version: int = conn.execute("PRAGMA user_version").fetchone()[0]

    if version == 0:
        if not has_table(conn, "issues") and not has_table(conn, "projects"):
            # executescript commits; run it outside any explicit transaction
            conn.executescript(SCHEMA_SQL)
            conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
            conn.commit()
            return 0
        if _restructure_for_projects(conn):
            logger.info("Legacy issues table moved to %s; run migrate_legacy_issues to carry its rows over", LEGACY_TABLE)

    return apply_pending_migrations(conn, CURRENT_SCHEMA_VERSION)


def migrate_legacy_issues(conn: sqlite3.Connection, owner: str, repo: str, path: str = "") -> int:
    """Attach rows from a legacy single-project table to an explicit project.

    Registers ``owner/repo`` (upsert), copies every ``issues_old`` row into
    ``issues`` with a SYNCED sync row, and drops ``issues_old``.

    Returns:
        Number of rows copied (0 when there is no legacy table).
    """
    ensure_schema(conn)

    conn.execute("BEGIN IMMEDIATE")
    try:
        project_id = upsert_project(conn, owner, repo, path=path)
        if not has_table(conn, LEGACY_TABLE):
            conn.commit()
            return 0

        legacy_cols = set(table_columns(conn, LEGACY_TABLE))
        copy_cols = [c for c in _ISSUE_COLUMNS if c in legacy_cols and c != "project_id"]
        now = _now_iso()
        copied = 0
        for row in conn.execute(f"SELECT {', '.join(copy_cols)} FROM {LEGACY_TABLE}").fetchall():  # noqa: S608
            values = dict(zip(copy_cols, tuple(row), strict=True))
            values.setdefault("sync_hash", None)
            if values["sync_hash"] is None:
                values["sync_hash"] = content_hash(
                    values.get("title"), values.get("body"), values.get("state"), values.get("labels"), values.get("assignees")
                )
            cols = ["project_id", *values.keys()]
            placeholders = ", ".join("?" * len(cols))
            cursor = conn.execute(
                f"INSERT INTO issues ({', '.join(cols)}) VALUES ({placeholders}) "  # noqa: S608
                "ON CONFLICT(github_id, project_id) DO NOTHING",
                [project_id, *values.values()],
            )
            if cursor.rowcount == 0:
                continue
            issue_id = cursor.lastrowid
            github_id = values.get("github_id")
            conn.execute(
                "INSERT INTO issue_sync_state (issue_local_id, github_id, sync_state, retry_count, created_at, updated_at) "
                "VALUES (?, ?, ?, 0, ?, ?)",
                (issue_id, github_id, "SYNCED" if github_id is not None else "LOCAL_ONLY", now, now),
            )
            copied += 1

        conn.execute(f"DROP TABLE {LEGACY_TABLE}")
        conn.commit()
    except Exception as exc:
        conn.rollback()
        raise MigrationError(0, 1, exc) from exc

    logger.info("Migrated %d legacy issues into project %s/%s", copied, owner, repo)
    return copied


# ---------------------------------------------------------------------------
# SQLite migration helpers
# ---------------------------------------------------------------------------


def rebuild_table(
    conn: sqlite3.Connection,
    table: str,
    new_schema_sql: str,
    column_mapping: dict[str, str] | None = None,
) -> None:
    """Recreate a table with a new schema, preserving data.

    The "12-step" pattern for SQLite schema changes that ALTER TABLE can't
    handle (new primary key, new constraints, dropped columns):
      1. Create new table with temp name
      2. Copy data from old table
      3. Drop old table
      4. Rename new table to original name

    Args:
        conn: SQLite connection.
        table: Existing table name.
        new_schema_sql: Full CREATE TABLE statement for the new schema, using
            the table name directly.
        column_mapping: Optional mapping of {new_col: old_col_or_expr}.
            If None, copies all columns that exist in both schemas.

    Warning: This drops all indexes and triggers that reference the table.
             Recreate them after calling this function.
    """
    temp_table = f"_pivot_migrate_{table}"

    pattern = re.compile(
        rf"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{re.escape(table)}\b",
        re.IGNORECASE,
    )
    temp_schema = pattern.sub(f"CREATE TABLE {temp_table}", new_schema_sql, count=1)

    conn.execute(f"DROP TABLE IF EXISTS {temp_table}")
    conn.execute(temp_schema)

    if column_mapping is None:
        old_cols = set(table_columns(conn, table))
        shared = [c for c in table_columns(conn, temp_table) if c in old_cols]
        if not shared:
            conn.execute(f"DROP TABLE IF EXISTS {temp_table}")
            msg = f"No shared columns between old and new schema for table '{table}'"
            raise ValueError(msg)
        insert_cols = select_cols = ", ".join(shared)
    else:
        insert_cols = ", ".join(column_mapping.keys())
        select_cols = ", ".join(column_mapping.values())

    # S608: table/column names are from internal schema, not user input
    conn.execute(f"INSERT INTO {temp_table} ({insert_cols}) SELECT {select_cols} FROM {table}")  # noqa: S608
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {temp_table} RENAME TO {table}")
