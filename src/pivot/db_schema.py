"""Database schema definitions for the pivot issue cache.

Contains the canonical SQL schema, the v1 multi-project issue table (the shape
``ensure_schema`` restructures legacy stores into), the legacy single-project
schema (for migration tests), and the current schema version constant.
"""

from __future__ import annotations

CURRENT_SCHEMA_VERSION = 2

SYNC_STATE_NAMES = (
    "LOCAL_ONLY",
    "PENDING_PUSH",
    "PUSH_FAILED",
    "SYNCED",
    "LOCAL_MODIFIED",
    "PENDING_SYNC",
    "SYNC_FAILED",
    "CONFLICTED",
    "ERROR",
)

PROJECTS_SQL = """\
CREATE TABLE IF NOT EXISTS projects (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    owner          TEXT NOT NULL,
    repo           TEXT NOT NULL,
    path           TEXT,
    token          TEXT,
    database_path  TEXT,
    created_at     TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at     TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(owner, repo)
)"""

ISSUES_SQL = """\
CREATE TABLE IF NOT EXISTS issues (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    github_id          INTEGER,
    project_id         INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    number             INTEGER,
    title              TEXT DEFAULT '',
    body               TEXT DEFAULT '',
    state              TEXT DEFAULT 'open',
    labels             TEXT DEFAULT '',
    assignees          TEXT DEFAULT '',
    created_at         TEXT,
    updated_at         TEXT,
    closed_at          TEXT,
    local_modified_at  TEXT,
    sync_hash          TEXT,
    UNIQUE(github_id, project_id),
    UNIQUE(project_id, number)
)"""

SYNC_STATE_SQL = f"""\
CREATE TABLE IF NOT EXISTS issue_sync_state (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_local_id     INTEGER NOT NULL UNIQUE REFERENCES issues(id) ON DELETE CASCADE,
    github_id          INTEGER,
    sync_state         TEXT NOT NULL,
    sync_error         TEXT,
    retry_count        INTEGER NOT NULL DEFAULT 0,
    last_sync_attempt  TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    CHECK (sync_state IN ({", ".join(f"'{s}'" for s in SYNC_STATE_NAMES)})),
    CHECK (retry_count >= 0)
)"""

INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_issues_project ON issues(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_state_state ON issue_sync_state(sync_state)",
    "CREATE INDEX IF NOT EXISTS idx_sync_state_github_id ON issue_sync_state(github_id) WHERE github_id IS NOT NULL",
)

SCHEMA_SQL = ";\n\n".join([PROJECTS_SQL, ISSUES_SQL, SYNC_STATE_SQL, *INDEXES_SQL]) + ";\n"

# v1: the first multi-project shape. Issues are keyed by (github_id, project_id)
# with no surrogate id and no sync bookkeeping.
ISSUES_V1_SQL = """\
CREATE TABLE IF NOT EXISTS {table} (
    github_id   INTEGER,
    project_id  INTEGER NOT NULL,
    number      INTEGER,
    title       TEXT,
    body        TEXT,
    state       TEXT,
    labels      TEXT,
    assignees   TEXT,
    created_at  TEXT,
    updated_at  TEXT,
    closed_at   TEXT,
    PRIMARY KEY(github_id, project_id),
    FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
)"""

# Legacy single-project schema (pre multi-project), kept for migration tests.
SCHEMA_LEGACY_SQL = """\
CREATE TABLE IF NOT EXISTS issues (
    github_id INTEGER PRIMARY KEY,
    number INTEGER,
    title TEXT,
    body TEXT,
    state TEXT,
    labels TEXT,
    assignees TEXT,
    created_at TEXT,
    updated_at TEXT,
    closed_at TEXT
);
"""
