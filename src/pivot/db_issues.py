"""IssuesMixin: the cached issue rows and their reconciliation with the remote.

Every write here runs inside ``self.transaction()`` together with the sync
state transition it implies, so an issue row is never committed without its
``issue_sync_state`` row and a reader never sees content and state disagree.

``sync_hash`` is the content digest both sides last agreed on. Comparing it
with the remote digest tells whether the remote moved; comparing it with the
local digest tells whether the local copy moved.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pivot.db_base import DBMixinProtocol, _now_iso, content_hash, join_names, split_names
from pivot.sync_state import SyncEvent, SyncState, insert_sync_state

if TYPE_CHECKING:
    from pivot.github import RemoteIssue
    from pivot.sync_state import SyncStateRecord

logger = logging.getLogger(__name__)

# Columns an importer or local edit may set directly.
ISSUE_FIELDS = frozenset(
    {"github_id", "number", "title", "body", "state", "labels", "assignees", "created_at", "updated_at", "closed_at"}
)
EDITABLE_FIELDS = frozenset({"title", "body", "state", "labels", "assignees"})
_LIST_FIELDS = frozenset({"labels", "assignees"})
VALID_ISSUE_STATES = frozenset({"open", "closed"})


class ApplyOutcome(StrEnum):
    """What ``apply_remote_issue`` did with one fetched issue."""

    INSERTED = "inserted"
    UPDATED = "updated"
    LINKED = "linked"  # matched a local-only issue; now CONFLICTED
    CONFLICTED = "conflicted"
    UNCHANGED = "unchanged"


class ConflictResolution(StrEnum):
    ACCEPT_REMOTE = "accept_remote"
    KEEP_LOCAL = "keep_local"
    MERGE = "merge"


@dataclass
class CachedIssue:
    id: int
    project_id: int
    github_id: int | None = None
    number: int | None = None
    title: str = ""
    body: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    local_modified_at: str | None = None
    sync_hash: str | None = None

    def content_hash(self) -> str:
        return content_hash(self.title, self.body, self.state, join_names(self.labels), join_names(self.assignees))

    @property
    def locally_changed(self) -> bool:
        """Local content no longer matches what both sides last agreed on."""
        return self.sync_hash is not None and self.content_hash() != self.sync_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "github_id": self.github_id,
            "number": self.number,
            "title": self.title,
            "body": self.body,
            "state": self.state,
            "labels": self.labels,
            "assignees": self.assignees,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "closed_at": self.closed_at,
            "local_modified_at": self.local_modified_at,
            "sync_hash": self.sync_hash,
        }


def remote_content_hash(remote: RemoteIssue) -> str:
    return content_hash(remote.title, remote.body, remote.state, join_names(remote.labels), join_names(remote.assignees))


def _normalize_fields(fields: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        msg = f"Unknown issue field(s): {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    values = dict(fields)
    for key in _LIST_FIELDS & values.keys():
        values[key] = join_names(values[key])
    if "state" in values and values["state"] not in VALID_ISSUE_STATES:
        msg = f"Issue state must be 'open' or 'closed', got {values['state']!r}"
        raise ValueError(msg)
    if "title" in values and not (values["title"] or "").strip():
        msg = "Title cannot be empty"
        raise ValueError(msg)
    return values


class IssuesMixin(DBMixinProtocol):
    """Issue cache methods composed into ``PivotDB``.

    Relies on ``SyncStateMixin`` for ``fire_sync_event`` and ``get_sync_state``.
    """

    if TYPE_CHECKING:

        def fire_sync_event(
            self, issue_id: int, event: SyncEvent, github_id: int | None = None, error: str | None = None
        ) -> SyncStateRecord: ...

        def get_sync_state(self, issue_id: int) -> SyncStateRecord: ...

        def _fetch_sync_state(self, issue_id: int) -> SyncStateRecord | None: ...

        def list_sync_states(self, state: SyncState | None = None, *, project_id: int | None = None) -> list[SyncStateRecord]: ...

    @staticmethod
    def _build_issue(row: sqlite3.Row) -> CachedIssue:
        return CachedIssue(
            id=row["id"],
            project_id=row["project_id"],
            github_id=row["github_id"],
            number=row["number"],
            title=row["title"] or "",
            body=row["body"] or "",
            state=row["state"] or "open",
            labels=split_names(row["labels"]),
            assignees=split_names(row["assignees"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            closed_at=row["closed_at"],
            local_modified_at=row["local_modified_at"],
            sync_hash=row["sync_hash"],
        )

    # -- Lookup ---------------------------------------------------------------

    def get_issue(self, issue_id: int) -> CachedIssue:
        row = self.conn.execute("SELECT * FROM issues WHERE id = ?", (issue_id,)).fetchone()
        if row is None:
            msg = f"Issue not found: {issue_id}"
            raise KeyError(msg)
        return self._build_issue(row)

    def get_issue_by_remote(self, project_id: int, github_id: int) -> CachedIssue:
        row = self.conn.execute(
            "SELECT * FROM issues WHERE project_id = ? AND github_id = ?",
            (project_id, github_id),
        ).fetchone()
        if row is None:
            msg = f"No cached issue with remote id {github_id} in project {project_id}"
            raise KeyError(msg)
        return self._build_issue(row)

    def get_issue_by_number(self, project_id: int, number: int) -> CachedIssue:
        row = self.conn.execute(
            "SELECT * FROM issues WHERE project_id = ? AND number = ?",
            (project_id, number),
        ).fetchone()
        if row is None:
            msg = f"No cached issue #{number} in project {project_id}"
            raise KeyError(msg)
        return self._build_issue(row)

    def list_issues(
        self,
        *,
        project_id: int | None = None,
        sync_state: SyncState | None = None,
        limit: int | None = None,
    ) -> list[CachedIssue]:
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("i.project_id = ?")
            params.append(project_id)
        if sync_state is not None:
            clauses.append("s.sync_state = ?")
            params.append(str(SyncState(sync_state)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT i.* FROM issues i JOIN issue_sync_state s ON s.issue_local_id = i.id {where} ORDER BY i.id"  # noqa: S608
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._build_issue(r) for r in self.conn.execute(sql, params).fetchall()]

    def count_issues_by_project(self) -> dict[str, int]:
        """Cached issue count keyed by ``owner/repo``; projects with no issues report 0."""
        rows = self.conn.execute(
            "SELECT p.owner, p.repo, COUNT(i.id) AS cnt FROM projects p "
            "LEFT JOIN issues i ON i.project_id = p.id GROUP BY p.id ORDER BY p.owner, p.repo"
        ).fetchall()
        return {f"{r['owner']}/{r['repo']}": r["cnt"] for r in rows}

    # -- Creation -------------------------------------------------------------

    def register_issue(self, project_id: int, fields: dict[str, Any]) -> int:
        """Insert an issue row from importer-supplied *fields* and return its local id.

        The caller follows up with ``create_sync_state``; use
        ``create_local_issue`` to do both at once.
        """
        values = _normalize_fields(fields, ISSUE_FIELDS)
        values.setdefault("title", "")
        values["sync_hash"] = content_hash(
            values.get("title"), values.get("body"), values.get("state", "open"), values.get("labels"), values.get("assignees")
        )
        cols = ["project_id", *values.keys()]
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO issues ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))})",  # noqa: S608
                [project_id, *values.values()],
            )
            issue_id = int(cursor.lastrowid or 0)
        return issue_id

    def create_local_issue(
        self,
        project_id: int,
        title: str,
        *,
        body: str = "",
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
    ) -> CachedIssue:
        """Create an issue that exists only locally (LOCAL_ONLY, no remote id)."""
        values = _normalize_fields(
            {"title": title, "body": body, "state": "open", "labels": labels or [], "assignees": assignees or []},
            EDITABLE_FIELDS,
        )
        now = _now_iso()
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO issues (project_id, title, body, state, labels, assignees, created_at, updated_at, local_modified_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (project_id, values["title"], values["body"], values["state"], values["labels"], values["assignees"], now, now, now),
            )
            issue_id = int(cursor.lastrowid or 0)
            insert_sync_state(conn, issue_id, SyncState.LOCAL_ONLY)
        logger.info("Created local issue %d in project %d", issue_id, project_id, extra={"issue_id": issue_id})
        return self.get_issue(issue_id)

    # -- Remote fetch ---------------------------------------------------------

    def _write_remote_content(self, conn: sqlite3.Connection, issue_id: int, remote: RemoteIssue) -> None:
        conn.execute(
            "UPDATE issues SET github_id = ?, number = ?, title = ?, body = ?, state = ?, labels = ?, assignees = ?, "
            "created_at = ?, updated_at = ?, closed_at = ?, sync_hash = ? WHERE id = ?",
            (
                remote.id,
                remote.number,
                remote.title,
                remote.body,
                remote.state,
                join_names(remote.labels),
                join_names(remote.assignees),
                remote.created_at,
                remote.updated_at,
                remote.closed_at,
                remote_content_hash(remote),
                issue_id,
            ),
        )

    def apply_remote_issue(self, project_id: int, remote: RemoteIssue) -> ApplyOutcome:
        """Reconcile one fetched remote issue into the cache in a single transaction."""
        remote_hash = remote_content_hash(remote)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM issues WHERE project_id = ? AND github_id = ?",
                (project_id, remote.id),
            ).fetchone()

            if row is None:
                match = conn.execute(
                    "SELECT i.id FROM issues i JOIN issue_sync_state s ON s.issue_local_id = i.id "
                    "WHERE i.project_id = ? AND i.github_id IS NULL AND s.sync_state = ? AND i.title = ? "
                    "ORDER BY i.id LIMIT 1",
                    (project_id, str(SyncState.LOCAL_ONLY), remote.title),
                ).fetchone()
                if match is not None:
                    issue_id = match["id"]
                    conn.execute(
                        "UPDATE issues SET github_id = ?, number = ? WHERE id = ?",
                        (remote.id, remote.number, issue_id),
                    )
                    self.fire_sync_event(issue_id, SyncEvent.REMOTE_MATCH_FOUND, github_id=remote.id)
                    return ApplyOutcome.LINKED

                cursor = conn.execute(
                    "INSERT INTO issues (project_id, github_id, number, title, body, state, labels, assignees, "
                    "created_at, updated_at, closed_at, sync_hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        project_id,
                        remote.id,
                        remote.number,
                        remote.title,
                        remote.body,
                        remote.state,
                        join_names(remote.labels),
                        join_names(remote.assignees),
                        remote.created_at,
                        remote.updated_at,
                        remote.closed_at,
                        remote_hash,
                    ),
                )
                insert_sync_state(conn, int(cursor.lastrowid or 0), SyncState.SYNCED, remote.id)
                return ApplyOutcome.INSERTED

            issue = self._build_issue(row)
            record = self._fetch_sync_state(issue.id)
            if record is None:
                # imported without create_sync_state; it carries a remote id, so it starts SYNCED
                insert_sync_state(conn, issue.id, SyncState.SYNCED, remote.id)
                logger.warning("Issue %d had no sync state; recorded it as SYNCED", issue.id, extra={"issue_id": issue.id})
                state = SyncState.SYNCED
            else:
                state = record.state

            if remote_hash == issue.sync_hash:
                return ApplyOutcome.UNCHANGED
            if state is SyncState.SYNCED:
                if issue.locally_changed:
                    self.fire_sync_event(issue.id, SyncEvent.REMOTE_DIVERGED)
                    return ApplyOutcome.CONFLICTED
                self._write_remote_content(conn, issue.id, remote)
                return ApplyOutcome.UPDATED
            if state in (SyncState.LOCAL_MODIFIED, SyncState.PENDING_SYNC):
                self.fire_sync_event(issue.id, SyncEvent.REMOTE_DIVERGED)
                return ApplyOutcome.CONFLICTED
            return ApplyOutcome.UNCHANGED

    # -- Local edits ----------------------------------------------------------

    def edit_issue(self, issue_id: int, **changes: Any) -> CachedIssue:
        """Apply local content edits.

        A PENDING_PUSH issue moves to LOCAL_MODIFIED, and so does a SYNCED one
        whose content now differs from ``sync_hash``. Other states keep their
        state and upload the latest content when they next push.
        """
        if not changes:
            return self.get_issue(issue_id)
        values = _normalize_fields(changes, EDITABLE_FIELDS)
        now = _now_iso()
        values["local_modified_at"] = now
        if "state" in values:
            values["closed_at"] = now if values["state"] == "closed" else None
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self.transaction() as conn:
            state = self.get_sync_state(issue_id).state
            conn.execute(f"UPDATE issues SET {assignments} WHERE id = ?", [*values.values(), issue_id])  # noqa: S608
            if state is SyncState.PENDING_PUSH or (state is SyncState.SYNCED and self.get_issue(issue_id).locally_changed):
                self.fire_sync_event(issue_id, SyncEvent.LOCAL_EDIT)
        return self.get_issue(issue_id)

    # -- Upload bookkeeping ---------------------------------------------------

    def mark_uploaded(self, issue_id: int, github_id: int, number: int) -> None:
        """Record a successful remote create/update: link ids, restamp, go SYNCED."""
        with self.transaction() as conn:
            record = self.get_sync_state(issue_id)
            issue = self.get_issue(issue_id)
            conn.execute(
                "UPDATE issues SET github_id = ?, number = ?, sync_hash = ? WHERE id = ?",
                (github_id, number, issue.content_hash(), issue_id),
            )
            event = SyncEvent.REMOTE_CREATED if record.state is SyncState.PENDING_PUSH else SyncEvent.REMOTE_UPDATED
            self.fire_sync_event(issue_id, event, github_id=github_id)

    # -- Conflict handling ----------------------------------------------------

    def resolve_conflict(
        self,
        issue_id: int,
        resolution: ConflictResolution,
        remote: RemoteIssue,
        merged: dict[str, Any] | None = None,
    ) -> CachedIssue:
        """Settle a CONFLICTED issue against the current *remote* copy.

        ACCEPT_REMOTE overwrites local content and goes SYNCED. KEEP_LOCAL
        keeps local content (LOCAL_MODIFIED). MERGE writes *merged* content
        and queues it for upload (PENDING_SYNC). The remote digest becomes the
        new agreed point in every case, so the next fetch does not re-raise
        the same conflict.
        """
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.MERGE and not merged:
            msg = "A merge resolution requires merged content"
            raise ValueError(msg)
        with self.transaction() as conn:
            record = self.get_sync_state(issue_id)
            if record.state is not SyncState.CONFLICTED:
                msg = f"Issue {issue_id} is not conflicted (state {record.state})"
                raise ValueError(msg)
            if resolution is ConflictResolution.ACCEPT_REMOTE:
                self._write_remote_content(conn, issue_id, remote)
                self.fire_sync_event(issue_id, SyncEvent.ACCEPT_REMOTE, github_id=remote.id)
            elif resolution is ConflictResolution.KEEP_LOCAL:
                conn.execute("UPDATE issues SET sync_hash = ? WHERE id = ?", (remote_content_hash(remote), issue_id))
                self.fire_sync_event(issue_id, SyncEvent.KEEP_LOCAL, github_id=remote.id)
            else:
                values = _normalize_fields(merged or {}, EDITABLE_FIELDS)
                values["local_modified_at"] = _now_iso()
                values["sync_hash"] = remote_content_hash(remote)
                assignments = ", ".join(f"{k} = ?" for k in values)
                conn.execute(f"UPDATE issues SET {assignments} WHERE id = ?", [*values.values(), issue_id])  # noqa: S608
                self.fire_sync_event(issue_id, SyncEvent.MERGE_AND_REUPLOAD, github_id=remote.id)
        return self.get_issue(issue_id)

    def discard_local_changes(self, issue_id: int, remote: RemoteIssue) -> CachedIssue:
        """Throw away local edits of a LOCAL_MODIFIED issue in favour of *remote*."""
        with self.transaction() as conn:
            self._write_remote_content(conn, issue_id, remote)
            conn.execute("UPDATE issues SET local_modified_at = NULL WHERE id = ?", (issue_id,))
            self.fire_sync_event(issue_id, SyncEvent.DISCARD_LOCAL)
        return self.get_issue(issue_id)
