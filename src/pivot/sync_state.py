"""Sync state engine: the per-issue state machine and its persistence.

Each cached issue carries exactly one ``issue_sync_state`` row describing
how it relates to the remote copy. Transitions are data: ``TRANSITIONS``
maps ``(state, event)`` to the next state, and ``ALLOWED_TRANSITIONS`` is the
derived set of legal ``(from, to)`` pairs. Anything outside the table is
rejected with ``InvalidTransitionError``.

Side effects are keyed on the target state:

- entering a failure state (PUSH_FAILED, SYNC_FAILED, ERROR) increments
  ``retry_count`` and records the error; the count is a lifetime failure
  tally and is never decremented
- entering PENDING_PUSH / PENDING_SYNC, or failing out of them, stamps
  ``last_sync_attempt`` (never moves backwards)
- entering SYNCED clears the error
- a remote id, once attached, is never cleared or replaced
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pivot.db_base import DBMixinProtocol, _now_iso
from pivot.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    LOCAL_ONLY = "LOCAL_ONLY"  # created locally, never uploaded
    PENDING_PUSH = "PENDING_PUSH"  # queued for remote creation
    PUSH_FAILED = "PUSH_FAILED"
    SYNCED = "SYNCED"  # identical on both sides as of the last sync
    LOCAL_MODIFIED = "LOCAL_MODIFIED"
    PENDING_SYNC = "PENDING_SYNC"  # local edits queued for upload
    SYNC_FAILED = "SYNC_FAILED"
    CONFLICTED = "CONFLICTED"  # both sides changed; needs a human
    ERROR = "ERROR"  # terminal until an operator intervenes

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATES

    @property
    def is_terminal(self) -> bool:
        return self is SyncState.ERROR


class SyncEvent(StrEnum):
    REQUEST_UPLOAD = "request_upload"
    REMOTE_MATCH_FOUND = "remote_match_found"
    REMOTE_CREATED = "remote_created"
    REMOTE_CREATE_FAILED = "remote_create_failed"
    LOCAL_EDIT = "local_edit"
    UNRECOVERABLE = "unrecoverable"
    RETRY = "retry"
    ABANDON_RETRY = "abandon_retry"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REMOTE_DIVERGED = "remote_diverged"
    REQUEST_RESYNC = "request_resync"
    DISCARD_LOCAL = "discard_local"
    REMOTE_UPDATED = "remote_updated"
    REMOTE_UPDATE_FAILED = "remote_update_failed"
    CANCEL_SYNC = "cancel_sync"
    ACCEPT_REMOTE = "accept_remote"
    KEEP_LOCAL = "keep_local"
    MERGE_AND_REUPLOAD = "merge_and_reupload"
    RESOLUTION_FAILED = "resolution_failed"


S = SyncState
E = SyncEvent

TRANSITIONS: dict[tuple[SyncState, SyncEvent], SyncState] = {
    (S.LOCAL_ONLY, E.REQUEST_UPLOAD): S.PENDING_PUSH,
    (S.LOCAL_ONLY, E.REMOTE_MATCH_FOUND): S.CONFLICTED,
    (S.PENDING_PUSH, E.REMOTE_CREATED): S.SYNCED,
    (S.PENDING_PUSH, E.LOCAL_EDIT): S.LOCAL_MODIFIED,
    (S.PENDING_PUSH, E.REMOTE_CREATE_FAILED): S.PUSH_FAILED,
    (S.PENDING_PUSH, E.UNRECOVERABLE): S.ERROR,
    (S.PUSH_FAILED, E.RETRY): S.PENDING_PUSH,
    (S.PUSH_FAILED, E.ABANDON_RETRY): S.LOCAL_ONLY,
    (S.PUSH_FAILED, E.RETRIES_EXHAUSTED): S.ERROR,
    (S.SYNCED, E.LOCAL_EDIT): S.LOCAL_MODIFIED,
    (S.SYNCED, E.REMOTE_DIVERGED): S.CONFLICTED,
    (S.SYNCED, E.UNRECOVERABLE): S.ERROR,
    (S.LOCAL_MODIFIED, E.REQUEST_RESYNC): S.PENDING_SYNC,
    (S.LOCAL_MODIFIED, E.REMOTE_DIVERGED): S.CONFLICTED,
    (S.LOCAL_MODIFIED, E.DISCARD_LOCAL): S.SYNCED,
    (S.PENDING_SYNC, E.REMOTE_UPDATED): S.SYNCED,
    (S.PENDING_SYNC, E.REMOTE_UPDATE_FAILED): S.SYNC_FAILED,
    (S.PENDING_SYNC, E.REMOTE_DIVERGED): S.CONFLICTED,
    (S.PENDING_SYNC, E.CANCEL_SYNC): S.LOCAL_MODIFIED,
    (S.SYNC_FAILED, E.RETRY): S.PENDING_SYNC,
    (S.SYNC_FAILED, E.ABANDON_RETRY): S.LOCAL_MODIFIED,
    (S.SYNC_FAILED, E.RETRIES_EXHAUSTED): S.ERROR,
    (S.CONFLICTED, E.ACCEPT_REMOTE): S.SYNCED,
    (S.CONFLICTED, E.KEEP_LOCAL): S.LOCAL_MODIFIED,
    (S.CONFLICTED, E.MERGE_AND_REUPLOAD): S.PENDING_SYNC,
    (S.CONFLICTED, E.RESOLUTION_FAILED): S.ERROR,
}

ALLOWED_TRANSITIONS: frozenset[tuple[SyncState, SyncState]] = frozenset((src, dst) for (src, _), dst in TRANSITIONS.items())

INITIAL_STATES: frozenset[SyncState] = frozenset({S.LOCAL_ONLY, S.SYNCED})
FAILURE_STATES: frozenset[SyncState] = frozenset({S.PUSH_FAILED, S.SYNC_FAILED, S.ERROR})
PENDING_STATES: frozenset[SyncState] = frozenset({S.PENDING_PUSH, S.PENDING_SYNC})
_ATTEMPT_STATES: frozenset[SyncState] = PENDING_STATES | {S.PUSH_FAILED, S.SYNC_FAILED}

del S, E


def is_allowed(from_state: SyncState, to_state: SyncState) -> bool:
    return (from_state, to_state) in ALLOWED_TRANSITIONS


def next_state(state: SyncState, event: SyncEvent) -> SyncState | None:
    """Target of *event* from *state*, or None when the table has no entry."""
    return TRANSITIONS.get((state, event))


def valid_events(state: SyncState) -> list[SyncEvent]:
    return [event for (src, event) in TRANSITIONS if src is state]


def valid_targets(state: SyncState) -> list[SyncState]:
    return sorted({dst for (src, dst) in ALLOWED_TRANSITIONS if src is state}, key=list(SyncState).index)


@dataclass
class SyncStateRecord:
    id: int
    issue_local_id: int
    state: SyncState
    github_id: int | None = None
    sync_error: str | None = None
    retry_count: int = 0
    last_sync_attempt: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_local_id": self.issue_local_id,
            "sync_state": str(self.state),
            "github_id": self.github_id,
            "sync_error": self.sync_error,
            "retry_count": self.retry_count,
            "last_sync_attempt": self.last_sync_attempt,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def insert_sync_state(
    conn: sqlite3.Connection,
    issue_id: int,
    state: SyncState,
    github_id: int | None = None,
) -> None:
    """Insert the first sync row for an issue. Does not commit."""
    if state not in INITIAL_STATES:
        msg = f"Initial sync state must be one of {sorted(INITIAL_STATES)}, got {state}"
        raise ValueError(msg)
    if state is SyncState.LOCAL_ONLY and github_id is not None:
        msg = "A LOCAL_ONLY issue cannot carry a remote id"
        raise ValueError(msg)
    if state is SyncState.SYNCED and github_id is None:
        msg = "A SYNCED issue requires a remote id"
        raise ValueError(msg)
    now = _now_iso()
    conn.execute(
        "INSERT INTO issue_sync_state (issue_local_id, github_id, sync_state, retry_count, created_at, updated_at) VALUES (?, ?, ?, 0, ?, ?)",
        (issue_id, github_id, str(state), now, now),
    )


class SyncStateMixin(DBMixinProtocol):
    """Sync-state persistence methods composed into ``PivotDB``."""

    @staticmethod
    def _build_sync_state(row: sqlite3.Row) -> SyncStateRecord:
        return SyncStateRecord(
            id=row["id"],
            issue_local_id=row["issue_local_id"],
            state=SyncState(row["sync_state"]),
            github_id=row["github_id"],
            sync_error=row["sync_error"],
            retry_count=row["retry_count"],
            last_sync_attempt=row["last_sync_attempt"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_sync_state(self, issue_id: int) -> SyncStateRecord | None:
        row = self.conn.execute("SELECT * FROM issue_sync_state WHERE issue_local_id = ?", (issue_id,)).fetchone()
        return None if row is None else self._build_sync_state(row)

    def create_sync_state(self, issue_id: int, initial_state: SyncState, github_id: int | None = None) -> SyncStateRecord:
        """Create the sync row for an issue that just entered the cache.

        ``initial_state`` follows provenance: LOCAL_ONLY for issues created
        locally, SYNCED (with a remote id) for issues fetched from the remote.
        """
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,)).fetchone() is None:
                msg = f"Issue not found: {issue_id}"
                raise KeyError(msg)
            insert_sync_state(conn, issue_id, SyncState(initial_state), github_id)
        return self.get_sync_state(issue_id)

    def get_sync_state(self, issue_id: int) -> SyncStateRecord:
        record = self._fetch_sync_state(issue_id)
        if record is None:
            msg = f"No sync state for issue {issue_id}"
            raise KeyError(msg)
        return record

    def update_sync_state(
        self,
        issue_id: int,
        new_state: SyncState,
        github_id: int | None = None,
        error: str | None = None,
    ) -> SyncStateRecord:
        """Apply a validated transition atomically.

        Raises:
            KeyError: The issue has no sync row.
            InvalidTransitionError: ``(current, new_state)`` is not in the table.
            ValueError: *github_id* conflicts with an already-linked remote id.
        """
        new_state = SyncState(new_state)
        with self.transaction() as conn:
            current = self._fetch_sync_state(issue_id)
            if current is None:
                msg = f"No sync state for issue {issue_id}"
                raise KeyError(msg)
            if not is_allowed(current.state, new_state):
                raise InvalidTransitionError(issue_id, current.state, new_state)
            if github_id is not None and current.github_id is not None and github_id != current.github_id:
                msg = f"Issue {issue_id} is already linked to remote id {current.github_id}, refusing to relink to {github_id}"
                raise ValueError(msg)

            now = _now_iso()
            sets = ["sync_state = ?", "github_id = COALESCE(?, github_id)", "updated_at = ?"]
            params: list[Any] = [str(new_state), github_id, now]

            if new_state in FAILURE_STATES:
                sets.append("retry_count = retry_count + 1")
                sets.append("sync_error = ?")
                params.append(error or "unknown error")
            elif new_state is SyncState.SYNCED:
                sets.append("sync_error = NULL")

            if new_state in _ATTEMPT_STATES:
                sets.append("last_sync_attempt = CASE WHEN last_sync_attempt IS NULL OR last_sync_attempt < ? THEN ? ELSE last_sync_attempt END")
                params.extend([now, now])

            params.append(issue_id)
            conn.execute(f"UPDATE issue_sync_state SET {', '.join(sets)} WHERE issue_local_id = ?", params)  # noqa: S608

        logger.info(
            "Issue %d sync state %s -> %s",
            issue_id,
            current.state,
            new_state,
            extra={"issue_id": issue_id, "error": error} if new_state in FAILURE_STATES else {"issue_id": issue_id},
        )
        return self.get_sync_state(issue_id)

    def fire_sync_event(
        self,
        issue_id: int,
        event: SyncEvent,
        github_id: int | None = None,
        error: str | None = None,
    ) -> SyncStateRecord:
        """Resolve *event* against the current state and apply the transition."""
        current = self.get_sync_state(issue_id)
        target = next_state(current.state, SyncEvent(event))
        if target is None:
            raise InvalidTransitionError(issue_id, current.state, event=str(event))
        return self.update_sync_state(issue_id, target, github_id=github_id, error=error)

    def list_sync_states(self, state: SyncState | None = None, *, project_id: int | None = None) -> list[SyncStateRecord]:
        """Sync rows, optionally filtered by state and project, most recently updated first."""
        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            clauses.append("s.sync_state = ?")
            params.append(str(SyncState(state)))
        if project_id is not None:
            clauses.append("i.project_id = ?")
            params.append(project_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT s.* FROM issue_sync_state s JOIN issues i ON i.id = s.issue_local_id {where} "  # noqa: S608
            "ORDER BY s.updated_at DESC, s.id DESC",
            params,
        ).fetchall()
        return [self._build_sync_state(r) for r in rows]

    def sync_state_summary(self, *, project_id: int | None = None) -> dict[SyncState, int]:
        """Count of issues per sync state; every state is present."""
        summary = dict.fromkeys(SyncState, 0)
        if project_id is None:
            rows = self.conn.execute("SELECT sync_state, COUNT(*) AS cnt FROM issue_sync_state GROUP BY sync_state").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT s.sync_state, COUNT(*) AS cnt FROM issue_sync_state s "
                "JOIN issues i ON i.id = s.issue_local_id WHERE i.project_id = ? GROUP BY s.sync_state",
                (project_id,),
            ).fetchall()
        for row in rows:
            summary[SyncState(row["sync_state"])] = row["cnt"]
        return summary
