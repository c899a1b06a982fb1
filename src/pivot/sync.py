"""Sync orchestration: fetch, push, status and retry over one issue store.

``SyncService`` ties the resolved configuration, a ``PivotDB`` and an
injected ``RemoteIssueSource`` together. Projects are processed one after
another. A credential, transport, decode or API failure is recorded against
its project (sync) or issue (push) and the run moves on; ``ConfigError`` and
``StorageError`` propagate and abort the invocation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pivot.config import MultiProjectConfig, ProjectConfig, select_projects
from pivot.core import PivotDB
from pivot.db_issues import ApplyOutcome, CachedIssue, ConflictResolution
from pivot.db_projects import Project
from pivot.errors import CredentialError, DecodeError, RemoteAPIError, TransportError
from pivot.github import CreateIssueRequest, RemoteIssue, RemoteIssueSource, missing_token_error
from pivot.sync_state import SyncEvent, SyncState

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

# Failures recorded against a project or issue; everything else propagates.
REMOTE_ERRORS = (CredentialError, TransportError, DecodeError, RemoteAPIError)


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, CredentialError):
        return "credential"
    if isinstance(exc, DecodeError):
        return "decode"
    if isinstance(exc, TransportError):
        return "transport"
    return "api"


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


@dataclass
class ProjectSyncResult:
    project: str
    fetched: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: dict.fromkeys((str(o) for o in ApplyOutcome), 0))
    error: str | None = None
    error_kind: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "fetched": self.fetched,
            **self.outcomes,
            "error": self.error,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
        }


@dataclass
class SyncSummary:
    projects: list[ProjectSyncResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(p.ok for p in self.projects)

    @property
    def failed(self) -> list[ProjectSyncResult]:
        return [p for p in self.projects if not p.ok]

    def total(self, outcome: ApplyOutcome) -> int:
        return sum(p.outcomes[str(outcome)] for p in self.projects)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "projects": [p.to_dict() for p in self.projects],
            "totals": {str(o): self.total(o) for o in ApplyOutcome},
        }


@dataclass
class PushItem:
    issue_id: int
    project: str
    title: str
    action: str  # "create" or "update"
    github_id: int | None = None
    number: int | None = None
    error: str | None = None
    state: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "project": self.project,
            "title": self.title,
            "action": self.action,
            "github_id": self.github_id,
            "number": self.number,
            "error": self.error,
            "state": self.state,
        }


@dataclass
class PushSummary:
    dry_run: bool = False
    pushed: list[PushItem] = field(default_factory=list)
    failed: list[PushItem] = field(default_factory=list)
    planned: list[PushItem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "pushed": [i.to_dict() for i in self.pushed],
            "failed": [i.to_dict() for i in self.failed],
            "planned": [i.to_dict() for i in self.planned],
        }


@dataclass
class StatusLine:
    issue_id: int
    project: str
    title: str
    state: str
    retry_count: int
    error: str | None
    last_sync_attempt: str | None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class StatusSummary:
    states: dict[str, int] = field(default_factory=dict)
    projects: dict[str, int] = field(default_factory=dict)
    attention: list[StatusLine] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.states.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "states": self.states,
            "projects": self.projects,
            "attention": [line.to_dict() for line in self.attention],
        }


@dataclass
class RetrySummary:
    requeued: list[int] = field(default_factory=list)
    exhausted: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"requeued": self.requeued, "exhausted": self.exhausted}


# States a human should look at, listed by a verbose status.
ATTENTION_STATES = (SyncState.CONFLICTED, SyncState.PUSH_FAILED, SyncState.SYNC_FAILED, SyncState.ERROR)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SyncService:
    def __init__(self, config: MultiProjectConfig, db: PivotDB, source: RemoteIssueSource) -> None:
        self.config = config
        self.db = db
        self.source = source

    # -- helpers --------------------------------------------------------------

    def _token_for(self, project: Project | ProjectConfig) -> str:
        configured = self.config.find_project(project.owner, project.repo)
        if configured is not None:
            return self.config.effective_token(configured)
        return project.token or self.config.global_config.token

    def _fetch_remote(self, issue: CachedIssue) -> RemoteIssue:
        if issue.github_id is None:
            msg = f"Issue {issue.id} has never been uploaded; there is no remote copy"
            raise ValueError(msg)
        project = self.db.get_project(issue.project_id)
        token = self._token_for(project)
        if not token:
            raise missing_token_error()
        for remote in self.source.list_issues(project.owner, project.repo, token):
            if remote.id == issue.github_id:
                return remote
        msg = f"Remote issue {issue.github_id} not found in {project.full_name}"
        raise KeyError(msg)

    # -- sync -----------------------------------------------------------------

    def sync(self, project_filter: str | None = None, *, projects: list[ProjectConfig] | None = None) -> SyncSummary:
        """Fetch every selected project and reconcile it into the cache.

        ``projects`` overrides selection by filter (the CLI passes the subset
        that shares this store).
        """
        selected = projects if projects is not None else select_projects(self.config, project_filter)
        summary = SyncSummary()
        for project in selected:
            summary.projects.append(self._sync_project(project))
        return summary

    def _sync_project(self, project: ProjectConfig) -> ProjectSyncResult:
        result = ProjectSyncResult(project=project.full_name)
        started = time.monotonic()
        project_id = self.db.register_project(project)
        try:
            token = self.config.effective_token(project)
            if not token:
                raise missing_token_error()
            self.source.ensure_credentials(project.owner, project.repo, token)
            remote_issues = self.source.list_issues(project.owner, project.repo, token)
        except REMOTE_ERRORS as exc:
            result.error = str(exc)
            result.error_kind = _error_kind(exc)
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Sync of %s failed: %s",
                project.full_name,
                exc,
                extra={"project": project.full_name, "error": str(exc), "duration_ms": result.duration_ms},
            )
            return result

        for remote in remote_issues:
            if not self.config.sync.include_closed and remote.state == "closed":
                continue
            result.fetched += 1
            outcome = self.db.apply_remote_issue(project_id, remote)
            result.outcomes[str(outcome)] += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Synced %s: %d fetched, %d new, %d updated, %d conflicted",
            project.full_name,
            result.fetched,
            result.outcomes[ApplyOutcome.INSERTED],
            result.outcomes[ApplyOutcome.UPDATED],
            result.outcomes[ApplyOutcome.CONFLICTED] + result.outcomes[ApplyOutcome.LINKED],
            extra={"project": project.full_name, "duration_ms": result.duration_ms},
        )
        return result

    # -- push -----------------------------------------------------------------

    def push(self, limit: int | None = None, dry_run: bool = False) -> PushSummary:
        """Upload PENDING_PUSH issues (create), then PENDING_SYNC issues (update)."""
        summary = PushSummary(dry_run=dry_run)
        records = self.db.list_sync_states(SyncState.PENDING_PUSH) + self.db.list_sync_states(SyncState.PENDING_SYNC)
        if limit is not None:
            records = records[:limit]

        for record in records:
            issue = self.db.get_issue(record.issue_local_id)
            project = self.db.get_project(issue.project_id)
            creating = record.state is SyncState.PENDING_PUSH or issue.number is None
            item = PushItem(
                issue_id=issue.id,
                project=project.full_name,
                title=issue.title,
                action="create" if creating else "update",
                github_id=issue.github_id,
                number=issue.number,
                state=str(record.state),
            )
            if dry_run:
                summary.planned.append(item)
                continue
            self._push_one(project, issue, record.state, creating, item)
            (summary.pushed if item.error is None else summary.failed).append(item)
        return summary

    def _push_one(self, project: Project, issue: CachedIssue, state: SyncState, creating: bool, item: PushItem) -> None:
        payload = CreateIssueRequest(title=issue.title, body=issue.body, labels=issue.labels, assignees=issue.assignees)
        failed_event = SyncEvent.REMOTE_CREATE_FAILED if state is SyncState.PENDING_PUSH else SyncEvent.REMOTE_UPDATE_FAILED
        try:
            token = self._token_for(project)
            if not token:
                raise missing_token_error()
            if creating:
                uploaded = self.source.create_issue(project.owner, project.repo, token, payload)
            else:
                payload.state = issue.state
                uploaded = self.source.update_issue(project.owner, project.repo, token, issue.number or 0, payload)
        except CredentialError as exc:
            item.error = str(exc)
            # bad credentials will not fix themselves; updates have no direct ERROR edge
            event = SyncEvent.UNRECOVERABLE if state is SyncState.PENDING_PUSH else failed_event
            item.state = str(self.db.fire_sync_event(issue.id, event, error=str(exc)).state)
            logger.warning("Push of issue %d failed: %s", issue.id, exc, extra={"issue_id": issue.id, "project": project.full_name, "error": str(exc)})
            return
        except (TransportError, DecodeError, RemoteAPIError) as exc:
            item.error = str(exc)
            item.state = str(self.db.fire_sync_event(issue.id, failed_event, error=str(exc)).state)
            logger.warning("Push of issue %d failed: %s", issue.id, exc, extra={"issue_id": issue.id, "project": project.full_name, "error": str(exc)})
            return

        self.db.mark_uploaded(issue.id, uploaded.id, uploaded.number)
        item.github_id = uploaded.id
        item.number = uploaded.number
        item.state = str(SyncState.SYNCED)
        logger.info("Pushed issue %d as %s#%d", issue.id, project.full_name, uploaded.number, extra={"issue_id": issue.id, "project": project.full_name})

    # -- status / retry -------------------------------------------------------

    def status(self, verbose: bool = False) -> StatusSummary:
        summary = StatusSummary(
            states={str(state): count for state, count in self.db.sync_state_summary().items()},
            projects=self.db.count_issues_by_project(),
        )
        if verbose:
            for state in ATTENTION_STATES:
                for record in self.db.list_sync_states(state):
                    issue = self.db.get_issue(record.issue_local_id)
                    summary.attention.append(
                        StatusLine(
                            issue_id=issue.id,
                            project=self.db.get_project(issue.project_id).full_name,
                            title=issue.title,
                            state=str(record.state),
                            retry_count=record.retry_count,
                            error=record.sync_error,
                            last_sync_attempt=record.last_sync_attempt,
                        )
                    )
        return summary

    def retry_failed(self, max_retries: int = DEFAULT_MAX_RETRIES) -> RetrySummary:
        """Requeue failed uploads; those at ``max_retries`` failures go to ERROR."""
        summary = RetrySummary()
        for state in (SyncState.PUSH_FAILED, SyncState.SYNC_FAILED):
            for record in self.db.list_sync_states(state):
                if record.retry_count >= max_retries:
                    error = f"retries exhausted after {record.retry_count} attempts: {record.sync_error}"
                    self.db.fire_sync_event(record.issue_local_id, SyncEvent.RETRIES_EXHAUSTED, error=error)
                    summary.exhausted.append(record.issue_local_id)
                else:
                    self.db.fire_sync_event(record.issue_local_id, SyncEvent.RETRY)
                    summary.requeued.append(record.issue_local_id)
        return summary

    # -- local workflow -------------------------------------------------------

    def queue_push(self, issue_id: int) -> None:
        """Ask for a LOCAL_ONLY issue to be created remotely on the next push."""
        self.db.fire_sync_event(issue_id, SyncEvent.REQUEST_UPLOAD)

    def queue_sync(self, issue_id: int) -> None:
        """Ask for a LOCAL_MODIFIED issue's edits to be uploaded on the next push."""
        self.db.fire_sync_event(issue_id, SyncEvent.REQUEST_RESYNC)

    def cancel_sync(self, issue_id: int) -> None:
        self.db.fire_sync_event(issue_id, SyncEvent.CANCEL_SYNC)

    def abandon_retry(self, issue_id: int) -> None:
        self.db.fire_sync_event(issue_id, SyncEvent.ABANDON_RETRY)

    def edit_issue(self, issue_id: int, **changes: Any) -> CachedIssue:
        return self.db.edit_issue(issue_id, **changes)

    def discard_local(self, issue_id: int) -> CachedIssue:
        """Replace local edits with the current remote copy."""
        issue = self.db.get_issue(issue_id)
        return self.db.discard_local_changes(issue_id, self._fetch_remote(issue))

    def resolve_conflict(self, issue_id: int, resolution: ConflictResolution, merged: dict[str, Any] | None = None) -> CachedIssue:
        """Settle a conflict against a freshly fetched remote copy.

        A remote issue that has disappeared cannot be reconciled and sends the
        issue to ERROR. Network failures propagate and leave it CONFLICTED.
        """
        issue = self.db.get_issue(issue_id)
        state = self.db.get_sync_state(issue_id).state
        if state is not SyncState.CONFLICTED:
            msg = f"Issue {issue_id} is not conflicted (state {state})"
            raise ValueError(msg)
        try:
            remote = self._fetch_remote(issue)
        except KeyError as exc:
            self.db.fire_sync_event(issue_id, SyncEvent.RESOLUTION_FAILED, error=str(exc.args[0]))
            raise
        return self.db.resolve_conflict(issue_id, resolution, remote, merged)
