"""CLI for pivot, the offline-capable GitHub issue mirror.

Reads ``config.yml`` (or ``config.yaml``) from the working directory unless
``--config`` names a file.

Usage:
    pivot init --owner octo --repo widgets --token ghp_xxx   # Write config.yml
    pivot init --detect                                      # Infer owner/repo from .git
    pivot sync [--project owner/repo]                        # Fetch and reconcile
    pivot push [--limit N] [--dry-run]                       # Upload queued issues
    pivot status [--verbose]                                 # Sync state overview
    pivot retry [--max-retries N]                            # Requeue failed uploads
    pivot create "Title" [--queue]                           # New local-only issue
    pivot edit <id> --title "New title"                      # Local edit
    pivot queue <id>                                         # Queue an issue for upload
    pivot resolve <id> --use remote|local|merge              # Settle a conflict
    pivot discard <id>                                       # Drop local edits
    pivot config show | import FILE | add-project            # Manage configuration
    pivot migrate-legacy --owner O --repo R                  # Adopt a legacy store
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from pivot import __version__
from pivot.cli_common import config_path, echo_json, fail, get_config, get_db, get_source, iter_stores
from pivot.config import (
    CONFIG_FILENAMES,
    DEFAULT_DATABASE,
    GlobalConfig,
    MultiProjectConfig,
    ProjectConfig,
    add_project,
    find_config_file,
    import_config_file,
    merge_configs,
    save_config,
    select_projects,
)
from pivot.core import PivotDB
from pivot.db_issues import ConflictResolution
from pivot.discovery import detect_project_from_git
from pivot.errors import ConfigError, CredentialError, DecodeError, InvalidTransitionError, RemoteAPIError, StorageError, TransportError
from pivot.sync import PushSummary, RetrySummary, StatusSummary, SyncService, SyncSummary
from pivot.sync_state import SyncState


def _target_config_file(ctx: click.Context) -> Path:
    explicit = config_path(ctx)
    if explicit is not None:
        return explicit
    try:
        return find_config_file()
    except ConfigError:
        return Path.cwd() / CONFIG_FILENAMES[0]


def _project_store(ctx: click.Context, project_filter: str | None) -> tuple[MultiProjectConfig, PivotDB, ProjectConfig]:
    """Open the store holding *project_filter* (default: the first configured project)."""
    config = get_config(ctx)
    try:
        project = select_projects(config, project_filter)[0]
    except ConfigError as e:
        fail(str(e))
    db = get_db(config.effective_database(project))
    return config, db, project


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="pivot")
@click.option("--config", "config_file", default=None, type=click.Path(dir_okay=False), help="Config file (default: ./config.yml)")
@click.option("--timeout", default=None, type=float, help="Per-request HTTP timeout in seconds")
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, timeout: float | None) -> None:
    """Pivot: keep a local SQLite mirror of GitHub issues in sync."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_file
    ctx.obj["timeout"] = timeout


@cli.command()
@click.option("--owner", default="", help="Repository owner")
@click.option("--repo", default="", help="Repository name")
@click.option("--token", default="", help="GitHub token (stored in the config file)")
@click.option("--database", default="", help=f"Database path (default: {DEFAULT_DATABASE})")
@click.option("--path", "project_path", default="", help="Project directory (default: cwd)")
@click.option("--detect", is_flag=True, help="Infer owner/repo from the git remote origin")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def init(
    ctx: click.Context,
    owner: str,
    repo: str,
    token: str,
    database: str,
    project_path: str,
    detect: bool,
    force: bool,
) -> None:
    """Write a multi-project config file and initialize the database."""
    target = _target_config_file(ctx)
    if target.exists() and not force:
        fail(f"{target} already exists. Use --force to overwrite, or 'pivot config add-project'.")

    if detect or not (owner and repo):
        try:
            project = detect_project_from_git(Path(project_path) if project_path else None)
        except ConfigError as e:
            fail(f"{e}. Pass --owner and --repo explicitly.")
    else:
        project = ProjectConfig(owner=owner, repo=repo, path=project_path or str(Path.cwd()))

    config = MultiProjectConfig(global_config=GlobalConfig(database=database or DEFAULT_DATABASE, token=token), projects=[project])
    try:
        save_config(config, target)
    except ConfigError as e:
        fail(str(e))

    db = get_db(config.global_config.database)
    try:
        db.register_project(project)
    except StorageError as e:
        fail(str(e))
    finally:
        db.close()

    click.echo(f"Wrote {target}")
    click.echo(f"  Project:  {project.full_name}")
    click.echo(f"  Database: {config.global_config.database}")
    if not token:
        click.echo(f"  No token set; add one under 'global.token' in {target.name} before syncing.")
    click.echo("\nNext: pivot sync")


@cli.command()
@click.option("--project", "project_filter", default=None, help="Only sync owner/repo")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def sync(ctx: click.Context, project_filter: str | None, as_json: bool) -> None:
    """Fetch remote issues and reconcile them into the local cache."""
    config = get_config(ctx)
    try:
        projects = select_projects(config, project_filter)
    except ConfigError as e:
        fail(str(e))
    source = get_source(ctx)

    summary = SyncSummary()
    try:
        for db, members in iter_stores(config, projects):
            summary.projects.extend(SyncService(config, db, source).sync(projects=members).projects)
    except StorageError as e:
        fail(str(e))

    if as_json:
        echo_json(summary.to_dict())
    else:
        for result in summary.projects:
            if result.ok:
                counts = ", ".join(f"{v} {k}" for k, v in result.outcomes.items() if v)
                click.echo(f"{result.project}: {result.fetched} fetched" + (f" ({counts})" if counts else ""))
            else:
                click.echo(f"{result.project}: FAILED", err=True)
                click.echo(f"  {result.error}", err=True)
    if not summary.ok:
        sys.exit(1)


@cli.command()
@click.option("--limit", default=None, type=click.IntRange(min=1), help="Upload at most N issues")
@click.option("--dry-run", is_flag=True, help="Show what would be uploaded")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def push(ctx: click.Context, limit: int | None, dry_run: bool, as_json: bool) -> None:
    """Upload issues queued for creation or update."""
    config = get_config(ctx)
    source = get_source(ctx)

    summary = PushSummary(dry_run=dry_run)
    remaining = limit
    try:
        for db, _members in iter_stores(config):
            if remaining is not None and remaining <= 0:
                break
            part = SyncService(config, db, source).push(limit=remaining, dry_run=dry_run)
            summary.pushed.extend(part.pushed)
            summary.failed.extend(part.failed)
            summary.planned.extend(part.planned)
            if remaining is not None:
                remaining -= len(part.pushed) + len(part.failed) + len(part.planned)
    except StorageError as e:
        fail(str(e))

    if as_json:
        echo_json(summary.to_dict())
    elif dry_run:
        if not summary.planned:
            click.echo("Nothing to push.")
        for item in summary.planned:
            click.echo(f"Would {item.action} #{item.issue_id} in {item.project}: {item.title}")
    else:
        if not summary.pushed and not summary.failed:
            click.echo("Nothing to push.")
        for item in summary.pushed:
            click.echo(f"Pushed #{item.issue_id} -> {item.project}#{item.number}: {item.title}")
        for item in summary.failed:
            click.echo(f"Failed #{item.issue_id} ({item.state}): {item.error}", err=True)
    if not summary.ok:
        sys.exit(1)


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="List conflicted and failing issues")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, verbose: bool, as_json: bool) -> None:
    """Show sync state counts per state and per project."""
    config = get_config(ctx)
    source = get_source(ctx)

    summary = StatusSummary()
    try:
        for db, _members in iter_stores(config):
            part = SyncService(config, db, source).status(verbose=verbose)
            for state, count in part.states.items():
                summary.states[state] = summary.states.get(state, 0) + count
            summary.projects.update(part.projects)
            summary.attention.extend(part.attention)
    except StorageError as e:
        fail(str(e))

    if as_json:
        echo_json(summary.to_dict())
        return

    click.echo(f"Issues: {summary.total}")
    for state, count in summary.states.items():
        if count:
            click.echo(f"  {state:<15} {count}")
    if summary.projects:
        click.echo("\nProjects:")
        for name, count in summary.projects.items():
            click.echo(f"  {name:<30} {count}")
    if verbose and summary.attention:
        click.echo("\nNeeds attention:")
        for line in summary.attention:
            click.echo(f"  #{line.issue_id} [{line.state}] {line.project}: {line.title}")
            if line.error:
                click.echo(f"      {line.error} (retries: {line.retry_count})")


@cli.command()
@click.option("--max-retries", default=3, type=click.IntRange(min=1), help="Failures after which an issue goes to ERROR")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def retry(ctx: click.Context, max_retries: int, as_json: bool) -> None:
    """Requeue PUSH_FAILED / SYNC_FAILED issues for the next push."""
    config = get_config(ctx)
    source = get_source(ctx)

    summary = RetrySummary()
    try:
        for db, _members in iter_stores(config):
            part = SyncService(config, db, source).retry_failed(max_retries=max_retries)
            summary.requeued.extend(part.requeued)
            summary.exhausted.extend(part.exhausted)
    except StorageError as e:
        fail(str(e))

    if as_json:
        echo_json(summary.to_dict())
    else:
        click.echo(f"Requeued {len(summary.requeued)}, gave up on {len(summary.exhausted)}")


# ---------------------------------------------------------------------------
# Local issue workflow
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("title")
@click.option("--project", "project_filter", default=None, help="owner/repo (default: first configured project)")
@click.option("--body", "-b", default="", help="Issue body")
@click.option("--label", "-l", multiple=True, help="Labels (repeatable)")
@click.option("--assignee", "-a", multiple=True, help="Assignees (repeatable)")
@click.option("--queue", is_flag=True, help="Queue for upload on the next push")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    project_filter: str | None,
    body: str,
    label: tuple[str, ...],
    assignee: tuple[str, ...],
    queue: bool,
    as_json: bool,
) -> None:
    """Create a local-only issue."""
    config, db, project = _project_store(ctx, project_filter)
    with db:
        try:
            project_id = db.register_project(project)
            issue = db.create_local_issue(project_id, title, body=body, labels=list(label), assignees=list(assignee))
            if queue:
                SyncService(config, db, get_source(ctx)).queue_push(issue.id)
        except (ValueError, StorageError) as e:
            fail(str(e))
        state = db.get_sync_state(issue.id).state
        if as_json:
            echo_json({**issue.to_dict(), "sync_state": str(state)})
        else:
            click.echo(f"Created #{issue.id} in {project.full_name} [{state}]: {issue.title}")


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--project", "project_filter", default=None, help="owner/repo whose store holds the issue")
@click.option("--title", default=None, help="New title")
@click.option("--body", default=None, help="New body")
@click.option("--state", "issue_state", default=None, type=click.Choice(["open", "closed"]), help="Open or close")
@click.option("--label", "-l", multiple=True, help="Replace labels (repeatable)")
@click.option("--assignee", "-a", multiple=True, help="Replace assignees (repeatable)")
@click.option("--clear-labels", is_flag=True, help="Remove every label")
@click.option("--clear-assignees", is_flag=True, help="Remove every assignee")
@click.pass_context
def edit(
    ctx: click.Context,
    issue_id: int,
    project_filter: str | None,
    title: str | None,
    body: str | None,
    issue_state: str | None,
    label: tuple[str, ...],
    assignee: tuple[str, ...],
    clear_labels: bool,
    clear_assignees: bool,
) -> None:
    """Edit an issue locally (SYNCED issues become LOCAL_MODIFIED)."""
    changes: dict[str, object] = {}
    if title is not None:
        changes["title"] = title
    if body is not None:
        changes["body"] = body
    if issue_state is not None:
        changes["state"] = issue_state
    if clear_labels and label:
        fail("--label and --clear-labels are mutually exclusive")
    if clear_assignees and assignee:
        fail("--assignee and --clear-assignees are mutually exclusive")
    if label or clear_labels:
        changes["labels"] = list(label)
    if assignee or clear_assignees:
        changes["assignees"] = list(assignee)
    if not changes:
        fail("Nothing to change")

    _config, db, _project = _project_store(ctx, project_filter)
    with db:
        try:
            issue = db.edit_issue(issue_id, **changes)
        except KeyError:
            fail(f"Not found: {issue_id}")
        except (ValueError, StorageError) as e:
            fail(str(e))
        click.echo(f"Edited #{issue.id} [{db.get_sync_state(issue.id).state}]: {issue.title}")


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--project", "project_filter", default=None, help="owner/repo whose store holds the issue")
@click.pass_context
def queue(ctx: click.Context, issue_id: int, project_filter: str | None) -> None:
    """Queue an issue for upload (LOCAL_ONLY -> PENDING_PUSH, LOCAL_MODIFIED -> PENDING_SYNC)."""
    config, db, _project = _project_store(ctx, project_filter)
    with db:
        service = SyncService(config, db, get_source(ctx))
        try:
            current = db.get_sync_state(issue_id).state
            if current is SyncState.LOCAL_ONLY:
                service.queue_push(issue_id)
            else:
                service.queue_sync(issue_id)
        except KeyError:
            fail(f"Not found: {issue_id}")
        except (InvalidTransitionError, StorageError) as e:
            fail(str(e))
        click.echo(f"Queued #{issue_id} [{db.get_sync_state(issue_id).state}]")


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--use", "resolution", required=True, type=click.Choice(["remote", "local", "merge"]), help="Which version wins")
@click.option("--project", "project_filter", default=None, help="owner/repo whose store holds the issue")
@click.option("--title", default=None, help="Merged title (with --use merge)")
@click.option("--body", default=None, help="Merged body (with --use merge)")
@click.pass_context
def resolve(
    ctx: click.Context,
    issue_id: int,
    resolution: str,
    project_filter: str | None,
    title: str | None,
    body: str | None,
) -> None:
    """Settle a CONFLICTED issue."""
    choice = {"remote": ConflictResolution.ACCEPT_REMOTE, "local": ConflictResolution.KEEP_LOCAL, "merge": ConflictResolution.MERGE}[resolution]
    merged = {k: v for k, v in (("title", title), ("body", body)) if v is not None}
    config, db, _project = _project_store(ctx, project_filter)
    with db:
        service = SyncService(config, db, get_source(ctx))
        try:
            issue = service.resolve_conflict(issue_id, choice, merged or None)
        except KeyError as e:
            fail(str(e.args[0]) if e.args else f"Not found: {issue_id}")
        except (ValueError, CredentialError, TransportError, DecodeError, RemoteAPIError, StorageError) as e:
            fail(str(e))
        click.echo(f"Resolved #{issue.id} [{db.get_sync_state(issue.id).state}]: {issue.title}")


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--project", "project_filter", default=None, help="owner/repo whose store holds the issue")
@click.pass_context
def discard(ctx: click.Context, issue_id: int, project_filter: str | None) -> None:
    """Drop local edits of a LOCAL_MODIFIED issue in favour of the remote copy."""
    config, db, _project = _project_store(ctx, project_filter)
    with db:
        service = SyncService(config, db, get_source(ctx))
        try:
            issue = service.discard_local(issue_id)
        except KeyError as e:
            fail(str(e.args[0]) if e.args else f"Not found: {issue_id}")
        except (ValueError, CredentialError, TransportError, DecodeError, RemoteAPIError, StorageError) as e:
            fail(str(e))
        click.echo(f"Discarded local changes to #{issue.id}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Show and edit the configuration file."""


@config_group.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show the resolved configuration (tokens masked)."""
    config = get_config(ctx)
    data = config.to_dict()
    for block in [data["global"], *data["projects"]]:
        if block.get("token"):
            block["token"] = "***"
    data["legacy"] = config.legacy
    if as_json:
        echo_json(data)
        return
    click.echo(f"Format:   {'legacy' if config.legacy else 'multi-project'}")
    click.echo(f"Database: {config.global_config.database}")
    click.echo(f"Token:    {'set' if config.global_config.token else 'not set'}")
    click.echo("Projects:")
    for project in config.projects:
        overrides = [k for k in ("token", "database") if getattr(project, k)]
        suffix = f" (overrides: {', '.join(overrides)})" if overrides else ""
        click.echo(f"  {project.full_name}  {project.path}{suffix}")


@config_group.command("import")
@click.argument("source_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--merge", is_flag=True, help="Merge into the existing config instead of replacing it")
@click.pass_context
def config_import(ctx: click.Context, source_file: str, merge: bool) -> None:
    """Import a multi-project config file."""
    target = _target_config_file(ctx)
    try:
        imported = import_config_file(Path(source_file))
        config = merge_configs(get_config(ctx), imported) if merge and target.exists() else imported
        save_config(config, target)
    except ConfigError as e:
        fail(str(e))
    click.echo(f"{'Merged' if merge else 'Imported'} {len(imported.projects)} project(s) into {target}")


@config_group.command("add-project")
@click.option("--owner", default="", help="Repository owner")
@click.option("--repo", default="", help="Repository name")
@click.option("--path", "project_path", default="", help="Project directory (default: cwd)")
@click.option("--token", default="", help="Project-specific token")
@click.option("--database", default="", help="Project-specific database")
@click.option("--detect", is_flag=True, help="Infer owner/repo from the git remote origin")
@click.pass_context
def config_add_project(
    ctx: click.Context,
    owner: str,
    repo: str,
    project_path: str,
    token: str,
    database: str,
    detect: bool,
) -> None:
    """Add a project to the configuration file."""
    if not detect and not (owner and repo):
        fail("Pass --owner and --repo, or --detect")
    config = get_config(ctx)
    try:
        if detect:
            project = detect_project_from_git(Path(project_path) if project_path else None)
            project.token = token
            project.database = database
        else:
            project = ProjectConfig(owner=owner, repo=repo, path=project_path or str(Path.cwd()), token=token, database=database)
        add_project(config, project)
        config.legacy = False
        save_config(config, _target_config_file(ctx))
    except ConfigError as e:
        fail(str(e))
    click.echo(f"Added {project.full_name}")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@cli.command("migrate-legacy")
@click.option("--owner", required=True, help="Owner the legacy issues belong to")
@click.option("--repo", required=True, help="Repository the legacy issues belong to")
@click.option("--path", "project_path", default="", help="Project directory to record")
@click.option("--database", default=None, help="Legacy database (default: configured global database)")
@click.pass_context
def migrate_legacy(ctx: click.Context, owner: str, repo: str, project_path: str, database: str | None) -> None:
    """Attach a legacy single-project store's issues to owner/repo."""
    db_path = database or get_config(ctx).global_config.database
    with get_db(db_path) as db:
        try:
            copied = db.migrate_legacy(owner, repo, project_path)
        except StorageError as e:
            fail(str(e))
    click.echo(f"Migrated {copied} legacy issue(s) into {owner}/{repo}")


if __name__ == "__main__":
    cli()
