"""Shared CLI helpers.

Loads configuration, opens the issue store(s) and builds the remote source,
turning ``ConfigError`` / ``StorageError`` into a message on stderr and
exit status 1.
"""

from __future__ import annotations

import json as json_mod
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any, NoReturn

import click

from pivot.config import MultiProjectConfig, ProjectConfig, load_config, resolve_database_path
from pivot.core import PivotDB, open_store
from pivot.errors import ConfigError, StorageError
from pivot.github import GitHubClient, RemoteIssueSource
from pivot.logging import setup_logging


def fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def config_path(ctx: click.Context) -> Path | None:
    path = ctx.obj.get("config_path")
    return Path(path) if path else None


def get_config(ctx: click.Context) -> MultiProjectConfig:
    """Load the configuration named by ``--config`` (or found in cwd)."""
    try:
        return load_config(config_path(ctx))
    except ConfigError as e:
        fail(str(e))


def get_source(ctx: click.Context) -> RemoteIssueSource:
    """The remote source; tests inject one through ``ctx.obj['source']``."""
    source: RemoteIssueSource | None = ctx.obj.get("source")
    if source is None:
        source = GitHubClient(timeout=ctx.obj.get("timeout"))
        ctx.obj["source"] = source
        ctx.call_on_close(source.close)
    return source


def get_db(db_path: str) -> PivotDB:
    """Open and initialize the store at *db_path*, logging beside it."""
    path = resolve_database_path(db_path)
    try:
        db = open_store(path)
    except StorageError as e:
        fail(str(e))
    setup_logging(path.parent)
    return db


def group_by_database(config: MultiProjectConfig, projects: list[ProjectConfig]) -> dict[str, list[ProjectConfig]]:
    """Projects keyed by their effective database path, in first-seen order."""
    groups: dict[str, list[ProjectConfig]] = {}
    for project in projects:
        key = str(resolve_database_path(config.effective_database(project)))
        groups.setdefault(key, []).append(project)
    return groups


def iter_stores(config: MultiProjectConfig, projects: list[ProjectConfig] | None = None) -> Iterator[tuple[PivotDB, list[ProjectConfig]]]:
    """Yield each distinct store with the projects that live in it."""
    selected = projects if projects is not None else config.projects
    groups = group_by_database(config, selected) or {config.global_config.database: []}
    for db_path, members in groups.items():
        db = get_db(db_path)
        try:
            yield db, members
        finally:
            db.close()


def echo_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))
