"""Configuration resolver.

Accepts either the legacy single-project document::

    owner: octo
    repo: widgets
    token: ghp_xxx
    database: ./pivot.db

or the multi-project document::

    global:
      database: ~/.pivot/pivot.db
      token: ghp_xxx
    projects:
      - owner: octo
        repo: widgets
        path: /src/widgets
        token: ghp_yyy      # optional override
        database: ./w.db    # optional override

and normalizes both into a ``MultiProjectConfig``. The resolver itself never
touches the filesystem; ``load_config`` and friends are the thin I/O layer.
"""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pivot.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("config.yml", "config.yaml")
DEFAULT_DATABASE = "~/.pivot/pivot.db"
DEFAULT_BATCH_SIZE = 100
_MULTI_PROJECT_MARKERS = ("global:", "projects:")


@dataclass
class SyncOptions:
    """Legacy ``sync:`` block, kept so old documents still round-trip."""

    include_closed: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE


@dataclass
class GlobalConfig:
    database: str = ""
    token: str = ""


@dataclass
class ProjectConfig:
    owner: str
    repo: str
    path: str = ""
    token: str = ""
    database: str = ""
    id: int | None = None  # registry id, never serialized

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def effective_token(self, global_config: GlobalConfig) -> str:
        return self.token or global_config.token

    def effective_database(self, global_config: GlobalConfig) -> str:
        return self.database or global_config.database

    def to_dict(self) -> dict[str, str]:
        data = {"owner": self.owner, "repo": self.repo}
        for key in ("path", "token", "database"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data


@dataclass
class MultiProjectConfig:
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    projects: list[ProjectConfig] = field(default_factory=list)
    sync: SyncOptions = field(default_factory=SyncOptions)
    legacy: bool = False

    def effective_token(self, project: ProjectConfig) -> str:
        return project.effective_token(self.global_config)

    def effective_database(self, project: ProjectConfig) -> str:
        return project.effective_database(self.global_config)

    def find_project(self, owner: str, repo: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.owner == owner and project.repo == repo:
                return project
        return None

    def to_dict(self) -> dict[str, Any]:
        global_data = {k: v for k, v in (("database", self.global_config.database), ("token", self.global_config.token)) if v}
        return {"global": global_data, "projects": [p.to_dict() for p in self.projects]}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _as_str(value: object, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        msg = f"Config field '{key}' must be a string, got {type(value).__name__}"
        raise ConfigError(msg)
    return str(value)


def _parse_sync_options(data: object) -> SyncOptions:
    if not isinstance(data, dict):
        return SyncOptions()
    options = SyncOptions()
    include_closed = data.get("include_closed")
    if isinstance(include_closed, bool):
        options.include_closed = include_closed
    batch_size = data.get("batch_size")
    if isinstance(batch_size, int) and not isinstance(batch_size, bool) and batch_size > 0:
        options.batch_size = batch_size
    return options


def _looks_multi_project(data: dict[str, Any], text: str) -> bool:
    projects = data.get("projects")
    if isinstance(projects, list) and projects:
        return True
    global_block = data.get("global")
    if isinstance(global_block, dict) and global_block.get("database") and global_block.get("token"):
        return True
    return any(marker in text for marker in _MULTI_PROJECT_MARKERS)


def _parse_multi_project(data: dict[str, Any]) -> MultiProjectConfig:
    global_block = data.get("global") or {}
    if not isinstance(global_block, dict):
        msg = "Config section 'global' must be a mapping"
        raise ConfigError(msg)
    raw_projects = data.get("projects") or []
    if not isinstance(raw_projects, list):
        msg = "Config section 'projects' must be a list"
        raise ConfigError(msg)

    projects: list[ProjectConfig] = []
    for index, entry in enumerate(raw_projects):
        if not isinstance(entry, dict):
            msg = f"Project entry #{index + 1} must be a mapping"
            raise ConfigError(msg)
        owner = _as_str(entry.get("owner"), "owner")
        repo = _as_str(entry.get("repo"), "repo")
        if not owner or not repo:
            msg = f"Project entry #{index + 1} requires both 'owner' and 'repo'"
            raise ConfigError(msg)
        projects.append(
            ProjectConfig(
                owner=owner,
                repo=repo,
                path=_as_str(entry.get("path"), "path"),
                token=_as_str(entry.get("token"), "token"),
                database=_as_str(entry.get("database"), "database"),
            )
        )

    return MultiProjectConfig(
        global_config=GlobalConfig(
            database=_as_str(global_block.get("database"), "database"),
            token=_as_str(global_block.get("token"), "token"),
        ),
        projects=projects,
        sync=_parse_sync_options(data.get("sync")),
    )


def _parse_legacy(data: dict[str, Any], cwd: str) -> MultiProjectConfig:
    owner = _as_str(data.get("owner"), "owner")
    repo = _as_str(data.get("repo"), "repo")
    if not owner and not repo:
        msg = "invalid configuration: missing required fields (owner, repo)"
        raise ConfigError(msg)
    # token/database stay empty on the project so they inherit from global
    return MultiProjectConfig(
        global_config=GlobalConfig(
            database=_as_str(data.get("database"), "database"),
            token=_as_str(data.get("token"), "token"),
        ),
        projects=[ProjectConfig(owner=owner, repo=repo, path=cwd)],
        sync=_parse_sync_options(data.get("sync")),
        legacy=True,
    )


def apply_defaults(config: MultiProjectConfig, cwd: str) -> MultiProjectConfig:
    """Fill the global database and empty project paths in place."""
    if not config.global_config.database:
        config.global_config.database = DEFAULT_DATABASE
    for project in config.projects:
        if not project.path:
            project.path = cwd
    return config


def resolve(raw: bytes | str, *, cwd: str | None = None) -> MultiProjectConfig:
    """Resolve a raw configuration document into a normalized multi-project config.

    Args:
        raw: Document bytes or text (YAML).
        cwd: Directory used for defaulted project paths (default: os.getcwd()).

    Raises:
        ConfigError: If the document parses as neither form, or a legacy
            document lacks both owner and repo.
    """
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    cwd = cwd if cwd is not None else os.getcwd()

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        msg = f"failed to parse config as either multi-project or legacy format: {exc}"
        raise ConfigError(msg) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"failed to parse config as either multi-project or legacy format: expected a mapping, got {type(data).__name__}"
        raise ConfigError(msg)

    if _looks_multi_project(data, text):
        config = _parse_multi_project(data)
    else:
        config = _parse_legacy(data, cwd)
    return apply_defaults(config, cwd)


def resolve_database_path(db_path: str) -> Path:
    """Expand a leading ``~`` to the user's home directory."""
    return Path(db_path).expanduser()


def select_projects(config: MultiProjectConfig, project_filter: str | None = None) -> list[ProjectConfig]:
    """Return the projects a run should touch.

    ``project_filter`` is ``owner/repo``; ``None`` or empty selects every project.
    """
    if not config.projects:
        msg = "no projects configured in multi-project configuration"
        raise ConfigError(msg)
    if not project_filter:
        return list(config.projects)

    parts = project_filter.split("/")
    if len(parts) != 2 or not all(parts):
        msg = f"project filter must be in format 'owner/repo', got: {project_filter}"
        raise ConfigError(msg)
    project = config.find_project(parts[0], parts[1])
    if project is None:
        msg = f"project {project_filter} not found in configuration"
        raise ConfigError(msg)
    return [project]


def add_project(config: MultiProjectConfig, project: ProjectConfig) -> MultiProjectConfig:
    if config.find_project(project.owner, project.repo) is not None:
        msg = f"project {project.full_name} already exists in configuration"
        raise ConfigError(msg)
    config.projects.append(project)
    return config


def merge_configs(current: MultiProjectConfig, imported: MultiProjectConfig) -> MultiProjectConfig:
    """Merge ``imported`` into ``current``; imported values win."""
    if imported.global_config.token:
        current.global_config.token = imported.global_config.token
    if imported.global_config.database:
        current.global_config.database = imported.global_config.database

    for incoming in imported.projects:
        for index, existing in enumerate(current.projects):
            if existing.owner == incoming.owner and existing.repo == incoming.repo:
                current.projects[index] = incoming
                break
        else:
            current.projects.append(incoming)
    current.legacy = False
    return current


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------


def find_config_file(directory: Path | None = None) -> Path:
    """Return ``config.yml`` (or ``config.yaml``) in *directory* (default cwd)."""
    base = directory or Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    msg = f"No configuration file found in {base} (looked for {', '.join(CONFIG_FILENAMES)})"
    raise ConfigError(msg)


def load_config(path: Path | None = None) -> MultiProjectConfig:
    """Read and resolve a configuration file.

    When *path* is None, ``config.yml`` / ``config.yaml`` are looked up in
    the working directory.
    """
    config_path = path or find_config_file()
    try:
        raw = config_path.read_bytes()
    except OSError as exc:
        msg = f"failed to read config file {config_path}: {exc}"
        raise ConfigError(msg) from exc
    config = resolve(raw)
    logger.debug("Loaded %s config from %s (%d projects)", "legacy" if config.legacy else "multi-project", config_path, len(config.projects))
    return config


def import_config_file(path: Path) -> MultiProjectConfig:
    """Parse a multi-project document from an arbitrary file."""
    try:
        raw = path.read_bytes()
    except OSError as exc:
        msg = f"failed to read config file: {exc}"
        raise ConfigError(msg) from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        msg = f"failed to parse config file: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = "failed to parse config file: expected a mapping"
        raise ConfigError(msg)
    return apply_defaults(_parse_multi_project(data), os.getcwd())


def save_config(config: MultiProjectConfig, path: Path) -> None:
    """Write *config* as a multi-project YAML document (mode 0600, atomic)."""
    content = yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp, path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp.unlink()
        msg = f"failed to write config file: {exc}"
        raise ConfigError(msg) from exc
