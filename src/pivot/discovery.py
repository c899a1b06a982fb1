"""Project auto-detection from a git checkout.

Walks up from a start directory looking for ``.git/``, reads its ``config``
file and turns the ``[remote "origin"]`` URL into an owner/repo pair.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pivot.config import ProjectConfig
from pivot.errors import ConfigError

logger = logging.getLogger(__name__)

GIT_DIR_NAME = ".git"
_URL_PREFIXES = ("https://github.com/", "http://github.com/", "git@github.com:", "ssh://git@github.com/")


class GitDirectoryNotFoundError(ConfigError):
    """No .git directory in the start directory or any parent."""


class RemoteURLError(ConfigError):
    """The origin remote is missing or not a recognizable GitHub URL."""


def find_git_directory(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for a .git directory."""
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / GIT_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"not in a git repository: no {GIT_DIR_NAME}/ directory found in {current} or any parent"
    raise GitDirectoryNotFoundError(msg)


def parse_github_url(url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from an HTTPS or SSH GitHub URL."""
    url = url.strip()
    for prefix in _URL_PREFIXES:
        if url.startswith(prefix):
            path = url[len(prefix) :]
            break
    else:
        msg = f"unsupported git URL format: {url}"
        raise RemoteURLError(msg)

    path = path.removesuffix("/").removesuffix(".git")
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        msg = f"invalid GitHub URL format: {url}"
        raise RemoteURLError(msg)
    return parts[0], parts[1]


def parse_git_remote_origin(git_config: str) -> tuple[str, str]:
    """Find the origin URL in the text of a .git/config file."""
    in_origin = False
    for raw_line in git_config.splitlines():
        line = raw_line.strip()
        if line.startswith("["):
            in_origin = line.replace(" ", "") == '[remote"origin"]'
            continue
        if in_origin and line.startswith("url"):
            key, _, value = line.partition("=")
            if key.strip() == "url":
                return parse_github_url(value)
    msg = "remote origin URL not found in git config"
    raise RemoteURLError(msg)


def detect_project_from_git(start: Path | None = None) -> ProjectConfig:
    """Infer owner, repo and project path from the enclosing git checkout."""
    git_dir = find_git_directory(start)
    try:
        text = (git_dir / "config").read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"failed to read git config: {exc}"
        raise RemoteURLError(msg) from exc

    owner, repo = parse_git_remote_origin(text)
    project_path = git_dir.parent
    logger.debug("Detected project %s/%s at %s", owner, repo, project_path)
    return ProjectConfig(owner=owner, repo=repo, path=str(project_path))
