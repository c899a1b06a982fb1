"""Shared utilities and Protocol for DB mixins."""

from __future__ import annotations

import hashlib
import sqlite3
from collections.abc import Iterable
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def join_names(values: Iterable[str] | str | None) -> str:
    """Comma-join a label/assignee collection; strings pass through trimmed."""
    if values is None:
        return ""
    if isinstance(values, str):
        return ",".join(v.strip() for v in values.split(",") if v.strip())
    return ",".join(v.strip() for v in values if v and v.strip())


def split_names(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def content_hash(
    title: str | None,
    body: str | None,
    state: str | None,
    labels: str | None,
    assignees: str | None,
) -> str:
    """Stable digest of the user-visible issue content, used for change detection.

    Labels and assignees are compared as sets.
    """
    parts = [
        title or "",
        body or "",
        state or "",
        ",".join(sorted(split_names(labels))),
        ",".join(sorted(split_names(assignees))),
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self.transaction(), etc. without ``type: ignore`` on every call.
    Actual implementations are provided by PivotDB at composition time.
    """

    db_path: Path
    _conn: sqlite3.Connection | None

    @property
    def conn(self) -> sqlite3.Connection: ...

    def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...
