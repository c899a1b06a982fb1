"""ProjectsMixin: the project registry.

A project is one remote repository mirrored into the shared store. Rows are
keyed by ``(owner, repo)``; registering a known pair updates its path, token
and database override and keeps the id.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from pivot.config import ProjectConfig
from pivot.db_base import DBMixinProtocol, _now_iso

logger = logging.getLogger(__name__)

_PROJECT_COLUMNS = "id, owner, repo, path, token, database_path, created_at, updated_at"


@dataclass
class Project:
    id: int
    owner: str
    repo: str
    path: str = ""
    token: str = ""
    database: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def to_config(self) -> ProjectConfig:
        return ProjectConfig(owner=self.owner, repo=self.repo, path=self.path, token=self.token, database=self.database, id=self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "repo": self.repo,
            "path": self.path,
            "has_token": bool(self.token),
            "database": self.database,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def upsert_project(
    conn: sqlite3.Connection,
    owner: str,
    repo: str,
    *,
    path: str = "",
    token: str = "",
    database: str = "",
) -> int:
    """Insert or update a project row and return its id. Does not commit."""
    if not owner or not repo:
        msg = "Project owner and repo are required"
        raise ValueError(msg)
    now = _now_iso()
    conn.execute(
        "INSERT INTO projects (owner, repo, path, token, database_path, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(owner, repo) DO UPDATE SET "
        "path = excluded.path, token = excluded.token, "
        "database_path = excluded.database_path, updated_at = excluded.updated_at",
        (owner, repo, path, token, database, now, now),
    )
    # lastrowid is unreliable on the UPDATE branch
    row = conn.execute("SELECT id FROM projects WHERE owner = ? AND repo = ?", (owner, repo)).fetchone()
    return int(row[0])


class ProjectsMixin(DBMixinProtocol):
    """Project registry methods composed into ``PivotDB``."""

    @staticmethod
    def _build_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            owner=row["owner"],
            repo=row["repo"],
            path=row["path"] or "",
            token=row["token"] or "",
            database=row["database_path"] or "",
            created_at=row["created_at"] or "",
            updated_at=row["updated_at"] or "",
        )

    def register_project(self, project: ProjectConfig) -> int:
        """Upsert *project* keyed on (owner, repo). Returns the local id."""
        with self.transaction() as conn:
            project_id = upsert_project(
                conn,
                project.owner,
                project.repo,
                path=project.path,
                token=project.token,
                database=project.database,
            )
        project.id = project_id
        logger.debug("Registered project %s (id=%d)", project.full_name, project_id)
        return project_id

    def get_project(self, project_id: int) -> Project:
        row = self.conn.execute(f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE id = ?", (project_id,)).fetchone()  # noqa: S608
        if row is None:
            msg = f"Project not found: {project_id}"
            raise KeyError(msg)
        return self._build_project(row)

    def find_project(self, owner: str, repo: str) -> Project:
        row = self.conn.execute(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE owner = ? AND repo = ?",  # noqa: S608
            (owner, repo),
        ).fetchone()
        if row is None:
            msg = f"project not found for {owner}/{repo}"
            raise KeyError(msg)
        return self._build_project(row)

    def find_project_by_path(self, path: str) -> Project:
        row = self.conn.execute(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE path = ? ORDER BY id LIMIT 1",  # noqa: S608
            (path,),
        ).fetchone()
        if row is None:
            msg = f"project not found at path {path}"
            raise KeyError(msg)
        return self._build_project(row)

    def list_projects(self) -> list[Project]:
        rows = self.conn.execute(f"SELECT {_PROJECT_COLUMNS} FROM projects ORDER BY owner, repo").fetchall()  # noqa: S608
        return [self._build_project(r) for r in rows]
