#!/usr/bin/env python3
# CUI // SP-CTI
"""Workspace and Project repositories, plus cascading project deletion."""

import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json, transaction
from falcon_engine.db.init_falcon_db import PROJECT_CASCADE_TABLES
from falcon_engine.resilience.errors import TransactionError, ValidationError
from falcon_engine.schemas.core import Project, Workspace
from falcon_engine.storage.base import BaseRepository

logger = logging.getLogger("falcon.storage.workspace_repo")

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").strip().lower()).strip("-")
    return slug[:63]


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        config=from_json(row["config"], {}),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        repo_origin_url=row["repo_origin_url"],
        repo_subdir=row["repo_subdir"],
        repo_path=row["repo_path"],
        config=from_json(row["config"], {}),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class WorkspaceRepository(BaseRepository):
    table = "workspaces"

    def create(
        self,
        name: str,
        slug: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        now: Any = None,
    ) -> Workspace:
        self._require(name, "name")
        slug = slug or slugify(name)
        if not _SLUG_RE.match(slug):
            raise ValidationError(f"Invalid workspace slug '{slug}'", field="slug")
        if self.find_by_slug(slug):
            raise ValidationError(f"Workspace slug '{slug}' already exists", field="slug")
        ts = self.now(now)
        workspace = Workspace(id=self.new_id(), name=name, slug=slug, config=dict(config or {}),
                              status="active", created_at=ts, updated_at=ts)
        self._execute(
            "INSERT INTO workspaces (id, name, slug, config, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'active', ?, ?)",
            (workspace.id, name, slug, to_json(workspace.config), ts, ts),
        )
        return workspace

    def find_by_id(self, workspace_id: str) -> Optional[Workspace]:
        row = self._fetch_one("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        return _row_to_workspace(row) if row else None

    def find_by_slug(self, slug: str) -> Optional[Workspace]:
        row = self._fetch_one("SELECT * FROM workspaces WHERE slug = ?", (slug,))
        return _row_to_workspace(row) if row else None

    def list_active(self) -> List[Workspace]:
        rows = self._fetch_all(
            "SELECT * FROM workspaces WHERE status = 'active' ORDER BY created_at, id")
        return [_row_to_workspace(r) for r in rows]

    def archive(self, workspace_id: str, now: Any = None) -> bool:
        return self._execute(
            "UPDATE workspaces SET status = 'archived', updated_at = ? "
            "WHERE id = ? AND status = 'active'",
            (self.now(now), workspace_id),
        ) > 0


class ProjectRepository(BaseRepository):
    table = "projects"

    def create(
        self,
        workspace_id: str,
        name: str,
        repo_origin_url: str,
        repo_subdir: str = "",
        repo_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        now: Any = None,
    ) -> Project:
        self._require(name, "name")
        self._require(repo_origin_url, "repo_origin_url")
        if self._fetch_one("SELECT id FROM workspaces WHERE id = ?", (workspace_id,)) is None:
            raise ValidationError(f"Workspace '{workspace_id}' not found", field="workspace_id")
        subdir = (repo_subdir or "").strip("/")
        existing = self.find_by_identity(workspace_id, repo_origin_url, subdir)
        if existing:
            raise ValidationError(
                f"Project for {repo_origin_url} ({subdir or '/'}) already exists",
                field="repo_origin_url",
            )
        ts = self.now(now)
        project = Project(
            id=self.new_id(), workspace_id=workspace_id, name=name,
            repo_origin_url=repo_origin_url, repo_subdir=subdir, repo_path=repo_path,
            config=dict(config or {}), status="active", created_at=ts, updated_at=ts,
        )
        self._execute(
            "INSERT INTO projects (id, workspace_id, name, repo_path, repo_origin_url, repo_subdir, "
            "config, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)",
            (project.id, workspace_id, name, repo_path, repo_origin_url, subdir,
             to_json(project.config), ts, ts),
        )
        return project

    def find_by_id(self, workspace_id: str, project_id: str) -> Optional[Project]:
        row = self._fetch_one(
            "SELECT * FROM projects WHERE id = ? AND workspace_id = ?",
            (project_id, workspace_id),
        )
        return _row_to_project(row) if row else None

    def find_by_identity(
        self, workspace_id: str, repo_origin_url: str, repo_subdir: str = ""
    ) -> Optional[Project]:
        row = self._fetch_one(
            "SELECT * FROM projects WHERE workspace_id = ? AND repo_origin_url = ? "
            "AND repo_subdir = ?",
            (workspace_id, repo_origin_url, (repo_subdir or "").strip("/")),
        )
        return _row_to_project(row) if row else None

    def list_by_workspace(self, workspace_id: str, active_only: bool = True) -> List[Project]:
        sql = "SELECT * FROM projects WHERE workspace_id = ?"
        if active_only:
            sql += " AND status = 'active'"
        sql += " ORDER BY created_at, id"
        return [_row_to_project(r) for r in self._fetch_all(sql, (workspace_id,))]

    def archive(self, workspace_id: str, project_id: str, now: Any = None) -> bool:
        return self._execute(
            "UPDATE projects SET status = 'archived', updated_at = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'active'",
            (self.now(now), project_id, workspace_id),
        ) > 0


def delete_project_cascade(
    conn: sqlite3.Connection, workspace_id: str, project_id: str
) -> Dict[str, int]:
    """Delete a project and every row scoped to it, atomically.

    Returns per-table deleted row counts. Raises TransactionError (after
    rolling back) when any delete fails; prior rows are left unchanged.
    """
    counts: Dict[str, int] = {}
    try:
        with transaction(conn):
            for table in PROJECT_CASCADE_TABLES:
                counts[table] = conn.execute(
                    f"DELETE FROM {table} WHERE workspace_id = ? AND project_id = ?",
                    (workspace_id, project_id),
                ).rowcount
            counts["projects"] = conn.execute(
                "DELETE FROM projects WHERE id = ? AND workspace_id = ?",
                (project_id, workspace_id),
            ).rowcount
    except sqlite3.Error as exc:
        raise TransactionError(
            f"Cascading delete of project {project_id} failed: {exc}",
            operation="delete_project_cascade",
        ) from exc
    logger.info("Deleted project %s (%d dependent rows)", project_id,
                sum(v for k, v in counts.items() if k != "projects"))
    return counts
