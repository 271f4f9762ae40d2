#!/usr/bin/env python3
# CUI // SP-CTI
"""TaggingMiss repository: attributed patterns the selector could not have matched."""

import sqlite3
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json
from falcon_engine.schemas.core import TaggingMiss
from falcon_engine.schemas.models import TaggingMissResolution
from falcon_engine.storage.base import BaseRepository


def _row_to_miss(row: sqlite3.Row) -> TaggingMiss:
    return TaggingMiss(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        finding_id=row["finding_id"],
        pattern_id=row["pattern_id"],
        actual_task_profile=from_json(row["actual_task_profile"], {}),
        required_match=from_json(row["required_match"], {}),
        missing_tags=from_json(row["missing_tags"], []),
        status=row["status"],
        resolution=row["resolution"],
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


class TaggingMissRepository(BaseRepository):
    table = "tagging_misses"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        pattern_id: str,
        actual_task_profile: Dict[str, Any],
        required_match: Dict[str, Any],
        missing_tags: List[str],
        now: Any = None,
    ) -> TaggingMiss:
        miss = TaggingMiss(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            finding_id=self._require(finding_id, "finding_id"),
            pattern_id=self._require(pattern_id, "pattern_id"),
            actual_task_profile=dict(actual_task_profile),
            required_match=dict(required_match),
            missing_tags=list(missing_tags),
            status="pending",
            created_at=self.now(now),
        )
        self._execute(
            "INSERT INTO tagging_misses (id, workspace_id, project_id, finding_id, pattern_id, "
            "actual_task_profile, required_match, missing_tags, status, resolution, created_at, "
            "resolved_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, ?, NULL)",
            (miss.id, workspace_id, project_id, finding_id, pattern_id,
             to_json(miss.actual_task_profile), to_json(miss.required_match),
             to_json(miss.missing_tags), miss.created_at),
        )
        return miss

    def find_by_id(self, workspace_id: str, miss_id: str) -> Optional[TaggingMiss]:
        row = self._fetch_one(
            "SELECT * FROM tagging_misses WHERE id = ? AND workspace_id = ?",
            (miss_id, workspace_id),
        )
        return _row_to_miss(row) if row else None

    def find_pending(self, workspace_id: str, project_id: str) -> List[TaggingMiss]:
        rows = self._fetch_all(
            "SELECT * FROM tagging_misses WHERE workspace_id = ? AND project_id = ? "
            "AND status = 'pending' ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_miss(r) for r in rows]

    def find_by_project(self, workspace_id: str, project_id: str) -> List[TaggingMiss]:
        rows = self._fetch_all(
            "SELECT * FROM tagging_misses WHERE workspace_id = ? AND project_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_miss(r) for r in rows]

    def find_by_pattern(self, workspace_id: str, pattern_id: str) -> List[TaggingMiss]:
        rows = self._fetch_all(
            "SELECT * FROM tagging_misses WHERE workspace_id = ? AND pattern_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, pattern_id),
        )
        return [_row_to_miss(r) for r in rows]

    def resolve(self, workspace_id: str, miss_id: str, resolution: str, now: Any = None) -> bool:
        resolution = self._check_enum(TaggingMissResolution, resolution, "resolution")
        changed = self._execute(
            "UPDATE tagging_misses SET status = 'resolved', resolution = ?, resolved_at = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'pending'",
            (resolution, self.now(now), miss_id, workspace_id),
        )
        return changed > 0
