#!/usr/bin/env python3
# CUI // SP-CTI
"""Repositories for guidance-quality records.

ExecutionNoncompliance  - the agent ignored guidance that was present.
DocUpdateRequest        - a document needs a decision or clarification added.
SalienceIssue           - the same guidance keeps being ignored; deduplicated
                          per scope by a location hash.
"""

import hashlib
import sqlite3
from typing import Any, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.schemas.core import DocUpdateRequest, ExecutionNoncompliance, SalienceIssue
from falcon_engine.schemas.models import CarrierStage
from falcon_engine.storage.base import BaseRepository

NONCOMPLIANCE_CAUSES = ("salience", "formatting", "override")
UPDATE_TYPES = ("add_decision", "clarify_guidance", "fix_error", "add_constraint")
SALIENCE_RESOLUTIONS = ("reformatted", "moved_earlier", "false_positive")


def compute_location_hash(stage: str, location: str, excerpt: str) -> str:
    """sha256 of stage|location|excerpt; identifies one piece of guidance."""
    return hashlib.sha256(f"{stage}|{location}|{excerpt}".encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# ExecutionNoncompliance
# ---------------------------------------------------------------------------

def _row_to_noncompliance(row: sqlite3.Row) -> ExecutionNoncompliance:
    return ExecutionNoncompliance(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        finding_id=row["finding_id"],
        issue_id=row["issue_id"],
        pr_number=row["pr_number"],
        violated_guidance_stage=row["violated_guidance_stage"],
        violated_guidance_location=row["violated_guidance_location"],
        violated_guidance_excerpt=row["violated_guidance_excerpt"],
        possible_causes=from_json(row["possible_causes"], []),
        created_at=row["created_at"],
    )


class ExecutionNoncomplianceRepository(BaseRepository):
    table = "execution_noncompliance"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        issue_id: str,
        pr_number: int,
        violated_guidance_stage: str,
        violated_guidance_location: str,
        violated_guidance_excerpt: str,
        possible_causes: List[str],
        now: Any = None,
    ) -> ExecutionNoncompliance:
        for cause in possible_causes:
            if cause not in NONCOMPLIANCE_CAUSES:
                raise ValidationError(f"Unknown noncompliance cause '{cause}'",
                                      field="possible_causes")
        record = ExecutionNoncompliance(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            finding_id=self._require(finding_id, "finding_id"),
            issue_id=self._require(issue_id, "issue_id"),
            pr_number=int(pr_number),
            violated_guidance_stage=self._check_enum(
                CarrierStage, violated_guidance_stage, "violated_guidance_stage"),
            violated_guidance_location=violated_guidance_location,
            violated_guidance_excerpt=violated_guidance_excerpt,
            possible_causes=list(possible_causes),
            created_at=self.now(now),
        )
        self._execute(
            "INSERT INTO execution_noncompliance (id, workspace_id, project_id, finding_id, "
            "issue_id, pr_number, violated_guidance_stage, violated_guidance_location, "
            "violated_guidance_excerpt, possible_causes, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (record.id, workspace_id, project_id, finding_id, issue_id, record.pr_number,
             record.violated_guidance_stage, violated_guidance_location,
             violated_guidance_excerpt, to_json(record.possible_causes), record.created_at),
        )
        return record

    def find_by_id(self, workspace_id: str, record_id: str) -> Optional[ExecutionNoncompliance]:
        row = self._fetch_one(
            "SELECT * FROM execution_noncompliance WHERE id = ? AND workspace_id = ?",
            (record_id, workspace_id),
        )
        return _row_to_noncompliance(row) if row else None

    def find_by_project(self, workspace_id: str, project_id: str) -> List[ExecutionNoncompliance]:
        rows = self._fetch_all(
            "SELECT * FROM execution_noncompliance WHERE workspace_id = ? AND project_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_noncompliance(r) for r in rows]


# ---------------------------------------------------------------------------
# DocUpdateRequest
# ---------------------------------------------------------------------------

def _row_to_doc_update(row: sqlite3.Row) -> DocUpdateRequest:
    return DocUpdateRequest(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        finding_id=row["finding_id"],
        issue_id=row["issue_id"],
        finding_category=row["finding_category"],
        scout_type=row["scout_type"],
        target_doc=row["target_doc"],
        update_type=row["update_type"],
        decision_class=row["decision_class"],
        description=row["description"],
        suggested_content=row["suggested_content"],
        status=row["status"],
        completed_at=row["completed_at"],
        rejection_reason=row["rejection_reason"],
        created_at=row["created_at"],
    )


class DocUpdateRequestRepository(BaseRepository):
    table = "doc_update_requests"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        issue_id: str,
        finding_category: str,
        scout_type: str,
        target_doc: str,
        update_type: str,
        description: str,
        decision_class: Optional[str] = None,
        suggested_content: Optional[str] = None,
        now: Any = None,
    ) -> DocUpdateRequest:
        if update_type not in UPDATE_TYPES:
            raise ValidationError(f"Invalid update_type '{update_type}'", field="update_type")
        request = DocUpdateRequest(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            finding_id=self._require(finding_id, "finding_id"),
            issue_id=self._require(issue_id, "issue_id"),
            finding_category=finding_category,
            scout_type=scout_type,
            target_doc=self._require(target_doc, "target_doc"),
            update_type=update_type,
            decision_class=decision_class,
            description=description or "",
            suggested_content=suggested_content,
            status="pending",
            created_at=self.now(now),
        )
        self._execute(
            "INSERT INTO doc_update_requests (id, workspace_id, project_id, finding_id, issue_id, "
            "finding_category, scout_type, target_doc, update_type, decision_class, description, "
            "suggested_content, status, completed_at, rejection_reason, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, NULL, ?)",
            (request.id, workspace_id, project_id, finding_id, issue_id, finding_category,
             scout_type, target_doc, update_type, decision_class, request.description,
             suggested_content, request.created_at),
        )
        return request

    def find_by_id(self, workspace_id: str, request_id: str) -> Optional[DocUpdateRequest]:
        row = self._fetch_one(
            "SELECT * FROM doc_update_requests WHERE id = ? AND workspace_id = ?",
            (request_id, workspace_id),
        )
        return _row_to_doc_update(row) if row else None

    def find_pending(self, workspace_id: str, project_id: str) -> List[DocUpdateRequest]:
        rows = self._fetch_all(
            "SELECT * FROM doc_update_requests WHERE workspace_id = ? AND project_id = ? "
            "AND status = 'pending' ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_doc_update(r) for r in rows]

    def complete(self, workspace_id: str, request_id: str, now: Any = None) -> bool:
        return self._execute(
            "UPDATE doc_update_requests SET status = 'completed', completed_at = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'pending'",
            (self.now(now), request_id, workspace_id),
        ) > 0

    def reject(self, workspace_id: str, request_id: str, reason: str) -> bool:
        return self._execute(
            "UPDATE doc_update_requests SET status = 'rejected', rejection_reason = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'pending'",
            (reason, request_id, workspace_id),
        ) > 0


# ---------------------------------------------------------------------------
# SalienceIssue
# ---------------------------------------------------------------------------

def _row_to_salience(row: sqlite3.Row) -> SalienceIssue:
    return SalienceIssue(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        guidance_location_hash=row["guidance_location_hash"],
        guidance_stage=row["guidance_stage"],
        guidance_location=row["guidance_location"],
        guidance_excerpt=row["guidance_excerpt"],
        occurrence_count=row["occurrence_count"],
        window_days=row["window_days"],
        noncompliance_ids=from_json(row["noncompliance_ids"], []),
        status=row["status"],
        resolution=row["resolution"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        resolved_at=row["resolved_at"],
    )


class SalienceIssueRepository(BaseRepository):
    table = "salience_issues"

    def find_by_id(self, workspace_id: str, issue_id: str) -> Optional[SalienceIssue]:
        row = self._fetch_one(
            "SELECT * FROM salience_issues WHERE id = ? AND workspace_id = ?",
            (issue_id, workspace_id),
        )
        return _row_to_salience(row) if row else None

    def find_by_location_hash(
        self, workspace_id: str, project_id: str, location_hash: str
    ) -> Optional[SalienceIssue]:
        row = self._fetch_one(
            "SELECT * FROM salience_issues WHERE workspace_id = ? AND project_id = ? "
            "AND guidance_location_hash = ?",
            (workspace_id, project_id, location_hash),
        )
        return _row_to_salience(row) if row else None

    def find_pending(self, workspace_id: str, project_id: str) -> List[SalienceIssue]:
        rows = self._fetch_all(
            "SELECT * FROM salience_issues WHERE workspace_id = ? AND project_id = ? "
            "AND status = 'pending' ORDER BY occurrence_count DESC, created_at",
            (workspace_id, project_id),
        )
        return [_row_to_salience(r) for r in rows]

    def upsert(
        self,
        workspace_id: str,
        project_id: str,
        guidance_stage: str,
        guidance_location: str,
        guidance_excerpt: str,
        reference_id: Optional[str] = None,
        occurrence_count: Optional[int] = None,
        window_days: int = 30,
        now: Any = None,
    ) -> SalienceIssue:
        """Create the issue for this guidance, or bump the existing one.

        Without an explicit occurrence_count the stored count is incremented.
        reference_id (a noncompliance or occurrence id) is appended once.
        """
        stage = self._check_enum(CarrierStage, guidance_stage, "guidance_stage")
        location_hash = compute_location_hash(stage, guidance_location, guidance_excerpt)
        ts = self.now(now)
        existing = self.find_by_location_hash(workspace_id, project_id, location_hash)
        if existing:
            refs = list(existing.noncompliance_ids)
            if reference_id and reference_id not in refs:
                refs.append(reference_id)
            count = occurrence_count if occurrence_count is not None else existing.occurrence_count + 1
            self._execute(
                "UPDATE salience_issues SET occurrence_count = ?, noncompliance_ids = ?, "
                "updated_at = ? WHERE id = ?",
                (count, to_json(refs), ts, existing.id),
            )
            return self.find_by_id(workspace_id, existing.id)

        issue = SalienceIssue(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            guidance_location_hash=location_hash,
            guidance_stage=stage,
            guidance_location=guidance_location,
            guidance_excerpt=guidance_excerpt,
            occurrence_count=occurrence_count if occurrence_count is not None else 1,
            window_days=window_days,
            noncompliance_ids=[reference_id] if reference_id else [],
            status="pending",
            created_at=ts,
            updated_at=ts,
        )
        self._execute(
            "INSERT INTO salience_issues (id, workspace_id, project_id, guidance_location_hash, "
            "guidance_stage, guidance_location, guidance_excerpt, occurrence_count, window_days, "
            "noncompliance_ids, status, resolution, created_at, updated_at, resolved_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, ?, ?, NULL)",
            (issue.id, workspace_id, project_id, location_hash, stage, guidance_location,
             guidance_excerpt, issue.occurrence_count, window_days,
             to_json(issue.noncompliance_ids), ts, ts),
        )
        return issue

    def update_count(self, workspace_id: str, issue_id: str, occurrence_count: int,
                     now: Any = None) -> bool:
        return self._execute(
            "UPDATE salience_issues SET occurrence_count = ?, updated_at = ? "
            "WHERE id = ? AND workspace_id = ?",
            (int(occurrence_count), self.now(now), issue_id, workspace_id),
        ) > 0

    def resolve(self, workspace_id: str, issue_id: str, resolution: str, now: Any = None) -> bool:
        if resolution not in SALIENCE_RESOLUTIONS:
            raise ValidationError(f"Invalid salience resolution '{resolution}'", field="resolution")
        ts = self.now(now)
        return self._execute(
            "UPDATE salience_issues SET status = 'resolved', resolution = ?, resolved_at = ?, "
            "updated_at = ? WHERE id = ? AND workspace_id = ? AND status = 'pending'",
            (resolution, ts, ts, issue_id, workspace_id),
        ) > 0
