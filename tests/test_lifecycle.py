# CUI // SP-CTI
"""Tests for the evolution jobs: decay, salience, document changes and the scheduler."""
import sqlite3
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import datetime, timedelta, timezone

import pytest

from falcon_engine.evolution.decay_processor import (
    process_confidence_decay,
    process_workspace_decay,
)
from falcon_engine.evolution.doc_change_watcher import on_document_change
from falcon_engine.evolution.provisional_alerts import ProvisionalAlertProcessor
from falcon_engine.evolution.salience_detector import detect_salience_issues
from falcon_engine.evolution.scheduler import run_daily_maintenance, run_workspace_maintenance
from falcon_engine.resilience.errors import TransactionError, ValidationError
from falcon_engine.resilience.kill_switch import KillSwitchService
from falcon_engine.storage.guidance_repo import SalienceIssueRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.storage.workspace_repo import ProjectRepository
from tests.conftest import CONTEXT_PACK_FP, SPEC_FP

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _pattern(conn, workspace, project, content="Use string concatenation for SQL", **overrides):
    kwargs = dict(
        workspace_id=workspace.id, project_id=project.id, pattern_content=content,
        failure_mode="incorrect", finding_category="security", severity="HIGH",
        alternative="Use parameterized queries", carrier_stage="context-pack",
        primary_carrier_quote_type="verbatim", touches=["database"], now=T0,
    )
    kwargs.update(overrides)
    return PatternDefinitionRepository(conn).create(**kwargs)


def _occurrence(conn, workspace, project, pattern, finding_id="F-1", at=T0, fingerprint=None,
                **overrides):
    return PatternOccurrenceRepository(conn).create(
        workspace.id, project.id, finding_id, "CON-1", 1, "HIGH",
        {"carrierQuote": pattern.pattern_content}, dict(fingerprint or CONTEXT_PACK_FP),
        "c" * 64, pattern_id=pattern.id, now=at, **overrides,
    )


# ---------------------------------------------------------------------------
# Confidence decay
# ---------------------------------------------------------------------------
class TestConfidenceDecay:
    def test_stale_pattern_archived(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        _occurrence(conn, workspace, project, pattern)

        kept = process_confidence_decay(conn, workspace.id, project.id,
                                        now=T0 + timedelta(days=100))
        assert kept.archived_count == 0
        assert kept.evaluated == 1

        result = process_confidence_decay(conn, workspace.id, project.id,
                                          now=T0 + timedelta(days=200))
        assert result.archived_pattern_ids == [pattern.id]
        stored = PatternDefinitionRepository(conn).find_by_id(workspace.id, pattern.id)
        assert stored.status == "archived"
        assert stored.archived_reason == "confidence_decay"

    def test_permanent_pattern_skipped(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project, permanent=True)
        _occurrence(conn, workspace, project, pattern)
        result = process_confidence_decay(conn, workspace.id, project.id,
                                          now=T0 + timedelta(days=3650))
        assert result.archived_count == 0
        assert result.skipped_permanent == 1

    def test_pattern_without_occurrences_does_not_decay(self, conn, workspace, project):
        _pattern(conn, workspace, project)
        result = process_confidence_decay(conn, workspace.id, project.id,
                                          now=T0 + timedelta(days=3650))
        assert result.archived_count == 0

    def test_workspace_sweep_covers_each_project(self, conn, workspace, project, other_project):
        for pj in (project, other_project):
            _occurrence(conn, workspace, pj, _pattern(conn, workspace, pj))
        results = process_workspace_decay(conn, workspace.id, now=T0 + timedelta(days=365))
        assert set(results) == {project.id, other_project.id}
        assert all(r.archived_count == 1 for r in results.values())

    def test_failed_sweep_rolls_back_every_archive(self, conn, workspace, project, monkeypatch):
        patterns = [_pattern(conn, workspace, project, content=f"Stale guidance {i}")
                    for i in range(2)]
        for pattern in patterns:
            _occurrence(conn, workspace, project, pattern)

        real_archive = PatternDefinitionRepository.archive
        calls = []

        def flaky_archive(self, *args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise sqlite3.OperationalError("disk I/O error")
            return real_archive(self, *args, **kwargs)

        monkeypatch.setattr(PatternDefinitionRepository, "archive", flaky_archive)
        with pytest.raises(TransactionError) as exc_info:
            process_confidence_decay(conn, workspace.id, project.id,
                                     now=T0 + timedelta(days=365))
        assert exc_info.value.operation == "decay_sweep"
        assert len(calls) == 2
        assert not conn.in_transaction

        repo = PatternDefinitionRepository(conn)
        for pattern in patterns:
            stored = repo.find_by_id(workspace.id, pattern.id)
            assert stored.status == "active"
            assert stored.archived_reason is None


# ---------------------------------------------------------------------------
# Salience
# ---------------------------------------------------------------------------
class TestSalience:
    def _violations(self, conn, workspace, project, pattern, count, at=T0):
        for i in range(count):
            _occurrence(conn, workspace, project, pattern, finding_id=f"F-{i}",
                        at=at + timedelta(days=i), was_injected=True, was_adhered_to=False)

    def test_below_threshold(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        self._violations(conn, workspace, project, pattern, 2)
        result = detect_salience_issues(conn, workspace.id, project.id,
                                        now=T0 + timedelta(days=5))
        assert result.issues_found == 0

    def test_repeated_violations_open_one_issue(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        self._violations(conn, workspace, project, pattern, 3)
        first = detect_salience_issues(conn, workspace.id, project.id,
                                       now=T0 + timedelta(days=5))
        assert len(first.new_issue_ids) == 1

        _occurrence(conn, workspace, project, pattern, finding_id="F-9",
                    at=T0 + timedelta(days=6), was_injected=True, was_adhered_to=False)
        second = detect_salience_issues(conn, workspace.id, project.id,
                                        now=T0 + timedelta(days=7))
        assert second.new_issue_ids == []
        assert second.existing_issue_ids == first.new_issue_ids

        issue = SalienceIssueRepository(conn).find_by_id(workspace.id, first.new_issue_ids[0])
        assert issue.occurrence_count == 4
        assert issue.guidance_stage == "context-pack"

    def test_violations_outside_window_ignored(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        self._violations(conn, workspace, project, pattern, 3)
        result = detect_salience_issues(conn, workspace.id, project.id,
                                        now=T0 + timedelta(days=60))
        assert result.issues_found == 0

    def test_adhered_or_uninjected_do_not_count(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        _occurrence(conn, workspace, project, pattern, finding_id="A", was_injected=True,
                    was_adhered_to=True)
        _occurrence(conn, workspace, project, pattern, finding_id="B")
        _occurrence(conn, workspace, project, pattern, finding_id="C", was_injected=True,
                    was_adhered_to=False)
        assert detect_salience_issues(conn, workspace.id, project.id, now=T0).issues_found == 0

    def test_resolved_issue_is_left_alone(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        self._violations(conn, workspace, project, pattern, 3)
        issue_id = detect_salience_issues(conn, workspace.id, project.id,
                                          now=T0 + timedelta(days=5)).new_issue_ids[0]
        repo = SalienceIssueRepository(conn)
        assert repo.resolve(workspace.id, issue_id, "moved_earlier")
        again = detect_salience_issues(conn, workspace.id, project.id,
                                       now=T0 + timedelta(days=6))
        assert again.issues_found == 0
        assert repo.find_pending(workspace.id, project.id) == []

    def test_invalid_resolution(self, conn, workspace, project):
        issue = SalienceIssueRepository(conn).upsert(
            workspace.id, project.id, "spec", "Section 2", "Validate input")
        with pytest.raises(ValidationError):
            SalienceIssueRepository(conn).resolve(workspace.id, issue.id, "ignored")


# ---------------------------------------------------------------------------
# Document changes
# ---------------------------------------------------------------------------
class TestDocumentChange:
    def test_git_change_invalidates_matching_occurrences(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        git_occ = _occurrence(conn, workspace, project, pattern)
        _occurrence(conn, workspace, project, pattern, finding_id="F-2", fingerprint=SPEC_FP)

        result = on_document_change(conn, workspace.id, {
            "kind": "git", "repo": "acme/platform", "path": "docs/context-pack.md"})
        assert result.occurrence_ids == [git_occ.id]
        stored = PatternOccurrenceRepository(conn).find_by_id(workspace.id, git_occ.id)
        assert stored.status == "inactive"
        assert stored.inactive_reason == "superseded_doc"

        again = on_document_change(conn, workspace.id, {
            "kind": "git", "repo": "acme/platform", "path": "docs/context-pack.md"})
        assert again.invalidated_count == 0

    def test_linear_change(self, conn, workspace, project):
        pattern = _pattern(conn, workspace, project)
        _occurrence(conn, workspace, project, pattern, fingerprint=SPEC_FP)
        result = on_document_change(conn, workspace.id, {"kind": "linear", "docId": "DOC-42"})
        assert result.invalidated_count == 1

    @pytest.mark.parametrize("change", [
        {"kind": "git", "repo": "acme/platform"},
        {"kind": "carrier-pigeon", "id": "x"},
        {},
    ])
    def test_change_without_identity_is_ignored(self, conn, workspace, project, change):
        pattern = _pattern(conn, workspace, project)
        _occurrence(conn, workspace, project, pattern)
        assert on_document_change(conn, workspace.id, change).invalidated_count == 0


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
class TestScheduler:
    def test_daily_maintenance_runs_every_job(self, conn, workspace, project):
        _occurrence(conn, workspace, project, _pattern(conn, workspace, project))
        ProvisionalAlertProcessor(conn).open_alert(
            workspace.id, project.id, "F-7", "CON-7", "[HIGH] Missing security constraint: x",
            "both", now=T0)
        KillSwitchService(conn).pause(workspace.id, project.id, now=T0)

        summary = run_daily_maintenance(conn, workspace.id, project.id,
                                        now=T0 + timedelta(days=200))
        assert summary["decay"] == {"archived_patterns": 1, "skipped_permanent": 0}
        assert summary["alerts"] == {"expired": 1, "promoted": 0}
        assert summary["salience"] == {"new_issues": 0, "existing_issues": 0}
        assert summary["kill_switch"] == {"resumed": 1, "evaluated": 1}
        assert summary["duration_ms"] >= 0
        assert KillSwitchService(conn).get_status(workspace.id, project.id).state == "active"

    def test_workspace_maintenance_skips_archived_projects(self, conn, workspace, project,
                                                           other_project):
        ProjectRepository(conn).archive(workspace.id, other_project.id, now=T0)
        results = run_workspace_maintenance(conn, workspace.id, now=T0)
        assert list(results) == [project.id]
