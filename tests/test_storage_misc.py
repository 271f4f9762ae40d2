# CUI // SP-CTI
"""Tests for workspace/project scoping and the guidance-side repositories."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from falcon_engine.compat.db_utils import transaction
from falcon_engine.db.init_falcon_db import PROJECT_CASCADE_TABLES
from falcon_engine.resilience.errors import TransactionError, ValidationError
from falcon_engine.storage import Repositories
from falcon_engine.storage.guidance_repo import (
    DocUpdateRequestRepository,
    ExecutionNoncomplianceRepository,
)
from falcon_engine.storage.injection_log_repo import InjectionLogRepository
from falcon_engine.storage.workspace_repo import (
    ProjectRepository,
    WorkspaceRepository,
    delete_project_cascade,
    slugify,
)
from falcon_engine.workflow.pr_review_hook import PRReviewResult, on_pr_review_complete
from tests.conftest import NOW, StubAgent, make_evidence, make_finding

WEAK_EVIDENCE = make_evidence(carrierQuoteType="inferred", carrierQuote="No input handling guidance",
                              carrierInstructionKind="benign_but_missing_guardrails")


class TestWorkspaces:
    def test_slug_derived_from_name(self, workspace):
        assert workspace.slug == "acme-platform"
        assert slugify("  Hello, World!  ") == "hello-world"

    def test_duplicate_slug_rejected(self, conn, workspace):
        with pytest.raises(ValidationError) as exc_info:
            WorkspaceRepository(conn).create("Acme  Platform")
        assert exc_info.value.field == "slug"

    def test_invalid_slug_rejected(self, conn):
        with pytest.raises(ValidationError):
            WorkspaceRepository(conn).create("Anything", slug="-bad")

    def test_archive(self, conn, workspace):
        repo = WorkspaceRepository(conn)
        assert repo.archive(workspace.id, now=NOW)
        assert not repo.archive(workspace.id, now=NOW)
        assert repo.list_active() == []


class TestProjects:
    def test_identity_is_origin_and_subdir(self, conn, workspace, project):
        repo = ProjectRepository(conn)
        with pytest.raises(ValidationError):
            repo.create(workspace.id, "api-again", project.repo_origin_url)
        sub = repo.create(workspace.id, "api-docs", project.repo_origin_url,
                          repo_subdir="/docs/", now=NOW)
        assert sub.repo_subdir == "docs"
        assert repo.find_by_identity(workspace.id, project.repo_origin_url, "docs/").id == sub.id

    def test_unknown_workspace(self, conn):
        with pytest.raises(ValidationError) as exc_info:
            ProjectRepository(conn).create("nope", "api", "git@github.com:acme/api.git")
        assert exc_info.value.field == "workspace_id"

    def test_scoped_lookup(self, conn, workspace, project):
        other = WorkspaceRepository(conn).create("Other Org", now=NOW)
        assert ProjectRepository(conn).find_by_id(other.id, project.id) is None

    def test_list_excludes_archived_by_default(self, conn, workspace, project, other_project):
        repo = ProjectRepository(conn)
        repo.archive(workspace.id, other_project.id, now=NOW)
        assert [p.id for p in repo.list_by_workspace(workspace.id)] == [project.id]
        assert len(repo.list_by_workspace(workspace.id, active_only=False)) == 2


def _scoped_counts(conn, workspace_id, project_id):
    counts = {
        table: conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE workspace_id = ? AND project_id = ?",
            (workspace_id, project_id),
        ).fetchone()[0]
        for table in PROJECT_CASCADE_TABLES
    }
    counts["projects"] = conn.execute(
        "SELECT COUNT(*) FROM projects WHERE id = ?", (project_id,)).fetchone()[0]
    return counts


class TestCascadeDelete:
    @staticmethod
    def _populate(conn, workspace, project, context_pack, spec_doc):
        """A pattern, a tagging miss, a promoted alert and an injection log."""
        InjectionLogRepository(conn).create(
            workspace.id, project.id, "CON-1", "context-pack",
            {"touches": ["caching"], "technologies": [], "taskTypes": []}, [], [], [], now=NOW)
        review = PRReviewResult(
            workspace_id=workspace.id, project_id=project.id, pr_number=3, issue_id="CON-1",
            confirmed_findings=[make_finding(), make_finding(id="F-2"), make_finding(id="F-3")])
        agent = StubAgent(by_finding={"F-2": WEAK_EVIDENCE, "F-3": WEAK_EVIDENCE})
        output = on_pr_review_complete(conn, review, context_pack, spec_doc, agent, now=NOW)
        assert output.summary["promotions"] == 1
        assert output.tagging_misses == 1

    def test_deletes_every_scoped_row(self, conn, workspace, project, other_project,
                                      context_pack, spec_doc):
        for pj in (project, other_project):
            self._populate(conn, workspace, pj, context_pack, spec_doc)
        before = _scoped_counts(conn, workspace.id, project.id)
        assert before["pattern_definitions"] == 2
        assert before["pattern_occurrences"] == 3
        assert before["provisional_alerts"] == 1
        assert before["injection_logs"] == 1
        assert before["tagging_misses"] == 1
        assert before["attribution_outcomes"] == 3
        other_before = _scoped_counts(conn, workspace.id, other_project.id)

        counts = delete_project_cascade(conn, workspace.id, project.id)
        assert counts == before
        assert set(_scoped_counts(conn, workspace.id, project.id).values()) == {0}
        assert _scoped_counts(conn, workspace.id, other_project.id) == other_before

        repos = Repositories(conn)
        assert repos.projects.find_by_id(workspace.id, project.id) is None
        assert len(repos.patterns.find_active(workspace.id, other_project.id)) == 2

    def test_failed_delete_leaves_every_row(self, conn, workspace, project,
                                            context_pack, spec_doc):
        self._populate(conn, workspace, project, context_pack, spec_doc)
        before = _scoped_counts(conn, workspace.id, project.id)
        conn.execute("CREATE TRIGGER keep_patterns BEFORE DELETE ON pattern_definitions "
                     "BEGIN SELECT RAISE(ABORT, 'pattern rows are pinned'); END")

        with pytest.raises(TransactionError) as exc_info:
            delete_project_cascade(conn, workspace.id, project.id)
        assert exc_info.value.operation == "delete_project_cascade"
        assert "pinned" in str(exc_info.value)
        assert not conn.in_transaction
        assert _scoped_counts(conn, workspace.id, project.id) == before


class TestTransaction:
    def test_rollback_on_error(self, conn, workspace):
        repo = ProjectRepository(conn)
        with pytest.raises(RuntimeError):
            with transaction(conn):
                repo.create(workspace.id, "tmp", "git@github.com:acme/tmp.git", now=NOW)
                raise RuntimeError("boom")
        assert repo.list_by_workspace(workspace.id) == []

    def test_inner_savepoint_rolls_back_alone(self, conn, workspace):
        repo = ProjectRepository(conn)
        with transaction(conn):
            repo.create(workspace.id, "outer", "git@github.com:acme/outer.git", now=NOW)
            with pytest.raises(RuntimeError):
                with transaction(conn):
                    repo.create(workspace.id, "inner", "git@github.com:acme/inner.git", now=NOW)
                    raise RuntimeError("boom")
        assert [p.name for p in repo.list_by_workspace(workspace.id)] == ["outer"]


class TestGuidanceRepositories:
    def test_noncompliance_causes_validated(self, conn, workspace, project):
        repo = ExecutionNoncomplianceRepository(conn)
        with pytest.raises(ValidationError):
            repo.create(workspace.id, project.id, "F-1", "CON-1", 2, "spec", "Lines 1-5",
                        "excerpt", ["ambiguity"], now=NOW)
        record = repo.create(workspace.id, project.id, "F-1", "CON-1", 2, "spec",
                             "Lines 1-5", "excerpt", ["salience", "formatting"], now=NOW)
        assert [r.id for r in repo.find_by_project(workspace.id, project.id)] == [record.id]

    def test_doc_update_lifecycle(self, conn, workspace, project):
        repo = DocUpdateRequestRepository(conn)
        with pytest.raises(ValidationError):
            repo.create(workspace.id, project.id, "F-1", "CON-1", "decisions", "decisions",
                        "ARCHITECTURE.md", "rewrite_everything", "x", now=NOW)
        done = repo.create(workspace.id, project.id, "F-1", "CON-1", "decisions", "decisions",
                           "ARCHITECTURE.md", "add_decision", "Decide cache TTL",
                           decision_class="caching", now=NOW)
        dropped = repo.create(workspace.id, project.id, "F-2", "CON-1", "decisions",
                              "decisions", "DECISIONS.md", "add_decision", "Decide retries",
                              now=NOW)
        assert repo.complete(workspace.id, done.id, now=NOW)
        assert not repo.complete(workspace.id, done.id, now=NOW)
        assert repo.reject(workspace.id, dropped.id, "Already documented")
        assert repo.find_pending(workspace.id, project.id) == []

        stored = repo.find_by_id(workspace.id, dropped.id)
        assert stored.status == "rejected"
        assert stored.rejection_reason == "Already documented"
        assert repo.find_by_id(workspace.id, done.id).completed_at is not None

    def test_injection_log_latest_wins(self, conn, workspace, project):
        repo = InjectionLogRepository(conn)
        repo.create(workspace.id, project.id, "CON-1", "spec", {"touches": []}, [], [], [],
                    now="2026-03-01T00:00:00+00:00")
        latest = repo.create(workspace.id, project.id, "CON-1", "context-pack",
                             {"touches": ["api"]}, ["p1"], ["b1"], [], now=NOW)
        found = repo.find_latest_for_issue(workspace.id, project.id, "CON-1")
        assert found.id == latest.id
        assert found.task_profile == {"touches": ["api"]}
        assert found.injected_principles == ["b1"]
        assert repo.find_latest_for_issue(workspace.id, project.id, "CON-2") is None

    def test_injection_log_target_validated(self, conn, workspace, project):
        with pytest.raises(ValidationError):
            InjectionLogRepository(conn).create(workspace.id, project.id, "CON-1", "both",
                                                {}, [], [], [], now=NOW)
