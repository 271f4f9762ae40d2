# CUI // SP-CTI
"""Tests for falcon_engine.evolution.promotion_checker."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import sqlite3

import pytest

from falcon_engine.evolution.promotion_checker import (
    PromotionChecker,
    check_workspace_for_promotions,
    compute_promotion_key,
)
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.storage.principle_repo import DerivedPrincipleRepository
from tests.conftest import NOW, make_project

CONTENT = "Log the full session token on authentication failure"


def _spread(conn, workspace, projects, **overrides):
    repo = PatternDefinitionRepository(conn)
    created = []
    for project in projects:
        kwargs = dict(
            workspace_id=workspace.id, project_id=project.id, pattern_content=CONTENT,
            failure_mode="incorrect", finding_category="security", severity="HIGH",
            alternative="Log a token fingerprint instead", carrier_stage="context-pack",
            primary_carrier_quote_type="verbatim", touches=["logging", "auth"], now=NOW,
        )
        kwargs.update(overrides)
        created.append(repo.create(**kwargs))
    return created


@pytest.fixture
def three_projects(conn, workspace, project, other_project):
    return [project, other_project, make_project(conn, workspace, "web")]


class TestPromotionKey:
    def test_key_is_deterministic_and_scoped(self):
        key = compute_promotion_key("ws-1", "k" * 64, "context-pack", "security")
        assert key == compute_promotion_key("ws-1", "k" * 64, "context-pack", "security")
        assert key != compute_promotion_key("ws-2", "k" * 64, "context-pack", "security")
        assert len(key) == 64


class TestCheck:
    def test_two_projects_insufficient(self, conn, workspace, project, other_project):
        pattern = _spread(conn, workspace, [project, other_project])[0]
        check = PromotionChecker(conn).check(pattern, now=NOW)
        assert not check.qualifies
        assert check.reason == "Insufficient project coverage (2/3)"

    def test_three_projects_qualify(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects)[0]
        check = PromotionChecker(conn).check(pattern, now=NOW)
        assert check.qualifies
        assert check.project_count == 3
        assert check.average_confidence == pytest.approx(0.70)

    def test_low_severity_rejected(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects, severity="MEDIUM")[0]
        check = PromotionChecker(conn).check(pattern, now=NOW)
        assert check.reason.startswith("Severity too low")

    def test_non_security_rejected(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects, finding_category="correctness")[0]
        check = PromotionChecker(conn).check(pattern, now=NOW)
        assert check.reason.startswith("Non-security patterns not eligible")

    def test_weak_evidence_rejected(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects,
                          primary_carrier_quote_type="inferred")[0]
        check = PromotionChecker(conn).check(pattern, now=NOW)
        assert not check.qualifies
        assert check.reason.startswith("Insufficient confidence")

    def test_extra_projects_boost_confidence(self, conn, workspace, three_projects):
        more = three_projects + [make_project(conn, workspace, "mobile"),
                                 make_project(conn, workspace, "admin")]
        pattern = _spread(conn, workspace, more)[0]
        assert PromotionChecker(conn).check(pattern, now=NOW).average_confidence == \
            pytest.approx(0.80)


class TestPromote:
    def test_promote_creates_derived_principle(self, conn, workspace, three_projects):
        patterns = _spread(conn, workspace, three_projects)
        result = PromotionChecker(conn).promote(patterns[0], now=NOW)
        assert result.promoted

        principle = DerivedPrincipleRepository(conn).find_by_id(
            workspace.id, result.derived_principle_id)
        assert principle.origin == "derived"
        assert principle.principle == f"Avoid: {CONTENT}"
        assert principle.inject_into == "context-pack"
        assert sorted(principle.derived_from) == sorted(p.id for p in patterns)
        assert principle.touches == ["auth", "logging"]

    def test_promote_is_idempotent(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects)[0]
        checker = PromotionChecker(conn)
        first = checker.promote(pattern, now=NOW)
        second = checker.promote(pattern, now=NOW)
        assert not second.promoted
        assert second.reason == "Already promoted"
        assert second.derived_principle_id == first.derived_principle_id
        assert len(DerivedPrincipleRepository(conn).find_active(workspace.id, origin="derived")) == 1

    def test_not_qualifying_is_not_promoted(self, conn, workspace, project):
        pattern = _spread(conn, workspace, [project])[0]
        result = PromotionChecker(conn).promote(pattern, now=NOW)
        assert not result.promoted
        assert result.derived_principle_id is None

    def test_force_skips_qualification(self, conn, workspace, project):
        pattern = _spread(conn, workspace, [project])[0]
        assert PromotionChecker(conn).promote(pattern, force=True, now=NOW).promoted

    def test_one_active_principle_per_key(self, conn, workspace):
        repo = DerivedPrincipleRepository(conn)
        repo.create(workspace.id, "Avoid: x", "r", "derived", "both", 0.7,
                    promotion_key="p" * 64, now=NOW)
        with pytest.raises(sqlite3.IntegrityError):
            repo.create(workspace.id, "Avoid: x", "r", "derived", "both", 0.7,
                        promotion_key="p" * 64, now=NOW)


class TestRollback:
    def test_rollback_then_repromote(self, conn, workspace, three_projects):
        pattern = _spread(conn, workspace, three_projects)[0]
        checker = PromotionChecker(conn)
        first = checker.promote(pattern, now=NOW)
        key = compute_promotion_key(workspace.id, pattern.pattern_key, "context-pack", "security")

        archived = checker.rollback(workspace.id, key, archived_by="alice", now=NOW)
        assert archived.status == "archived"
        assert archived.archived_reason == "rollback"
        assert archived.archived_by == "alice"
        assert checker.rollback(workspace.id, key, now=NOW) is None

        again = checker.promote(pattern, now=NOW)
        assert again.promoted
        assert again.derived_principle_id != first.derived_principle_id


class TestWorkspaceScan:
    def test_check_and_promote_workspace(self, conn, workspace, three_projects):
        _spread(conn, workspace, three_projects)
        _spread(conn, workspace, three_projects[:1], pattern_content="Disable TLS checks")
        results = check_workspace_for_promotions(conn, workspace.id, now=NOW)
        assert len(results) == 1
        assert results[0]["project_count"] == 3
        assert results[0]["result"]["qualifies"]

        promoted = PromotionChecker(conn).promote_workspace(workspace.id, now=NOW)
        assert len(promoted) == 1
        assert PromotionChecker(conn).promote_workspace(workspace.id, now=NOW) == []
