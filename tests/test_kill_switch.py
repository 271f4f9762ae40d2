# CUI // SP-CTI
"""Tests for falcon_engine.resilience.kill_switch."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import datetime, timedelta, timezone

import pytest

from falcon_engine.resilience.kill_switch import (
    TAG_FULLY_PAUSED,
    TAG_INFERRED_PAUSED,
    KillSwitchService,
    creation_gate,
)

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _record(ks, workspace, project, quote_types, at=T0, **kwargs):
    for i, quote_type in enumerate(quote_types):
        ks.record_outcome(workspace.id, project.id, f"ISSUE-{i}", quote_type,
                          pattern_created=True, now=at, **kwargs)


class TestCreationGate:
    @pytest.mark.parametrize("state, quote_type, expected", [
        ("active", "verbatim", None),
        ("active", "inferred", None),
        ("inferred_paused", "verbatim", None),
        ("inferred_paused", "paraphrase", None),
        ("inferred_paused", "inferred", TAG_INFERRED_PAUSED),
        ("fully_paused", "verbatim", TAG_FULLY_PAUSED),
        ("fully_paused", "inferred", TAG_FULLY_PAUSED),
    ])
    def test_gate(self, state, quote_type, expected):
        assert creation_gate(state, quote_type) == expected


class TestStatus:
    def test_default_is_active(self, conn, workspace, project):
        status = KillSwitchService(conn).get_status(workspace.id, project.id, now=T0)
        assert status.state == "active"
        assert status.auto_resume_at is None

    def test_scopes_are_independent(self, conn, workspace, project, other_project):
        ks = KillSwitchService(conn)
        ks.pause(workspace.id, project.id, now=T0)
        assert ks.get_status(workspace.id, other_project.id).state == "active"


class TestAutomaticTransitions:
    def test_inferred_ratio_pauses_inferred(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        _record(ks, workspace, project, ["verbatim"] * 5 + ["inferred"] * 5)
        evaluation = ks.evaluate_health(workspace.id, project.id, now=T0)
        assert evaluation.changed
        assert evaluation.state == "inferred_paused"
        assert "inferredRatio" in evaluation.reason
        status = ks.get_status(workspace.id, project.id)
        assert status.auto_resume_at.startswith("2026-03-08")

    def test_low_precision_pauses_everything(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        _record(ks, workspace, project, ["paraphrase"] * 10)
        evaluation = ks.evaluate_health(workspace.id, project.id, now=T0)
        assert evaluation.state == "fully_paused"
        assert "attributionPrecisionScore" in evaluation.reason
        assert ks.get_status(workspace.id, project.id).auto_resume_at.startswith("2026-03-15")

    def test_low_improvement_pauses_everything(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        for i in range(10):
            ks.record_outcome(workspace.id, project.id, f"ISSUE-{i}", "verbatim", True,
                              injection_occurred=True, recurrence_observed=i > 0, now=T0)
        evaluation = ks.evaluate_health(workspace.id, project.id, now=T0)
        assert evaluation.metrics.observed_improvement_rate == pytest.approx(0.1)
        assert evaluation.state == "fully_paused"
        assert "observedImprovementRate" in evaluation.reason

    def test_too_few_outcomes_never_pause(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        _record(ks, workspace, project, ["inferred"] * 9)
        evaluation = ks.evaluate_health(workspace.id, project.id, now=T0)
        assert not evaluation.changed
        assert evaluation.state == "active"

    def test_outcomes_outside_window_ignored(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        _record(ks, workspace, project, ["inferred"] * 10, at=T0 - timedelta(days=45))
        metrics = ks.get_health_metrics(workspace.id, project.id, now=T0)
        assert metrics.total_attributions == 0
        assert metrics.attribution_precision_score == 1.0
        assert metrics.observed_improvement_rate == 1.0

    def test_recovery_waits_for_cooldown(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        ks.pause_inferred(workspace.id, project.id, now=T0)
        _record(ks, workspace, project, ["verbatim"] * 10, at=T0 + timedelta(days=1))

        early = ks.evaluate_health(workspace.id, project.id, now=T0 + timedelta(days=3))
        assert not early.changed
        assert early.state == "inferred_paused"

        later = ks.evaluate_health(workspace.id, project.id, now=T0 + timedelta(days=8))
        assert later.changed
        assert later.state == "active"
        assert ks.get_status(workspace.id, project.id).auto_resume_at is None

    def test_unhealthy_scope_stays_paused_after_cooldown(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        ks.pause(workspace.id, project.id, now=T0)
        _record(ks, workspace, project, ["paraphrase"] * 10, at=T0 + timedelta(days=14))
        evaluation = ks.evaluate_health(workspace.id, project.id, now=T0 + timedelta(days=15))
        assert not evaluation.changed
        assert evaluation.state == "fully_paused"


class TestManualControl:
    def test_pause_and_resume(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        paused = ks.pause(workspace.id, project.id, reason="Incident review", now=T0)
        assert paused.state == "fully_paused"
        assert paused.reason == "Incident review"
        assert paused.entered_at.startswith("2026-03-01")

        resumed = ks.resume(workspace.id, project.id, now=T0 + timedelta(days=1))
        assert resumed.state == "active"
        assert resumed.auto_resume_at is None

    def test_set_status_is_idempotent(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        first = ks.pause(workspace.id, project.id, reason="x", now=T0)
        again = ks.pause(workspace.id, project.id, reason="x", now=T0 + timedelta(days=2))
        assert again.updated_at == first.updated_at
        assert again.auto_resume_at == first.auto_resume_at

    def test_due_for_resume_and_evaluate_resume(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        ks.pause(workspace.id, project.id, now=T0)
        assert ks.find_due_for_resume_evaluation(now=T0 + timedelta(days=10)) == []
        due = ks.find_due_for_resume_evaluation(now=T0 + timedelta(days=15))
        assert [s.project_id for s in due] == [project.id]

        assert ks.evaluate_resume(workspace.id, project.id, now=T0 + timedelta(days=15))
        status = ks.get_status(workspace.id, project.id)
        assert status.state == "active"
        assert status.reason == "Auto-resume after health improvement"
        assert not ks.evaluate_resume(workspace.id, project.id, now=T0 + timedelta(days=16))


class TestOutcomeLog:
    def test_update_recurrence(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        ks.record_outcome(workspace.id, project.id, "CON-9", "verbatim", True,
                          injection_occurred=True, now=T0)
        assert ks.update_recurrence(workspace.id, "CON-9", True, now=T0)
        assert not ks.update_recurrence(workspace.id, "CON-404", True, now=T0)
        metrics = ks.get_health_metrics(workspace.id, project.id, now=T0)
        assert metrics.injections_with_recurrence == 1
        assert metrics.observed_improvement_rate == 0.0

    def test_update_recurrence_scoped_to_project(self, conn, workspace, project, other_project):
        ks = KillSwitchService(conn)
        for pj in (project, other_project):
            ks.record_outcome(workspace.id, pj.id, "CON-9", "verbatim", True,
                              injection_occurred=True, now=T0)
        assert ks.update_recurrence(workspace.id, "CON-9", False, project_id=project.id, now=T0)
        assert ks.get_health_metrics(workspace.id, project.id,
                                     now=T0).injections_without_recurrence == 1
        other = ks.get_health_metrics(workspace.id, other_project.id, now=T0)
        assert other.injections_without_recurrence == 0
        assert other.injections_with_recurrence == 0

    def test_metric_ratios(self, conn, workspace, project):
        ks = KillSwitchService(conn)
        _record(ks, workspace, project, ["verbatim", "verbatim", "paraphrase", "inferred"])
        metrics = ks.get_health_metrics(workspace.id, project.id, now=T0)
        assert metrics.total_attributions == 4
        assert metrics.attribution_precision_score == pytest.approx(0.5)
        assert metrics.inferred_ratio == pytest.approx(0.25)

    def test_thresholds_exposed(self, conn):
        thresholds = KillSwitchService(conn).get_health_thresholds()
        assert thresholds["min_outcomes"] == 10
        assert thresholds["cooldown_days"]["fully_paused"] == 14
