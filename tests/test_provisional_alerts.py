# CUI // SP-CTI
"""Tests for falcon_engine.evolution.provisional_alerts."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import datetime, timedelta, timezone

from falcon_engine.evolution.provisional_alerts import ProvisionalAlertProcessor
from falcon_engine.storage.alert_repo import ProvisionalAlertRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from tests.conftest import CONTEXT_PACK_FP

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
MESSAGE = "[HIGH] Missing security constraint: Tokens logged in plaintext"


def _open(proc, workspace, project, now=T0, finding_id="F-1", message=MESSAGE):
    return proc.open_alert(workspace.id, project.id, finding_id, "CON-1", message,
                           "context-pack", severity="HIGH", touches=["logging", "auth"], now=now)


def _link(conn, workspace, project, alert, finding_id, now=T0):
    return PatternOccurrenceRepository(conn).create(
        workspace.id, project.id, finding_id, "CON-1", 3, "HIGH",
        {"carrierQuote": "tokens"}, dict(CONTEXT_PACK_FP), "c" * 64,
        provisional_alert_id=alert.id, now=now,
    )


class TestOpenAlert:
    def test_alert_expires_after_ttl(self, conn, workspace, project):
        alert = _open(ProvisionalAlertProcessor(conn), workspace, project)
        assert alert.status == "active"
        assert alert.expires_at.startswith("2026-03-15")

    def test_same_message_reuses_active_alert(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        first = _open(proc, workspace, project)
        second = _open(proc, workspace, project, now=T0 + timedelta(days=2), finding_id="F-2")
        assert second.id == first.id
        assert len(ProvisionalAlertRepository(conn).find_by_project(workspace.id, project.id)) == 1

    def test_expired_alert_is_not_reused(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        first = _open(proc, workspace, project)
        later = _open(proc, workspace, project, now=T0 + timedelta(days=20))
        assert later.id != first.id

    def test_find_active_filters_target_and_touches(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        repo = ProvisionalAlertRepository(conn)
        assert [a.id for a in repo.find_active(workspace.id, project.id, "context-pack",
                                                ["auth"], now=T0)] == [alert.id]
        assert repo.find_active(workspace.id, project.id, "spec", now=T0) == []
        assert repo.find_active(workspace.id, project.id, touches=["caching"], now=T0) == []


class TestPromotion:
    def test_below_threshold_stays_active(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")
        result = proc.check_and_promote(workspace.id, alert.id, now=T0)
        assert not result.promoted
        assert result.reason == "Insufficient occurrences: 1/2"

    def test_second_occurrence_promotes(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")
        _link(conn, workspace, project, alert, "F-2", now=T0 + timedelta(days=3))

        result = proc.check_and_promote(workspace.id, alert.id, now=T0 + timedelta(days=3))
        assert result.promoted
        assert result.relinked == 2

        pattern = PatternDefinitionRepository(conn).find_by_id(workspace.id, result.pattern_id)
        assert pattern.pattern_content == MESSAGE
        assert pattern.failure_mode == "incomplete"
        assert pattern.finding_category == "security"
        assert pattern.primary_carrier_quote_type == "inferred"
        assert pattern.alternative == "See original alert message for guidance"
        assert pattern.touches == ["auth", "logging"]

        occurrences = PatternOccurrenceRepository(conn).find_by_pattern_id(
            workspace.id, pattern.id)
        assert len(occurrences) == 2
        assert all(o.provisional_alert_id == alert.id for o in occurrences)

        stored = ProvisionalAlertRepository(conn).find_by_id(workspace.id, alert.id)
        assert stored.status == "promoted"
        assert stored.promoted_to_pattern_id == pattern.id

    def test_promotion_is_not_repeated(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")
        _link(conn, workspace, project, alert, "F-2")
        first = proc.check_and_promote(workspace.id, alert.id, now=T0)
        again = proc.check_and_promote(workspace.id, alert.id, now=T0)
        assert not again.promoted
        assert again.reason == "Already promoted"
        assert again.pattern_id == first.pattern_id

    def test_inactive_occurrences_do_not_count(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")
        stale = _link(conn, workspace, project, alert, "F-2")
        PatternOccurrenceRepository(conn).mark_inactive(workspace.id, stale.id, "false_positive")
        assert not proc.check_and_promote(workspace.id, alert.id, now=T0).promoted

    def test_unknown_alert(self, conn, workspace):
        result = ProvisionalAlertProcessor(conn).check_and_promote(workspace.id, "missing")
        assert result.reason == "Alert not found"


class TestExpiry:
    def test_expired_below_threshold(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")

        assert proc.process_expiry(workspace.id, project.id, now=T0 + timedelta(days=13)).expired == 0
        result = proc.process_expiry(workspace.id, project.id, now=T0 + timedelta(days=15))
        assert result.expired_alert_ids == [alert.id]
        assert result.promoted == 0
        assert ProvisionalAlertRepository(conn).find_by_id(workspace.id, alert.id).status == "expired"
        assert PatternDefinitionRepository(conn).find_active(workspace.id, project.id) == []

    def test_expiring_alert_at_threshold_promotes(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        _link(conn, workspace, project, alert, "F-1")
        _link(conn, workspace, project, alert, "F-2")
        result = proc.process_expiry(workspace.id, project.id, now=T0 + timedelta(days=15))
        assert result.promoted_alert_ids == [alert.id]
        assert len(PatternDefinitionRepository(conn).find_active(workspace.id, project.id)) == 1

    def test_expired_alert_cannot_promote(self, conn, workspace, project):
        proc = ProvisionalAlertProcessor(conn)
        alert = _open(proc, workspace, project)
        proc.process_expiry(workspace.id, project.id, now=T0 + timedelta(days=15))
        _link(conn, workspace, project, alert, "F-1")
        _link(conn, workspace, project, alert, "F-2")
        result = proc.check_and_promote(workspace.id, alert.id)
        assert not result.promoted
        assert result.reason == "Alert is expired"
