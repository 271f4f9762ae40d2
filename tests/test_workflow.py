# CUI // SP-CTI
"""Tests for the post-review workflow: hook, adherence and tagging misses."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from falcon_engine.injection.selector import select_warnings_for_injection
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.resilience.kill_switch import KillSwitchService
from falcon_engine.schemas.models import parse_finding
from falcon_engine.storage.injection_log_repo import InjectionLogRepository
from falcon_engine.storage.kill_switch_repo import KillSwitchRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.workflow.adherence_updater import has_related_finding, pattern_keywords
from falcon_engine.workflow.pr_review_hook import PRReviewResult, on_pr_review_complete
from falcon_engine.workflow.tagging_miss_checker import (
    analyze_tagging_misses,
    check_would_match,
    list_tagging_misses,
    resolve_tagging_miss,
)
from tests.conftest import NOW, StubAgent, make_evidence, make_finding

CACHE_PROFILE = {"touches": ["caching"], "technologies": ["redis"], "taskTypes": ["migration"]}


def _review(workspace, project, findings, issue_id="CON-1", pr=7):
    return PRReviewResult(workspace_id=workspace.id, project_id=project.id, pr_number=pr,
                          issue_id=issue_id, confirmed_findings=findings)


def _log(conn, workspace, project, issue_id, patterns=(), profile=None):
    return InjectionLogRepository(conn).create(
        workspace.id, project.id, issue_id, "context-pack", profile or CACHE_PROFILE,
        list(patterns), [], [], now=NOW)


class TestPRReviewHook:
    def test_findings_attributed_in_isolation(self, conn, workspace, project,
                                              context_pack, spec_doc):
        review = _review(workspace, project, [
            make_finding(),
            make_finding(id="F-odd", scoutType="astrology"),
        ])
        output = on_pr_review_complete(conn, review, context_pack, spec_doc, StubAgent(), now=NOW)
        assert [r.type for r in output.attribution_results] == ["pattern"]
        assert output.errors[0]["finding_id"] == "F-odd"
        assert output.summary["patterns"] == 1
        assert output.summary["failed"] == 1
        assert output.adherence_updated == 0
        assert output.tagging_misses == 0
        assert output.to_dict()["summary"]["provisional_alerts"] == 0

    def test_unmatched_pattern_recorded_as_tagging_miss(self, conn, workspace, project,
                                                        context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        output = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                       context_pack, spec_doc, StubAgent(), now=NOW)
        assert output.tagging_misses == 1

        miss = list_tagging_misses(conn, workspace.id, project.id)[0]
        assert miss.pattern_id == output.attribution_results[0].pattern.id
        assert miss.finding_id == "F-1"
        assert miss.missing_tags == ["touch:database", "type:api"]
        assert miss.actual_task_profile == CACHE_PROFILE
        assert miss.required_match["touches"] == ["database"]

    def test_injected_pattern_is_not_a_miss(self, conn, workspace, project,
                                            context_pack, spec_doc):
        first = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                      context_pack, spec_doc, StubAgent(), now=NOW)
        pattern = first.attribution_results[0].pattern
        _log(conn, workspace, project, "CON-2", patterns=[pattern.id])

        second = on_pr_review_complete(
            conn, _review(workspace, project, [make_finding(id="F-2")], issue_id="CON-2"),
            context_pack, spec_doc, StubAgent(), now=NOW)
        assert second.tagging_misses == 0
        assert second.adherence_updated == 1

        occurrence = PatternOccurrenceRepository(conn).find_by_pattern_and_issue(
            workspace.id, pattern.id, "CON-2")[0]
        assert occurrence.was_injected
        assert occurrence.was_adhered_to


class TestAdherence:
    def test_pattern_keywords_skip_short_words(self):
        assert pattern_keywords("Use string concatenation for SQL!") == ["string", "concatenation"]

    def test_related_finding_means_violation(self, conn, workspace, project,
                                             context_pack, spec_doc):
        first = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                      context_pack, spec_doc, StubAgent(), now=NOW)
        pattern = first.attribution_results[0].pattern
        _log(conn, workspace, project, "CON-2", patterns=[pattern.id])

        violating = make_finding(id="F-2", description="String concatenation builds the query")
        output = on_pr_review_complete(
            conn, _review(workspace, project, [violating], issue_id="CON-2"),
            context_pack, spec_doc, StubAgent(), now=NOW)
        assert output.adherence_updated == 1
        occurrence = PatternOccurrenceRepository(conn).find_by_pattern_and_issue(
            workspace.id, pattern.id, "CON-2")[0]
        assert occurrence.was_injected
        assert occurrence.was_adhered_to is False

    def test_other_category_is_not_related(self, conn, workspace, project,
                                           context_pack, spec_doc):
        output = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                       context_pack, spec_doc, StubAgent(), now=NOW)
        pattern = output.attribution_results[0].pattern
        docs_finding = parse_finding(make_finding(scoutType="docs",
                                                  description="string concatenation"))
        assert not has_related_finding(pattern, [docs_finding])


class TestTaggingMisses:
    def _pattern(self, conn, workspace, project, context_pack, spec_doc):
        output = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                       context_pack, spec_doc, StubAgent(), now=NOW)
        return output.attribution_results[0].pattern

    def test_check_would_match(self, conn, workspace, project, context_pack, spec_doc):
        pattern = self._pattern(conn, workspace, project, context_pack, spec_doc)
        assert check_would_match(pattern, {"touches": ["database"]}).matches
        assert check_would_match(pattern, {"taskTypes": ["api"]}).matches
        result = check_would_match(pattern, {})
        assert not result.matches
        assert result.missing_tags == ["touch:database", "type:api"]

    def test_analysis_counts_repeat_offenders(self, conn, workspace, project,
                                              context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        for finding_id in ("F-1", "F-2"):
            on_pr_review_complete(conn, _review(workspace, project,
                                                [make_finding(id=finding_id)]),
                                  context_pack, spec_doc, StubAgent(), now=NOW)
        analysis = analyze_tagging_misses(conn, workspace.id, project.id)
        assert analysis.total == 2
        assert analysis.pending == 2
        assert analysis.tag_counts == {"touch:database": 2, "type:api": 2}
        assert len(analysis.frequent_patterns) == 1
        assert analysis.frequent_patterns[0]["miss_count"] == 2

    def test_resolve(self, conn, workspace, project, context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                              context_pack, spec_doc, StubAgent(), now=NOW)
        miss = list_tagging_misses(conn, workspace.id, project.id)[0]

        with pytest.raises(ValidationError):
            resolve_tagging_miss(conn, workspace.id, miss.id, "shrugged")

        resolved = resolve_tagging_miss(conn, workspace.id, miss.id, "improved_extraction", now=NOW)
        assert resolved.success
        assert not resolved.pattern_updated
        assert resolved.tagging_miss.status == "resolved"
        assert resolved.tagging_miss.resolution == "improved_extraction"

        again = resolve_tagging_miss(conn, workspace.id, miss.id, "false_positive")
        assert not again.success
        assert again.tagging_miss is None
        assert list_tagging_misses(conn, workspace.id, project.id) == []
        assert len(list_tagging_misses(conn, workspace.id, project.id, pending_only=False)) == 1

    def test_suggestions_broaden_missed_dimensions(self, conn, workspace, project,
                                                   context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        pattern = self._pattern(conn, workspace, project, context_pack, spec_doc)
        miss = list_tagging_misses(conn, workspace.id, project.id)[0]

        entries = analyze_tagging_misses(conn, workspace.id, project.id).suggestions[pattern.id]
        assert [e["tagging_miss_id"] for e in entries] == [miss.id]
        suggestions = entries[0]["suggestions"]
        assert [s["action"] for s in suggestions] == [
            "broaden_pattern", "broaden_pattern", "improve_extraction", "false_positive"]
        assert suggestions[0]["changes"] == {"touches": ["database", "caching"]}
        assert suggestions[1]["changes"] == {"task_types": ["api", "migration"]}
        assert suggestions[2]["changes"] is None

    def test_broadening_applies_tag_changes(self, conn, workspace, project,
                                            context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        self._pattern(conn, workspace, project, context_pack, spec_doc)
        miss = list_tagging_misses(conn, workspace.id, project.id)[0]

        outcome = resolve_tagging_miss(conn, workspace.id, miss.id, "broadened_pattern",
                                       pattern_changes={"touches": ["database", "caching"]},
                                       now=NOW)
        assert outcome.success
        assert outcome.pattern_updated
        pattern = PatternDefinitionRepository(conn).find_by_id(workspace.id, miss.pattern_id)
        assert pattern.touches == ["caching", "database"]
        assert check_would_match(pattern, CACHE_PROFILE).matches
        assert analyze_tagging_misses(conn, workspace.id, project.id).suggestions == {}

    def test_broadening_rejects_non_tag_fields(self, conn, workspace, project,
                                               context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        self._pattern(conn, workspace, project, context_pack, spec_doc)
        miss = list_tagging_misses(conn, workspace.id, project.id)[0]

        with pytest.raises(ValidationError) as exc_info:
            resolve_tagging_miss(conn, workspace.id, miss.id, "broadened_pattern",
                                 pattern_changes={"severity": "LOW"})
        assert exc_info.value.field == "pattern_changes"
        assert [m.id for m in list_tagging_misses(conn, workspace.id, project.id)] == [miss.id]


class TestRecurrenceFeedback:
    ADHERED_FINDING = dict(id="F-2", title="Stale session cache",
                           description="Session tokens never expire from the cache")

    def _first_pattern(self, conn, workspace, project, context_pack, spec_doc):
        output = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                       context_pack, spec_doc, StubAgent(), now=NOW)
        return output.attribution_results[0].pattern

    @staticmethod
    def _outcomes(conn, workspace, project, issue_id):
        return [o for o in KillSwitchRepository(conn).find_outcomes(workspace.id, project.id)
                if o.issue_key == issue_id]

    def test_injected_pattern_recurring(self, conn, workspace, project, context_pack, spec_doc):
        pattern = self._first_pattern(conn, workspace, project, context_pack, spec_doc)
        selection = select_warnings_for_injection(
            conn, workspace.id, project.id, "context-pack",
            {"touches": ["database"], "technologies": [], "taskTypes": ["api"],
             "confidence": 0.9},
            "CON-2", now=NOW)
        assert [p.id for p in selection.patterns] == [pattern.id]

        output = on_pr_review_complete(
            conn, _review(workspace, project, [make_finding(id="F-2")], issue_id="CON-2"),
            context_pack, spec_doc, StubAgent(), now=NOW)
        assert output.attribution_results[0].pattern.id == pattern.id
        assert output.recurrence_observed is True
        assert output.to_dict()["recurrence_observed"] is True

        [outcome] = self._outcomes(conn, workspace, project, "CON-2")
        assert outcome.injection_occurred
        assert outcome.recurrence_observed is True
        [earlier] = self._outcomes(conn, workspace, project, "CON-1")
        assert not earlier.injection_occurred
        assert earlier.recurrence_observed is None

        metrics = KillSwitchService(conn).get_health_metrics(workspace.id, project.id, now=NOW)
        assert metrics.injections_with_recurrence == 1
        assert metrics.observed_improvement_rate == 0.0

    def test_adhered_injection_counts_as_improvement(self, conn, workspace, project,
                                                     context_pack, spec_doc):
        pattern = self._first_pattern(conn, workspace, project, context_pack, spec_doc)
        _log(conn, workspace, project, "CON-2", patterns=[pattern.id])
        agent = StubAgent(by_finding={
            "F-2": make_evidence(carrierQuote="Cache session tokens without expiry")})

        output = on_pr_review_complete(
            conn, _review(workspace, project, [make_finding(**self.ADHERED_FINDING)],
                          issue_id="CON-2"),
            context_pack, spec_doc, agent, now=NOW)
        assert output.attribution_results[0].pattern.id != pattern.id
        assert output.recurrence_observed is False

        [outcome] = self._outcomes(conn, workspace, project, "CON-2")
        assert outcome.injection_occurred
        assert outcome.recurrence_observed is False
        metrics = KillSwitchService(conn).get_health_metrics(workspace.id, project.id, now=NOW)
        assert metrics.injections_without_recurrence == 1
        assert metrics.observed_improvement_rate == 1.0

    def test_issue_without_injection_has_no_verdict(self, conn, workspace, project,
                                                    context_pack, spec_doc):
        _log(conn, workspace, project, "CON-1")
        output = on_pr_review_complete(conn, _review(workspace, project, [make_finding()]),
                                       context_pack, spec_doc, StubAgent(), now=NOW)
        assert output.recurrence_observed is None
        [outcome] = self._outcomes(conn, workspace, project, "CON-1")
        assert not outcome.injection_occurred
        assert outcome.recurrence_observed is None

    def test_repeated_recurrence_fully_pauses_scope(self, conn, workspace, project,
                                                    context_pack, spec_doc):
        pattern = self._first_pattern(conn, workspace, project, context_pack, spec_doc)
        for n in range(2, 11):
            issue_id = f"CON-{n}"
            _log(conn, workspace, project, issue_id, patterns=[pattern.id])
            output = on_pr_review_complete(
                conn, _review(workspace, project, [make_finding(id=f"F-{n}")],
                              issue_id=issue_id),
                context_pack, spec_doc, StubAgent(), now=NOW)
            assert output.recurrence_observed is True

        kill_switch = KillSwitchService(conn)
        status = kill_switch.get_status(workspace.id, project.id, now=NOW)
        assert status.state == "fully_paused"
        assert status.reason.startswith("observedImprovementRate")

        metrics = kill_switch.get_health_metrics(workspace.id, project.id, now=NOW)
        assert metrics.total_attributions == 10
        assert metrics.attribution_precision_score == 1.0
        assert metrics.injections_with_recurrence == 9

        blocked = on_pr_review_complete(
            conn, _review(workspace, project, [make_finding(id="F-11")], issue_id="CON-11"),
            context_pack, spec_doc, StubAgent(), now=NOW)
        assert blocked.attribution_results[0].type == "skipped"
