#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Resilience: Pattern-Creation Kill Switch.

Per-scope three-state circuit breaker that gates NEW pattern creation on the
engine's own attribution health. State lives in the kill_switch_status table,
never in process memory, and transitions only when a caller asks for an
evaluation (after every attribution, or from the daily scheduler).

    ACTIVE ──inferredRatio > 0.40──────────> INFERRED_PAUSED
    ACTIVE / INFERRED_PAUSED ──precision < 0.40 or improvement < 0.20──> FULLY_PAUSED
    any paused ──metrics healthy and autoResumeAt passed──> ACTIVE

Gating contract (see creation_gate):

    state            verbatim/paraphrase      inferred
    active           create                   create
    inferred_paused  create                   skip [KILL_SWITCH:INFERRED_PAUSED]
    fully_paused     skip [KILL_SWITCH:FULLY_PAUSED]

Injection of existing patterns is never gated.

Usage:
    from falcon_engine.resilience.kill_switch import KillSwitchService

    ks = KillSwitchService(conn)
    status = ks.get_status(workspace_id, project_id)
    ks.record_outcome(workspace_id, project_id, "ISSUE-1", "verbatim", True)
    ks.evaluate_health(workspace_id, project_id)
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.compat.db_utils import parse_timestamp, utc_now_iso
from falcon_engine.schemas.core import AttributionOutcome, HealthMetrics, KillSwitchStatus
from falcon_engine.schemas.models import KillSwitchState
from falcon_engine.storage.kill_switch_repo import KillSwitchRepository

logger = logging.getLogger("falcon.resilience.kill_switch")

TAG_FULLY_PAUSED = "KILL_SWITCH:FULLY_PAUSED"
TAG_INFERRED_PAUSED = "KILL_SWITCH:INFERRED_PAUSED"


def creation_gate(state: str, quote_type: str) -> Optional[str]:
    """Return the skip tag when the state forbids creating from this evidence."""
    if state == KillSwitchState.FULLY_PAUSED.value:
        return TAG_FULLY_PAUSED
    if state == KillSwitchState.INFERRED_PAUSED.value and quote_type == "inferred":
        return TAG_INFERRED_PAUSED
    return None


@dataclass
class HealthEvaluation:
    changed: bool
    previous_state: str
    state: str
    reason: Optional[str]
    metrics: HealthMetrics

    def to_dict(self) -> dict:
        return asdict(self)


class KillSwitchService:
    """State machine over KillSwitchRepository, driven by health snapshots."""

    def __init__(self, conn: sqlite3.Connection, config: Optional[Dict[str, Any]] = None):
        self.repo = KillSwitchRepository(conn)
        self._settings = get_section("kill_switch", config)

    # -- reads -------------------------------------------------------------

    def get_status(self, workspace_id: str, project_id: str, now: Any = None) -> KillSwitchStatus:
        return self.repo.get_status(workspace_id, project_id, now=now)

    def get_health_metrics(
        self, workspace_id: str, project_id: str, now: Any = None
    ) -> HealthMetrics:
        return self.repo.compute_health_metrics(
            workspace_id, project_id, window_days=int(self._settings["window_days"]), now=now)

    def get_health_thresholds(self) -> Dict[str, Any]:
        return {
            "thresholds": self._settings["thresholds"],
            "cooldown_days": self._settings["cooldown_days"],
            "min_outcomes": self._settings["min_outcomes"],
        }

    def find_due_for_resume_evaluation(self, now: Any = None) -> List[KillSwitchStatus]:
        """Paused scopes whose autoResumeAt has elapsed, for an external poller."""
        return self.repo.find_due_for_resume(now=now)

    # -- outcome log -------------------------------------------------------

    def record_outcome(
        self,
        workspace_id: str,
        project_id: str,
        issue_key: str,
        carrier_quote_type: str,
        pattern_created: bool,
        injection_occurred: bool = False,
        recurrence_observed: Optional[bool] = None,
        now: Any = None,
    ) -> AttributionOutcome:
        return self.repo.record_outcome(
            workspace_id, project_id, issue_key, carrier_quote_type, pattern_created,
            injection_occurred=injection_occurred, recurrence_observed=recurrence_observed,
            now=now,
        )

    def update_recurrence(
        self,
        workspace_id: str,
        issue_key: str,
        recurrence_observed: bool,
        project_id: Optional[str] = None,
        now: Any = None,
    ) -> bool:
        """Record whether injected guidance failed to prevent a repeat on this issue."""
        return self.repo.update_recurrence(workspace_id, issue_key, recurrence_observed,
                                           project_id=project_id, now=now)

    # -- transitions -------------------------------------------------------

    def _auto_resume_at(self, state: str, now: Any = None) -> Optional[str]:
        if state == KillSwitchState.ACTIVE.value:
            return None
        days = int(self._settings["cooldown_days"][state])
        return utc_now_iso(parse_timestamp(utc_now_iso(now)) + timedelta(days=days))

    def _is_healthy(self, metrics: HealthMetrics) -> bool:
        t = self._settings["thresholds"]
        return (
            metrics.attribution_precision_score >= t["attribution_precision"]["healthy"]
            and metrics.inferred_ratio <= t["inferred_ratio"]["healthy"]
            and metrics.observed_improvement_rate >= t["observed_improvement"]["healthy"]
        )

    def _target_state(self, current: KillSwitchStatus, metrics: HealthMetrics, now: Any):
        """(new_state, reason) when a threshold is crossed, else None."""
        t = self._settings["thresholds"]
        if metrics.total_attributions >= int(self._settings["min_outcomes"]):
            if metrics.attribution_precision_score < t["attribution_precision"]["critical"]:
                if current.state != KillSwitchState.FULLY_PAUSED.value:
                    return (KillSwitchState.FULLY_PAUSED.value,
                            f"attributionPrecisionScore dropped to "
                            f"{metrics.attribution_precision_score:.2f}")
            if metrics.observed_improvement_rate < t["observed_improvement"]["critical"]:
                if current.state != KillSwitchState.FULLY_PAUSED.value:
                    return (KillSwitchState.FULLY_PAUSED.value,
                            f"observedImprovementRate dropped to "
                            f"{metrics.observed_improvement_rate:.2f}")
            if metrics.inferred_ratio > t["inferred_ratio"]["critical"]:
                if current.state == KillSwitchState.ACTIVE.value:
                    return (KillSwitchState.INFERRED_PAUSED.value,
                            f"inferredRatio exceeded threshold at {metrics.inferred_ratio:.2f}")

        if current.state != KillSwitchState.ACTIVE.value and current.auto_resume_at:
            resume_due = parse_timestamp(current.auto_resume_at) <= parse_timestamp(utc_now_iso(now))
            if resume_due and self._is_healthy(metrics):
                return (KillSwitchState.ACTIVE.value,
                        "Metrics recovered and cooldown period passed")
        return None

    def evaluate_health(
        self, workspace_id: str, project_id: str, now: Any = None
    ) -> HealthEvaluation:
        """Recompute metrics and transition the scope when a threshold is crossed."""
        current = self.get_status(workspace_id, project_id, now=now)
        metrics = self.get_health_metrics(workspace_id, project_id, now=now)
        target = self._target_state(current, metrics, now)
        if target is None:
            return HealthEvaluation(False, current.state, current.state, current.reason, metrics)

        new_state, reason = target
        self.repo.set_status(workspace_id, project_id, new_state, reason,
                             auto_resume_at=self._auto_resume_at(new_state, now), now=now)
        logger.info("Kill switch %s/%s: %s -> %s (%s)", workspace_id, project_id,
                    current.state, new_state, reason)
        return HealthEvaluation(True, current.state, new_state, reason, metrics)

    def evaluate_resume(
        self, workspace_id: str, project_id: str, now: Any = None
    ) -> bool:
        """Resume a due scope when its metrics are healthy. Returns True on resume."""
        current = self.get_status(workspace_id, project_id, now=now)
        if current.state == KillSwitchState.ACTIVE.value:
            return False
        if not self._is_healthy(self.get_health_metrics(workspace_id, project_id, now=now)):
            logger.debug("Scope %s/%s still unhealthy; staying %s",
                         workspace_id, project_id, current.state)
            return False
        self.resume(workspace_id, project_id, reason="Auto-resume after health improvement",
                    now=now)
        return True

    # -- manual overrides --------------------------------------------------

    def set_status(
        self, workspace_id: str, project_id: str, state: str, reason: str, now: Any = None
    ) -> KillSwitchStatus:
        """Set state directly, bypassing thresholds. Idempotent."""
        state = KillSwitchState(state).value
        current = self.get_status(workspace_id, project_id, now=now)
        if current.state == state and current.reason == reason:
            return current
        status = self.repo.set_status(workspace_id, project_id, state, reason,
                                      auto_resume_at=self._auto_resume_at(state, now), now=now)
        if current.state != state:
            logger.info("Kill switch %s/%s manually set %s -> %s (%s)", workspace_id,
                        project_id, current.state, state, reason)
        return status

    def pause(self, workspace_id: str, project_id: str, reason: str = "Manual pause",
              now: Any = None) -> KillSwitchStatus:
        return self.set_status(workspace_id, project_id, KillSwitchState.FULLY_PAUSED.value,
                               reason, now=now)

    def pause_inferred(
        self, workspace_id: str, project_id: str,
        reason: str = "Manual pause of inferred patterns", now: Any = None,
    ) -> KillSwitchStatus:
        return self.set_status(workspace_id, project_id, KillSwitchState.INFERRED_PAUSED.value,
                               reason, now=now)

    def resume(self, workspace_id: str, project_id: str, reason: str = "Manual resume",
               now: Any = None) -> KillSwitchStatus:
        return self.set_status(workspace_id, project_id, KillSwitchState.ACTIVE.value,
                               reason, now=now)
