#!/usr/bin/env python3
# CUI // SP-CTI
"""Tier 1 promotion: ProvisionalAlert -> PatternDefinition.

A provisional alert is a short-lived warning raised for a HIGH/CRITICAL
security finding whose evidence is too weak (paraphrase/inferred) to found a
durable pattern. Every later finding with the same alert message links a new
occurrence to the same active alert. Once the active linked occurrence count
reaches the promotion threshold (2 by default) the alert promotes: a pattern
is created from it, every linked occurrence is relinked to that pattern and
the alert is marked promoted, all in one transaction. Alerts that reach
their expiry below threshold are marked expired; their occurrences stay
unlinked to any durable pattern.

Usage:
    from falcon_engine.evolution.provisional_alerts import ProvisionalAlertProcessor

    proc = ProvisionalAlertProcessor(conn)
    result = proc.check_and_promote(workspace_id, alert_id)
    summary = proc.process_expiry(workspace_id, project_id)
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.compat.db_utils import transaction
from falcon_engine.resilience.errors import TransactionError
from falcon_engine.schemas.core import ProvisionalAlert
from falcon_engine.storage.alert_repo import ProvisionalAlertRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository

logger = logging.getLogger("falcon.evolution.provisional_alerts")


@dataclass
class AlertPromotionResult:
    promoted: bool
    alert_id: str
    pattern_id: Optional[str] = None
    relinked: int = 0
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AlertProcessingResult:
    expired: int = 0
    promoted: int = 0
    expired_alert_ids: List[str] = field(default_factory=list)
    promoted_alert_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ProvisionalAlertProcessor:
    def __init__(self, conn: sqlite3.Connection, config: Optional[Dict[str, Any]] = None):
        self.conn = conn
        self.alerts = ProvisionalAlertRepository(conn)
        self.patterns = PatternDefinitionRepository(conn)
        self.occurrences = PatternOccurrenceRepository(conn)
        settings = get_section("provisional_alerts", config)
        self.ttl_days = int(settings["ttl_days"])
        self.threshold = int(settings["promotion_threshold"])

    def open_alert(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        issue_id: str,
        message: str,
        inject_into: str,
        severity: str = "HIGH",
        touches: Optional[List[str]] = None,
        now: Any = None,
    ) -> ProvisionalAlert:
        """Reuse the active alert carrying this message, or create a new one."""
        existing = self.alerts.find_active_by_message(workspace_id, project_id, message, now=now)
        if existing:
            logger.debug("Reusing provisional alert %s", existing.id)
            return existing
        alert = self.alerts.create(
            workspace_id, project_id, finding_id, issue_id, message, inject_into,
            ttl_days=self.ttl_days, severity=severity, touches=touches, now=now,
        )
        logger.info("Opened provisional alert %s (expires %s)", alert.id, alert.expires_at)
        return alert

    def _promote(self, alert: ProvisionalAlert, count: int, now: Any = None) -> AlertPromotionResult:
        try:
            with transaction(self.conn):
                pattern = self.patterns.create_from_provisional_alert(alert, now=now)
                relinked = self.occurrences.relink_alert_occurrences(
                    alert.workspace_id, alert.id, pattern.id)
                self.alerts.promote(alert.workspace_id, alert.id, pattern.id)
        except sqlite3.Error as exc:
            raise TransactionError(
                f"Promotion of alert {alert.id} failed: {exc}", operation="alert_promotion"
            ) from exc
        logger.info("Promoted alert %s to pattern %s (%d occurrences)",
                    alert.id, pattern.id, count)
        return AlertPromotionResult(True, alert.id, pattern.id, relinked,
                                    f"Promoted with {count} occurrences")

    def check_and_promote(
        self, workspace_id: str, alert_id: str, now: Any = None
    ) -> AlertPromotionResult:
        """Promote the alert if its linked occurrence count meets the threshold."""
        alert = self.alerts.find_by_id(workspace_id, alert_id)
        if alert is None:
            return AlertPromotionResult(False, alert_id, reason="Alert not found")
        if alert.status == "promoted":
            return AlertPromotionResult(False, alert_id, alert.promoted_to_pattern_id,
                                        reason="Already promoted")
        if alert.status != "active":
            return AlertPromotionResult(False, alert_id, reason=f"Alert is {alert.status}")

        count = self.occurrences.count_by_provisional_alert_id(workspace_id, alert_id)
        if count < self.threshold:
            return AlertPromotionResult(
                False, alert_id, reason=f"Insufficient occurrences: {count}/{self.threshold}")
        return self._promote(alert, count, now=now)

    def process_expiry(
        self, workspace_id: str, project_id: str, now: Any = None
    ) -> AlertProcessingResult:
        """Promote or expire every alert whose expiry has passed."""
        result = AlertProcessingResult()
        for alert in self.alerts.find_expired(workspace_id, project_id, now=now):
            count = self.occurrences.count_by_provisional_alert_id(workspace_id, alert.id)
            if count >= self.threshold:
                self._promote(alert, count, now=now)
                result.promoted_alert_ids.append(alert.id)
            else:
                self.alerts.expire(workspace_id, alert.id)
                result.expired_alert_ids.append(alert.id)
                logger.info("Expired alert %s (%d occurrences)", alert.id, count)
        result.expired = len(result.expired_alert_ids)
        result.promoted = len(result.promoted_alert_ids)
        return result
