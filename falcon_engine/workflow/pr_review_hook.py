#!/usr/bin/env python3
# CUI // SP-CTI
"""Hook run after a PR review completes.

Attributes every confirmed finding (each in isolation), updates adherence for
the issue's most recent injection, records whether injected patterns recurred
(the kill switch's improvement signal), then checks for tagging misses.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from falcon_engine.attribution.orchestrator import (
    AgentFn,
    AttributionInput,
    AttributionOrchestrator,
    AttributionResult,
    SourceDocument,
)
from falcon_engine.resilience.errors import FalconError
from falcon_engine.schemas.models import ConfirmedFinding, parse_finding
from falcon_engine.workflow.adherence_updater import record_recurrence, update_adherence
from falcon_engine.workflow.tagging_miss_checker import check_for_tagging_misses

logger = logging.getLogger("falcon.workflow.pr_review_hook")


@dataclass
class PRReviewResult:
    workspace_id: str
    project_id: str
    pr_number: int
    issue_id: str
    confirmed_findings: List[Union[ConfirmedFinding, Dict[str, Any]]] = field(default_factory=list)


@dataclass
class PRReviewHookOutput:
    attribution_results: List[AttributionResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    adherence_updated: int = 0
    tagging_misses: int = 0
    recurrence_observed: Optional[bool] = None

    @property
    def summary(self) -> Dict[str, int]:
        results = self.attribution_results
        return {
            "patterns": sum(1 for r in results if r.type == "pattern"),
            "noncompliances": sum(1 for r in results if r.type == "noncompliance"),
            "doc_updates": sum(1 for r in results if r.doc_update_request is not None),
            "provisional_alerts": sum(1 for r in results if r.type == "provisional_alert"),
            "skipped": sum(1 for r in results if r.type == "skipped"),
            "promotions": sum(1 for r in results
                              if r.alert_promotion is not None and r.alert_promotion.promoted),
            "failed": len(self.errors),
        }

    def to_dict(self) -> dict:
        return {
            "attribution_results": [r.to_dict() for r in self.attribution_results],
            "errors": list(self.errors),
            "adherence_updated": self.adherence_updated,
            "tagging_misses": self.tagging_misses,
            "recurrence_observed": self.recurrence_observed,
            "summary": self.summary,
        }


def on_pr_review_complete(
    conn: sqlite3.Connection,
    result: PRReviewResult,
    context_pack: SourceDocument,
    spec: SourceDocument,
    agent_fn: AgentFn,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> PRReviewHookOutput:
    orchestrator = AttributionOrchestrator(conn, agent_fn, config=config)
    output = PRReviewHookOutput()
    parsed: List[ConfirmedFinding] = []

    for raw in result.confirmed_findings:
        finding_id = raw.get("id") if isinstance(raw, dict) else raw.id
        try:
            finding = parse_finding(raw)
            parsed.append(finding)
            attribution = orchestrator.attribute_finding(
                AttributionInput(
                    workspace_id=result.workspace_id,
                    project_id=result.project_id,
                    finding=finding,
                    issue_id=result.issue_id,
                    pr_number=result.pr_number,
                    context_pack=context_pack,
                    spec=spec,
                ),
                now=now,
            )
        except FalconError as exc:
            logger.warning("Attribution rejected finding %s: %s", finding_id, exc)
            output.errors.append({"finding_id": str(finding_id), "error": str(exc)})
            continue
        except Exception as exc:
            logger.exception("Attribution failed for finding %s", finding_id)
            output.errors.append({"finding_id": str(finding_id), "error": str(exc)})
            continue
        output.attribution_results.append(attribution)
        logger.info("Finding %s: %s (%s)", finding_id, attribution.type, attribution.failure_mode)

    output.adherence_updated = update_adherence(
        conn, result.workspace_id, result.project_id, result.issue_id, parsed)
    output.recurrence_observed = record_recurrence(
        conn, result.workspace_id, result.project_id, result.issue_id, parsed,
        [r.pattern.id for r in output.attribution_results if r.pattern is not None],
        now=now, config=config,
    )
    output.tagging_misses = len(check_for_tagging_misses(
        conn, result.workspace_id, result.project_id, result.issue_id,
        output.attribution_results, now=now,
    ))
    return output
