#!/usr/bin/env python3
# CUI // SP-CTI
"""Attribution orchestrator: from confirmed finding to stored evidence.

For one confirmed finding, in order:

    0. read the scope's kill-switch state
    1. obtain an EvidenceBundle from the attribution agent (injected callable)
    2. resolve the failure mode (deterministic decision tree)
    3. noncompliance check; runs in every kill-switch state
    4. kill-switch gating of new pattern creation
    5. decisions findings -> DocUpdateRequest (+ pattern when HIGH/CRITICAL)
    6. weak-evidence HIGH+ security findings -> ProvisionalAlert
    7. otherwise pattern (deduplicated) + occurrence
    8. record the AttributionOutcome (marking whether the issue had an
       injection and whether an injected pattern recurred) and re-evaluate health

Result variants: pattern | noncompliance | doc_update_only |
provisional_alert | skipped. A kill-switch skip is a result, not an error.

The agent callable receives (finding, context_pack_content, spec_content) and
returns an EvidenceBundle or its camelCase dict; it is the only LLM boundary
and is replaced by a deterministic stub in tests.
"""

import hashlib
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from falcon_engine.attribution.failure_mode_resolver import ResolverResult, resolve_failure_mode
from falcon_engine.attribution.noncompliance_checker import check_for_noncompliance
from falcon_engine.compat.db_utils import transaction
from falcon_engine.evolution.provisional_alerts import (
    AlertPromotionResult,
    ProvisionalAlertProcessor,
)
from falcon_engine.resilience.kill_switch import KillSwitchService, creation_gate
from falcon_engine.schemas.core import (
    DocUpdateRequest,
    ExecutionNoncompliance,
    PatternDefinition,
    PatternOccurrence,
    ProvisionalAlert,
)
from falcon_engine.schemas.models import (
    ConfirmedFinding,
    EvidenceBundle,
    category_for_scout,
    evidence_to_dict,
    parse_evidence,
    parse_finding,
    parse_fingerprint,
    severity_rank,
)
from falcon_engine.storage import Repositories
from falcon_engine.storage.pattern_repo import compute_pattern_key

logger = logging.getLogger("falcon.attribution.orchestrator")

AgentFn = Callable[[ConfirmedFinding, str, str], Union[EvidenceBundle, Dict[str, Any]]]

PLACEHOLDER_COMMIT = "0" * 40

_QUOTE_RANK = {"verbatim": 3, "paraphrase": 2, "inferred": 1}

_ATTRIBUTION_TOUCHES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"user.?input|request.?body|query.?param|form|payload", re.I), "user_input"),
    (re.compile(r"database|sql|query|postgres|mysql|mongo", re.I), "database"),
    (re.compile(r"network|http|api.?call|fetch|external", re.I), "network"),
    (re.compile(r"auth|login|token|session|jwt", re.I), "auth"),
    (re.compile(r"permission|role|access|authz|rbac", re.I), "authz"),
    (re.compile(r"cache|redis|memcache", re.I), "caching"),
    (re.compile(r"schema|migration|ddl|alter", re.I), "schema"),
    (re.compile(r"log|logging|trace|audit", re.I), "logging"),
    (re.compile(r"config|env|setting", re.I), "config"),
    (re.compile(r"api|endpoint|route|rest|graphql", re.I), "api"),
]

_ATTRIBUTION_TECHNOLOGIES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"sql", re.I), "sql"),
    (re.compile(r"postgres", re.I), "postgres"),
    (re.compile(r"mysql", re.I), "mysql"),
    (re.compile(r"mongo", re.I), "mongodb"),
    (re.compile(r"redis", re.I), "redis"),
    (re.compile(r"graphql", re.I), "graphql"),
    (re.compile(r"rest", re.I), "rest"),
]

_ATTRIBUTION_TASK_TYPES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"api|endpoint", re.I), "api"),
    (re.compile(r"database|query", re.I), "database"),
    (re.compile(r"migration", re.I), "migration"),
    (re.compile(r"auth", re.I), "auth"),
]

# (pattern, decision class, weight); high-risk classes weigh more
_DECISION_CLASSES: List[Tuple[re.Pattern, str, int]] = [
    (re.compile(r"\b(authz|authorization|permission|role|rbac|acl|access.?control)\b", re.I),
     "authz_model", 10),
    (re.compile(r"\b(schema.?migration|db.?migration|rollback.?plan|migration.?strategy|alter.?table)\b",
                re.I), "migrations", 12),
    (re.compile(r"\b(backcompat|backward.?compat|deprecat|version|breaking.?change)\b", re.I),
     "backcompat", 10),
    (re.compile(r"\b(pii|gdpr|privacy|mask|redact|sensitive.?data|log.?retention)\b", re.I),
     "logging_privacy", 10),
    (re.compile(r"\b(cache|caching|ttl|invalidat|stale|expire)\b", re.I), "caching", 5),
    (re.compile(r"\b(retry|retries|backoff|exponential|jitter)\b", re.I), "retries", 5),
    (re.compile(r"\b(timeout|circuit.?breaker|deadline|cancel)\b", re.I), "timeouts", 5),
    (re.compile(r"\b(error.?code|error.?shape|status.?code|error.?response|exception)\b", re.I),
     "error_contract", 3),
]

_ALTERNATIVES = {
    "incomplete": "Ensure all edge cases and security considerations are explicitly addressed.",
    "ambiguous": "Clarify requirements with specific, testable acceptance criteria.",
    "conflict_unresolved": "Resolve conflicting guidance before implementation.",
    "synthesis_drift": "Verify synthesized guidance accurately reflects source documentation.",
}


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _scan(text: str, patterns: List[Tuple[re.Pattern, str]]) -> List[str]:
    found: List[str] = []
    for pattern, tag in patterns:
        if tag not in found and pattern.search(text):
            found.append(tag)
    return found


def generate_alternative(evidence: EvidenceBundle, failure_mode: str) -> str:
    if failure_mode == "incorrect":
        return (f'Do NOT follow: "{evidence.carrier_quote[:100]}..." '
                "Follow security best practices instead.")
    if failure_mode == "missing_reference":
        return f"Reference {evidence.missing_doc_id or 'relevant documentation'} before proceeding."
    return _ALTERNATIVES.get(failure_mode, "Review and improve guidance clarity.")


def infer_decision_class(text: str) -> str:
    """Highest weighted decision class; ties break alphabetically, default error_contract."""
    scores: Dict[str, int] = {}
    for pattern, decision_class, weight in _DECISION_CLASSES:
        if pattern.search(text):
            scores[decision_class] = scores.get(decision_class, 0) + weight
    if not scores:
        return "error_contract"
    return sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


def infer_target_doc(evidence: EvidenceBundle) -> str:
    if evidence.missing_doc_id:
        return evidence.missing_doc_id
    if evidence.carrier_stage == "context-pack":
        return "ARCHITECTURE.md"
    return "DECISIONS.md"


# ---------------------------------------------------------------------------
# Input / result types
# ---------------------------------------------------------------------------

@dataclass
class SourceDocument:
    """A carrier document: its full text and its fingerprint dict."""

    content: str
    fingerprint: Dict[str, Any]


@dataclass
class AttributionInput:
    workspace_id: str
    project_id: str
    finding: Union[ConfirmedFinding, Dict[str, Any]]
    issue_id: str
    pr_number: int
    context_pack: SourceDocument
    spec: SourceDocument


@dataclass
class AttributionResult:
    type: str
    failure_mode: Optional[str] = None
    reasoning: str = ""
    pattern: Optional[PatternDefinition] = None
    occurrence: Optional[PatternOccurrence] = None
    noncompliance: Optional[ExecutionNoncompliance] = None
    doc_update_request: Optional[DocUpdateRequest] = None
    provisional_alert: Optional[ProvisionalAlert] = None
    alert_promotion: Optional[AlertPromotionResult] = None
    kill_switch_state: Optional[str] = None

    @property
    def pattern_created(self) -> bool:
        if self.type == "pattern":
            return True
        return bool(self.alert_promotion and self.alert_promotion.promoted)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "type": self.type,
            "failure_mode": self.failure_mode,
            "reasoning": self.reasoning,
            "kill_switch_state": self.kill_switch_state,
        }
        for name in ("pattern", "occurrence", "noncompliance", "doc_update_request",
                     "provisional_alert", "alert_promotion"):
            value = getattr(self, name)
            data[name] = value.to_dict() if value is not None else None
        return data


@dataclass
class BatchAttributionResult:
    results: List[AttributionResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AttributionOrchestrator:
    def __init__(
        self,
        conn: sqlite3.Connection,
        agent_fn: AgentFn,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.conn = conn
        self.config = config
        self.agent_fn = agent_fn
        self.repos = Repositories(conn)
        self.kill_switch = KillSwitchService(conn, config)
        self.alert_processor = ProvisionalAlertProcessor(conn, config)

    # -- extraction helpers -------------------------------------------------

    @staticmethod
    def extract_touches(finding: ConfirmedFinding, evidence: EvidenceBundle) -> List[str]:
        text = f"{finding.description} {finding.evidence or ''} {evidence.carrier_quote}".lower()
        return _scan(text, _ATTRIBUTION_TOUCHES) or ["api"]

    @staticmethod
    def extract_technologies(finding: ConfirmedFinding) -> List[str]:
        location = finding.location.file if finding.location else ""
        return _scan(f"{finding.evidence or ''} {location}".lower(), _ATTRIBUTION_TECHNOLOGIES)

    @staticmethod
    def extract_task_types(finding: ConfirmedFinding) -> List[str]:
        location = finding.location.file if finding.location else ""
        return _scan(f"{finding.description} {location}".lower(), _ATTRIBUTION_TASK_TYPES)

    def _injected_pattern_ids(self, inp: AttributionInput) -> List[str]:
        """Pattern ids surfaced by the issue's most recent injection, if any."""
        log = self.repos.injection_logs.find_latest_for_issue(
            inp.workspace_id, inp.project_id, inp.issue_id)
        return list(log.injected_patterns) if log else []

    def _aligned_baseline_id(self, workspace_id: str, touches: List[str]) -> Optional[str]:
        for baseline in self.repos.principles.find_active(workspace_id, origin="baseline"):
            if set(baseline.touches) & set(touches):
                return baseline.id
        return None

    @staticmethod
    def _carrier(inp: AttributionInput, evidence: EvidenceBundle) -> Dict[str, Any]:
        doc = inp.context_pack if evidence.carrier_stage == "context-pack" else inp.spec
        return parse_fingerprint(doc.fingerprint)

    @staticmethod
    def _cited_git_fingerprint(carrier: Dict[str, Any], source: str) -> Optional[Dict[str, Any]]:
        """Git fingerprint for a cited markdown source in a git-backed carrier's repo."""
        if carrier.get("kind") != "git" or not source.endswith(".md"):
            return None
        return {"kind": "git", "repo": carrier["repo"], "path": source,
                "commitSha": carrier.get("commitSha", PLACEHOLDER_COMMIT)}

    def _provenance(self, carrier: Dict[str, Any], evidence: EvidenceBundle):
        chain = [carrier]
        for source in evidence.cited_sources:
            fp = self._cited_git_fingerprint(carrier, source)
            if fp:
                chain.append(fp)
        origin = None
        origin_hash = None
        if evidence.has_citation and evidence.cited_sources:
            origin = self._cited_git_fingerprint(carrier, evidence.cited_sources[0])
            origin_hash = sha256_hex(evidence.cited_sources[0])
        return chain, origin, origin_hash

    def _create_occurrence(
        self,
        inp: AttributionInput,
        finding: ConfirmedFinding,
        evidence: EvidenceBundle,
        pattern_id: Optional[str] = None,
        provisional_alert_id: Optional[str] = None,
        now: Any = None,
    ) -> PatternOccurrence:
        carrier = self._carrier(inp, evidence)
        chain, origin, origin_hash = self._provenance(carrier, evidence)
        return self.repos.occurrences.create(
            workspace_id=inp.workspace_id,
            project_id=inp.project_id,
            finding_id=finding.id,
            issue_id=inp.issue_id,
            pr_number=inp.pr_number,
            severity=finding.severity,
            evidence=evidence_to_dict(evidence),
            carrier_fingerprint=carrier,
            carrier_excerpt_hash=sha256_hex(evidence.carrier_quote),
            pattern_id=pattern_id,
            origin_fingerprint=origin,
            provenance_chain=chain,
            origin_excerpt_hash=origin_hash,
            provisional_alert_id=provisional_alert_id,
            now=now,
        )

    # -- result paths ---------------------------------------------------------

    def _create_pattern_and_occurrence(
        self,
        inp: AttributionInput,
        finding: ConfirmedFinding,
        evidence: EvidenceBundle,
        resolved: ResolverResult,
        now: Any = None,
    ) -> Tuple[PatternDefinition, PatternOccurrence]:
        category = category_for_scout(finding.scout_type)
        key = compute_pattern_key(evidence.carrier_stage, evidence.carrier_quote, category)
        with transaction(self.conn):
            existing = self.repos.patterns.find_by_pattern_key(
                inp.workspace_id, inp.project_id, key)
            if existing is None:
                touches = self.extract_touches(finding, evidence)
                pattern = self.repos.patterns.create(
                    workspace_id=inp.workspace_id,
                    project_id=inp.project_id,
                    pattern_content=evidence.carrier_quote,
                    failure_mode=resolved.failure_mode,
                    finding_category=category,
                    severity=finding.severity,
                    alternative=generate_alternative(evidence, resolved.failure_mode),
                    carrier_stage=evidence.carrier_stage,
                    primary_carrier_quote_type=evidence.carrier_quote_type,
                    technologies=self.extract_technologies(finding),
                    task_types=self.extract_task_types(finding),
                    touches=touches,
                    aligned_baseline_id=self._aligned_baseline_id(inp.workspace_id, touches),
                    now=now,
                )
            else:
                pattern = self.repos.patterns.create(
                    workspace_id=inp.workspace_id,
                    project_id=inp.project_id,
                    pattern_content=evidence.carrier_quote,
                    failure_mode=existing.failure_mode,
                    finding_category=category,
                    severity=finding.severity,
                    alternative=existing.alternative,
                    carrier_stage=evidence.carrier_stage,
                    primary_carrier_quote_type=existing.primary_carrier_quote_type,
                    now=now,
                )
                if (_QUOTE_RANK[evidence.carrier_quote_type]
                        > _QUOTE_RANK[pattern.primary_carrier_quote_type]):
                    pattern = self.repos.patterns.update(
                        inp.workspace_id, pattern.id,
                        {"primary_carrier_quote_type": evidence.carrier_quote_type}, now=now,
                    )
            occurrence = self._create_occurrence(inp, finding, evidence,
                                                 pattern_id=pattern.id, now=now)
        return pattern, occurrence

    def _alert_message(self, finding: ConfirmedFinding, evidence: EvidenceBundle,
                       failure_mode: str) -> str:
        if failure_mode == "incomplete":
            return f"[{finding.severity}] Missing security constraint: {finding.title[:100]}"
        if failure_mode == "missing_reference":
            return (f"[{finding.severity}] Security doc not referenced: "
                    f"{evidence.missing_doc_id or 'unknown'}")
        return f"[{finding.severity}] {finding.scout_type} issue: {finding.title[:100]}"

    def _wants_provisional_alert(
        self, inp: AttributionInput, finding: ConfirmedFinding, evidence: EvidenceBundle
    ) -> bool:
        """HIGH+ security finding, weak evidence, and no pattern already stored for it."""
        category = category_for_scout(finding.scout_type)
        if severity_rank(finding.severity) < severity_rank("HIGH") or category != "security":
            return False
        if evidence.carrier_quote_type not in ("paraphrase", "inferred"):
            return False
        key = compute_pattern_key(evidence.carrier_stage, evidence.carrier_quote, category)
        existing = self.repos.patterns.find_by_pattern_key(inp.workspace_id, inp.project_id, key)
        return existing is None or existing.status != "active"

    def _provisional_alert(
        self, inp: AttributionInput, finding: ConfirmedFinding, evidence: EvidenceBundle,
        resolved: ResolverResult, now: Any = None,
    ) -> AttributionResult:
        with transaction(self.conn):
            alert = self.alert_processor.open_alert(
                inp.workspace_id, inp.project_id, finding.id, inp.issue_id,
                message=self._alert_message(finding, evidence, resolved.failure_mode),
                inject_into=evidence.carrier_stage,
                severity=finding.severity,
                touches=self.extract_touches(finding, evidence),
                now=now,
            )
            occurrence = self._create_occurrence(inp, finding, evidence,
                                                 provisional_alert_id=alert.id, now=now)
        promotion = self.alert_processor.check_and_promote(inp.workspace_id, alert.id, now=now)
        if promotion.promoted:
            alert = self.repos.alerts.find_by_id(inp.workspace_id, alert.id)
            occurrence = self.repos.occurrences.find_by_id(inp.workspace_id, occurrence.id)
        return AttributionResult(
            type="provisional_alert",
            failure_mode=resolved.failure_mode,
            reasoning=resolved.reasoning,
            provisional_alert=alert,
            occurrence=occurrence,
            alert_promotion=promotion,
        )

    def _decisions(
        self, inp: AttributionInput, finding: ConfirmedFinding, evidence: EvidenceBundle,
        resolved: ResolverResult, now: Any = None,
    ) -> AttributionResult:
        text = f"{finding.title} {finding.description} {evidence.carrier_quote}".lower()
        request = self.repos.doc_updates.create(
            workspace_id=inp.workspace_id,
            project_id=inp.project_id,
            finding_id=finding.id,
            issue_id=inp.issue_id,
            finding_category="decisions",
            scout_type="decisions",
            target_doc=infer_target_doc(evidence),
            update_type="add_decision",
            description=finding.description,
            decision_class=infer_decision_class(text),
            now=now,
        )
        if severity_rank(finding.severity) < severity_rank("HIGH"):
            return AttributionResult(
                type="doc_update_only", failure_mode=resolved.failure_mode,
                reasoning=resolved.reasoning, doc_update_request=request,
            )
        pattern, occurrence = self._create_pattern_and_occurrence(
            inp, finding, evidence, resolved, now=now)
        return AttributionResult(
            type="pattern", failure_mode=resolved.failure_mode, reasoning=resolved.reasoning,
            pattern=pattern, occurrence=occurrence, doc_update_request=request,
        )

    def _noncompliance(
        self, inp: AttributionInput, finding: ConfirmedFinding, resolved: ResolverResult,
        check, now: Any = None,
    ) -> AttributionResult:
        with transaction(self.conn):
            record = self.repos.noncompliance.create(
                workspace_id=inp.workspace_id,
                project_id=inp.project_id,
                finding_id=finding.id,
                issue_id=inp.issue_id,
                pr_number=inp.pr_number,
                violated_guidance_stage=check.violated_guidance_stage,
                violated_guidance_location=check.match.location,
                violated_guidance_excerpt=check.match.excerpt,
                possible_causes=check.possible_causes,
                now=now,
            )
            self.repos.salience.upsert(
                inp.workspace_id, inp.project_id,
                guidance_stage=record.violated_guidance_stage,
                guidance_location=record.violated_guidance_location,
                guidance_excerpt=record.violated_guidance_excerpt,
                reference_id=record.id,
                now=now,
            )
        return AttributionResult(
            type="noncompliance", failure_mode=resolved.failure_mode,
            reasoning=resolved.reasoning, noncompliance=record,
        )

    # -- public API -----------------------------------------------------------

    def attribute_finding(self, inp: AttributionInput, now: Any = None) -> AttributionResult:
        finding = parse_finding(inp.finding)
        status = self.kill_switch.get_status(inp.workspace_id, inp.project_id, now=now)

        evidence = parse_evidence(self.agent_fn(finding, inp.context_pack.content,
                                                inp.spec.content))
        resolved = resolve_failure_mode(evidence)

        check = check_for_noncompliance(
            evidence, resolved.failure_mode, finding.title, finding.description,
            inp.context_pack.content, inp.spec.content, config=self.config,
        )
        if check.is_noncompliance:
            result = self._noncompliance(inp, finding, resolved, check, now=now)
        else:
            tag = creation_gate(status.state, evidence.carrier_quote_type)
            if tag:
                logger.info("Kill switch %s: skipping finding %s (%s evidence)",
                            status.state, finding.id, evidence.carrier_quote_type)
                result = AttributionResult(
                    type="skipped",
                    failure_mode=resolved.failure_mode,
                    reasoning=f"[{tag}] {resolved.reasoning}",
                    kill_switch_state=status.state,
                )
            elif finding.scout_type == "decisions":
                result = self._decisions(inp, finding, evidence, resolved, now=now)
            elif self._wants_provisional_alert(inp, finding, evidence):
                result = self._provisional_alert(inp, finding, evidence, resolved, now=now)
            else:
                pattern, occurrence = self._create_pattern_and_occurrence(
                    inp, finding, evidence, resolved, now=now)
                result = AttributionResult(
                    type="pattern", failure_mode=resolved.failure_mode,
                    reasoning=resolved.reasoning, pattern=pattern, occurrence=occurrence,
                )

        injected = self._injected_pattern_ids(inp)
        recurred = None
        if result.pattern is not None and result.pattern.id in injected:
            recurred = True
        self.kill_switch.record_outcome(
            inp.workspace_id, inp.project_id, issue_key=inp.issue_id,
            carrier_quote_type=evidence.carrier_quote_type,
            pattern_created=result.pattern_created,
            injection_occurred=bool(injected), recurrence_observed=recurred, now=now,
        )
        self.kill_switch.evaluate_health(inp.workspace_id, inp.project_id, now=now)
        logger.debug("Finding %s attributed as %s (%s)", finding.id, result.type,
                     resolved.failure_mode)
        return result

    def attribute_findings(
        self, inputs: List[AttributionInput], now: Any = None
    ) -> BatchAttributionResult:
        """Attribute each input; one failing finding never aborts its siblings."""
        batch = BatchAttributionResult()
        for inp in inputs:
            try:
                batch.results.append(self.attribute_finding(inp, now=now))
            except Exception as exc:
                finding_id = (inp.finding.get("id") if isinstance(inp.finding, dict)
                              else inp.finding.id)
                logger.exception("Attribution failed for finding %s", finding_id)
                batch.errors.append({"finding_id": str(finding_id), "error": str(exc)})
        return batch
