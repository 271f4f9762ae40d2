#!/usr/bin/env python3
# CUI // SP-CTI
"""Deterministic failure-mode resolver.

Maps an EvidenceBundle to exactly one FailureMode through a priority-ordered
decision tree. First match wins:

    A  synthesis drift      cited source retrievable and disagrees
                            (cited but unretrievable -> incorrect, suspected drift)
    B  missing reference    a mandatory document was not referenced
    C  conflict             unresolved conflict signals between documents
    D  ambiguous/incomplete strictly higher score wins, ties fall through
    E  default              carrier instruction kind

The function is total: any validated bundle yields a result and never raises.
No LLM judgment is involved; identical evidence always resolves identically.

CLI:
    python -m falcon_engine.attribution.failure_mode_resolver --evidence bundle.json --json
"""

import argparse
import json
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict

from falcon_engine.schemas.models import EvidenceBundle, parse_evidence

SUSPECTED_DRIFT_MODIFIER = -0.15

_INSTRUCTION_KIND_MODES: Dict[str, str] = {
    "explicitly_harmful": "incorrect",
    "benign_but_missing_guardrails": "incomplete",
    "descriptive": "incomplete",
    "unknown": "incomplete",
}

_DESCRIPTIONS: Dict[str, str] = {
    "incorrect": "Guidance explicitly instructed incorrect behavior",
    "incomplete": "Guidance omitted a necessary constraint or guardrail",
    "missing_reference": "Mandatory documentation was not referenced",
    "ambiguous": "Guidance admits multiple reasonable interpretations",
    "conflict_unresolved": "Contradictory guidance was not reconciled",
    "synthesis_drift": "Carrier distorted the meaning of source documentation",
}


@dataclass
class ResolverResult:
    failure_mode: str
    reasoning: str
    confidence_modifier: float = 0.0
    flags: Dict[str, bool] = field(
        default_factory=lambda: {"suspected_synthesis_drift": False}
    )

    @property
    def suspected_synthesis_drift(self) -> bool:
        return bool(self.flags.get("suspected_synthesis_drift"))

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Step D scoring
# ---------------------------------------------------------------------------

def ambiguity_score(evidence: EvidenceBundle) -> int:
    """Vagueness signal count, plus one when there are no testable criteria."""
    score = len(evidence.vagueness_signals)
    if not evidence.has_testable_acceptance_criteria:
        score += 1
    return score


def incompleteness_score(evidence: EvidenceBundle) -> int:
    score = 0
    if evidence.carrier_quote_type == "inferred":
        score += 3
    if evidence.has_citation and len(evidence.cited_sources) > 0:
        score += 1
    if len(evidence.vagueness_signals) == 0 and evidence.carrier_quote_type == "verbatim":
        score += 1
    return score


# ---------------------------------------------------------------------------
# Decision tree
# ---------------------------------------------------------------------------

def resolve_failure_mode(evidence: EvidenceBundle) -> ResolverResult:
    """Resolve the failure mode for one evidence bundle."""
    # Step A: synthesis drift
    if evidence.has_citation and evidence.source_retrievable:
        if evidence.source_agrees_with_carrier is False:
            return ResolverResult(
                failure_mode="synthesis_drift",
                reasoning="Source disagrees with carrier - carrier distorted source meaning",
            )
    if evidence.has_citation and not evidence.source_retrievable:
        return ResolverResult(
            failure_mode="incorrect",
            reasoning=(
                "Cannot verify source - suspected synthesis drift, "
                "treating as incorrect with confidence penalty"
            ),
            confidence_modifier=SUSPECTED_DRIFT_MODIFIER,
            flags={"suspected_synthesis_drift": True},
        )

    # Step B: missing mandatory reference
    if evidence.mandatory_doc_missing:
        return ResolverResult(
            failure_mode="missing_reference",
            reasoning=f"Mandatory document not referenced: {evidence.missing_doc_id or 'unknown'}",
        )

    # Step C: unresolved conflicts
    if evidence.conflict_signals:
        conflicts = "; ".join(
            f"{c.doc_a} vs {c.doc_b}: {c.topic}" for c in evidence.conflict_signals
        )
        return ResolverResult(
            failure_mode="conflict_unresolved",
            reasoning=f"Unresolved conflicts detected: {conflicts}",
        )

    # Step D: ambiguous vs incomplete
    amb = ambiguity_score(evidence)
    inc = incompleteness_score(evidence)
    if amb > inc:
        return ResolverResult(
            failure_mode="ambiguous",
            reasoning=(
                f"Ambiguity signals dominate (score: {amb} vs {inc}): "
                f"vagueness={len(evidence.vagueness_signals)}, "
                f"testable={evidence.has_testable_acceptance_criteria}"
            ),
        )
    if inc > amb:
        return ResolverResult(
            failure_mode="incomplete",
            reasoning=f"Incompleteness signals dominate (score: {inc} vs {amb})",
        )

    # Step E: instruction kind default
    kind = str(evidence.carrier_instruction_kind or "unknown")
    mode = _INSTRUCTION_KIND_MODES.get(kind, "incomplete")
    return ResolverResult(
        failure_mode=mode,
        reasoning=(
            f"Found {evidence.carrier_quote_type} quote with instruction kind "
            f"'{kind}' (scores tied at {amb})"
        ),
    )


def describe_failure_mode(mode: str) -> str:
    return _DESCRIPTIONS.get(mode, "Unknown failure mode")


def main():
    parser = argparse.ArgumentParser(description="Resolve the failure mode of an evidence bundle")
    parser.add_argument("--evidence", type=Path, required=True, help="EvidenceBundle JSON file")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    with open(args.evidence, "r", encoding="utf-8") as f:
        evidence = parse_evidence(json.load(f))
    result = resolve_failure_mode(evidence)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"{result.failure_mode}: {describe_failure_mode(result.failure_mode)}")
        print(f"  {result.reasoning}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
