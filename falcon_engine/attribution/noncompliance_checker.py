#!/usr/bin/env python3
# CUI // SP-CTI
"""Execution noncompliance check.

Before a pattern is created for an `incomplete` or `missing_reference`
failure, the context pack and spec are searched for the supposedly missing
guidance. If it is there, the agent ignored correct guidance: that is an
ExecutionNoncompliance, not a guidance defect, and no pattern is created.

Ambiguity is never a noncompliance cause. Ambiguous guidance is a guidance
problem and stays on the pattern path.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.schemas.models import EvidenceBundle

logger = logging.getLogger("falcon.attribution.noncompliance_checker")

CHECKED_FAILURE_MODES = frozenset({"incomplete", "missing_reference"})

STOP_WORDS = frozenset("""
    the a an is are was were be been being have has had do does did will would could
    should may might must shall to of in for on with at by from as into through during
    before after above below between under again further then once here there when
    where why how all each few more most other some such no nor not only own same so
    than too very just can and but or if this that these those it its found issue
    error bug problem
""".split())

_NON_WORD = re.compile(r"[^a-z0-9\s]")


@dataclass
class DocumentMatch:
    location: str
    excerpt: str
    relevance_score: float


@dataclass
class NoncomplianceCheckResult:
    is_noncompliance: bool = False
    violated_guidance_stage: Optional[str] = None
    match: Optional[DocumentMatch] = None
    possible_causes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def extract_keywords(title: str, description: str = "") -> List[str]:
    """Unique domain terms (length > 2, stop words removed), in first-seen order."""
    text = _NON_WORD.sub(" ", f"{title} {description}".lower())
    seen: Dict[str, None] = {}
    for word in text.split():
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def search_document(
    doc: str, keywords: List[str], window_lines: int = 5
) -> Optional[DocumentMatch]:
    """Best sliding window with at least two keyword hits, or None."""
    if not keywords or not doc:
        return None
    lines = doc.split("\n")
    best: Optional[DocumentMatch] = None
    best_score = 0
    for i in range(len(lines) - window_lines + 1):
        chunk = "\n".join(lines[i:i + window_lines])
        lowered = chunk.lower()
        score = sum(1 for kw in keywords if kw in lowered)
        if score > best_score and score >= 2:
            best_score = score
            best = DocumentMatch(
                location=f"Lines {i + 1}-{i + window_lines}",
                excerpt=chunk[:500],
                relevance_score=score / len(keywords),
            )
    return best


def possible_causes(match: DocumentMatch, evidence: EvidenceBundle) -> List[str]:
    if match.location not in (evidence.carrier_location or ""):
        return ["salience"]
    return ["formatting"]


def suggest_salience_fix(causes: List[str], location: str) -> str:
    if "salience" in causes:
        return ("Move guidance to a more prominent location or add explicit section "
                f"header. Current location: {location}")
    if "formatting" in causes:
        return ("Improve formatting with bullet points, code blocks, or callouts to "
                "increase visibility. Consider using MUST/SHOULD keywords.")
    return "Review guidance placement and formatting for improved discoverability."


def check_for_noncompliance(
    evidence: EvidenceBundle,
    failure_mode: str,
    title: str,
    description: str,
    context_pack: str,
    spec: str,
    config: Optional[Dict[str, Any]] = None,
) -> NoncomplianceCheckResult:
    if failure_mode not in CHECKED_FAILURE_MODES:
        return NoncomplianceCheckResult()

    keywords = extract_keywords(title, description)
    if not keywords:
        return NoncomplianceCheckResult()

    section = get_section("noncompliance", config)
    window = int(section["window_lines"])
    pack_match = search_document(context_pack, keywords, window)
    spec_match = search_document(spec, keywords, window)
    match = pack_match or spec_match

    if match is None or match.relevance_score < float(section["min_relevance"]):
        return NoncomplianceCheckResult()

    causes = possible_causes(match, evidence)
    logger.debug("Guidance for '%s' found at %s (relevance %.2f)",
                 title, match.location, match.relevance_score)
    return NoncomplianceCheckResult(
        is_noncompliance=True,
        violated_guidance_stage="context-pack" if pack_match else "spec",
        match=match,
        possible_causes=causes,
    )
