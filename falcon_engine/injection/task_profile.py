#!/usr/bin/env python3
# CUI // SP-CTI
"""TaskProfile extraction and validation.

A TaskProfile summarises what an upcoming task concerns (touches,
technologies, task types) so the selector can match warnings against it.
Profiles come from three places, in increasing accuracy:

    extract_from_issue         regex scan of issue title, description, labels
    extract_from_context_pack  explicit metadata["taskProfile"], else constraint text
    validate_task_profile      adds touches implied by constraint text

All functions return the canonical dict form:
    {"touches": [...], "technologies": [...], "taskTypes": [...], "confidence": float}
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from falcon_engine.schemas.models import parse_task_profile

_TOUCH_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(user.?input|form|request.?body|query.?param|payload|user.?data|input.?valid)", re.I),
     "user_input"),
    (re.compile(r"\b(database|sql|query|postgres|mysql|mongo|db|crud|insert|update|delete|select)", re.I),
     "database"),
    (re.compile(r"\b(network|http|api.?call|fetch|request|external.?service|webhook|client)", re.I),
     "network"),
    (re.compile(r"\b(auth|login|logout|session|token|jwt|oauth|password|credential)", re.I), "auth"),
    (re.compile(r"\b(permission|role|access.?control|rbac|authz|authorize|privilege|acl)", re.I),
     "authz"),
    (re.compile(r"\b(cache|redis|memcache|caching|ttl|invalidat)", re.I), "caching"),
    (re.compile(r"\b(schema|migration|alter|ddl|table|column|index|constraint)", re.I), "schema"),
    (re.compile(r"\b(log|logging|trace|audit|monitor|telemetry|metric)", re.I), "logging"),
    (re.compile(r"\b(config|env|environment|setting|feature.?flag|toggle)", re.I), "config"),
    (re.compile(r"\b(api|endpoint|route|rest|graphql|handler|controller)", re.I), "api"),
]

_TECHNOLOGY_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bpostgres(ql)?\b", re.I), "postgres"),
    (re.compile(r"\bmysql\b", re.I), "mysql"),
    (re.compile(r"\bmongo(db)?\b", re.I), "mongodb"),
    (re.compile(r"\bredis\b", re.I), "redis"),
    (re.compile(r"\bsql\b", re.I), "sql"),
    (re.compile(r"\bgraphql\b", re.I), "graphql"),
    (re.compile(r"\brest\b", re.I), "rest"),
    (re.compile(r"\bgrpc\b", re.I), "grpc"),
    (re.compile(r"\bwebsocket\b", re.I), "websocket"),
    (re.compile(r"\breact\b", re.I), "react"),
    (re.compile(r"\bvue\b", re.I), "vue"),
    (re.compile(r"\bnode(js)?\b", re.I), "nodejs"),
    (re.compile(r"\btypescript\b", re.I), "typescript"),
    (re.compile(r"\bpython\b", re.I), "python"),
    (re.compile(r"\bjava\b", re.I), "java"),
    (re.compile(r"\bkafka\b", re.I), "kafka"),
    (re.compile(r"\brabbitmq\b", re.I), "rabbitmq"),
    (re.compile(r"\belasticsearch\b", re.I), "elasticsearch"),
    (re.compile(r"\bs3\b", re.I), "s3"),
    (re.compile(r"\bdocker\b", re.I), "docker"),
    (re.compile(r"\bkubernetes\b", re.I), "kubernetes"),
]

_TASK_TYPE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(api|endpoint|route)\b", re.I), "api"),
    (re.compile(r"\b(database|query|data.?layer)\b", re.I), "database"),
    (re.compile(r"\b(migration|schema.?change)\b", re.I), "migration"),
    (re.compile(r"\b(ui|frontend|component|page|view)\b", re.I), "ui"),
    (re.compile(r"\b(auth|login|signup|session)\b", re.I), "auth"),
    (re.compile(r"\b(background|job|worker|queue|async)\b", re.I), "background-job"),
    (re.compile(r"\b(test|testing|spec|unit|integration)\b", re.I), "testing"),
    (re.compile(r"\b(refactor|cleanup|tech.?debt)\b", re.I), "refactor"),
    (re.compile(r"\b(bug|fix|hotfix|patch)\b", re.I), "bugfix"),
    (re.compile(r"\b(feature|new|implement|add)\b", re.I), "feature"),
    (re.compile(r"\b(deploy|release|ci|cd)\b", re.I), "deployment"),
    (re.compile(r"\b(doc|documentation|readme)\b", re.I), "documentation"),
]

# Constraint wording that implies a touch the profile may have missed.
_CONSTRAINT_TOUCH_PATTERNS: List[Tuple[str, List[re.Pattern]]] = [
    ("database", [re.compile(p, re.I) for p in (
        r"\bsql\b", r"\bpostgres\b", r"\bquery\b", r"\bdatabase\b", r"\bdb\b",
        r"\bmysql\b", r"\bsqlite\b")]),
    ("authz", [re.compile(p, re.I) for p in (
        r"\bpermissions?\b", r"\broles?\b", r"\bauthoriz", r"\baccess control\b",
        r"\brbac\b", r"\bacl\b")]),
    ("network", [re.compile(p, re.I) for p in (
        r"\bhttp\b", r"\bapi\b", r"\bendpoint\b", r"\brest\b", r"\bgraphql\b",
        r"\bwebhook\b", r"\bnetwork\b")]),
]

DEFAULT_TOUCHES = ["api"]


def _scan(text: str, patterns: List[Tuple[re.Pattern, str]]) -> List[str]:
    found: List[str] = []
    for pattern, tag in patterns:
        if tag not in found and pattern.search(text):
            found.append(tag)
    return found


def extract_touches(text: str) -> List[str]:
    return _scan(text or "", _TOUCH_PATTERNS)


def extract_technologies(text: str) -> List[str]:
    return _scan(text or "", _TECHNOLOGY_PATTERNS)


def extract_task_types(text: str) -> List[str]:
    return _scan(text or "", _TASK_TYPE_PATTERNS)


def extraction_confidence(
    touches: List[str], technologies: List[str], task_types: List[str]
) -> float:
    """Richer extractions earn more confidence: 0.3 base, capped at 1.0."""
    confidence = 0.3
    if touches:
        confidence += 0.2
    if len(touches) > 2:
        confidence += 0.1
    if technologies:
        confidence += 0.15
    if len(technologies) > 1:
        confidence += 0.05
    if task_types:
        confidence += 0.15
    if len(task_types) > 1:
        confidence += 0.05
    return round(min(confidence, 1.0), 2)


def normalize_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a profile dict (camelCase or snake_case) into canonical form."""
    return parse_task_profile(data).as_dict()


def extract_from_issue(
    title: str, description: str = "", labels: Optional[Iterable[str]] = None
) -> Dict[str, Any]:
    text = f"{title} {description} {' '.join(labels or [])}".lower()
    touches = extract_touches(text)
    technologies = extract_technologies(text)
    task_types = extract_task_types(text)
    confidence = extraction_confidence(touches, technologies, task_types)
    return normalize_profile({
        "touches": touches or list(DEFAULT_TOUCHES),
        "technologies": technologies,
        "taskTypes": task_types,
        "confidence": confidence,
    })


def constraints_from_metadata(metadata: Dict[str, Any]) -> List[str]:
    return [c.get("constraint", "") for c in metadata.get("constraintsExtracted") or []]


def extract_from_context_pack(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Use the pack's explicit taskProfile when given, else infer from its constraints."""
    explicit = metadata.get("taskProfile")
    if explicit:
        return normalize_profile({
            "touches": explicit.get("touches") or [],
            "technologies": explicit.get("technologies") or [],
            "taskTypes": explicit.get("taskTypes") or [],
            "confidence": explicit.get("confidence") or 0.8,
        })

    text = " ".join(constraints_from_metadata(metadata)).lower()
    return normalize_profile({
        "touches": extract_touches(text),
        "technologies": extract_technologies(text),
        "taskTypes": extract_task_types(text),
        "confidence": 0.6,
    })


def validate_task_profile(
    profile: Dict[str, Any], constraints: Iterable[str]
) -> Dict[str, Any]:
    """Add touches implied by constraint text, lowering confidence per addition.

    Each added touch costs 0.1 confidence, floored at 0.5. A profile already
    below 0.5 is never raised by the floor.

    Returns {"taskProfile", "wasAutoCorrected", "addedTouches", "originalConfidence"}.
    """
    profile = normalize_profile(profile)
    text = " ".join(constraints)
    current = set(profile["touches"])
    added: List[str] = []
    for touch, patterns in _CONSTRAINT_TOUCH_PATTERNS:
        if touch in current:
            continue
        if any(p.search(text) for p in patterns):
            current.add(touch)
            added.append(touch)

    original = profile["confidence"]
    confidence = original
    if added:
        confidence = min(original, max(0.5, round(original - 0.1 * len(added), 2)))

    corrected = normalize_profile({
        "touches": sorted(current),
        "technologies": profile["technologies"],
        "taskTypes": profile["taskTypes"],
        "confidence": confidence,
    })
    return {
        "taskProfile": corrected,
        "wasAutoCorrected": bool(added),
        "addedTouches": added,
        "originalConfidence": original,
    }
