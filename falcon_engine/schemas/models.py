#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon boundary models: Pydantic validation of external input.

Everything that crosses into the engine from a collaborator (the attribution
agent's EvidenceBundle, the PR reviewer's ConfirmedFinding, document
fingerprints, task profiles) is parsed here. Malformed input raises
falcon_engine.resilience.errors.ValidationError before any decision logic
runs. Field names are snake_case; the camelCase names emitted by the
collaborators are accepted as aliases.
"""

from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from falcon_engine.resilience.errors import ValidationError


# ---- Enumerations ----

class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


class FindingCategory(str, Enum):
    SECURITY = "security"
    CORRECTNESS = "correctness"
    TESTING = "testing"
    COMPLIANCE = "compliance"
    DECISIONS = "decisions"


class FailureMode(str, Enum):
    SYNTHESIS_DRIFT = "synthesis_drift"
    MISSING_REFERENCE = "missing_reference"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    AMBIGUOUS = "ambiguous"
    INCOMPLETE = "incomplete"
    INCORRECT = "incorrect"


class QuoteType(str, Enum):
    VERBATIM = "verbatim"
    PARAPHRASE = "paraphrase"
    INFERRED = "inferred"


class CarrierStage(str, Enum):
    CONTEXT_PACK = "context-pack"
    SPEC = "spec"


class InjectTarget(str, Enum):
    CONTEXT_PACK = "context-pack"
    SPEC = "spec"
    BOTH = "both"


class InstructionKind(str, Enum):
    EXPLICITLY_HARMFUL = "explicitly_harmful"
    BENIGN_BUT_MISSING_GUARDRAILS = "benign_but_missing_guardrails"
    DESCRIPTIVE = "descriptive"
    UNKNOWN = "unknown"


class Touch(str, Enum):
    DATABASE = "database"
    AUTH = "auth"
    AUTHZ = "authz"
    NETWORK = "network"
    CACHING = "caching"
    USER_INPUT = "user_input"
    LOGGING = "logging"
    SCHEMA = "schema"
    API = "api"
    CONFIG = "config"


TOUCH_VALUES = tuple(t.value for t in Touch)


class KillSwitchState(str, Enum):
    ACTIVE = "active"
    INFERRED_PAUSED = "inferred_paused"
    FULLY_PAUSED = "fully_paused"


class InactiveReason(str, Enum):
    SUPERSEDED_DOC = "superseded_doc"
    PATTERN_ARCHIVED = "pattern_archived"
    FALSE_POSITIVE = "false_positive"


class TaggingMissResolution(str, Enum):
    BROADENED_PATTERN = "broadened_pattern"
    IMPROVED_EXTRACTION = "improved_extraction"
    FALSE_POSITIVE = "false_positive"


# Fixed mapping from reviewer scout to finding category.
SCOUT_CATEGORY_MAP = {
    "adversarial": "security",
    "security": "security",
    "bugs": "correctness",
    "tests": "testing",
    "docs": "compliance",
    "spec": "compliance",
    "decisions": "decisions",
}

KNOWN_SCOUT_TYPES = frozenset(SCOUT_CATEGORY_MAP)


def category_for_scout(scout_type: str) -> str:
    """Map a scout type to its finding category (unmapped types -> correctness)."""
    return SCOUT_CATEGORY_MAP.get((scout_type or "").strip().lower(), "correctness")


def severity_rank(severity: Union[str, Severity]) -> int:
    value = severity.value if isinstance(severity, Severity) else str(severity)
    return SEVERITY_RANK.get(value.upper(), 0)


def max_severity(a: str, b: str) -> str:
    return a if severity_rank(a) >= severity_rank(b) else b


# ---- Tagged sets ----

def validate_touches(values: Optional[Iterable[str]]) -> List[str]:
    """Normalize touches to a sorted, de-duplicated list of known tags."""
    result = set()
    for raw in values or []:
        value = raw.value if isinstance(raw, Touch) else str(raw).strip().lower()
        if value not in TOUCH_VALUES:
            raise ValidationError(
                f"Unknown touch '{raw}'. Expected one of: {', '.join(TOUCH_VALUES)}",
                field="touches",
            )
        result.add(value)
    return sorted(result)


def normalize_tags(values: Optional[Iterable[str]]) -> List[str]:
    """Normalize free-form technology/task-type tags (lowercase, unique, sorted)."""
    return sorted({str(v).strip().lower() for v in (values or []) if str(v).strip()})


# ---- Request Models ----

class _BoundaryModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
        use_enum_values=True,
    )


class ConflictSignal(_BoundaryModel):
    doc_a: str = Field(min_length=1)
    doc_b: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    excerpt_a: Optional[str] = None
    excerpt_b: Optional[str] = None


class EvidenceBundle(_BoundaryModel):
    """Structured evidence for one finding, produced by the attribution agent."""

    carrier_stage: CarrierStage
    carrier_quote: str = Field(min_length=1, max_length=2000)
    carrier_quote_type: QuoteType
    carrier_location: str = "unknown"
    carrier_instruction_kind: InstructionKind = InstructionKind.UNKNOWN.value
    has_citation: bool
    cited_sources: List[str] = Field(default_factory=list)
    source_retrievable: bool
    source_agrees_with_carrier: Optional[bool] = None
    mandatory_doc_missing: bool = False
    missing_doc_id: Optional[str] = None
    vagueness_signals: List[str] = Field(default_factory=list)
    has_testable_acceptance_criteria: bool = False
    conflict_signals: List[ConflictSignal] = Field(default_factory=list)


class GitFingerprint(_BoundaryModel):
    kind: Literal["git"]
    repo: str = Field(min_length=1)
    path: str = Field(min_length=1)
    commit_sha: str = Field(min_length=40, max_length=40)


class LinearFingerprint(_BoundaryModel):
    kind: Literal["linear"]
    doc_id: str = Field(min_length=1)
    updated_at: str
    content_hash: str = Field(min_length=64, max_length=64)


class WebFingerprint(_BoundaryModel):
    kind: Literal["web"]
    url: str = Field(min_length=1)
    retrieved_at: str
    excerpt_hash: str = Field(min_length=64, max_length=64)


class ExternalFingerprint(_BoundaryModel):
    kind: Literal["external"]
    id: str = Field(min_length=1)
    version: Optional[str] = None


DocFingerprint = Annotated[
    Union[GitFingerprint, LinearFingerprint, WebFingerprint, ExternalFingerprint],
    Field(discriminator="kind"),
]

_fingerprint_adapter = TypeAdapter(DocFingerprint)


class FindingLocation(_BoundaryModel):
    file: str = "unknown"
    line: Optional[int] = None


class ConfirmedFinding(_BoundaryModel):
    """A finding confirmed by the PR reviewer."""

    id: str = Field(min_length=1)
    scout_type: str
    title: str = Field(min_length=1)
    description: str = ""
    severity: Severity
    category: Optional[FindingCategory] = None
    evidence: Optional[str] = None
    location: Optional[FindingLocation] = None


class TaskProfile(_BoundaryModel):
    touches: List[Touch] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    task_types: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "touches": validate_touches(self.touches),
            "technologies": normalize_tags(self.technologies),
            "taskTypes": normalize_tags(self.task_types),
            "confidence": self.confidence,
        }


# ---- Parsing helpers ----

def _wrap(exc: PydanticValidationError, what: str) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()))
    return ValidationError(f"Invalid {what}: {first.get('msg', str(exc))}", field=field)


def parse_evidence(data: Union[EvidenceBundle, Dict[str, Any]]) -> EvidenceBundle:
    if isinstance(data, EvidenceBundle):
        return data
    try:
        return EvidenceBundle.model_validate(data)
    except PydanticValidationError as exc:
        raise _wrap(exc, "EvidenceBundle") from exc


def parse_finding(data: Union[ConfirmedFinding, Dict[str, Any]]) -> ConfirmedFinding:
    if isinstance(data, ConfirmedFinding):
        finding = data
    else:
        try:
            finding = ConfirmedFinding.model_validate(data)
        except PydanticValidationError as exc:
            raise _wrap(exc, "ConfirmedFinding") from exc
    if finding.scout_type not in KNOWN_SCOUT_TYPES:
        raise ValidationError(
            f"Unrecognized scoutType '{finding.scout_type}'", field="scoutType"
        )
    return finding


def parse_fingerprint(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a document fingerprint and return its camelCase dict form."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    try:
        model = _fingerprint_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise _wrap(exc, "DocFingerprint") from exc
    return model.model_dump(by_alias=True, exclude_none=True)


def parse_task_profile(data: Union[TaskProfile, Dict[str, Any]]) -> TaskProfile:
    if isinstance(data, TaskProfile):
        return data
    try:
        return TaskProfile.model_validate(data)
    except PydanticValidationError as exc:
        raise _wrap(exc, "TaskProfile") from exc


def evidence_to_dict(evidence: EvidenceBundle) -> Dict[str, Any]:
    return evidence.model_dump(by_alias=True)
