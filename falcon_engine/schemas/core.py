#!/usr/bin/env python3
# CUI // SP-CTI
"""Core domain entities persisted by the Falcon repositories.

Plain dataclasses, one per table. Repositories build them from sqlite3.Row
objects (JSON columns already decoded) and hand them back to callers.
to_dict() produces the JSON-friendly form used by the CLI --json output.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


class _Entity:
    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Workspace(_Entity):
    id: str
    name: str
    slug: str
    config: Dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Project(_Entity):
    id: str
    workspace_id: str
    name: str
    repo_origin_url: str
    repo_subdir: str = ""
    repo_path: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    created_at: str = ""
    updated_at: str = ""


@dataclass
class PatternDefinition(_Entity):
    """Reusable record of bad guidance, deduplicated per (workspace, project)."""

    id: str
    workspace_id: str
    project_id: str
    pattern_key: str
    content_hash: str
    pattern_content: str
    failure_mode: str
    finding_category: str
    severity: str
    severity_max: str
    alternative: str
    carrier_stage: str
    primary_carrier_quote_type: str
    consequence_class: Optional[str] = None
    technologies: List[str] = field(default_factory=list)
    task_types: List[str] = field(default_factory=list)
    touches: List[str] = field(default_factory=list)
    aligned_baseline_id: Optional[str] = None
    status: str = "active"
    permanent: bool = False
    superseded_by: Optional[str] = None
    archived_reason: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class PatternOccurrence(_Entity):
    """One attribution of a finding to a pattern (append-only evidence log)."""

    id: str
    workspace_id: str
    project_id: str
    pattern_id: Optional[str]
    finding_id: str
    issue_id: str
    pr_number: int
    severity: str
    evidence: Dict[str, Any]
    carrier_fingerprint: Dict[str, Any]
    carrier_excerpt_hash: str
    origin_fingerprint: Optional[Dict[str, Any]] = None
    provenance_chain: List[Dict[str, Any]] = field(default_factory=list)
    origin_excerpt_hash: Optional[str] = None
    was_injected: bool = False
    was_adhered_to: Optional[bool] = None
    status: str = "active"
    inactive_reason: Optional[str] = None
    provisional_alert_id: Optional[str] = None
    created_at: str = ""


@dataclass
class PatternStats(_Entity):
    pattern_id: str
    total_occurrences: int = 0
    active_occurrences: int = 0
    last_seen_active: Optional[str] = None
    injection_count: int = 0
    adherence_rate: Optional[float] = None


@dataclass
class ProvisionalAlert(_Entity):
    id: str
    workspace_id: str
    project_id: str
    finding_id: str
    issue_id: str
    message: str
    inject_into: str
    expires_at: str
    severity: str = "HIGH"
    touches: List[str] = field(default_factory=list)
    status: str = "active"
    promoted_to_pattern_id: Optional[str] = None
    created_at: str = ""


@dataclass
class DerivedPrinciple(_Entity):
    """Workspace-level guardrail: a seeded baseline or a promoted pattern."""

    id: str
    workspace_id: str
    principle: str
    rationale: str
    origin: str
    inject_into: str
    confidence: float
    baseline_code: Optional[str] = None
    derived_from: List[str] = field(default_factory=list)
    external_refs: List[str] = field(default_factory=list)
    touches: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    task_types: List[str] = field(default_factory=list)
    status: str = "active"
    permanent: bool = False
    superseded_by: Optional[str] = None
    promotion_key: Optional[str] = None
    archived_reason: Optional[str] = None
    archived_at: Optional[str] = None
    archived_by: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class KillSwitchStatus(_Entity):
    id: str
    workspace_id: str
    project_id: str
    state: str = "active"
    reason: Optional[str] = None
    entered_at: Optional[str] = None
    auto_resume_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class AttributionOutcome(_Entity):
    id: str
    workspace_id: str
    project_id: str
    issue_key: str
    carrier_quote_type: str
    pattern_created: bool = False
    injection_occurred: bool = False
    recurrence_observed: Optional[bool] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class HealthMetrics(_Entity):
    workspace_id: str
    project_id: str
    total_attributions: int
    verbatim_attributions: int
    paraphrase_attributions: int
    inferred_attributions: int
    injections_without_recurrence: int
    injections_with_recurrence: int
    attribution_precision_score: float
    inferred_ratio: float
    observed_improvement_rate: float
    window_start_at: str
    window_end_at: str


@dataclass
class InjectionLog(_Entity):
    id: str
    workspace_id: str
    project_id: str
    issue_id: str
    target: str
    task_profile: Dict[str, Any]
    injected_patterns: List[str] = field(default_factory=list)
    injected_principles: List[str] = field(default_factory=list)
    injected_alerts: List[str] = field(default_factory=list)
    injected_at: str = ""


@dataclass
class TaggingMiss(_Entity):
    id: str
    workspace_id: str
    project_id: str
    finding_id: str
    pattern_id: str
    actual_task_profile: Dict[str, Any]
    required_match: Dict[str, Any]
    missing_tags: List[str] = field(default_factory=list)
    status: str = "pending"
    resolution: Optional[str] = None
    created_at: str = ""
    resolved_at: Optional[str] = None


@dataclass
class ExecutionNoncompliance(_Entity):
    id: str
    workspace_id: str
    project_id: str
    finding_id: str
    issue_id: str
    pr_number: int
    violated_guidance_stage: str
    violated_guidance_location: str
    violated_guidance_excerpt: str
    possible_causes: List[str] = field(default_factory=list)
    created_at: str = ""


@dataclass
class DocUpdateRequest(_Entity):
    id: str
    workspace_id: str
    project_id: str
    finding_id: str
    issue_id: str
    finding_category: str
    scout_type: str
    target_doc: str
    update_type: str
    description: str
    decision_class: Optional[str] = None
    suggested_content: Optional[str] = None
    status: str = "pending"
    completed_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: str = ""


@dataclass
class SalienceIssue(_Entity):
    id: str
    workspace_id: str
    project_id: str
    guidance_location_hash: str
    guidance_stage: str
    guidance_location: str
    guidance_excerpt: str
    occurrence_count: int = 0
    window_days: int = 30
    noncompliance_ids: List[str] = field(default_factory=list)
    status: str = "pending"
    resolution: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    resolved_at: Optional[str] = None
