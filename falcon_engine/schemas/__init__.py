#!/usr/bin/env python3
# CUI // SP-CTI
"""Boundary models (Pydantic) and persisted entities (dataclasses)."""

from falcon_engine.schemas.core import (  # noqa: F401
    DerivedPrinciple,
    PatternDefinition,
    PatternOccurrence,
    PatternStats,
    ProvisionalAlert,
)
from falcon_engine.schemas.models import (  # noqa: F401
    ConfirmedFinding,
    EvidenceBundle,
    FailureMode,
    Severity,
    TaskProfile,
    parse_evidence,
    parse_finding,
)
