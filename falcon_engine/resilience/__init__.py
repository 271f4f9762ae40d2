#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Resilience Package: error hierarchy and the pattern-creation kill switch."""

from falcon_engine.resilience.errors import (  # noqa: F401
    ConfigurationError,
    FalconError,
    FalconPermanentError,
    FalconTransientError,
    ImmutableFieldError,
    TransactionError,
    ValidationError,
)
