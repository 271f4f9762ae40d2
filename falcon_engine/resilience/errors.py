#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Resilience: Structured Exception Hierarchy.

Every error the engine raises across its boundary derives from FalconError.
Repository "not found" conditions are NOT errors: lookups return None and
mutators return None/False so callers branch explicitly.

Usage:
    from falcon_engine.resilience.errors import ValidationError

    raise ValidationError("unknown scoutType 'perf'", field="scoutType")
"""


class FalconError(Exception):
    """Base exception for all Falcon errors.

    Attributes:
        service: Name of the subsystem that raised (e.g. "storage").
        retryable: Whether the caller should retry the operation.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message)
        self.service = service
        self.retryable = retryable


class FalconTransientError(FalconError):
    """Transient error: the operation may succeed on retry.

    Examples: database locked by another writer.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = True):
        super().__init__(message, service=service, retryable=retryable)


class FalconPermanentError(FalconError):
    """Permanent error: retrying will not help."""

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message, service=service, retryable=retryable)


class ValidationError(FalconPermanentError):
    """Malformed input rejected at the engine boundary.

    Attributes:
        field: Dotted path of the offending field, when known.
    """

    def __init__(self, message: str, field: str = ""):
        super().__init__(message, service="schemas", retryable=False)
        self.field = field


class ImmutableFieldError(FalconPermanentError):
    """Attempt to change a write-once pattern field in strict mode."""

    def __init__(self, field: str):
        super().__init__(
            f"Field '{field}' is immutable once a pattern is created",
            service="storage",
            retryable=False,
        )
        self.field = field


class TransactionError(FalconPermanentError):
    """An atomic multi-row operation failed and was rolled back.

    Attributes:
        operation: Name of the aborted operation (e.g. "decay_sweep").
    """

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message, service="storage", retryable=False)
        self.operation = operation


class ConfigurationError(FalconPermanentError):
    """Configuration error: missing or invalid configuration."""

    def __init__(self, message: str, config_key: str = ""):
        super().__init__(message, service="config", retryable=False)
        self.config_key = config_key
