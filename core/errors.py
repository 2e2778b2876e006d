"""
Engine error hierarchy.

Every error carries a `kind` (used in logs and DispatchResult.error_kind) and a
`retryable` flag the job consumer uses to decide between retry and dead-letter.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all campaign engine failures."""

    kind = "engine"

    def __init__(self, message: str, retryable: bool = False, **context):
        self.message = message
        self.retryable = retryable
        self.context = context
        super().__init__(message)


class PlanValidationError(EngineError):
    kind = "plan_validation"


class DispatchValidationError(EngineError):
    kind = "validation"


class ConfigurationError(EngineError):
    kind = "configuration"


class StateIntegrityError(EngineError):
    """Campaign, plan or node missing at execution time. Never retried."""
    kind = "state_integrity"


class DuplicateRecordError(EngineError):
    """A unique constraint rejected an insert (dedupe key, queue job id)."""
    kind = "duplicate"

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message, retryable=False, key=key)
