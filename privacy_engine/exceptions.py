"""
Privacy Engine - Exceptions.

============================================================
CUSTOM EXCEPTIONS
============================================================

PrivacyEngineError (base, extends PlatformException)
├── DecryptionError              tag mismatch / malformed envelope
├── AnonymizationError           missing salt or namespace
├── ConsentLookupError           internal only, resolved as deny
├── InvalidIdentifierError       table/column/view name rejected
├── InvalidPrivacyParameterError epsilon, delta, sensitivity, k
├── PrivacyBudgetExceededError   ledger limit reached
├── QueryExecutionError          underlying store failure
├── OperationTimeoutError        latency budget exceeded
└── ViewRefreshError             strict refresh with failures

============================================================
FAILURE SAFETY
============================================================

- Decryption never returns partial plaintext; it raises.
- Consent lookups never raise to the caller; they deny.
- Below-threshold aggregation groups are excluded, not errors.
- Nothing in this subsystem retries automatically.

============================================================
"""

from typing import Any, Dict, List, Optional

from core.exceptions import (
    ErrorClassification,
    PlatformException,
    Severity,
)


class PrivacyEngineError(PlatformException):
    """Base exception for all privacy engine errors."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.RECOVERABLE


class DecryptionError(PrivacyEngineError):
    """
    Raised when an envelope cannot be decrypted.

    Covers authentication tag mismatch, truncated or non-base64
    fields, and wrong passwords. Fatal for the calling request.
    """

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, reason: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if reason:
            context["reason"] = reason
        super().__init__(message, context=context, **kwargs)
        self.reason = reason


class AnonymizationError(PrivacyEngineError):
    """Raised when the anonymizer is missing its salt or a namespace."""

    default_severity = Severity.CRITICAL
    default_classification = ErrorClassification.NON_RECOVERABLE


class ConsentLookupError(PrivacyEngineError):
    """
    Raised inside the consent matrix when a lookup cannot be evaluated.

    Never escapes the public API: callers receive ``False``.
    """

    default_severity = Severity.MEDIUM

    def __init__(self, message: str, user_ref: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if user_ref:
            context["user_ref"] = user_ref
        super().__init__(message, context=context, **kwargs)


class InvalidIdentifierError(PrivacyEngineError):
    """Raised when a SQL identifier fails validation."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, identifier: str, kind: str = "identifier"):
        super().__init__(
            message=f"Invalid {kind} name",
            context={"kind": kind, "length": len(identifier or "")},
        )
        self.kind = kind


class InvalidPrivacyParameterError(PrivacyEngineError, ValueError):
    """Raised for out-of-range epsilon, delta, sensitivity or k values."""

    default_severity = Severity.MEDIUM

    def __init__(self, parameter: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid privacy parameter {parameter}: {reason}",
            context={"parameter": parameter, "value": str(value)[:50]},
        )
        self.parameter = parameter


class PrivacyBudgetExceededError(PrivacyEngineError):
    """Raised when a query would push an entity past its epsilon limit."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        entity_id: str,
        requested_epsilon: float,
        remaining_epsilon: float,
    ):
        super().__init__(
            message=f"Privacy budget exceeded for entity {entity_id}",
            context={
                "entity_id": entity_id,
                "requested_epsilon": requested_epsilon,
                "remaining_epsilon": remaining_epsilon,
            },
        )
        self.entity_id = entity_id
        self.remaining_epsilon = remaining_epsilon


class QueryExecutionError(PrivacyEngineError):
    """
    Raised when the underlying store fails.

    Propagates with operation context. No retry is attempted.
    """

    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        if target:
            context["target"] = target
        super().__init__(message, context=context, **kwargs)
        self.operation = operation
        self.target = target


class OperationTimeoutError(PrivacyEngineError):
    """Raised when an operation exceeds its configured timeout."""

    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message=f"Operation timed out: {operation}",
            context={"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ViewRefreshError(PrivacyEngineError):
    """Raised by a strict refresh when one or more views failed."""

    def __init__(self, failed_views: List[str], errors: Optional[Dict[str, str]] = None):
        super().__init__(
            message=f"Failed to refresh {len(failed_views)} view(s)",
            context={"failed_views": failed_views, "errors": errors or {}},
        )
        self.failed_views = failed_views


__all__ = [
    "PrivacyEngineError",
    "DecryptionError",
    "AnonymizationError",
    "ConsentLookupError",
    "InvalidIdentifierError",
    "InvalidPrivacyParameterError",
    "PrivacyBudgetExceededError",
    "QueryExecutionError",
    "OperationTimeoutError",
    "ViewRefreshError",
]
