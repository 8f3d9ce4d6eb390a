"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Base exception hierarchy shared by the database layer and
the privacy engine.

Every exception carries a severity (for alerting), a
classification (for the caller's handling decision) and a
context dict. Context holds identifiers of configuration
keys, tables and operations only, never record values.

============================================================
EXCEPTION HIERARCHY
============================================================
PlatformException
├── ConfigurationError
│   ├── MissingConfigError
│   └── InvalidConfigError
├── DatabaseError
└── privacy_engine.exceptions.PrivacyEngineError (subtree)

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class Severity(Enum):
    """Alerting severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorClassification(Enum):
    """
    What the caller can do about an error.

    RECOVERABLE:     fix the input and call again
    TRANSIENT:       the same call may succeed later
    NON_RECOVERABLE: needs operator intervention or a new secret
    """
    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    NON_RECOVERABLE = "non_recoverable"


# ============================================================
# BASE EXCEPTION
# ============================================================

class PlatformException(Exception):
    """Base exception for every error raised by this project."""

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity or self.default_severity
        self.classification = classification or self.default_classification
        self.context = dict(context or {})
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            # The type only; driver messages can echo bound values
            self.context["cause_type"] = type(cause).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """One-line form for log records."""
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if self.context:
            line += " | " + ", ".join(f"{k}={v}" for k, v in self.context.items())
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(PlatformException):
    """Configuration is missing or unusable. Raised at startup."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


class MissingConfigError(ConfigurationError):
    """A required setting (usually a secret) is not set."""

    def __init__(self, key: str, source: str = "config"):
        super().__init__(
            f"Missing required configuration: {key}",
            config_key=key,
            context={"source": source},
        )


class InvalidConfigError(ConfigurationError):
    """A setting is outside its allowed range."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration for {key}: {reason}",
            config_key=key,
            context={"reason": reason, "actual_value": str(value)[:100]},
        )


# ============================================================
# DATABASE ERRORS
# ============================================================

class DatabaseError(PlatformException):
    """Connection, DDL or transaction failure in the database layer."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        if table:
            context["table"] = table
        super().__init__(message, context=context, **kwargs)


__all__ = [
    "Severity",
    "ErrorClassification",
    "PlatformException",
    "ConfigurationError",
    "MissingConfigError",
    "InvalidConfigError",
    "DatabaseError",
]
