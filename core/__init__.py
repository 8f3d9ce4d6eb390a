"""
Core Module Package.

Infrastructure shared by the database layer and the privacy
engine.

Components:
- clock: monotonic and UTC time source, mockable in tests
- exceptions: base exception hierarchy
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock
from .exceptions import (
    ConfigurationError,
    DatabaseError,
    ErrorClassification,
    InvalidConfigError,
    MissingConfigError,
    PlatformException,
    Severity,
)
