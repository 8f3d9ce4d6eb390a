"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Time source shared by every privacy engine component.

- Monotonic readings for cache TTLs, budget windows and
  latency measurement
- UTC wall-clock readings for consent record timestamps
- A mock that only moves when a test advances it

============================================================
RULES
============================================================
- Expiry and latency never read the wall clock
- Wall-clock values are always timezone-aware UTC
- One process-wide clock, replaceable in tests

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Time source interface."""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC datetime."""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic reading in seconds (arbitrary origin)."""

    def elapsed_ms(self, start: float) -> float:
        """Milliseconds since a previous monotonic reading."""
        return (self.monotonic() - start) * 1000


# ============================================================
# SYSTEM CLOCK
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock backed by the OS."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Deterministic clock for tests.

    ``advance`` moves both readings together; ``set_time`` jumps
    the wall clock only, the way an NTP correction would.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = _as_utc(initial_time or datetime.now(timezone.utc))
        self._monotonic = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """Move time forward; kwargs are passed to timedelta."""
        delta = timedelta(seconds=seconds, **kwargs)
        with self._lock:
            self._time += delta
            self._monotonic += delta.total_seconds()

    def set_time(self, new_time: datetime) -> None:
        with self._lock:
            self._time = _as_utc(new_time)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Holder of the process-wide clock."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance

    @classmethod
    def set_clock(cls, clock: Optional[ClockProtocol]) -> None:
        """Install ``clock``; None restores the system clock on next use."""
        with cls._lock:
            cls._instance = clock


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
]
