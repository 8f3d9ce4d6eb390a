"""
Privacy Engine - Privacy Budget Ledger.

============================================================
PURPOSE
============================================================
Opt-in accounting of cumulative privacy spend per entity.

Repeated noisy queries about the same entity erode the
per-query guarantee. The ledger sums epsilon/delta charged
against an entity over a rolling window (basic sequential
composition) and blocks a charge that would exceed the limit.

- Warning logged once spend crosses warning_ratio * limit
- Hard block at the limit
- Charges older than the window fall out

Without the ledger, every release carries a single-query
guarantee only.

============================================================
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Tuple

from core.clock import ClockFactory, ClockProtocol

from .config import DifferentialPrivacyConfig
from .exceptions import InvalidPrivacyParameterError, PrivacyBudgetExceededError


logger = logging.getLogger(__name__)

_TOLERANCE = 1e-12


@dataclass(frozen=True)
class BudgetCharge:
    """One recorded spend."""
    at: float
    epsilon: float
    delta: float


class PrivacyBudgetLedger:
    """
    Rolling-window epsilon/delta ledger keyed by entity id.

    Usage:
        ledger = PrivacyBudgetLedger(config)
        remaining = ledger.charge("course:42", epsilon=0.1)
    """

    def __init__(
        self,
        config: Optional[DifferentialPrivacyConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._config = config or DifferentialPrivacyConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._charges: Dict[str, Deque[BudgetCharge]] = {}
        self._lock = threading.RLock()
        self._blocked = 0

    @property
    def epsilon_limit(self) -> float:
        return self._config.epsilon_limit

    def _prune(self, entity_id: str, now: float) -> Deque[BudgetCharge]:
        """Live charges for ``entity_id``; empty entries are dropped."""
        charges = self._charges.get(entity_id)
        if charges is None:
            return deque()
        horizon = now - self._config.window_seconds
        while charges and charges[0].at <= horizon:
            charges.popleft()
        if not charges:
            del self._charges[entity_id]
        return charges

    def spent(self, entity_id: str) -> Tuple[float, float]:
        """(epsilon, delta) spent by ``entity_id`` within the window."""
        with self._lock:
            charges = self._prune(entity_id, self._clock.monotonic())
            return (
                sum(c.epsilon for c in charges),
                sum(c.delta for c in charges),
            )

    def remaining(self, entity_id: str) -> float:
        epsilon, _ = self.spent(entity_id)
        return max(0.0, self._config.epsilon_limit - epsilon)

    def can_spend(self, entity_id: str, epsilon: float, delta: float = 0.0) -> bool:
        spent_eps, spent_delta = self.spent(entity_id)
        return (
            spent_eps + epsilon <= self._config.epsilon_limit + _TOLERANCE
            and spent_delta + delta <= self._config.delta_limit + _TOLERANCE
        )

    def charge(self, entity_id: str, epsilon: float, delta: float = 0.0) -> float:
        """
        Record a spend and return the remaining epsilon.

        Raises:
            InvalidPrivacyParameterError: non-positive epsilon or negative delta
            PrivacyBudgetExceededError: the charge would pass a limit;
                nothing is recorded
        """
        if epsilon is None or epsilon <= 0:
            raise InvalidPrivacyParameterError("epsilon", epsilon, "must be > 0")
        if delta is None or delta < 0:
            raise InvalidPrivacyParameterError("delta", delta, "must be >= 0")

        limit = self._config.epsilon_limit
        with self._lock:
            now = self._clock.monotonic()
            charges = self._prune(entity_id, now)
            spent_eps = sum(c.epsilon for c in charges)
            spent_delta = sum(c.delta for c in charges)

            if (
                spent_eps + epsilon > limit + _TOLERANCE
                or spent_delta + delta > self._config.delta_limit + _TOLERANCE
            ):
                self._blocked += 1
                logger.warning(f"Privacy budget exhausted for entity {entity_id}")
                raise PrivacyBudgetExceededError(
                    entity_id=entity_id,
                    requested_epsilon=epsilon,
                    remaining_epsilon=max(0.0, limit - spent_eps),
                )

            charges.append(BudgetCharge(at=now, epsilon=epsilon, delta=delta))
            self._charges[entity_id] = charges
            total = spent_eps + epsilon

        warning_level = limit * self._config.warning_ratio
        if spent_eps < warning_level <= total:
            logger.warning(
                f"Privacy budget for entity {entity_id} at "
                f"{total / limit:.0%} of limit"
            )
        return max(0.0, limit - total)

    def reset(self, entity_id: Optional[str] = None) -> None:
        """Forget charges for one entity, or for all of them."""
        with self._lock:
            if entity_id is None:
                self._charges.clear()
            else:
                self._charges.pop(entity_id, None)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock.monotonic()
            for entity_id in list(self._charges):
                self._prune(entity_id, now)
            return {
                "tracked_entities": len(self._charges),
                "blocked_charges": self._blocked,
                "epsilon_limit": self._config.epsilon_limit,
                "window_seconds": self._config.window_seconds,
            }
