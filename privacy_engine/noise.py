"""
Privacy Engine - Differential Privacy Noise Injector.

============================================================
PURPOSE
============================================================
Calibrated noise for publishing aggregates.

- Laplace mechanism: scale = sensitivity / epsilon
- Gaussian mechanism: sigma = sqrt(2 ln(1.25 / delta)) * sensitivity / epsilon
- Sensitivity selected per query type

The injector is stateless apart from its random source. It
does not track cumulative spend; see ``budget.py`` for the
opt-in per-entity ledger.

============================================================
SENSITIVITY TABLE
============================================================

c = rows one entity contributes to the group (default 1)

count      1
sum        c * max(|max_value|, |min_value|)
average    min(c * (max_value - min_value) / group_size,
               max_value - min_value)            (group_size > 0)
histogram  1 per bucket (distinct-entity counts)
quantile   max_value - min_value

============================================================
"""

import logging
import math
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from core.clock import ClockFactory, ClockProtocol

from .config import DifferentialPrivacyConfig
from .exceptions import InvalidPrivacyParameterError
from .metrics import MetricsCollector
from .models import DifferentialPrivacyResult, PrivacyContext, QueryType


logger = logging.getLogger(__name__)

Numeric = Union[int, float]


class NoiseInjector:
    """
    Laplace / Gaussian noise calibrated to sensitivity and budget.

    Usage:
        injector = NoiseInjector()
        result = injector.apply_differential_privacy(
            42, QueryType.COUNT, epsilon=0.5
        )
    """

    def __init__(
        self,
        config: Optional[DifferentialPrivacyConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._config = config or DifferentialPrivacyConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)
        self._rng = np.random.default_rng(self._config.seed)
        # numpy Generators are not thread-safe
        self._rng_lock = threading.Lock()

        self._samples = 0
        self._applications = 0

    # =========================================================
    # VALIDATION
    # =========================================================

    @staticmethod
    def _check_epsilon(epsilon: float) -> float:
        if epsilon is None or not math.isfinite(epsilon) or epsilon <= 0:
            raise InvalidPrivacyParameterError("epsilon", epsilon, "must be a finite value > 0")
        return float(epsilon)

    @staticmethod
    def _check_sensitivity(sensitivity: float) -> float:
        if sensitivity is None or not math.isfinite(sensitivity) or sensitivity < 0:
            raise InvalidPrivacyParameterError(
                "sensitivity", sensitivity, "must be a finite value >= 0"
            )
        return float(sensitivity)

    @staticmethod
    def _check_delta(delta: float, strict: bool = False) -> float:
        bounds = "(0, 1)" if strict else "[0, 1)"
        if delta is None or not math.isfinite(delta):
            raise InvalidPrivacyParameterError("delta", delta, f"must be in {bounds}")
        low_ok = delta > 0 if strict else delta >= 0
        if not low_ok or delta >= 1:
            raise InvalidPrivacyParameterError("delta", delta, f"must be in {bounds}")
        return float(delta)

    # =========================================================
    # MECHANISMS
    # =========================================================

    def generate_noise(self, sensitivity: float, epsilon: float) -> float:
        """One Laplace sample with scale ``sensitivity / epsilon``."""
        scale = self._check_sensitivity(sensitivity) / self._check_epsilon(epsilon)
        with self._metrics.timed("generate_noise"):
            with self._rng_lock:
                self._samples += 1
                return float(self._rng.laplace(0.0, scale))

    def generate_gaussian_noise(
        self,
        sensitivity: float,
        epsilon: float,
        delta: Optional[float] = None,
    ) -> float:
        """One Gaussian sample for (epsilon, delta)-DP."""
        sensitivity = self._check_sensitivity(sensitivity)
        epsilon = self._check_epsilon(epsilon)
        delta = self._check_delta(
            self._config.default_delta if delta is None else delta, strict=True
        )
        sigma = math.sqrt(2 * math.log(1.25 / delta)) * sensitivity / epsilon
        with self._rng_lock:
            self._samples += 1
            return float(self._rng.normal(0.0, sigma))

    def _sample(self, mechanism: str, sensitivity: float, epsilon: float, delta: float) -> float:
        if mechanism == "laplace":
            return self.generate_noise(sensitivity, epsilon)
        if mechanism == "gaussian":
            return self.generate_gaussian_noise(sensitivity, epsilon, delta)
        raise InvalidPrivacyParameterError("mechanism", mechanism, "must be laplace or gaussian")

    # =========================================================
    # SENSITIVITY
    # =========================================================

    def calculate_sensitivity(
        self,
        query_type: QueryType,
        context: Optional[Union[PrivacyContext, Mapping[str, Any]]] = None,
    ) -> float:
        """
        Global sensitivity of ``query_type``.

        ``context`` may carry ``max_value``, ``min_value``,
        ``dataset_size`` (the group size for averages) and
        ``contributions``, the most rows one entity adds to the
        group (default 1). Sums and averages scale with it.

        Raises:
            InvalidPrivacyParameterError: average without a positive
                group size, or inverted bounds
        """
        params = _context_params(context)
        max_value = params.get("max_value")
        min_value = params.get("min_value")
        if max_value is None:
            max_value = self._config.max_contribution
        if min_value is None:
            min_value = 0.0
        if max_value < min_value:
            raise InvalidPrivacyParameterError(
                "max_value", max_value, "must be >= min_value"
            )
        contributions = params.get("contributions")
        if contributions is None:
            contributions = 1
        if contributions < 1:
            raise InvalidPrivacyParameterError(
                "contributions", contributions, "must be >= 1"
            )

        if query_type in (QueryType.COUNT, QueryType.HISTOGRAM):
            return 1.0
        if query_type == QueryType.SUM:
            return float(max(abs(max_value), abs(min_value))) * contributions
        if query_type == QueryType.AVERAGE:
            size = params.get("dataset_size")
            if size is None or size <= 0:
                raise InvalidPrivacyParameterError(
                    "dataset_size", size, "average requires a positive group size"
                )
            # one entity can move the mean by at most the full range
            spread = float(max_value - min_value)
            return min(spread * contributions / size, spread)
        if query_type == QueryType.QUANTILE:
            return float(max_value - min_value)
        raise InvalidPrivacyParameterError("query_type", query_type, "unsupported")

    # =========================================================
    # APPLICATION
    # =========================================================

    def apply_differential_privacy(
        self,
        true_value: Union[Numeric, Sequence[Numeric]],
        query_type: QueryType,
        context: Optional[Union[PrivacyContext, Mapping[str, Any]]] = None,
        epsilon: Optional[float] = None,
        delta: Optional[float] = None,
        mechanism: str = "laplace",
    ) -> DifferentialPrivacyResult:
        """
        Release ``true_value`` with calibrated noise.

        Sequences (histogram buckets) are noised element-wise with
        the same sensitivity per element.
        """
        start = self._clock.monotonic()
        epsilon = self._check_epsilon(
            self._config.default_epsilon if epsilon is None else epsilon
        )
        delta = self._check_delta(self._config.default_delta if delta is None else delta)

        params = _context_params(context)
        sensitivity = params.get("sensitivity")
        if sensitivity is None:
            sensitivity = self.calculate_sensitivity(query_type, context)
        sensitivity = self._check_sensitivity(sensitivity)

        with self._metrics.timed("apply_differential_privacy"):
            if isinstance(true_value, (list, tuple, np.ndarray)):
                result: Union[float, List[float]] = [
                    float(v) + self._sample(mechanism, sensitivity, epsilon, delta)
                    for v in true_value
                ]
            else:
                result = float(true_value) + self._sample(mechanism, sensitivity, epsilon, delta)
            self._applications += 1

        return DifferentialPrivacyResult(
            result=result,
            epsilon=epsilon,
            delta=delta,
            sensitivity=sensitivity,
            noise_added=True,
            processing_time_ms=self._clock.elapsed_ms(start),
        )

    def apply_batch(
        self,
        values: Sequence[Numeric],
        query_type: QueryType,
        context: Optional[Union[PrivacyContext, Mapping[str, Any]]] = None,
        epsilon: Optional[float] = None,
        delta: Optional[float] = None,
    ) -> List[DifferentialPrivacyResult]:
        """Independent releases of each value, in input order."""
        return [
            self.apply_differential_privacy(v, query_type, context, epsilon, delta)
            for v in values
        ]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "samples": self._samples,
            "applications": self._applications,
            "default_epsilon": self._config.default_epsilon,
            "default_delta": self._config.default_delta,
        }


def _context_params(
    context: Optional[Union[PrivacyContext, Mapping[str, Any]]],
) -> Dict[str, Any]:
    if context is None:
        return {}
    if isinstance(context, PrivacyContext):
        return {
            "max_value": context.max_value,
            "min_value": context.min_value,
            "dataset_size": context.dataset_size,
        }
    return dict(context)
