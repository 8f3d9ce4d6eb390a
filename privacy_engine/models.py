"""
Privacy Engine Models.

============================================================
PURPOSE
============================================================
Core data models for the privacy-preserving data engine.

This module defines:
1. Privacy envelopes (ciphertext + metadata needed to decrypt)
2. Privacy levels as closed enumerations
3. Query / aggregation types for sensitivity selection
4. Consent purposes as bit flags
5. Result and bookkeeping structures

None of these structures are shared mutable state: envelopes
and results are frozen or copied on the way out.

============================================================
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntFlag
from typing import Any, Dict, List, Optional, Sequence, Union

from .exceptions import DecryptionError


# ============================================================
# PRIVACY ENVELOPE
# ============================================================

@dataclass(frozen=True)
class PrivacyEnvelope:
    """
    Self-describing encrypted payload.

    All four cryptographic fields are required to decrypt. The
    envelope is owned by its creator/consumer pair; nothing in the
    engine keeps a reference to it after returning it.
    """
    ciphertext: bytes
    iv: bytes
    tag: bytes
    salt: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with base64 fields for storage or transport."""
        return {
            "encrypted": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "tag": base64.b64encode(self.tag).decode("ascii"),
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivacyEnvelope":
        """
        Rebuild an envelope from its serialized form.

        Raises:
            DecryptionError: if a field is missing or not valid base64
        """
        if not isinstance(data, dict):
            raise DecryptionError("Malformed envelope", reason="not_a_mapping")

        decoded = {}
        for key in ("encrypted", "iv", "tag", "salt"):
            raw = data.get(key)
            # ciphertext may legitimately be empty (empty plaintext)
            if not isinstance(raw, str) or (not raw and key != "encrypted"):
                raise DecryptionError("Malformed envelope", reason=f"missing_{key}")
            try:
                decoded[key] = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as e:
                raise DecryptionError(
                    "Malformed envelope", reason=f"invalid_{key}", cause=e
                ) from e

        return cls(
            ciphertext=decoded["encrypted"],
            iv=decoded["iv"],
            tag=decoded["tag"],
            salt=decoded["salt"],
            metadata=dict(data.get("metadata") or {}),
        )


# ============================================================
# PRIVACY LEVELS (CLOSED VARIANTS)
# ============================================================

class PrivacyLevel(Enum):
    """
    Field projection level for encrypted-field search results.

    FULL:          raw fields as stored
    PSEUDONYMIZED: direct identifiers replaced by hashed columns
    ANONYMIZED:    direct identifiers removed, hashes exposed
    """
    FULL = "full"
    PSEUDONYMIZED = "pseudonymized"
    ANONYMIZED = "anonymized"


class QueryPrivacyLevel(Enum):
    """Result shaping applied by privacy-preserving queries."""
    PUBLIC = "public"
    ANONYMIZED = "anonymized"
    DIFFERENTIAL_PRIVATE = "differential_private"


class AnonymizationLevel(Enum):
    """Ordered anonymization strength of a dataset."""
    NONE = 0
    PSEUDONYMIZATION = 1
    K_ANONYMITY = 2
    DIFFERENTIAL_PRIVACY = 3
    FULL_ANONYMIZATION = 4


class DataType(Enum):
    """Kind of data a consent decision is made for."""
    PERSONAL = "personal"
    EDUCATIONAL = "educational"
    AGGREGATED = "aggregated"
    ANONYMOUS = "anonymous"


# ============================================================
# QUERY TYPES
# ============================================================

class QueryType(Enum):
    """
    Query / aggregation types.

    Each type carries a different sensitivity assumption.
    """
    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    HISTOGRAM = "histogram"
    QUANTILE = "quantile"


# ============================================================
# CONSENT PURPOSES
# ============================================================

class ConsentPurpose(IntFlag):
    """
    Consent purposes as bit flags.

    A user's consent vector is a single int mask; a check is a
    single AND. Combined purposes require every bit.
    """
    NECESSARY = 1 << 0
    ANALYTICS = 1 << 1
    IMPROVEMENT = 1 << 2
    EDUCATIONAL = 1 << 3
    RESEARCH = 1 << 4
    MARKETING = 1 << 5
    SHARING = 1 << 6

    @classmethod
    def all(cls) -> "ConsentPurpose":
        mask = cls(0)
        for member in cls:
            mask |= member
        return mask

    @classmethod
    def parse(cls, purpose: Union["ConsentPurpose", str, int]) -> Optional["ConsentPurpose"]:
        """
        Resolve a purpose given as flag, name or mask.

        Returns None for anything unknown so callers can deny.
        """
        if isinstance(purpose, cls):
            return purpose if purpose else None
        if isinstance(purpose, str):
            member = cls.__members__.get(purpose.strip().upper())
            return member
        if isinstance(purpose, int) and not isinstance(purpose, bool):
            if purpose <= 0 or purpose & ~int(cls.all()):
                return None
            return cls(purpose)
        return None


# Common purpose bundles
CONSENT_PATTERNS: Dict[str, ConsentPurpose] = {
    "basic_analytics": ConsentPurpose.ANALYTICS | ConsentPurpose.IMPROVEMENT,
    "educational_insights": ConsentPurpose.EDUCATIONAL | ConsentPurpose.ANALYTICS,
    "full_platform": ConsentPurpose.all(),
    "minimal_privacy": ConsentPurpose.NECESSARY,
}


@dataclass(frozen=True)
class ConsentRecord:
    """Precomputed consent vector for one user."""
    user_id: str
    mask: int
    version: int = 1
    updated_at: Optional[datetime] = None

    def allows(self, purpose: ConsentPurpose) -> bool:
        return (self.mask & int(purpose)) == int(purpose)


@dataclass(frozen=True)
class ConsentRequest:
    """One entry of a batched consent check."""
    user_id: str
    purpose: Union[ConsentPurpose, str]


# ============================================================
# DIFFERENTIAL PRIVACY
# ============================================================

@dataclass(frozen=True)
class PrivacyBudget:
    """
    Per-call privacy parameters.

    Not persisted. Smaller epsilon means more noise.
    """
    epsilon: float
    delta: float = 1e-5
    sensitivity: Optional[float] = None


@dataclass
class DifferentialPrivacyResult:
    """Outcome of applying the Laplace mechanism to a value."""
    result: Union[float, List[float]]
    epsilon: float
    delta: float
    sensitivity: float
    noise_added: bool = True
    processing_time_ms: float = 0.0
    budget_remaining: Optional[float] = None

    @property
    def budget(self) -> PrivacyBudget:
        """The per-call parameters this release was made under."""
        return PrivacyBudget(self.epsilon, self.delta, self.sensitivity)

    @property
    def privacy_guarantee(self) -> str:
        return f"({self.epsilon}, {self.delta})-differential privacy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "noiseAdded": self.noise_added,
            "epsilon": self.epsilon,
            "delta": self.delta,
            "sensitivity": self.sensitivity,
            "processing_time_ms": round(self.processing_time_ms, 3),
            "budget_remaining": self.budget_remaining,
            "privacy_guarantee": self.privacy_guarantee,
        }


# ============================================================
# AGGREGATION RESULTS
# ============================================================

@dataclass
class AggregationResult:
    """
    Result of an anonymized aggregation.

    ``groups`` only ever contains groups whose population met the
    minimum group size; smaller groups are absent.
    """
    view_name: str
    aggregation_type: QueryType
    groups: List[Dict[str, Any]] = field(default_factory=list)
    min_group_size: int = 10
    noise_added: bool = False
    epsilon: Optional[float] = None

    @property
    def total(self) -> float:
        return sum(group["value"] for group in self.groups)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "view": self.view_name,
            "aggregation_type": self.aggregation_type.value,
            "groups": [dict(g) for g in self.groups],
            "min_group_size": self.min_group_size,
            "noiseAdded": self.noise_added,
            "epsilon": self.epsilon,
        }


@dataclass(frozen=True)
class AggregationParams:
    """
    Privacy parameters of one aggregation request.

    ``min_group_size`` defaults to the configured k; noise is
    applied only when ``epsilon`` is given and positive.
    """
    min_group_size: Optional[int] = None
    epsilon: Optional[float] = None
    delta: Optional[float] = None
    metric: Optional[str] = None

    @classmethod
    def from_value(
        cls, value: Union["AggregationParams", Dict[str, Any], None]
    ) -> "AggregationParams":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(
            min_group_size=value.get("min_group_size", value.get("minGroupSize")),
            epsilon=value.get("epsilon"),
            delta=value.get("delta"),
            metric=value.get("metric"),
        )


@dataclass
class RefreshReport:
    """Outcome of a concurrent refresh of registered views."""
    refreshed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed


# ============================================================
# SEARCH / QUERY OPTIONS
# ============================================================

@dataclass
class SearchOptions:
    """Options for encrypted-field search."""
    limit: Optional[int] = None
    offset: int = 0
    include_fields: Optional[Sequence[str]] = None
    privacy_level: PrivacyLevel = PrivacyLevel.ANONYMIZED
    order_by: Optional[str] = None


@dataclass
class QueryRequest:
    """
    A parameterized query plus the shaping to apply to its rows.

    ``statement`` is SQL text with named bind parameters (``:name``)
    or a SQLAlchemy selectable; values only ever travel in
    ``parameters``.
    """
    statement: Any
    parameters: Dict[str, Any] = field(default_factory=dict)
    privacy_level: QueryPrivacyLevel = QueryPrivacyLevel.PUBLIC
    epsilon: Optional[float] = None
    delta: Optional[float] = None
    query_type: QueryType = QueryType.COUNT
    # sensitivity inputs (max_value, min_value, dataset_size)
    context: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# ENGINE CONTEXT
# ============================================================

@dataclass
class PrivacyContext:
    """Who is asking, and for what purpose."""
    user_id: str
    purpose: Union[ConsentPurpose, str] = ConsentPurpose.NECESSARY
    requires_anonymization: bool = True
    anonymization_domain: str = "entity"
    dataset_size: Optional[int] = None
    max_value: Optional[float] = None
    min_value: Optional[float] = None


@dataclass
class PrivacyOperationResult:
    """
    Outcome of one engine pipeline call.

    A consent denial is a normal outcome (``success=False``,
    ``error="consent_denied"``), not an exception.
    """
    operation: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if isinstance(data, (PrivacyEnvelope, DifferentialPrivacyResult)):
            data = data.to_dict()
        return {
            "operation": self.operation,
            "success": self.success,
            "data": data,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "breakdown": {k: round(v, 3) for k, v in self.breakdown.items()},
        }


@dataclass
class BatchResult:
    """Per-item results of a batch, in input order."""
    results: List[PrivacyOperationResult] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def success(self) -> bool:
        return self.successful == self.total

    @property
    def throughput(self) -> float:
        """Items per second."""
        if self.duration_ms <= 0:
            return 0.0
        return self.total / self.duration_ms * 1000


@dataclass
class OperationMetrics:
    """Latency statistics for one named operation."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    failures: int = 0

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, duration_ms: float, success: bool = True) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        if not success:
            self.failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "average_ms": round(self.average_ms, 3),
            "min_ms": round(self.min_ms, 3) if self.count else 0.0,
            "max_ms": round(self.max_ms, 3),
            "failures": self.failures,
        }
