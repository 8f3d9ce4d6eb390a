"""
Privacy Engine - Consent Decision Matrix.

============================================================
PURPOSE
============================================================
Precomputed per-user consent vectors for O(1) checks.

Each user maps to one int bit mask over ConsentPurpose.
A check is a dict lookup plus a single AND, so it needs no
per-check cache.

============================================================
FAIL-CLOSED
============================================================

- Unknown user            -> False
- Unknown purpose         -> False
- Any internal failure    -> False (logged, never raised)

NECESSARY is granted to every known user unless disabled
in ConsentConfig.

============================================================
CONCURRENCY
============================================================
A rebuild constructs a new matrix and swaps it in under the
lock, so readers see either the old or the new matrix. Single
user updates replace that user's record; records are frozen.

============================================================
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from core.clock import ClockFactory, ClockProtocol

from .config import ConsentConfig
from .exceptions import ConsentLookupError
from .metrics import MetricsCollector
from .models import (
    AnonymizationLevel,
    CONSENT_PATTERNS,
    ConsentPurpose,
    ConsentRecord,
    ConsentRequest,
    DataType,
)


logger = logging.getLogger(__name__)

PurposeLike = Union[ConsentPurpose, str, int]


class ConsentMatrix:
    """
    Consent lookups over a precomputed user -> mask matrix.

    Usage:
        matrix = ConsentMatrix()
        matrix.precompute_consent_matrix([
            {"user_id": "u1", "consents": {"analytics": True}},
        ])
        matrix.check_consent("u1", ConsentPurpose.ANALYTICS)  # True
        matrix.check_consent("u2", ConsentPurpose.ANALYTICS)  # False
    """

    def __init__(
        self,
        config: Optional[ConsentConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._config = config or ConsentConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)

        self._matrix: Dict[str, ConsentRecord] = {}
        self._lock = threading.RLock()
        self._built_at: Optional[datetime] = None

        self._checks = 0
        self._denied = 0
        self._lookup_errors = 0

    # =========================================================
    # BUILD
    # =========================================================

    def _build_mask(self, consents: Mapping[Any, bool]) -> int:
        mask = 0
        for purpose, granted in consents.items():
            if not granted:
                continue
            flag = ConsentPurpose.parse(purpose)
            if flag is None:
                logger.debug("Ignoring unknown consent purpose in record")
                continue
            mask |= int(flag)
        if self._config.necessary_always_granted:
            mask |= int(ConsentPurpose.NECESSARY)
        return mask

    def _record_from(self, data: Union[ConsentRecord, Mapping[str, Any]]) -> ConsentRecord:
        if isinstance(data, ConsentRecord):
            mask = data.mask
            if self._config.necessary_always_granted:
                mask |= int(ConsentPurpose.NECESSARY)
            return ConsentRecord(data.user_id, mask, data.version, data.updated_at)

        user_id = data.get("user_id")
        if not user_id:
            raise ValueError("consent record without user_id")

        if "mask" in data:
            mask = int(data["mask"]) & int(ConsentPurpose.all())
            if self._config.necessary_always_granted:
                mask |= int(ConsentPurpose.NECESSARY)
        else:
            mask = self._build_mask(data.get("consents") or {})

        return ConsentRecord(
            user_id=str(user_id),
            mask=mask,
            version=int(data.get("version") or 1),
            updated_at=data.get("updated_at") or self._clock.now(),
        )

    def precompute_consent_matrix(
        self,
        user_records: Iterable[Union[ConsentRecord, Mapping[str, Any]]],
    ) -> int:
        """
        Replace the matrix with one built from ``user_records``.

        Each record is a ConsentRecord or a mapping with ``user_id``
        and either ``consents`` ({purpose: bool}) or ``mask``.
        Records without a user id are skipped.

        Returns:
            Number of users in the new matrix
        """
        start = self._clock.monotonic()
        matrix: Dict[str, ConsentRecord] = {}
        skipped = 0

        for data in user_records:
            try:
                record = self._record_from(data)
            except (ValueError, TypeError, AttributeError):
                skipped += 1
                continue
            matrix[record.user_id] = record

        with self._lock:
            self._matrix = matrix
            self._built_at = self._clock.now()

        duration_ms = self._clock.elapsed_ms(start)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed consent records")
        logger.info(f"Consent matrix built: {len(matrix)} users in {duration_ms:.2f}ms")
        return len(matrix)

    # =========================================================
    # CHECKS
    # =========================================================

    def _lookup(self, user_id: str, purpose: PurposeLike) -> bool:
        flag = ConsentPurpose.parse(purpose)
        if flag is None:
            return False

        try:
            record = self._matrix.get(user_id)
        except TypeError as e:
            raise ConsentLookupError("Unhashable user id", cause=e) from e

        if record is None:
            return False
        return record.allows(flag)

    def check_consent(self, user_id: str, purpose: PurposeLike) -> bool:
        """
        True only if ``user_id`` is known and granted every bit of
        ``purpose``. Never raises.
        """
        with self._metrics.timed("check_consent"):
            return self._check(user_id, purpose)

    def _check(self, user_id: str, purpose: PurposeLike) -> bool:
        failed = False
        try:
            allowed = self._lookup(user_id, purpose)
        except ConsentLookupError as e:
            failed = True
            logger.warning(e.to_log_format())
            allowed = False
        with self._lock:
            self._checks += 1
            if failed:
                self._lookup_errors += 1
            if not allowed:
                self._denied += 1
        return allowed

    def check_consent_batch(
        self,
        requests: Sequence[Union[ConsentRequest, Tuple[str, PurposeLike], Mapping[str, Any]]],
    ) -> List[bool]:
        """One decision per request, in input order."""
        start = self._clock.monotonic()
        results = []
        for request in requests:
            if isinstance(request, ConsentRequest):
                user_id, purpose = request.user_id, request.purpose
            elif isinstance(request, Mapping):
                user_id, purpose = request.get("user_id"), request.get("purpose")
            else:
                try:
                    user_id, purpose = request
                except (TypeError, ValueError):
                    user_id, purpose = None, None
            results.append(self._check(user_id, purpose))

        duration_ms = self._clock.elapsed_ms(start)
        self._metrics.record("check_consent_batch", duration_ms)
        logger.debug(f"Batch consent check: {len(results)} requests in {duration_ms:.2f}ms")
        return results

    # =========================================================
    # UPDATES
    # =========================================================

    def update_user_consent(
        self,
        user_id: str,
        consents: Union[Mapping[Any, bool], str, int, ConsentPurpose],
    ) -> ConsentRecord:
        """
        Replace one user's consent vector and bump its version.

        ``consents`` is a {purpose: bool} mapping, a pattern name
        from CONSENT_PATTERNS, or a purpose mask.
        """
        if isinstance(consents, str) and consents in CONSENT_PATTERNS:
            mask = self._build_mask({CONSENT_PATTERNS[consents]: True})
        elif isinstance(consents, Mapping):
            mask = self._build_mask(consents)
        else:
            flag = ConsentPurpose.parse(consents)
            if flag is None:
                raise ValueError(f"Unknown consent value: {consents!r}")
            mask = self._build_mask({flag: True})

        with self._lock:
            previous = self._matrix.get(user_id)
            record = ConsentRecord(
                user_id=user_id,
                mask=mask,
                version=(previous.version + 1) if previous else 1,
                updated_at=self._clock.now(),
            )
            self._matrix[user_id] = record

        logger.info(f"Consent updated (version {record.version})")
        return record

    def remove_user(self, user_id: str) -> bool:
        """Forget a user; later checks deny."""
        with self._lock:
            return self._matrix.pop(user_id, None) is not None

    def get_user_consents(self, user_id: str) -> Optional[Dict[str, bool]]:
        record = self._matrix.get(user_id)
        if record is None:
            return None
        return {p.name.lower(): record.allows(p) for p in ConsentPurpose}

    def can_bypass_consent(
        self,
        data_type: DataType,
        anonymization_level: AnonymizationLevel,
    ) -> bool:
        """
        Whether data at this anonymization level needs no consent.

        Fully anonymized data never does; aggregated data does not
        once it is at least k-anonymous.
        """
        if anonymization_level == AnonymizationLevel.FULL_ANONYMIZATION:
            return True
        if (
            data_type == DataType.AGGREGATED
            and anonymization_level.value >= AnonymizationLevel.K_ANONYMITY.value
        ):
            return True
        return False

    # =========================================================
    # STATS
    # =========================================================

    def __len__(self) -> int:
        return len(self._matrix)

    def get_stats(self) -> Dict[str, Any]:
        check_metrics = self._metrics.get("check_consent")
        with self._lock:
            checks, denied, lookup_errors = self._checks, self._denied, self._lookup_errors
        return {
            "matrix_size": len(self._matrix),
            "built_at": self._built_at.isoformat() if self._built_at else None,
            "checks": checks,
            "denied": denied,
            "lookup_errors": lookup_errors,
            "average_check_ms": round(check_metrics.average_ms, 4) if check_metrics else 0.0,
        }
