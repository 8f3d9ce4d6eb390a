"""
Privacy Engine - Facade.

============================================================
PURPOSE
============================================================
Builds every component from one PrivacyEngineConfig and
runs the end-to-end pipelines:

    protect_record:             consent -> anonymize -> encrypt
    reveal_record:              consent -> decrypt
    generate_private_analytics: consent -> noise -> budget
    process_batch:              batched consent -> protect each

Components share one clock and one metrics collector, so
latency targets are checked across the whole pipeline.

============================================================
DATABASE
============================================================
The query orchestrator exists only when a SQLAlchemy engine
is passed in or a database URL is configured. Everything
else works without a database.

============================================================
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy.engine import Engine

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import MissingConfigError
from database.engine import create_database_engine, initialize_database

from .anonymizer import FieldAnonymizer
from .budget import PrivacyBudgetLedger
from .config import PrivacyEngineConfig, get_config
from .consent import ConsentMatrix
from .encryption import CacheAcceleratedCipher
from .exceptions import DecryptionError, PrivacyEngineError
from .metrics import MetricsCollector
from .models import (
    BatchResult,
    ConsentPurpose,
    ConsentRecord,
    PrivacyContext,
    PrivacyEnvelope,
    PrivacyOperationResult,
    QueryType,
)
from .noise import NoiseInjector
from .orchestrator import PrivacyQueryOrchestrator
from .store import PrivacyStore


logger = logging.getLogger(__name__)

CONSENT_DENIED = "consent_denied"

BatchItem = Tuple[Union[Mapping[str, Any], str], PrivacyContext]


class PrivacyEngine:
    """
    Entry point for calling services.

    Usage:
        engine = create_privacy_engine()
        engine.initialize(consent_records)
        result = engine.protect_record(
            {"student_id": "s-1", "essay": "..."},
            PrivacyContext(user_id="s-1", purpose="educational"),
        )
        if result.success:
            envelope = result.data
    """

    def __init__(
        self,
        config: Optional[PrivacyEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        db_engine: Optional[Engine] = None,
    ) -> None:
        self._config = config or get_config()
        self._clock = clock or ClockFactory.get_clock()
        self._metrics = MetricsCollector(clock=self._clock)

        shared = {"clock": self._clock, "metrics": self._metrics}
        self._cipher = CacheAcceleratedCipher(self._config.encryption, **shared)
        self._anonymizer = FieldAnonymizer(self._config.anonymization, **shared)
        self._noise = NoiseInjector(self._config.differential_privacy, **shared)
        self._consent = ConsentMatrix(self._config.consent, **shared)

        self._ledger: Optional[PrivacyBudgetLedger] = None
        if self._config.differential_privacy.ledger_enabled:
            self._ledger = PrivacyBudgetLedger(self._config.differential_privacy, self._clock)

        if db_engine is None and self._config.database_url:
            db_engine = create_database_engine(self._config.database_url)

        self._queries: Optional[PrivacyQueryOrchestrator] = None
        if db_engine is not None:
            self._queries = PrivacyQueryOrchestrator(
                PrivacyStore(db_engine),
                self._anonymizer,
                self._noise,
                config=self._config.query,
                **shared,
            )

        self._initialized = False
        logger.info(
            f"Privacy engine created (ledger={'on' if self._ledger else 'off'}, "
            f"database={'on' if self._queries else 'off'})"
        )

    # =========================================================
    # COMPONENTS
    # =========================================================

    @property
    def config(self) -> PrivacyEngineConfig:
        return self._config

    @property
    def cipher(self) -> CacheAcceleratedCipher:
        return self._cipher

    @property
    def anonymizer(self) -> FieldAnonymizer:
        return self._anonymizer

    @property
    def noise(self) -> NoiseInjector:
        return self._noise

    @property
    def consent(self) -> ConsentMatrix:
        return self._consent

    @property
    def ledger(self) -> Optional[PrivacyBudgetLedger]:
        return self._ledger

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def queries(self) -> PrivacyQueryOrchestrator:
        """
        The query orchestrator.

        Raises:
            MissingConfigError: no database engine or URL was given
        """
        if self._queries is None:
            raise MissingConfigError("PRIVACY_DATABASE_URL", source="environment")
        return self._queries

    @property
    def has_database(self) -> bool:
        return self._queries is not None

    # =========================================================
    # LIFECYCLE
    # =========================================================

    def initialize(
        self,
        consent_records: Optional[Iterable[Union[ConsentRecord, Mapping[str, Any]]]] = None,
    ) -> None:
        """Build the consent matrix from ``consent_records``."""
        if consent_records is not None:
            self._consent.precompute_consent_matrix(consent_records)
        self._initialized = True
        logger.info(f"Privacy engine initialized ({len(self._consent)} consent records)")

    async def initialize_schema(self, create_tables: bool = False) -> Dict[str, List[str]]:
        """
        Create secure indexes and k-anonymity views.

        With ``create_tables``, missing platform tables are created
        first (local development and tests).
        """
        if create_tables:
            await asyncio.to_thread(initialize_database, self.queries.store.engine)
        indexes = await self.queries.create_secure_indexes()
        views = await self.queries.create_materialized_views()
        return {"indexes": indexes, "views": views}

    # =========================================================
    # PROTECTION PIPELINE
    # =========================================================

    def protect_record(
        self,
        record: Union[Mapping[str, Any], str],
        context: PrivacyContext,
        password: Optional[str] = None,
    ) -> PrivacyOperationResult:
        """
        Consent check, then anonymization, then encryption.

        Returns a failed result with ``error="consent_denied"``
        when the user has not consented to ``context.purpose``.
        The envelope is in ``result.data`` on success.
        """
        start = self._clock.monotonic()
        with self._metrics.timed("protect_record"):
            allowed = self._consent.check_consent(context.user_id, context.purpose)
            consent_ms = self._clock.elapsed_ms(start)
            if not allowed:
                return self._denied("protect_record", start, consent_ms)
            return self._protect(record, context, password, start, consent_ms)

    def _protect(
        self,
        record: Union[Mapping[str, Any], str],
        context: PrivacyContext,
        password: Optional[str],
        start: float,
        consent_ms: float,
    ) -> PrivacyOperationResult:
        step = self._clock.monotonic()
        payload: Any = record
        if context.requires_anonymization:
            if isinstance(record, str):
                payload = self._anonymizer.pseudonymize(record, context.anonymization_domain)
            else:
                payload = self._anonymizer.anonymize_record(dict(record))
        anonymize_ms = self._clock.elapsed_ms(step)

        step = self._clock.monotonic()
        serialized = json.dumps(payload, default=str, sort_keys=True)
        envelope = self._cipher.encrypt(serialized, password)
        encrypt_ms = self._clock.elapsed_ms(step)

        return PrivacyOperationResult(
            operation="protect_record",
            success=True,
            data=envelope,
            duration_ms=self._clock.elapsed_ms(start),
            breakdown={
                "consent": consent_ms,
                "anonymization": anonymize_ms,
                "encryption": encrypt_ms,
            },
        )

    def reveal_record(
        self,
        envelope: Union[PrivacyEnvelope, Dict[str, Any]],
        context: PrivacyContext,
        password: Optional[str] = None,
    ) -> PrivacyOperationResult:
        """
        Consent check, then decryption of a protected record.

        Raises:
            DecryptionError: tampered, malformed or foreign envelope
        """
        start = self._clock.monotonic()
        with self._metrics.timed("reveal_record"):
            allowed = self._consent.check_consent(context.user_id, context.purpose)
            consent_ms = self._clock.elapsed_ms(start)
            if not allowed:
                return self._denied("reveal_record", start, consent_ms)

            step = self._clock.monotonic()
            serialized = self._cipher.decrypt(envelope, password)
            try:
                data = json.loads(serialized)
            except ValueError as e:
                raise DecryptionError(
                    "Decrypted payload is not a protected record", reason="not_json", cause=e
                ) from e

            return PrivacyOperationResult(
                operation="reveal_record",
                success=True,
                data=data,
                duration_ms=self._clock.elapsed_ms(start),
                breakdown={
                    "consent": consent_ms,
                    "decryption": self._clock.elapsed_ms(step),
                },
            )

    # =========================================================
    # PRIVATE ANALYTICS
    # =========================================================

    def generate_private_analytics(
        self,
        value: Union[float, Sequence[float]],
        query_type: QueryType,
        context: PrivacyContext,
        epsilon: Optional[float] = None,
        delta: Optional[float] = None,
        entity_id: Optional[str] = None,
    ) -> PrivacyOperationResult:
        """
        Release ``value`` with differential privacy.

        Requires ANALYTICS consent from ``context.user_id``. With
        the ledger enabled, the spend is charged against
        ``entity_id`` (default: the user) before release; a charge
        past the limit raises PrivacyBudgetExceededError and
        nothing is released.
        """
        start = self._clock.monotonic()
        with self._metrics.timed("generate_private_analytics"):
            allowed = self._consent.check_consent(context.user_id, ConsentPurpose.ANALYTICS)
            consent_ms = self._clock.elapsed_ms(start)
            if not allowed:
                return self._denied("generate_private_analytics", start, consent_ms)

            step = self._clock.monotonic()
            released = self._noise.apply_differential_privacy(
                value, query_type, context, epsilon, delta
            )
            dp_ms = self._clock.elapsed_ms(step)

            if self._ledger is not None:
                released.budget_remaining = self._ledger.charge(
                    entity_id or context.user_id, released.epsilon, released.delta
                )

            return PrivacyOperationResult(
                operation="generate_private_analytics",
                success=True,
                data=released,
                duration_ms=self._clock.elapsed_ms(start),
                breakdown={"consent": consent_ms, "differential_privacy": dp_ms},
            )

    # =========================================================
    # BATCH
    # =========================================================

    def process_batch(
        self,
        items: Sequence[BatchItem],
        password: Optional[str] = None,
    ) -> BatchResult:
        """
        Protect many records with one batched consent pass.

        Results are in input order. An item that fails with a
        privacy engine error is reported as a failed result; the
        rest of the batch continues.
        """
        start = self._clock.monotonic()
        decisions = self._consent.check_consent_batch(
            [(context.user_id, context.purpose) for _, context in items]
        )
        consent_ms = self._clock.elapsed_ms(start)
        per_item_consent_ms = consent_ms / len(items) if items else 0.0

        batch = BatchResult()
        for (record, context), allowed in zip(items, decisions):
            item_start = self._clock.monotonic()
            if not allowed:
                batch.results.append(self._denied("protect_record", item_start, 0.0))
                continue
            try:
                with self._metrics.timed("protect_record"):
                    result = self._protect(
                        record, context, password, item_start, per_item_consent_ms
                    )
            except PrivacyEngineError as e:
                logger.warning(f"Batch item failed: {e.to_log_format()}")
                result = PrivacyOperationResult(
                    operation="protect_record",
                    success=False,
                    error=type(e).__name__,
                    duration_ms=self._clock.elapsed_ms(item_start),
                )
            batch.results.append(result)

        batch.duration_ms = self._clock.elapsed_ms(start)
        logger.debug(
            f"Batch processed: {batch.successful}/{batch.total} in {batch.duration_ms:.2f}ms"
        )
        return batch

    def _denied(self, operation: str, start: float, consent_ms: float) -> PrivacyOperationResult:
        logger.debug(f"{operation}: consent not granted")
        return PrivacyOperationResult(
            operation=operation,
            success=False,
            error=CONSENT_DENIED,
            duration_ms=self._clock.elapsed_ms(start),
            breakdown={"consent": consent_ms},
        )

    # =========================================================
    # STATS
    # =========================================================

    def get_performance_stats(self) -> Dict[str, Any]:
        return {
            "overall": self._metrics.to_dict(),
            "encryption": self._cipher.get_stats(),
            "anonymization": self._anonymizer.get_stats(),
            "consent": self._consent.get_stats(),
            "differential_privacy": self._noise.get_stats(),
            "budget": self._ledger.get_stats() if self._ledger else None,
            "queries": self._queries.get_performance_stats() if self._queries else None,
            "system_health": {
                "initialized": self._initialized,
                "average_response_ms": round(self._metrics.average_response_ms(), 3),
                "targets_met": self._metrics.check_targets(),
            },
        }

    def clear_caches(self) -> None:
        """Drop derived keys, tokens and cached aggregations."""
        self._cipher.clear_key_cache()
        self._anonymizer.clear_caches()
        if self._queries is not None:
            self._queries.clear_view_cache()


# ============================================================
# FACTORY
# ============================================================

def create_privacy_engine(
    config: Optional[PrivacyEngineConfig] = None,
    db_engine: Optional[Engine] = None,
    clock: Optional[ClockProtocol] = None,
    consent_records: Optional[Iterable[Union[ConsentRecord, Mapping[str, Any]]]] = None,
) -> PrivacyEngine:
    """
    Factory function to create an initialized privacy engine.

    Args:
        config: Configuration (or load from environment)
        db_engine: SQLAlchemy engine for the query orchestrator
        clock: Clock shared by every component
        consent_records: Records to build the consent matrix from

    Returns:
        Initialized PrivacyEngine instance
    """
    if config is None:
        config = PrivacyEngineConfig.from_env()

    engine = PrivacyEngine(config=config, clock=clock, db_engine=db_engine)
    engine.initialize(consent_records)
    return engine


__all__ = [
    "CONSENT_DENIED",
    "PrivacyEngine",
    "create_privacy_engine",
]
