"""
Privacy Engine - Privacy-Aware Query Orchestrator.

============================================================
PURPOSE
============================================================
Composes the anonymizer, the noise injector and the store:

- Encrypted-field search via hashed index columns
- Privacy-leveled result projection
- k-anonymity-gated aggregation over registered views,
  optionally noised, cached with a TTL
- Privacy-preserving ad-hoc queries
- Secure index / view creation and concurrent refresh

============================================================
TIMEOUTS AND FAILURES
============================================================

Store calls run in worker threads, each bounded by its
configured timeout. A timeout raises OperationTimeoutError;
store failures raise QueryExecutionError. Neither is retried.

View refresh is best-effort: every registered view is
attempted, failures are reported per view. ``strict=True``
raises ViewRefreshError once all attempts have finished.

============================================================
CACHING
============================================================

Aggregations are cached by view, type, filters and privacy
parameters, so a cached answer is exactly what the same call
computed. Concurrent misses for one key share one computation.
Cache failures fall back to direct computation.

============================================================
"""

import asyncio
import copy
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from core.clock import ClockFactory, ClockProtocol

from .anonymizer import FieldAnonymizer
from .cache import AsyncSingleFlight, TTLCache
from .config import QueryConfig
from .exceptions import (
    InvalidIdentifierError,
    InvalidPrivacyParameterError,
    OperationTimeoutError,
    ViewRefreshError,
)
from .metrics import MetricsCollector
from .models import (
    AggregationParams,
    AggregationResult,
    PrivacyLevel,
    QueryPrivacyLevel,
    QueryRequest,
    QueryType,
    RefreshReport,
    SearchOptions,
)
from .noise import NoiseInjector
from .schema import DEFAULT_SECURE_INDEXES, DEFAULT_VIEWS, ViewDefinition, hash_column_name
from .store import PrivacyStore


logger = logging.getLogger(__name__)


class PrivacyQueryOrchestrator:
    """
    Async query surface of the privacy engine.

    Usage:
        orchestrator = PrivacyQueryOrchestrator(store, anonymizer, noise)
        rows = await orchestrator.search_encrypted_field(
            "student_profiles", "email", "a@example.edu",
            SearchOptions(privacy_level=PrivacyLevel.ANONYMIZED),
        )
    """

    def __init__(
        self,
        store: PrivacyStore,
        anonymizer: FieldAnonymizer,
        noise: NoiseInjector,
        config: Optional[QueryConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
        views: Sequence[ViewDefinition] = DEFAULT_VIEWS,
    ) -> None:
        self._store = store
        self._anonymizer = anonymizer
        self._noise = noise
        self._config = config or QueryConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)

        self._views: Dict[str, ViewDefinition] = {}
        for view in views:
            self.register_view(view)

        self._view_cache: TTLCache[AggregationResult] = TTLCache(
            max_size=self._config.view_cache_size,
            clock=self._clock,
            name="aggregations",
        )
        self._inflight = AsyncSingleFlight()
        self._cache_failures = 0

    # =========================================================
    # REGISTRY
    # =========================================================

    def register_view(self, view: ViewDefinition) -> None:
        self._views[view.name] = view
        logger.debug(f"Registered view: {view.name}")

    def get_view(self, name: str) -> ViewDefinition:
        view = self._views.get(name)
        if view is None:
            raise InvalidIdentifierError(str(name), "view")
        return view

    @property
    def view_names(self) -> List[str]:
        return list(self._views)

    @property
    def store(self) -> PrivacyStore:
        return self._store

    # =========================================================
    # EXECUTION
    # =========================================================

    async def _run(self, operation: str, timeout: float, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call in a worker thread with a timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Operation timed out: {operation} after {timeout}s")
            raise OperationTimeoutError(operation, timeout) from e

    # =========================================================
    # ENCRYPTED FIELD SEARCH
    # =========================================================

    async def search_encrypted_field(
        self,
        table_name: str,
        field_name: str,
        value: Any,
        options: Optional[Union[SearchOptions, Mapping[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Find rows whose ``<field>_hash`` equals the token of ``value``.

        The lookup uses the hashed index column only; nothing is
        decrypted and the table is never scanned for plaintext.
        Results are projected per ``options.privacy_level``, newest
        first, paginated by ``limit``/``offset``.
        """
        options = _search_options(options)
        limit = options.limit if options.limit is not None else self._config.default_limit
        if limit <= 0 or options.offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        limit = min(limit, self._config.max_limit)

        with self._metrics.timed("search_encrypted_field"):
            hash_column = hash_column_name(field_name)
            token = self._anonymizer.anonymize(value, field_name)
            tbl = await self._run("reflect", self._config.search_timeout,
                                  self._store.get_table, table_name)
            columns = self._projection_columns(
                [c.name for c in tbl.columns],
                options.privacy_level,
                options.include_fields,
            )
            rows = await self._run(
                "search",
                self._config.search_timeout,
                self._store.search_by_hash,
                table_name,
                hash_column,
                token,
                columns,
                options.order_by or self._config.recency_column,
                limit,
                options.offset,
            )

        logger.debug(f"Encrypted field search on {table_name}: {len(rows)} rows")
        return rows

    def _projection_columns(
        self,
        available: List[str],
        level: PrivacyLevel,
        include_fields: Optional[Sequence[str]],
    ) -> List[str]:
        """
        Columns to select for ``level``.

        FULL:          the requested columns as stored
        PSEUDONYMIZED: each direct identifier swapped for its hash column
        ANONYMIZED:    direct identifiers dropped, every hash column added
        """
        identifiers = self._anonymizer.identifier_columns
        requested = list(include_fields) if include_fields else list(available)
        for name in requested:
            if name not in available:
                raise InvalidIdentifierError(str(name), "column")

        if level is PrivacyLevel.FULL:
            return requested

        if level is PrivacyLevel.PSEUDONYMIZED:
            columns: List[str] = []
            for name in requested:
                target = identifiers.get(name, name)
                if target in available and target not in columns:
                    columns.append(target)
            return columns

        if level is PrivacyLevel.ANONYMIZED:
            columns = [
                name for name in requested
                if name not in identifiers and not self._anonymizer.is_removed_field(name)
            ]
            for hashed in identifiers.values():
                if hashed in available and hashed not in columns:
                    columns.append(hashed)
            return columns

        raise ValueError(f"Unsupported privacy level: {level!r}")

    # =========================================================
    # ANONYMIZED AGGREGATION
    # =========================================================

    async def get_anonymized_aggregation(
        self,
        view_name: str,
        aggregation_type: Union[QueryType, str],
        filters: Optional[Mapping[str, Any]] = None,
        privacy_params: Optional[Union[AggregationParams, Mapping[str, Any]]] = None,
    ) -> AggregationResult:
        """
        Aggregate a registered view with a k-anonymity floor.

        Groups whose population is below ``min_group_size`` are
        absent from the result. With ``epsilon > 0`` each group
        value is noised before release.

        Raises:
            InvalidIdentifierError: unknown view or filter column
            InvalidPrivacyParameterError: bad k, epsilon or metric
            QueryExecutionError / OperationTimeoutError: store failure
        """
        view = self.get_view(view_name)
        qtype = _query_type(aggregation_type)
        params = AggregationParams.from_value(privacy_params)
        filters = dict(filters or {})

        k = params.min_group_size if params.min_group_size is not None else self._config.min_group_size
        if not isinstance(k, int) or k < 1:
            raise InvalidPrivacyParameterError("min_group_size", k, "must be an integer >= 1")
        if params.epsilon is not None and params.epsilon < 0:
            raise InvalidPrivacyParameterError("epsilon", params.epsilon, "must be >= 0")
        metric = params.metric or view.default_metric
        if qtype in (QueryType.SUM, QueryType.AVERAGE) and metric not in view.metric_bounds:
            raise InvalidPrivacyParameterError("metric", metric, f"not a metric of {view.name}")
        if qtype is QueryType.HISTOGRAM and view.members is None:
            raise InvalidPrivacyParameterError(
                "aggregation_type", qtype.value, f"{view.name} has no member rows"
            )

        with self._metrics.timed("get_anonymized_aggregation"):
            cache_key = self._cache_key(view.name, qtype, filters, k, params, metric)
            if cache_key is None:
                result = await self._compute_aggregation(view, qtype, filters, k, params, metric)
                return result

            cached = self._cache_get(cache_key)
            if cached is not None:
                logger.debug(f"View cache hit: {view.name}")
                return copy.deepcopy(cached)

            async def compute_and_store() -> AggregationResult:
                computed = await self._compute_aggregation(view, qtype, filters, k, params, metric)
                self._cache_set(cache_key, computed, self._view_ttl(view.name, qtype))
                return computed

            result = await self._inflight.run(cache_key, compute_and_store)
            return copy.deepcopy(result)

    async def _compute_aggregation(
        self,
        view: ViewDefinition,
        qtype: QueryType,
        filters: Dict[str, Any],
        k: int,
        params: AggregationParams,
        metric: str,
    ) -> AggregationResult:
        start = self._clock.monotonic()
        groups: List[Dict[str, Any]] = []

        if qtype is QueryType.HISTOGRAM:
            # Distinct members per bucket across every view group
            bucket_column = view.group_columns[-1]
            rows = await self._run(
                "aggregate",
                self._config.aggregation_timeout,
                self._store.read_histogram,
                view,
                bucket_column,
                k,
                filters,
            )
            for row in rows:
                total = int(row["population"] or 0)
                groups.append({bucket_column: row[bucket_column], "value": total, "population": total})
        else:
            rows = await self._run(
                "aggregate",
                self._config.aggregation_timeout,
                self._store.read_view,
                view,
                k,
                filters,
            )
            for row in rows:
                group = {name: row[name] for name in view.group_columns}
                count = int(row[view.population_column] or 0)
                row_count = int(row[view.row_count_column] or 0)
                if qtype is QueryType.COUNT:
                    value = count
                elif qtype is QueryType.SUM:
                    # view metrics are per-row averages
                    value = float(row[metric] or 0.0) * row_count
                else:
                    value = float(row[metric] or 0.0)
                group["value"] = value
                group["population"] = count
                group["row_count"] = row_count
                groups.append(group)

        noise_added = bool(params.epsilon and params.epsilon > 0)
        if noise_added:
            groups = [self._noise_group(g, qtype, view, metric, params) for g in groups]

        duration_ms = self._clock.elapsed_ms(start)
        logger.debug(f"Aggregation over {view.name}: {len(groups)} groups in {duration_ms:.2f}ms")

        return AggregationResult(
            view_name=view.name,
            aggregation_type=qtype,
            groups=groups,
            min_group_size=k,
            noise_added=noise_added,
            epsilon=params.epsilon if noise_added else None,
        )

    def _noise_group(
        self,
        group: Dict[str, Any],
        qtype: QueryType,
        view: ViewDefinition,
        metric: str,
        params: AggregationParams,
    ) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        if qtype in (QueryType.SUM, QueryType.AVERAGE):
            low, high = view.metric_bounds[metric]
            context = {
                "min_value": low,
                "max_value": high,
                "dataset_size": group["row_count"],
                "contributions": view.max_rows_per_member,
            }

        released = self._noise.apply_differential_privacy(
            group["value"], qtype, context, params.epsilon, params.delta
        )
        noised = {
            key: value for key, value in group.items() if key not in ("population", "row_count")
        }
        noised["value"] = released.result
        return noised

    def _view_ttl(self, view_name: str, qtype: QueryType) -> float:
        if "anonymous" in view_name:
            return self._config.anonymous_view_ttl
        if qtype is QueryType.COUNT:
            return self._config.count_ttl
        return self._config.default_ttl

    # =========================================================
    # VIEW CACHE
    # =========================================================

    def _cache_key(
        self,
        view_name: str,
        qtype: QueryType,
        filters: Dict[str, Any],
        k: int,
        params: AggregationParams,
        metric: str,
    ) -> Optional[str]:
        try:
            return json.dumps(
                {
                    "view": view_name,
                    "type": qtype.value,
                    "filters": filters,
                    "k": k,
                    "epsilon": params.epsilon,
                    "delta": params.delta,
                    "metric": metric,
                },
                sort_keys=True,
                default=str,
            )
        except (TypeError, ValueError) as e:
            self._cache_failures += 1
            logger.warning(f"View cache key failed, computing directly: {type(e).__name__}")
            return None

    def _cache_get(self, key: str) -> Optional[AggregationResult]:
        try:
            return self._view_cache.get(key)
        except Exception as e:
            self._cache_failures += 1
            logger.warning(f"View cache read failed, computing directly: {type(e).__name__}")
            return None

    def _cache_set(self, key: str, value: AggregationResult, ttl: float) -> None:
        try:
            self._view_cache.set(key, value, ttl)
        except Exception as e:
            self._cache_failures += 1
            logger.warning(f"View cache write failed: {type(e).__name__}")

    def clear_view_cache(self) -> None:
        self._view_cache.clear()
        logger.info("View cache cleared")

    # =========================================================
    # PRIVACY-PRESERVING QUERIES
    # =========================================================

    async def execute_privacy_preserving_query(
        self,
        request: Union[QueryRequest, Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        """
        Run a parameterized query and shape its rows.

        PUBLIC:               rows as returned
        ANONYMIZED:           direct identifiers replaced by hashes
        DIFFERENTIAL_PRIVATE: anonymized, then every numeric
                              non-identifier field noised
        """
        request = _query_request(request)

        with self._metrics.timed("execute_privacy_preserving_query"):
            rows = await self._run(
                "query",
                self._config.query_timeout,
                self._store.execute_query,
                request.statement,
                request.parameters,
            )

            level = request.privacy_level
            if level is QueryPrivacyLevel.PUBLIC:
                return rows
            if level is QueryPrivacyLevel.ANONYMIZED:
                return [self._anonymizer.anonymize_record(row) for row in rows]
            if level is QueryPrivacyLevel.DIFFERENTIAL_PRIVATE:
                return [self._noise_row(self._anonymizer.anonymize_record(row), request)
                        for row in rows]

        raise ValueError(f"Unsupported privacy level: {level!r}")

    def _noise_row(self, row: Dict[str, Any], request: QueryRequest) -> Dict[str, Any]:
        noised = dict(row)
        for key, value in row.items():
            if self._is_identifier_field(key):
                continue
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                noised[key] = self._noise.apply_differential_privacy(
                    value,
                    request.query_type,
                    request.context,
                    request.epsilon,
                    request.delta,
                ).result
        return noised

    def _is_identifier_field(self, name: str) -> bool:
        identifiers = self._anonymizer.identifier_columns
        return (
            name == "id"
            or name.endswith("_id")
            or name.endswith("_hash")
            or name in identifiers
            or name in identifiers.values()
        )

    # =========================================================
    # SCHEMA MAINTENANCE
    # =========================================================

    async def create_secure_indexes(
        self,
        table_name: Optional[str] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """
        Create partial indexes on hash columns.

        With no arguments, covers every table in
        DEFAULT_SECURE_INDEXES. Returns the index names.
        """
        if table_name is None:
            plan = {name: list(cols) for name, cols in DEFAULT_SECURE_INDEXES.items()}
        else:
            plan = {table_name: list(fields or [])}

        created = []
        for name, table_fields in plan.items():
            for field_name in table_fields:
                index_name = await self._run(
                    "create_index",
                    self._config.ddl_timeout,
                    self._store.create_secure_index,
                    name,
                    field_name,
                )
                created.append(index_name)

        logger.info(f"Secure indexes ready: {len(created)}")
        return created

    async def create_materialized_views(self) -> List[str]:
        """Create every registered view that does not exist yet."""
        created = []
        for view in self._views.values():
            await self._run("create_view", self._config.ddl_timeout, self._store.create_view, view)
            created.append(view.name)
        return created

    async def refresh_materialized_views(self, strict: bool = False) -> RefreshReport:
        """
        Refresh every registered view concurrently.

        One view failing does not stop the others. Cached
        aggregations are dropped once any view was refreshed.

        Raises:
            ViewRefreshError: ``strict`` and at least one view failed
        """
        start = self._clock.monotonic()
        names = list(self._views)

        outcomes = await asyncio.gather(
            *[
                self._run("refresh_view", self._config.ddl_timeout, self._store.refresh_view, name)
                for name in names
            ],
            return_exceptions=True,
        )

        report = RefreshReport()
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, Exception):
                report.failed[name] = f"{type(outcome).__name__}: {outcome}"
                logger.warning(f"View refresh failed: {name}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.refreshed.append(name)

        if report.refreshed:
            self.clear_view_cache()

        report.duration_ms = self._clock.elapsed_ms(start)
        logger.info(
            f"View refresh: {len(report.refreshed)} refreshed, "
            f"{len(report.failed)} failed in {report.duration_ms:.2f}ms"
        )

        if strict and report.failed:
            raise ViewRefreshError(list(report.failed), report.failed)
        return report

    # =========================================================
    # STATS
    # =========================================================

    def get_performance_stats(self) -> Dict[str, Any]:
        cache_stats = self._view_cache.get_stats()
        return {
            "cached_views": cache_stats["size"],
            "view_cache": cache_stats,
            "in_flight": self._inflight.get_stats(),
            "cache_failures": self._cache_failures,
            "registered_views": self.view_names,
            "dialect": self._store.dialect_name,
            "operations": {
                name: self._metrics.get(name).to_dict()
                for name in self._metrics.get_operations()
            },
        }


# ============================================================
# ARGUMENT COERCION
# ============================================================

def _query_type(value: Union[QueryType, str]) -> QueryType:
    try:
        qtype = value if isinstance(value, QueryType) else QueryType(str(value).lower())
    except ValueError as e:
        raise InvalidPrivacyParameterError("aggregation_type", value, "unknown type") from e
    if qtype is QueryType.QUANTILE:
        raise InvalidPrivacyParameterError(
            "aggregation_type", value, "quantiles are not served from views"
        )
    return qtype


def _search_options(value: Optional[Union[SearchOptions, Mapping[str, Any]]]) -> SearchOptions:
    if value is None:
        return SearchOptions()
    if isinstance(value, SearchOptions):
        return value
    level = value.get("privacy_level", value.get("privacyLevel", PrivacyLevel.ANONYMIZED))
    return SearchOptions(
        limit=value.get("limit"),
        offset=value.get("offset", 0),
        include_fields=value.get("include_fields", value.get("includeFields")),
        privacy_level=level if isinstance(level, PrivacyLevel) else PrivacyLevel(level),
        order_by=value.get("order_by"),
    )


def _query_request(value: Union[QueryRequest, Mapping[str, Any]]) -> QueryRequest:
    if isinstance(value, QueryRequest):
        return value
    level = value.get("privacy_level", value.get("privacyLevel", QueryPrivacyLevel.PUBLIC))
    qtype = value.get("query_type", QueryType.COUNT)
    return QueryRequest(
        statement=value.get("statement", value.get("base_query")),
        parameters=dict(value.get("parameters") or {}),
        privacy_level=level if isinstance(level, QueryPrivacyLevel) else QueryPrivacyLevel(level),
        epsilon=value.get("epsilon"),
        delta=value.get("delta"),
        query_type=qtype if isinstance(qtype, QueryType) else QueryType(qtype),
        context=dict(value.get("context") or {}),
    )
