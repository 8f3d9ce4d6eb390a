"""
Privacy Query Orchestrator Tests.

============================================================
PURPOSE
============================================================
Store-backed tests for the async query surface, against a
SQLite file database.

TEST CATEGORIES:
- Encrypted field search and privacy-level projection
- k-anonymity-gated aggregation, noise and caching
- Privacy-preserving ad-hoc queries
- Schema maintenance (indexes, views, refresh)
- Timeouts and store failures

============================================================
"""

import asyncio
import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import inspect

from core.clock import MockClock
from database.engine import create_all_tables, create_database_engine, transaction_scope
from database.models import StudentProfile, WritingSession
from privacy_engine.anonymizer import FieldAnonymizer
from privacy_engine.config import (
    AnonymizationConfig,
    DifferentialPrivacyConfig,
    QueryConfig,
)
from privacy_engine.exceptions import (
    InvalidIdentifierError,
    InvalidPrivacyParameterError,
    OperationTimeoutError,
    QueryExecutionError,
    ViewRefreshError,
)
from privacy_engine.models import (
    AggregationParams,
    PrivacyLevel,
    QueryPrivacyLevel,
    QueryRequest,
    QueryType,
    SearchOptions,
)
from privacy_engine.noise import NoiseInjector
from privacy_engine.orchestrator import PrivacyQueryOrchestrator
from privacy_engine.store import PrivacyStore


DAY_1 = datetime(2026, 10, 1, 9, 0, 0)
DAY_2 = datetime(2026, 10, 2, 9, 0, 0)
WRITING_VIEW = "mv_writing_metrics_anonymous"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def db_engine(tmp_path):
    engine = create_database_engine(f"sqlite:///{tmp_path / 'privacy.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def anonymizer():
    return FieldAnonymizer(AnonymizationConfig(salt="test-salt"))


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def store(db_engine):
    return PrivacyStore(db_engine)


@pytest.fixture
def orchestrator(store, anonymizer, clock):
    return PrivacyQueryOrchestrator(
        store,
        anonymizer,
        NoiseInjector(DifferentialPrivacyConfig(seed=1)),
        clock=clock,
    )


def profile(anonymizer, index, email, created_at=DAY_1):
    user_id, student_id = f"u{index}", f"s{index}"
    return StudentProfile(
        user_id=user_id,
        student_id=student_id,
        email=email,
        user_id_hash=anonymizer.anonymize(user_id, "user_id"),
        student_id_hash=anonymizer.anonymize(student_id, "student_id"),
        email_hash=anonymizer.anonymize(email, "email"),
        grade_level=9,
        cohort="A",
        created_at=created_at,
    )


def sessions(anonymizer, students, assignment_type, day, word_count=500, per_student=1):
    rows = []
    for student in students:
        for n in range(per_student):
            rows.append(WritingSession(
                student_id=student,
                student_id_hash=anonymizer.anonymize(student, "student_id"),
                assignment_type=assignment_type,
                session_date=day + timedelta(minutes=n),
                word_count=word_count,
                session_duration=30.0,
                revision_count=2,
                privacy_level="anonymized",
            ))
    return rows


@pytest.fixture
def profiles(db_engine, anonymizer):
    with transaction_scope(db_engine) as session:
        session.add_all([
            profile(anonymizer, 1, "alice@example.edu", DAY_1),
            profile(anonymizer, 2, "alice@example.edu", DAY_1 + timedelta(hours=2)),
            profile(anonymizer, 3, "alice@example.edu", DAY_1 + timedelta(hours=1)),
            profile(anonymizer, 4, "bob@example.edu"),
        ])


@pytest.fixture
def writing_data(db_engine, anonymizer):
    students = [f"s{i}" for i in range(20)]
    with transaction_scope(db_engine) as session:
        # 12 distinct students: released at k=10
        session.add_all(sessions(anonymizer, students[:12], "essay", DAY_1, word_count=500))
        # 9 distinct students over 27 sessions: withheld at k=10
        session.add_all(sessions(anonymizer, students[:9], "poem", DAY_1, word_count=100, per_student=3))
        # exactly 10 distinct students: released at k=10
        session.add_all(sessions(anonymizer, students[:10], "essay", DAY_2, word_count=700))
    return students


# ============================================================
# ENCRYPTED FIELD SEARCH TESTS
# ============================================================

class TestEncryptedFieldSearch:
    """Tests for search_encrypted_field()."""

    @pytest.mark.asyncio
    async def test_anonymized_never_returns_identifiers(self, orchestrator, profiles):
        rows = await orchestrator.search_encrypted_field(
            "student_profiles",
            "email",
            "alice@example.edu",
            {"privacyLevel": "anonymized"},
        )

        assert len(rows) == 3
        for row in rows:
            assert "email" not in row
            assert "student_id" not in row
            assert "user_id" not in row
            assert "email_hash" in row
            assert "student_id_hash" in row
            assert "alice@example.edu" not in row.values()

    @pytest.mark.asyncio
    async def test_newest_first(self, orchestrator, profiles):
        rows = await orchestrator.search_encrypted_field(
            "student_profiles", "email", "alice@example.edu"
        )

        created = [row["created_at"] for row in rows]
        assert created == sorted(created, reverse=True)

    @pytest.mark.asyncio
    async def test_pseudonymized_substitutes_hashes(self, orchestrator, profiles, anonymizer):
        rows = await orchestrator.search_encrypted_field(
            "student_profiles",
            "email",
            "alice@example.edu",
            SearchOptions(
                privacy_level=PrivacyLevel.PSEUDONYMIZED,
                include_fields=["email", "student_id", "grade_level"],
            ),
        )

        assert rows
        for row in rows:
            assert set(row) == {"email_hash", "student_id_hash", "grade_level"}
            assert row["email_hash"] == anonymizer.anonymize("alice@example.edu", "email")

    @pytest.mark.asyncio
    async def test_full_returns_raw_fields(self, orchestrator, profiles):
        rows = await orchestrator.search_encrypted_field(
            "student_profiles",
            "email",
            "bob@example.edu",
            SearchOptions(privacy_level=PrivacyLevel.FULL, include_fields=["email", "cohort"]),
        )

        assert rows == [{"email": "bob@example.edu", "cohort": "A"}]

    @pytest.mark.asyncio
    async def test_pagination(self, orchestrator, profiles):
        first = await orchestrator.search_encrypted_field(
            "student_profiles", "email", "alice@example.edu", SearchOptions(limit=2)
        )
        rest = await orchestrator.search_encrypted_field(
            "student_profiles", "email", "alice@example.edu", SearchOptions(limit=2, offset=2)
        )

        assert len(first) == 2
        assert len(rest) == 1
        assert rest[0]["id"] not in {row["id"] for row in first}

    @pytest.mark.asyncio
    async def test_no_match(self, orchestrator, profiles):
        rows = await orchestrator.search_encrypted_field(
            "student_profiles", "email", "nobody@example.edu"
        )

        assert rows == []

    @pytest.mark.asyncio
    async def test_search_by_student_id(self, orchestrator, profiles):
        rows = await orchestrator.search_encrypted_field("student_profiles", "student_id", "s4")

        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_injection_in_table_name_rejected(self, orchestrator, profiles):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.search_encrypted_field(
                "student_profiles; DROP TABLE student_profiles", "email", "x"
            )

    @pytest.mark.asyncio
    async def test_unknown_table(self, orchestrator):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.search_encrypted_field("no_such_table", "email", "x")

    @pytest.mark.asyncio
    async def test_field_without_hash_column(self, orchestrator, profiles):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.search_encrypted_field("student_profiles", "cohort", "A")

    @pytest.mark.asyncio
    async def test_unknown_include_field(self, orchestrator, profiles):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.search_encrypted_field(
                "student_profiles",
                "email",
                "alice@example.edu",
                SearchOptions(include_fields=["ssn"]),
            )

    @pytest.mark.asyncio
    async def test_unknown_order_column(self, orchestrator, profiles):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.search_encrypted_field(
                "student_profiles",
                "email",
                "alice.edu",
                SearchOptions(order_by="no_such_column"),
            )

    @pytest.mark.asyncio
    async def test_invalid_limit(self, orchestrator, profiles):
        with pytest.raises(ValueError):
            await orchestrator.search_encrypted_field(
                "student_profiles", "email", "x", SearchOptions(limit=0)
            )


# ============================================================
# AGGREGATION TESTS
# ============================================================

class TestAnonymizedAggregation:
    """Tests for get_anonymized_aggregation()."""

    @pytest.fixture
    async def views(self, orchestrator, writing_data):
        await orchestrator.create_materialized_views()
        return writing_data

    @pytest.mark.asyncio
    async def test_small_groups_excluded(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"minGroupSize": 10}
        )

        buckets = {(g["date"], g["assignment_type"]): g["value"] for g in result.groups}
        assert buckets == {
            ("2026-10-01", "essay"): 12,
            ("2026-10-02", "essay"): 10,
        }
        assert all(g["assignment_type"] != "poem" for g in result.groups)
        assert result.noise_added is False

    @pytest.mark.asyncio
    async def test_higher_k_excludes_more(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, QueryType.COUNT, {}, AggregationParams(min_group_size=11)
        )

        assert [g["value"] for g in result.groups] == [12]
        assert result.min_group_size == 11

    @pytest.mark.asyncio
    async def test_filters(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {"date": "2026-10-02"}
        )

        assert len(result.groups) == 1
        assert result.groups[0]["value"] == 10

    @pytest.mark.asyncio
    async def test_unknown_filter_column(self, orchestrator, views):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.get_anonymized_aggregation(
                WRITING_VIEW, "count", {"student_id": "s1"}
            )

    @pytest.mark.asyncio
    async def test_average(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "average", {}, {"metric": "avg_word_count"}
        )

        values = {g["date"]: g["value"] for g in result.groups}
        assert values == {"2026-10-01": pytest.approx(500.0), "2026-10-02": pytest.approx(700.0)}

    @pytest.mark.asyncio
    async def test_sum(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "sum", {"date": "2026-10-01"}, {"metric": "avg_word_count"}
        )

        assert result.groups[0]["value"] == pytest.approx(6000.0)

    @pytest.mark.asyncio
    async def test_sum_counts_every_session(self, orchestrator, db_engine, anonymizer):
        students = [f"m{i}" for i in range(10)]
        with transaction_scope(db_engine) as session:
            session.add_all(sessions(anonymizer, students, "journal", DAY_1, per_student=3))
        await orchestrator.create_materialized_views()

        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "sum", {"assignment_type": "journal"}, {"metric": "avg_word_count"}
        )

        assert len(result.groups) == 1
        assert result.groups[0]["value"] == pytest.approx(15000.0)
        assert result.groups[0]["population"] == 10
        assert result.groups[0]["row_count"] == 30

    @pytest.mark.asyncio
    async def test_histogram_counts_distinct_students(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "histogram")

        # s0-s9 wrote essays on both days; each counts once
        assert result.groups == [
            {"assignment_type": "essay", "value": 12, "population": 12},
        ]

    @pytest.mark.asyncio
    async def test_histogram_same_students_on_two_days(self, orchestrator, db_engine, anonymizer):
        students = [f"m{i}" for i in range(10)]
        with transaction_scope(db_engine) as session:
            session.add_all(sessions(anonymizer, students, "journal", DAY_1, per_student=2))
            session.add_all(sessions(anonymizer, students, "journal", DAY_2))

        result = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "histogram")

        assert result.groups == [
            {"assignment_type": "journal", "value": 10, "population": 10},
        ]

    @pytest.mark.asyncio
    async def test_histogram_filters_and_k(self, orchestrator, views):
        day_two = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "histogram", {"date": "2026-10-02"}
        )
        strict = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "histogram", {}, {"min_group_size": 13}
        )

        assert [g["value"] for g in day_two.groups] == [10]
        assert strict.groups == []

    @pytest.mark.asyncio
    async def test_histogram_rejects_metric_filter(self, orchestrator, views):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.get_anonymized_aggregation(
                WRITING_VIEW, "histogram", {"avg_word_count": 500}
            )

    @pytest.mark.asyncio
    async def test_noise_applied_with_epsilon(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"epsilon": 1.0}
        )

        assert result.noise_added is True
        assert result.epsilon == 1.0
        assert len(result.groups) == 2
        for group in result.groups:
            assert "population" not in group
            assert isinstance(group["value"], float)

    @pytest.mark.asyncio
    async def test_zero_epsilon_means_no_noise(self, orchestrator, views):
        result = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"epsilon": 0}
        )

        assert result.noise_added is False

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, orchestrator, views):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.get_anonymized_aggregation("mv_unknown", "count")
        with pytest.raises(InvalidPrivacyParameterError):
            await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "median")
        with pytest.raises(InvalidPrivacyParameterError):
            await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "quantile")
        with pytest.raises(InvalidPrivacyParameterError):
            await orchestrator.get_anonymized_aggregation(
                WRITING_VIEW, "count", {}, {"min_group_size": 0}
            )
        with pytest.raises(InvalidPrivacyParameterError):
            await orchestrator.get_anonymized_aggregation(
                WRITING_VIEW, "average", {}, {"metric": "word_count"}
            )
        with pytest.raises(InvalidPrivacyParameterError):
            await orchestrator.get_anonymized_aggregation(
                WRITING_VIEW, "count", {}, {"epsilon": -1}
            )

    @pytest.mark.asyncio
    async def test_other_views(self, orchestrator, views):
        progress = await orchestrator.get_anonymized_aggregation(
            "mv_student_progress_anonymous", "count"
        )
        interactions = await orchestrator.get_anonymized_aggregation(
            "mv_ai_interactions_anonymous", "count", {}, {"min_group_size": 5}
        )

        assert progress.groups == []
        assert interactions.groups == []


class TestAggregationCache:
    """Tests for the aggregation cache."""

    @pytest.fixture
    async def views(self, orchestrator, writing_data):
        await orchestrator.create_materialized_views()
        return writing_data

    @pytest.mark.asyncio
    async def test_repeat_call_hits_cache(self, orchestrator, views):
        first = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        second = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")

        assert first.groups == second.groups
        assert orchestrator.get_performance_stats()["view_cache"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_noisy_answer_is_stable_while_cached(self, orchestrator, views):
        first = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"epsilon": 0.5}
        )
        second = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"epsilon": 0.5}
        )

        assert first.groups == second.groups

    @pytest.mark.asyncio
    async def test_privacy_parameters_are_part_of_key(self, orchestrator, views):
        plain = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        noisy = await orchestrator.get_anonymized_aggregation(
            WRITING_VIEW, "count", {}, {"epsilon": 1.0}
        )

        assert plain.noise_added is False
        assert noisy.noise_added is True

    @pytest.mark.asyncio
    async def test_cached_results_are_copies(self, orchestrator, views):
        first = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        first.groups.clear()

        second = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        assert len(second.groups) == 2

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(
        self, orchestrator, views, clock, db_engine, anonymizer
    ):
        before = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        assert len(before.groups) == 2

        # a tenth poem student brings the withheld bucket to k
        with transaction_scope(db_engine) as session:
            session.add_all(sessions(anonymizer, ["s19"], "poem", DAY_1))

        cached = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        assert len(cached.groups) == 2

        clock.advance(3601)

        fresh = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        assert len(fresh.groups) == 3

    @pytest.mark.asyncio
    async def test_concurrent_misses_coalesce(self, orchestrator, views):
        results = await asyncio.gather(*[
            orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
            for _ in range(5)
        ])

        assert all(r.groups == results[0].groups for r in results)
        in_flight = orchestrator.get_performance_stats()["in_flight"]
        assert in_flight["leaders"] == 1
        assert in_flight["coalesced"] == 4

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back(self, orchestrator, views, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("cache down")

        monkeypatch.setattr(orchestrator._view_cache, "get", broken)
        monkeypatch.setattr(orchestrator._view_cache, "set", broken)

        result = await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")

        assert len(result.groups) == 2
        assert orchestrator.get_performance_stats()["cache_failures"] == 2

    @pytest.mark.asyncio
    async def test_clear_view_cache(self, orchestrator, views):
        await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")
        orchestrator.clear_view_cache()

        assert orchestrator.get_performance_stats()["cached_views"] == 0


# ============================================================
# PRIVACY-PRESERVING QUERY TESTS
# ============================================================

class TestPrivacyPreservingQuery:
    """Tests for execute_privacy_preserving_query()."""

    STATEMENT = "SELECT email, student_id, grade_level FROM student_profiles WHERE cohort = :cohort"

    @pytest.mark.asyncio
    async def test_public_passthrough(self, orchestrator, profiles):
        rows = await orchestrator.execute_privacy_preserving_query(
            QueryRequest(statement=self.STATEMENT, parameters={"cohort": "A"})
        )

        assert len(rows) == 4
        assert {row["email"] for row in rows} == {"alice@example.edu", "bob@example.edu"}

    @pytest.mark.asyncio
    async def test_anonymized(self, orchestrator, profiles, anonymizer):
        rows = await orchestrator.execute_privacy_preserving_query({
            "statement": self.STATEMENT,
            "parameters": {"cohort": "A"},
            "privacyLevel": "anonymized",
        })

        for row in rows:
            assert set(row) == {"email_hash", "student_id_hash", "grade_level"}
            assert row["grade_level"] == 9
        assert anonymizer.anonymize("bob@example.edu", "email") in {r["email_hash"] for r in rows}

    @pytest.mark.asyncio
    async def test_differential_private(self, orchestrator, profiles):
        rows = await orchestrator.execute_privacy_preserving_query(
            QueryRequest(
                statement="SELECT id, student_id, grade_level FROM student_profiles",
                privacy_level=QueryPrivacyLevel.DIFFERENTIAL_PRIVATE,
                epsilon=1.0,
            )
        )

        assert len(rows) == 4
        for row in rows:
            assert "student_id" not in row
            assert isinstance(row["student_id_hash"], str)
            assert isinstance(row["id"], int)
            assert isinstance(row["grade_level"], float)
        assert any(row["grade_level"] != 9 for row in rows)

    @pytest.mark.asyncio
    async def test_values_only_travel_as_parameters(self, orchestrator, profiles):
        rows = await orchestrator.execute_privacy_preserving_query(
            QueryRequest(statement=self.STATEMENT, parameters={"cohort": "A' OR '1'='1"})
        )

        assert rows == []

    @pytest.mark.asyncio
    async def test_store_failure(self, orchestrator):
        with pytest.raises(QueryExecutionError) as exc_info:
            await orchestrator.execute_privacy_preserving_query(
                QueryRequest(statement="SELECT * FROM missing_table")
            )

        assert exc_info.value.operation == "query"


# ============================================================
# SCHEMA MAINTENANCE TESTS
# ============================================================

class TestSchemaMaintenance:
    """Tests for index and view management."""

    @pytest.mark.asyncio
    async def test_create_secure_indexes(self, orchestrator, db_engine):
        created = await orchestrator.create_secure_indexes()

        assert "idx_student_profiles_email_hash" in created
        assert "idx_writing_sessions_student_id_hash" in created
        names = {index["name"] for index in inspect(db_engine).get_indexes("student_profiles")}
        assert "idx_student_profiles_email_hash" in names

    @pytest.mark.asyncio
    async def test_create_secure_indexes_idempotent(self, orchestrator):
        first = await orchestrator.create_secure_indexes("student_profiles", ["email"])
        second = await orchestrator.create_secure_indexes("student_profiles", ["email"])

        assert first == second == ["idx_student_profiles_email_hash"]

    @pytest.mark.asyncio
    async def test_secure_index_requires_hash_column(self, orchestrator):
        with pytest.raises(InvalidIdentifierError):
            await orchestrator.create_secure_indexes("student_profiles", ["cohort"])

    @pytest.mark.asyncio
    async def test_create_views(self, orchestrator, db_engine):
        created = await orchestrator.create_materialized_views()
        again = await orchestrator.create_materialized_views()

        assert set(created) == set(again) == set(orchestrator.view_names)
        assert WRITING_VIEW in inspect(db_engine).get_view_names()

    @pytest.mark.asyncio
    async def test_refresh_reports_every_view(self, orchestrator):
        await orchestrator.create_materialized_views()

        report = await orchestrator.refresh_materialized_views()

        assert report.success
        assert set(report.refreshed) == set(orchestrator.view_names)

    @pytest.mark.asyncio
    async def test_refresh_is_best_effort(self, orchestrator, store, monkeypatch):
        def flaky(name):
            if name == "mv_ai_interactions_anonymous":
                raise QueryExecutionError("refresh failed", operation="refresh_view", target=name)
            return False

        monkeypatch.setattr(store, "refresh_view", flaky)

        report = await orchestrator.refresh_materialized_views()

        assert not report.success
        assert list(report.failed) == ["mv_ai_interactions_anonymous"]
        assert len(report.refreshed) == 2

    @pytest.mark.asyncio
    async def test_strict_refresh_raises_after_all_attempts(self, orchestrator, store, monkeypatch):
        attempted = []

        def failing(name):
            attempted.append(name)
            raise QueryExecutionError("refresh failed", operation="refresh_view", target=name)

        monkeypatch.setattr(store, "refresh_view", failing)

        with pytest.raises(ViewRefreshError) as exc_info:
            await orchestrator.refresh_materialized_views(strict=True)

        assert set(attempted) == set(orchestrator.view_names)
        assert set(exc_info.value.failed_views) == set(orchestrator.view_names)

    @pytest.mark.asyncio
    async def test_refresh_clears_cache(self, orchestrator, writing_data):
        await orchestrator.create_materialized_views()
        await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")

        await orchestrator.refresh_materialized_views()

        assert orchestrator.get_performance_stats()["cached_views"] == 0


# ============================================================
# TIMEOUT TESTS
# ============================================================

class TestTimeouts:
    """Tests for per-operation timeouts."""

    @pytest.mark.asyncio
    async def test_slow_aggregation_times_out(self, store, anonymizer, monkeypatch):
        def slow_read(*args, **kwargs):
            time.sleep(0.3)
            return []

        monkeypatch.setattr(store, "read_view", slow_read)
        orchestrator = PrivacyQueryOrchestrator(
            store,
            anonymizer,
            NoiseInjector(),
            config=QueryConfig(aggregation_timeout=0.05),
        )

        with pytest.raises(OperationTimeoutError) as exc_info:
            await orchestrator.get_anonymized_aggregation(WRITING_VIEW, "count")

        assert exc_info.value.operation == "aggregate"
        assert orchestrator.get_performance_stats()["cached_views"] == 0

    @pytest.mark.asyncio
    async def test_slow_search_times_out(self, store, anonymizer, monkeypatch, profiles):
        def slow_search(*args, **kwargs):
            time.sleep(0.3)
            return []

        monkeypatch.setattr(store, "search_by_hash", slow_search)
        orchestrator = PrivacyQueryOrchestrator(
            store,
            anonymizer,
            NoiseInjector(),
            config=QueryConfig(search_timeout=0.05),
        )

        with pytest.raises(OperationTimeoutError):
            await orchestrator.search_encrypted_field("student_profiles", "email", "x")


# ============================================================
# STATS TESTS
# ============================================================

class TestStats:
    """Tests for get_performance_stats()."""

    def test_stats_shape(self, orchestrator):
        stats = orchestrator.get_performance_stats()

        assert stats["dialect"] == "sqlite"
        assert set(stats["registered_views"]) == {
            "mv_student_progress_anonymous",
            "mv_ai_interactions_anonymous",
            "mv_writing_metrics_anonymous",
        }
        assert stats["cached_views"] == 0
