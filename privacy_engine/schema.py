"""
Privacy Engine - Schema Definitions.

============================================================
PURPOSE
============================================================
Identifier validation, k-anonymity view definitions and the
DDL constructs used to create and refresh them.

No SQL text is assembled from caller input: every table,
column, view and index name passes validate_identifier, and
every value travels as a bound parameter.

============================================================
DIALECTS
============================================================

- PostgreSQL: CREATE MATERIALIZED VIEW IF NOT EXISTS,
  REFRESH MATERIALIZED VIEW, date_trunc buckets
- Others (SQLite): plain CREATE VIEW IF NOT EXISTS, refresh
  is a no-op, date()/strftime() buckets

============================================================
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import String, distinct, func, select
from sqlalchemy.exc import CompileError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.ddl import ExecutableDDLElement
from sqlalchemy.sql.expression import FunctionElement, Select

from database.models import AIInteraction, StudentProfile, StudentProgress, WritingSession

from .exceptions import InvalidIdentifierError


# ============================================================
# IDENTIFIERS
# ============================================================

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """
    Return ``name`` if it is a safe SQL identifier.

    Raises:
        InvalidIdentifierError: not a string, empty, too long, or
            containing anything besides letters, digits, underscore
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise InvalidIdentifierError(name if isinstance(name, str) else "", kind)
    return name


def hash_column_name(field_name: str) -> str:
    """``email`` -> ``email_hash``."""
    return validate_identifier(f"{validate_identifier(field_name, 'column')}_hash", "column")


def secure_index_name(table: str, field_name: str) -> str:
    """``idx_<table>_<field>_hash``."""
    return validate_identifier(f"idx_{table}_{hash_column_name(field_name)}", "index")


# ============================================================
# TIME BUCKETS
# ============================================================

class TimeBucket(FunctionElement):
    """Truncate a timestamp to ``unit``; subclasses fix the unit."""
    # text on SQLite, timestamp on PostgreSQL
    inherit_cache = True
    unit = "day"


class DayBucket(TimeBucket):
    type = String()
    inherit_cache = True
    unit = "day"


class HourBucket(TimeBucket):
    type = String()
    inherit_cache = True
    unit = "hour"


@compiles(DayBucket)
@compiles(HourBucket)
def _compile_time_bucket(element, compiler, **kw):
    return f"date_trunc('{element.unit}', {compiler.process(element.clauses, **kw)})"


@compiles(DayBucket, "sqlite")
def _compile_day_bucket_sqlite(element, compiler, **kw):
    return f"date({compiler.process(element.clauses, **kw)})"


@compiles(HourBucket, "sqlite")
def _compile_hour_bucket_sqlite(element, compiler, **kw):
    return f"strftime('%Y-%m-%d %H:00:00', {compiler.process(element.clauses, **kw)})"


# ============================================================
# VIEW DDL
# ============================================================

class CreateView(ExecutableDDLElement):
    """CREATE [MATERIALIZED] VIEW IF NOT EXISTS <name> AS <select>."""
    inherit_cache = False

    def __init__(self, name: str, selectable: Select, materialized: bool = True):
        self.name = validate_identifier(name, "view")
        self.selectable = selectable
        self.materialized = materialized


class RefreshView(ExecutableDDLElement):
    """REFRESH MATERIALIZED VIEW <name> (PostgreSQL only)."""
    inherit_cache = False

    def __init__(self, name: str):
        self.name = validate_identifier(name, "view")


class DropView(ExecutableDDLElement):
    """DROP [MATERIALIZED] VIEW IF EXISTS <name>."""
    inherit_cache = False

    def __init__(self, name: str, materialized: bool = True):
        self.name = validate_identifier(name, "view")
        self.materialized = materialized


def _view_body(element, compiler, **kw) -> str:
    return compiler.sql_compiler.process(element.selectable, literal_binds=True)


@compiles(CreateView)
def _compile_create_view(element, compiler, **kw):
    name = compiler.preparer.quote(element.name)
    return f"CREATE VIEW IF NOT EXISTS {name} AS {_view_body(element, compiler, **kw)}"


@compiles(CreateView, "postgresql")
def _compile_create_view_pg(element, compiler, **kw):
    name = compiler.preparer.quote(element.name)
    body = _view_body(element, compiler, **kw)
    if element.materialized:
        return f"CREATE MATERIALIZED VIEW IF NOT EXISTS {name} AS {body}"
    return f"CREATE OR REPLACE VIEW {name} AS {body}"


@compiles(RefreshView)
def _compile_refresh_view(element, compiler, **kw):
    raise CompileError("Materialized view refresh requires PostgreSQL")


@compiles(RefreshView, "postgresql")
def _compile_refresh_view_pg(element, compiler, **kw):
    return f"REFRESH MATERIALIZED VIEW {compiler.preparer.quote(element.name)}"


@compiles(DropView)
def _compile_drop_view(element, compiler, **kw):
    return f"DROP VIEW IF EXISTS {compiler.preparer.quote(element.name)}"


@compiles(DropView, "postgresql")
def _compile_drop_view_pg(element, compiler, **kw):
    kind = "MATERIALIZED VIEW" if element.materialized else "VIEW"
    return f"DROP {kind} IF EXISTS {compiler.preparer.quote(element.name)}"


# ============================================================
# VIEW DEFINITIONS
# ============================================================

@dataclass(frozen=True)
class ViewDefinition:
    """
    A k-anonymity-gated aggregate view.

    ``build(k)`` returns the SELECT; every group it emits is
    backed by at least ``k`` members of ``population_column``.
    ``metric_bounds`` gives the [min, max] of each per-row
    metric, used to calibrate noise on averages and sums.

    ``row_count_column`` counts the source rows behind a group;
    averages are per row, so sums are ``avg * row_count``.
    ``max_rows_per_member`` is the declared bound on rows one
    member contributes to a single group. ``members()`` returns
    the row-level SELECT (group columns plus ``member``) that
    distinct-member histograms are computed from.
    """
    name: str
    source_table: str
    group_columns: Tuple[str, ...]
    population_column: str
    metric_bounds: Mapping[str, Tuple[float, float]]
    min_group_size: int
    build: Callable[[int], Select] = field(compare=False, repr=False)
    description: str = ""
    row_count_column: str = "row_count"
    max_rows_per_member: int = 1
    members: Optional[Callable[[], Select]] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        validate_identifier(self.name, "view")
        validate_identifier(self.source_table, "table")
        for column in self.columns:
            validate_identifier(column, "column")
        if self.min_group_size < 1:
            raise ValueError("min_group_size must be >= 1")
        if self.max_rows_per_member < 1:
            raise ValueError("max_rows_per_member must be >= 1")

    @property
    def columns(self) -> List[str]:
        return [
            *self.group_columns,
            self.population_column,
            self.row_count_column,
            *self.metric_bounds,
        ]

    @property
    def default_metric(self) -> str:
        return next(iter(self.metric_bounds))

    def selectable(self) -> Select:
        return self.build(self.min_group_size)


def _student_progress_view(k: int) -> Select:
    t = StudentProgress.__table__
    bucket = DayBucket(t.c.created_at)
    return (
        select(
            bucket.label("date"),
            t.c.course_id,
            func.count(distinct(t.c.student_id_hash)).label("student_count"),
            func.count().label("record_count"),
            func.avg(t.c.progress_score).label("avg_progress"),
        )
        .where(t.c.privacy_level.in_(["public", "anonymized"]))
        .group_by(bucket, t.c.course_id)
        .having(func.count(distinct(t.c.student_id_hash)) >= k)
    )


def _student_progress_members() -> Select:
    t = StudentProgress.__table__
    return select(
        DayBucket(t.c.created_at).label("date"),
        t.c.course_id,
        t.c.student_id_hash.label("member"),
    ).where(t.c.privacy_level.in_(["public", "anonymized"]))


def _ai_interactions_view(k: int) -> Select:
    t = AIInteraction.__table__
    bucket = HourBucket(t.c.created_at)
    return (
        select(
            bucket.label("hour"),
            t.c.interaction_type,
            func.count(distinct(t.c.student_id_hash)).label("student_count"),
            func.count().label("interaction_count"),
            func.avg(t.c.duration).label("avg_duration"),
        )
        .where(t.c.privacy_level == "anonymized")
        .group_by(bucket, t.c.interaction_type)
        .having(func.count(distinct(t.c.student_id_hash)) >= k)
    )


def _ai_interactions_members() -> Select:
    t = AIInteraction.__table__
    return select(
        HourBucket(t.c.created_at).label("hour"),
        t.c.interaction_type,
        t.c.student_id_hash.label("member"),
    ).where(t.c.privacy_level == "anonymized")


def _writing_metrics_view(k: int) -> Select:
    t = WritingSession.__table__
    bucket = DayBucket(t.c.session_date)
    return (
        select(
            bucket.label("date"),
            t.c.assignment_type,
            func.count(distinct(t.c.student_id_hash)).label("unique_students"),
            func.count().label("session_count"),
            func.avg(t.c.word_count).label("avg_word_count"),
            func.avg(t.c.session_duration).label("avg_session_duration"),
            func.avg(t.c.revision_count).label("avg_revisions"),
        )
        .where(t.c.privacy_level == "anonymized")
        .group_by(bucket, t.c.assignment_type)
        .having(func.count(distinct(t.c.student_id_hash)) >= k)
    )


def _writing_metrics_members() -> Select:
    t = WritingSession.__table__
    return select(
        DayBucket(t.c.session_date).label("date"),
        t.c.assignment_type,
        t.c.student_id_hash.label("member"),
    ).where(t.c.privacy_level == "anonymized")


DEFAULT_VIEWS: Tuple[ViewDefinition, ...] = (
    ViewDefinition(
        name="mv_student_progress_anonymous",
        source_table="student_progress",
        group_columns=("date", "course_id"),
        population_column="student_count",
        metric_bounds={"avg_progress": (0.0, 100.0)},
        min_group_size=10,
        build=_student_progress_view,
        description="Daily course progress",
        row_count_column="record_count",
        max_rows_per_member=10,
        members=_student_progress_members,
    ),
    ViewDefinition(
        name="mv_ai_interactions_anonymous",
        source_table="ai_interactions",
        group_columns=("hour", "interaction_type"),
        population_column="student_count",
        metric_bounds={"avg_duration": (0.0, 3600.0)},
        min_group_size=5,
        build=_ai_interactions_view,
        description="Hourly AI interaction patterns",
        row_count_column="interaction_count",
        max_rows_per_member=60,
        members=_ai_interactions_members,
    ),
    ViewDefinition(
        name="mv_writing_metrics_anonymous",
        source_table="writing_sessions",
        group_columns=("date", "assignment_type"),
        population_column="unique_students",
        metric_bounds={
            "avg_word_count": (0.0, 10000.0),
            "avg_session_duration": (0.0, 480.0),
            "avg_revisions": (0.0, 200.0),
        },
        min_group_size=10,
        build=_writing_metrics_view,
        description="Daily writing process metrics",
        row_count_column="session_count",
        max_rows_per_member=20,
        members=_writing_metrics_members,
    ),
)


def histogram_select(
    view: ViewDefinition,
    bucket_column: str,
    k: int,
    filters: Mapping[str, Any],
) -> Select:
    """
    Distinct members per ``bucket_column`` value, from source rows.

    A member seen in several view groups (days, hours) counts
    once per bucket. Buckets with fewer than ``k`` distinct
    members are not returned. Filters apply to group columns.

    Raises:
        InvalidIdentifierError: unknown bucket or filter column
        ValueError: the view has no member-row SELECT
    """
    if view.members is None:
        raise ValueError(f"{view.name} has no member rows")
    if bucket_column not in view.group_columns:
        raise InvalidIdentifierError(bucket_column, "bucket column")

    rows = view.members().subquery("member_rows")
    population = func.count(distinct(rows.c.member))
    stmt = select(rows.c[bucket_column], population.label("population"))
    for key, value in filters.items():
        if key not in view.group_columns:
            raise InvalidIdentifierError(str(key), "filter column")
        stmt = stmt.where(rows.c[key] == value)
    return (
        stmt.group_by(rows.c[bucket_column])
        .having(population >= k)
        .order_by(rows.c[bucket_column])
    )


# Identifier fields that get a partial index on their hash column
DEFAULT_SECURE_INDEXES: Dict[str, Sequence[str]] = {
    StudentProfile.__tablename__: ("email", "student_id", "user_id"),
    WritingSession.__tablename__: ("student_id",),
    StudentProgress.__tablename__: ("student_id",),
    AIInteraction.__tablename__: ("student_id",),
}
