"""
Privacy Engine - Relational Store Adapter.

============================================================
PURPOSE
============================================================
Synchronous SQLAlchemy operations used by the orchestrator:

- Hash-column equality search with projection and paging
- Reads of k-anonymity views with a population floor
- Parameterized ad-hoc queries
- Secure (partial) index and view DDL

Tables are reflected from the live database; names are
validated before they reach SQLAlchemy. Every
SQLAlchemyError is raised as QueryExecutionError. Nothing
here retries.

============================================================
"""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import Index, MetaData, Table, column, select, table, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from .exceptions import InvalidIdentifierError, QueryExecutionError
from .schema import (
    CreateView,
    DropView,
    RefreshView,
    ViewDefinition,
    hash_column_name,
    histogram_select,
    secure_index_name,
    validate_identifier,
)


logger = logging.getLogger(__name__)


class PrivacyStore:
    """
    Thin adapter over a SQLAlchemy engine.

    Thread-safe: each call checks out its own connection;
    reflected tables are cached under a lock.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @property
    def supports_materialized_views(self) -> bool:
        return self.dialect_name == "postgresql"

    # =========================================================
    # REFLECTION
    # =========================================================

    def get_table(self, name: str) -> Table:
        """Reflect (once) and return table ``name``."""
        validate_identifier(name, "table")
        with self._lock:
            cached = self._tables.get(name)
            if cached is not None:
                return cached
            try:
                reflected = Table(name, self._metadata, autoload_with=self._engine)
            except NoSuchTableError as e:
                raise InvalidIdentifierError(name, "table") from e
            except SQLAlchemyError as e:
                raise QueryExecutionError(
                    "Table reflection failed", operation="reflect", target=name, cause=e
                ) from e
            self._tables[name] = reflected
            return reflected

    def require_column(self, tbl: Table, name: str, kind: str = "column") -> None:
        validate_identifier(name, kind)
        if name not in tbl.c:
            raise InvalidIdentifierError(name, kind)

    # =========================================================
    # SEARCH
    # =========================================================

    def search_by_hash(
        self,
        table_name: str,
        hash_column: str,
        token: str,
        columns: Sequence[str],
        order_by: str,
        limit: int,
        offset: int,
    ) -> List[Dict[str, Any]]:
        """
        Equality lookup on ``hash_column``, newest first.

        Only ``columns`` are selected; nothing else leaves the
        database.
        """
        tbl = self.get_table(table_name)
        self.require_column(tbl, hash_column)
        for name in columns:
            self.require_column(tbl, name)
        self.require_column(tbl, order_by, "order column")

        stmt = (
            select(*[tbl.c[name] for name in columns])
            .where(tbl.c[hash_column] == token)
            .order_by(tbl.c[order_by].desc())
            .limit(limit)
            .offset(offset)
        )

        return self._fetch(stmt, {}, "search", table_name)

    # =========================================================
    # VIEWS
    # =========================================================

    def read_view(
        self,
        view: ViewDefinition,
        min_group_size: int,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        """
        Rows of ``view`` whose population is at least
        ``min_group_size``. Smaller groups are not returned.
        """
        view_clause = table(view.name, *[column(name) for name in view.columns])
        population = view_clause.c[view.population_column]

        stmt = select(*view_clause.c).where(population >= min_group_size)
        for key, value in filters.items():
            if key not in view.columns:
                raise InvalidIdentifierError(str(key), "filter column")
            stmt = stmt.where(view_clause.c[key] == value)
        stmt = stmt.order_by(*[view_clause.c[name] for name in view.group_columns])

        return self._fetch(stmt, {}, "aggregate", view.name)

    def read_histogram(
        self,
        view: ViewDefinition,
        bucket_column: str,
        min_group_size: int,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        """
        Distinct-member counts per ``bucket_column`` value, read
        from the view's source rows. Buckets below
        ``min_group_size`` are not returned.
        """
        stmt = histogram_select(view, bucket_column, min_group_size, filters)
        return self._fetch(stmt, {}, "histogram", view.source_table)

    def create_view(self, view: ViewDefinition) -> None:
        ddl = CreateView(
            view.name,
            view.selectable(),
            materialized=self.supports_materialized_views,
        )
        self._execute_ddl(ddl, "create_view", view.name)
        logger.info(f"View ready: {view.name}")

    def drop_view(self, name: str) -> None:
        self._execute_ddl(
            DropView(name, materialized=self.supports_materialized_views),
            "drop_view",
            name,
        )

    def refresh_view(self, name: str) -> bool:
        """
        Refresh a materialized view.

        Returns False (no-op) on dialects where views are not
        materialized and therefore always current.
        """
        if not self.supports_materialized_views:
            validate_identifier(name, "view")
            return False
        self._execute_ddl(RefreshView(name), "refresh_view", name)
        return True

    # =========================================================
    # INDEXES
    # =========================================================

    def create_secure_index(self, table_name: str, field_name: str) -> str:
        """
        Partial index on ``<field>_hash`` where it is not null.

        Returns the index name. Existing indexes are left alone.
        """
        hash_column = hash_column_name(field_name)
        index_name = secure_index_name(table_name, field_name)
        tbl = self.get_table(table_name)
        self.require_column(tbl, hash_column)

        hashed = tbl.c[hash_column]
        index = Index(
            index_name,
            hashed,
            postgresql_where=hashed.isnot(None),
            sqlite_where=hashed.isnot(None),
        )
        try:
            index.create(self._engine, checkfirst=True)
        except SQLAlchemyError as e:
            logger.error(f"Secure index creation failed: {index_name}")
            raise QueryExecutionError(
                "Index creation failed", operation="create_index", target=index_name, cause=e
            ) from e
        finally:
            # Keep the reflected table free of DDL-only index objects
            tbl.indexes.discard(index)

        logger.info(f"Created secure index: {index_name}")
        return index_name

    # =========================================================
    # QUERIES
    # =========================================================

    def execute_query(
        self,
        statement: Any,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a parameterized query and return rows as dictionaries.

        ``statement`` is SQL text with named parameters or a
        SQLAlchemy selectable.
        """
        if isinstance(statement, str):
            statement = text(statement)
        return self._fetch(statement, dict(parameters or {}), "query", None)

    # =========================================================
    # EXECUTION
    # =========================================================

    def _fetch(
        self,
        stmt: Any,
        parameters: Dict[str, Any],
        operation: str,
        target: Optional[str],
    ) -> List[Dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(stmt, parameters)
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            logger.error(f"Store {operation} failed on {target or 'query'}: {type(e).__name__}")
            raise QueryExecutionError(
                f"Store {operation} failed", operation=operation, target=target, cause=e
            ) from e

    def _execute_ddl(self, ddl: Any, operation: str, target: str) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(ddl)
        except SQLAlchemyError as e:
            logger.error(f"Store {operation} failed on {target}: {type(e).__name__}")
            raise QueryExecutionError(
                f"Store {operation} failed", operation=operation, target=target, cause=e
            ) from e
