"""
Database Layer - Engine and Sessions.

============================================================
DATABASE ENGINE AND SESSIONS
============================================================

Engine and transaction helpers for the learning-platform
tables the privacy engine reads.

- SQLAlchemy 2.x engine, pooled for server databases
- SQLite for local development and tests
- Explicit transaction boundaries
- Hard failures on persistence errors (DatabaseError)

URL resolution: PRIVACY_DATABASE_URL, then DATABASE_URL,
then a local SQLite file.

============================================================
"""

import os
import logging
from typing import Generator, List, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.exc import SQLAlchemyError

from dotenv import load_dotenv

from core.exceptions import DatabaseError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///privacy_engine.db"

Base = declarative_base()


# =============================================================
# ENGINE
# =============================================================

def get_database_url() -> str:
    """Database URL from the environment, or the local default."""
    url = os.getenv("PRIVACY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # The store is synchronous; it runs in worker threads
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")
    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


def create_database_engine(
    url: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        url: database URL; defaults to get_database_url()
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_timeout: Seconds to wait for available connection
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements (never enable with real data)

    Pool arguments are ignored for SQLite. The store calls the
    engine from worker threads, so SQLite connections are not
    pinned to their creating thread.
    """
    database_url = url or get_database_url()
    logger.info(f"Creating database engine for: {_redact(database_url)}")

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


# =============================================================
# TRANSACTIONS
# =============================================================

@contextmanager
def transaction_scope(engine: Engine) -> Generator[Session, None, None]:
    """
    Session with one explicit transaction.

    Commits when the block exits normally and rolls back on
    any exception.

    Usage:
        with transaction_scope(engine) as session:
            session.add_all(rows)
    """
    session = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {type(e).__name__}")
        session.rollback()
        raise DatabaseError("Transaction failed", operation="transaction", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# INITIALIZATION
# =============================================================

def verify_database_connection(engine: Engine) -> None:
    """
    Raises:
        DatabaseError: the database cannot be reached
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {type(e).__name__}")
        raise DatabaseError("Cannot connect to database", operation="connect", cause=e) from e
    logger.info("Database connection verified")


def create_all_tables(engine: Engine) -> None:
    """Create every table in ``Base.metadata`` that does not exist yet."""
    # Register models with Base
    from . import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {type(e).__name__}")
        raise DatabaseError("Table creation failed", operation="create_all", cause=e) from e
    logger.info("Database tables ready")


def verify_required_tables(engine: Engine) -> List[str]:
    """Names of required tables that are missing (empty when complete)."""
    from .models import REQUIRED_TABLES

    existing = set(inspect(engine).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in existing]
    for name in missing:
        logger.warning(f"Table missing: {name}")
    return missing


def initialize_database(engine: Engine) -> Engine:
    """
    Connect, create missing tables, then verify them.

    Raises:
        DatabaseError: connection failure, DDL failure, or a
            required table still missing afterwards
    """
    logger.info("Initializing database")
    verify_database_connection(engine)
    create_all_tables(engine)

    missing = verify_required_tables(engine)
    if missing:
        raise DatabaseError(
            "Required tables missing after initialization",
            operation="initialize",
            context={"missing": missing},
        )

    logger.info("Database initialization complete")
    return engine


__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "verify_required_tables",
    "initialize_database",
]
