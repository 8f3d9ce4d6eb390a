"""
Database Package Initialization.

============================================================
DATABASE LAYER
============================================================

Engine/transaction helpers and the learning-platform tables
the privacy engine searches and aggregates.

Every failure raises core.exceptions.DatabaseError.

============================================================
"""

from .engine import (
    Base,
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    transaction_scope,
    verify_database_connection,
    create_all_tables,
    verify_required_tables,
    initialize_database,
)

from .models import (
    StudentProfile,
    WritingSession,
    StudentProgress,
    AIInteraction,
    REQUIRED_TABLES,
)


__all__ = [
    # Engine
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "verify_required_tables",
    "initialize_database",
    # Models
    "StudentProfile",
    "WritingSession",
    "StudentProgress",
    "AIInteraction",
    "REQUIRED_TABLES",
]
