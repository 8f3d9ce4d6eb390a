"""
Database ORM Models - Learning Platform Tables.

============================================================
PRIVACY-AWARE SCHEMA
============================================================

Tables read by the privacy engine. Every table that stores
a direct identifier also stores its keyed hash:

- user_id     -> user_id_hash
- student_id  -> student_id_hash
- email       -> email_hash

Hash columns are filled with FieldAnonymizer tokens using
the identifier column name as namespace. Partial indexes on
the hash columns are created by the privacy engine
(create_secure_indexes), not declared here.

``privacy_level`` marks which rows may feed anonymous views.

============================================================
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime, Index,
)

from .engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def utc_now():
    """Get current UTC timestamp (naive, stored as UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================
# 1. STUDENT PROFILES
# =============================================================

class StudentProfile(Base):
    """
    Student directory entries.

    Searched by hashed email / student id; raw identifiers
    only leave the database at PrivacyLevel.FULL.
    """
    __tablename__ = "student_profiles"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # Direct identifiers
    user_id = Column(String(64), nullable=True)
    student_id = Column(String(64), nullable=False)
    email = Column(String(255), nullable=True)

    # Keyed hashes
    user_id_hash = Column(String(64), nullable=True)
    student_id_hash = Column(String(64), nullable=True)
    email_hash = Column(String(64), nullable=True)

    # Non-identifying attributes
    grade_level = Column(Integer, nullable=True)
    cohort = Column(String(32), nullable=True)
    privacy_level = Column(String(20), nullable=False, default="anonymized")

    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


# =============================================================
# 2. WRITING SESSIONS
# =============================================================

class WritingSession(Base):
    """
    One student writing session on an assignment.

    Feeds mv_writing_metrics_anonymous (daily x assignment type,
    k counted over distinct students).
    """
    __tablename__ = "writing_sessions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    student_id = Column(String(64), nullable=True)
    student_id_hash = Column(String(64), nullable=False)

    assignment_type = Column(String(50), nullable=False)
    session_date = Column(DateTime, nullable=False, default=utc_now)
    word_count = Column(Integer, nullable=False, default=0)
    session_duration = Column(Float, nullable=False, default=0.0)  # minutes
    revision_count = Column(Integer, nullable=False, default=0)

    privacy_level = Column(String(20), nullable=False, default="anonymized")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_writing_sessions_type_date", "assignment_type", "session_date"),
    )


# =============================================================
# 3. STUDENT PROGRESS
# =============================================================

class StudentProgress(Base):
    """
    Progress snapshots per student and course.

    Feeds mv_student_progress_anonymous (daily x course, k=10).
    """
    __tablename__ = "student_progress"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    student_id = Column(String(64), nullable=True)
    student_id_hash = Column(String(64), nullable=False)

    course_id = Column(String(64), nullable=False)
    progress_score = Column(Float, nullable=False)  # 0-100

    privacy_level = Column(String(20), nullable=False, default="anonymized")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_student_progress_course_date", "course_id", "created_at"),
    )


# =============================================================
# 4. AI INTERACTIONS
# =============================================================

class AIInteraction(Base):
    """
    A student's interaction with an AI assistant.

    Feeds mv_ai_interactions_anonymous (hourly x interaction
    type, k=5).
    """
    __tablename__ = "ai_interactions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    student_id = Column(String(64), nullable=True)
    student_id_hash = Column(String(64), nullable=False)

    interaction_type = Column(String(50), nullable=False)
    duration = Column(Float, nullable=False, default=0.0)  # seconds

    privacy_level = Column(String(20), nullable=False, default="anonymized")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_ai_interactions_type_date", "interaction_type", "created_at"),
    )


REQUIRED_TABLES = [
    "student_profiles",
    "writing_sessions",
    "student_progress",
    "ai_interactions",
]
