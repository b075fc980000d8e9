"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Table definitions for quizzes, progress, streaks and the idempotency ledger
- Test database support (SQLite in-memory via StaticPool)
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, JSON, Index, CheckConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import os

from quizcore.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Dispose the engine and forget the session factory (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# ============================================================================
# Table definitions
# ============================================================================

# Authoritative quiz definitions (question count only; content lives elsewhere)
quizzes = Table(
    'quizzes',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('question_count', Integer, nullable=False),
    CheckConstraint('question_count >= 0', name='ck_quizzes_question_count'),
)

# Best attempt per (user, quiz)
user_progress = Table(
    'user_progress',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('quiz_id', String(100), primary_key=True),
    Column('best_percentage', Integer, nullable=False),
    Column('completed', Boolean, nullable=False, default=False),
    Column('completed_at_civil_date', Date, nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    CheckConstraint('best_percentage >= 0 AND best_percentage <= 100', name='ck_user_progress_percentage'),
    Index('idx_user_progress_user_updated', 'user_id', 'updated_at'),
)

user_streaks = Table(
    'user_streaks',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('current_streak_days', Integer, nullable=False, default=0),
    Column('longest_streak_days', Integer, nullable=False, default=0),
    Column('last_active_civil_date', Date, nullable=True),
)

# Idempotency ledger (pending | completed | failed)
idempotency_records = Table(
    'idempotency_records',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False),
    Column('cached_result', JSON, nullable=True),
    Index('idx_idempotency_records_created', 'created_at'),
)
