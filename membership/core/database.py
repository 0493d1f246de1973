"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Translation of datastore failures into PersistenceError
- Table definitions for users, subscriptions, usage counters and audit logs
"""
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean,
    Text, Index, ForeignKey, UniqueConstraint, CheckConstraint, text, false,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from membership.core.config import settings
from membership.core.errors import PersistenceError

logger = logging.getLogger(__name__)

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


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


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

    if _engine is not None:
        _engine.dispose()

    if url == "sqlite://" or ":memory:" in url:
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    elif url.startswith("sqlite"):
        # File-backed: a connection per session, so concurrent requests really interleave
        _engine = create_engine(
            url,
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
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
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


@contextmanager
def persistence_guard():
    """
    Translate datastore failures into PersistenceError.

    IntegrityError passes through untouched: callers use unique constraints
    as idempotency guards and handle it themselves.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error(
            "[database] operation failed",
            extra={"error_type": exc.__class__.__name__},
        )
        raise PersistenceError(f"Datastore unavailable: {exc.__class__.__name__}") from exc


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success and rolls back on any error.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    with persistence_guard():
        SessionLocal = get_session_factory()
        session = SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Current subscription state, exactly one row per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='none'),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('payment_reference', String(255), nullable=True),
    # Provider-side subscription (Stripe sub_...), cancelled together with ours
    Column('provider_subscription_id', String(255), nullable=True),
    Column('pending_tier', String(20), nullable=True),
    Column('cancel_requested', Boolean, nullable=False, server_default=false()),
    Column('past_due_since', DateTime(timezone=True), nullable=True),
    Column('admin_marker', Boolean, nullable=False, server_default=false()),
    Column('admin_reason', Text, nullable=True),
    # Compare-and-set guard for transitions
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_status', 'status'),
    Index('idx_subscriptions_tier', 'tier'),
)

# Append-only transition log (never deleted)
subscription_history = Table(
    'subscription_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('event', String(50), nullable=False),
    Column('from_status', String(20), nullable=True),
    Column('to_status', String(20), nullable=False),
    Column('from_tier', String(20), nullable=True),
    Column('to_tier', String(20), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('payment_reference', String(255), nullable=True),
    Column('actor', String(150), nullable=False),
    Column('admin_action', Boolean, nullable=False, server_default=false()),
    Column('reason', Text, nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscription_history_user_occurred', 'user_id', 'occurred_at'),
)

# Payment event ledger (webhook idempotency)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_type', String(50), nullable=False),
    Column('payment_reference', String(255), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_type', 'payment_reference', name='uq_payment_events_type_reference'),
    Index('idx_payment_events_received_at', 'received_at'),
)

# Usage counters keyed by (user, feature, period)
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('period_key', String(40), nullable=False),
    Column('consumed', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'feature', 'period_key', name='uq_usage_counters_user_feature_period'),
    CheckConstraint('consumed >= 0', name='ck_usage_counters_consumed_non_negative'),
    Index('idx_usage_counters_user_period', 'user_id', 'period_key'),
)

# Admin audit log
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(150), nullable=False),
    Column('action', String(100), nullable=False),
    Column('target_user_id', String(100), nullable=True, index=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
    Index('idx_admin_audit_actor', 'actor'),
    Index('idx_admin_audit_action', 'action'),
)
