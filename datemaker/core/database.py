"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Table definitions for the user record store
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from datemaker.core.config import settings

logger = logging.getLogger("datemaker")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 10
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
            pool_pre_ping=True,
            echo=False,
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
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception and re-raises it.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
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
        logger.warning("Database connection check failed", extra={"error_message": str(e)})
        return False


# User entitlement records. Entitlement columns are written only by the
# subscription ledger.
users = Table(
    'users',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('email', Text, nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='free'),
    Column('subscription_platform', String(20), nullable=False, server_default='none'),
    Column('subscription_type', String(20), nullable=True),
    Column('payment_provider_customer_id', String(255), nullable=True),
    Column('payment_provider_subscription_id', String(255), nullable=True),
    Column('apple_product_id', String(255), nullable=True),
    Column('apple_subscription_expiry', DateTime(timezone=True), nullable=True),
    Column('previous_apple_product_id', String(255), nullable=True),
    Column('apple_subscription_expired_at', DateTime(timezone=True), nullable=True),
    Column('last_receipt_validation_at', DateTime(timezone=True), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('subscription_will_cancel_at', DateTime(timezone=True), nullable=True),
    Column('payment_failed', Boolean, nullable=False, server_default='0'),
    Column('payment_failed_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Reverse lookup for payment webhooks; at most one user per customer
    Index('idx_users_payment_customer', 'payment_provider_customer_id', unique=True),
)

# App Store transactions already applied to the ledger. Never mutated.
processed_transactions = Table(
    'processed_transactions',
    metadata,
    Column('transaction_id', String(255), primary_key=True),
    Column('user_id', String(128), nullable=False, index=True),
    Column('product_id', String(255), nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=False),
)

# Payment webhook journal, keyed by the provider's event id
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(50), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_webhook_events_type_received', 'event_type', 'received_at'),
)
