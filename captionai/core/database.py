"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine management
- Connection pooling with sane defaults
- Table definitions for the durable entitlement store
"""
from typing import Optional
import logging

from sqlalchemy import (
    create_engine,
    false,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.sql import func

from captionai.core.config import settings


logger = logging.getLogger("captionai")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine
_engine: Optional[Engine] = None


def build_engine(url: str) -> Engine:
    """Create an engine; pooling options only apply to server databases."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Build the process engine from DATABASE_URL (or an explicit URL) and keep it."""
    global _engine

    url = database_url or settings.DATABASE_URL
    if not url:
        raise ValueError("STORE_BACKEND=database needs DATABASE_URL (env or .env)")

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(url)
    logger.info("[database] engine ready", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    """The process engine, built lazily from settings."""
    if _engine is None:
        init_engine()
    return _engine


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Create usage_records and billing_events if missing (checkfirst)."""
    metadata.create_all(bind=engine or get_engine())


def check_connection(engine: Optional[Engine] = None) -> bool:
    """Round-trip a SELECT 1. Used by /readyz; never raises."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"[database] connection check failed: {e}")
        return False


# One row per normalized identity
usage_records = Table(
    'usage_records',
    metadata,
    Column('identity', String(320), primary_key=True),
    Column('generation_count', Integer, nullable=False, server_default='0'),
    Column('subscribed', Boolean, nullable=False, server_default=false()),
    Column('last_verified_at', DateTime(timezone=True), nullable=True),
    Column('customer_id', String(100), nullable=True),
    Column('transition_epoch', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_usage_records_customer_id', 'customer_id'),
)

# Processed billing webhook events (replay protection)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
