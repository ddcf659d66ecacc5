"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Ledger table definitions with store-level constraints
"""
import logging
import os
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Numeric,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    text,
    true,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from taxportal.core.config import settings


logger = logging.getLogger("taxportal")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
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

    connect_args = {}
    if url.startswith("sqlite"):
        # Worker threads share the pool; wait on the file lock instead of failing fast
        connect_args = {"check_same_thread": False, "timeout": 30}

    if _engine is not None:
        _engine.dispose()

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args=connect_args,
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
def get_db_session():
    """
    Context manager for database sessions.

    Commits when the block exits cleanly, rolls back otherwise.

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
        logger.warning("Database connection check failed: %s", e)
        return False


# Plan catalog: one row per plan code, deactivated rather than deleted
plan_configs = Table(
    'plan_configs',
    metadata,
    Column('plan_code', String(20), primary_key=True),
    Column('display_name', Text, nullable=False),
    Column('free_minutes_monthly', Integer, nullable=False),
    Column('hourly_rate', Numeric(10, 2), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("plan_code IN ('NONE', 'BASIC', 'PRO')", name='ck_plan_configs_code'),
    CheckConstraint('free_minutes_monthly >= 0', name='ck_plan_configs_free_minutes'),
    CheckConstraint('hourly_rate >= 0', name='ck_plan_configs_hourly_rate'),
)

# Temporal plan assignments; effective_to IS NULL marks the active row
client_plans = Table(
    'client_plans',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False),
    Column('plan_code', String(20), ForeignKey('plan_configs.plan_code'), nullable=False),
    Column('effective_from', Date, nullable=False),
    Column('effective_to', Date, nullable=True),
    Column('assigned_by', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('effective_to IS NULL OR effective_to >= effective_from', name='ck_client_plans_range'),
    # At most one open-ended assignment per client
    Index(
        'uq_client_plans_active',
        'client_id',
        unique=True,
        postgresql_where=text('effective_to IS NULL'),
        sqlite_where=text('effective_to IS NULL'),
    ),
    Index('idx_client_plans_client_effective', 'client_id', 'effective_from'),
)

# Monthly free-minute ledger; the contended row
client_monthly_allowances = Table(
    'client_monthly_allowances',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False),
    Column('period_start', Date, nullable=False),
    Column('plan_code', String(20), nullable=False),
    Column('free_minutes_total', Integer, nullable=False),
    Column('free_minutes_used', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('client_id', 'period_start', name='uq_allowances_client_period'),
    CheckConstraint('free_minutes_total >= 0', name='ck_allowances_total'),
    CheckConstraint('free_minutes_used >= 0', name='ck_allowances_used_non_negative'),
    CheckConstraint('free_minutes_used <= free_minutes_total', name='ck_allowances_used_within_total'),
)

time_entries = Table(
    'time_entries',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False),
    Column('advisor_user_id', String(100), nullable=False),
    Column('worked_at', Date, nullable=False),
    Column('minutes', Integer, nullable=False),
    Column('free_minutes_consumed', Integer, nullable=False, server_default='0'),
    Column('billable_minutes', Integer, nullable=False, server_default='0'),
    Column('task', Text, nullable=True),
    Column('is_billable', Boolean, nullable=False, server_default=true()),
    Column('source', String(20), nullable=False, server_default='manual'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('created_by', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Column('updated_by', String(100), nullable=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('deleted_by', String(100), nullable=True),
    CheckConstraint('minutes > 0', name='ck_time_entries_minutes_positive'),
    CheckConstraint('free_minutes_consumed >= 0', name='ck_time_entries_free_non_negative'),
    CheckConstraint('billable_minutes >= 0', name='ck_time_entries_billable_non_negative'),
    CheckConstraint('free_minutes_consumed + billable_minutes = minutes', name='ck_time_entries_minutes_split'),
    CheckConstraint("source IN ('manual', 'timer', 'import')", name='ck_time_entries_source'),
    # Period aggregates: (client_id, worked_at) range scans
    Index('idx_time_entries_client_worked_at', 'client_id', 'worked_at'),
    Index('idx_time_entries_advisor', 'advisor_user_id'),
)

active_timers = Table(
    'active_timers',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False),
    Column('advisor_user_id', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('started_by', String(100), nullable=True),
    Column('task', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('client_id', 'advisor_user_id', name='uq_active_timers_client_advisor'),
)

# Per-client invoice number sequence
client_invoice_counters = Table(
    'client_invoice_counters',
    metadata,
    Column('client_id', String(100), primary_key=True),
    Column('last_invoice_number', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

invoices = Table(
    'invoices',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False),
    Column('invoice_no', String(50), nullable=False),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('currency', String(3), nullable=False, server_default='EUR'),
    Column('amount_total', Numeric(10, 2), nullable=False),
    Column('status', String(20), nullable=False, server_default='OPEN'),
    Column('due_date', Date, nullable=False),
    Column('period_start', Date, nullable=True),
    Column('period_end', Date, nullable=True),
    Column('billable_minutes_snapshot', Integer, nullable=True),
    Column('hourly_rate_snapshot', Numeric(10, 2), nullable=True),
    Column('invoice_document_id', String(36), nullable=True),
    Column('proof_document_id', String(36), nullable=True),
    Column('paid_at', DateTime(timezone=True), nullable=True),
    Column('payment_method', String(30), nullable=True),
    Column('payment_reference', Text, nullable=True),
    Column('payment_note', Text, nullable=True),
    Column('created_by', String(100), nullable=True),
    Column('reviewed_by', String(100), nullable=True),
    Column('reviewed_at', DateTime(timezone=True), nullable=True),
    Column('review_note', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('client_id', 'invoice_no', name='uq_invoices_client_invoice_no'),
    CheckConstraint('amount_total > 0', name='ck_invoices_amount_positive'),
    CheckConstraint("status IN ('OPEN', 'REVIEW', 'PAID', 'CANCELLED')", name='ck_invoices_status'),
    CheckConstraint(
        'period_end IS NULL OR period_start IS NULL OR period_end >= period_start',
        name='ck_invoices_period_range',
    ),
    Index('idx_invoices_client_status_created', 'client_id', 'status', 'created_at'),
    Index('idx_invoices_status', 'status'),
)

# Ownership view of the document store; rows are written by the documents module
documents = Table(
    'documents',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('client_id', String(100), nullable=False, index=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
)
