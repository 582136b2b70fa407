"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases are accepted)
- Table definitions for the credit ledger
"""
from typing import Iterable, List, Optional
from contextlib import contextmanager
from sqlalchemy import event, create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, Text, Index, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy import false as sa_false
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from recipe_credits.core.config import settings


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


def _use_immediate_transactions(engine) -> None:
    """Take the SQLite write lock at BEGIN.

    pysqlite defers BEGIN until the first write, and two deferred transactions
    upgrading their locks at once fail with "database is locked" instead of
    waiting. Starting every transaction IMMEDIATE makes writers queue on the
    busy timeout.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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

    is_sqlite = url.startswith("sqlite")
    connect_args = {}
    if is_sqlite:
        # Requests run in the threadpool; writers wait on the file lock
        connect_args = {"check_same_thread": False, "timeout": 30}

    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,
    )
    if is_sqlite:
        _use_immediate_transactions(_engine)

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

    Commits on clean exit, rolls back on any exception.

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


def clear_all_tables():
    """Delete every row, children first. Test helper."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def insert_ignore_returning(
    session: Session,
    table: Table,
    rows: List[dict],
    conflict_columns: Iterable[str],
    returning_column: str,
) -> List:
    """Insert rows in one statement, skipping conflicts, and return the inserted keys.

    Rows that collide with the unique index on ``conflict_columns`` are silently
    dropped by the store and do not appear in the result.
    """
    if not rows:
        return []

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table)
    else:
        raise RuntimeError(f"insert_ignore_returning does not support dialect {dialect}")

    stmt = (
        stmt.values(rows)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(table.c[returning_column])
    )
    return [row[0] for row in session.execute(stmt).fetchall()]


# Users table
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Balance/subscription record, one per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('balance', Integer, nullable=False, server_default='0'),
    Column('used_lifetime', Integer, nullable=False, server_default='0'),
    Column('granted_lifetime', Integer, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False, server_default='trialing'),  # trialing, active, past_due, cancelled
    Column('plan_id', String(20), nullable=True),  # weekly, monthly, yearly
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('balance >= 0', name='ck_subscriptions_balance_nonneg'),
    CheckConstraint('used_lifetime >= 0', name='ck_subscriptions_used_nonneg'),
    CheckConstraint('granted_lifetime >= 0', name='ck_subscriptions_granted_nonneg'),
    Index('idx_subscriptions_status', 'status'),
)

# Reason-keyed credit entries; the unique pair is the credit idempotency key
credit_ledger = Table(
    'credit_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('reason', String(200), nullable=False),  # "achievement:recipe_5", "billing-event:evt_...", "trial-grant"
    Column('mode', String(20), nullable=False),  # top_up | replace
    Column('delta', Integer, nullable=False),
    Column('balance_after', Integer, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'reason', name='uq_credit_ledger_user_reason'),
    Index('idx_credit_ledger_user_created', 'user_id', 'created_at'),
)

# Append-only usage log (generations, cooking completions)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('usage_key', String(100), nullable=False),
    Column('reference_id', String(200), nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'usage_key', 'reference_id', name='uq_usage_events_reference'),
    Index('idx_usage_events_user_key_occurred', 'user_id', 'usage_key', 'occurred_at'),
)

# Daily activity streaks
streaks = Table(
    'streaks',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('best_streak', Integer, nullable=False, server_default='0'),
    Column('last_activity_date', Date, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('best_streak >= current_streak', name='ck_streaks_best_ge_current'),
)

# One row per (user, achievement); presence means unlocked
user_achievements = Table(
    'user_achievements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('achievement_id', String(50), nullable=False),
    Column('reward_amount', Integer, nullable=False),
    Column('catalog_version', Integer, nullable=False),
    Column('unlocked_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'achievement_id', name='uq_user_achievements_user_achievement'),
    Index('idx_user_achievements_user', 'user_id'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default=sa_false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)
