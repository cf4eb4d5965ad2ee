"""
Storage for chatdash: engine lifecycle and the Core table definitions.

Production runs on PostgreSQL through a QueuePool; tests and local runs use
a SQLite file. Every store opens a short `get_db_session()` unit of work,
so a single statement is a single transaction on either backend.
"""
from typing import Any, Dict, Optional
from contextlib import contextmanager
from sqlalchemy import false, create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func
import logging
import os

from chatdash.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

# PostgreSQL pool sizing
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

# SQLite busy timeout, seconds; concurrent writers wait instead of failing
SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when set."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        # Threads share one file; the default pool for file databases is fine
        return {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
    return {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module engine; an existing engine is disposed first."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **_engine_options(url))
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.info("Database engine ready", extra={"backend": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def dialect_insert(table: Table):
    """
    INSERT construct for the active backend.

    PostgreSQL and SQLite inserts both offer on_conflict_do_update and
    on_conflict_do_nothing with the same signature, which the usage,
    subscription and ledger stores rely on.
    """
    name = get_engine().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return pg_insert(table)
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect: {name}")


@contextmanager
def get_db_session():
    """Commit on success, roll back and re-raise on any error."""
    if _SessionLocal is None:
        init_engine()
    session: Session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local development only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    """SELECT 1 against the configured database; False when unreachable or unconfigured."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ValueError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Subscriptions: one row per user, mutated only by billing webhooks
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(255), nullable=True, index=True),
    Column('stripe_subscription_id', String(255), nullable=True, index=True),
    Column('status', String(32), nullable=False),
    Column('tier', String(32), nullable=False, server_default='free'),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Monthly message usage: at most one row per (user, calendar month)
message_usage = Table(
    'message_usage',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'period_start', name='uq_message_usage_user_period'),
)

# Billing webhook ledger (replay short-circuit + failure trail)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
)

# Chat history
chat_conversations = Table(
    'chat_conversations',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('title', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # list_conversations pattern: (user_id, updated_at desc)
    Index('idx_chat_conversations_user_updated', 'user_id', 'updated_at'),
)

chat_messages = Table(
    'chat_messages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('conversation_id', String(36), ForeignKey('chat_conversations.id', ondelete='CASCADE'), nullable=False),
    Column('role', String(16), nullable=False),
    Column('content', Text, nullable=False),
    Column('used_tools', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_chat_messages_conversation_created', 'conversation_id', 'created_at'),
)
