"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with bounded timeouts
- Dialect-aware upsert construction (PostgreSQL in production, SQLite in tests)
- Table definitions for the catalog, grants, boosts and the usage ledger
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from entitlement_engine.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _connect_args(url: str) -> dict:
    """Per-dialect connect arguments that bound every storage call."""
    if url.startswith("sqlite"):
        return {
            "check_same_thread": False,
            "timeout": settings.STORAGE_POOL_TIMEOUT_SECONDS,
        }
    if url.startswith("postgresql"):
        return {
            "connect_timeout": settings.STORAGE_POOL_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={settings.STORAGE_STATEMENT_TIMEOUT_MS}",
        }
    return {}


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

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=settings.STORAGE_POOL_TIMEOUT_SECONDS,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        connect_args=_connect_args(url),
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


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception and always closes.

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


def dialect_insert(session: Session, table: Table):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


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


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Feature catalog
features = Table(
    'features',
    metadata,
    Column('code', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('kind', String(20), nullable=False),  # boolean | limited
    Column('reset_type', String(20), nullable=False, server_default='none'),
    Column('parent_code', String(100), ForeignKey('features.code'), nullable=True),  # pool feature
    Column('category', String(100), nullable=True),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('active', Boolean, nullable=False, server_default=text('true')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("kind IN ('boolean', 'limited')", name='ck_features_kind'),
    CheckConstraint("reset_type IN ('none', 'daily', 'monthly', 'cycle_bound')", name='ck_features_reset_type'),
    Index('idx_features_category_sort', 'category', 'sort_order'),
)

# Package catalog
packages = Table(
    'packages',
    metadata,
    Column('code', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('stackable', Boolean, nullable=False, server_default=text('false')),
    Column('active', Boolean, nullable=False, server_default=text('true')),
    Column('public', Boolean, nullable=False, server_default=text('true')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Package -> feature limits (limit_value NULL = unlimited)
package_features = Table(
    'package_features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('package_code', String(100), ForeignKey('packages.code'), nullable=False),
    Column('feature_code', String(100), ForeignKey('features.code'), nullable=False),
    Column('limit_value', Integer, nullable=True),
    UniqueConstraint('package_code', 'feature_code', name='uq_package_features_package_feature'),
    Index('idx_package_features_feature', 'feature_code'),
)

# Packages granted to workspaces (never deleted, revoked for audit)
workspace_packages = Table(
    'workspace_packages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('workspace_id', String(100), nullable=False),
    Column('package_code', String(100), ForeignKey('packages.code'), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),  # active | suspended | revoked
    Column('source', String(100), nullable=False, server_default='system'),
    Column('granted_at', DateTime(timezone=True), nullable=False),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('billing_cycle_anchor', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    Index('idx_workspace_packages_workspace_status', 'workspace_id', 'status'),
    # A workspace holds a package code at most once while active
    Index(
        'uq_workspace_packages_active_code',
        'workspace_id',
        'package_code',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Boosts (additive, never deduplicated)
boosts = Table(
    'boosts',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('workspace_id', String(100), nullable=False),
    Column('feature_code', String(100), nullable=False),
    Column('boost_type', String(20), nullable=False),  # enable | add_limit | unlimited
    Column('limit_value', Integer, nullable=True),
    Column('duration_type', String(20), nullable=False),  # permanent | duration | cycle_bound
    Column('status', String(20), nullable=False, server_default='active'),  # active | cancelled
    Column('source', String(100), nullable=False, server_default='system'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    CheckConstraint(
        "(duration_type = 'permanent' AND expires_at IS NULL) OR "
        "(duration_type <> 'permanent' AND expires_at IS NOT NULL)",
        name='ck_boosts_expiry_matches_duration',
    ),
    Index('idx_boosts_workspace_feature_status', 'workspace_id', 'feature_code', 'status'),
)

# Usage ledger: one row per (workspace, feature, period)
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('workspace_id', String(100), nullable=False),
    Column('feature_code', String(100), nullable=False),
    Column('period_key', String(64), nullable=False),
    Column('used', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('workspace_id', 'feature_code', 'period_key', name='uq_usage_counters_workspace_feature_period'),
    CheckConstraint('used >= 0', name='ck_usage_counters_used_non_negative'),
)

# Append-only record of each recorded consumption
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('workspace_id', String(100), nullable=False),
    Column('feature_code', String(100), nullable=False),
    Column('period_key', String(64), nullable=False),
    Column('quantity', Integer, nullable=False),
    Column('actor', String(100), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    # Composite index for ledger history queries
    Index('idx_usage_events_workspace_feature_occurred', 'workspace_id', 'feature_code', 'occurred_at'),
)

# Provisioning audit trail
entitlement_logs = Table(
    'entitlement_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('workspace_id', String(100), nullable=False),
    Column('action', String(100), nullable=False),  # package.provisioned, boost.cancelled, ...
    Column('target', String(200), nullable=True),  # package code or boost id
    Column('source', String(100), nullable=False),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_entitlement_logs_workspace_created', 'workspace_id', 'created_at'),
)
