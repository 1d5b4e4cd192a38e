"""Database setup and session management for the audit store."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import DateTime, Engine, Index, Integer, String, Text, create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from audittrail.config import get_audit_settings

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Base(DeclarativeBase):
    """Base class for audit models."""

    pass


class SchemaVersion(Base):
    """Tracks database schema version for safe migrations."""

    __tablename__ = "audit_schema_version"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    version: Mapped[int] = mapped_column(Integer, default=1)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)


class AuditLog(Base):
    """One immutable audit record of a single entity mutation.

    Rows are only ever inserted. ``seq`` is a monotonic insertion counter used
    to order entries that share a timestamp.
    """

    __tablename__ = "audit_logs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)

    # Audited subject
    entity_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(256), nullable=False, default="", index=True)

    # Change
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(256), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # Serialized property maps (JSON text)
    old_values: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_values: Mapped[str | None] = mapped_column(Text, nullable=True)

    tenant_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)

    __table_args__ = (
        Index("ix_audit_logs_entity_name_entity_id", "entity_name", "entity_id"),
    )


# Engine and session factories
_settings = get_audit_settings()
engine = create_async_engine(_settings.database_url, echo=_settings.debug)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)

# Sync engine is created on first use; most hosts only need one of the two
_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker[Session] | None = None


def get_sync_session_factory() -> sessionmaker[Session]:
    """Get the session factory for synchronous audit writes and reads."""
    global _sync_engine, _sync_session_factory
    if _sync_session_factory is None:
        settings = get_audit_settings()
        _ensure_sqlite_dir(settings.sync_database_url)
        _sync_engine = create_engine(settings.sync_database_url, echo=settings.debug)
        _sync_session_factory = sessionmaker(_sync_engine, expire_on_commit=False)
    return _sync_session_factory


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-based SQLite database."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


async def init_db() -> None:
    """Initialize audit tables with schema versioning.

    Uses create_all which is idempotent - only creates tables that don't exist.
    """
    _ensure_sqlite_dir(str(engine.url))

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as session:
        try:
            result = await session.execute(select(SchemaVersion).limit(1))
            _record_schema_version(session, result.scalar_one_or_none())
            await session.commit()
        except Exception as e:
            logger.warning(f"Schema version check failed (may be first run): {e}")
            await session.rollback()


def init_db_sync(sync_engine: Engine) -> None:
    """Synchronous twin of init_db for hosts that do not run an event loop."""
    _ensure_sqlite_dir(str(sync_engine.url))
    Base.metadata.create_all(sync_engine)

    with Session(sync_engine) as session:
        try:
            version_record = session.execute(select(SchemaVersion).limit(1)).scalar_one_or_none()
            _record_schema_version(session, version_record)
            session.commit()
        except Exception as e:
            logger.warning(f"Schema version check failed (may be first run): {e}")
            session.rollback()


def _record_schema_version(session: Session | AsyncSession, version_record: SchemaVersion | None) -> None:
    if version_record is None:
        session.add(
            SchemaVersion(
                id=1,
                version=SCHEMA_VERSION,
                description=f"Initial schema v{SCHEMA_VERSION}",
            )
        )
        logger.info(f"Audit database initialized with schema version {SCHEMA_VERSION}")
    elif version_record.version < SCHEMA_VERSION:
        old_version = version_record.version
        version_record.version = SCHEMA_VERSION
        version_record.applied_at = datetime.now(timezone.utc)
        version_record.description = f"Upgraded from v{old_version} to v{SCHEMA_VERSION}"
        logger.info(f"Audit schema upgraded from v{old_version} to v{SCHEMA_VERSION}")
    else:
        logger.debug(f"Audit schema is current (v{version_record.version})")


async def get_schema_version() -> int:
    """Get the current database schema version."""
    async with async_session_factory() as session:
        try:
            result = await session.execute(select(SchemaVersion).limit(1))
            version_record = result.scalar_one_or_none()
            return version_record.version if version_record else 0
        except Exception:
            return 0


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an audit database session."""
    async with async_session_factory() as session:
        yield session


async def close_db() -> None:
    """Close database connections gracefully."""
    global _sync_engine, _sync_session_factory
    await engine.dispose()
    if _sync_engine is not None:
        _sync_engine.dispose()
        _sync_engine = None
        _sync_session_factory = None
