"""SQL-backed audit store.

Persists entries to the ``audit_logs`` table through SQLAlchemy. The sync
path uses a ``sessionmaker`` and the async path an ``async_sessionmaker``;
both issue the same statements.
"""

import logging
from typing import Sequence

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, sessionmaker

import audittrail.database as db_module
from audittrail.audit.models import AuditEntry, as_utc
from audittrail.audit.store import AuditQuery, AuditStore
from audittrail.database import AuditLog

logger = logging.getLogger(__name__)


def entry_to_row(entry: AuditEntry) -> AuditLog:
    return AuditLog(
        id=entry.id,
        entity_name=entry.entity_name,
        entity_id=entry.entity_id,
        action=entry.action,
        changed_by=entry.changed_by,
        changed_at=as_utc(entry.changed_at),
        old_values=entry.old_values,
        new_values=entry.new_values,
        tenant_id=entry.tenant_id,
    )


def row_to_entry(row: AuditLog) -> AuditEntry:
    # SQLite hands back naive datetimes; stored values are UTC
    return AuditEntry(
        id=row.id,
        entity_name=row.entity_name,
        entity_id=row.entity_id,
        action=row.action,
        changed_by=row.changed_by,
        changed_at=as_utc(row.changed_at),
        old_values=row.old_values,
        new_values=row.new_values,
        tenant_id=row.tenant_id,
    )


def build_query(query: AuditQuery) -> Select:
    """Translate an AuditQuery into an ordered SELECT."""
    stmt = select(AuditLog).where(AuditLog.entity_name == query.entity_name)

    if query.entity_id is not None:
        stmt = stmt.where(AuditLog.entity_id == query.entity_id)
    if query.tenant_id is not None:
        stmt = stmt.where(AuditLog.tenant_id == query.tenant_id)
    if query.start is not None:
        stmt = stmt.where(AuditLog.changed_at >= query.start)
    if query.end is not None:
        stmt = stmt.where(AuditLog.changed_at <= query.end)

    return stmt.order_by(AuditLog.changed_at.desc(), AuditLog.seq.desc())


class SqlAuditStore(AuditStore):
    """AuditStore over the audit_logs table.

    Factories default to the module-level ones in ``audittrail.database``,
    resolved at call time so tests can swap them.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        async_session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._session_factory = session_factory
        self._async_session_factory = async_session_factory

    def _sync_factory(self) -> sessionmaker[Session]:
        return self._session_factory or db_module.get_sync_session_factory()

    def _async_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._async_session_factory or db_module.async_session_factory

    def add_all(self, entries: Sequence[AuditEntry]) -> None:
        if not entries:
            return
        with self._sync_factory()() as session:
            session.add_all([entry_to_row(e) for e in entries])
            session.commit()
        logger.debug(f"Inserted {len(entries)} audit rows", extra={"batch_size": len(entries)})

    async def aadd_all(self, entries: Sequence[AuditEntry]) -> None:
        if not entries:
            return
        async with self._async_factory()() as session:
            session.add_all([entry_to_row(e) for e in entries])
            await session.commit()
        logger.debug(f"Inserted {len(entries)} audit rows", extra={"batch_size": len(entries)})

    def find(self, query: AuditQuery) -> list[AuditEntry]:
        with self._sync_factory()() as session:
            result = session.execute(build_query(query))
            return [row_to_entry(row) for row in result.scalars().all()]

    async def afind(self, query: AuditQuery) -> list[AuditEntry]:
        async with self._async_factory()() as session:
            result = await session.execute(build_query(query))
            return [row_to_entry(row) for row in result.scalars().all()]
