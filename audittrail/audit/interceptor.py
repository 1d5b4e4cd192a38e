"""SQLAlchemy session hooks that drive the capture orchestrator.

Event mapping:
- ``before_flush``: read stored values the session never loaded, while the
  rows still hold them
- ``after_flush``: snapshot the flushed entities and prepare (or extend) the
  session's pending batch; entries made inside savepoints are tracked per
  savepoint
- ``after_soft_rollback`` of a savepoint: drop the entries its flushes made
- ``after_commit`` of the outermost transaction: move the batch to the
  committed queue
- ``after_transaction_end`` of the outermost transaction: discard whatever
  was not committed (rollback, failed commit, close without commit), then
  persist the committed queue (sync sessions). An ``AuditAsyncSession``
  persists its queue itself with ``await`` after ``commit()``/``close()``.

Persistence happens after the transaction has closed, so a failed audit
insert never leaves the business session unusable.

Pending batches live in ``Session.info``, one per session, so sessions that
share an interceptor never see each other's entries.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from audittrail.audit.capture import CaptureBatch, ChangeCapture
from audittrail.audit.registry import EntityRegistry, entity_registry
from audittrail.audit.snapshot import load_committed_values, read_pending_mutations
from audittrail.config import get_config_summary

logger = logging.getLogger(__name__)

BATCH_KEY = "audittrail.batch"
COMMITTED_KEY = "audittrail.committed"
DEFERRED_KEY = "audittrail.deferred"
LOADED_KEY = "audittrail.loaded"
SAVEPOINTS_KEY = "audittrail.savepoints"

_EVENTS = (
    "before_flush",
    "after_flush",
    "after_soft_rollback",
    "after_commit",
    "after_transaction_end",
)


class AuditSessionInterceptor:
    """Binds a ChangeCapture to SQLAlchemy session lifecycle events."""

    def __init__(self, capture: ChangeCapture, registry: EntityRegistry = entity_registry):
        self.capture = capture
        self.registry = registry

    @property
    def enabled(self) -> bool:
        return self.capture.options.enable_automatic_logging

    def install(self, target: Any) -> "AuditSessionInterceptor":
        """Listen on a Session subclass, sessionmaker or Session instance."""
        self._listen(target)
        logger.info(f"Audit interceptor installed on {target!r}")
        logger.debug(f"Audit options: {get_config_summary(self.capture.options)}")
        return self

    def uninstall(self, target: Any) -> None:
        for name in _EVENTS:
            if event.contains(target, name, getattr(self, f"_{name}")):
                event.remove(target, name, getattr(self, f"_{name}"))

    def attach_async(self, session: Session) -> None:
        """Hook the sync session behind an AsyncSession; persistence is deferred."""
        session.info[DEFERRED_KEY] = True
        self._listen(session)
        # Runs once per AsyncSession, so stays below info
        logger.debug(f"Audit interceptor attached to async session {id(session):#x}")

    def _listen(self, target: Any) -> None:
        for name in _EVENTS:
            event.listen(target, name, getattr(self, f"_{name}"))

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _before_flush(self, session: Session, flush_context: Any, instances: Any) -> None:
        if not self.enabled:
            return
        session.info[LOADED_KEY] = load_committed_values(
            session, self.capture.options, self.registry
        )

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        loaded = session.info.pop(LOADED_KEY, None)
        if not self.enabled:
            return

        mutations = read_pending_mutations(
            session, self.capture.options, self.registry, loaded
        )
        batch: CaptureBatch | None = session.info.get(BATCH_KEY)
        if batch is None:
            batch = self.capture.prepare(mutations)
            start = 0
        else:
            start = len(batch.entries)
            batch = self.capture.extend(batch, mutations)
        session.info[BATCH_KEY] = batch

        self._track_savepoints(session, [e.id for e in batch.entries[start:]])

    def _track_savepoints(self, session: Session, entry_ids: list[str]) -> None:
        """Remember which open savepoints the new entries belong to."""
        transaction = session.get_nested_transaction()
        if transaction is None or not entry_ids:
            return

        tracked: dict[SessionTransaction, list[str]] = session.info.setdefault(SAVEPOINTS_KEY, {})
        while transaction is not None:
            if transaction.nested:
                tracked.setdefault(transaction, []).extend(entry_ids)
            transaction = transaction.parent

    def _after_soft_rollback(self, session: Session, previous_transaction: SessionTransaction) -> None:
        if not previous_transaction.nested:
            return
        entry_ids = session.info.get(SAVEPOINTS_KEY, {}).pop(previous_transaction, None)
        batch: CaptureBatch | None = session.info.get(BATCH_KEY)
        if entry_ids and batch is not None:
            self.capture.drop(batch, entry_ids)

    def _after_commit(self, session: Session) -> None:
        # Also fires when a savepoint is released; only the outermost commit counts
        if session.get_nested_transaction() is not None:
            return

        batch: CaptureBatch | None = session.info.pop(BATCH_KEY, None)
        session.info.pop(SAVEPOINTS_KEY, None)
        if batch is None or not batch.is_pending or not batch.entries:
            return
        session.info.setdefault(COMMITTED_KEY, []).append(batch)

    def _after_transaction_end(self, session: Session, transaction: SessionTransaction) -> None:
        if transaction.parent is not None:
            return

        session.info.pop(SAVEPOINTS_KEY, None)
        session.info.pop(LOADED_KEY, None)
        batch: CaptureBatch | None = session.info.pop(BATCH_KEY, None)
        if batch is not None:
            self.capture.discard(batch)

        if not session.info.get(DEFERRED_KEY):
            self.persist_committed_sync(session)

    # =========================================================================
    # Persisting committed batches
    # =========================================================================

    def persist_committed_sync(self, session: Session) -> None:
        """Persist batches queued by after_commit; raises per the failure policy."""
        batches: list[CaptureBatch] = session.info.pop(COMMITTED_KEY, [])
        for batch in batches:
            self.capture.persist(batch)

    async def persist_committed(self, session: Session) -> None:
        """Persist batches queued by after_commit on a deferred session."""
        batches: list[CaptureBatch] = session.info.pop(COMMITTED_KEY, [])
        for batch in batches:
            await self.capture.apersist(batch)


class AuditAsyncSession(AsyncSession):
    """AsyncSession that persists audit entries right after its commit.

    Use as ``async_sessionmaker(engine, class_=AuditAsyncSession,
    audit=interceptor)``. Transactions committed through ``begin()`` context
    managers are persisted when the session closes.
    """

    def __init__(self, *args: Any, audit: AuditSessionInterceptor | None = None, **kw: Any):
        super().__init__(*args, **kw)
        self.audit = audit
        if audit is not None:
            audit.attach_async(self.sync_session)

    async def commit(self) -> None:
        await super().commit()
        if self.audit is not None:
            await self.audit.persist_committed(self.sync_session)

    async def close(self) -> None:
        try:
            if self.audit is not None:
                await self.audit.persist_committed(self.sync_session)
        finally:
            await super().close()
