"""Capture orchestrator: compute audit entries before commit, persist after.

A save operation moves through::

    Idle -> Computing -> Pending -> Persisted
                                 -> Discarded   (commit failed / rolled back)
                                 -> Failed      (audit insert failed)

All per-save state lives in the ``CaptureBatch`` returned by ``prepare``;
the orchestrator itself holds only read-only collaborators, so one instance
can serve any number of concurrent sessions.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from audittrail.audit.classifier import classify
from audittrail.audit.models import AuditEntry, PendingMutation, utc_now
from audittrail.audit.serializer import serialize_diff
from audittrail.audit.store import AuditStore
from audittrail.config import AuditOptions
from audittrail.errors import AuditPersistenceError

logger = logging.getLogger(__name__)

# Delay between persistence retries, doubled per attempt
RETRY_BASE_DELAY = 0.05


class CaptureState(str, Enum):
    """Lifecycle of one save operation's audit batch."""
    IDLE = "idle"
    COMPUTING = "computing"
    PENDING = "pending"
    PERSISTED = "persisted"
    DISCARDED = "discarded"
    FAILED = "failed"


@dataclass
class CaptureBatch:
    """Audit entries computed for one save operation."""

    state: CaptureState = CaptureState.IDLE
    entries: list[AuditEntry] = field(default_factory=list)
    user_id: str | None = None
    tenant_id: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.state == CaptureState.PENDING

    def __len__(self) -> int:
        return len(self.entries)


class ChangeCapture:
    """Sequences snapshot -> classify -> serialize -> hold -> persist."""

    def __init__(self, store: AuditStore, options: AuditOptions | None = None):
        self.store = store
        self.options = options or AuditOptions()

    # =========================================================================
    # Pre-commit
    # =========================================================================

    def prepare(self, mutations: Iterable[PendingMutation]) -> CaptureBatch:
        """Build the pending batch for a save operation.

        Returns an idle, empty batch when automatic logging is disabled.
        """
        batch = CaptureBatch()
        if not self.options.enable_automatic_logging:
            return batch

        batch.state = CaptureState.COMPUTING
        batch.user_id = self.options.resolve_user_id()
        batch.tenant_id = self.options.resolve_tenant_id()
        batch.entries.extend(self._build_entries(mutations, batch))
        batch.state = CaptureState.PENDING

        logger.debug(
            f"Prepared {len(batch.entries)} audit entries",
            extra={"batch_size": len(batch.entries), "tenant_id": batch.tenant_id},
        )
        return batch

    def extend(self, batch: CaptureBatch, mutations: Iterable[PendingMutation]) -> CaptureBatch:
        """Add entries from a later flush within the same transaction."""
        if not batch.is_pending:
            return self.prepare(mutations) if batch.state == CaptureState.IDLE else batch

        batch.state = CaptureState.COMPUTING
        batch.entries.extend(self._build_entries(mutations, batch))
        batch.state = CaptureState.PENDING
        return batch

    def _build_entries(self, mutations: Iterable[PendingMutation], batch: CaptureBatch) -> list[AuditEntry]:
        entries = []
        for mutation in mutations:
            action = classify(mutation, self.options)
            if action is None:
                continue

            old_values, new_values = serialize_diff(
                mutation, action, self.options.excluded_properties
            )
            entries.append(
                AuditEntry(
                    entity_name=mutation.entity_name,
                    entity_id=mutation.entity_id,
                    action=action.value,
                    changed_by=batch.user_id,
                    changed_at=utc_now(),
                    old_values=old_values,
                    new_values=new_values,
                    tenant_id=batch.tenant_id,
                )
            )
        return entries

    # =========================================================================
    # Post-commit
    # =========================================================================

    def persist(self, batch: CaptureBatch) -> None:
        """Write a pending batch to the store (business commit succeeded)."""
        if not batch.is_pending or not batch.entries:
            return

        attempts = self.options.persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.store.add_all(batch.entries)
            except Exception as e:
                if not self._handle_failure(batch, attempt, attempts, e):
                    return
                time.sleep(RETRY_BASE_DELAY * 2 ** (attempt - 1))
            else:
                self._mark_persisted(batch)
                return

    async def apersist(self, batch: CaptureBatch) -> None:
        """Async twin of persist; suspends only on the store call."""
        if not batch.is_pending or not batch.entries:
            return

        attempts = self.options.persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.store.aadd_all(batch.entries)
            except Exception as e:
                if not self._handle_failure(batch, attempt, attempts, e):
                    return
                await asyncio.sleep(RETRY_BASE_DELAY * 2 ** (attempt - 1))
            else:
                self._mark_persisted(batch)
                return

    def discard(self, batch: CaptureBatch) -> None:
        """Drop a batch whose business transaction did not commit."""
        if batch.is_pending and batch.entries:
            logger.info(
                f"Discarding {len(batch.entries)} audit entries after rollback",
                extra={"batch_size": len(batch.entries)},
            )
        batch.entries.clear()
        batch.state = CaptureState.DISCARDED

    def drop(self, batch: CaptureBatch, entry_ids: Iterable[str]) -> None:
        """Remove entries computed inside a savepoint that was rolled back."""
        dropped = set(entry_ids)
        before = len(batch.entries)
        batch.entries[:] = [e for e in batch.entries if e.id not in dropped]
        removed = before - len(batch.entries)
        if removed:
            logger.debug(
                f"Dropped {removed} audit entries after savepoint rollback",
                extra={"batch_size": removed},
            )

    def _mark_persisted(self, batch: CaptureBatch) -> None:
        count = len(batch.entries)
        batch.entries.clear()
        batch.state = CaptureState.PERSISTED
        logger.info(f"Persisted {count} audit entries", extra={"batch_size": count})

    def _handle_failure(
        self,
        batch: CaptureBatch,
        attempt: int,
        attempts: int,
        error: Exception,
    ) -> bool:
        """Log a failed insert. Returns True when another attempt should run."""
        count = len(batch.entries)
        if attempt < attempts:
            logger.warning(
                f"Audit insert failed, retrying: {error}",
                extra={"batch_size": count, "attempt": attempt},
            )
            return True

        logger.error(
            f"Audit insert failed after {attempts} attempt(s); business data is already committed: {error}",
            extra={"batch_size": count, "attempt": attempt},
        )
        batch.state = CaptureState.FAILED
        if self.options.raise_on_persist_failure:
            raise AuditPersistenceError(count, attempts, error) from error
        return False
