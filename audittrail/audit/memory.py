"""In-memory implementation of AuditStore."""

import threading
from typing import Sequence

from audittrail.audit.models import AuditEntry, as_utc
from audittrail.audit.store import AuditQuery, AuditStore


class InMemoryAuditStore(AuditStore):
    """In-memory AuditStore for testing and development.

    Keeps (sequence, entry) pairs in insertion order and answers queries
    with a linear scan.
    """

    def __init__(self) -> None:
        self._rows: list[tuple[int, AuditEntry]] = []
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._rows)

    def add_all(self, entries: Sequence[AuditEntry]) -> None:
        """Append a batch atomically; duplicate ids reject the whole batch."""
        with self._lock:
            batch_ids = [e.id for e in entries]
            duplicates = self._ids.intersection(batch_ids)
            if duplicates or len(set(batch_ids)) != len(batch_ids):
                raise ValueError(f"Duplicate audit entry id(s): {sorted(duplicates) or batch_ids}")

            start = len(self._rows)
            self._rows.extend((start + i, entry) for i, entry in enumerate(entries))
            self._ids.update(batch_ids)

    async def aadd_all(self, entries: Sequence[AuditEntry]) -> None:
        self.add_all(entries)

    def all(self) -> list[AuditEntry]:
        """Every stored entry in insertion order."""
        with self._lock:
            return [entry for _, entry in self._rows]

    def find(self, query: AuditQuery) -> list[AuditEntry]:
        with self._lock:
            rows = [(seq, e) for seq, e in self._rows if query.matches(e)]
        # Sort by timestamp descending, then most recently inserted first
        rows.sort(key=lambda r: (as_utc(r[1].changed_at), r[0]), reverse=True)
        return [entry for _, entry in rows]

    async def afind(self, query: AuditQuery) -> list[AuditEntry]:
        return self.find(query)
