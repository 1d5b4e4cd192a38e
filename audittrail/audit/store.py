"""AuditStore abstract interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from audittrail.audit.models import AuditEntry, as_utc


@dataclass(frozen=True)
class AuditQuery:
    """Filter for audit lookups. Time bounds are inclusive."""

    entity_name: str
    entity_id: str | None = None
    tenant_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if self.start is not None:
            object.__setattr__(self, "start", as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", as_utc(self.end))

    def matches(self, entry: AuditEntry) -> bool:
        """Check an entry against every filter that is set."""
        if entry.entity_name != self.entity_name:
            return False
        if self.entity_id is not None and entry.entity_id != self.entity_id:
            return False
        if self.tenant_id is not None and entry.tenant_id != self.tenant_id:
            return False
        changed_at = as_utc(entry.changed_at)
        if self.start is not None and changed_at < self.start:
            return False
        if self.end is not None and changed_at > self.end:
            return False
        return True


class AuditStore(ABC):
    """Append-only sink for audit entries.

    Exposes bulk insert and filtered reads only; entries are never updated
    or deleted through this interface. Results are ordered newest first,
    with entries sharing a timestamp ordered by reverse insertion.
    """

    @abstractmethod
    def add_all(self, entries: Sequence[AuditEntry]) -> None:
        """Insert a batch of entries as one unit of work."""
        pass

    @abstractmethod
    async def aadd_all(self, entries: Sequence[AuditEntry]) -> None:
        """Insert a batch of entries as one unit of work."""
        pass

    @abstractmethod
    def find(self, query: AuditQuery) -> list[AuditEntry]:
        """Return entries matching a query, newest first."""
        pass

    @abstractmethod
    async def afind(self, query: AuditQuery) -> list[AuditEntry]:
        """Return entries matching a query, newest first."""
        pass
