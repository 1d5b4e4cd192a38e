"""Audit entry models and types."""

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class AuditAction(str, Enum):
    """Kinds of audited mutation."""
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    SOFT_DELETE = "SoftDelete"


class EntityState(str, Enum):
    """Lifecycle state of an entity within one save operation."""
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    UNCHANGED = "Unchanged"
    DETACHED = "Detached"


def utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuditEntry:
    """One immutable record of a single entity mutation."""

    entity_name: str
    action: str
    changed_by: str
    entity_id: str = ""
    old_values: str | None = None
    new_values: str | None = None
    tenant_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    changed_at: datetime = field(default_factory=utc_now)

    def old_values_dict(self) -> dict[str, Any] | None:
        """Decode the old-values blob."""
        return json.loads(self.old_values) if self.old_values is not None else None

    def new_values_dict(self) -> dict[str, Any] | None:
        """Decode the new-values blob."""
        return json.loads(self.new_values) if self.new_values is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        d = asdict(self)
        d["changed_at"] = self.changed_at.isoformat()
        return d

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


@dataclass(frozen=True)
class PendingMutation:
    """Before/after snapshot of one tracked entity within a save operation."""

    entity: Any
    entity_type: type
    state: EntityState
    entity_id: str = ""
    original_values: Mapping[str, Any] = field(default_factory=dict)
    current_values: Mapping[str, Any] = field(default_factory=dict)
    # Ordered by the entity's declared property order
    modified_properties: tuple[str, ...] = ()

    @property
    def entity_name(self) -> str:
        return self.entity_type.__name__

    def has_property(self, name: str) -> bool:
        return name in self.current_values or name in self.original_values
