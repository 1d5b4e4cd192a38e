"""Change capture and audit trail for SQLAlchemy sessions.

Provides:
- Snapshot of entities touched by a flush (Added, Modified, Deleted)
- Classification into Create, Update, Delete and SoftDelete
- Property-level diffs serialized to JSON
- Two-phase capture: compute before commit, persist after commit
- Session hooks for sync and async SQLAlchemy sessions
- In-memory and SQL audit stores
- Manual logging and history queries
"""

from audittrail.audit.models import (
    AuditAction,
    AuditEntry,
    EntityState,
    PendingMutation,
)
from audittrail.audit.registry import (
    EntityDescriptor,
    EntityRegistry,
    entity_registry,
)
from audittrail.audit.snapshot import (
    lifecycle_state,
    load_committed_values,
    read_pending_mutations,
    snapshot_entity,
)
from audittrail.audit.classifier import classify, is_soft_delete
from audittrail.audit.serializer import (
    compute_diff,
    serialize_diff,
    serialize_values,
    to_portable,
)
from audittrail.audit.capture import CaptureBatch, CaptureState, ChangeCapture
from audittrail.audit.store import AuditQuery, AuditStore
from audittrail.audit.memory import InMemoryAuditStore
from audittrail.audit.repository import SqlAuditStore
from audittrail.audit.interceptor import AuditAsyncSession, AuditSessionInterceptor
from audittrail.audit.service import AuditService

__all__ = [
    # Models
    "AuditAction",
    "AuditEntry",
    "EntityState",
    "PendingMutation",
    # Entity discovery
    "EntityDescriptor",
    "EntityRegistry",
    "entity_registry",
    # Snapshot / classify / diff
    "lifecycle_state",
    "load_committed_values",
    "read_pending_mutations",
    "snapshot_entity",
    "classify",
    "is_soft_delete",
    "compute_diff",
    "serialize_diff",
    "serialize_values",
    "to_portable",
    # Capture
    "CaptureBatch",
    "CaptureState",
    "ChangeCapture",
    # Stores
    "AuditQuery",
    "AuditStore",
    "InMemoryAuditStore",
    "SqlAuditStore",
    # Host integration
    "AuditAsyncSession",
    "AuditSessionInterceptor",
    # Queries and manual logging
    "AuditService",
]
