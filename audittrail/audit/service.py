"""Audit query engine and manual logging API."""

import logging
from datetime import datetime
from typing import Any

from audittrail.audit.models import AuditAction, AuditEntry
from audittrail.audit.registry import EntityRegistry, entity_registry
from audittrail.audit.serializer import serialize_values
from audittrail.audit.store import AuditQuery, AuditStore
from audittrail.errors import InvalidAuditArgument

logger = logging.getLogger(__name__)


def _require(value: Any, argument: str) -> None:
    if value is None or (isinstance(value, str) and not value):
        raise InvalidAuditArgument(argument)


class AuditService:
    """Entry point for manual audit records and audit history lookups."""

    def __init__(self, store: AuditStore, registry: EntityRegistry = entity_registry):
        self.store = store
        self.registry = registry

    # =========================================================================
    # Manual logging
    # =========================================================================

    def build_entry(
        self,
        entity: Any,
        action: AuditAction | str,
        user_id: str,
        old_values: str | None = None,
        new_values: str | None = None,
        tenant_id: str | None = None,
        *,
        entity_type: type | None = None,
        entity_id: str | None = None,
    ) -> AuditEntry:
        """Validate inputs and build one entry without touching the store.

        ``entity`` may be an instance or, with an explicit ``entity_id``, a
        type. Without ``new_values`` an instance is serialized in full.

        Raises:
            InvalidAuditArgument: entity is None, or action/user_id is empty
        """
        _require(entity, "entity")
        action_label = action.value if isinstance(action, AuditAction) else action
        _require(action_label, "action")
        _require(user_id, "user_id")

        is_type = isinstance(entity, type)
        resolved_type = entity_type or (entity if is_type else type(entity))
        descriptor = self.registry.describe(resolved_type)

        if entity_id is None:
            entity_id = "" if is_type else descriptor.entity_id(entity)

        if new_values is None and not is_type:
            new_values = serialize_values(descriptor.properties(entity))

        return AuditEntry(
            entity_name=resolved_type.__name__,
            entity_id=entity_id,
            action=action_label,
            changed_by=user_id,
            old_values=old_values,
            new_values=new_values,
            tenant_id=tenant_id,
        )

    async def log(
        self,
        entity: Any,
        action: AuditAction | str,
        user_id: str,
        old_values: str | None = None,
        new_values: str | None = None,
        tenant_id: str | None = None,
        *,
        entity_type: type | None = None,
        entity_id: str | None = None,
    ) -> AuditEntry:
        """Record one audit entry directly, bypassing change capture."""
        entry = self.build_entry(
            entity,
            action,
            user_id,
            old_values,
            new_values,
            tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        await self.store.aadd_all([entry])
        logger.info(
            "Manual audit entry recorded",
            extra={"entity_name": entry.entity_name, "entity_id": entry.entity_id, "action": entry.action},
        )
        return entry

    def log_sync(
        self,
        entity: Any,
        action: AuditAction | str,
        user_id: str,
        old_values: str | None = None,
        new_values: str | None = None,
        tenant_id: str | None = None,
        *,
        entity_type: type | None = None,
        entity_id: str | None = None,
    ) -> AuditEntry:
        """Synchronous twin of log."""
        entry = self.build_entry(
            entity,
            action,
            user_id,
            old_values,
            new_values,
            tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.store.add_all([entry])
        logger.info(
            "Manual audit entry recorded",
            extra={"entity_name": entry.entity_name, "entity_id": entry.entity_id, "action": entry.action},
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_logs(
        self,
        entity_name: str,
        entity_id: str,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditEntry]:
        """History of one entity, newest first.

        Args:
            entity_name: Entity type name
            entity_id: Entity identifier string
            tenant_id: Restrict to one tenant
            start: Inclusive lower bound on changed_at (naive = UTC)
            end: Inclusive upper bound on changed_at (naive = UTC)
        """
        _require(entity_name, "entity_name")
        _require(entity_id, "entity_id")
        if tenant_id is not None:
            _require(tenant_id, "tenant_id")

        return await self.store.afind(
            AuditQuery(
                entity_name=entity_name,
                entity_id=entity_id,
                tenant_id=tenant_id,
                start=start,
                end=end,
            )
        )

    async def get_logs_by_entity_name(self, entity_name: str) -> list[AuditEntry]:
        """All entries for an entity type, newest first."""
        _require(entity_name, "entity_name")
        return await self.store.afind(AuditQuery(entity_name=entity_name))
