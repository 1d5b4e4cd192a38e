"""Maps a pending mutation to an audit action."""

import logging

from audittrail.audit.models import AuditAction, EntityState, PendingMutation
from audittrail.config import AuditOptions

logger = logging.getLogger(__name__)

STATE_ACTIONS = {
    EntityState.ADDED: AuditAction.CREATE,
    EntityState.DELETED: AuditAction.DELETE,
    EntityState.MODIFIED: AuditAction.UPDATE,
}


def is_soft_delete(mutation: PendingMutation, options: AuditOptions) -> bool:
    """True when a modified entity just had its soft-delete flag set to True."""
    if mutation.state != EntityState.MODIFIED or not options.track_soft_deletes:
        return False

    prop = options.soft_delete_property_name
    if not mutation.has_property(prop):
        return False
    if prop not in mutation.modified_properties:
        return False
    return mutation.current_values.get(prop) is True


def classify(mutation: PendingMutation, options: AuditOptions) -> AuditAction | None:
    """Classify a mutation, or return None for states that produce no entry.

    The soft-delete rule takes precedence over a plain update.
    """
    if is_soft_delete(mutation, options):
        return AuditAction.SOFT_DELETE

    action = STATE_ACTIONS.get(mutation.state)
    if action is None:
        logger.debug(
            f"No audit action for state {mutation.state.value}",
            extra={"entity_name": mutation.entity_name, "entity_id": mutation.entity_id},
        )
    return action
