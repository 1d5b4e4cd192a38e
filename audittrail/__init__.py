"""audittrail: automatic change capture and audit history for SQLAlchemy."""

from audittrail.config import (
    AuditOptions,
    AuditSettings,
    get_audit_settings,
    reset_audit_settings,
)
from audittrail.errors import AuditError, AuditPersistenceError, InvalidAuditArgument

__version__ = "0.1.0"

__all__ = [
    "AuditOptions",
    "AuditSettings",
    "get_audit_settings",
    "reset_audit_settings",
    "AuditError",
    "AuditPersistenceError",
    "InvalidAuditArgument",
]
