"""Exceptions raised by audittrail."""

from typing import Any


class AuditError(Exception):
    """Base class for audit errors."""


class InvalidAuditArgument(AuditError, ValueError):
    """Raised synchronously, before any I/O, when a required input is missing."""

    def __init__(self, argument: str, message: str | None = None):
        self.argument = argument
        self.message = message or f"Argument '{argument}' must not be empty"
        super().__init__(self.message)


class AuditPersistenceError(AuditError):
    """Raised when audit entries could not be written after the business commit.

    The business data is already durable at this point; only the audit
    records are missing.
    """

    def __init__(self, entry_count: int, attempts: int, cause: BaseException | None = None):
        self.entry_count = entry_count
        self.attempts = attempts
        self.cause = cause
        self.message = (
            f"Failed to persist {entry_count} audit entries after {attempts} attempt(s)"
            + (f": {cause}" if cause else "")
        )
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_count": self.entry_count,
            "attempts": self.attempts,
            "cause": str(self.cause) if self.cause else None,
            "message": self.message,
        }
