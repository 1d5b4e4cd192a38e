"""Configuration for audittrail.

Two layers:
- AuditSettings: values that can come from the environment or a .env file
- AuditOptions: the immutable, process-wide options the capture engine reads,
  including callbacks and entity types that cannot be expressed as env vars
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "System"
DEFAULT_SOFT_DELETE_PROPERTY = "is_deleted"

UserIdResolver = Callable[[], str | None]
TenantIdResolver = Callable[[], str | None]


# =============================================================================
# Pydantic Settings for Environment Variables
# =============================================================================


class AuditSettings(BaseSettings):
    """Audit configuration from environment variables.

    All settings use the AUDITTRAIL_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUDITTRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    debug: bool = False
    json_logs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/audit.db"
    sync_database_url: str = "sqlite:///./data/audit.db"

    # =========================================================================
    # Capture
    # =========================================================================

    enable_automatic_logging: bool = Field(
        default=True,
        description="Master switch for capturing changes on session commit",
    )
    excluded_entities: str = Field(
        default="",
        description="Comma-separated entity class names that are never audited",
    )
    excluded_properties: str = Field(
        default="",
        description="Comma-separated property names stripped from every diff",
    )
    track_soft_deletes: bool = Field(
        default=True,
        description="Classify flag flips to true as SoftDelete instead of Update",
    )
    soft_delete_property_name: str = Field(
        default=DEFAULT_SOFT_DELETE_PROPERTY,
        description=(
            "Boolean property inspected by the soft-delete rule. Defaults to the "
            "snake_case 'is_deleted'; models with an 'IsDeleted' attribute must set "
            "AUDITTRAIL_SOFT_DELETE_PROPERTY_NAME=IsDeleted"
        ),
    )

    # =========================================================================
    # Persistence
    # =========================================================================

    persist_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Extra attempts for a failed audit insert (0-5)",
    )
    raise_on_persist_failure: bool = Field(
        default=True,
        description="Raise AuditPersistenceError once retries are exhausted",
    )

    @field_validator("soft_delete_property_name")
    @classmethod
    def validate_soft_delete_property(cls, v: str) -> str:
        """Soft-delete property name must be a non-empty identifier."""
        v = v.strip()
        if not v:
            raise ValueError("soft_delete_property_name must not be empty")
        return v

    @field_validator("excluded_entities", "excluded_properties")
    @classmethod
    def validate_name_list(cls, v: str) -> str:
        """Validate comma-separated name lists."""
        if v:
            for name in v.split(","):
                if not name.strip():
                    raise ValueError("Empty name in comma-separated list")
        return v


def split_names(value: str) -> frozenset[str]:
    """Split a comma-separated setting into a set of names."""
    return frozenset(n.strip() for n in value.split(",") if n.strip())


# =============================================================================
# Configuration Instance Management
# =============================================================================

_settings: AuditSettings | None = None


def get_audit_settings() -> AuditSettings:
    """Get the global audit settings instance, loading it on first access."""
    global _settings
    if _settings is None:
        _settings = AuditSettings()
        logger.info("Audit configuration loaded")
        _log_active_settings(_settings)
    return _settings


def reset_audit_settings() -> None:
    """Reset settings to reload from environment. Used for testing."""
    global _settings
    _settings = None


def _log_active_settings(settings: AuditSettings) -> None:
    if not settings.enable_automatic_logging:
        logger.warning("Automatic audit logging is DISABLED")
    if not settings.track_soft_deletes:
        logger.info("Soft-delete tracking disabled")
    if settings.excluded_entities:
        logger.debug(f"Excluded entities: {settings.excluded_entities}")


# =============================================================================
# Derived Options
# =============================================================================


@dataclass(frozen=True)
class AuditOptions:
    """Read-only options consumed by the capture engine.

    Set once at initialization and shared by every session.
    """

    enable_automatic_logging: bool = True
    excluded_entity_types: frozenset[type] = field(default_factory=frozenset)
    excluded_entity_names: frozenset[str] = field(default_factory=frozenset)
    excluded_properties: frozenset[str] = field(default_factory=frozenset)
    track_soft_deletes: bool = True
    soft_delete_property_name: str = DEFAULT_SOFT_DELETE_PROPERTY
    user_id_resolver: UserIdResolver | None = None
    tenant_id_resolver: TenantIdResolver | None = None
    persist_retries: int = 0
    raise_on_persist_failure: bool = True

    def __post_init__(self) -> None:
        # Accept any iterable from callers; store frozensets
        for name in ("excluded_entity_types", "excluded_entity_names", "excluded_properties"):
            value = getattr(self, name)
            if not isinstance(value, frozenset):
                object.__setattr__(self, name, frozenset(value))

    @classmethod
    def from_settings(
        cls,
        settings: AuditSettings | None = None,
        *,
        excluded_entity_types: Iterable[type] = (),
        user_id_resolver: UserIdResolver | None = None,
        tenant_id_resolver: TenantIdResolver | None = None,
    ) -> "AuditOptions":
        """Build options from settings plus the callbacks only code can supply."""
        settings = settings or get_audit_settings()
        return cls(
            enable_automatic_logging=settings.enable_automatic_logging,
            excluded_entity_types=frozenset(excluded_entity_types),
            excluded_entity_names=split_names(settings.excluded_entities),
            excluded_properties=split_names(settings.excluded_properties),
            track_soft_deletes=settings.track_soft_deletes,
            soft_delete_property_name=settings.soft_delete_property_name,
            user_id_resolver=user_id_resolver,
            tenant_id_resolver=tenant_id_resolver,
            persist_retries=settings.persist_retries,
            raise_on_persist_failure=settings.raise_on_persist_failure,
        )

    def is_excluded_type(self, entity_type: type) -> bool:
        """Check whether an entity type is excluded from auditing."""
        return (
            entity_type in self.excluded_entity_types
            or entity_type.__name__ in self.excluded_entity_names
        )

    def resolve_user_id(self) -> str:
        """Resolve the acting user, falling back to the System sentinel."""
        if self.user_id_resolver is None:
            return DEFAULT_USER_ID
        return self.user_id_resolver() or DEFAULT_USER_ID

    def resolve_tenant_id(self) -> str | None:
        """Resolve the current tenant, if a resolver is configured."""
        if self.tenant_id_resolver is None:
            return None
        return self.tenant_id_resolver()


def get_config_summary(options: AuditOptions) -> dict[str, Any]:
    """Summarize options for diagnostics (callbacks reported as flags)."""
    return {
        "enable_automatic_logging": options.enable_automatic_logging,
        "excluded_entity_types": sorted(t.__name__ for t in options.excluded_entity_types),
        "excluded_entity_names": sorted(options.excluded_entity_names),
        "excluded_properties": sorted(options.excluded_properties),
        "track_soft_deletes": options.track_soft_deletes,
        "soft_delete_property_name": options.soft_delete_property_name,
        "has_user_id_resolver": options.user_id_resolver is not None,
        "has_tenant_id_resolver": options.tenant_id_resolver is not None,
        "persist_retries": options.persist_retries,
        "raise_on_persist_failure": options.raise_on_persist_failure,
    }
