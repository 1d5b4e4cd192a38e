"""Per-entity-type key and property discovery.

Each entity type is described once and cached: how to derive its identifier
string and which properties make up its state. Descriptors are built from
SQLAlchemy mapper metadata when the type is mapped, from dataclass fields or
pydantic models otherwise, and can be registered explicitly at startup for
anything else.
"""

import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper

logger = logging.getLogger(__name__)

KeyExtractor = Callable[[Any], str]
PropertyExtractor = Callable[[Any], dict[str, Any]]

COMPOSITE_KEY_SEPARATOR = "_"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(name: str) -> str:
    """Convert a CamelCase class name to snake_case."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def conventional_key_names(entity_type: type) -> tuple[str, ...]:
    """Identifier property names tried in order for an unmapped type."""
    type_name = entity_type.__name__
    return ("Id", "id", f"{type_name}Id", f"{snake_case(type_name)}_id", "ID")


def join_key_values(values: list[Any]) -> str:
    """Stringify key values; composite keys are joined, missing parts skipped."""
    return COMPOSITE_KEY_SEPARATOR.join(str(v) for v in values if v is not None)


def mapper_for(entity_type: type) -> Mapper | None:
    """Return the SQLAlchemy mapper of a type, or None if it is not mapped."""
    mapper = sa_inspect(entity_type, raiseerr=False)
    return mapper if isinstance(mapper, Mapper) else None


@dataclass(frozen=True)
class EntityDescriptor:
    """How to identify and enumerate one entity type."""

    entity_type: type
    # Empty when keys are discovered by convention at call time
    key_names: tuple[str, ...] = ()
    # None when properties are enumerated from the instance
    property_names: tuple[str, ...] | None = None
    key_extractor: KeyExtractor | None = None
    property_extractor: PropertyExtractor | None = None

    @property
    def name(self) -> str:
        return self.entity_type.__name__

    def entity_id(self, entity: Any) -> str:
        """Derive the identifier string of an entity; empty if none is found."""
        if self.key_extractor is not None:
            return self.key_extractor(entity) or ""

        if self.key_names:
            return join_key_values([getattr(entity, k, None) for k in self.key_names])

        for candidate in conventional_key_names(self.entity_type):
            if hasattr(entity, candidate):
                value = getattr(entity, candidate)
                return "" if value is None else str(value)

        return ""

    def properties(self, entity: Any) -> dict[str, Any]:
        """Return the full property map of an entity."""
        if self.property_extractor is not None:
            return dict(self.property_extractor(entity))

        if self.property_names is not None:
            return {name: getattr(entity, name, None) for name in self.property_names}

        model_dump = getattr(entity, "model_dump", None)
        if callable(model_dump):
            return model_dump()

        return {k: v for k, v in vars(entity).items() if not k.startswith("_")}


class EntityRegistry:
    """Cache of entity descriptors keyed by type.

    Explicit registrations win over discovered descriptors.
    """

    def __init__(self) -> None:
        self._descriptors: dict[type, EntityDescriptor] = {}

    def register(
        self,
        entity_type: type,
        *,
        key: KeyExtractor | None = None,
        properties: PropertyExtractor | None = None,
    ) -> EntityDescriptor:
        """Register explicit key/property extractors for a type."""
        discovered = self._discover(entity_type)
        descriptor = dataclasses.replace(
            discovered,
            key_extractor=key,
            property_extractor=properties,
        )
        self._descriptors[entity_type] = descriptor
        logger.debug(f"Registered entity descriptor for {entity_type.__name__}")
        return descriptor

    def describe(self, entity_type: type) -> EntityDescriptor:
        """Get (building on first use) the descriptor for a type."""
        descriptor = self._descriptors.get(entity_type)
        if descriptor is None:
            descriptor = self._discover(entity_type)
            self._descriptors[entity_type] = descriptor
        return descriptor

    def clear(self) -> None:
        self._descriptors.clear()

    @staticmethod
    def _discover(entity_type: type) -> EntityDescriptor:
        mapper = mapper_for(entity_type)
        if mapper is not None:
            return EntityDescriptor(
                entity_type=entity_type,
                key_names=tuple(
                    mapper.get_property_by_column(col).key for col in mapper.primary_key
                ),
                property_names=tuple(attr.key for attr in mapper.column_attrs),
            )

        if dataclasses.is_dataclass(entity_type):
            return EntityDescriptor(
                entity_type=entity_type,
                property_names=tuple(f.name for f in dataclasses.fields(entity_type)),
            )

        return EntityDescriptor(entity_type=entity_type)


# Global registry instance
entity_registry = EntityRegistry()
