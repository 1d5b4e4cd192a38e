"""Diff computation and JSON serialization of property maps."""

import base64
import json
import math
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Collection, Mapping
from uuid import UUID

from audittrail.audit.models import AuditAction, PendingMutation


def to_portable(value: Any) -> Any:
    """Convert a property value to a JSON-native representation."""
    if isinstance(value, float) and not math.isfinite(value):
        # NaN and infinities are not valid JSON numbers
        return str(value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return to_portable(value.value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        # Integral decimals stay integers so 10 does not become 10.0
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Mapping):
        return {str(k): to_portable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_portable(v) for v in value]
    return str(value)


def select_values(
    values: Mapping[str, Any],
    excluded_properties: Collection[str],
    only: Collection[str] | None = None,
) -> dict[str, Any]:
    """Pick properties in their original order, minus exclusions.

    Args:
        values: Property name -> value
        excluded_properties: Names that must never appear
        only: If given, restrict to these names
    """
    return {
        name: value
        for name, value in values.items()
        if name not in excluded_properties and (only is None or name in only)
    }


def compute_diff(
    mutation: PendingMutation,
    action: AuditAction,
    excluded_properties: Collection[str] = (),
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Return the (old, new) property maps relevant to an action.

    Create carries only new values, Delete only old values. Update and
    SoftDelete carry both, restricted to the modified properties.
    """
    if action == AuditAction.CREATE:
        return None, select_values(mutation.current_values, excluded_properties)

    if action == AuditAction.DELETE:
        return select_values(mutation.original_values, excluded_properties), None

    modified = set(mutation.modified_properties)
    old = select_values(mutation.original_values, excluded_properties, only=modified)
    new = select_values(mutation.current_values, excluded_properties, only=modified)
    return old, new


def serialize_values(values: Mapping[str, Any] | None) -> str | None:
    """Serialize a property map to JSON text; None stays None."""
    if values is None:
        return None
    return json.dumps({name: to_portable(v) for name, v in values.items()})


def serialize_diff(
    mutation: PendingMutation,
    action: AuditAction,
    excluded_properties: Collection[str] = (),
) -> tuple[str | None, str | None]:
    """Compute and serialize the diff of a classified mutation."""
    old, new = compute_diff(mutation, action, excluded_properties)
    return serialize_values(old), serialize_values(new)
