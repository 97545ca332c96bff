from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

from .models import Address, ConfigurationCall, DeploymentPlan, Lookup, PostDeployCall, Reference, UnitDescriptor


# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, float, str, type(None))

# rfc8785 rejects integers outside the IEEE-754 safe range; token amounts
# routinely exceed it, so those are carried as decimal strings.
_MAX_SAFE_INTEGER = 2**53 - 1


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert plan values into JSON-primitive types.

    References and lookups are tagged so a literal string can never collide
    with a placeholder that happens to spell the same unit name.

    Args:
        value: Any plan value (descriptor, argument, address, model).

    Returns:
        A JSON-primitive structure suitable for rfc8785.dumps.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if abs(value) > _MAX_SAFE_INTEGER:
            return str(value)
        return value

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, Address):
        return {"$address": value.value}

    if isinstance(value, Reference):
        return {"$ref": value.unit}

    if isinstance(value, Lookup):
        return {"$lookup": value.unit, "method": value.method, "args": _normalize_for_jcs(value.args)}

    if isinstance(value, PostDeployCall):
        return {"method": value.method, "args": _normalize_for_jcs(value.args)}

    if isinstance(value, ConfigurationCall):
        return {"target": value.target, "method": value.method, "args": _normalize_for_jcs(value.args)}

    if isinstance(value, UnitDescriptor):
        return {
            "name": value.name,
            "type_name": value.type_name,
            "constructor_args": _normalize_for_jcs(value.constructor_args),
            "libraries": _normalize_for_jcs(value.libraries),
            "post_deploy_calls": _normalize_for_jcs(value.post_deploy_calls),
            "depends_on": list(value.depends_on),
            "is_library": value.is_library,
        }

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, Mapping):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        return str(value)

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def plan_fingerprint(plan: DeploymentPlan) -> str:
    """SHA-256 over the canonical form of every unit and standalone call in ``plan``."""
    payload = {
        "name": plan.name,
        "output_name": plan.output_name,
        "units": list(plan.units),
        "calls": list(plan.calls),
    }
    return hashlib.sha256(to_canonical_json(payload).encode("utf-8")).hexdigest()
