from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel


def _to_json_primitive(value: Any) -> Any:
    """Reduce pydantic models, enums and datetimes to values rfc8785 accepts.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_to_json_primitive(key)): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitive(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_primitive(item) for item in value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
