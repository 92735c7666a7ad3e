from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Reduce pydantic models, enums, dates and UUIDs to JSON primitives for rfc8785."""
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitives(item) for item in value]
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON.

    Two contents that differ only in key order or whitespace serialize to
    the same string.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def content_fingerprint(content: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of *content*."""
    return hashlib.sha256(to_canonical_json(content).encode("utf-8")).hexdigest()
