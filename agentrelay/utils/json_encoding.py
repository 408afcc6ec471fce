from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if hasattr(value, "model_dump") and callable(value.model_dump):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def encode_json(value: Any) -> str:
    """Serialize an event payload or column value; non-JSON scalars are stringified."""
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def encode_jsonb(value: Any) -> str | None:
    """Serialize the given value into a JSON string suitable for jsonb columns."""
    if value is None:
        return None
    return encode_json(value)


def decode_jsonb(value: Any) -> Any:
    """Decode a jsonb column value into native Python structures."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


__all__ = ["decode_jsonb", "encode_json", "encode_jsonb"]
