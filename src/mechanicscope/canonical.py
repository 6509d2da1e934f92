from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively reduce documents, records and timestamps to JSON primitives.

    Pydantic models are dumped by alias so procedure documents keep their
    on-disk camelCase keys. Sets and frozensets (completed step ids) are
    emitted as sorted lists so the output does not depend on hash order.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json", by_alias=True, exclude_none=True))

    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}

    if isinstance(value, (set, frozenset)):
        return [_normalize(item) for item in sorted(value)]

    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]

    if isinstance(value, Enum):
        return _normalize(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Path):
        return value.as_posix()

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785.

    Used for progress exports, share codes and procedure fingerprints, where
    two equal documents must always encode to the same string.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")
