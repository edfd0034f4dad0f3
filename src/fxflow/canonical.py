from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Mapping, Set
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

from .utils import MISSING

logger = logging.getLogger(__name__)

EMPTY_HASH = "empty"
CIRCULAR_PLACEHOLDER = "[Circular]"

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, str, type(None))

# rfc8785 rejects integers outside the IEEE-754 safe range.
_MAX_SAFE_INT = 2**53 - 1

JsonPrimitive = bool | int | float | str | None | list[Any] | dict[str, Any]


def _placeholder(value: Any) -> str:
    return f"<{type(value).__name__}>"


def _normalize_for_jcs(value: Any, _active: set[int] | None = None) -> JsonPrimitive:
    """Recursively convert Python/Pydantic values into JSON-primitive types.

    Unlike a strict serializer this never raises: values rfc8785 cannot
    represent are replaced with stable string placeholders, and a container
    that appears inside itself is replaced with ``CIRCULAR_PLACEHOLDER``.

    Args:
        value: Any Python value to normalize for JCS serialization.

    Returns:
        A JSON-primitive structure suitable for rfc8785.dumps.
    """
    if value is MISSING:
        return None

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, int):
        if isinstance(value, Enum):
            return _normalize_for_jcs(value.value, _active)
        return value if abs(value) <= _MAX_SAFE_INT else str(value)

    if isinstance(value, float):
        return value if math.isfinite(value) else f"<float:{value}>"

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value, _active)

    if isinstance(value, datetime | date | time):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Decimal):
        return float(value) if value.is_finite() else f"<Decimal:{value}>"

    if isinstance(value, bytes | bytearray):
        return bytes(value).hex()

    active = _active if _active is not None else set()
    marker = id(value)
    if marker in active:
        return CIRCULAR_PLACEHOLDER

    if isinstance(value, BaseModel):
        active.add(marker)
        try:
            return _normalize_for_jcs(value.model_dump(mode="json"), active)
        finally:
            active.discard(marker)

    if isinstance(value, Mapping):
        active.add(marker)
        try:
            return {str(k): _normalize_for_jcs(v, active) for k, v in value.items()}
        finally:
            active.discard(marker)

    if isinstance(value, list | tuple):
        active.add(marker)
        try:
            return [_normalize_for_jcs(item, active) for item in value]
        finally:
            active.discard(marker)

    if isinstance(value, Set):
        active.add(marker)
        try:
            items = [_normalize_for_jcs(item, active) for item in value]
        finally:
            active.discard(marker)
        return sorted(items, key=lambda item: rfc8785.dumps(item))

    return _placeholder(value)


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785.

    Object keys are sorted; list and tuple elements keep their position.
    """
    normalized = _normalize_for_jcs(value)
    try:
        return rfc8785.dumps(normalized).decode("utf-8")
    except rfc8785.CanonicalizationError:
        logger.debug("Falling back to placeholder for non-canonical value of type %s", type(value).__name__)
        return rfc8785.dumps(_placeholder(value)).decode("utf-8")


def state_hash(value: Any) -> str:
    """Return the SHA-256 hex digest of a value's canonical JSON.

    ``None`` and absent values both collapse to ``EMPTY_HASH``.
    """
    if value is None or value is MISSING:
        return EMPTY_HASH
    canonical = to_canonical_json(value)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
