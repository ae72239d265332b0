"""JSON decoding at the key-value store boundary.

Values read back from Redis arrive as bytes, str, or (from tests and some
clients) already-parsed mappings. Everything cached is decoded here, once.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def encode_json_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def decode_json_payload(raw: Any, *, what: str = "payload") -> dict[str, Any] | None:
    """Decode a cached JSON object.

    Returns:
        The decoded mapping, or None when the value is absent or unusable.
        Unusable values are logged and treated as absent.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        if isinstance(raw, (bytes, bytearray, memoryview)):
            raw = bytes(raw).decode("utf-8")
        if not isinstance(raw, str):
            raise TypeError(f"unsupported type {type(raw).__name__}")
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to decode cached %s: %s", what, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Cached %s is not a JSON object", what)
        return None
    return data


def require_int(data: dict[str, Any], key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{key} must be a number")
    return int(value)


def require_str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value
