"""Metadata codec for vector backends that only store flat scalars.

ChromaDB accepts ``str | int | float | bool`` metadata values.  Chunk
metadata may also carry lists and dicts, so at the backend boundary every
value is one of two tagged variants:

* scalar -- stored as-is;
* json   -- serialised with :func:`json.dumps`, and its key recorded in the
  reserved ``JSON_KEYS_FIELD`` entry.

Decoding only parses the keys recorded as json, so a string value that
happens to start with ``[`` or ``{`` round-trips unchanged.  ``None``
values are dropped on encode and read back as missing keys.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

logger = structlog.get_logger(logger_name=__name__)

JSON_KEYS_FIELD = "_json_keys"

_SCALAR_TYPES = (str, int, float, bool)


def encode_metadata(metadata: dict[str, Any]) -> dict[str, str | int | float | bool]:
    """Flatten *metadata* into backend-safe scalars.

    Raises:
        ValueError: If a key collides with the reserved field or a value is
            not JSON-serialisable.
    """
    encoded: dict[str, str | int | float | bool] = {}
    json_keys: list[str] = []
    for key, value in metadata.items():
        if key == JSON_KEYS_FIELD:
            raise ValueError(f"Metadata key {JSON_KEYS_FIELD!r} is reserved")
        if value is None:
            continue
        if isinstance(value, _SCALAR_TYPES):
            encoded[key] = value
            continue
        try:
            encoded[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
        except TypeError as exc:
            raise ValueError(f"Metadata value for {key!r} is not JSON-serialisable") from exc
        json_keys.append(key)

    if json_keys:
        encoded[JSON_KEYS_FIELD] = ",".join(sorted(json_keys))
    return encoded


def decode_metadata(encoded: dict[str, Any] | None) -> dict[str, Any]:
    """Invert :func:`encode_metadata`."""
    if not encoded:
        return {}
    decoded = dict(encoded)
    raw_keys = decoded.pop(JSON_KEYS_FIELD, "")
    for key in filter(None, str(raw_keys).split(",")):
        value = decoded.get(key)
        if isinstance(value, str):
            try:
                decoded[key] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("metadata_json_decode_failed", key=key)
    return decoded
