"""JSON helpers for TEXT columns holding metadata, config and progress."""

import json
from datetime import datetime
from typing import Any


def parse_json_field(raw: str | dict | None) -> dict[str, Any] | None:
    """Parse a JSON string or dict, returning None on failure or empty.

    For metadata, config, progress and other dict-valued DB fields.
    Returns None for: None, empty string, empty dict, invalid JSON, non-dict JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if raw else None
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict) and parsed:
                return parsed
        except (ValueError, TypeError):
            pass
    return None


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_json(value: dict[str, Any] | None) -> str:
    """Serialize a dict column value. None becomes ``{}``; datetimes become ISO strings."""
    return json.dumps(value or {}, default=_default)
