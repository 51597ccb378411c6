# crowdpass/utils/json_parser.py
"""
Helpers for parsing JSON payloads: QR tokens from checkpoint scanners
and NDJSON lines from sensor streams.
"""

import json
from typing import Optional, Any


def safe_parse_json(raw: bytes | str) -> Optional[dict]:
    """Parse a JSON object safely. Returns None on error or when the top level is not an object."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def first_present(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the value of the first key present (and not None) in data."""
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def dumps_compact(data: dict) -> str:
    """Serialize with stable key order and no whitespace (QR payloads stay small)."""
    return json.dumps(data, separators=(",", ":"), sort_keys=False)
