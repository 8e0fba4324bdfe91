from __future__ import annotations

from typing import Any


def unwrap_envelope(envelope: Any) -> Any:
    """Innermost meaningful payload: `envelope["data"]` when present, else the envelope."""
    if isinstance(envelope, dict) and envelope.get("data") is not None:
        return envelope["data"]
    return envelope


def first_present(source: Any, *paths: str) -> Any:
    """Return the first non-None value found along dotted `paths`.

    Numeric segments index into lists, so `"chats.0._id"` reads the first chat id.
    """
    for path in paths:
        current = source
        for segment in path.split("."):
            if isinstance(current, dict):
                current = current.get(segment)
            elif isinstance(current, list) and segment.isdigit():
                index = int(segment)
                current = current[index] if index < len(current) else None
            else:
                current = None
            if current is None:
                break
        if current is not None:
            return current
    return None
