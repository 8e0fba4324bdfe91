from __future__ import annotations

import re
from datetime import date
from typing import Any

from .errors import ValidationError

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require_fields(payload: dict[str, Any], *names: str) -> None:
    missing = [name for name in names if is_blank(payload.get(name))]
    if missing:
        noun = "field" if len(missing) == 1 else "fields"
        raise ValidationError(f"Missing required {noun}: {', '.join(missing)}")


def positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer")
    return value


def iso_date(value: Any, field_name: str) -> str:
    """Accept only real calendar dates written as YYYY-MM-DD."""
    if not isinstance(value, str) or not _ISO_DATE_RE.fullmatch(value):
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} is not a valid date") from exc
    return value
