"""Shared utility functions used across Build Authority modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def is_blank(value: str | None) -> bool:
    return not (value or "").strip()
