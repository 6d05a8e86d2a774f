"""Common helper functions for store modules."""

import json
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a timestamp read back from the database.

    SQLite DateTime columns drop tzinfo on the way out. Every timestamp we
    write is UTC, so a naive value is UTC by construction.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def as_utc_or_none(value: datetime | None) -> datetime | None:
    return None if value is None else as_utc(value)


def to_storage(value: datetime) -> datetime:
    """Normalize a timestamp before binding it into a query.

    Comparisons like ``retry_at <= :now`` happen inside SQLite as string
    comparisons, so every stored and bound value must share one offset.
    """
    if value.tzinfo is None:
        raise ValueError(f"Refusing to store naive datetime {value!r}; use an aware UTC timestamp")
    return value.astimezone(UTC)


def dump_json(value: Mapping[str, Any] | list[Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def load_json_object(raw: str, field_name: str) -> dict[str, Any]:
    """Decode a JSON column that must hold an object. Crashes on anything else."""
    parsed = json.loads(raw)
    if type(parsed) is not dict:
        raise ValueError(f"{field_name} must decode to an object, got {type(parsed).__name__}")
    return parsed
