from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping


def to_db_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    resolved = value
    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    else:
        resolved = resolved.astimezone(timezone.utc)
    # Persist as UTC without offset to stay compatible with timestamp columns.
    return resolved.replace(tzinfo=None).isoformat(sep=" ", timespec="microseconds")


def to_json(value: Mapping[str, Any] | None) -> str:
    return json.dumps(dict(value or {}), ensure_ascii=True, separators=(",", ":"), default=str)


def to_payload(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, Mapping):
        return dict(value.items())
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return {}
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return {}
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if isinstance(loaded, dict):
            return dict(loaded)
        return {}
    return {}


def row_to_dict(row: Any) -> dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return {}


def is_unique_violation(exc: Exception, constraint_markers: Iterable[str]) -> bool:
    pg_code = str(getattr(exc, "pgcode", "") or "").strip()
    message = str(exc or "").lower()
    if getattr(exc, "__cause__", None) is not None:
        message = f"{message} {str(exc.__cause__ or '').lower()}"

    if not any(marker in message for marker in constraint_markers):
        return False

    if pg_code == "23505":
        return True

    if "unique constraint failed" in message:
        return True
    if "duplicate key value violates unique constraint" in message:
        return True
    return "unique" in message


class BaseRepository:
    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [row_to_dict(row) for row in rows]

    @staticmethod
    def rowcount(cursor) -> int:
        return int(getattr(cursor, "rowcount", 0) or 0)
