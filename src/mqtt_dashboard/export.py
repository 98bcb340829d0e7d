"""Sanitized JSON export of cached admin data."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mqtt_dashboard.models import SENSITIVE_KEYS, Connection, Message, User, format_timestamp

SUBJECTS = ("users", "connections", "messages", "all")


def sanitize(value: Any) -> Any:
    """Return a copy of value with every sensitive key removed, at any depth."""
    if isinstance(value, Mapping):
        return {k: sanitize(v) for k, v in value.items() if k not in SENSITIVE_KEYS}
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def _serialize(items: Iterable[Any]) -> list[Any]:
    rows = []
    for item in items:
        if hasattr(item, "to_api"):
            item = item.to_api()
        rows.append(sanitize(item))
    return rows


def build_export(
    subject: str,
    users: Iterable[User | Mapping] = (),
    connections: Iterable[Connection | Mapping] = (),
    messages: Iterable[Message | Mapping] = (),
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the export document for subject.

    Raises:
        ValueError: If subject is not one of SUBJECTS
    """
    if subject not in SUBJECTS:
        raise ValueError(f"Unknown export subject {subject!r}; expected one of {SUBJECTS}")
    now = now or datetime.now(timezone.utc)
    document: dict[str, Any] = {"exportedAt": format_timestamp(now)}
    if subject in ("users", "all"):
        document["users"] = _serialize(users)
    if subject in ("connections", "all"):
        document["connections"] = _serialize(connections)
    if subject in ("messages", "all"):
        document["messages"] = _serialize(messages)
    return document


def export_filename(subject: str, now: datetime | None = None) -> str:
    """Default file name: <subject>-export-<YYYY-MM-DD>.json."""
    now = now or datetime.now(timezone.utc)
    return f"{subject}-export-{now.astimezone(timezone.utc).date().isoformat()}.json"


def write_export(document: dict[str, Any], path: Path) -> dict[str, int]:
    """Write document as indented JSON. Returns entity counts by section."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    return {name: len(rows) for name, rows in document.items() if isinstance(rows, list)}
