"""Tests for sanitized JSON export."""

import json
from datetime import datetime, timezone

import pytest

from mqtt_dashboard.export import build_export, export_filename, sanitize, write_export
from mqtt_dashboard.models import Connection, Message, User

from conftest import connection_json, message_json, user_json

NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def test_sanitize_strips_passwords_at_any_depth():
    data = {
        "username": "bob",
        "password": "hash",
        "nested": {"plainPassword": "secret", "ok": 1},
        "rows": [{"password": "x", "id": 2}],
    }
    assert sanitize(data) == {"username": "bob", "nested": {"ok": 1}, "rows": [{"id": 2}]}
    assert "password" in data


def test_export_all_sections():
    document = build_export(
        "all",
        users=[User.from_api(user_json(1))],
        connections=[Connection.from_api(connection_json(1))],
        messages=[Message.from_api(message_json(1))],
        now=NOW,
    )
    assert document["exportedAt"] == "2024-05-01T12:30:00.000Z"
    assert [u["id"] for u in document["users"]] == [1]
    assert document["connections"][0]["brokerUrl"] == "broker.example.com"
    assert document["messages"][0]["topic"] == "sensors/temp"


def test_export_single_subject_only():
    document = build_export("users", users=[User.from_api(user_json(1))], now=NOW)
    assert set(document) == {"exportedAt", "users"}


def test_raw_api_dicts_are_sanitized():
    """Raw JSON objects carrying passwords never reach the file."""
    document = build_export("users", users=[user_json(1), user_json(2)], now=NOW)
    text = json.dumps(document)
    assert "password" not in text.lower()
    assert "secret123" not in text


def test_unknown_subject():
    with pytest.raises(ValueError, match="Unknown export subject"):
        build_export("secrets")


def test_export_filename():
    assert export_filename("users", NOW) == "users-export-2024-05-01.json"


def test_write_export(tmp_path):
    document = build_export(
        "all",
        users=[User.from_api(user_json(1)), User.from_api(user_json(2))],
        messages=[Message.from_api(message_json(1))],
        now=NOW,
    )
    path = tmp_path / "out" / "all-export.json"
    counts = write_export(document, path)

    assert counts == {"users": 2, "connections": 0, "messages": 1}
    assert json.loads(path.read_text()) == document
