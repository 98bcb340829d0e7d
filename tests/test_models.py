"""Tests for API entity parsing."""

from datetime import datetime, timedelta, timezone

from mqtt_dashboard.models import (
    Connection,
    ConnectionAnalytics,
    Message,
    SystemStats,
    User,
    format_timestamp,
    parse_list,
    parse_timestamp,
)

from conftest import connection_json, message_json, user_json


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_iso_with_z_suffix(self) -> None:
        """Trailing Z is read as UTC."""
        dt = parse_timestamp("2024-05-01T12:30:00.000Z")
        assert dt == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_iso_with_offset(self) -> None:
        """Explicit offsets are kept."""
        dt = parse_timestamp("2024-05-01T14:30:00+02:00")
        assert dt is not None
        assert dt.utcoffset() == timedelta(hours=2)
        assert dt == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_naive_is_utc(self) -> None:
        """Naive timestamps are taken as UTC."""
        dt = parse_timestamp("2024-05-01 12:30:00")
        assert dt == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self) -> None:
        """Numbers are epoch milliseconds."""
        dt = parse_timestamp(1714566600000)
        assert dt == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_garbage_is_none(self) -> None:
        """Unparseable values become None instead of raising."""
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None
        assert parse_timestamp({"at": 1}) is None

    def test_format_roundtrip(self) -> None:
        """format_timestamp renders the API's Z form."""
        dt = datetime(2024, 5, 1, 12, 30, 5, 123000, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2024-05-01T12:30:05.123Z"
        assert parse_timestamp(format_timestamp(dt)) == dt
        assert format_timestamp(None) is None


class TestUser:
    """Tests for User.from_api."""

    def test_parses_camel_case_fields(self) -> None:
        user = User.from_api(
            user_json(3, "alice", role="admin", firstName="Alice", lastName="Smith")
        )
        assert user.id == 3
        assert user.username == "alice"
        assert user.is_admin
        assert user.first_name == "Alice"
        assert user.display_name == "Alice Smith"
        assert user.created_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_passwords_are_not_retained(self) -> None:
        """Password fields in the payload never reach the model."""
        user = User.from_api(user_json(1))
        api = user.to_api()
        assert "password" not in api
        assert "plainPassword" not in api
        assert not hasattr(user, "password")

    def test_unknown_role_falls_back_to_user(self) -> None:
        user = User.from_api(user_json(1, role="superuser"))
        assert user.role == "user"

    def test_missing_optional_fields(self) -> None:
        """A bare object parses with defaults."""
        user = User.from_api({"id": 9, "username": "bare"})
        assert user.email is None
        assert user.status == "active"
        assert user.last_login_at is None
        assert user.display_name == "bare"

    def test_last_login_alias(self) -> None:
        user = User.from_api(user_json(1, lastLogin="2024-05-02T08:00:00Z"))
        assert user.last_login_at == datetime(2024, 5, 2, 8, tzinfo=timezone.utc)


class TestConnection:
    """Tests for Connection.from_api."""

    def test_parses_fields(self) -> None:
        connection = Connection.from_api(connection_json(5, user_id=2, connected=True))
        assert connection.id == 5
        assert connection.user_id == 2
        assert connection.is_connected is True
        assert connection.address == "broker.example.com:8000"

    def test_unknown_protocol_falls_back_to_ws(self) -> None:
        connection = Connection.from_api(connection_json(1, protocol="carrier-pigeon"))
        assert connection.protocol == "ws"


class TestMessage:
    """Tests for Message.from_api."""

    def test_string_payload_kept_verbatim(self) -> None:
        message = Message.from_api(message_json(1, payload='{"value": 3}'))
        assert message.payload == '{"value": 3}'
        assert message.qos == 0
        assert message.retain is False

    def test_object_payload_becomes_json_text(self) -> None:
        message = Message.from_api(message_json(1, payload={"value": 3}))
        assert message.payload == '{"value": 3}'

    def test_bad_timestamp_is_none(self) -> None:
        message = Message.from_api(message_json(1, timestamp="not a time"))
        assert message.timestamp is None


def test_system_stats_from_api() -> None:
    """SystemStats reads the server's camelCase numbers."""
    stats = SystemStats.from_api(
        {
            "cpuUsage": 12.5,
            "memoryUsage": "40",
            "uptime": "2d 3h 4m",
            "activeConnections": 3,
            "totalUsers": 10,
            "onlineUsers": 4,
            "messagesPerMinute": 30,
            "errorRate": 0.5,
        }
    )
    assert stats.cpu_usage == 12.5
    assert stats.memory_usage == 40.0
    assert stats.disk_usage == 0.0
    assert stats.uptime == "2d 3h 4m"
    assert stats.online_users == 4


def test_connection_analytics_from_api() -> None:
    """Scoped analytics carry recent messages as Message objects."""
    info = ConnectionAnalytics.from_api(
        {
            "connectionName": "plant",
            "connectionStatus": "connected",
            "totalMessages": 12,
            "activeTopics": 2,
            "recentMessages": [message_json(1), message_json(2)],
        }
    )
    assert info.connection_name == "plant"
    assert [m.id for m in info.recent_messages] == [1, 2]


def test_parse_list_skips_non_objects() -> None:
    """parse_list ignores junk entries and non-list bodies."""
    users = parse_list(User, [user_json(1), "junk", None, user_json(2)])
    assert [u.id for u in users] == [1, 2]
    assert parse_list(User, {"error": "x"}) == ()
    assert parse_list(User, None) == ()
