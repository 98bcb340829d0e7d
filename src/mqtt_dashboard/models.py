"""Entities served by the admin REST API.

All entities are owned by the server. The client holds immutable copies built
from the API's camelCase JSON via ``from_api``; missing optional fields become
None instead of raising, since a poll may race a server-side delete.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ROLES = ("user", "admin", "viewer")
USER_STATUSES = ("active", "suspended", "inactive")
PROTOCOLS = ("ws", "wss", "mqtt", "mqtts")

# Keys stripped from anything that leaves the process (export, CLI json output)
SENSITIVE_KEYS = frozenset({"password", "plainPassword"})


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an API timestamp into an aware datetime.

    Accepts ISO-8601 strings (with or without a trailing "Z"), epoch
    milliseconds, and datetimes. Naive values are taken as UTC. Anything
    unparseable yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    """Render a datetime the way the API does (ISO-8601, UTC, "Z" suffix)."""
    if value is None:
        return None
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class ActionState(Enum):
    """Lifecycle of a user-initiated action, kept apart from business state.

    A connection shows PENDING while connect/disconnect is in flight and
    CONFIRMED once the server acknowledged it but before the next poll has
    delivered the new is_connected value.
    """

    IDLE = "idle"
    PENDING = "pending"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class User:
    """Platform user as listed by /api/admin/users."""

    id: int
    username: str
    role: str = "user"
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    status: str = "active"
    profile_image_url: str | None = None
    connection_count: int = 0
    message_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        """Whether the user holds the admin role."""
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        """Full name when known, otherwise the username."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else self.username

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> User:
        """Build from an API JSON object."""
        role = data.get("role") or "user"
        # The admin list exposes both lastLoginAt and a lastLogin alias
        last_login = data.get("lastLoginAt", data.get("lastLogin"))
        return cls(
            id=_int(data.get("id")),
            username=str(data.get("username") or ""),
            role=role if role in ROLES else "user",
            email=data.get("email") or None,
            first_name=data.get("firstName") or None,
            last_name=data.get("lastName") or None,
            status=data.get("status") or "active",
            profile_image_url=data.get("profileImageUrl") or None,
            connection_count=_int(data.get("connectionCount")),
            message_count=_int(data.get("messageCount")),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            last_login_at=parse_timestamp(last_login),
        )

    def to_api(self) -> dict[str, Any]:
        """Serialize back to the API's JSON shape (never includes passwords)."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role,
            "status": self.status,
            "profileImageUrl": self.profile_image_url,
            "connectionCount": self.connection_count,
            "messageCount": self.message_count,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "lastLoginAt": format_timestamp(self.last_login_at),
        }


@dataclass(frozen=True)
class Connection:
    """MQTT broker connection owned by a user."""

    id: int
    user_id: int
    name: str
    broker_url: str
    port: int = 8000
    protocol: str = "ws"
    client_id: str = ""
    is_connected: bool = False
    created_at: datetime | None = None
    last_connected_at: datetime | None = None

    @property
    def address(self) -> str:
        """Broker address as shown in tables."""
        return f"{self.broker_url}:{self.port}"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Connection:
        """Build from an API JSON object."""
        protocol = data.get("protocol") or "ws"
        return cls(
            id=_int(data.get("id")),
            user_id=_int(data.get("userId")),
            name=str(data.get("name") or ""),
            broker_url=str(data.get("brokerUrl") or ""),
            port=_int(data.get("port"), 8000),
            protocol=protocol if protocol in PROTOCOLS else "ws",
            client_id=str(data.get("clientId") or ""),
            is_connected=bool(data.get("isConnected", False)),
            created_at=parse_timestamp(data.get("createdAt")),
            last_connected_at=parse_timestamp(
                data.get("lastConnectedAt", data.get("lastConnected"))
            ),
        )

    def to_api(self) -> dict[str, Any]:
        """Serialize back to the API's JSON shape (broker credentials excluded)."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "brokerUrl": self.broker_url,
            "port": self.port,
            "protocol": self.protocol,
            "clientId": self.client_id,
            "isConnected": self.is_connected,
            "createdAt": format_timestamp(self.created_at),
            "lastConnectedAt": format_timestamp(self.last_connected_at),
        }


@dataclass(frozen=True)
class Message:
    """A message received on a connection. Append-only and immutable."""

    id: int
    connection_id: int
    topic: str
    payload: str
    timestamp: datetime | None = None
    qos: int | None = None
    retain: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Message:
        """Build from an API JSON object.

        Non-string payloads (some brokers deliver pre-parsed JSON) are kept
        as their JSON text so aggregation sees one representation.
        """
        payload = data.get("payload", "")
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        return cls(
            id=_int(data.get("id")),
            connection_id=_int(data.get("connectionId")),
            topic=str(data.get("topic") or ""),
            payload=payload,
            timestamp=parse_timestamp(data.get("timestamp", data.get("createdAt"))),
            qos=_optional_int(data.get("qos")),
            retain=bool(data.get("retain", False)),
        )

    def to_api(self) -> dict[str, Any]:
        """Serialize back to the API's JSON shape."""
        return {
            "id": self.id,
            "connectionId": self.connection_id,
            "topic": self.topic,
            "payload": self.payload,
            "qos": self.qos,
            "retain": self.retain,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class SystemStats:
    """Server-computed system statistics (opaque to the client)."""

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    network_io: float = 0.0
    uptime: str = ""
    active_connections: int = 0
    total_users: int = 0
    online_users: int = 0
    messages_per_minute: float = 0.0
    error_rate: float = 0.0

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> SystemStats:
        """Build from an API JSON object."""
        return cls(
            cpu_usage=_float(data.get("cpuUsage")),
            memory_usage=_float(data.get("memoryUsage")),
            disk_usage=_float(data.get("diskUsage")),
            network_io=_float(data.get("networkIO")),
            uptime=str(data.get("uptime") or ""),
            active_connections=_int(data.get("activeConnections")),
            total_users=_int(data.get("totalUsers")),
            online_users=_int(data.get("onlineUsers")),
            messages_per_minute=_float(data.get("messagesPerMinute")),
            error_rate=_float(data.get("errorRate")),
        )


@dataclass(frozen=True)
class SecurityEvent:
    """Entry from /api/admin/security-events."""

    id: int
    type: str
    severity: str
    description: str
    timestamp: datetime | None = None
    user_id: int | None = None
    ip_address: str | None = None
    resolved: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> SecurityEvent:
        """Build from an API JSON object."""
        return cls(
            id=_int(data.get("id")),
            type=str(data.get("type") or ""),
            severity=str(data.get("severity") or "low"),
            description=str(data.get("description") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            user_id=_optional_int(data.get("userId")),
            ip_address=data.get("ipAddress") or None,
            resolved=bool(data.get("resolved", False)),
        )


@dataclass(frozen=True)
class UserActivity:
    """Entry from /api/admin/user-activity."""

    id: int
    username: str
    action: str
    timestamp: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    status: str = "success"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> UserActivity:
        """Build from an API JSON object."""
        return cls(
            id=_int(data.get("id")),
            username=str(data.get("username") or ""),
            action=str(data.get("action") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            ip_address=data.get("ipAddress") or None,
            user_agent=data.get("userAgent") or None,
            status=str(data.get("status") or "success"),
        )


def parse_list(kind: type, data: Any) -> tuple:
    """Parse a JSON array into a tuple of entities, skipping non-objects."""
    if not isinstance(data, list):
        return ()
    return tuple(kind.from_api(item) for item in data if isinstance(item, dict))


@dataclass(frozen=True)
class ConnectionAnalytics:
    """Server-side summary from /api/admin/connections/<id>/analytics."""

    connection_name: str
    connection_status: str
    total_messages: int = 0
    active_topics: int = 0
    last_message_at: datetime | None = None
    recent_messages: tuple[Message, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ConnectionAnalytics:
        """Build from an API JSON object."""
        return cls(
            connection_name=str(data.get("connectionName") or ""),
            connection_status=str(data.get("connectionStatus") or "unknown"),
            total_messages=_int(data.get("totalMessages")),
            active_topics=_int(data.get("activeTopics")),
            last_message_at=parse_timestamp(data.get("lastMessageAt")),
            recent_messages=parse_list(Message, data.get("recentMessages")),
        )
