"""Resource keys and the fetchers that bind them to admin API endpoints."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from typing import Any

from mqtt_dashboard.api_client import ApiClient
from mqtt_dashboard.cache import ResourceCache
from mqtt_dashboard.models import (
    Connection,
    ConnectionAnalytics,
    Message,
    SecurityEvent,
    SystemStats,
    User,
    UserActivity,
    parse_list,
)

USERS = "users"
CONNECTIONS = "connections"
MESSAGES = "messages"
SYSTEM_STATS = "system-stats"
SECURITY_EVENTS = "security-events"
USER_ACTIVITY = "user-activity"

GLOBAL_KEYS = (USERS, CONNECTIONS, MESSAGES, SYSTEM_STATS, SECURITY_EVENTS, USER_ACTIVITY)

_SCOPED_RE = re.compile(r"^connections/(\d+)/(messages|analytics)$")


def connection_messages_key(connection_id: int) -> str:
    """Key of the message list scoped to one connection."""
    return f"connections/{connection_id}/messages"


def connection_analytics_key(connection_id: int) -> str:
    """Key of the server-side analytics summary of one connection."""
    return f"connections/{connection_id}/analytics"


def scoped_keys(connection_id: int) -> tuple[str, str]:
    """Both detail-view keys of a connection."""
    return connection_messages_key(connection_id), connection_analytics_key(connection_id)


def parse_scoped_key(key: str) -> tuple[int, str] | None:
    """Split a scoped key into (connection_id, kind), or None for global keys."""
    match = _SCOPED_RE.match(key)
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def _list_fetcher(
    api: ApiClient, path: str, kind: type, params: dict[str, Any] | None = None
) -> Callable[[], Awaitable[tuple]]:
    async def fetch() -> tuple:
        return parse_list(kind, await api.get(path, params=params))

    return fetch


def _object_fetcher(api: ApiClient, path: str, kind: type) -> Callable[[], Awaitable[Any]]:
    async def fetch() -> Any:
        data = await api.get(path)
        return kind.from_api(data if isinstance(data, dict) else {})

    return fetch


def register_admin_resources(
    cache: ResourceCache, api: ApiClient, messages_limit: int = 1000
) -> None:
    """Bind every global admin resource key to its endpoint."""
    cache.register(USERS, _list_fetcher(api, "/api/admin/users", User))
    cache.register(CONNECTIONS, _list_fetcher(api, "/api/admin/connections", Connection))
    cache.register(
        MESSAGES,
        _list_fetcher(api, "/api/admin/messages", Message, params={"limit": messages_limit}),
    )
    cache.register(SYSTEM_STATS, _object_fetcher(api, "/api/admin/system-stats", SystemStats))
    cache.register(
        SECURITY_EVENTS, _list_fetcher(api, "/api/admin/security-events", SecurityEvent)
    )
    cache.register(USER_ACTIVITY, _list_fetcher(api, "/api/admin/user-activity", UserActivity))


def register_connection_resources(
    cache: ResourceCache, api: ApiClient, connection_id: int
) -> tuple[str, str]:
    """Bind the scoped keys of one connection's detail view. Returns the keys."""
    messages_key, analytics_key = scoped_keys(connection_id)
    cache.register(
        messages_key,
        _list_fetcher(api, f"/api/admin/connections/{connection_id}/messages", Message),
    )
    cache.register(
        analytics_key,
        _object_fetcher(
            api, f"/api/admin/connections/{connection_id}/analytics", ConnectionAnalytics
        ),
    )
    return messages_key, analytics_key
