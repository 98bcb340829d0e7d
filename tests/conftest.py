"""Shared test fixtures for mqtt-dashboard."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio

from mqtt_dashboard.api_client import ApiClient
from mqtt_dashboard.config import ApiConfig

BASE_URL = "http://admin.test"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config and log files out of the real home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("MQTT_DASHBOARD_URL", raising=False)
    monkeypatch.delenv("MQTT_DASHBOARD_TOKEN", raising=False)
    return tmp_path


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


Handler = Callable[[httpx.Request], Any]


class FakeAdminServer:
    """In-memory stand-in for the admin REST API behind httpx.MockTransport.

    Routes are (method, path) pairs answering with (status, json_body) or a
    callable taking the request. Unknown routes answer 404. Every request is
    recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], tuple[int, Any] | Handler] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        self.routes[(method, path)] = (status, body)

    def on_call(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method, path)] = handler

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "Not found"})
        if callable(route):
            result = route(request)
            if asyncio.iscoroutine(result):
                result = await result
            if isinstance(result, httpx.Response):
                return result
            status, body = result
        else:
            status, body = route
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def body(self, request: httpx.Request) -> Any:
        return json.loads(request.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, **config: Any) -> ApiClient:
        return ApiClient(ApiConfig(base_url=BASE_URL, **config), transport=self.transport)


@pytest.fixture
def server() -> FakeAdminServer:
    return FakeAdminServer()


@pytest_asyncio.fixture
async def api(server: FakeAdminServer):
    client = server.client()
    yield client
    await client.close()


def user_json(
    id: int,
    username: str | None = None,
    role: str = "user",
    status: str = "active",
    **extra: Any,
) -> dict[str, Any]:
    """A user object as served by /api/admin/users."""
    data = {
        "id": id,
        "username": username or f"user{id}",
        "email": f"user{id}@example.com",
        "role": role,
        "status": status,
        "password": "$2b$10$hash",
        "plainPassword": "secret123",
        "connectionCount": 0,
        "messageCount": 0,
        "createdAt": "2024-05-01T10:00:00.000Z",
    }
    data.update(extra)
    return data


def connection_json(
    id: int, user_id: int = 1, connected: bool = False, **extra: Any
) -> dict[str, Any]:
    """A connection object as served by /api/admin/connections."""
    data = {
        "id": id,
        "userId": user_id,
        "name": f"conn{id}",
        "brokerUrl": "broker.example.com",
        "port": 8000,
        "protocol": "ws",
        "clientId": f"client-{id}",
        "isConnected": connected,
        "createdAt": "2024-05-01T10:00:00.000Z",
    }
    data.update(extra)
    return data


def message_json(
    id: int,
    connection_id: int = 1,
    topic: str = "sensors/temp",
    payload: str = "{}",
    timestamp: str = "2024-05-01T12:00:00.000Z",
    **extra: Any,
) -> dict[str, Any]:
    """A message object as served by /api/admin/messages."""
    data = {
        "id": id,
        "connectionId": connection_id,
        "topic": topic,
        "payload": payload,
        "qos": 0,
        "retain": False,
        "timestamp": timestamp,
    }
    data.update(extra)
    return data


def security_event_json(
    id: int,
    severity: str = "medium",
    description: str = "User 1 has 4 active connections",
    resolved: bool = False,
    timestamp: str = "2024-05-01T12:00:00.000Z",
) -> dict[str, Any]:
    """An entry as served by /api/admin/security-events."""
    return {
        "id": id,
        "type": "suspicious_activity",
        "severity": severity,
        "description": description,
        "timestamp": timestamp,
        "userId": 1,
        "ipAddress": "127.0.0.1",
        "resolved": resolved,
    }


def activity_json(
    id: int,
    username: str = "root",
    action: str = "Connected to plant",
    status: str = "success",
    timestamp: str = "2024-05-01T12:00:00.000Z",
) -> dict[str, Any]:
    """An entry as served by /api/admin/user-activity."""
    return {
        "id": id,
        "username": username,
        "action": action,
        "timestamp": timestamp,
        "ipAddress": "127.0.0.1",
        "userAgent": "MQTT Client",
        "status": status,
    }
