"""Tests for validated writes and their cache invalidation."""

import asyncio

import pytest
import pytest_asyncio

from mqtt_dashboard.cache import ResourceCache
from mqtt_dashboard.errors import ConflictError, RequestError, StaleDataError, ValidationError
from mqtt_dashboard.models import ActionState
from mqtt_dashboard.mutations import (
    MutationCoordinator,
    validate_email,
    validate_publish,
    validate_username,
)
from mqtt_dashboard.resources import (
    CONNECTIONS,
    MESSAGES,
    USERS,
    connection_messages_key,
    register_admin_resources,
    register_connection_resources,
)
from mqtt_dashboard.scheduler import PollScheduler

from conftest import connection_json, message_json, user_json, wait_until


@pytest_asyncio.fixture
async def coordinator(server, api):
    """Coordinator over a cache preloaded with one admin, one user, one connection."""
    server.on("GET", "/api/admin/users", [user_json(1, "root", role="admin"), user_json(2, "bob")])
    server.on("GET", "/api/admin/connections", [connection_json(1, connected=False)])
    server.on("GET", "/api/admin/messages", [message_json(1)])
    cache = ResourceCache()
    register_admin_resources(cache, api)
    await cache.refresh(USERS)
    await cache.refresh(CONNECTIONS)
    coordinator = MutationCoordinator(api, cache, PollScheduler(cache))
    yield coordinator
    await cache.close()


class TestValidators:
    """Tests for the standalone validators."""

    def test_username_is_trimmed(self):
        assert validate_username("  alice ") == "alice"

    @pytest.mark.parametrize("value", ["", "   ", "ab", None, 42])
    def test_bad_usernames(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_username(value)
        assert exc_info.value.field == "username"

    def test_blank_email_is_none(self):
        assert validate_email("") is None
        assert validate_email(None) is None
        assert validate_email("a@b.io") == "a@b.io"

    def test_bad_email(self):
        with pytest.raises(ValidationError, match="valid email"):
            validate_email("not-an-email")

    @pytest.mark.parametrize(
        "topic, payload, qos, field",
        [
            ("", "1", 0, "topic"),
            ("   ", "1", 0, "topic"),
            ("a/b", "", 0, "payload"),
            ("a/b", None, 0, "payload"),
            ("a/b", {"v": 1}, 0, "payload"),
            ("a/b", "1", 3, "qos"),
            ("a/b", "1", -1, "qos"),
            ("a/b", "1", True, "qos"),
        ],
    )
    def test_bad_publish(self, topic, payload, qos, field):
        with pytest.raises(ValidationError) as exc_info:
            validate_publish(topic, payload, qos)
        assert exc_info.value.field == field


class TestUsers:
    """Tests for user mutations."""

    @pytest.mark.asyncio
    async def test_create_user_sends_body_and_refreshes(self, coordinator, server):
        server.on("POST", "/api/admin/users", {"id": 3}, status=201)
        result = await coordinator.create_user(
            " carol ", "secret1", email="carol@example.com", first_name="Carol"
        )
        assert result.ok
        assert result.data == {"id": 3}
        body = server.body(server.calls("POST")[0])
        assert body == {
            "username": "carol",
            "password": "secret1",
            "role": "user",
            "email": "carol@example.com",
            "firstName": "Carol",
        }

        await result.settled()
        assert len(server.calls("GET", "/api/admin/users")) == 2

    @pytest.mark.asyncio
    async def test_invalid_input_sends_nothing(self, coordinator, server):
        """Client-side validation failures never reach the server."""
        with pytest.raises(ValidationError):
            await coordinator.create_user("ab", "secret1")
        with pytest.raises(ValidationError):
            await coordinator.create_user("carol", "123")
        with pytest.raises(ValidationError):
            await coordinator.create_user("carol", "secret1", role="owner")
        assert server.calls("POST") == []

    @pytest.mark.asyncio
    async def test_update_user_maps_field_names(self, coordinator, server):
        server.on("PATCH", "/api/admin/users/2", {"id": 2})
        await coordinator.update_user(2, first_name="Bo", email="", status="suspended")
        assert server.body(server.calls("PATCH")[0]) == {
            "firstName": "Bo",
            "email": None,
            "status": "suspended",
        }

    @pytest.mark.asyncio
    async def test_update_user_rejects_unknown_or_empty(self, coordinator, server):
        with pytest.raises(ValidationError):
            await coordinator.update_user(2)
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.update_user(2, nickname="bobby")
        assert exc_info.value.field == "nickname"
        assert server.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_last_admin_cannot_be_deleted(self, coordinator, server):
        """The cached user list already shows the delete would be refused."""
        with pytest.raises(ConflictError, match="last admin"):
            await coordinator.delete_user(1)
        assert server.calls("DELETE") == []

    @pytest.mark.asyncio
    async def test_last_admin_cannot_be_demoted(self, coordinator, server):
        with pytest.raises(ConflictError, match="demote"):
            await coordinator.set_user_role(1, "user")
        with pytest.raises(ConflictError):
            await coordinator.update_user(1, role="user")
        assert server.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_admin_can_be_deleted_when_another_exists(self, coordinator, server):
        server.on(
            "GET",
            "/api/admin/users",
            [user_json(1, role="admin"), user_json(2, role="admin")],
        )
        await coordinator.cache.refresh(USERS)
        assert coordinator.admin_count() == 2
        server.on("DELETE", "/api/admin/users/1", {"message": "deleted"})

        result = await coordinator.delete_user(1)
        assert len(result.refreshed) == 3
        await result.settled()

    @pytest.mark.asyncio
    async def test_delete_refreshes_dependent_resources(self, coordinator, server):
        """Deleting a user cascades server-side, so connections and messages refetch."""
        server.on("DELETE", "/api/admin/users/2", None, status=204)
        result = await coordinator.delete_user(2)
        await result.settled()
        assert len(server.calls("GET", "/api/admin/connections")) == 2
        assert len(server.calls("GET", "/api/admin/messages")) == 1

    @pytest.mark.asyncio
    async def test_server_refusal_is_conflict(self, coordinator, server):
        server.on(
            "DELETE", "/api/admin/users/2", {"error": "Cannot delete yourself"}, status=400
        )
        with pytest.raises(ConflictError, match="Cannot delete yourself"):
            await coordinator.delete_user(2)
        assert "delete_user:2" not in coordinator.in_flight

    @pytest.mark.asyncio
    async def test_missing_user_is_stale_and_refetched(self, coordinator, server):
        """A 404 raises StaleDataError and refreshes the affected lists."""
        with pytest.raises(StaleDataError):
            await coordinator.delete_user(99)
        await wait_until(lambda: len(server.calls("GET", "/api/admin/users")) == 2)

    @pytest.mark.asyncio
    async def test_set_user_status(self, coordinator, server):
        server.on("PATCH", "/api/admin/users/2/status", {"id": 2})
        await coordinator.set_user_status(2, "inactive")
        assert server.body(server.calls("PATCH")[0]) == {"status": "inactive"}
        with pytest.raises(ValidationError):
            await coordinator.set_user_status(2, "banned")


class TestBulk:
    """Tests for bulk_update_users."""

    @pytest.mark.parametrize("ids", [[], [0], [2, "3"], [True], [-4]])
    @pytest.mark.asyncio
    async def test_invalid_ids(self, coordinator, server, ids):
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.bulk_update_users(ids, "suspend")
        assert exc_info.value.field == "userIds"
        assert server.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_invalid_action(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.bulk_update_users([2], "explode")

    @pytest.mark.asyncio
    async def test_bulk_delete_guards_last_admin(self, coordinator):
        with pytest.raises(ConflictError):
            await coordinator.bulk_update_users([1, 2], "delete")

    @pytest.mark.asyncio
    async def test_bulk_suspend(self, coordinator, server):
        server.on("PATCH", "/api/admin/users/bulk", {"updated": 2})
        result = await coordinator.bulk_update_users([2, 3], "suspend")
        assert server.body(server.calls("PATCH")[0]) == {"userIds": [2, 3], "action": "suspend"}
        assert len(result.refreshed) == 1


class TestConnections:
    """Tests for connect/disconnect and the action-state indicator."""

    @pytest.mark.asyncio
    async def test_connect_already_connected_is_noop(self, coordinator, server):
        server.on("GET", "/api/admin/connections", [connection_json(1, connected=True)])
        await coordinator.cache.refresh(CONNECTIONS)

        result = await coordinator.connect(1)
        assert result.noop
        assert server.calls("POST") == []
        assert coordinator.action_state(1) is ActionState.IDLE

    @pytest.mark.asyncio
    async def test_disconnect_already_disconnected_is_noop(self, coordinator, server):
        result = await coordinator.disconnect(1)
        assert result.noop
        assert server.calls("POST") == []

    @pytest.mark.asyncio
    async def test_connect_lifecycle(self, coordinator, server):
        """PENDING while in flight, CONFIRMED until refetched, then IDLE."""
        connect_gate = asyncio.Event()
        refetch_gate = asyncio.Event()
        connected = False

        async def do_connect(request):
            nonlocal connected
            await connect_gate.wait()
            connected = True
            return 200, {"message": "Connected"}

        async def list_connections(request):
            await refetch_gate.wait()
            return 200, [connection_json(1, connected=connected)]

        server.on_call("POST", "/api/admin/connections/1/connect", do_connect)
        server.on_call("GET", "/api/admin/connections", list_connections)
        scheduler = coordinator.scheduler

        task = asyncio.create_task(coordinator.connect(1))
        await wait_until(lambda: server.calls("POST"))
        assert coordinator.action_state(1) is ActionState.PENDING
        assert "connect:1" in coordinator.in_flight
        assert scheduler.suppressed(CONNECTIONS) == "mutation"

        # A second click while pending does nothing
        again = await coordinator.connect(1)
        assert again.noop
        assert len(server.calls("POST")) == 1

        connect_gate.set()
        result = await task
        assert coordinator.action_state(1) is ActionState.CONFIRMED
        assert scheduler.suppressed(CONNECTIONS) is None
        assert not coordinator.in_flight

        refetch_gate.set()
        await result.settled()
        assert coordinator.action_state(1) is ActionState.IDLE
        assert coordinator.cache.value(CONNECTIONS)[0].is_connected

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self, coordinator, server):
        server.on(
            "POST", "/api/admin/connections/1/connect", {"error": "Broker unreachable"}, status=500
        )
        with pytest.raises(RequestError, match="Broker unreachable"):
            await coordinator.connect(1)
        assert coordinator.action_state(1) is ActionState.IDLE
        assert coordinator.scheduler.suppressed(CONNECTIONS) is None
        # Nothing was invalidated
        assert len(server.calls("GET", "/api/admin/connections")) == 1

    @pytest.mark.asyncio
    async def test_connect_refreshes_open_detail_keys(self, coordinator, server, api):
        server.on("POST", "/api/admin/connections/1/connect", {"message": "Connected"})
        server.on("GET", "/api/admin/connections/1/messages", [])
        server.on("GET", "/api/admin/connections/1/analytics", {"totalMessages": 0})
        register_connection_resources(coordinator.cache, api, 1)

        result = await coordinator.connect(1)
        assert len(result.refreshed) == 3
        await result.settled()

    @pytest.mark.asyncio
    async def test_delete_connection(self, coordinator, server):
        server.on("DELETE", "/api/admin/connections/1", {"message": "deleted"})
        result = await coordinator.delete_connection(1)
        await result.settled()
        assert len(server.calls("GET", "/api/admin/messages")) == 1


class TestMessages:
    """Tests for publish and clear_messages."""

    @pytest.mark.asyncio
    async def test_publish_sends_and_invalidates_nothing(self, coordinator, server):
        server.on("POST", "/api/connections/1/publish", {"success": True})
        result = await coordinator.publish(1, " sensors/temp ", '{"value": 21}', qos=1)
        assert server.body(server.calls("POST")[0]) == {
            "topic": "sensors/temp",
            "payload": '{"value": 21}',
            "qos": 1,
            "retain": False,
        }
        assert result.refreshed == ()
        assert server.calls("GET", "/api/admin/messages") == []

    @pytest.mark.asyncio
    async def test_publish_validation_sends_nothing(self, coordinator, server):
        with pytest.raises(ValidationError):
            await coordinator.publish(1, "a/b", "1", qos=5)
        assert server.calls("POST") == []

    @pytest.mark.asyncio
    async def test_clear_messages_refreshes_message_keys(self, coordinator, server, api):
        """Global and per-connection message lists refetch; analytics keys do not."""
        server.on("DELETE", "/api/admin/messages/clear", {"deleted": 12})
        server.on("GET", "/api/admin/connections/1/messages", [])
        server.on("GET", "/api/admin/connections/1/analytics", {})
        register_connection_resources(coordinator.cache, api, 1)

        result = await coordinator.clear_messages()
        assert len(result.refreshed) == 2
        await result.settled()
        assert len(server.calls("GET", "/api/admin/messages")) == 1
        assert len(server.calls("GET", "/api/admin/connections/1/messages")) == 1
        assert server.calls("GET", "/api/admin/connections/1/analytics") == []
        assert coordinator.cache.version(MESSAGES) == 1
        assert coordinator.cache.version(connection_messages_key(1)) == 1
