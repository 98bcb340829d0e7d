"""Mutation coordinator: validated writes followed by cache invalidation.

Nothing is merged into the cache locally. A mutation either fails (cache
untouched, error raised) or succeeds and invalidates the keys it affected;
the new state arrives with the next successful fetch of those keys.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from mqtt_dashboard.api_client import ApiClient
from mqtt_dashboard.cache import ResourceCache
from mqtt_dashboard.errors import ConflictError, DashboardError, StaleDataError, ValidationError
from mqtt_dashboard.models import ROLES, USER_STATUSES, ActionState, Connection, User
from mqtt_dashboard.resources import (
    CONNECTIONS,
    MESSAGES,
    USERS,
    parse_scoped_key,
    scoped_keys,
)
from mqtt_dashboard.scheduler import PollScheduler

log = structlog.get_logger()

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
BULK_ACTIONS = ("activate", "suspend", "delete")

# Python-side field names accepted by update_user, mapped to API names
_USER_FIELDS = {
    "username": "username",
    "email": "email",
    "password": "password",
    "first_name": "firstName",
    "last_name": "lastName",
    "role": "role",
    "status": "status",
    "profile_image_url": "profileImageUrl",
}


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a successful mutation.

    Attributes:
        ok: Always True; failures raise instead
        noop: True when nothing was sent because the target state already held
        data: Decoded response body
        refreshed: Invalidation futures; each resolves on the key's next
            successful fetch
    """

    ok: bool = True
    noop: bool = False
    data: Any = None
    refreshed: tuple[asyncio.Future, ...] = ()

    async def settled(self) -> None:
        """Wait until every invalidated key has been refetched successfully."""
        if self.refreshed:
            await asyncio.gather(*self.refreshed)


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────


def validate_username(username: Any) -> str:
    """Return the trimmed username or raise ValidationError."""
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("Username is required", field="username")
    username = username.strip()
    if len(username) < MIN_USERNAME_LENGTH:
        raise ValidationError(
            f"Username must be at least {MIN_USERNAME_LENGTH} characters", field="username"
        )
    return username


def validate_password(password: Any) -> str:
    """Return the password or raise ValidationError."""
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required", field="password")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password"
        )
    return password


def validate_email(email: Any) -> str | None:
    """Return the email (None when blank) or raise ValidationError."""
    if email is None or email == "":
        return None
    if not isinstance(email, str) or not _EMAIL_RE.match(email.strip()):
        raise ValidationError("Please enter a valid email", field="email")
    return email.strip()


def validate_choice(value: Any, choices: Iterable[str], field: str) -> str:
    """Return value if it is one of choices, else raise ValidationError."""
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(f"Must be one of: {', '.join(choices)}", field=field)
    return value


def validate_publish(topic: Any, payload: Any, qos: Any) -> tuple[str, str, int]:
    """Validate a publish request; returns (topic, payload, qos)."""
    if not isinstance(topic, str) or not topic.strip():
        raise ValidationError("Topic is required", field="topic")
    if payload is None or payload == "":
        raise ValidationError("Payload is required", field="payload")
    if not isinstance(payload, str):
        raise ValidationError("Payload must be a string", field="payload")
    if isinstance(qos, bool) or qos not in (0, 1, 2):
        raise ValidationError("QoS must be 0, 1, or 2", field="qos")
    return topic.strip(), payload, qos


# ─────────────────────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────────────────────


class MutationCoordinator:
    """Issues state-changing requests and invalidates what they affect."""

    def __init__(
        self,
        api: ApiClient,
        cache: ResourceCache,
        scheduler: PollScheduler | None = None,
    ):
        self.api = api
        self.cache = cache
        self.scheduler = scheduler
        self.in_flight: set[str] = set()
        self._action_states: dict[int, ActionState] = {}
        self._confirmed_version: dict[int, int] = {}

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _cached_users(self) -> tuple[User, ...] | None:
        return self.cache.value(USERS)

    def _cached_connection(self, connection_id: int) -> Connection | None:
        for connection in self.cache.value(CONNECTIONS) or ():
            if connection.id == connection_id:
                return connection
        return None

    def admin_count(self) -> int | None:
        """Admins in the cached user list, or None before the first fetch."""
        users = self._cached_users()
        if users is None:
            return None
        return sum(1 for user in users if user.is_admin)

    def _guard_last_admin(self, user_ids: Iterable[int], verb: str) -> None:
        """Refuse to remove every admin, judged from cached users.

        The server enforces the same rule; this only avoids a doomed request.
        Unknown users (not in the cache) are let through.
        """
        users = self._cached_users()
        if not users:
            return
        ids = set(user_ids)
        admins = [user for user in users if user.is_admin]
        removed = [user for user in admins if user.id in ids]
        if removed and len(admins) - len(removed) < 1:
            raise ConflictError(f"Cannot {verb} the last admin user")

    def _invalidate(self, keys: Iterable[str]) -> tuple[asyncio.Future, ...]:
        futures = []
        for key in dict.fromkeys(keys):
            if self.cache.is_registered(key):
                futures.append(self.cache.invalidate(key))
        return tuple(futures)

    async def _dispatch(
        self,
        name: str,
        request: Awaitable[Any],
        invalidates: Iterable[str],
        suppresses: Iterable[str] = (),
    ) -> MutationResult:
        """Run one request with polling of suppresses held, then invalidate.

        A 404 means our cached view is out of date, so the affected keys are
        invalidated before the error propagates.
        """
        invalidates = tuple(invalidates)
        suppresses = tuple(suppresses)
        self.in_flight.add(name)
        if self.scheduler is not None:
            self.scheduler.begin_mutation(suppresses)
        try:
            data = await request
        except StaleDataError as e:
            log.warning("mutation_stale", mutation=name, error=str(e))
            self._invalidate(invalidates)
            raise
        except DashboardError as e:
            log.warning("mutation_failed", mutation=name, error=str(e))
            raise
        finally:
            self.in_flight.discard(name)
            if self.scheduler is not None:
                self.scheduler.end_mutation(suppresses)

        log.info("mutation_succeeded", mutation=name)
        return MutationResult(data=data, refreshed=self._invalidate(invalidates))

    # ── Users ────────────────────────────────────────────────────────────────

    async def create_user(
        self,
        username: str,
        password: str,
        *,
        email: str | None = None,
        role: str = "user",
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> MutationResult:
        """Create a user. Username and password are checked before dispatch."""
        body: dict[str, Any] = {
            "username": validate_username(username),
            "password": validate_password(password),
            "role": validate_choice(role, ROLES, "role"),
        }
        email = validate_email(email)
        if email:
            body["email"] = email
        if first_name:
            body["firstName"] = first_name
        if last_name:
            body["lastName"] = last_name
        return await self._dispatch(
            "create_user",
            self.api.post("/api/admin/users", body),
            invalidates=[USERS],
            suppresses=[USERS],
        )

    async def update_user(self, user_id: int, **changes: Any) -> MutationResult:
        """Update profile fields of a user (snake_case keyword arguments)."""
        if not changes:
            raise ValidationError("Nothing to update")
        body: dict[str, Any] = {}
        for name, value in changes.items():
            if name not in _USER_FIELDS:
                raise ValidationError("Unknown field", field=name)
            if name == "username":
                value = validate_username(value)
            elif name == "password":
                value = validate_password(value)
            elif name == "email":
                value = validate_email(value)
            elif name == "role":
                value = validate_choice(value, ROLES, "role")
                if value != "admin":
                    self._guard_last_admin([user_id], "demote")
            elif name == "status":
                value = validate_choice(value, USER_STATUSES, "status")
            body[_USER_FIELDS[name]] = value
        return await self._dispatch(
            f"update_user:{user_id}",
            self.api.patch(f"/api/admin/users/{user_id}", body),
            invalidates=[USERS],
            suppresses=[USERS],
        )

    async def set_user_role(self, user_id: int, role: str) -> MutationResult:
        """Change a user's role; demoting the only admin is refused."""
        validate_choice(role, ROLES, "role")
        if role != "admin":
            self._guard_last_admin([user_id], "demote")
        return await self._dispatch(
            f"set_user_role:{user_id}",
            self.api.patch(f"/api/admin/users/{user_id}/role", {"role": role}),
            invalidates=[USERS],
            suppresses=[USERS],
        )

    async def set_user_status(self, user_id: int, status: str) -> MutationResult:
        """Activate, suspend or deactivate a user."""
        validate_choice(status, USER_STATUSES, "status")
        return await self._dispatch(
            f"set_user_status:{user_id}",
            self.api.patch(f"/api/admin/users/{user_id}/status", {"status": status}),
            invalidates=[USERS],
            suppresses=[USERS],
        )

    async def delete_user(self, user_id: int) -> MutationResult:
        """Delete a user. The server cascades to their connections and messages.

        Raises:
            ConflictError: Before any request, when cached users show the
                target is the only admin
        """
        self._guard_last_admin([user_id], "delete")
        return await self._dispatch(
            f"delete_user:{user_id}",
            self.api.delete(f"/api/admin/users/{user_id}"),
            invalidates=[USERS, CONNECTIONS, MESSAGES],
            suppresses=[USERS],
        )

    async def bulk_update_users(self, user_ids: Iterable[int], action: str) -> MutationResult:
        """Apply activate/suspend/delete to several users in one request."""
        ids = list(user_ids)
        if not ids:
            raise ValidationError("Select at least one user", field="userIds")
        for user_id in ids:
            if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
                raise ValidationError(f"Invalid user ID: {user_id!r}", field="userIds")
        validate_choice(action, BULK_ACTIONS, "action")
        if action == "delete":
            self._guard_last_admin(ids, "delete")
        invalidates = [USERS, CONNECTIONS, MESSAGES] if action == "delete" else [USERS]
        return await self._dispatch(
            f"bulk_{action}",
            self.api.patch("/api/admin/users/bulk", {"userIds": ids, "action": action}),
            invalidates=invalidates,
            suppresses=[USERS],
        )

    # ── Connections ──────────────────────────────────────────────────────────

    def action_state(self, connection_id: int) -> ActionState:
        """In-flight indicator of a connection, separate from is_connected.

        CONFIRMED decays to IDLE once the connections key has been refetched
        after the server confirmed the change.
        """
        state = self._action_states.get(connection_id, ActionState.IDLE)
        if state is ActionState.CONFIRMED:
            if self.cache.version(CONNECTIONS) > self._confirmed_version.get(connection_id, 0):
                self._action_states.pop(connection_id, None)
                self._confirmed_version.pop(connection_id, None)
                return ActionState.IDLE
        return state

    async def connect(self, connection_id: int) -> MutationResult:
        """Connect a broker connection. No-op when already connected."""
        return await self._set_connected(connection_id, True)

    async def disconnect(self, connection_id: int) -> MutationResult:
        """Disconnect a broker connection. No-op when already disconnected."""
        return await self._set_connected(connection_id, False)

    async def _set_connected(self, connection_id: int, target: bool) -> MutationResult:
        state = self.action_state(connection_id)
        if state is ActionState.PENDING:
            # Another connect/disconnect is already in flight for it
            return MutationResult(noop=True)
        current = self._cached_connection(connection_id)
        if current is not None and current.is_connected == target and state is ActionState.IDLE:
            log.info("connection_unchanged", connection_id=connection_id, connected=target)
            return MutationResult(noop=True)

        verb = "connect" if target else "disconnect"
        detail_keys = [key for key in scoped_keys(connection_id) if self.cache.is_registered(key)]

        self._action_states[connection_id] = ActionState.PENDING
        try:
            result = await self._dispatch(
                f"{verb}:{connection_id}",
                self.api.post(f"/api/admin/connections/{connection_id}/{verb}"),
                invalidates=[CONNECTIONS, *detail_keys],
                suppresses=[CONNECTIONS, *detail_keys],
            )
        except DashboardError:
            self._action_states.pop(connection_id, None)
            raise

        self._action_states[connection_id] = ActionState.CONFIRMED
        self._confirmed_version[connection_id] = self.cache.version(CONNECTIONS)
        return result

    async def delete_connection(self, connection_id: int) -> MutationResult:
        """Delete a connection (the server disconnects it first)."""
        return await self._dispatch(
            f"delete_connection:{connection_id}",
            self.api.delete(f"/api/admin/connections/{connection_id}"),
            invalidates=[CONNECTIONS, MESSAGES],
            suppresses=[CONNECTIONS],
        )

    # ── Messages ─────────────────────────────────────────────────────────────

    async def publish(
        self,
        connection_id: int,
        topic: str,
        payload: str,
        qos: int = 0,
        retain: bool = False,
    ) -> MutationResult:
        """Publish a message through a connection.

        Fire-and-forget for the cache: the message id and ordering are
        assigned by the server, so it shows up with the next messages poll.
        """
        topic, payload, qos = validate_publish(topic, payload, qos)
        body = {"topic": topic, "payload": payload, "qos": qos, "retain": bool(retain)}
        return await self._dispatch(
            f"publish:{connection_id}",
            self.api.post(f"/api/connections/{connection_id}/publish", body),
            invalidates=[],
        )

    async def clear_messages(self) -> MutationResult:
        """Delete every message on the platform.

        Destructive: callers must have obtained explicit confirmation.
        """
        scoped = [
            key
            for key in self.cache.keys
            if (parsed := parse_scoped_key(key)) is not None and parsed[1] == "messages"
        ]
        return await self._dispatch(
            "clear_messages",
            self.api.delete("/api/admin/messages/clear"),
            invalidates=[MESSAGES, *scoped],
            suppresses=[MESSAGES, *scoped],
        )
