"""Composable predicates over cached entities.

Predicates are plain callables wrapped so they combine with ``&``. They never
raise on missing references: an attribute an entity does not have simply
fails to match.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from mqtt_dashboard.models import Connection, Message, User

T = TypeVar("T")

# Text fields searched per entity type
_SEARCH_FIELDS: dict[type, tuple[str, ...]] = {
    User: ("username", "email", "first_name", "last_name"),
    Message: ("topic", "payload"),
    Connection: ("name", "broker_url", "client_id"),
}


class Predicate:
    """A named boolean test over one entity."""

    def __init__(self, test: Callable[[Any], bool], name: str = "predicate"):
        self._test = test
        self.name = name

    def __call__(self, item: Any) -> bool:
        return bool(self._test(item))

    def __and__(self, other: Predicate) -> Predicate:
        if not isinstance(other, Predicate):
            return NotImplemented
        return Predicate(lambda item: self(item) and other(item), f"({self.name} & {other.name})")

    def __repr__(self) -> str:
        return f"Predicate({self.name})"


MATCH_ALL = Predicate(lambda item: True, "all")


def apply_filters(items: Iterable[T], *predicates: Predicate) -> list[T]:
    """Return the items every predicate accepts, preserving order."""
    return [item for item in items if all(p(item) for p in predicates)]


def text_search(query: str | None) -> Predicate:
    """Case-insensitive substring match over an entity's text fields.

    An empty query matches everything.
    """
    needle = (query or "").strip().lower()
    if not needle:
        return MATCH_ALL

    def test(item: Any) -> bool:
        names = _SEARCH_FIELDS.get(type(item), ())
        for name in names:
            value = getattr(item, name, None)
            if value and needle in str(value).lower():
                return True
        return False

    return Predicate(test, f"search({needle!r})")


def role_is(role: str | None) -> Predicate:
    """Users with role. "all" (or None) matches everything."""
    if role is None or role == "all":
        return MATCH_ALL
    return Predicate(lambda item: getattr(item, "role", None) == role, f"role={role}")


def status_is(status: str | None) -> Predicate:
    """Users with status. "all" (or None) matches everything."""
    if status is None or status == "all":
        return MATCH_ALL
    return Predicate(lambda item: getattr(item, "status", None) == status, f"status={status}")


def connection_state(connected: bool | None) -> Predicate:
    """Connections by is_connected. None matches everything."""
    if connected is None:
        return MATCH_ALL
    return Predicate(
        lambda item: getattr(item, "is_connected", None) is connected,
        "connected" if connected else "disconnected",
    )


def in_time_window(start: datetime | None, end: datetime | None) -> Predicate:
    """Messages with start <= timestamp < end. Open bounds are unbounded.

    Messages without a timestamp never match a bounded window.
    """
    if start is None and end is None:
        return MATCH_ALL

    def test(item: Any) -> bool:
        timestamp = getattr(item, "timestamp", None)
        if timestamp is None:
            return False
        if start is not None and timestamp < start:
            return False
        if end is not None and timestamp >= end:
            return False
        return True

    return Predicate(test, f"window({start}, {end})")


def for_connection(connection_id: int | None) -> Predicate:
    """Messages received on connection_id. None matches everything."""
    if connection_id is None:
        return MATCH_ALL
    return Predicate(
        lambda item: getattr(item, "connection_id", None) == connection_id,
        f"connection={connection_id}",
    )


def owned_by(user_id: int | None) -> Predicate:
    """Connections owned by user_id. None matches everything."""
    if user_id is None:
        return MATCH_ALL
    return Predicate(lambda item: getattr(item, "user_id", None) == user_id, f"owner={user_id}")


def owner_lookup(users: Iterable[User]) -> Callable[[Connection], User | None]:
    """Map connections to their owning user; unknown owners give None."""
    by_id = {user.id: user for user in users}
    return lambda connection: by_id.get(connection.user_id)
