"""Client-side aggregate views over message snapshots.

Every function here is pure: given the same messages, scope and "now" it
returns the same result. Nothing reads the clock implicitly except the
convenience default of aggregate().
"""

from __future__ import annotations

import json
import math
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from mqtt_dashboard.models import Connection, Message, User

HOURS = 24
DEFAULT_TOP_TOPICS = 5
DEFAULT_TREND_LIMIT = 50
DEFAULT_TREND_FIELDS = ("Index", "value", "temperature", "data")

_HOUR = timedelta(hours=1)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Scope:
    """Which messages an aggregate covers: all, or one connection's."""

    connection_id: int | None = None

    @classmethod
    def all(cls) -> Scope:
        return cls()

    @classmethod
    def connection(cls, connection_id: int) -> Scope:
        return cls(connection_id)

    @property
    def is_global(self) -> bool:
        return self.connection_id is None

    def includes(self, message: Message) -> bool:
        return self.connection_id is None or message.connection_id == self.connection_id

    def __str__(self) -> str:
        return "all" if self.connection_id is None else f"connection {self.connection_id}"


@dataclass(frozen=True)
class HourBucket:
    start: datetime
    count: int

    @property
    def end(self) -> datetime:
        return self.start + _HOUR


@dataclass(frozen=True)
class TopicCount:
    topic: str
    count: int


@dataclass(frozen=True)
class TrendPoint:
    timestamp: datetime | None
    value: float


@dataclass(frozen=True)
class AggregateView:
    """Derived analytics for one scope at one instant. Never persisted."""

    scope: Scope
    generated_at: datetime
    message_frequency: tuple[HourBucket, ...]
    topic_distribution: tuple[TopicCount, ...]
    value_trend: tuple[TrendPoint, ...] | None
    message_count: int = 0

    @property
    def window_total(self) -> int:
        """Messages that landed in a frequency bucket."""
        return sum(bucket.count for bucket in self.message_frequency)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def scoped(messages: Iterable[Message], scope: Scope) -> list[Message]:
    """Keep the messages scope covers, in input order."""
    return [m for m in messages if scope.includes(m)]


def _chronological_key(message: Message) -> tuple[datetime, int, str]:
    # Untimed messages sort first so they never displace a dated one
    return (message.timestamp or _EPOCH, message.id, message.topic)


def chronological(messages: Iterable[Message]) -> list[Message]:
    """Sort messages by (timestamp, id, topic), missing timestamps first."""
    return sorted(messages, key=_chronological_key)


def newest_first(items: Iterable[Any]) -> list[Any]:
    """Sort timestamped entries (events, activity) newest first, untimed last."""
    return sorted(items, key=lambda item: (item.timestamp or _EPOCH, item.id), reverse=True)


def hour_floor(moment: datetime) -> datetime:
    """Truncate a datetime to the start of its UTC hour (naive means UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _numeric(value: Any) -> float | None:
    """Return value as a float if it is a real, finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    if not math.isfinite(number):
        return None
    return number


def extract_value(
    payload: str, trend_fields: Sequence[str] = DEFAULT_TREND_FIELDS
) -> float | None:
    """Pull the trend value out of a JSON payload.

    The first field of trend_fields that is present with a real number wins.
    Bare numeric payloads ("21.5") count too. Non-JSON payloads yield None.
    """
    try:
        data = json.loads(payload)
    except (TypeError, ValueError, RecursionError):
        return None
    if isinstance(data, dict):
        for name in trend_fields:
            if name in data:
                number = _numeric(data[name])
                if number is not None:
                    return number
        return None
    return _numeric(data)


# ─────────────────────────────────────────────────────────────────────────────
# Aggregates
# ─────────────────────────────────────────────────────────────────────────────


def message_frequency(
    messages: Iterable[Message], scope: Scope, now: datetime
) -> tuple[HourBucket, ...]:
    """Count scoped messages per hour over the last 24 hours.

    The last bucket is the hour containing now; all 24 buckets are always
    present. Messages outside the window or without a timestamp are not
    counted.
    """
    current = hour_floor(now)
    first = current - (HOURS - 1) * _HOUR
    counts = [0] * HOURS
    for message in messages:
        if not scope.includes(message) or message.timestamp is None:
            continue
        index = (message.timestamp - first) // _HOUR
        if 0 <= index < HOURS:
            counts[index] += 1
    return tuple(HourBucket(first + i * _HOUR, count) for i, count in enumerate(counts))


def topic_distribution(
    messages: Iterable[Message], scope: Scope, limit: int = DEFAULT_TOP_TOPICS
) -> tuple[TopicCount, ...]:
    """Most frequent topics, highest count first.

    Ties go to the topic seen earliest. Counting runs over the messages in
    chronological order, so any reordering of the same messages gives the
    same result.
    """
    counts = Counter(m.topic for m in chronological(scoped(messages, scope)))
    # Counter preserves first-insertion order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return tuple(TopicCount(topic, count) for topic, count in ranked[:limit])


def value_trend(
    messages: Iterable[Message],
    scope: Scope,
    limit: int = DEFAULT_TREND_LIMIT,
    trend_fields: Sequence[str] = DEFAULT_TREND_FIELDS,
) -> tuple[TrendPoint, ...] | None:
    """The last `limit` numeric payload values in chronological order.

    Returns None, not an empty tuple, when no message carries a value.
    """
    points = []
    for message in chronological(scoped(messages, scope)):
        value = extract_value(message.payload, trend_fields)
        if value is not None:
            points.append(TrendPoint(message.timestamp, value))
    if not points:
        return None
    return tuple(points[-limit:])


def aggregate(
    messages: Iterable[Message],
    scope: Scope | None = None,
    now: datetime | None = None,
    *,
    top_topics: int = DEFAULT_TOP_TOPICS,
    trend_limit: int = DEFAULT_TREND_LIMIT,
    trend_fields: Sequence[str] = DEFAULT_TREND_FIELDS,
) -> AggregateView:
    """Build the full AggregateView of a message snapshot."""
    scope = scope or Scope.all()
    now = now or datetime.now(timezone.utc)
    selected = scoped(messages, scope)
    return AggregateView(
        scope=scope,
        generated_at=now,
        message_frequency=message_frequency(selected, scope, now),
        topic_distribution=topic_distribution(selected, scope, top_topics),
        value_trend=value_trend(selected, scope, trend_limit, trend_fields),
        message_count=len(selected),
    )


class AggregateCache:
    """Memoizes AggregateViews by (scope, data version, hour).

    Aggregation is cheap but the dashboard redraws many times between polls;
    a view is recomputed only when the messages changed or the hour rolled.
    """

    def __init__(self, max_entries: int = 32, **options: Any):
        self.max_entries = max_entries
        self.options = options
        self._views: dict[tuple[Scope, int, datetime], AggregateView] = {}
        self.hits = 0
        self.misses = 0

    def get(
        self,
        messages: Iterable[Message],
        scope: Scope,
        version: int,
        now: datetime | None = None,
    ) -> AggregateView:
        now = now or datetime.now(timezone.utc)
        key = (scope, version, hour_floor(now))
        view = self._views.get(key)
        if view is not None:
            self.hits += 1
            return view
        self.misses += 1
        view = aggregate(messages, scope, now, **self.options)
        if len(self._views) >= self.max_entries:
            # Drop the oldest insertion
            self._views.pop(next(iter(self._views)))
        self._views[key] = view
        return view

    def clear(self) -> None:
        self._views.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Dashboard summaries
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UserSummary:
    total: int = 0
    active: int = 0
    admins: int = 0
    recent_logins: int = 0  # Logged in within the last 24 hours
    by_role: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionSummary:
    total: int = 0
    connected: int = 0
    by_protocol: dict[str, int] = field(default_factory=dict)

    @property
    def disconnected(self) -> int:
        return self.total - self.connected


def summarize_users(users: Iterable[User], now: datetime) -> UserSummary:
    """Headline user counts for the overview."""
    users = list(users)
    since = now - timedelta(hours=HOURS)
    return UserSummary(
        total=len(users),
        active=sum(1 for u in users if u.status == "active"),
        admins=sum(1 for u in users if u.is_admin),
        recent_logins=sum(
            1 for u in users if u.last_login_at is not None and since <= u.last_login_at <= now
        ),
        by_role=dict(Counter(u.role for u in users)),
    )


def summarize_connections(connections: Iterable[Connection]) -> ConnectionSummary:
    """Headline connection counts for the overview."""
    connections = list(connections)
    return ConnectionSummary(
        total=len(connections),
        connected=sum(1 for c in connections if c.is_connected),
        by_protocol=dict(Counter(c.protocol for c in connections)),
    )
