"""Remote resource cache: one time-stamped entry per server resource.

Each key is bound to an async fetcher. The cache guarantees at most one
in-flight fetch per key:

- refresh() (poll-driven) is dropped while a fetch is in flight.
- invalidate() marks the entry stale and fetches now, or, if a fetch has
  already started, schedules exactly one follow-up fetch no matter how many
  invalidations arrive meanwhile. Its future resolves on the next successful
  fetch that began after the invalidation.

Fetch failures never clear data: the previous value is kept and the error is
recorded on the entry (stale-but-available).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

import structlog

log = structlog.get_logger()

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[str], None]


class _Pending:
    """Sentinel for a key that has never completed a successful fetch."""

    _instance: _Pending | None = None

    def __new__(cls) -> _Pending:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PENDING"

    def __bool__(self) -> bool:
        return False


PENDING = _Pending()


@dataclass(frozen=True)
class CachedEntry:
    """Last good value of a resource plus its fetch health."""

    value: Any
    fetched_at: float
    error: Exception | None = None
    error_count: int = 0  # Consecutive failures since the last success
    stale: bool = False  # Invalidated; a refetch is pending or in flight

    @property
    def failing(self) -> bool:
        """Whether the most recent fetch failed."""
        return self.error is not None

    def age(self, now: float | None = None) -> float:
        """Seconds since the value was fetched."""
        return (now if now is not None else time.time()) - self.fetched_at


class ResourceCache:
    """Keyed cache of server resources with coalesced refetching."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._fetchers: dict[str, Fetcher] = {}
        self._entries: dict[str, CachedEntry] = {}
        self._errors: dict[str, Exception] = {}  # Failures before any success
        self._versions: dict[str, int] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._started: set[str] = set()
        self._refetch: set[str] = set()
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._listeners: list[Listener] = []

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, key: str, fetcher: Fetcher) -> None:
        """Bind a resource key to the coroutine function that fetches it."""
        self._fetchers[key] = fetcher

    def is_registered(self, key: str) -> bool:
        """Whether a fetcher is bound to key."""
        return key in self._fetchers

    @property
    def keys(self) -> list[str]:
        """Registered keys."""
        return list(self._fetchers)

    def forget(self, key: str) -> None:
        """Drop a key entirely: fetcher, entry, in-flight fetch and waiters.

        Used when a detail view closes so its scoped resource stops costing
        requests. Waiters are cancelled, not resolved. The version counter is
        kept so a re-registered key never repeats a version number.
        """
        self._fetchers.pop(key, None)
        self._entries.pop(key, None)
        self._errors.pop(key, None)
        self._refetch.discard(key)
        self._started.discard(key)
        task = self._in_flight.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
        for waiter in self._waiters.pop(key, []):
            if not waiter.done():
                waiter.cancel()

    def subscribe(self, listener: Listener) -> None:
        """Call listener(key) after every completed fetch, good or bad."""
        self._listeners.append(listener)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, key: str) -> CachedEntry | _Pending:
        """Return the cached entry, or PENDING if nothing was fetched yet."""
        return self._entries.get(key, PENDING)

    def value(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or default while pending."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else default

    def last_error(self, key: str) -> Exception | None:
        """Most recent fetch error for key, or None if the last fetch succeeded."""
        entry = self._entries.get(key)
        if entry is not None:
            return entry.error
        return self._errors.get(key)

    def version(self, key: str) -> int:
        """Number of successful fetches of key so far, across forget()."""
        return self._versions.get(key, 0)

    def in_flight(self, key: str) -> bool:
        """Whether a fetch for key is running."""
        return key in self._in_flight

    # ── Fetching ─────────────────────────────────────────────────────────────

    def refresh(self, key: str) -> asyncio.Task | None:
        """Start a poll fetch for key.

        Returns the new task, or None when the request was dropped because a
        fetch for key is already in flight.

        Raises:
            KeyError: If no fetcher is registered for key
        """
        if key not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key!r}")
        if key in self._in_flight:
            return None
        return self._start(key)

    def invalidate(self, key: str) -> asyncio.Future:
        """Mark key stale and refetch it as soon as possible.

        Returns:
            Future resolved with the fresh CachedEntry once a fetch that began
            after this call has succeeded.

        Raises:
            KeyError: If no fetcher is registered for key
        """
        if key not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key!r}")
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(key, []).append(waiter)

        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            self._entries[key] = replace(entry, stale=True)

        if key not in self._in_flight:
            self._start(key)
        elif key in self._started:
            self._refetch.add(key)
        # else: the in-flight task has not begun yet and will pick up this waiter
        return waiter

    def _start(self, key: str) -> asyncio.Task:
        task = asyncio.create_task(self._fetch(key), name=f"fetch:{key}")
        self._in_flight[key] = task
        return task

    async def _fetch(self, key: str) -> None:
        self._started.add(key)
        waiters = self._waiters.pop(key, [])
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            self._release(key)
            return
        try:
            value = await fetcher()
        except asyncio.CancelledError:
            for waiter in waiters:
                waiter.cancel()
            self._release(key)
            raise
        except Exception as e:
            self._record_failure(key, e)
            # Unsatisfied: hand the waiters to the next fetch
            self._waiters[key] = waiters + self._waiters.get(key, [])
        else:
            entry = self._record_success(key, value)
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(entry)

        self._release(key)
        self._notify(key)
        if key in self._refetch and key in self._fetchers:
            self._refetch.discard(key)
            self._start(key)

    def _release(self, key: str) -> None:
        # A forgotten task must not release a newer fetch of a re-registered key
        if self._in_flight.get(key) is asyncio.current_task():
            del self._in_flight[key]
            self._started.discard(key)

    def _record_success(self, key: str, value: Any) -> CachedEntry:
        previous = self._entries.get(key)
        if (previous is not None and previous.failing) or key in self._errors:
            log.info("poll_recovered", key=key)
        self._errors.pop(key, None)
        entry = CachedEntry(value=value, fetched_at=self._clock())
        self._entries[key] = entry
        self._versions[key] = self._versions.get(key, 0) + 1
        return entry

    def _record_failure(self, key: str, error: Exception) -> None:
        previous = self._entries.get(key)
        if previous is None:
            if key not in self._errors:
                log.warning("poll_failed", key=key, error=str(error))
            self._errors[key] = error
            return
        if not previous.failing:
            log.warning("poll_failed", key=key, error=str(error), stale_age=previous.age())
        self._entries[key] = replace(
            previous,
            error=error,
            error_count=previous.error_count + 1,
        )

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            listener(key)

    async def close(self) -> None:
        """Cancel every in-flight fetch and wait for them to finish."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._started.clear()
