"""Poll scheduler: one refresh policy for every watched resource key.

A key is polled every nominal period unless its suppression gate is closed:

- a dialog editing that resource is open,
- the operator scrolled within the last scroll_quiet_seconds (all keys),
- a mutation touching that key is in flight.

When the gate reopens the key fires on the very next tick instead of waiting
out a full period, so data is never more than one suppression window stale.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager

import structlog

from mqtt_dashboard.cache import ResourceCache
from mqtt_dashboard.config import PollingConfig

log = structlog.get_logger()


class PollScheduler:
    """Decides, per resource key, whether a refresh should fire now."""

    def __init__(
        self,
        cache: ResourceCache,
        polling: PollingConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.polling = polling or PollingConfig()
        self._clock = clock
        self._periods: dict[str, float] = {}
        self._last_poll: dict[str, float] = {}
        self._resume: set[str] = set()  # Keys that were held back by the gate
        self._dialogs: dict[str, int] = {}
        self._mutations: dict[str, int] = {}
        self._last_scroll: float | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False

    # ── Watched keys ─────────────────────────────────────────────────────────

    def watch(self, key: str, period: float | None = None) -> None:
        """Start polling key. The first poll fires on the next tick."""
        self._periods[key] = period if period is not None else self.polling.interval_for(key)

    def unwatch(self, key: str) -> None:
        """Stop polling key."""
        self._periods.pop(key, None)
        self._last_poll.pop(key, None)
        self._resume.discard(key)

    def is_watched(self, key: str) -> bool:
        """Whether key is being polled."""
        return key in self._periods

    @property
    def watched(self) -> list[str]:
        """Keys currently polled."""
        return list(self._periods)

    def period(self, key: str) -> float | None:
        """Nominal period of a watched key."""
        return self._periods.get(key)

    # ── Suppression gate ─────────────────────────────────────────────────────

    def open_dialog(self, key: str) -> None:
        """A dialog editing key's resource opened."""
        self._dialogs[key] = self._dialogs.get(key, 0) + 1

    def close_dialog(self, key: str) -> None:
        """A dialog editing key's resource closed."""
        count = self._dialogs.get(key, 0) - 1
        if count > 0:
            self._dialogs[key] = count
        else:
            self._dialogs.pop(key, None)

    def note_scroll(self, now: float | None = None) -> None:
        """Record a scroll event. Suppresses all keys for scroll_quiet_seconds."""
        self._last_scroll = now if now is not None else self._clock()

    def begin_mutation(self, keys: Iterable[str]) -> None:
        """A mutation touching keys was dispatched."""
        for key in keys:
            self._mutations[key] = self._mutations.get(key, 0) + 1

    def end_mutation(self, keys: Iterable[str]) -> None:
        """A mutation touching keys resolved (successfully or not)."""
        for key in keys:
            count = self._mutations.get(key, 0) - 1
            if count > 0:
                self._mutations[key] = count
            else:
                self._mutations.pop(key, None)

    @contextmanager
    def mutating(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold polling of keys for the duration of the block."""
        keys = tuple(keys)
        self.begin_mutation(keys)
        try:
            yield
        finally:
            self.end_mutation(keys)

    def suppressed(self, key: str, now: float | None = None) -> str | None:
        """Return why key is held back ("dialog", "mutation", "scroll") or None."""
        now = now if now is not None else self._clock()
        if self._dialogs.get(key):
            return "dialog"
        if self._mutations.get(key):
            return "mutation"
        quiet = self.polling.scroll_quiet_seconds
        if self._last_scroll is not None and now - self._last_scroll < quiet:
            return "scroll"
        return None

    # ── Ticking ──────────────────────────────────────────────────────────────

    def _is_due(self, key: str, now: float) -> bool:
        if self.suppressed(key, now) is not None:
            return False
        if key in self._resume:
            return True
        last = self._last_poll.get(key)
        return last is None or now - last >= self._periods[key]

    def due_keys(self, now: float | None = None) -> list[str]:
        """Keys that would fire if tick() ran at now. Does not change state."""
        now = now if now is not None else self._clock()
        return [key for key in self._periods if self._is_due(key, now)]

    def tick(self, now: float | None = None) -> list[str]:
        """Fire refreshes for every due key. Returns the keys that fired.

        A key whose fetch is still in flight counts as fired; the cache drops
        the duplicate request.
        """
        now = now if now is not None else self._clock()
        fired = []
        for key in list(self._periods):
            if self.suppressed(key, now) is not None:
                self._resume.add(key)
                continue
            if not self._is_due(key, now):
                continue
            self._resume.discard(key)
            self._last_poll[key] = now
            if self.cache.is_registered(key):
                self.cache.refresh(key)
            fired.append(key)
        return fired

    async def run(self) -> None:
        """Tick every polling.tick_seconds until stop() is called."""
        self._stopping = False
        while not self._stopping:
            try:
                self.tick()
            except Exception:
                log.exception("scheduler_tick_failed")
            await asyncio.sleep(self.polling.tick_seconds)

    def start(self) -> asyncio.Task:
        """Run the loop as a background task (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="poll-scheduler")
        return self._task

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        self._stopping = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
