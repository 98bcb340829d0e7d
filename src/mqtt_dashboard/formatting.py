"""Formatting utilities for consistent output across CLI and TUI."""

from collections.abc import Sequence
from datetime import datetime, timezone

from mqtt_dashboard.models import ActionState, Connection

SPARK_CHARS = " ▁▂▃▄▅▆▇█"


def format_age(seconds: float) -> str:
    """Format an age for status lines (compact).

    Returns:
        "3s", "4m", "2h" or "5d"
    """
    seconds = max(0.0, seconds)
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds // 60:.0f}m"
    if seconds < 86400:
        return f"{seconds // 3600:.0f}h"
    return f"{seconds // 86400:.0f}d"


def format_time(value: datetime | None, *, with_date: bool = False) -> str:
    """Format a timestamp in local time for tables.

    Args:
        value: Aware datetime, or None
        with_date: Include the date (for values that may be days old)

    Returns:
        "14:03:22", "2024-05-01 14:03", or "-" for None
    """
    if value is None:
        return "-"
    local = value.astimezone()
    if with_date:
        return local.strftime("%Y-%m-%d %H:%M")
    return local.strftime("%H:%M:%S")


def format_since(value: datetime | None, now: datetime | None = None) -> str:
    """Format how long ago value was ("never" for None)."""
    if value is None:
        return "never"
    now = now or datetime.now(timezone.utc)
    return f"{format_age((now - value).total_seconds())} ago"


def truncate(text: str, length: int) -> str:
    """Collapse whitespace and cut text to length, marking the cut with an ellipsis."""
    text = " ".join(text.split())
    if length <= 0 or len(text) <= length:
        return text
    if length == 1:
        return "…"
    return text[: length - 1] + "…"


def connection_state_label(connection: Connection, action: ActionState = ActionState.IDLE) -> str:
    """Status text for a connection row.

    The in-flight action is shown next to the server-reported state, never
    instead of it.
    """
    state = "connected" if connection.is_connected else "disconnected"
    if action is ActionState.PENDING:
        return f"{state} …"
    if action is ActionState.CONFIRMED:
        return f"{state} ✓"
    return state


def spark_line(values: Sequence[float]) -> str:
    """Render values as a one-row block sparkline scaled to their maximum."""
    if not values:
        return ""
    top = max(values)
    if top <= 0:
        return SPARK_CHARS[0] * len(values)
    levels = len(SPARK_CHARS) - 1
    return "".join(SPARK_CHARS[round(max(0.0, v) / top * levels)] for v in values)
