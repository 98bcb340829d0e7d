"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (connection_confirmed, export_written, etc.)
5. Structlog configuration (configure, get_structlog)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from mqtt_dashboard.config import Config

# Console output goes to stderr so CLI tables on stdout stay pipeable
_console = Console(highlight=False, stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    SAVE = "💾"
    PRUNE = "🧹"
    SEND = "📤"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def connection_confirmed(connection_id: int, connected: bool) -> None:
    """Log a connect/disconnect the server confirmed."""
    if connected:
        info(f"Connection [cyan]{connection_id}[/] connected", Icon.CONNECTED)
    else:
        info(f"Connection [cyan]{connection_id}[/] disconnected", Icon.DISCONNECTED)


def connection_unchanged(connection_id: int, connected: bool) -> None:
    """Log a connect/disconnect that was already in the requested state."""
    state = "connected" if connected else "disconnected"
    info(f"[dim]Connection {connection_id} already {state}[/]")


def message_published(connection_id: int, topic: str) -> None:
    """Log message publish dispatched."""
    info(f"Published to [cyan]{topic}[/] [dim](connection {connection_id})[/]", Icon.SEND)


def messages_cleared() -> None:
    """Log all messages cleared."""
    info("All messages cleared", Icon.PRUNE)


def user_deleted(user_id: int) -> None:
    """Log user deleted."""
    info(f"User [cyan]{user_id}[/] deleted", Icon.OK)


def validation_failed(error_msg: str, field: str | None = None) -> None:
    """Log a client-side validation failure."""
    if field:
        warn(f"[bold]{field}[/]: {error_msg}")
    else:
        warn(error_msg)


def export_written(path: str, counts: dict[str, int]) -> None:
    """Log export file written."""
    summary = ", ".join(f"{n} {name}" for name, n in counts.items())
    info(f"Exported to [cyan]{path}[/] [dim]({summary})[/]", Icon.SAVE)


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "cli") -> None:
    """Configure structlog for JSON Lines output into the rotating log file.

    Uses local time to match what operators see on screen. Console output is
    handled by Rich (see log functions above); structlog only writes the file.

    Args:
        config: Application config with paths and rotation settings
        source: Value of the "source" field on every event (cli or tui)
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, config.logging.level, logging.INFO)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.logging.max_bytes,
        backupCount=config.logging.backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    # httpx logs every request at INFO; keep the file about our own events
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Returns a logger for structured JSON file output. Use this for
    machine-parseable events that should go to the log file.

    For human-readable console output, use the log/info/warn/error
    functions or domain helpers instead.
    """
    return structlog.get_logger()
