"""CLI commands for mqtt-dashboard."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click


@click.group()
@click.version_option()
def main() -> None:
    """Operator console for an MQTT IoT platform's admin API."""
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Plumbing
# ─────────────────────────────────────────────────────────────────────────────


def _load_config(source: str = "cli"):
    """Load config and point structlog at the log file. Exits 2 on bad config."""
    from mqtt_dashboard.config import Config
    from mqtt_dashboard.logging import configure

    try:
        config = Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(2)
    configure(config, source=source)
    return config


def _make_client(config):
    """Build the REST client for config."""
    from mqtt_dashboard.api_client import ApiClient

    return ApiClient(config.api)


def _run(coro) -> Any:
    """Run coro to completion, turning dashboard errors into exit codes.

    ValidationError exits 2; RequestError and ConflictError exit 1.
    """
    from mqtt_dashboard import logging as log
    from mqtt_dashboard.errors import ConflictError, RequestError, ValidationError

    try:
        return asyncio.run(coro)
    except ValidationError as e:
        log.validation_failed(e.message, e.field)
        raise SystemExit(2)
    except (RequestError, ConflictError) as e:
        log.error(str(e), log.Icon.FAIL)
        raise SystemExit(1)


async def _load(cache, *keys: str) -> list[Any]:
    """Fetch keys once and return their values, raising the first fetch error."""
    await asyncio.gather(*(cache.refresh(key) for key in keys))
    for key in keys:
        error = cache.last_error(key)
        if error is not None:
            raise error
    return [cache.value(key) for key in keys]


@asynccontextmanager
async def _session(config, *preload: str):
    """Yield (cache, coordinator) with preload keys already fetched."""
    from mqtt_dashboard.cache import ResourceCache
    from mqtt_dashboard.mutations import MutationCoordinator
    from mqtt_dashboard.resources import register_admin_resources

    async with _make_client(config) as api:
        cache = ResourceCache()
        register_admin_resources(cache, api, config.api.messages_limit)
        try:
            await _load(cache, *preload)
            yield cache, MutationCoordinator(api, cache)
        finally:
            # Invalidation refetches are not awaited by one-shot commands
            await cache.close()


def _fetch(config, *keys: str) -> list[Any]:
    async def run() -> list[Any]:
        async with _session(config, *keys) as (cache, _):
            return [cache.value(key) for key in keys]

    return _run(run())


def _since(hours: float | None):
    """Start of a look-back window of hours, or None for no window."""
    from datetime import datetime, timedelta, timezone

    if hours is None:
        return None
    return datetime.now(timezone.utc) - timedelta(hours=hours)


# ─────────────────────────────────────────────────────────────────────────────
# Dashboard
# ─────────────────────────────────────────────────────────────────────────────


@main.command()
def tui() -> None:
    """Launch interactive dashboard."""
    from mqtt_dashboard.tui import run_tui

    config = _load_config(source="tui")
    run_tui(config)


# ─────────────────────────────────────────────────────────────────────────────
# Listings
# ─────────────────────────────────────────────────────────────────────────────


@main.command()
@click.option(
    "--role",
    type=click.Choice(["all", "user", "admin", "viewer"]),
    default="all",
    help="Only users with this role",
)
@click.option(
    "--status",
    type=click.Choice(["all", "active", "suspended", "inactive"]),
    default="all",
    help="Only users with this status",
)
@click.option("--search", "-s", default="", help="Match username, email or name")
def users(role: str, status: str, search: str) -> None:
    """List platform users."""
    from mqtt_dashboard.filters import apply_filters, role_is, status_is, text_search
    from mqtt_dashboard.formatting import format_time, truncate
    from mqtt_dashboard.resources import USERS

    config = _load_config()
    (all_users,) = _fetch(config, USERS)
    rows = apply_filters(all_users, text_search(search), role_is(role), status_is(status))

    if not rows:
        click.echo("No users match.")
        return

    click.echo(
        f"{'ID':>5}  {'Username':20}  {'Role':7}  {'Status':10}  {'Email':28}  "
        f"{'Conns':>5}  {'Last login':16}"
    )
    click.echo("-" * 104)
    for user in rows:
        click.echo(
            f"{user.id:>5}  {truncate(user.username, 20):20}  {user.role:7}  "
            f"{user.status:10}  {truncate(user.email or '-', 28):28}  "
            f"{user.connection_count:>5}  {format_time(user.last_login_at, with_date=True):16}"
        )
    click.echo(f"\n{len(rows)} of {len(all_users)} users")


@main.command()
@click.option(
    "--connected/--disconnected", default=None, help="Only (dis)connected connections"
)
@click.option("--owner", type=int, default=None, help="Only connections of this user ID")
@click.option("--search", "-s", default="", help="Match name, broker URL or client ID")
def connections(connected: bool | None, owner: int | None, search: str) -> None:
    """List broker connections."""
    from mqtt_dashboard.filters import (
        apply_filters,
        connection_state,
        owned_by,
        owner_lookup,
        text_search,
    )
    from mqtt_dashboard.formatting import connection_state_label, truncate
    from mqtt_dashboard.resources import CONNECTIONS, USERS

    config = _load_config()
    all_connections, all_users = _fetch(config, CONNECTIONS, USERS)
    rows = apply_filters(
        all_connections, text_search(search), connection_state(connected), owned_by(owner)
    )

    if not rows:
        click.echo("No connections match.")
        return

    owner_of = owner_lookup(all_users)
    click.echo(
        f"{'ID':>5}  {'Name':20}  {'Broker':32}  {'Proto':5}  {'State':12}  {'Owner':16}"
    )
    click.echo("-" * 100)
    for connection in rows:
        user = owner_of(connection)
        owner_name = user.username if user is not None else "unknown"
        click.echo(
            f"{connection.id:>5}  {truncate(connection.name, 20):20}  "
            f"{truncate(connection.address, 32):32}  {connection.protocol:5}  "
            f"{connection_state_label(connection):12}  {truncate(owner_name, 16):16}"
        )
    connected_count = sum(1 for c in rows if c.is_connected)
    click.echo(f"\n{len(rows)} connections, {connected_count} connected")


@main.command()
@click.option("--connection", "-c", "connection_id", type=int, default=None, help="Connection ID")
@click.option("--search", "-s", default="", help="Match topic or payload")
@click.option("--limit", "-n", default=20, help="Number of messages to show")
@click.option(
    "--hours",
    "-H",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Only messages from the last N hours",
)
def messages(connection_id: int | None, search: str, limit: int, hours: float | None) -> None:
    """Show the most recent messages."""
    from mqtt_dashboard.analytics import chronological
    from mqtt_dashboard.filters import (
        apply_filters,
        for_connection,
        in_time_window,
        text_search,
    )
    from mqtt_dashboard.formatting import format_time, truncate
    from mqtt_dashboard.resources import MESSAGES

    config = _load_config()
    (all_messages,) = _fetch(config, MESSAGES)
    rows = apply_filters(
        chronological(all_messages),
        for_connection(connection_id),
        text_search(search),
        in_time_window(_since(hours), None),
    )

    if not rows:
        if hours is not None:
            click.echo(f"No messages in the last {hours:g} hour{'s' if hours != 1 else ''}.")
        else:
            click.echo("No messages.")
        return

    width = config.tui.payload_truncate_length
    click.echo(f"{'Time':8}  {'Conn':>5}  {'QoS':>3}  {'Topic':30}  Payload")
    click.echo("-" * (56 + width))
    for message in rows[-limit:]:
        qos = "-" if message.qos is None else str(message.qos)
        click.echo(
            f"{format_time(message.timestamp):8}  {message.connection_id:>5}  {qos:>3}  "
            f"{truncate(message.topic, 30):30}  {truncate(message.payload, width)}"
        )
    if len(rows) > limit:
        click.echo(f"\n(showing {limit} of {len(rows)})")


@main.command()
@click.option("--connection", "-c", "connection_id", type=int, default=None, help="Connection ID")
@click.option(
    "--hours",
    "-H",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Only count messages from the last N hours",
)
def analytics(connection_id: int | None, hours: float | None) -> None:
    """Message frequency, top topics and value trend over the last 24 hours."""
    from datetime import datetime, timezone

    from mqtt_dashboard.analytics import (
        Scope,
        aggregate,
        summarize_connections,
        summarize_users,
    )
    from mqtt_dashboard.filters import apply_filters, in_time_window
    from mqtt_dashboard.formatting import format_time, spark_line
    from mqtt_dashboard.resources import CONNECTIONS, MESSAGES, USERS

    config = _load_config()
    scope = Scope.all() if connection_id is None else Scope.connection(connection_id)
    now = datetime.now(timezone.utc)

    if scope.is_global:
        all_messages, all_users, all_connections = _fetch(config, MESSAGES, USERS, CONNECTIONS)
        user_summary = summarize_users(all_users, now)
        conn_summary = summarize_connections(all_connections)
        click.echo(
            f"Users: {user_summary.total} ({user_summary.active} active, "
            f"{user_summary.admins} admin, {user_summary.recent_logins} logged in today)"
        )
        click.echo(
            f"Connections: {conn_summary.total} ({conn_summary.connected} connected)"
        )
        click.echo()
    else:
        (all_messages,) = _fetch(config, MESSAGES)

    since = _since(hours)
    if since is not None:
        all_messages = apply_filters(all_messages, in_time_window(since, None))
        click.echo(f"Window: since {format_time(since, with_date=True)}")

    view = aggregate(
        all_messages,
        scope,
        now,
        top_topics=config.analytics.top_topics,
        trend_limit=config.analytics.trend_limit,
        trend_fields=config.analytics.trend_fields,
    )

    counts = [bucket.count for bucket in view.message_frequency]
    click.echo(f"Messages ({scope}), last 24h: {view.window_total}")
    click.echo(
        f"  {format_time(view.message_frequency[0].start)} |{spark_line(counts)}| "
        f"now (peak {max(counts)}/h)"
    )

    click.echo("\nTop topics:")
    if not view.topic_distribution:
        click.echo("  (none)")
    for entry in view.topic_distribution:
        click.echo(f"  {entry.count:>6}  {entry.topic}")

    click.echo("\nValue trend:")
    if view.value_trend is None:
        click.echo("  No numeric values in payloads.")
    else:
        values = [point.value for point in view.value_trend]
        click.echo(
            f"  {len(values)} points, last {values[-1]:g}, "
            f"min {min(values):g}, max {max(values):g}"
        )
        click.echo(f"  |{spark_line([v - min(values) for v in values])}|")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include resolved events")
@click.option("--limit", "-n", default=10, help="Number of activity entries to show")
def security(show_all: bool, limit: int) -> None:
    """Show security events and recent user activity."""
    from mqtt_dashboard.analytics import newest_first
    from mqtt_dashboard.formatting import format_time, truncate
    from mqtt_dashboard.resources import SECURITY_EVENTS, USER_ACTIVITY

    config = _load_config()
    events, activity = _fetch(config, SECURITY_EVENTS, USER_ACTIVITY)

    shown = newest_first(e for e in events if show_all or not e.resolved)
    if shown:
        click.echo(f"{'Time':16}  {'Severity':8}  {'Type':20}  Description")
        click.echo("-" * 90)
        for event in shown:
            mark = " (resolved)" if event.resolved else ""
            click.echo(
                f"{format_time(event.timestamp, with_date=True):16}  {event.severity:8}  "
                f"{truncate(event.type, 20):20}  {event.description}{mark}"
            )
    else:
        click.echo("No open security events.")

    click.echo("\nRecent activity:")
    entries = newest_first(activity)[:limit]
    if not entries:
        click.echo("  (none)")
    for entry in entries:
        click.echo(
            f"  {format_time(entry.timestamp, with_date=True):16}  {entry.status:8}  "
            f"{truncate(entry.username, 16):16}  {entry.action}"
        )
    click.echo(f"\n{len(shown)} of {len(events)} events, {len(activity)} activity entries")


# ─────────────────────────────────────────────────────────────────────────────
# Mutations
# ─────────────────────────────────────────────────────────────────────────────


def _set_connected(connection_id: int, target: bool) -> None:
    from mqtt_dashboard import logging as log
    from mqtt_dashboard.resources import CONNECTIONS

    config = _load_config()

    async def run():
        async with _session(config, CONNECTIONS) as (_, coordinator):
            if target:
                return await coordinator.connect(connection_id)
            return await coordinator.disconnect(connection_id)

    result = _run(run())
    if result.noop:
        log.connection_unchanged(connection_id, target)
    else:
        log.connection_confirmed(connection_id, target)


@main.command()
@click.argument("connection_id", type=int)
def connect(connection_id: int) -> None:
    """Connect a broker connection."""
    _set_connected(connection_id, True)


@main.command()
@click.argument("connection_id", type=int)
def disconnect(connection_id: int) -> None:
    """Disconnect a broker connection."""
    _set_connected(connection_id, False)


@main.command()
@click.argument("connection_id", type=int)
@click.argument("topic")
@click.argument("payload")
@click.option("--qos", "-q", type=int, default=0, help="Quality of service (0, 1 or 2)")
@click.option("--retain", is_flag=True, help="Ask the broker to retain the message")
def publish(connection_id: int, topic: str, payload: str, qos: int, retain: bool) -> None:
    """Publish a message through a connection."""
    from mqtt_dashboard import logging as log

    config = _load_config()

    async def run():
        async with _session(config) as (_, coordinator):
            return await coordinator.publish(connection_id, topic, payload, qos, retain)

    _run(run())
    log.message_published(connection_id, topic)


@main.command("clear-messages")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def clear_messages(yes: bool) -> None:
    """Delete every message on the platform."""
    from mqtt_dashboard import logging as log

    config = _load_config()

    if not yes:
        click.confirm("Delete ALL messages for every connection?", abort=True)

    async def run():
        async with _session(config) as (_, coordinator):
            return await coordinator.clear_messages()

    _run(run())
    log.messages_cleared()


@main.command("delete-user")
@click.argument("user_id", type=int)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def delete_user(user_id: int, yes: bool) -> None:
    """Delete a user with their connections and messages."""
    from mqtt_dashboard import logging as log
    from mqtt_dashboard.resources import USERS

    config = _load_config()

    if not yes:
        click.confirm(f"Delete user {user_id} and all their data?", abort=True)

    async def run():
        async with _session(config, USERS) as (_, coordinator):
            return await coordinator.delete_user(user_id)

    _run(run())
    log.user_deleted(user_id)


# ─────────────────────────────────────────────────────────────────────────────
# Export
# ─────────────────────────────────────────────────────────────────────────────


@main.command()
@click.argument(
    "subject",
    type=click.Choice(["users", "connections", "messages", "all"]),
    default="all",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Output file (default: <subject>-export-<date>.json)",
)
def export(subject: str, output: Path | None) -> None:
    """Export users, connections and/or messages as sanitized JSON."""
    from datetime import datetime, timezone

    from mqtt_dashboard import logging as log
    from mqtt_dashboard.export import build_export, export_filename, write_export
    from mqtt_dashboard.resources import CONNECTIONS, MESSAGES, USERS

    config = _load_config()
    keys = [USERS, CONNECTIONS, MESSAGES] if subject == "all" else [subject]
    values = dict(zip(keys, _fetch(config, *keys)))

    now = datetime.now(timezone.utc)
    document = build_export(
        subject,
        users=values.get(USERS, ()),
        connections=values.get(CONNECTIONS, ()),
        messages=values.get(MESSAGES, ()),
        now=now,
    )
    path = output or Path.cwd() / export_filename(subject, now)
    counts = write_export(document, path)
    log.export_written(str(path), counts)


# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("init")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write a config file with default values."""
    from mqtt_dashboard import logging as log
    from mqtt_dashboard.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        click.echo(f"Config already exists at {cfg.config_path} (use --force to overwrite)")
        return
    cfg.save()
    log.config_created(str(cfg.config_path))


_SECRET_FIELDS = {"token", "session_cookie"}


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from mqtt_dashboard.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(2)

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("api", "polling", "analytics", "logging"):
        click.echo()
        click.echo(f"[{section}]")
        values = getattr(cfg, section)
        for f in fields(values):
            value = getattr(values, f.name)
            if f.name in _SECRET_FIELDS and value:
                value = "********"
            click.echo(f"  {f.name} = {value}")


if __name__ == "__main__":
    main()
