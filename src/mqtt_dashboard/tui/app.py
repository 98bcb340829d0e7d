"""Live admin dashboard for an MQTT IoT platform.

Philosophy: TUI = read-only window onto the shared cache.
- Every panel renders whatever the cache holds; polls never blank a view
- Actions go through the mutation coordinator, results show as toasts
- Server state (is_connected) is displayed apart from in-flight actions
"""

from datetime import datetime, timezone
from typing import Any

import httpx
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.events import MouseScrollDown, MouseScrollUp
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Label, RichLog, Static

from mqtt_dashboard.analytics import AggregateCache, AggregateView, Scope, newest_first
from mqtt_dashboard.api_client import ApiClient
from mqtt_dashboard.cache import PENDING, ResourceCache
from mqtt_dashboard.config import Config
from mqtt_dashboard.errors import DashboardError
from mqtt_dashboard.formatting import (
    connection_state_label,
    format_age,
    format_since,
    format_time,
    truncate,
)
from mqtt_dashboard.logging import get_structlog
from mqtt_dashboard.models import (
    ActionState,
    Connection,
    Message,
    SecurityEvent,
    User,
    UserActivity,
)
from mqtt_dashboard.mutations import MutationCoordinator
from mqtt_dashboard.resources import (
    CONNECTIONS,
    GLOBAL_KEYS,
    MESSAGES,
    SECURITY_EVENTS,
    SYSTEM_STATS,
    USER_ACTIVITY,
    USERS,
    parse_scoped_key,
    register_admin_resources,
    register_connection_resources,
)
from mqtt_dashboard.scheduler import PollScheduler
from mqtt_dashboard.tui.sparkline import GradientColor, Sparkline

log = get_structlog()

_SEVERE = ("high", "critical")
_FAILED = ("failed", "error")


def api_health(cache: ResourceCache, keys: tuple[str, ...] = GLOBAL_KEYS) -> str:
    """Summarize fetch health of keys.

    Returns:
        "healthy" when every key's last fetch succeeded, "degraded" when some
        failed but data is shown, "disconnected" when nothing could be
        fetched, "connecting" before the first responses arrive
    """
    entries = [cache.get(key) for key in keys]
    failing = [key for key in keys if cache.last_error(key) is not None]
    if all(entry is PENDING for entry in entries):
        return "disconnected" if failing else "connecting"
    if failing:
        return "degraded"
    return "healthy"


class HeaderBar(Static):
    """Header showing system stats and API health."""

    DEFAULT_CSS = """
    HeaderBar {
        height: 3;
        padding: 0 1;
        border: solid green;
        border-title-align: left;
    }

    HeaderBar Horizontal {
        height: 1;
        width: 100%;
    }

    HeaderBar #stats-left {
        width: auto;
    }

    HeaderBar #stats-right {
        width: 1fr;
        text-align: right;
    }
    """

    health: reactive[str] = reactive("connecting")

    def compose(self) -> ComposeResult:
        """Create header layout."""
        yield Horizontal(
            Label("Waiting for first poll...", id="stats-left"),
            Label("", id="stats-right"),
        )

    def on_mount(self) -> None:
        """Set border title."""
        self.border_title = "MQTT ADMIN"
        self.border_subtitle = self.app.config.api.base_url
        self._update_border_color()

    def watch_health(self, health: str) -> None:
        """Update border when API health changes."""
        self._update_border_color()

    def _update_border_color(self) -> None:
        borders = self.app.config.tui.colors.borders
        color = {
            "healthy": borders.healthy,
            "degraded": borders.degraded,
            "disconnected": borders.disconnected,
        }.get(self.health, borders.degraded)
        self.styles.border = ("solid", color)

    def update_stats(self, cache: ResourceCache) -> None:
        """Render the latest system stats and health."""
        self.health = api_health(cache)
        try:
            left = self.query_one("#stats-left", Label)
            right = self.query_one("#stats-right", Label)
        except NoMatches:
            return

        entry = cache.get(SYSTEM_STATS)
        if entry is PENDING:
            error = cache.last_error(SYSTEM_STATS)
            left.update(f"[red]{error}[/]" if error else "Waiting for first poll...")
            right.update(self.health.upper())
            return

        stats = entry.value
        left.update(
            f"CPU {stats.cpu_usage:.0f}%  MEM {stats.memory_usage:.0f}%  "
            f"DISK {stats.disk_usage:.0f}%  {stats.messages_per_minute:.0f} msg/min  "
            f"err {stats.error_rate:.1f}%"
        )
        stale = f"  [yellow]stale {format_age(entry.age())}[/]" if entry.failing else ""
        right.update(
            f"users {stats.online_users}/{stats.total_users} online  "
            f"conns {stats.active_connections}  up {stats.uptime}  "
            f"{self.health.upper()}{stale}"
        )


class ConnectionsTable(Static):
    """Broker connections with server state and in-flight action."""

    DEFAULT_CSS = """
    ConnectionsTable {
        height: 1fr;
        border: solid $primary;
        border-title-align: left;
    }

    ConnectionsTable DataTable {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._table: DataTable | None = None
        self.row_ids: list[int] = []

    def compose(self) -> ComposeResult:
        """Create the connections table."""
        yield DataTable(id="connections-table", zebra_stripes=True, cursor_type="row")

    def on_mount(self) -> None:
        """Set up table columns."""
        self.border_title = "CONNECTIONS"
        self._table = self.query_one("#connections-table", DataTable)
        self._table.add_columns("ID", "Name", "Broker", "Proto", "State", "Owner")

    @property
    def selected_id(self) -> int | None:
        """ID of the connection under the cursor."""
        if self._table is None or not self.row_ids:
            return None
        row = self._table.cursor_row
        if 0 <= row < len(self.row_ids):
            return self.row_ids[row]
        return None

    def _state_cell(self, connection: Connection, action: ActionState) -> Text:
        colors = self.app.config.tui.colors.status
        if action is ActionState.PENDING:
            color = colors.pending
        elif connection.is_connected:
            color = colors.connected
        else:
            color = colors.disconnected
        return Text(connection_state_label(connection, action), style=color)

    def update_connections(
        self,
        connections: tuple[Connection, ...],
        users: tuple[User, ...],
        action_state,
    ) -> None:
        """Redraw rows, keeping the cursor on the same row index."""
        if self._table is None:
            return
        owners = {user.id: user.username for user in users}
        cursor = self._table.cursor_row
        self._table.clear()
        self.row_ids = []
        for connection in connections:
            self._table.add_row(
                str(connection.id),
                truncate(connection.name, 24),
                truncate(connection.address, 36),
                connection.protocol,
                self._state_cell(connection, action_state(connection.id)),
                owners.get(connection.user_id, "unknown"),
                key=str(connection.id),
            )
            self.row_ids.append(connection.id)
        if self.row_ids:
            self._table.move_cursor(row=min(cursor, len(self.row_ids) - 1))
        connected = sum(1 for c in connections if c.is_connected)
        self.border_title = f"CONNECTIONS ({connected}/{len(connections)} connected)"


class MessageLog(Static):
    """Live message feed using RichLog for auto-scroll and auto-prune."""

    DEFAULT_CSS = """
    MessageLog {
        height: 100%;
        border: solid $primary;
        border-title-align: left;
    }

    MessageLog RichLog {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._last_id: int | None = None

    def compose(self) -> ComposeResult:
        """Create the log."""
        yield RichLog(
            id="message-log", markup=True, max_lines=self.app.config.tui.message_log_lines
        )

    def on_mount(self) -> None:
        """Set border title."""
        self.border_title = "MESSAGES"

    def update_messages(self, messages: tuple[Message, ...]) -> int:
        """Append messages newer than the last one shown. Returns how many."""
        try:
            rich_log = self.query_one("#message-log", RichLog)
        except NoMatches:
            return 0

        if not messages:
            if self._last_id is not None:
                rich_log.clear()
                rich_log.write("[dim]No messages[/]")
                self._last_id = None
            return 0

        newest_first = self._last_id is None
        fresh = sorted(
            (m for m in messages if self._last_id is None or m.id > self._last_id),
            key=lambda m: m.id,
        )
        if newest_first:
            rich_log.clear()
        width = self.app.config.tui.payload_truncate_length
        for message in fresh:
            rich_log.write(
                f"[dim]{format_time(message.timestamp)}[/]  "
                f"[cyan]{message.topic}[/]  {truncate(message.payload, width)}"
            )
        if fresh:
            self._last_id = fresh[-1].id
        return len(fresh)


class AnalyticsPanel(Static):
    """Frequency sparkline, top topics and value trend for one scope."""

    DEFAULT_CSS = """
    AnalyticsPanel {
        height: 100%;
        border: solid $primary;
        border-title-align: left;
        padding: 0 1;
    }

    AnalyticsPanel Sparkline {
        width: 1fr;
    }

    AnalyticsPanel Label {
        width: 100%;
    }
    """

    def compose(self) -> ComposeResult:
        """Create the panel layout."""
        tui = self.app.config.tui
        yield Label("Messages / hour (24h)", id="frequency-label")
        yield Sparkline(height=tui.sparkline_height, bar_width=2, id="frequency")
        yield Label("", id="topics")
        yield Label("", id="trend-label")
        yield Sparkline(height=1, id="trend")

    def on_mount(self) -> None:
        """Set border title and sparkline colors."""
        self.border_title = "ANALYTICS"
        colors = self.app.config.tui.colors.status
        gradient = GradientColor([(0, colors.disconnected), (1, colors.connected)])
        try:
            self.query_one("#frequency", Sparkline).color_func = gradient
        except NoMatches:
            pass

    def update_view(self, view: AggregateView) -> None:
        """Render an aggregate view."""
        try:
            frequency = self.query_one("#frequency", Sparkline)
            frequency_label = self.query_one("#frequency-label", Label)
            topics = self.query_one("#topics", Label)
            trend_label = self.query_one("#trend-label", Label)
            trend = self.query_one("#trend", Sparkline)
        except NoMatches:
            return

        counts = [bucket.count for bucket in view.message_frequency]
        frequency.data = [float(c) for c in counts]
        frequency_label.update(
            f"Messages / hour (24h): {view.window_total} total, peak {max(counts)}"
        )

        if view.topic_distribution:
            lines = [f"{t.count:>6}  {truncate(t.topic, 40)}" for t in view.topic_distribution]
            topics.update("Top topics\n" + "\n".join(lines))
        else:
            topics.update("Top topics\n  [dim](none)[/]")

        if view.value_trend is None:
            trend_label.update("Trend: [dim]no numeric payloads[/]")
            trend.clear()
        else:
            values = [point.value for point in view.value_trend]
            low = min(values)
            trend_label.update(
                f"Trend: last {values[-1]:g}  min {low:g}  max {max(values):g}  "
                f"({len(values)} pts)"
            )
            trend.data = [v - low for v in values]


class SecurityPanel(Static):
    """Open security events and the latest user activity."""

    DEFAULT_CSS = """
    SecurityPanel {
        height: 100%;
        border: solid $primary;
        border-title-align: left;
        padding: 0 1;
    }

    SecurityPanel Label {
        width: 100%;
    }
    """

    MAX_EVENTS = 5
    MAX_ACTIVITY = 5

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.event_ids: list[int] = []
        self.activity_ids: list[int] = []

    def compose(self) -> ComposeResult:
        """Create the panel body."""
        yield Label("Waiting for first poll...", id="security-body")

    def on_mount(self) -> None:
        """Set border title."""
        self.border_title = "SECURITY"

    def update_security(
        self,
        events: tuple[SecurityEvent, ...],
        activity: tuple[UserActivity, ...],
        users: tuple[User, ...],
    ) -> None:
        """Render unresolved events, then recent activity colored by role."""
        try:
            body = self.query_one("#security-body", Label)
        except NoMatches:
            return

        colors = self.app.config.tui.colors
        open_events = newest_first(e for e in events if not e.resolved)
        shown_events = open_events[: self.MAX_EVENTS]
        text = Text()
        for event in shown_events:
            color = (
                colors.status.error if event.severity in _SEVERE else colors.status.pending
            )
            text.append(f"{event.severity.upper():8}", style=color)
            text.append(f" {truncate(event.description, 48)}\n")
        if not shown_events:
            text.append("No open events\n", style="dim")

        text.append("\nRecent activity\n", style="bold")
        roles = {user.username: user.role for user in users}
        shown_activity = newest_first(activity)[: self.MAX_ACTIVITY]
        for entry in shown_activity:
            text.append(f"{format_time(entry.timestamp)} ", style="dim")
            text.append(
                truncate(entry.username, 16),
                style=vars(colors.roles).get(roles.get(entry.username, ""), ""),
            )
            style = colors.status.error if entry.status in _FAILED else ""
            text.append(f" {truncate(entry.action, 36)}\n", style=style)
        if not shown_activity:
            text.append("(none)\n", style="dim")

        body.update(text)
        self.event_ids = [event.id for event in shown_events]
        self.activity_ids = [entry.id for entry in shown_activity]
        self.border_title = f"SECURITY ({len(open_events)} open)"


class ConnectionDetailScreen(ModalScreen):
    """One connection's scoped messages and analytics.

    Its scoped keys are polled only while the screen is open. Polling of the
    connections list is held while it is open.
    """

    DEFAULT_CSS = """
    ConnectionDetailScreen {
        align: center middle;
    }

    ConnectionDetailScreen > Vertical {
        width: 90%;
        height: 80%;
        border: thick $primary;
        background: $surface;
        padding: 0 1;
    }

    ConnectionDetailScreen #detail-summary {
        height: 3;
    }

    ConnectionDetailScreen AnalyticsPanel {
        height: 1fr;
    }
    """

    BINDINGS = [
        ("escape", "close", "Close"),
        ("d", "close", "Close"),
    ]

    def __init__(self, connection_id: int, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.connection_id = connection_id
        self.scope = Scope.connection(connection_id)
        self._keys: tuple[str, ...] = ()

    def compose(self) -> ComposeResult:
        """Create the detail layout."""
        yield Vertical(
            Label(f"Connection {self.connection_id}", id="detail-summary"),
            AnalyticsPanel(id="detail-analytics"),
        )

    def on_mount(self) -> None:
        """Start polling this connection's scoped keys."""
        app: DashboardApp = self.app  # type: ignore[assignment]
        self._keys = register_connection_resources(app.cache, app.api, self.connection_id)
        for key in self._keys:
            app.scheduler.watch(key)
        app.scheduler.open_dialog(CONNECTIONS)
        log.info("detail_opened", connection_id=self.connection_id)
        self.refresh_detail()

    def on_unmount(self) -> None:
        """Stop polling and drop the scoped keys."""
        self.release()

    def release(self) -> None:
        """Unwatch and forget the scoped keys (idempotent)."""
        if not self._keys:
            return
        app: DashboardApp = self.app  # type: ignore[assignment]
        for key in self._keys:
            app.scheduler.unwatch(key)
            app.cache.forget(key)
        app.scheduler.close_dialog(CONNECTIONS)
        self._keys = ()
        log.info("detail_closed", connection_id=self.connection_id)

    def action_close(self) -> None:
        """Close the detail view."""
        self.release()
        self.dismiss()

    def refresh_detail(self) -> None:
        """Render the cached scoped resources."""
        if not self._keys:
            return
        app: DashboardApp = self.app  # type: ignore[assignment]
        messages_key, analytics_key = self._keys
        try:
            summary = self.query_one("#detail-summary", Label)
            panel = self.query_one("#detail-analytics", AnalyticsPanel)
        except NoMatches:
            return

        info = app.cache.value(analytics_key)
        if info is None:
            error = app.cache.last_error(analytics_key)
            summary.update(f"[red]{error}[/]" if error else "Loading...")
        else:
            summary.update(
                f"[bold]{info.connection_name}[/]  {info.connection_status}\n"
                f"{info.total_messages} messages  {info.active_topics} topics  "
                f"last message {format_since(info.last_message_at)}"
            )

        messages = app.cache.value(messages_key)
        if messages is not None:
            version = app.cache.version(messages_key)
            panel.update_view(app.analytics_for(messages, self.scope, version))


class ConfirmScreen(ModalScreen[bool]):
    """Yes/no confirmation for destructive actions."""

    DEFAULT_CSS = """
    ConfirmScreen {
        align: center middle;
    }

    ConfirmScreen > Vertical {
        width: 60;
        height: auto;
        border: thick $error;
        background: $surface;
        padding: 1 2;
    }

    ConfirmScreen Horizontal {
        height: auto;
        margin-top: 1;
    }
    """

    BINDINGS = [
        ("y", "answer(True)", "Yes"),
        ("n", "answer(False)", "No"),
        ("escape", "answer(False)", "Cancel"),
    ]

    def __init__(self, prompt: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.prompt = prompt

    def compose(self) -> ComposeResult:
        """Create the dialog."""
        yield Vertical(
            Label(self.prompt),
            Horizontal(
                Button("Delete", variant="error", id="yes"),
                Button("Cancel", id="no"),
            ),
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        """Answer with the pressed button."""
        self.dismiss(event.button.id == "yes")

    def action_answer(self, answer: bool) -> None:
        """Answer from a key binding."""
        self.dismiss(answer)


class DashboardApp(App):
    """Live admin dashboard for mqtt-dashboard."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #header {
        height: 3;
    }

    #main-area {
        height: 1fr;
    }

    #bottom-panels {
        height: 16;
    }

    #bottom-panels > * {
        width: 1fr;
    }
    """

    BINDINGS = [
        ("c", "toggle_connection", "Connect/Disconnect"),
        ("d", "show_detail", "Detail"),
        ("x", "clear_messages", "Clear messages"),
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        config: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.config = config or Config.load()
        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()
        self.api = ApiClient(self.config.api, transport=transport)
        self.cache = ResourceCache()
        self.scheduler = PollScheduler(self.cache, self.config.polling)
        self.coordinator = MutationCoordinator(self.api, self.cache, self.scheduler)
        analytics = self.config.analytics
        self._aggregates = AggregateCache(
            top_topics=analytics.top_topics,
            trend_limit=analytics.trend_limit,
            trend_fields=analytics.trend_fields,
        )

    def compose(self) -> ComposeResult:
        """Create the TUI layout."""
        yield HeaderBar(id="header")
        yield ConnectionsTable(id="main-area")
        yield Horizontal(
            MessageLog(id="messages"),
            AnalyticsPanel(id="analytics"),
            SecurityPanel(id="security"),
            id="bottom-panels",
        )
        yield Footer()

    def on_mount(self) -> None:
        """Register resources and start polling."""
        self.title = "mqtt-dashboard"
        self.sub_title = self.config.api.base_url
        register_admin_resources(self.cache, self.api, self.config.api.messages_limit)
        for key in GLOBAL_KEYS:
            self.scheduler.watch(key)
        self.cache.subscribe(self._on_key_updated)
        self.scheduler.start()
        # Decays CONFIRMED action states and ages the stale marker
        self.set_interval(1.0, self._refresh_connections)
        log.info("tui_started", base_url=self.config.api.base_url)

    async def on_unmount(self) -> None:
        """Stop polling and close the HTTP client."""
        await self.scheduler.stop()
        await self.cache.close()
        await self.api.close()

    # ── Cache → widgets ──────────────────────────────────────────────────────

    def analytics_for(self, messages: tuple[Message, ...], scope: Scope, version: int):
        """Memoized aggregate view of messages."""
        return self._aggregates.get(messages, scope, version, datetime.now(timezone.utc))

    def _on_key_updated(self, key: str) -> None:
        """Route a completed fetch to the widgets that show it."""
        try:
            self.query_one("#header", HeaderBar).update_stats(self.cache)
        except NoMatches:
            pass

        if key in (USERS, SECURITY_EVENTS, USER_ACTIVITY):
            self._refresh_security()
        if key in (USERS, CONNECTIONS):
            self._refresh_connections()
        elif key == MESSAGES:
            self._refresh_messages()
        elif parse_scoped_key(key) is not None:
            screen = self.screen
            if isinstance(screen, ConnectionDetailScreen):
                screen.refresh_detail()

    def _refresh_connections(self) -> None:
        connections = self.cache.value(CONNECTIONS)
        if connections is None:
            return
        try:
            self.query_one("#main-area", ConnectionsTable).update_connections(
                connections, self.cache.value(USERS, ()), self.coordinator.action_state
            )
        except NoMatches:
            pass

    def _refresh_security(self) -> None:
        events = self.cache.value(SECURITY_EVENTS)
        activity = self.cache.value(USER_ACTIVITY)
        if events is None and activity is None:
            return
        try:
            self.query_one("#security", SecurityPanel).update_security(
                events or (), activity or (), self.cache.value(USERS, ())
            )
        except NoMatches:
            pass

    def _refresh_messages(self) -> None:
        messages = self.cache.value(MESSAGES)
        if messages is None:
            return
        try:
            self.query_one("#messages", MessageLog).update_messages(messages)
            view = self.analytics_for(messages, Scope.all(), self.cache.version(MESSAGES))
            self.query_one("#analytics", AnalyticsPanel).update_view(view)
        except NoMatches:
            pass

    # ── Scroll suppression ───────────────────────────────────────────────────

    def on_mouse_scroll_down(self, event: MouseScrollDown) -> None:
        self.scheduler.note_scroll()

    def on_mouse_scroll_up(self, event: MouseScrollUp) -> None:
        self.scheduler.note_scroll()

    # ── Actions ──────────────────────────────────────────────────────────────

    def _selected_connection(self) -> Connection | None:
        try:
            connection_id = self.query_one("#main-area", ConnectionsTable).selected_id
        except NoMatches:
            return None
        for connection in self.cache.value(CONNECTIONS, ()):
            if connection.id == connection_id:
                return connection
        return None

    def action_toggle_connection(self) -> None:
        """Connect or disconnect the selected connection."""
        connection = self._selected_connection()
        if connection is None:
            self.notify("No connection selected", severity="warning")
            return
        self.run_worker(self._toggle_connection(connection.id, not connection.is_connected))

    async def _toggle_connection(self, connection_id: int, target: bool) -> None:
        verb = "connect" if target else "disconnect"
        try:
            if target:
                result = await self.coordinator.connect(connection_id)
            else:
                result = await self.coordinator.disconnect(connection_id)
        except DashboardError as e:
            self.notify(f"Failed to {verb} connection {connection_id}: {e}", severity="error")
            self._refresh_connections()
            return
        if result.noop:
            self.notify(f"Connection {connection_id} already {verb}ed")
        else:
            self.notify(f"Connection {connection_id} {verb}ed", severity="information")
        self._refresh_connections()

    def action_show_detail(self) -> None:
        """Open the detail view of the selected connection."""
        connection = self._selected_connection()
        if connection is None:
            self.notify("No connection selected", severity="warning")
            return
        self.push_screen(ConnectionDetailScreen(connection.id))

    def action_clear_messages(self) -> None:
        """Ask for confirmation, then delete every message."""

        def confirmed(answer: bool | None) -> None:
            if answer:
                self.run_worker(self._clear_messages())

        self.push_screen(ConfirmScreen("Delete ALL messages for every connection?"), confirmed)

    async def _clear_messages(self) -> None:
        try:
            await self.coordinator.clear_messages()
        except DashboardError as e:
            self.notify(f"Failed to clear messages: {e}", severity="error")
            return
        self.notify("All messages cleared", severity="information")


def run_tui(config: Config | None = None) -> None:
    """Run the TUI application."""
    app = DashboardApp(config)
    app.run()

