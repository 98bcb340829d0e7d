"""Configuration system for mqtt-dashboard."""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class ApiConfig:
    """Admin REST API connection settings."""

    base_url: str = "http://localhost:5000"
    timeout: float = 10.0  # Seconds per request (connect + read)
    session_cookie: str = ""  # Value of the "connect.sid" session cookie, if any
    token: str = ""  # Bearer token, if the deployment uses one
    messages_limit: int = 1000  # ?limit= for /api/admin/messages


@dataclass
class PollingConfig:
    """Poll scheduler configuration.

    Intervals are nominal periods; the scheduler may delay a poll while
    suppressed (dialog open, scrolling, mutation in flight).
    """

    default_interval: float = 2.0  # Seconds between polls for any key
    users_interval: float = 2.0
    connections_interval: float = 2.0
    messages_interval: float = 2.0
    system_stats_interval: float = 2.0
    security_events_interval: float = 5.0
    user_activity_interval: float = 5.0
    detail_interval: float = 2.0  # Scoped keys of an open connection detail view
    tick_seconds: float = 0.1  # Scheduler loop resolution
    scroll_quiet_seconds: float = 0.15  # Scroll suppression window

    def interval_for(self, key: str) -> float:
        """Return the nominal period for a resource key."""
        intervals = {
            "users": self.users_interval,
            "connections": self.connections_interval,
            "messages": self.messages_interval,
            "system-stats": self.system_stats_interval,
            "security-events": self.security_events_interval,
            "user-activity": self.user_activity_interval,
        }
        if key in intervals:
            return intervals[key]
        if key.startswith("connections/"):
            return self.detail_interval
        return self.default_interval


@dataclass
class AnalyticsConfig:
    """Client-side aggregation settings."""

    top_topics: int = 5  # Entries in the topic distribution
    trend_limit: int = 50  # Most recent numeric values kept in the trend
    # Payload keys checked for a numeric value, highest priority first
    trend_fields: list[str] = field(
        default_factory=lambda: ["Index", "value", "temperature", "data"]
    )


@dataclass
class StatusColors:
    """Colors for connection status cells.

    Default palette: Dracula theme.
    """

    connected: str = "#50fa7b"  # Dracula green
    disconnected: str = "#6272a4"  # Dracula comment - muted
    pending: str = "#f1fa8c"  # Dracula yellow - request in flight
    error: str = "#ff5555"  # Dracula red


@dataclass
class RoleColors:
    """Colors for user role cells."""

    admin: str = "#ff5555"
    user: str = "#50fa7b"
    viewer: str = "#8be9fd"


@dataclass
class BorderColors:
    """Colors for the header border by API health."""

    healthy: str = "#50fa7b"
    degraded: str = "#f1fa8c"  # Some keys failing, stale data shown
    disconnected: str = "#ff5555"  # Nothing fetched yet


@dataclass
class TUIColorsConfig:
    """All TUI color configurations grouped together."""

    status: StatusColors = field(default_factory=StatusColors)
    roles: RoleColors = field(default_factory=RoleColors)
    borders: BorderColors = field(default_factory=BorderColors)


@dataclass
class TUIConfig:
    """TUI-specific configuration."""

    colors: TUIColorsConfig = field(default_factory=TUIColorsConfig)
    sparkline_height: int = 2  # Rows used by the frequency sparkline (1-4)
    message_log_lines: int = 200  # Max lines kept in the live message log
    payload_truncate_length: int = 60  # Max payload chars per log line


@dataclass
class LoggingConfig:
    """Log file rotation."""

    max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    backup_count: int = 3  # Number of backup log files to keep
    level: str = "INFO"


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    api: ApiConfig = field(default_factory=ApiConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "mqtt-dashboard"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "mqtt-dashboard"

    @property
    def log_path(self) -> Path:
        """Log file path."""
        return self.state_dir / "dashboard.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ["api", "polling", "analytics", "tui", "logging"]:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        Environment variables MQTT_DASHBOARD_URL and MQTT_DASHBOARD_TOKEN
        override the [api] section after the file is read.
        """
        defaults = cls()
        path = path or defaults.config_path
        data: dict = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = tomlkit.load(f).unwrap()
            except tomlkit.exceptions.TOMLKitError as e:
                raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            api=_load_api_config(data.get("api", {})),
            polling=_load_polling_config(data.get("polling", {})),
            analytics=_load_analytics_config(data.get("analytics", {})),
            tui=_load_tui_config(data.get("tui", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )

        env_url = os.environ.get("MQTT_DASHBOARD_URL")
        if env_url:
            config.api.base_url = env_url
        env_token = os.environ.get("MQTT_DASHBOARD_TOKEN")
        if env_token:
            config.api.token = env_token
        return config


def _load_api_config(data: dict) -> ApiConfig:
    """Load API config from TOML data."""
    d = ApiConfig()
    base_url = data.get("base_url", d.base_url)
    if not base_url.startswith(("http://", "https://")):
        raise ValueError(f"api.base_url must be an http(s) URL, got {base_url!r}")
    timeout = data.get("timeout", d.timeout)
    if timeout <= 0:
        raise ValueError(f"api.timeout must be > 0, got {timeout}")
    messages_limit = data.get("messages_limit", d.messages_limit)
    if messages_limit < 1:
        raise ValueError(f"api.messages_limit must be >= 1, got {messages_limit}")
    return ApiConfig(
        base_url=base_url.rstrip("/"),
        timeout=timeout,
        session_cookie=data.get("session_cookie", d.session_cookie),
        token=data.get("token", d.token),
        messages_limit=messages_limit,
    )


def _load_polling_config(data: dict) -> PollingConfig:
    """Load polling config from TOML data, using dataclass defaults for missing fields."""
    d = PollingConfig()
    values = {f.name: data.get(f.name, getattr(d, f.name)) for f in fields(PollingConfig)}
    for name, value in values.items():
        if value <= 0:
            raise ValueError(f"polling.{name} must be > 0, got {value}")
    return PollingConfig(**values)


def _load_analytics_config(data: dict) -> AnalyticsConfig:
    """Load analytics config from TOML data."""
    d = AnalyticsConfig()
    top_topics = data.get("top_topics", d.top_topics)
    trend_limit = data.get("trend_limit", d.trend_limit)
    trend_fields = list(data.get("trend_fields", d.trend_fields))

    if top_topics < 1:
        raise ValueError(f"analytics.top_topics must be >= 1, got {top_topics}")
    if trend_limit < 1:
        raise ValueError(f"analytics.trend_limit must be >= 1, got {trend_limit}")
    if not trend_fields:
        raise ValueError("analytics.trend_fields must name at least one payload key")

    return AnalyticsConfig(
        top_topics=top_topics,
        trend_limit=trend_limit,
        trend_fields=trend_fields,
    )


def _load_tui_config(data: dict) -> TUIConfig:
    """Load TUI config from TOML data.

    Handles nested [tui.colors.*] sections with defaults.
    """
    tui_defaults = TUIConfig()
    colors_data = data.get("colors", {})
    status_data = colors_data.get("status", {})
    roles_data = colors_data.get("roles", {})
    borders_data = colors_data.get("borders", {})

    s = StatusColors()
    r = RoleColors()
    b = BorderColors()

    sparkline_height = data.get("sparkline_height", tui_defaults.sparkline_height)
    if not 1 <= sparkline_height <= 4:
        raise ValueError(f"tui.sparkline_height must be 1-4, got {sparkline_height}")

    return TUIConfig(
        colors=TUIColorsConfig(
            status=StatusColors(
                connected=status_data.get("connected", s.connected),
                disconnected=status_data.get("disconnected", s.disconnected),
                pending=status_data.get("pending", s.pending),
                error=status_data.get("error", s.error),
            ),
            roles=RoleColors(
                admin=roles_data.get("admin", r.admin),
                user=roles_data.get("user", r.user),
                viewer=roles_data.get("viewer", r.viewer),
            ),
            borders=BorderColors(
                healthy=borders_data.get("healthy", b.healthy),
                degraded=borders_data.get("degraded", b.degraded),
                disconnected=borders_data.get("disconnected", b.disconnected),
            ),
        ),
        sparkline_height=sparkline_height,
        message_log_lines=data.get("message_log_lines", tui_defaults.message_log_lines),
        payload_truncate_length=data.get(
            "payload_truncate_length", tui_defaults.payload_truncate_length
        ),
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load logging config from TOML data."""
    d = LoggingConfig()
    level = str(data.get("level", d.level)).upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        raise ValueError(f"Invalid logging.level: {level!r}")
    return LoggingConfig(
        max_bytes=data.get("max_bytes", d.max_bytes),
        backup_count=data.get("backup_count", d.backup_count),
        level=level,
    )
