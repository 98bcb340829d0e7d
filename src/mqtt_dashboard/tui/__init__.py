"""Terminal dashboard."""

from mqtt_dashboard.tui.app import DashboardApp, run_tui

__all__ = ["DashboardApp", "run_tui"]
