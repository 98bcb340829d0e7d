"""Operator console for an MQTT IoT platform's admin API."""

__version__ = "0.1.0"
