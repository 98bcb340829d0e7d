"""Tests for unified logging system."""

import json
import logging
import logging.handlers

import pytest
import structlog

from mqtt_dashboard import logging as log
from mqtt_dashboard.config import Config


@pytest.fixture
def restore_logging():
    """Undo configure(): structlog defaults and the root logger's handlers."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def read_events(config: Config) -> list[dict]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    lines = config.log_path.read_text().splitlines()
    return [json.loads(line) for line in lines if line.strip()]


class TestConfigure:
    """Tests for configure()."""

    def test_writes_json_lines(self, restore_logging) -> None:
        """Events land in the log file as JSON with ts, level and source."""
        config = Config()
        log.configure(config, source="tui")

        structlog.get_logger().warning("poll_failed", key="users", error="boom")

        events = read_events(config)
        assert events[-1]["event"] == "poll_failed"
        assert events[-1]["key"] == "users"
        assert events[-1]["level"] == "warning"
        assert events[-1]["source"] == "tui"
        assert "ts" in events[-1]

    def test_respects_level(self, restore_logging) -> None:
        config = Config()
        config.logging.level = "WARNING"
        log.configure(config)

        logger = structlog.get_logger()
        logger.info("mutation_succeeded", mutation="publish:1")
        logger.error("mutation_failed", mutation="publish:1")

        assert [e["event"] for e in read_events(config)] == ["mutation_failed"]

    def test_rotating_handler_settings(self, restore_logging) -> None:
        config = Config()
        config.logging.max_bytes = 1234
        config.logging.backup_count = 2
        log.configure(config)

        (handler,) = logging.getLogger().handlers
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.maxBytes == 1234
        assert handler.backupCount == 2
        assert config.log_path.parent.is_dir()

    def test_httpx_request_logs_are_quiet(self, restore_logging) -> None:
        log.configure(Config())
        assert logging.getLogger("httpx").level == logging.WARNING


class TestConsoleHelpers:
    """Tests for the Rich console helpers (stderr)."""

    def test_levels_and_icons(self, capsys) -> None:
        log.info("hello")
        log.warn("careful")
        log.error("broken", log.Icon.FAIL)
        err = capsys.readouterr().err
        assert "[info]" in err
        assert "[warn]" in err
        assert "[err]" in err
        assert "✗ broken" in err

    def test_domain_helpers(self, capsys) -> None:
        log.connection_confirmed(3, True)
        log.connection_unchanged(4, False)
        log.validation_failed("QoS must be 0, 1, or 2", "qos")
        log.export_written("out.json", {"users": 2, "messages": 5})
        err = capsys.readouterr().err
        assert "Connection 3 connected" in err
        assert "Connection 4 already disconnected" in err
        assert "qos: QoS must be 0, 1, or 2" in err
        assert "2 users, 5 messages" in err

    def test_stdout_stays_clean(self, capsys) -> None:
        log.messages_cleared()
        assert capsys.readouterr().out == ""
