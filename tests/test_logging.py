"""Tests for console messages and log configuration."""

import json
import logging

import structlog

from procmon import logging as console
from procmon.config import Config


def test_info_goes_to_stdout(capsys):
    console.info("hello", console.Icon.OK)
    captured = capsys.readouterr()
    assert "hello" in captured.out
    assert captured.err == ""


def test_errors_go_to_stderr(capsys):
    """Warnings and errors do not mix with text output."""
    console.export_failed("disk full")
    captured = capsys.readouterr()
    assert "disk full" in captured.err
    assert captured.out == ""


def test_configure_writes_json_lines(tmp_path, monkeypatch):
    """Events are written as JSON lines to the rotating log file."""
    monkeypatch.setenv("HOME", str(tmp_path))
    config = Config()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        console.configure(config, verbose=True)
        structlog.get_logger().info("test_event", pid=7)
        for handler in root.handlers:
            handler.flush()
        lines = config.log_path.read_text().splitlines()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    event = json.loads(lines[-1])
    assert event["event"] == "test_event"
    assert event["pid"] == 7
    assert event["level"] == "info"
    assert "ts" in event
