"""Tests for the procmon command line."""

import os

import pytest
from click.testing import CliRunner

from procmon.cli import main
from procmon.config import Config


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return CliRunner()


def own_pid() -> str:
    return str(os.getpid())


def test_list_metrics(runner):
    """Every catalog metric is listed."""
    result = runner.invoke(main, ["--list-metrics"])
    assert result.exit_code == 0
    assert "mem:rss" in result.output
    assert "io:write:storage" in result.output


def test_invalid_selector(runner):
    """Selector errors are usage errors naming the token."""
    result = runner.invoke(main, ["mem:rss+avg", "-d", "text", "-p", own_pid()])
    assert result.exit_code == 2
    assert "+avg" in result.output


def test_unknown_metric(runner):
    result = runner.invoke(main, ["mem:swap", "-d", "text", "-p", own_pid()])
    assert result.exit_code == 2
    assert "mem:swap" in result.output


def test_unsupported_ratio(runner):
    result = runner.invoke(main, ["mem:rss+ratio", "-d", "text", "-p", own_pid()])
    assert result.exit_code == 2


def test_text_mode_requires_targets(runner):
    """Flat text output needs an explicit process."""
    result = runner.invoke(main, ["-d", "text"])
    assert result.exit_code == 2
    assert "requires" in result.output


def test_missing_pid(runner):
    """A pid that does not exist is rejected before sampling."""
    result = runner.invoke(main, ["-d", "text", "-p", "-1"])
    assert result.exit_code == 2
    assert "no process" in result.output


def test_every_minimum(runner):
    result = runner.invoke(main, ["-d", "text", "-p", own_pid(), "-e", "0.01"])
    assert result.exit_code == 2


def test_bad_config_file(runner, tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text('[display]\nmode = "gui"\n')
    result = runner.invoke(main, ["--config", str(path), "-d", "text", "-p", own_pid()])
    assert result.exit_code == 2


def test_text_output(runner):
    """One table per tick, titled with the process name and pid."""
    result = runner.invoke(
        main, ["mem:rss", "fd:all", "-d", "text", "-p", own_pid(), "-c", "2", "-e", "0.1"]
    )
    assert result.exit_code == 0, result.output
    assert f"({own_pid()})" in result.output
    assert "mem:rss" in result.output
    assert "fd:all" in result.output


def test_export_without_display(runner, tmp_path):
    """With display none, values are only exported."""
    out = tmp_path / "out"
    result = runner.invoke(
        main,
        [
            "mem:rss",
            "time:cpu-raw+ratio",
            "-d", "none",
            "-x", "csv",
            "--export-dir", str(out),
            "-p", own_pid(),
            "-c", "2",
            "-e", "0.1",
        ],
    )
    assert result.exit_code == 0, result.output
    (path,) = out.glob(f"*_{own_pid()}.csv")
    lines = path.read_text().splitlines()
    assert lines[0] == "time,mem:rss"
    assert len(lines) == 3


def test_log_file_is_written(runner, tmp_path):
    """Structured events go to the log file under the state directory."""
    result = runner.invoke(main, ["mem:rss", "-d", "none", "-p", own_pid(), "-c", "1", "-e", "0.1"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / ".local" / "state" / "procmon" / "procmon.log").exists()


def test_name_without_match(runner):
    """A name pattern matching nothing yet is a warning, not an error."""
    result = runner.invoke(
        main, ["mem:rss", "-d", "none", "-n", "no-such-process-*", "-c", "1", "-e", "0.1"]
    )
    assert result.exit_code == 0, result.output
    assert "No process matches" in result.output


def test_write_config(runner, tmp_path):
    """Options given with --write-config become the saved defaults."""
    result = runner.invoke(main, ["--write-config", "-e", "2", "-F", "active", "-x", "tsv"])
    assert result.exit_code == 0, result.output
    assert "Wrote configuration" in result.output

    config = Config.load()
    assert config.config_path == tmp_path / ".config" / "procmon" / "config.toml"
    assert config.config_path.exists()
    assert config.display.every == 2.0
    assert config.display.filter == "active"
    assert config.export.kind == "tsv"
    assert config.export.size_limit is None


def test_write_config_to_given_path(runner, tmp_path):
    path = tmp_path / "procmon.toml"
    result = runner.invoke(main, ["--config", str(path), "--write-config", "-d", "text"])
    assert result.exit_code == 0, result.output
    assert Config.load(path).display.mode == "text"
