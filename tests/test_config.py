"""Tests for the configuration file."""

import pytest

from procmon.config import Config, DisplayConfig, ExportConfig, LoggingConfig
from procmon.errors import ConfigError


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


def test_defaults(home):
    """A missing file gives the defaults."""
    config = Config.load()
    assert config == Config()
    assert config.display.every == 5.0
    assert config.display.count is None
    assert config.export.kind == "none"


def test_paths_under_home(home):
    """Config and logs live in the XDG style directories."""
    config = Config()
    assert config.config_path == home / ".config" / "procmon" / "config.toml"
    assert config.log_path == home / ".local" / "state" / "procmon" / "procmon.log"


def test_save_and_load(tmp_path):
    """Saved settings are loaded back unchanged."""
    path = tmp_path / "config.toml"
    config = Config(
        display=DisplayConfig(mode="text", format="raw", every=0.5, count=3, filter="active"),
        export=ExportConfig(kind="tsv", dir="/var/tmp/procmon", size_limit=4096, count_limit=2),
        logging=LoggingConfig(level="debug"),
    )
    config.save(path)
    assert Config.load(path) == config


def test_none_values_are_omitted(tmp_path):
    """TOML has no null: unset limits are left out of the file."""
    path = tmp_path / "config.toml"
    Config().save(path)
    keys = [line.split("=")[0].strip() for line in path.read_text().splitlines() if "=" in line]
    assert "count" not in keys
    assert "size_limit" not in keys
    assert "backup_count" in keys
    assert Config.load(path) == Config()


def test_partial_file(tmp_path):
    """Missing keys take their default."""
    path = tmp_path / "config.toml"
    path.write_text('[display]\nevery = 2\n\n[export]\nkind = "csv"\n')
    config = Config.load(path)
    assert config.display.every == 2.0
    assert config.display.mode == "any"
    assert config.export.kind == "csv"
    assert config.export.dir == "."


@pytest.mark.parametrize(
    "content",
    [
        '[display]\nmode = "gui"\n',
        "[display]\nevery = 0.01\n",
        '[display]\nevery = "often"\n',
        "[display]\ncount = -1\n",
        '[export]\nkind = "json"\n',
        "[export]\nsize_limit = 1.5\n",
        '[logging]\nlevel = "trace"\n',
    ],
)
def test_invalid_values(tmp_path, content):
    """Invalid values are reported, not silently replaced."""
    path = tmp_path / "config.toml"
    path.write_text(content)
    with pytest.raises(ConfigError):
        Config.load(path)


def test_unparsable_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[display\nevery = \n")
    with pytest.raises(ConfigError, match="Failed to parse"):
        Config.load(path)
