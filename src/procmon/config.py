"""Configuration system for procmon."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from procmon.errors import ConfigError

DISPLAY_MODES = ("any", "term", "text", "none")
FORMATS = ("human", "raw")
FILTERS = ("none", "user", "active", "owned")
EXPORT_KINDS = ("none", "csv", "tsv")
LOG_LEVELS = ("debug", "info", "warning", "error")
MIN_EVERY = 0.1


@dataclass
class DisplayConfig:
    """How and how often values are displayed."""

    mode: str = "any"  # any, term, text or none
    format: str = "human"  # human or raw
    every: float = 5.0  # Seconds between ticks
    count: int | None = None  # Ticks before exit, None for no limit
    filter: str = "user"  # Initial process filter of the dashboard


@dataclass
class ExportConfig:
    """Export sink configuration."""

    kind: str = "none"  # none, csv or tsv
    dir: str = "."
    size_limit: int | None = None  # Bytes per file before rotation
    count_limit: int | None = None  # Rotated files kept per process


@dataclass
class LoggingConfig:
    """Log file configuration."""

    level: str = "info"
    max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if value is None:
            # TOML has no null
            continue
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _choice(data: dict, key: str, default: str, choices: tuple[str, ...]) -> str:
    value = data.get(key, default)
    if value not in choices:
        raise ConfigError(f"Invalid {key}: {value!r}. Must be one of {list(choices)}")
    return str(value)


def _optional_int(data: dict, key: str, default: int | None) -> int | None:
    value = data.get(key, default)
    if value is None:
        return None
    if not isinstance(value, int) or value < 0:
        raise ConfigError(f"{key} must be a non-negative integer, got {value!r}")
    return int(value)


def _load_display_config(data: dict) -> DisplayConfig:
    defaults = DisplayConfig()
    every = data.get("every", defaults.every)
    if not isinstance(every, (int, float)) or every < MIN_EVERY:
        raise ConfigError(f"every must be >= {MIN_EVERY}, got {every!r}")
    return DisplayConfig(
        mode=_choice(data, "mode", defaults.mode, DISPLAY_MODES),
        format=_choice(data, "format", defaults.format, FORMATS),
        every=float(every),
        count=_optional_int(data, "count", defaults.count),
        filter=_choice(data, "filter", defaults.filter, FILTERS),
    )


def _load_export_config(data: dict) -> ExportConfig:
    defaults = ExportConfig()
    return ExportConfig(
        kind=_choice(data, "kind", defaults.kind, EXPORT_KINDS),
        dir=str(data.get("dir", defaults.dir)),
        size_limit=_optional_int(data, "size_limit", defaults.size_limit),
        count_limit=_optional_int(data, "count_limit", defaults.count_limit),
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    defaults = LoggingConfig()
    return LoggingConfig(
        level=_choice(data, "level", defaults.level, LOG_LEVELS),
        max_bytes=data.get("max_bytes", defaults.max_bytes),
        backup_count=data.get("backup_count", defaults.backup_count),
    )


@dataclass
class Config:
    """Main configuration container."""

    display: DisplayConfig = field(default_factory=DisplayConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "procmon"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "procmon"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "procmon.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("display", "export", "logging"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        Raises:
            ConfigError: the file cannot be parsed or holds an invalid value.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ConfigError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            display=_load_display_config(data.get("display", {})),
            export=_load_export_config(data.get("export", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )
