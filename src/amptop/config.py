"""Configuration system for amptop."""

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_UNITS = {"human", "si"}
VALID_PROVIDERS = {"auto", "sysfs", "psutil"}


def resolve_home(environ: Mapping[str, str] | None = None) -> Path:
    """Return the user's home directory, falling back to the temp directory.

    Reads the environment exactly once per call; callers resolve it at startup
    and carry the result on Config.home.
    """
    env = os.environ if environ is None else environ
    home = env.get("HOME")
    if home:
        return Path(home)
    return Path(tempfile.gettempdir())


@dataclass
class DaemonConfig:
    """Background collector configuration."""

    interval: int = 60  # Seconds between battery readings (recommended 60-300)
    # Retry policy for telemetry read failures
    max_consecutive_failures: int = 5  # 1 = first failure is fatal
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0
    # Stop command
    stop_timeout: float = 5.0  # Seconds to wait for the daemon to exit
    stop_poll_interval: float = 0.1
    heartbeat_samples: int = 60  # Log heartbeat every N stored snapshots


@dataclass
class TelemetryConfig:
    """Hardware telemetry provider selection."""

    provider: str = "auto"  # "auto", "sysfs" or "psutil"
    sysfs_root: str = "/sys/class/power_supply"


@dataclass
class ViewerConfig:
    """Settings for the read-only history and info views."""

    unit: str = "human"  # "human" (Wh, °C) or "si" (J, K)
    history_limit: int = 500  # Newest snapshots loaded for the history chart
    chart_width: int = 70  # Columns available for plotted points
    chart_height: int = 10  # Rows in the text chart


@dataclass
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


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
    """Main configuration container.

    `home` is resolved once when the config is created and every path below
    derives from it, so nothing else reads the environment.
    """

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    viewer: ViewerConfig = field(default_factory=ViewerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    home: Path = field(default_factory=resolve_home)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return self.home / ".config" / "amptop"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """Per-user state directory holding the database, PID file and logs."""
        return self.home / ".local" / "share" / "amptop"

    @property
    def db_path(self) -> Path:
        """Database path."""
        return self.state_dir / "battery.db"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.state_dir / "daemon.pid"

    @property
    def stdout_path(self) -> Path:
        """Captured standard output of the detached daemon."""
        return self.state_dir / "daemon.out"

    @property
    def stderr_path(self) -> Path:
        """Captured standard error of the detached daemon."""
        return self.state_dir / "daemon.err"

    @property
    def log_path(self) -> Path:
        """Structured (JSON Lines) daemon log path."""
        return self.state_dir / "daemon.log"

    def dumps(self) -> str:
        """Render every config section as TOML."""
        doc = tomlkit.document()
        for name in ["daemon", "telemetry", "viewer", "system"]:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())
        return tomlkit.dumps(doc)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps())

    @classmethod
    def load(cls, path: Path | None = None, *, home: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree.
        """
        defaults = cls() if home is None else cls(home=home)
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            daemon=_load_daemon_config(_section(data, "daemon")),
            telemetry=_load_telemetry_config(_section(data, "telemetry")),
            viewer=_load_viewer_config(_section(data, "viewer")),
            system=_load_system_config(_section(data, "system")),
            home=defaults.home,
        )


def _section(data: Mapping, name: str) -> Mapping:
    """Return a TOML table, rejecting a scalar where a section belongs."""
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise ValueError(f"[{name}] must be a table, got {section!r}")
    return section


def _get(data: dict, name: str, default: int | float | str) -> int | float | str:
    """Return data[name] as the type of its default.

    Integers are accepted where a float is expected. Booleans never count as
    numbers. tomlkit items are unwrapped to plain Python values.
    """
    value = data.get(name, default)
    expected = type(default)
    if isinstance(value, bool):
        valid = False
    elif expected is float:
        valid = isinstance(value, (int, float))
    else:
        valid = isinstance(value, expected)
    if not valid:
        raise ValueError(f"{name} must be {expected.__name__}, got {value!r}")
    return expected(value)


def _load_daemon_config(data: dict) -> DaemonConfig:
    """Load daemon config from TOML data, using dataclass defaults for missing fields."""
    d = DaemonConfig()

    interval = _get(data, "interval", d.interval)
    max_failures = _get(data, "max_consecutive_failures", d.max_consecutive_failures)
    stop_timeout = _get(data, "stop_timeout", d.stop_timeout)

    if interval < 1:
        raise ValueError(f"interval must be >= 1, got {interval}")
    if max_failures < 1:
        raise ValueError(f"max_consecutive_failures must be >= 1, got {max_failures}")
    if stop_timeout < 0:
        raise ValueError(f"stop_timeout must be >= 0, got {stop_timeout}")

    return DaemonConfig(
        interval=interval,
        max_consecutive_failures=max_failures,
        retry_initial_delay=_get(data, "retry_initial_delay", d.retry_initial_delay),
        retry_max_delay=_get(data, "retry_max_delay", d.retry_max_delay),
        retry_multiplier=_get(data, "retry_multiplier", d.retry_multiplier),
        stop_timeout=stop_timeout,
        stop_poll_interval=_get(data, "stop_poll_interval", d.stop_poll_interval),
        heartbeat_samples=_get(data, "heartbeat_samples", d.heartbeat_samples),
    )


def _load_telemetry_config(data: dict) -> TelemetryConfig:
    """Load telemetry config from TOML data."""
    d = TelemetryConfig()
    provider = _get(data, "provider", d.provider)
    if provider not in VALID_PROVIDERS:
        raise ValueError(f"Invalid provider: {provider!r}. Must be one of {VALID_PROVIDERS}")
    return TelemetryConfig(
        provider=provider,
        sysfs_root=_get(data, "sysfs_root", d.sysfs_root),
    )


def _load_viewer_config(data: dict) -> ViewerConfig:
    """Load viewer config from TOML data."""
    d = ViewerConfig()
    unit = _get(data, "unit", d.unit)
    if unit not in VALID_UNITS:
        raise ValueError(f"Invalid unit: {unit!r}. Must be one of {VALID_UNITS}")

    chart_width = _get(data, "chart_width", d.chart_width)
    if chart_width < 1:
        raise ValueError(f"chart_width must be >= 1, got {chart_width}")

    return ViewerConfig(
        unit=unit,
        history_limit=_get(data, "history_limit", d.history_limit),
        chart_width=chart_width,
        chart_height=_get(data, "chart_height", d.chart_height),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_max_bytes=_get(data, "log_max_bytes", d.log_max_bytes),
        log_backup_count=_get(data, "log_backup_count", d.log_backup_count),
    )
