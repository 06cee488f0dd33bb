"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain-specific helpers for daemon lifecycle messages
4. Structlog configuration for the daemon (configure) and the CLI (configure_cli)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from amptop.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    SIGNAL = "⚡"
    RUNNING = "[green]⬤[/]"
    STOPPED = "[red]⬤[/]"
    STALE = "[yellow]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started(pid: int, interval: int) -> None:
    """Log daemon detached and collecting."""
    info(f"Daemon started [dim](PID {pid}, every {interval}s)[/]", Icon.OK)


def daemon_start_failed(reason: str) -> None:
    """Log daemon start failure."""
    error(f"Failed to start daemon: {reason}", Icon.FAIL)


def daemon_crashed(code: int, log_path: str) -> None:
    """Log collector exit after a fatal error."""
    error(f"Daemon exited with status {code} [dim](see {log_path})[/]", Icon.FAIL)


def daemon_stopped(pid: int) -> None:
    """Log daemon shutdown complete."""
    info(f"Daemon stopped [dim](PID {pid})[/]", Icon.OK)


def daemon_stop_failed(reason: str) -> None:
    """Log daemon stop failure."""
    error(f"Failed to stop daemon: {reason}", Icon.FAIL)


def daemon_running(pid: int) -> None:
    """Log daemon status: running."""
    info(f"Daemon is running [dim](PID {pid})[/]", Icon.RUNNING)


def daemon_not_running() -> None:
    """Log daemon status: not running."""
    info("Daemon is not running", Icon.STOPPED)


def stale_pid_file(pid: int) -> None:
    """Log stale PID file (process not found)."""
    warn(
        f"Daemon is not running: stale PID file names PID {pid} "
        "[dim](run 'amptop daemon stop' to clear it)[/]",
        Icon.STALE,
    )


def pid_file_invalid() -> None:
    """Log PID file invalid."""
    warn(
        "Daemon is not running: PID file invalid "
        "[dim](run 'amptop daemon stop' to clear it)[/]",
        Icon.STALE,
    )


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, *, source: str = "daemon") -> None:
    """Configure structlog with dual output: console + JSON file.

    Console output (stderr, which the detached daemon redirects to
    daemon.err) uses a human-readable format. File output uses JSON Lines
    format for machine parsing. Both use local time to match sample
    timestamps.

    Args:
        config: Application config with paths
        source: Value for the "source" field in the JSON file
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    # Set up rotating file handler for JSON output
    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                _add_source(source),
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(console_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_cli(verbose: bool = False) -> None:
    """Configure structlog for short-lived CLI invocations.

    Structured events go to stderr so they never mix with command output.
    Loggers are not cached: a process that later detaches into the daemon
    reconfigures structlog and its module-level loggers must pick that up.
    """
    level = logging.INFO if verbose else logging.WARNING
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )
