"""CLI commands for amptop."""

from pathlib import Path

import click


@click.group()
@click.version_option(package_name="amptop")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.config/amptop/config.toml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show structured log events on stderr")
@click.pass_context
def main(ctx, config_path: Path | None, verbose: bool) -> None:
    """Battery statistics and background history logging."""
    from amptop.config import Config
    from amptop.logging import configure_cli

    configure_cli(verbose)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = Config.load(config_path)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


# ─────────────────────────────────────────────────────────────────────────────
# daemon
# ─────────────────────────────────────────────────────────────────────────────


@main.group()
def daemon() -> None:
    """Manage the battery monitoring daemon."""
    pass


@daemon.command("start")
@click.option(
    "--interval",
    "-i",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds between battery readings (recommended: 60-300)",
)
@click.pass_context
def daemon_start(ctx, interval: int | None) -> None:
    """Start the daemon to collect battery statistics in the background."""
    from amptop import logging as alog
    from amptop.daemon import DaemonError, Supervisor

    config = ctx.obj["config"]
    interval = interval or config.daemon.interval

    try:
        pid = Supervisor(config).start(interval)
    except (DaemonError, OSError) as e:
        alog.daemon_start_failed(str(e))
        raise SystemExit(1)

    alog.daemon_started(pid, interval)


@daemon.command("stop")
@click.pass_context
def daemon_stop(ctx) -> None:
    """Stop the running daemon."""
    from amptop import logging as alog
    from amptop.daemon import DaemonError, PidFileInvalid, Supervisor

    config = ctx.obj["config"]

    try:
        pid = Supervisor(config).stop()
    except PidFileInvalid as e:
        alog.daemon_stop_failed(f"{e} (PID file removed)")
        raise SystemExit(1)
    except (DaemonError, OSError) as e:
        alog.daemon_stop_failed(str(e))
        raise SystemExit(1)

    alog.daemon_stopped(pid)


@daemon.command("status")
@click.pass_context
def daemon_status(ctx) -> None:
    """Check if daemon is currently running."""
    from amptop import logging as alog
    from amptop.daemon import Supervisor

    status = Supervisor(ctx.obj["config"]).status()

    if status.state == "running":
        alog.daemon_running(status.pid)
    elif status.state == "stale":
        alog.stale_pid_file(status.pid)
    elif status.state == "invalid":
        alog.pid_file_invalid()
    else:
        alog.daemon_not_running()


@daemon.command("run")
@click.option("--interval", "-i", type=click.IntRange(min=1), default=None)
@click.pass_context
def daemon_run(ctx, interval: int | None) -> None:
    """Run the collector in the foreground (for systemd/launchd)."""
    from amptop import logging as alog
    from amptop.daemon import DaemonError, Supervisor

    config = ctx.obj["config"]
    interval = interval or config.daemon.interval

    alog.configure(config)
    try:
        code = Supervisor(config).run_foreground(interval)
    except DaemonError as e:
        alog.daemon_start_failed(str(e))
        raise SystemExit(1)

    if code:
        alog.daemon_crashed(code, str(config.log_path))
        raise SystemExit(code)


# ─────────────────────────────────────────────────────────────────────────────
# views
# ─────────────────────────────────────────────────────────────────────────────

NO_DATA_HINT = (
    "No historical data available\n\n"
    "Start the daemon to collect data:\n"
    "  amptop daemon start --interval 60"
)


@main.command()
@click.option(
    "--limit", "-n", type=click.IntRange(min=1), default=None, help="Newest snapshots to load"
)
@click.option(
    "--hours", "-H", type=click.IntRange(min=1), default=None, help="Only the last H hours"
)
@click.option("--width", "-w", type=click.IntRange(min=1), default=None, help="Plot columns")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["chart", "table", "json", "csv"]),
    default="chart",
)
@click.pass_context
def history(ctx, limit: int | None, hours: int | None, width: int | None, fmt: str) -> None:
    """Show the logged battery history, downsampled to fit the screen."""
    import json
    import time
    from datetime import datetime

    from rich.console import Console
    from rich.table import Table

    from amptop.chart import LEGEND, render_chart
    from amptop.formatting import format_timestamp
    from amptop.projector import project
    from amptop.storage import BatteryLog, StorageError

    config = ctx.obj["config"]
    limit = limit or config.viewer.history_limit
    width = width or config.viewer.chart_width
    since = int(time.time()) - hours * 3600 if hours else None

    battery_log = BatteryLog(config.db_path)
    if not battery_log.exists:
        click.echo(NO_DATA_HINT)
        return

    try:
        snapshots = battery_log.query(limit, since=since)
    except StorageError as e:
        click.echo(f"Error loading data:\n{e}")
        return

    # Log returns newest first; plot oldest to newest
    snapshots.reverse()
    projection = project(snapshots, width)
    if projection is None:
        click.echo(NO_DATA_HINT)
        return

    if fmt == "json":
        data = [
            {
                "timestamp": s.timestamp,
                "time": datetime.fromtimestamp(s.timestamp).isoformat(),
                "percent": s.percent,
                "status": s.status.value,
                "x": x,
            }
            for s, (x, _) in zip(projection.samples, projection.points)
        ]
        click.echo(json.dumps(data, indent=2))
    elif fmt == "csv":
        click.echo("timestamp,percent,status,x")
        for s, (x, _) in zip(projection.samples, projection.points):
            click.echo(f"{s.timestamp},{s.percent:.2f},{s.status.value},{x:.4f}")
    elif fmt == "table":
        table = Table(title="Battery History")
        table.add_column("Time")
        table.add_column("Percent", justify="right")
        table.add_column("Status")
        for s in projection.samples:
            table.add_row(format_timestamp(s.timestamp), f"{s.percent:.1f}%", s.status.value)
        Console().print(table)
    else:
        console = Console(highlight=False)
        console.print(f"[bold]Battery History[/] [dim]({LEGEND})[/]")
        console.print(render_chart(projection, config.viewer.chart_height))
        console.print(
            f"[dim]{len(snapshots)} snapshots, {len(projection.samples)} plotted "
            f"(every {projection.stride}), mostly {projection.dominant.value}[/]"
        )


@main.command()
@click.option("--unit", "-u", type=click.Choice(["human", "si"]), default=None)
@click.pass_context
def info(ctx, unit: str | None) -> None:
    """Show the current battery reading."""
    from rich.console import Console
    from rich.table import Table

    from amptop.formatting import (
        MISSING,
        format_duration,
        format_energy,
        format_percent,
        format_power,
        format_temperature,
        format_voltage,
    )
    from amptop.telemetry import TelemetryError, create_provider

    config = ctx.obj["config"]
    unit = unit or config.viewer.unit

    try:
        reading = create_provider(config).read()
    except TelemetryError as e:
        click.echo(f"Error reading battery: {e}", err=True)
        raise SystemExit(1)

    if reading is None:
        click.echo("No battery found.")
        return

    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    rows = [
        ("State of charge", format_percent(reading.percent)),
        ("State", reading.state.value),
        ("Vendor", reading.vendor or MISSING),
        ("Model", reading.model or MISSING),
        ("Serial", reading.serial_number or MISSING),
        ("Technology", reading.technology or MISSING),
        ("Cycle count", str(reading.cycle_count) if reading.cycle_count else MISSING),
        ("Energy", format_energy(reading.energy_wh, unit)),
        ("Energy full", format_energy(reading.energy_full_wh, unit)),
        ("Energy full design", format_energy(reading.energy_full_design_wh, unit)),
        ("Capacity", format_percent(reading.state_of_health)),
        ("Energy rate", format_power(reading.energy_rate_w)),
        ("Voltage", format_voltage(reading.voltage_v)),
        ("Temperature", format_temperature(reading.temperature_c, unit)),
        ("Time to full", format_duration(reading.time_to_full_s)),
        ("Time to empty", format_duration(reading.time_to_empty_s)),
    ]
    for label, value in rows:
        table.add_row(label, value)
    Console().print(table)


# ─────────────────────────────────────────────────────────────────────────────
# config
# ─────────────────────────────────────────────────────────────────────────────


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Display current configuration."""
    cfg = ctx.obj["config"]

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"State dir: {cfg.state_dir}")
    click.echo()
    click.echo(cfg.dumps().rstrip())


@config.command("edit")
@click.pass_context
def config_edit(ctx) -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from amptop import logging as alog

    cfg = ctx.obj["config"]

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        alog.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
@click.pass_context
def config_reset(ctx) -> None:
    """Reset configuration to defaults."""
    from amptop.config import Config

    cfg = Config(home=ctx.obj["config"].home)
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
