"""Shared test fixtures for amptop."""

import logging
from collections.abc import Iterable
from pathlib import Path

import pytest
import structlog

from amptop.config import Config
from amptop.storage import BatteryLog
from amptop.telemetry import BatterySnapshot, BatteryStatus, PowerReading, TelemetryError


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted at a temporary home directory."""
    return Config(home=tmp_path)


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "battery.db"


@pytest.fixture
def battery_log(tmp_db: Path) -> BatteryLog:
    """An initialized battery log."""
    log = BatteryLog(tmp_db)
    log.init()
    return log


def make_snapshot(
    percent: float = 50.0,
    timestamp: int = 1_700_000_000,
    status: BatteryStatus | str = BatteryStatus.DISCHARGING,
) -> BatterySnapshot:
    """Create a BatterySnapshot for testing."""
    return BatterySnapshot(percent=percent, timestamp=timestamp, status=BatteryStatus(status))


def make_reading(
    percent: float = 80.0,
    state: BatteryStatus = BatteryStatus.DISCHARGING,
    **kwargs,
) -> PowerReading:
    """Create a PowerReading for testing."""
    return PowerReading(charge_ratio=percent / 100.0, state=state, **kwargs)


class FakeProvider:
    """Telemetry provider replaying a script of readings.

    Items may be a PowerReading, None (no battery) or an exception instance
    to raise. The last item repeats once the script is exhausted.
    """

    def __init__(self, script: Iterable[PowerReading | None | Exception]) -> None:
        self.script = list(script)
        self.calls = 0

    def read(self) -> PowerReading | None:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def failing_reading() -> TelemetryError:
    return TelemetryError("sensor unavailable")


@pytest.fixture(autouse=True)
def reset_logging():
    """Restore structlog and stdlib logging after a test reconfigures them."""
    root = logging.getLogger()
    before = set(root.handlers)
    yield
    for handler in root.handlers[:]:
        if handler not in before:
            handler.close()
            root.removeHandler(handler)
    structlog.reset_defaults()
