"""Battery telemetry: reading and snapshot schema plus hardware providers.

Providers implement a single method, `read()`, returning a PowerReading or
None when the host has no battery. Any failure to talk to the hardware is
raised as TelemetryError so the collector can apply its retry policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import psutil
import structlog

if TYPE_CHECKING:
    from amptop.config import Config

log = structlog.get_logger()


class TelemetryError(Exception):
    """Raised when the hardware telemetry source cannot be read."""


class BatteryStatus(str, Enum):
    """Charging state of the power source."""

    CHARGING = "charging"
    DISCHARGING = "discharging"
    FULL = "full"
    EMPTY = "empty"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> BatteryStatus:
        return cls.UNKNOWN


@dataclass(frozen=True)
class PowerReading:
    """One instantaneous reading from the telemetry provider."""

    charge_ratio: float
    state: BatteryStatus
    vendor: str | None = None
    model: str | None = None
    serial_number: str | None = None
    technology: str | None = None
    energy_wh: float | None = None
    energy_full_wh: float | None = None
    energy_full_design_wh: float | None = None
    energy_rate_w: float | None = None
    voltage_v: float | None = None
    temperature_c: float | None = None
    time_to_full_s: float | None = None
    time_to_empty_s: float | None = None
    cycle_count: int | None = None

    @property
    def percent(self) -> float:
        """State of charge as a percentage."""
        return self.charge_ratio * 100.0

    @property
    def state_of_health(self) -> float | None:
        """Full capacity as a percentage of design capacity, if known."""
        if not self.energy_full_wh or not self.energy_full_design_wh:
            return None
        return self.energy_full_wh / self.energy_full_design_wh * 100.0


@dataclass(frozen=True)
class BatterySnapshot:
    """Single timestamped battery reading as stored in the log.

    This is THE canonical stored schema. Immutable once created.
    """

    percent: float
    timestamp: int
    status: BatteryStatus

    def __post_init__(self) -> None:
        if not 0.0 <= self.percent <= 100.0:
            raise ValueError(f"percent must be within [0, 100], got {self.percent}")

    @classmethod
    def from_reading(cls, reading: PowerReading, timestamp: int) -> BatterySnapshot:
        """Build a snapshot from a provider reading, clamping percent into range."""
        percent = min(100.0, max(0.0, reading.percent))
        return cls(percent=percent, timestamp=timestamp, status=reading.state)


class TelemetryProvider(Protocol):
    """Contract for hardware telemetry sources."""

    def read(self) -> PowerReading | None:
        """Return the current reading, or None if no battery is present."""
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Linux sysfs provider
# ─────────────────────────────────────────────────────────────────────────────

_SYSFS_STATUS = {
    "charging": BatteryStatus.CHARGING,
    "discharging": BatteryStatus.DISCHARGING,
    "full": BatteryStatus.FULL,
    # Reported when plugged in and held at a charge threshold
    "not charging": BatteryStatus.FULL,
    "empty": BatteryStatus.EMPTY,
}


class SysfsProvider:
    """Read the first battery under /sys/class/power_supply.

    Values in sysfs are integers in micro-units (µWh, µW, µV, µAh, µA) and
    tenths of a degree Celsius for temperature.
    """

    def __init__(self, root: Path = Path("/sys/class/power_supply")) -> None:
        self.root = root

    def find_battery(self) -> Path | None:
        """Return the directory of the first present battery, if any."""
        if not self.root.is_dir():
            return None
        for device in sorted(self.root.iterdir()):
            kind = self._read_text(device, "type")
            if kind is None:
                if not device.name.startswith("BAT"):
                    continue
            elif kind.lower() != "battery":
                continue
            if self._read_text(device, "present") == "0":
                continue
            return device
        return None

    def read(self) -> PowerReading | None:
        device = self.find_battery()
        if device is None:
            return None

        energy = self._energy(device, "energy_now", "charge_now")
        energy_full = self._energy(device, "energy_full", "charge_full")
        energy_design = self._energy(device, "energy_full_design", "charge_full_design")

        capacity = self._read_int(device, "capacity")
        if capacity is not None:
            ratio = capacity / 100.0
        elif energy is not None and energy_full:
            ratio = energy / energy_full
        else:
            raise TelemetryError(f"{device.name}: no capacity or energy attributes")

        status_text = self._read_text(device, "status") or "unknown"
        state = _SYSFS_STATUS.get(status_text.lower(), BatteryStatus.UNKNOWN)

        rate = self._micro(device, "power_now")
        if rate is None:
            current = self._read_int(device, "current_now")
            voltage_uv = self._read_int(device, "voltage_now")
            if current is not None and voltage_uv is not None:
                rate = abs(current) * voltage_uv / 1e12

        temperature = self._read_int(device, "temp")
        cycle_count = self._read_int(device, "cycle_count")

        return PowerReading(
            charge_ratio=ratio,
            state=state,
            vendor=self._read_text(device, "manufacturer") or None,
            model=self._read_text(device, "model_name") or None,
            serial_number=self._read_text(device, "serial_number") or None,
            technology=self._read_text(device, "technology") or None,
            energy_wh=energy,
            energy_full_wh=energy_full,
            energy_full_design_wh=energy_design,
            energy_rate_w=rate,
            voltage_v=self._micro(device, "voltage_now"),
            temperature_c=temperature / 10.0 if temperature is not None else None,
            time_to_full_s=_time_to_full(state, energy, energy_full, rate),
            time_to_empty_s=_time_to_empty(state, energy, rate),
            cycle_count=cycle_count or None,
        )

    def _energy(self, device: Path, energy_attr: str, charge_attr: str) -> float | None:
        """Energy in Wh, converting from charge (µAh) via design voltage if needed."""
        energy = self._micro(device, energy_attr)
        if energy is not None:
            return energy
        charge = self._micro(device, charge_attr)
        voltage = self._micro(device, "voltage_min_design") or self._micro(device, "voltage_now")
        if charge is None or voltage is None:
            return None
        return charge * voltage

    def _micro(self, device: Path, name: str) -> float | None:
        value = self._read_int(device, name)
        return value / 1e6 if value is not None else None

    def _read_int(self, device: Path, name: str) -> int | None:
        text = self._read_text(device, name)
        if not text:
            return None
        try:
            return int(text)
        except ValueError as e:
            raise TelemetryError(f"{device.name}/{name}: not an integer: {text!r}") from e

    @staticmethod
    def _read_text(device: Path, name: str) -> str | None:
        path = device / name
        try:
            return path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            # Some attributes (e.g. on a resuming device) fail with EIO/ENODEV
            raise TelemetryError(f"Failed to read {path}: {e}") from e


def _time_to_full(
    state: BatteryStatus, energy: float | None, energy_full: float | None, rate: float | None
) -> float | None:
    if state != BatteryStatus.CHARGING or energy is None or not energy_full or not rate:
        return None
    return max(0.0, energy_full - energy) / rate * 3600.0


def _time_to_empty(state: BatteryStatus, energy: float | None, rate: float | None) -> float | None:
    if state != BatteryStatus.DISCHARGING or energy is None or not rate:
        return None
    return energy / rate * 3600.0


# ─────────────────────────────────────────────────────────────────────────────
# psutil provider
# ─────────────────────────────────────────────────────────────────────────────


class PsutilProvider:
    """Read the battery via psutil.sensors_battery() (Linux, macOS, Windows, BSD)."""

    def read(self) -> PowerReading | None:
        sensors_battery = getattr(psutil, "sensors_battery", None)
        if sensors_battery is None:
            return None
        try:
            battery = sensors_battery()
        except (OSError, RuntimeError) as e:
            raise TelemetryError(f"psutil.sensors_battery() failed: {e}") from e
        if battery is None:
            return None

        percent = float(battery.percent)
        plugged = battery.power_plugged
        if plugged is None:
            state = BatteryStatus.UNKNOWN
        elif plugged:
            state = BatteryStatus.FULL if percent >= 100.0 else BatteryStatus.CHARGING
        elif percent <= 0.0:
            state = BatteryStatus.EMPTY
        else:
            state = BatteryStatus.DISCHARGING

        secsleft = battery.secsleft
        time_to_empty = None
        if state == BatteryStatus.DISCHARGING and secsleft not in (
            psutil.POWER_TIME_UNLIMITED,
            psutil.POWER_TIME_UNKNOWN,
        ):
            time_to_empty = float(secsleft)

        return PowerReading(
            charge_ratio=percent / 100.0,
            state=state,
            time_to_empty_s=time_to_empty,
        )


def create_provider(config: Config) -> TelemetryProvider:
    """Build the telemetry provider selected in config."""
    choice = config.telemetry.provider
    sysfs_root = Path(config.telemetry.sysfs_root)

    if choice == "sysfs" or (choice == "auto" and sysfs_root.is_dir()):
        log.debug("telemetry_provider", provider="sysfs", root=str(sysfs_root))
        return SysfsProvider(sysfs_root)
    if choice in ("psutil", "auto"):
        log.debug("telemetry_provider", provider="psutil")
        return PsutilProvider()
    raise ValueError(f"Unknown telemetry provider: {choice!r}")
