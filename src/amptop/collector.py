"""Periodic battery sampler.

Runs inside the daemon process: read one telemetry snapshot, append it to the
log, sleep for the interval, repeat. The loop has no cancellation flag; it
ends only when the process is terminated or a fatal error escapes.
"""

import time
from collections.abc import Callable

import structlog

from amptop.config import Config
from amptop.storage import BatteryLog
from amptop.telemetry import BatterySnapshot, PowerReading, TelemetryError, TelemetryProvider

log = structlog.get_logger()


class CollectorError(Exception):
    """Raised when the collector gives up after repeated telemetry failures."""


class Collector:
    """Sample the telemetry provider into the battery log at a fixed interval."""

    def __init__(
        self,
        config: Config,
        battery_log: BatteryLog,
        provider: TelemetryProvider,
        *,
        interval: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.config = config
        self.battery_log = battery_log
        self.provider = provider
        self.interval = interval
        self._sleep = sleep
        self._clock = clock

        self.consecutive_failures = 0
        self.stored_count = 0
        self._last_timestamp: int | None = None

    def run(self) -> None:
        """Collect forever. Only returns by raising."""
        self.battery_log.init()
        log.info(
            "collector_started",
            interval=self.interval,
            db=str(self.battery_log.db_path),
            max_consecutive_failures=self.config.daemon.max_consecutive_failures,
        )
        while True:
            self.sample_once()
            self._sleep(self.interval)

    def sample_once(self) -> BatterySnapshot | None:
        """Take one reading and store it.

        Returns:
            The stored snapshot, or None if no battery is present

        Raises:
            CollectorError: If telemetry failed too many times in a row
            StorageError: If the snapshot could not be written
        """
        reading = self._read()
        if reading is None:
            log.debug("no_power_source")
            return None

        timestamp = int(self._clock())
        # Keep timestamps non-decreasing within a run even if the wall clock steps back
        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            timestamp = self._last_timestamp
        snapshot = BatterySnapshot.from_reading(reading, timestamp)

        self.battery_log.append(snapshot)
        self._last_timestamp = timestamp
        self.stored_count += 1

        heartbeat = self.config.daemon.heartbeat_samples
        if heartbeat > 0 and self.stored_count % heartbeat == 0:
            log.info(
                "heartbeat",
                stored=self.stored_count,
                percent=round(snapshot.percent, 1),
                status=snapshot.status.value,
            )
        return snapshot

    def _read(self) -> PowerReading | None:
        """Read from the provider, retrying with exponential backoff.

        Backoff schedule with defaults: 1s → 2s → 4s → 8s → ... capped at
        retry_max_delay. Gives up once max_consecutive_failures is reached.
        """
        cfg = self.config.daemon
        delay = cfg.retry_initial_delay

        while True:
            try:
                reading = self.provider.read()
            except TelemetryError as e:
                self.consecutive_failures += 1
                log.warning(
                    "telemetry_read_failed",
                    error=str(e),
                    consecutive=self.consecutive_failures,
                    limit=cfg.max_consecutive_failures,
                )
                if self.consecutive_failures >= cfg.max_consecutive_failures:
                    raise CollectorError(
                        f"Telemetry failed {self.consecutive_failures} times in a row: {e}"
                    ) from e
                self._sleep(delay)
                delay = min(delay * cfg.retry_multiplier, cfg.retry_max_delay)
                continue

            if self.consecutive_failures:
                log.info("telemetry_recovered", after_failures=self.consecutive_failures)
            self.consecutive_failures = 0
            return reading
