"""Tests for daemon supervision."""

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from amptop.collector import Collector
from amptop.config import Config
from amptop.daemon import (
    DaemonAlreadyRunning,
    DaemonNotRunning,
    DaemonStopTimeout,
    DetachError,
    PidFile,
    PidFileInvalid,
    Supervisor,
)
from amptop.process import PosixProcessControl
from amptop.storage import BatteryLog
from amptop.telemetry import TelemetryError
from tests.conftest import FakeProvider, make_reading

# === Test Fixtures ===


class FakeProcessControl:
    """ProcessControl over a set of pretend-live pids."""

    def __init__(self, alive: set[int] | None = None, *, ignores_terminate: bool = False) -> None:
        self.alive = set(alive or ())
        self.ignores_terminate = ignores_terminate
        self.terminated: list[int] = []

    def send_terminate(self, pid: int) -> None:
        self.terminated.append(pid)
        if not self.ignores_terminate:
            self.alive.discard(pid)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


class FakeDetach:
    """Stands in for detach(); records the call and returns a fixed pid."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.calls: list[dict] = []

    def __call__(self, target, **kwargs) -> int:
        self.calls.append({"target": target, **kwargs})
        return self.pid


def stub_collector(interval: int) -> Collector:
    collector = MagicMock(spec=Collector)
    collector.interval = interval
    return collector


def make_supervisor(config: Config, **kwargs) -> Supervisor:
    kwargs.setdefault("collector_factory", stub_collector)
    kwargs.setdefault("process_control", FakeProcessControl())
    kwargs.setdefault("detach_fn", FakeDetach())
    kwargs.setdefault("sleep", lambda s: None)
    return Supervisor(config, **kwargs)


def snapshot_dir(path: Path) -> dict[str, bytes]:
    """Map of relative path to content for every file under path."""
    if not path.exists():
        return {}
    return {str(p.relative_to(path)): p.read_bytes() for p in path.rglob("*") if p.is_file()}


@pytest.fixture
def restore_signals():
    """Undo SIGTERM/SIGINT handlers installed by the code under test."""
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGINT)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


# === PidFile Tests ===


class TestPidFile:
    def test_read_missing_is_not_running(self, tmp_path: Path) -> None:
        with pytest.raises(DaemonNotRunning):
            PidFile(tmp_path / "daemon.pid").read()

    def test_create_then_read(self, tmp_path: Path) -> None:
        pid_file = PidFile(tmp_path / "state" / "daemon.pid")
        pid_file.create(1234)
        assert pid_file.path.read_text() == "1234"
        assert pid_file.read() == 1234

    def test_read_tolerates_trailing_newline(self, tmp_path: Path) -> None:
        path = tmp_path / "daemon.pid"
        path.write_text("77\n")
        assert PidFile(path).read() == 77

    @pytest.mark.parametrize("content", ["", "abc", "0", "-5", "12.5"])
    def test_read_rejects_invalid_content(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "daemon.pid"
        path.write_text(content)
        with pytest.raises(PidFileInvalid):
            PidFile(path).read()

    def test_invalid_is_a_value_error(self, tmp_path: Path) -> None:
        path = tmp_path / "daemon.pid"
        path.write_text("nope")
        with pytest.raises(ValueError):
            PidFile(path).read()

    def test_create_is_exclusive(self, tmp_path: Path) -> None:
        pid_file = PidFile(tmp_path / "daemon.pid")
        pid_file.create(1)
        with pytest.raises(DaemonAlreadyRunning):
            pid_file.create(2)
        assert pid_file.read() == 1

    def test_remove_missing_is_noop(self, tmp_path: Path) -> None:
        PidFile(tmp_path / "daemon.pid").remove()

    def test_remove_if_owned(self, tmp_path: Path) -> None:
        pid_file = PidFile(tmp_path / "daemon.pid")
        pid_file.create(10)
        pid_file.remove_if_owned(11)
        assert pid_file.exists()
        pid_file.remove_if_owned(10)
        assert not pid_file.exists()


# === Start Tests ===


class TestStart:
    def test_start_detaches_and_returns_pid(self, config: Config) -> None:
        detach = FakeDetach(pid=4242)
        supervisor = make_supervisor(config, detach_fn=detach)

        assert supervisor.start(60) == 4242

        (call,) = detach.calls
        assert call["pid_file"].path == config.pid_path
        assert call["work_dir"] == config.state_dir
        assert call["stdout_path"] == config.stdout_path
        assert call["stderr_path"] == config.stderr_path
        assert callable(call["on_detached"])
        assert config.state_dir.is_dir()

    def test_start_passes_interval_to_collector(self, config: Config) -> None:
        built: list[int] = []

        def factory(interval: int) -> Collector:
            built.append(interval)
            return stub_collector(interval)

        detach = FakeDetach()
        make_supervisor(config, collector_factory=factory, detach_fn=detach).start(15)

        assert built == [15]
        assert detach.calls[0]["target"] is not None

    @pytest.mark.parametrize("alive", [True, False])
    def test_start_refuses_when_pid_file_exists(self, config: Config, alive: bool) -> None:
        """An existing PID file blocks start whether or not its process lives."""
        PidFile(config.pid_path).create(999)
        control = FakeProcessControl({999} if alive else set())
        detach = FakeDetach()
        supervisor = make_supervisor(config, process_control=control, detach_fn=detach)

        with pytest.raises(DaemonAlreadyRunning) as exc_info:
            supervisor.start(60)

        assert exc_info.value.pid == 999
        assert detach.calls == []
        assert PidFile(config.pid_path).read() == 999

    def test_start_refuses_with_invalid_pid_file(self, config: Config) -> None:
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("garbage")
        detach = FakeDetach()

        with pytest.raises(DaemonAlreadyRunning):
            make_supervisor(config, detach_fn=detach).start(60)
        assert detach.calls == []

    def test_start_rejects_bad_interval(self, config: Config) -> None:
        detach = FakeDetach()
        with pytest.raises(ValueError):
            make_supervisor(config, detach_fn=detach).start(0)
        assert detach.calls == []
        assert not config.pid_path.exists()

    def test_start_fails_early_when_collector_cannot_be_built(self, config: Config) -> None:
        """Collector construction errors surface before anything detaches."""

        def broken(interval: int) -> Collector:
            raise ValueError("Unknown telemetry provider")

        detach = FakeDetach()
        with pytest.raises(ValueError, match="provider"):
            make_supervisor(config, collector_factory=broken, detach_fn=detach).start(60)
        assert detach.calls == []


# === Status Tests ===


class TestStatus:
    def test_no_pid_file(self, config: Config) -> None:
        supervisor = make_supervisor(config)
        assert supervisor.is_running() is False
        assert supervisor.status().state == "stopped"

    def test_live_process(self, config: Config) -> None:
        PidFile(config.pid_path).create(321)
        supervisor = make_supervisor(config, process_control=FakeProcessControl({321}))
        status = supervisor.status()
        assert supervisor.is_running() is True
        assert status.running
        assert status.pid == 321

    def test_stale_process(self, config: Config) -> None:
        PidFile(config.pid_path).create(321)
        supervisor = make_supervisor(config)
        assert supervisor.is_running() is False
        assert supervisor.status().state == "stale"

    def test_invalid_file(self, config: Config) -> None:
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("x")
        supervisor = make_supervisor(config)
        assert supervisor.is_running() is False
        assert supervisor.status().state == "invalid"

    def test_nonexistent_pid_with_real_process_control(self, config: Config) -> None:
        """A pid no process has is not running."""
        PidFile(config.pid_path).create(999999)
        supervisor = make_supervisor(config, process_control=PosixProcessControl())
        assert supervisor.is_running() is False

    def test_live_pid_with_real_process_control(self, config: Config) -> None:
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            PidFile(config.pid_path).create(proc.pid)
            supervisor = make_supervisor(config, process_control=PosixProcessControl())
            assert supervisor.is_running() is True
        finally:
            proc.kill()
            proc.wait()
        assert supervisor.is_running() is False


# === Stop Tests ===


class TestStop:
    def test_stop_without_pid_file_touches_nothing(self, config: Config) -> None:
        config.state_dir.mkdir(parents=True)
        (config.state_dir / "battery.db").write_bytes(b"data")
        before = snapshot_dir(config.home)
        control = FakeProcessControl()

        with pytest.raises(DaemonNotRunning):
            make_supervisor(config, process_control=control).stop()

        assert snapshot_dir(config.home) == before
        assert control.terminated == []

    def test_stop_terminates_and_removes_pid_file(self, config: Config) -> None:
        PidFile(config.pid_path).create(555)
        control = FakeProcessControl({555})

        assert make_supervisor(config, process_control=control).stop() == 555

        assert control.terminated == [555]
        assert not config.pid_path.exists()

    def test_stop_stale_pid_file_skips_signal(self, config: Config) -> None:
        PidFile(config.pid_path).create(555)
        control = FakeProcessControl()

        assert make_supervisor(config, process_control=control).stop() == 555

        assert control.terminated == []
        assert not config.pid_path.exists()

    def test_stop_invalid_pid_file_removes_it(self, config: Config) -> None:
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("not-a-pid")
        control = FakeProcessControl()

        with pytest.raises(PidFileInvalid):
            make_supervisor(config, process_control=control).stop()

        assert not config.pid_path.exists()
        assert control.terminated == []

    def test_stop_timeout_keeps_pid_file(self, config: Config) -> None:
        config.daemon.stop_timeout = 0.05
        config.daemon.stop_poll_interval = 0.01
        PidFile(config.pid_path).create(555)
        control = FakeProcessControl({555}, ignores_terminate=True)

        with pytest.raises(DaemonStopTimeout) as exc_info:
            make_supervisor(config, process_control=control, sleep=time.sleep).stop()

        assert exc_info.value.pid == 555
        assert config.pid_path.exists()

    def test_stop_then_start_again(self, config: Config) -> None:
        PidFile(config.pid_path).create(555)
        detach = FakeDetach(pid=556)
        supervisor = make_supervisor(
            config, process_control=FakeProcessControl({555}), detach_fn=detach
        )

        supervisor.stop()
        assert supervisor.start(60) == 556


# === Foreground Tests ===


class TestRunForeground:
    def test_pid_file_held_while_running(self, config: Config, restore_signals) -> None:
        seen: list[int] = []

        class RecordingCollector:
            def run(self) -> None:
                seen.append(PidFile(config.pid_path).read())
                raise SystemExit(0)

        supervisor = make_supervisor(config, collector_factory=lambda i: RecordingCollector())

        assert supervisor.run_foreground(60) == 0
        assert seen == [os.getpid()]
        assert not config.pid_path.exists()

    def test_fatal_collector_error_returns_1(self, config: Config, restore_signals) -> None:
        """Fatal collector errors become exit status 1 and release the PID file."""
        config.daemon.max_consecutive_failures = 1

        def factory(interval: int) -> Collector:
            provider = FakeProvider([TelemetryError("sensor gone")])
            return Collector(config, BatteryLog(config.db_path), provider, interval=interval)

        supervisor = make_supervisor(config, collector_factory=factory)

        with capture_logs() as logs:
            assert supervisor.run_foreground(60) == 1

        assert "daemon_crashed" in [entry["event"] for entry in logs]
        assert not config.pid_path.exists()

    def test_refuses_when_pid_file_exists(self, config: Config, restore_signals) -> None:
        PidFile(config.pid_path).create(999)
        with pytest.raises(DaemonAlreadyRunning):
            make_supervisor(config).run_foreground(60)
        assert PidFile(config.pid_path).read() == 999


# === Detached End-to-End ===


def wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.mark.skipif(os.name != "posix", reason="double fork requires POSIX")
def test_detached_daemon_lifecycle(config: Config) -> None:
    """start detaches a real collector, stop terminates it and clears the PID file."""
    config.daemon.stop_timeout = 10.0
    battery_log = BatteryLog(config.db_path)

    def factory(interval: int) -> Collector:
        return Collector(config, battery_log, FakeProvider([make_reading(64.0)]), interval=interval)

    supervisor = Supervisor(config, collector_factory=factory)
    pid = supervisor.start(1)
    try:
        assert pid != os.getpid()
        assert PidFile(config.pid_path).read() == pid
        assert supervisor.is_running()
        assert wait_for(lambda: battery_log.count() > 0)

        with pytest.raises(DaemonAlreadyRunning):
            supervisor.start(1)
    finally:
        stopped = supervisor.stop()

    assert stopped == pid
    assert not config.pid_path.exists()
    assert not supervisor.is_running()
    assert battery_log.query(limit=1)[0].percent == pytest.approx(64.0)


@pytest.mark.skipif(os.name != "posix", reason="double fork requires POSIX")
def test_detached_startup_failure_releases_pid_file(config: Config) -> None:
    """A daemon that dies before running leaves no PID file behind."""
    config.daemon.stop_timeout = 10.0

    def factory(interval: int) -> Collector:
        provider = FakeProvider([make_reading(64.0)])
        return Collector(config, BatteryLog(config.db_path), provider, interval=interval)

    # The log file cannot be opened, so logging setup fails after the PID file exists
    config.log_path.parent.mkdir(parents=True)
    config.log_path.mkdir()
    supervisor = Supervisor(config, collector_factory=factory)

    with pytest.raises(DetachError, match="IsADirectoryError"):
        supervisor.start(1)
    assert not config.pid_path.exists()

    config.log_path.rmdir()
    pid = supervisor.start(1)
    assert supervisor.stop() == pid
    assert not config.pid_path.exists()


@pytest.mark.skipif(os.name != "posix", reason="double fork requires POSIX")
def test_detached_collector_failure_exits_and_releases_pid_file(config: Config) -> None:
    """A fatal collector error ends the daemon, logs the crash and frees the PID file."""
    config.daemon.max_consecutive_failures = 1

    def factory(interval: int) -> Collector:
        provider = FakeProvider([TelemetryError("sensor gone")])
        return Collector(config, BatteryLog(config.db_path), provider, interval=interval)

    supervisor = Supervisor(config, collector_factory=factory)
    supervisor.start(1)

    assert wait_for(lambda: not config.pid_path.exists())
    assert not supervisor.is_running()

    events = [json.loads(line) for line in config.log_path.read_text().splitlines()]
    (crash,) = [e for e in events if e["event"] == "daemon_crashed"]
    assert "sensor gone" in crash["error"]
