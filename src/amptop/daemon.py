"""Background daemon supervision for amptop.

The supervisor owns the PID file and the detached collector process:

- start: refuse if a PID file exists, otherwise detach and run the collector
- status / is_running: read the PID file and check the recorded process
- stop: terminate the recorded process, wait for it to exit, remove the PID file

Existence of the PID file alone blocks start, even when the recorded process
is gone. A stale file is cleared with stop, which skips signalling dead
processes.
"""

import os
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from amptop import logging as alog
from amptop.collector import Collector
from amptop.config import Config
from amptop.process import ProcessControl, default_process_control
from amptop.storage import BatteryLog
from amptop.telemetry import create_provider

log = structlog.get_logger()


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class DaemonError(Exception):
    """Base class for supervisor errors."""


class DaemonStateConflict(DaemonError):
    """The requested transition does not fit the current daemon state."""


class DaemonAlreadyRunning(DaemonStateConflict):
    def __init__(self, pid: int | None = None) -> None:
        self.pid = pid
        detail = f" (PID {pid})" if pid else ""
        super().__init__(f"Daemon is already running{detail}")


class DaemonNotRunning(DaemonStateConflict):
    def __init__(self) -> None:
        super().__init__("Daemon is not running")


class PidFileInvalid(DaemonError, ValueError):
    """PID file content is not a positive integer."""


class DetachError(DaemonError):
    """The background process could not be started."""


class DaemonStopTimeout(DaemonError):
    def __init__(self, pid: int, timeout: float) -> None:
        self.pid = pid
        self.timeout = timeout
        super().__init__(f"Daemon (PID {pid}) did not exit within {timeout:g}s")


# ─────────────────────────────────────────────────────────────────────────────
# PID file
# ─────────────────────────────────────────────────────────────────────────────


class PidFile:
    """A single positive integer pid stored as plain text."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> int:
        """Return the recorded pid.

        Raises:
            DaemonNotRunning: If the file does not exist
            PidFileInvalid: If the content is not a positive integer
        """
        try:
            text = self.path.read_text().strip()
        except FileNotFoundError:
            raise DaemonNotRunning() from None
        try:
            pid = int(text)
        except ValueError:
            raise PidFileInvalid(f"Invalid PID: {text!r}") from None
        if pid <= 0:
            raise PidFileInvalid(f"Invalid PID: {pid}")
        return pid

    def create(self, pid: int) -> None:
        """Write pid, failing if the file already exists.

        Raises:
            DaemonAlreadyRunning: If another process created the file first
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            raise DaemonAlreadyRunning() from None
        with os.fdopen(fd, "w") as f:
            f.write(str(pid))
        log.debug("pid_file_written", path=str(self.path), pid=pid)

    def remove(self) -> None:
        """Remove the file if present."""
        try:
            self.path.unlink()
            log.debug("pid_file_removed", path=str(self.path))
        except FileNotFoundError:
            pass

    def remove_if_owned(self, pid: int) -> None:
        """Remove the file only if it still records pid."""
        try:
            if self.read() == pid:
                self.remove()
        except (DaemonNotRunning, PidFileInvalid):
            pass


# ─────────────────────────────────────────────────────────────────────────────
# Detaching
# ─────────────────────────────────────────────────────────────────────────────


def _raise_system_exit(signum: int, frame: object) -> None:
    alog.signal_received(signal.Signals(signum).name)
    log.info("signal_received", signal=signal.Signals(signum).name)
    raise SystemExit(0)


def _redirect_streams(stdout_path: Path, stderr_path: Path) -> None:
    """Point fds 0/1/2 at /dev/null and the capture files."""
    devnull = os.open(os.devnull, os.O_RDONLY)
    out = os.open(stdout_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    err = os.open(stderr_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    for fd, target in ((devnull, 0), (out, 1), (err, 2)):
        os.dup2(fd, target)
        os.close(fd)
    sys.stdin = open(0, closefd=False)
    sys.stdout = open(1, "w", buffering=1, closefd=False)
    sys.stderr = open(2, "w", buffering=1, closefd=False)


def detach(
    target: Callable[[], None],
    *,
    pid_file: PidFile,
    work_dir: Path,
    stdout_path: Path,
    stderr_path: Path,
    on_detached: Callable[[], None] | None = None,
) -> int:
    """Run target in a new background session and return its pid.

    Classic double fork: the first child starts a new session so the
    grandchild has no controlling terminal, then exits. The grandchild
    writes the PID file and reports back over a pipe before entering
    target. The grandchild never returns to the caller.

    Raises:
        DetachError: If the background process failed before running target
        DaemonAlreadyRunning: If another start created the PID file first
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    sys.stdout.flush()
    sys.stderr.flush()

    read_fd, write_fd = os.pipe()
    try:
        child = os.fork()
    except OSError as e:
        os.close(read_fd)
        os.close(write_fd)
        raise DetachError(f"fork failed: {e}") from e

    if child > 0:
        os.close(write_fd)
        os.waitpid(child, 0)
        with os.fdopen(read_fd, "rb") as pipe:
            report = pipe.read().decode(errors="replace")
        status, _, detail = report.partition(":")
        if status == "ok":
            return int(detail)
        if status == "running":
            raise DaemonAlreadyRunning()
        raise DetachError(detail or "background process exited during startup")

    # First child
    pid_created = False
    try:
        os.close(read_fd)
        os.setsid()
        if os.fork() > 0:
            os._exit(0)

        # Grandchild
        os.chdir(work_dir)
        os.umask(0o022)
        _redirect_streams(stdout_path, stderr_path)
        pid = os.getpid()
        pid_file.create(pid)
        pid_created = True
        signal.signal(signal.SIGTERM, _raise_system_exit)
        signal.signal(signal.SIGINT, _raise_system_exit)
        if on_detached is not None:
            on_detached()
        os.write(write_fd, f"ok:{pid}".encode())
        os.close(write_fd)
    except DaemonAlreadyRunning:
        os.write(write_fd, b"running:")
        os._exit(1)
    except BaseException as e:
        try:
            # A failed startup must not leave a record that blocks the next start
            if pid_created:
                pid_file.remove_if_owned(os.getpid())
            os.write(write_fd, f"error:{type(e).__name__}: {e}".encode())
        finally:
            os._exit(1)

    code = _run_target(target)
    pid_file.remove_if_owned(os.getpid())
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


def _run_target(target: Callable[[], None]) -> int:
    """Run target, returning a process exit status instead of raising."""
    try:
        target()
    except SystemExit as e:
        log.info("daemon_exiting", code=e.code)
        return e.code if isinstance(e.code, int) else 0
    except BaseException as e:
        log.exception("daemon_crashed", error=str(e))
        return 1
    return 0


# ─────────────────────────────────────────────────────────────────────────────
# Supervisor
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DaemonStatus:
    """Result of inspecting the PID file."""

    state: str  # "running", "stopped", "stale" or "invalid"
    pid: int | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"


CollectorFactory = Callable[[int], Collector]


class Supervisor:
    """Start, stop and inspect the background collector."""

    def __init__(
        self,
        config: Config,
        *,
        collector_factory: CollectorFactory | None = None,
        process_control: ProcessControl | None = None,
        detach_fn: Callable[..., int] = detach,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.pid_file = PidFile(config.pid_path)
        self._collector_factory = collector_factory or self._default_collector
        self._process = process_control or default_process_control()
        self._detach = detach_fn
        self._sleep = sleep

    def _default_collector(self, interval: int) -> Collector:
        return Collector(
            self.config,
            BatteryLog(self.config.db_path),
            create_provider(self.config),
            interval=interval,
        )

    def start(self, interval: int) -> int:
        """Detach a collector sampling every interval seconds.

        Returns the daemon pid in the calling process. The detached process
        runs the collector until it is terminated.

        Raises:
            ValueError: If interval < 1
            DaemonAlreadyRunning: If a PID file exists (alive or not)
            DetachError: If the background process failed to start
        """
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")
        collector = self._collector_factory(interval)

        if self.pid_file.exists():
            try:
                pid = self.pid_file.read()
            except (DaemonNotRunning, PidFileInvalid):
                pid = None
            log.info("daemon_already_running", pid=pid)
            raise DaemonAlreadyRunning(pid)

        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        pid = self._detach(
            collector.run,
            pid_file=self.pid_file,
            work_dir=self.config.state_dir,
            stdout_path=self.config.stdout_path,
            stderr_path=self.config.stderr_path,
            on_detached=lambda: alog.configure(self.config),
        )
        log.info("daemon_started", pid=pid, interval=interval)
        return pid

    def run_foreground(self, interval: int) -> int:
        """Run the collector in this process under the same PID file rules.

        For service managers that supervise the process themselves. Fatal
        collector errors are logged as daemon_crashed like in the detached
        process. Returns the process exit status.
        """
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")
        collector = self._collector_factory(interval)
        pid = os.getpid()
        self.pid_file.create(pid)
        signal.signal(signal.SIGTERM, _raise_system_exit)
        signal.signal(signal.SIGINT, _raise_system_exit)
        try:
            log.info("daemon_started", pid=pid, interval=interval, foreground=True)
            return _run_target(collector.run)
        finally:
            self.pid_file.remove_if_owned(pid)

    def is_running(self) -> bool:
        """Return True if the PID file names a live process."""
        try:
            pid = self.pid_file.read()
        except (DaemonNotRunning, PidFileInvalid):
            return False
        return self._process.is_alive(pid)

    def status(self) -> DaemonStatus:
        """Classify the PID file as running, stopped, stale or invalid."""
        try:
            pid = self.pid_file.read()
        except DaemonNotRunning:
            return DaemonStatus("stopped")
        except PidFileInvalid:
            return DaemonStatus("invalid")
        if self._process.is_alive(pid):
            return DaemonStatus("running", pid)
        return DaemonStatus("stale", pid)

    def stop(self) -> int:
        """Terminate the daemon and remove the PID file. Returns the stopped pid.

        Raises:
            DaemonNotRunning: If there is no PID file (nothing is touched)
            PidFileInvalid: If the PID file is unreadable (the file is removed)
            DaemonStopTimeout: If the process outlives stop_timeout (file kept)
        """
        try:
            pid = self.pid_file.read()
        except PidFileInvalid:
            log.warning("pid_file_invalid", path=str(self.pid_file.path))
            self.pid_file.remove()
            raise

        if self._process.is_alive(pid):
            log.info("daemon_stopping", pid=pid)
            self._process.send_terminate(pid)
            if not self._wait_for_exit(pid):
                raise DaemonStopTimeout(pid, self.config.daemon.stop_timeout)
        else:
            log.warning("pid_file_stale", pid=pid)

        self.pid_file.remove()
        log.info("daemon_stopped", pid=pid)
        return pid

    def _wait_for_exit(self, pid: int) -> bool:
        """Poll until pid exits or stop_timeout passes. Returns True if it exited."""
        cfg = self.config.daemon
        deadline = time.monotonic() + cfg.stop_timeout
        while self._process.is_alive(pid):
            if time.monotonic() >= deadline:
                return False
            self._sleep(cfg.stop_poll_interval)
        return True
