"""Platform process control used by the supervisor.

Keeps raw signal handling out of the daemon logic: the supervisor only asks
whether a pid is alive and asks for it to terminate.
"""

import os
import signal
from typing import Protocol

import psutil


class ProcessControl(Protocol):
    """Minimal process operations the supervisor needs."""

    def send_terminate(self, pid: int) -> None:
        """Ask the process to terminate. A process that is already gone is not an error."""
        ...

    def is_alive(self, pid: int) -> bool:
        """Return True if the process exists and can be signalled."""
        ...


class PosixProcessControl:
    """ProcessControl for POSIX systems using signals."""

    def send_terminate(self, pid: int) -> None:
        if pid <= 0:
            raise ValueError(f"Refusing to signal pid {pid}")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def is_alive(self, pid: int) -> bool:
        # pid 0 and negative pids address process groups, never a single daemon
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except OSError:
            return False

        # A terminated process nobody has reaped yet still accepts signal 0
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True


def default_process_control() -> ProcessControl:
    """Return the ProcessControl for the current platform."""
    if os.name != "posix":
        raise NotImplementedError(f"Process control is not implemented for {os.name!r}")
    return PosixProcessControl()
