"""Lock files for sessions and the daemon.

Two kinds of lock live in the store directory:

- the session lock (``cache.lock``), an ``flock`` held for the lifetime of a
  :class:`~tangle.session.Session`, so only one process at a time mutates
  the cache. The kernel drops it when the holder dies, so it can never go
  stale.
- the daemon lock (``daemon.lock``), a PID file naming the live daemon. A
  PID file whose process is gone is stale and is cleaned up on the next
  acquisition attempt.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import IO, Any

import orjson

from tangle.errors import DaemonAlreadyRunning, TangleError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


def is_pid_alive(pid: int) -> bool:
    """Check if a process is running (via kill signal 0)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


def read_pid_file(pid_file: Path) -> dict[str, Any] | None:
    """Read PID info from file. Returns None if missing or corrupt."""
    if not pid_file.exists():
        return None
    try:
        data = orjson.loads(pid_file.read_bytes())
    except (orjson.JSONDecodeError, OSError) as exc:
        logger.warning("Corrupt PID file %s: %s", pid_file, exc)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("pid"), int) or data["pid"] <= 0:
        logger.warning("Corrupt PID file %s: missing pid", pid_file)
        return None
    return data


class SessionLock:
    """Exclusive ``flock`` on the store, held for a session's lifetime."""

    def __init__(self, path: Path, timeout: float = 10.0) -> None:
        self.path = path
        self.timeout = timeout
        self._fd: IO[str] | None = None

    @property
    def held(self) -> bool:
        """Whether this object currently holds the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """Block until the lock is ours or the timeout expires.

        Raises:
            TangleError: If another live process holds the lock past the
                timeout.
        """
        if self._fd is not None:
            return
        fd = self.path.open("a+")
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fd.seek(0)
                    holder = fd.read().strip() or "another process"
                    fd.close()
                    msg = f"Store is locked by {holder}"
                    raise TangleError(
                        msg,
                        remedy="wait for the other tangle process to finish, "
                        "or run 'tg daemon status'",
                    ) from None
                time.sleep(_POLL_INTERVAL)
        fd.seek(0)
        fd.truncate()
        fd.write(orjson.dumps({"pid": os.getpid()}).decode())
        fd.flush()
        self._fd = fd

    def release(self) -> None:
        """Release the lock if held."""
        if self._fd is None:
            return
        try:
            self._fd.seek(0)
            self._fd.truncate()
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None


class PidLock:
    """Single-instance lock for the daemon, backed by a PID file."""

    def __init__(self, path: Path, cmd: str = "tangle-daemon") -> None:
        self.path = path
        self.cmd = cmd
        self._fd: IO[str] | None = None

    def holder(self) -> dict[str, Any] | None:
        """Info about the live holder, or None if free or stale."""
        info = read_pid_file(self.path)
        if info is None or not is_pid_alive(info["pid"]):
            return None
        return info

    def cleanup_stale(self) -> bool:
        """Remove the PID file if its process is dead.

        Returns:
            True if a stale file was removed.
        """
        if not self.path.exists():
            return False
        info = read_pid_file(self.path)
        if info is not None and is_pid_alive(info["pid"]):
            return False
        # A live holder keeps an flock on the file even if its pid was reused
        if self._locked_by_other():
            return False
        self.path.unlink(missing_ok=True)
        logger.info(
            "Cleaned up stale daemon lock %s (pid %s)",
            self.path,
            info["pid"] if info else "unknown",
        )
        return True

    def _locked_by_other(self) -> bool:
        try:
            with self.path.open("r") as handle:
                try:
                    fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    return True
                fcntl.flock(handle, fcntl.LOCK_UN)
        except FileNotFoundError:
            return False
        return False

    def acquire(self, **extra: Any) -> None:
        """Take the lock, recovering a stale one.

        Raises:
            DaemonAlreadyRunning: If a live daemon holds the lock.
        """
        self.cleanup_stale()
        fd = self.path.open("a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            info = read_pid_file(self.path)
            pid = info["pid"] if info else "unknown"
            msg = f"A daemon is already running for this store (pid {pid})"
            raise DaemonAlreadyRunning(msg) from None
        fd.seek(0)
        fd.truncate()
        fd.write(orjson.dumps({"pid": os.getpid(), "cmd": self.cmd, **extra}).decode())
        fd.flush()
        self._fd = fd

    def release(self) -> None:
        """Release the lock and remove the PID file."""
        if self._fd is None:
            return
        try:
            self.path.unlink(missing_ok=True)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None
