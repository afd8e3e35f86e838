"""Background daemon that keeps one session open for a store.

The daemon holds the store's :class:`~tangle.session.Session` (and so its
lock) for its whole lifetime, watches the logs with watchdog, and serves
requests from CLI processes over a unix socket in ``.tangle/daemon.sock``.

Wire format: one JSON object per line. A request is
``{"op": <name>, "args": {...}, "writer": <name|null>}``; the reply is
``{"ok": true, "result": ...}`` or ``{"ok": false, "error": {...}}``.
Requests are handled one at a time.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import socketserver
import subprocess
import sys
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from tangle import errors
from tangle.config import get_value, load_config
from tangle.constants import (
    DAEMON_LOCK_FILENAME,
    ISSUES_FILENAME,
    SOCKET_FILENAME,
    TOMBSTONES_FILENAME,
)
from tangle.deps import BlockedIssue
from tangle.locks import PidLock, read_pid_file
from tangle.log import setup_logging
from tangle.models import (
    Dependency,
    Issue,
    Tombstone,
    dependency_to_dict,
    dict_to_dependency,
    dict_to_issue,
    dict_to_tombstone,
    issue_to_dict,
    tombstone_to_dict,
)
from tangle.session import IssueView, Session

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_WATCHED = (ISSUES_FILENAME, TOMBSTONES_FILENAME)
_CONNECT_TIMEOUT = 30.0


def socket_path(tangle_dir: Path) -> Path:
    """Path of the daemon socket for a store."""
    return Path(tangle_dir) / SOCKET_FILENAME


def lock_path(tangle_dir: Path) -> Path:
    """Path of the daemon PID lock for a store."""
    return Path(tangle_dir) / DAEMON_LOCK_FILENAME


def _issue(issue: Issue) -> dict[str, Any]:
    return issue_to_dict(issue, include_derived=True)


# op name -> handler returning a JSON-ready result
def _ops() -> dict[str, Callable[[Session, dict[str, Any]], Any]]:
    return {
        "ping": lambda s, a: {"pid": os.getpid(), "tangle_dir": str(s.tangle_dir)},
        "create": lambda s, a: _issue(s.create(**a)),
        "update": lambda s, a: _issue(s.update(a["issue_id"], a["updates"])),
        "close_issue": lambda s, a: _issue(s.close_issue(a["issue_id"], a.get("reason"))),
        "reopen": lambda s, a: _issue(s.reopen(a["issue_id"])),
        "delete": lambda s, a: tombstone_to_dict(s.delete(a["issue_id"], a.get("reason"))),
        "add_dependency": lambda s, a: _dependency_result(
            *s.add_dependency(a["from_id"], a["to_id"], a["dep_type"]),
        ),
        "remove_dependency": lambda s, a: s.remove_dependency(
            a["from_id"],
            a["to_id"],
            a["dep_type"],
        ),
        "get": lambda s, a: _issue(s.get(a["issue_id"])),
        "list": lambda s, a: [_issue(i) for i in s.list(a.get("filters"))],
        "ready": lambda s, a: [_issue(i) for i in s.ready(a.get("filters"))],
        "blocked": lambda s, a: [asdict(b) for b in s.blocked()],
        "cycles": lambda s, a: s.cycles(),
        "show": lambda s, a: s.show(a["issue_id"]).to_dict(),
        "tree": lambda s, a: s.tree(a["issue_id"]),
        "sync": lambda s, a: s.sync(force=a.get("force", False)),
    }


def _dependency_result(dep: Dependency, warnings: list[str]) -> dict[str, Any]:
    return {"dependency": dependency_to_dict(dep), "warnings": warnings}


class _LogWatcher(FileSystemEventHandler):
    """Re-imports the cache when a log changes on disk."""

    def __init__(self, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.on_change = on_change

    def _relevant(self, path: str | bytes) -> bool:
        name = os.path.basename(os.fsdecode(path))
        return name in _WATCHED

    def on_modified(self, event: DirModifiedEvent | FileModifiedEvent) -> None:
        if self._relevant(event.src_path):
            self.on_change()

    def on_created(self, event: DirCreatedEvent | FileCreatedEvent) -> None:
        if self._relevant(event.src_path):
            self.on_change()

    def on_moved(self, event: DirMovedEvent | FileMovedEvent) -> None:
        """Atomic rewrites (compaction, merges) arrive as a move."""
        if self._relevant(event.dest_path):
            self.on_change()


class _RequestHandler(socketserver.StreamRequestHandler):
    server: DaemonServer

    def handle(self) -> None:
        line = self.rfile.readline()
        if not line:
            return
        reply = self.server.dispatch(line)
        self.wfile.write(orjson.dumps(reply) + b"\n")


class DaemonServer(socketserver.UnixStreamServer):
    """Unix socket server that answers requests against one session."""

    def __init__(self, session: Session, path: Path) -> None:
        self.session = session
        self.path = path
        self.stop_requested = threading.Event()
        self._lock = threading.Lock()
        self._ops = _ops()
        path.unlink(missing_ok=True)
        super().__init__(str(path), _RequestHandler)

    def dispatch(self, line: bytes) -> dict[str, Any]:
        """Run one request line and build the reply."""
        try:
            request = orjson.loads(line)
            op = request["op"]
            args = request.get("args") or {}
        except (orjson.JSONDecodeError, KeyError, TypeError):
            return _error_reply("ValueError", "Malformed request")

        if op == "shutdown":
            self.stop_requested.set()
            return {"ok": True, "result": None}
        handler = self._ops.get(op)
        if handler is None:
            return _error_reply("ValueError", f"Unknown operation '{op}'")

        started = time.monotonic()
        with self._lock:
            self.session.writer = request.get("writer")
            try:
                result = handler(self.session, args)
            except errors.TangleError as e:
                return {"ok": False, "error": {**e.to_dict(), "kind": type(e).__name__}}
            except (ValueError, TypeError) as e:
                return _error_reply("ValueError", str(e))
            except Exception as e:
                logger.exception("Daemon request %s failed", op, extra={"op": op})
                return _error_reply("TangleError", f"Daemon error: {e}")
        logger.info(
            "Handled %s",
            op,
            extra={"op": op, "duration_ms": round((time.monotonic() - started) * 1000, 2)},
        )
        return {"ok": True, "result": result}

    def refresh(self) -> None:
        """Import the logs if they changed; called from the watcher thread."""
        with self._lock:
            try:
                if self.session.sync_engine.import_if_stale():
                    logger.info("Re-imported logs after external change")
            except errors.TangleError as e:
                logger.error("Import after log change failed: %s", e.message)


def _error_reply(kind: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": {"error": message, "kind": kind, "ids": [], "remedy": None}}


def run_daemon(tangle_dir: Path, *, debounce_seconds: float | None = None) -> None:
    """Run the daemon in the foreground until signalled or asked to stop.

    Raises:
        DaemonAlreadyRunning: If another daemon holds the store.
        NotInitializedError: If there is no store at ``tangle_dir``.
    """
    tangle_dir = Path(tangle_dir)
    setup_logging(tangle_dir)
    pid_lock = PidLock(lock_path(tangle_dir))
    pid_lock.acquire(socket=str(socket_path(tangle_dir)))
    try:
        with Session(tangle_dir, debounce_seconds=debounce_seconds) as session:
            session.sync_engine.import_if_stale()
            server = DaemonServer(session, socket_path(tangle_dir))
            observer = Observer()
            observer.schedule(_LogWatcher(server.refresh), str(tangle_dir), recursive=False)
            observer.start()

            def _on_signal(signum: int, frame: object) -> None:  # noqa: ARG001
                server.stop_requested.set()

            previous = {
                sig: signal.signal(sig, _on_signal) for sig in (signal.SIGTERM, signal.SIGINT)
            }
            serving = threading.Thread(
                target=server.serve_forever,
                kwargs={"poll_interval": 0.2},
                daemon=True,
            )
            serving.start()
            logger.info("Daemon started (pid %d) for %s", os.getpid(), tangle_dir)
            try:
                server.stop_requested.wait()
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
                server.shutdown()
                server.server_close()
                observer.stop()
                observer.join()
                socket_path(tangle_dir).unlink(missing_ok=True)
                logger.info("Daemon stopped")
    finally:
        pid_lock.release()


class DaemonClient:
    """Sends requests to a running daemon."""

    def __init__(self, tangle_dir: Path, timeout: float = _CONNECT_TIMEOUT) -> None:
        self.tangle_dir = Path(tangle_dir)
        self.path = socket_path(self.tangle_dir)
        self.timeout = timeout

    def request(self, op: str, writer: str | None = None, **args: Any) -> Any:
        """Send one request and return its result.

        Raises:
            DaemonUnavailable: If the socket cannot be reached.
            TangleError: Re-raised from the daemon's reply, same class.
            ValueError: For invalid input reported by the daemon.
        """
        payload = orjson.dumps({"op": op, "args": args, "writer": writer}) + b"\n"
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(str(self.path))
                sock.sendall(payload)
                with sock.makefile("rb") as reader:
                    line = reader.readline()
        except OSError as e:
            msg = f"Cannot reach daemon at {self.path}: {e}"
            raise errors.DaemonUnavailable(msg) from e
        if not line:
            msg = "Daemon closed the connection without replying"
            raise errors.DaemonUnavailable(msg)

        reply = orjson.loads(line)
        if reply.get("ok"):
            return reply.get("result")
        error = reply["error"]
        kind = error.get("kind", "TangleError")
        if kind == "ValueError":
            raise ValueError(error["error"])
        cls = getattr(errors, kind, errors.TangleError)
        if not (isinstance(cls, type) and issubclass(cls, errors.TangleError)):
            cls = errors.TangleError
        raise cls(error["error"], ids=error.get("ids") or (), remedy=error.get("remedy"))

    def ping(self) -> bool:
        """Whether a daemon answers on the socket."""
        if not self.path.exists():
            return False
        try:
            self.request("ping")
        except errors.DaemonUnavailable:
            return False
        return True


class RemoteSession:
    """Session-shaped proxy that forwards every call to the daemon."""

    def __init__(self, tangle_dir: Path, writer: str | None = None) -> None:
        self.tangle_dir = Path(tangle_dir)
        self.writer = writer
        self.client = DaemonClient(self.tangle_dir)

    def __enter__(self) -> RemoteSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        """Nothing to release; the daemon owns the session."""

    def _call(self, op: str, **args: Any) -> Any:
        return self.client.request(op, writer=self.writer, **args)

    def create(self, title: str, **fields: Any) -> Issue:
        return dict_to_issue(self._call("create", title=title, **fields))

    def update(self, issue_id: str, updates: dict[str, Any]) -> Issue:
        return dict_to_issue(self._call("update", issue_id=issue_id, updates=updates))

    def close_issue(self, issue_id: str, reason: str | None = None) -> Issue:
        return dict_to_issue(self._call("close_issue", issue_id=issue_id, reason=reason))

    def reopen(self, issue_id: str) -> Issue:
        return dict_to_issue(self._call("reopen", issue_id=issue_id))

    def delete(self, issue_id: str, reason: str | None = None) -> Tombstone:
        return dict_to_tombstone(self._call("delete", issue_id=issue_id, reason=reason))

    def add_dependency(
        self,
        from_id: str,
        to_id: str,
        dep_type: str = "blocks",
    ) -> tuple[Dependency, list[str]]:
        result = self._call("add_dependency", from_id=from_id, to_id=to_id, dep_type=dep_type)
        return dict_to_dependency(result["dependency"]), list(result["warnings"])

    def remove_dependency(self, from_id: str, to_id: str, dep_type: str = "blocks") -> bool:
        return bool(
            self._call("remove_dependency", from_id=from_id, to_id=to_id, dep_type=dep_type),
        )

    def get(self, issue_id: str) -> Issue:
        return dict_to_issue(self._call("get", issue_id=issue_id))

    def list(self, filters: dict[str, Any] | None = None) -> list[Issue]:
        return [dict_to_issue(d) for d in self._call("list", filters=filters)]

    def ready(self, filters: dict[str, Any] | None = None) -> list[Issue]:
        return [dict_to_issue(d) for d in self._call("ready", filters=filters)]

    def blocked(self) -> list[BlockedIssue]:
        return [BlockedIssue(**d) for d in self._call("blocked")]

    def cycles(self) -> list[list[str]]:
        return self._call("cycles")

    def show(self, issue_id: str) -> IssueView:
        return IssueView.from_dict(self._call("show", issue_id=issue_id))

    def tree(self, issue_id: str) -> dict[str, Any]:
        return self._call("tree", issue_id=issue_id)

    def sync(self, force: bool = False) -> dict[str, Any]:
        return self._call("sync", force=force)


def daemon_status(tangle_dir: Path) -> dict[str, Any]:
    """Describe the daemon for a store: running, pid, socket, stale lock."""
    pid_lock = PidLock(lock_path(tangle_dir))
    holder = pid_lock.holder()
    info = read_pid_file(lock_path(tangle_dir))
    return {
        "running": holder is not None and DaemonClient(tangle_dir, timeout=2.0).ping(),
        "pid": holder["pid"] if holder else None,
        "socket": str(socket_path(tangle_dir)),
        "stale_lock": info is not None and holder is None,
    }


def stop_daemon(tangle_dir: Path, timeout: float = 10.0) -> bool:
    """Ask the daemon to shut down and wait for it to exit.

    Returns:
        True if a daemon was stopped, False if none was running.
    """
    pid_lock = PidLock(lock_path(tangle_dir))
    holder = pid_lock.holder()
    if holder is None:
        pid_lock.cleanup_stale()
        return False
    try:
        DaemonClient(tangle_dir, timeout=timeout).request("shutdown")
    except errors.DaemonUnavailable:
        os.kill(holder["pid"], signal.SIGTERM)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pid_lock.holder() is None:
            return True
        time.sleep(0.1)
    msg = f"Daemon (pid {holder['pid']}) did not stop within {timeout:.0f}s"
    raise errors.TangleError(msg, remedy=f"kill {holder['pid']}")


def ensure_daemon(tangle_dir: Path, timeout: float | None = None) -> DaemonClient:
    """Return a client for the store's daemon, spawning one if needed.

    Raises:
        DaemonUnavailable: If a spawned daemon never answers.
    """
    client = DaemonClient(tangle_dir)
    if client.ping():
        return client
    if timeout is None:
        timeout = float(get_value(load_config(tangle_dir), "daemon.start_timeout"))

    PidLock(lock_path(tangle_dir)).cleanup_stale()
    subprocess.Popen(  # noqa: S603
        [
            sys.executable,
            "-m",
            "tangle",
            "daemon",
            "start",
            "--foreground",
            "--tangle-dir",
            str(tangle_dir),
        ],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.ping():
            logger.debug("Daemon for %s is up", tangle_dir)
            return client
        time.sleep(0.05)
    msg = f"Daemon for {tangle_dir} did not start within {timeout:.0f}s"
    raise errors.DaemonUnavailable(msg, remedy=f"check {tangle_dir / 'tangle.log'}")
