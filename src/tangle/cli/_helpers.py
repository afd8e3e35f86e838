"""Shared infrastructure for tangle CLI commands."""

from __future__ import annotations

import functools
import getpass
import os
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from typer.core import TyperGroup

from tangle.config import get_value, load_config
from tangle.constants import ISSUES_FILENAME, PRIORITY_NAMES, TANGLE_DIRNAME
from tangle.daemon import DaemonClient, RemoteSession, ensure_daemon
from tangle.errors import EXIT_USAGE, TangleError
from tangle.session import Session

from ._json_state import echo_error

if TYPE_CHECKING:
    from collections.abc import Iterator

    import click


class SortedGroup(TyperGroup):
    """Typer group that lists commands in alphabetical order."""

    def list_commands(self, ctx: click.Context) -> list[str]:
        """Return commands sorted alphabetically."""
        return sorted(super().list_commands(ctx))


@functools.lru_cache(maxsize=1)
def get_default_operator() -> str:
    """Get the default operator (user identifier) for issue operations.

    Tries to get the git config user.email first, falls back to machine username.

    Returns:
        User email from git config, or machine username as fallback.
    """
    try:
        result = subprocess.run(
            ["git", "config", "user.email"],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (FileNotFoundError, OSError):
        # git not installed or other OS error
        pass

    return getpass.getuser()


def find_tangle_dir(start_dir: str | Path | None = None) -> Path:
    """Find the .tangle directory.

    ``TANGLE_DIR`` in the environment wins. Otherwise searches upward from
    ``start_dir`` the way git finds .git, then falls back to the main git
    worktree so linked worktrees share one store.

    Args:
        start_dir: Directory to start searching from (default: current directory)

    Returns:
        Path to .tangle directory, or ``.tangle`` if not found
    """
    env_dir = os.environ.get("TANGLE_DIR")
    if env_dir:
        return Path(env_dir)

    current = Path.cwd() if start_dir is None else Path(start_dir).resolve()
    while True:
        candidate = current / TANGLE_DIRNAME
        if candidate.is_dir():
            return candidate
        parent = current.parent
        if parent == current:
            return _find_tangle_via_worktree() or Path(TANGLE_DIRNAME)
        current = parent


def _find_tangle_via_worktree() -> Path | None:
    """Check the main git worktree root for a .tangle directory.

    In a linked worktree, ``git rev-parse --git-common-dir`` points back to
    the main worktree's ``.git`` directory.
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-common-dir"],
            capture_output=True,
            text=True,
            check=False,
        )
    except (FileNotFoundError, OSError):
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    candidate = Path(result.stdout.strip()).resolve().parent / TANGLE_DIRNAME
    return candidate if candidate.is_dir() else None


def resolve_tangle_dir(tangle_dir: str | None) -> Path:
    """The explicit ``--tangle-dir`` if given, else the discovered one."""
    if tangle_dir is not None:
        return Path(tangle_dir)
    return find_tangle_dir()


def open_session(tangle_dir: str | None = None) -> Session | RemoteSession:
    """Open a session for a CLI command.

    Routes through the daemon when one is live for the store (it holds the
    store's lock), or spawns one first when ``daemon.autostart`` is set.
    Otherwise opens a local :class:`Session`.

    Raises:
        NotInitializedError: If no store exists.
    """
    path = resolve_tangle_dir(tangle_dir)
    writer = get_default_operator()
    if DaemonClient(path).ping():
        return RemoteSession(path, writer=writer)
    if (path / ISSUES_FILENAME).exists() and get_value(load_config(path), "daemon.autostart"):
        ensure_daemon(path)
        return RemoteSession(path, writer=writer)
    return Session(path, writer=writer)


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn tangle errors into an error message and the matching exit code."""
    try:
        yield
    except TangleError as e:
        echo_error(e)
        raise typer.Exit(e.exit_code) from None
    except ValueError as e:
        echo_error(str(e))
        raise typer.Exit(EXIT_USAGE) from None


def _parse_priority_value(value: str) -> int:
    """Parse a priority value that can be an int (0-4), pINT (p0-p4), or a name.

    Accepted names: lowest (0), low (1), medium (2), high (3), critical (4).

    Returns the priority as an integer.
    Raises ValueError if the format is invalid.
    """
    raw = value.strip().lower()
    if raw in PRIORITY_NAMES:
        return PRIORITY_NAMES[raw]
    raw = raw.removeprefix("p")
    try:
        priority = int(raw)
    except ValueError:
        names = ", ".join(PRIORITY_NAMES)
        msg = f"Invalid priority '{value}'. Use 0-4, p0-p4, or a name ({names})."
        raise ValueError(msg) from None
    if priority < 0 or priority > 4:
        msg = f"Invalid priority '{value}'. Must be 0-4."
        raise ValueError(msg)
    return priority
