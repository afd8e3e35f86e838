"""Daemon management commands for the tangle CLI."""

from __future__ import annotations

import typer

from tangle.daemon import daemon_status, ensure_daemon, run_daemon, stop_daemon

from ._helpers import SortedGroup, cli_errors, resolve_tangle_dir
from ._json_state import echo_json, is_json_output

daemon_app = typer.Typer(
    help="Run a background daemon that owns the store's cache.",
    no_args_is_help=True,
    cls=SortedGroup,
)


def register(app: typer.Typer) -> None:
    """Register daemon commands."""
    app.add_typer(daemon_app, name="daemon")

    @daemon_app.command("start")
    def daemon_start(
        foreground: bool = typer.Option(
            False,
            "--foreground",
            help="Run in this process until stopped",
        ),
        debounce: float | None = typer.Option(
            None,
            "--debounce",
            help="Export coalescing window in seconds (default: from config)",
        ),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Start the daemon for this store.

        While it runs, other tg commands send their work over its socket
        instead of opening the cache themselves.
        """
        is_json_output(json_output)
        with cli_errors():
            path = resolve_tangle_dir(tangle_dir)
            if foreground:
                run_daemon(path, debounce_seconds=debounce)
                return
            ensure_daemon(path)
            status = daemon_status(path)

        if is_json_output(json_output):
            echo_json(status)
            return
        typer.echo(f"✓ Daemon running (pid {status['pid']}) on {status['socket']}")

    @daemon_app.command("stop")
    def daemon_stop(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Stop the daemon, flushing pending exports first."""
        is_json_output(json_output)
        with cli_errors():
            stopped = stop_daemon(resolve_tangle_dir(tangle_dir))

        if is_json_output(json_output):
            echo_json({"stopped": stopped})
            return
        typer.echo("✓ Daemon stopped" if stopped else "No daemon running")

    @daemon_app.command("status")
    def daemon_status_cmd(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Show whether a daemon is running for this store."""
        is_json_output(json_output)
        with cli_errors():
            status = daemon_status(resolve_tangle_dir(tangle_dir))

        if is_json_output(json_output):
            echo_json(status)
            return
        if status["running"]:
            typer.echo(f"Daemon running (pid {status['pid']})")
            typer.echo(f"  Socket: {status['socket']}")
        else:
            typer.echo("No daemon running")
            if status["stale_lock"]:
                typer.echo("  Stale lock found; 'tg doctor --fix' removes it")
