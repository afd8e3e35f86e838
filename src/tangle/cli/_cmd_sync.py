"""Sync command for the tangle CLI."""

from __future__ import annotations

import subprocess
from pathlib import Path

import typer

from tangle.daemon import RemoteSession
from tangle.errors import TangleError

from ._helpers import cli_errors, open_session, resolve_tangle_dir
from ._json_state import echo_json, is_json_output


def _git(args: list[str], cwd: Path) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            check=False,
            cwd=cwd,
        )
    except (FileNotFoundError, OSError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _branch_check(tangle_dir: Path) -> tuple[str | None, str]:
    """Current and default branch names for the repo holding the store."""
    cwd = tangle_dir.resolve().parent
    current = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    remote_head = _git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], cwd)
    if remote_head:
        default = remote_head.split("/", 1)[-1]
    else:
        default = _git(["config", "init.defaultBranch"], cwd) or "main"
    return current, default


def register(app: typer.Typer) -> None:
    """Register the sync command."""

    @app.command()
    def sync(
        force: bool = typer.Option(
            False,
            "--force",
            "-f",
            help="Flush now and rebuild the cache even if the logs look unchanged",
        ),
        compact: bool = typer.Option(
            False,
            "--compact",
            help="Also rewrite issues.jsonl to one record per live issue and edge",
        ),
        any_branch: bool = typer.Option(
            False,
            "--any-branch",
            help="Allow --compact off the default branch",
        ),
        quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print errors"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Export pending edits to the log and import external changes.

        Git hooks installed by 'tg hooks install' call this after merges and
        checkouts, and with --force before commits.
        """
        is_json_output(json_output)
        with cli_errors():
            path = resolve_tangle_dir(tangle_dir)
            if compact and not any_branch:
                current, default = _branch_check(path)
                if current is not None and current not in (default, "HEAD"):
                    msg = f"Refusing to compact on branch '{current}'"
                    raise TangleError(
                        msg,
                        remedy=f"compact on '{default}', or pass --any-branch",
                    )
            with open_session(str(path)) as session:
                stats = session.sync(force=force)
                if compact:
                    if isinstance(session, RemoteSession):
                        msg = "Cannot compact while the daemon is running"
                        raise TangleError(msg, remedy="run 'tg daemon stop' first")
                    stats["compacted"] = session.compact()

        if is_json_output(json_output):
            echo_json(stats)
            return
        if quiet:
            return
        typer.echo(
            f"✓ Synced: exported {stats['exported']} record(s), "
            f"{'imported' if stats['imported'] else 'no import needed'}, "
            f"{stats['issues']} issue(s)",
        )
        if "compacted" in stats:
            c = stats["compacted"]
            typer.echo(f"✓ Compacted issues.jsonl: {c['before']} -> {c['after']} records")
