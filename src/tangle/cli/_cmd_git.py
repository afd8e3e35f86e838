"""Git integration commands for the tangle CLI."""

from __future__ import annotations

import shutil
import stat
import subprocess
from pathlib import Path

import typer

from tangle.constants import (
    GIT_HOOKS,
    GITATTRIBUTES_ENTRY,
    HOOK_MARKER,
    MERGE_DRIVER_CMD,
    MERGE_DRIVER_GIT_KEY,
    MERGE_DRIVER_GIT_NAME_KEY,
    MERGE_DRIVER_NAME,
)
from tangle.errors import MergeAbstained, TangleError, ToolMissingError
from tangle.merge_driver import run_merge_driver

from ._helpers import SortedGroup, cli_errors
from ._json_state import echo_error, echo_json, is_json_output

# Sub-app for 'tg git' subcommands
git_app = typer.Typer(
    help="Git integration commands.",
    no_args_is_help=True,
    cls=SortedGroup,
)

# Sub-app for 'tg hooks' subcommands
hooks_app = typer.Typer(
    help="Manage git hooks that keep the log and cache in step.",
    no_args_is_help=True,
    cls=SortedGroup,
)


def require_git() -> str:
    """Path to the git executable.

    Raises:
        ToolMissingError: If git is not on PATH.
    """
    git = shutil.which("git")
    if git is None:
        msg = "git is not installed"
        raise ToolMissingError(msg)
    return git


def git_repo_root(cwd: Path | None = None) -> Path:
    """Return the git repository root.

    Raises:
        ToolMissingError: If git is not installed.
        TangleError: If ``cwd`` is not inside a git repository.
    """
    require_git()
    result = subprocess.run(
        ["git", "rev-parse", "--show-toplevel"],
        capture_output=True,
        text=True,
        check=False,
        cwd=cwd,
    )
    if result.returncode != 0:
        msg = "Not in a git repository"
        raise TangleError(msg, remedy="run 'git init' first")
    return Path(result.stdout.strip())


def git_path(name: str, cwd: Path) -> Path:
    """Resolve a path inside the git directory (hooks, info/exclude)."""
    result = subprocess.run(
        ["git", "rev-parse", "--git-path", name],
        capture_output=True,
        text=True,
        check=True,
        cwd=cwd,
    )
    path = Path(result.stdout.strip())
    return path if path.is_absolute() else cwd / path


def install_merge_driver(repo_root: Path) -> list[str]:
    """Register the merge driver in local git config and .gitattributes.

    Returns:
        Human-readable lines describing what changed.
    """
    messages = []
    subprocess.run(
        ["git", "config", MERGE_DRIVER_GIT_KEY, MERGE_DRIVER_CMD],
        check=True,
        cwd=repo_root,
    )
    subprocess.run(
        ["git", "config", MERGE_DRIVER_GIT_NAME_KEY, MERGE_DRIVER_NAME],
        check=True,
        cwd=repo_root,
    )
    messages.append("✓ Merge driver configured in local git config")

    gitattrs = repo_root / ".gitattributes"
    entry = GITATTRIBUTES_ENTRY
    if gitattrs.exists():
        content = gitattrs.read_text()
        if entry not in content:
            with gitattrs.open("a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write(f"{entry}\n")
            messages.append(f"✓ Added '{entry}' to .gitattributes")
        else:
            messages.append("✓ .gitattributes already configured")
    else:
        gitattrs.write_text(f"# tangle JSONL merge driver\n{entry}\n")
        messages.append(f"✓ Created .gitattributes with '{entry}'")
    return messages


def install_hooks(repo_root: Path) -> list[str]:
    """Install (or extend) the sync hooks in the repository.

    An existing hook that tangle did not write is kept; the tangle command is
    appended to it.
    """
    hooks_dir = git_path("hooks", repo_root)
    hooks_dir.mkdir(parents=True, exist_ok=True)
    messages = []
    for name, command in GIT_HOOKS.items():
        hook = hooks_dir / name
        line = f"{command}  {HOOK_MARKER}\n"
        if hook.exists():
            content = hook.read_text()
            if HOOK_MARKER in content:
                messages.append(f"✓ {name} hook already installed")
                continue
            with hook.open("a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write(line)
            messages.append(f"✓ Appended tangle to existing {name} hook")
        else:
            hook.write_text(f"#!/bin/sh\n{line}")
            messages.append(f"✓ Installed {name} hook")
        hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return messages


def register(app: typer.Typer) -> None:
    """Register git and hooks commands."""
    app.add_typer(git_app, name="git")
    app.add_typer(hooks_app, name="hooks")

    @git_app.command("setup")
    def git_setup(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    ) -> None:
        """Install the JSONL merge driver for git."""
        is_json_output(json_output)
        with cli_errors():
            repo_root = git_repo_root()
            messages = install_merge_driver(repo_root)
        if is_json_output(json_output):
            echo_json({"status": "configured", "repo": str(repo_root)})
            return
        for line in messages:
            typer.echo(line)
        typer.echo("\nDone! The merge driver will auto-resolve JSONL conflicts.")

    @git_app.command("merge-driver", hidden=True)
    def git_merge_driver(
        base: str = typer.Argument(..., help="Base version file path (%O)"),
        ours: str = typer.Argument(..., help="Ours version file path (%A)"),
        theirs: str = typer.Argument(..., help="Theirs version file path (%B)"),
        path_hint: str | None = typer.Argument(None, help="Path in the tree (%P)"),
    ) -> None:
        """JSONL merge driver invoked by git during merges.

        On inputs it cannot merge safely it leaves %A untouched and exits
        non-zero so git records a conflict.
        """
        try:
            run_merge_driver(Path(base), Path(ours), Path(theirs), path_hint)
        except MergeAbstained as e:
            echo_error(e)
            raise typer.Exit(e.exit_code) from None
        raise typer.Exit(0)

    @hooks_app.command("install")
    def hooks_install(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    ) -> None:
        """Install post-merge, post-checkout, post-rewrite and pre-commit hooks."""
        is_json_output(json_output)
        with cli_errors():
            repo_root = git_repo_root()
            messages = install_hooks(repo_root)
        if is_json_output(json_output):
            echo_json({"status": "installed", "hooks": sorted(GIT_HOOKS)})
            return
        for line in messages:
            typer.echo(line)
