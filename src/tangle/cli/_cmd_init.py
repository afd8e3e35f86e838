"""Initialization command for the tangle CLI."""

from __future__ import annotations

from pathlib import Path

import typer

from tangle.config import _detect_prefix_from_directory, load_config, save_config
from tangle.constants import (
    DEFAULT_PREFIX,
    LOCAL_ONLY_FILES,
    TANGLE_DIRNAME,
    TOMBSTONES_FILENAME,
)
from tangle.errors import TangleError
from tangle.storage import IssueLog

from ._cmd_git import git_path, git_repo_root, install_hooks, install_merge_driver
from ._helpers import cli_errors
from ._json_state import echo_json, is_json_output


def _ensure_ignore_entry(ignore_file: Path, entry: str) -> bool:
    """Add an entry to an ignore file if not already present.

    Returns:
        True if the entry was added.
    """
    if ignore_file.exists():
        content = ignore_file.read_text()
        if any(ln.strip() == entry for ln in content.splitlines()):
            return False
        with ignore_file.open("a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{entry}\n")
        return True
    ignore_file.parent.mkdir(parents=True, exist_ok=True)
    ignore_file.write_text(f"{entry}\n")
    return True


def register(app: typer.Typer) -> None:
    """Register the init command."""

    @app.command()
    def init(
        standalone: bool = typer.Option(
            False,
            "--standalone",
            help="Local store only (default)",
        ),
        team: bool = typer.Option(
            False,
            "--team",
            help="Share the store through git: merge driver, .gitattributes, hooks",
        ),
        hidden: bool = typer.Option(
            False,
            "--hidden",
            help="Keep the store out of git via .git/info/exclude",
        ),
        prefix: str | None = typer.Option(
            None,
            "--prefix",
            help="Issue ID prefix (default: auto-detect from directory name)",
        ),
        tangle_dir: str = typer.Option(
            TANGLE_DIRNAME,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    ) -> None:
        """Initialize a new tangle store.

        If --prefix is not specified, it is derived from the directory name
        (e.g., folder 'myproject' -> prefix 'myproject').
        """
        is_json_output(json_output)
        messages: list[str] = []
        with cli_errors():
            chosen = [m for m, flag in (("standalone", standalone), ("team", team),
                                        ("hidden", hidden)) if flag]
            if len(chosen) > 1:
                msg = "--standalone, --team and --hidden are mutually exclusive"
                raise ValueError(msg)
            mode = chosen[0] if chosen else "standalone"

            path = Path(tangle_dir)
            repo_root = git_repo_root(path.resolve().parent) if mode != "standalone" else None

            issues_file = path / "issues.jsonl"
            existed = issues_file.exists()
            IssueLog(path, create=True)
            (path / TOMBSTONES_FILENAME).touch(exist_ok=True)
            messages.append(
                f"✓ {issues_file} already exists" if existed else f"✓ Created {issues_file}",
            )

            config = load_config(path, local=False)
            if prefix is None:
                prefix = config.get("prefix") or _detect_prefix_from_directory(path)
            prefix = (prefix or DEFAULT_PREFIX).rstrip("-")
            if not prefix:
                msg = "Prefix must not be empty"
                raise ValueError(msg)
            config["prefix"] = prefix
            config["mode"] = mode
            save_config(path, config)
            messages.append(f"✓ Set prefix: {prefix}")

            for entry in LOCAL_ONLY_FILES:
                _ensure_ignore_entry(path / ".gitignore", entry)
            messages.append(f"✓ Ignoring local-only files via {path / '.gitignore'}")

            if mode == "team":
                assert repo_root is not None
                messages.extend(install_merge_driver(repo_root))
                messages.extend(install_hooks(repo_root))
            elif mode == "hidden":
                assert repo_root is not None
                exclude = git_path("info/exclude", repo_root)
                try:
                    rel = path.resolve().relative_to(repo_root.resolve())
                except ValueError:
                    msg = f"{path} is outside the git repository at {repo_root}"
                    raise TangleError(msg) from None
                if _ensure_ignore_entry(exclude, f"/{rel.as_posix()}/"):
                    messages.append(f"✓ Added /{rel.as_posix()}/ to {exclude}")
                else:
                    messages.append(f"✓ {exclude} already excludes the store")

        if is_json_output(json_output):
            echo_json(
                {
                    "status": "initialized",
                    "mode": mode,
                    "prefix": prefix,
                    "path": str(path.resolve()),
                },
            )
            return
        for line in messages:
            typer.echo(line)
        typer.echo(f"\n✓ tangle store initialized in {tangle_dir} ({mode} mode)")
        typer.echo(f"  Issues will be named: {prefix}-<hash> (e.g., {prefix}-a3f2)")
