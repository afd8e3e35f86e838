"""Doctor command for the tangle CLI."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import orjson
import typer

from tangle import deps
from tangle.config import get_config_path, get_issue_prefix, load_config, save_config
from tangle.constants import (
    CACHE_FILENAME,
    ID_COLLISION_WARN_THRESHOLD,
    MERGE_DRIVER_CMD,
    MERGE_DRIVER_GIT_KEY,
    TOMBSTONES_FILENAME,
)
from tangle.daemon import DaemonClient, lock_path
from tangle.errors import CorruptionError, NotInitializedError, TangleError
from tangle.idgen import collision_probability, length_for_count
from tangle.locks import PidLock
from tangle.session import Session
from tangle.storage import IssueLog, Snapshot, TombstoneLog, replay

from ._helpers import cli_errors, get_default_operator, resolve_tangle_dir
from ._json_state import echo_json, is_json_output


def _state_keys(snapshot: Snapshot) -> tuple[set[bytes], set[str]]:
    """Comparable form of a snapshot: canonical records and tombstone ids."""
    records = {
        orjson.dumps(r, option=orjson.OPT_SORT_KEYS)
        for r in snapshot.to_records()
    }
    return records, set(snapshot.tombstones)


def _remove_cache(tangle_dir: Path) -> None:
    for suffix in ("", "-wal", "-shm"):
        (tangle_dir / f"{CACHE_FILENAME}{suffix}").unlink(missing_ok=True)


def _check_logs(tangle_dir: Path, checks: dict[str, dict[str, Any]]) -> Snapshot | None:
    """Validate both logs; return the replayed state if they are readable."""
    issue_records = tomb_records = None
    for name, reader in (
        ("issues_jsonl", IssueLog(tangle_dir)),
        ("tombstones_jsonl", TombstoneLog(tangle_dir)),
    ):
        try:
            records = reader.read_records()
        except TangleError as e:
            checks[name] = {
                "description": f"{reader.path.name} is readable",
                "fail_description": e.message,
                "passed": False,
                "fix": e.remedy or "Restore the file from version control",
            }
            continue
        checks[name] = {"description": f"{reader.path.name} is readable", "passed": True}
        if name == "issues_jsonl":
            issue_records = records
        else:
            tomb_records = records

    if issue_records is None or tomb_records is None:
        return None
    try:
        return replay(issue_records, tomb_records)
    except CorruptionError as e:
        checks["replay"] = {
            "description": "Log records replay cleanly",
            "fail_description": e.message,
            "passed": False,
            "fix": "Fix or remove the malformed record by hand",
        }
        return None


def _check_cache(
    tangle_dir: Path,
    fix: bool,
    checks: dict[str, dict[str, Any]],
) -> None:
    if DaemonClient(tangle_dir).ping():
        checks["cache"] = {
            "description": "Cache matches the log",
            "fail_description": "Cache not checked while the daemon is running",
            "passed": False,
            "optional": True,
            "note": "Run 'tg daemon stop' and re-run 'tg doctor'",
        }
        return

    fixed = False
    try:
        session = Session(tangle_dir, writer=get_default_operator())
    except CorruptionError:
        if not fix:
            checks["cache"] = {
                "description": "Cache database is readable",
                "fail_description": "Cache database is corrupt",
                "passed": False,
                "fix": "Run 'tg doctor --fix' to rebuild the cache from the log",
            }
            return
        _remove_cache(tangle_dir)
        session = Session(tangle_dir, writer=get_default_operator())
        fixed = True

    with session:
        session.sync_engine.export()
        session.sync_engine.import_if_stale()
        expected = replay(session.log.read_records(), session.tombstones.read_records())
        consistent = _state_keys(session.cache.snapshot()) == _state_keys(expected)
        if (fix and not consistent) or fixed:
            session.sync_engine.full_import()
            consistent = True
            typer.echo("Fixed: Rebuilt the cache from the log")
    checks["cache"] = {
        "description": "Cache matches the log",
        "fail_description": "Cache differs from the log",
        "passed": consistent,
        "fix": "Run 'tg doctor --fix' to rebuild the cache from the log",
    }


def _check_git(tangle_dir: Path, checks: dict[str, dict[str, Any]]) -> None:
    try:
        result = subprocess.run(
            ["git", "config", MERGE_DRIVER_GIT_KEY],
            capture_output=True,
            text=True,
            check=False,
            cwd=tangle_dir.resolve().parent,
        )
    except (FileNotFoundError, OSError):
        checks["git"] = {
            "description": "git is installed",
            "passed": False,
            "fix": "Install git; team mode needs it",
        }
        return
    driver_value = result.stdout.strip() if result.returncode == 0 else ""
    checks["merge_driver"] = {
        "description": "JSONL merge driver is configured",
        "fail_description": (
            "JSONL merge driver is not configured"
            if not driver_value
            else f"JSONL merge driver has wrong command: {driver_value}"
        ),
        "passed": driver_value == MERGE_DRIVER_CMD,
        "fix": "Run 'tg git setup' to install the merge driver",
    }


def register(app: typer.Typer) -> None:
    """Register doctor command."""

    @app.command()
    def doctor(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        fix: bool = typer.Option(False, "--fix", help="Automatically fix issues"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Diagnose the store: logs, cache, config, cycles and git setup.

        Exit code 0 = all OK, 1 = problems found, 3 = no store.
        """
        is_json_output(json_output)
        checks: dict[str, dict[str, Any]] = {}

        with cli_errors():
            path = resolve_tangle_dir(tangle_dir)
            if not (path / "issues.jsonl").exists():
                msg = f"No tangle store at '{path}'"
                raise NotInitializedError(msg)
            tombstones_path = path / TOMBSTONES_FILENAME
            if fix and not tombstones_path.exists():
                tombstones_path.touch()
                typer.echo(f"Fixed: Created {TOMBSTONES_FILENAME}")

            config_path = get_config_path(path)
            config = load_config(path, local=False)
            if fix and not config.get("prefix"):
                config["prefix"] = get_issue_prefix(path)
                save_config(path, config)
                typer.echo(f"Fixed: Set prefix='{config['prefix']}' in {config_path.name}")
            checks["config_prefix"] = {
                "description": f"prefix is configured in {config_path.name}",
                "passed": bool(config.get("prefix")),
                "fix": "Run 'tg doctor --fix' to set it",
            }

            pid_lock = PidLock(lock_path(path))
            stale = lock_path(path).exists() and pid_lock.holder() is None
            if fix and stale:
                stale = not pid_lock.cleanup_stale()
                typer.echo("Fixed: Removed stale daemon lock")
            checks["daemon_lock"] = {
                "description": "No stale daemon lock",
                "passed": not stale,
                "fix": "Run 'tg doctor --fix' to remove it",
            }

            expected = _check_logs(path, checks)
            if expected is not None:
                _check_cache(path, fix, checks)
                cycles = deps.detect_cycles(deps.Graph.from_snapshot(expected))
                checks["cycles"] = {
                    "description": "No dependency cycles",
                    "fail_description": f"{len(cycles)} dependency cycle(s)",
                    "passed": not cycles,
                    "optional": True,
                    "note": "; ".join(" -> ".join(c) for c in cycles),
                }

                known = len(expected.all_ids())
                estimate = collision_probability(known, length_for_count(known))
                checks["id_collisions"] = {
                    "description": "New id collision estimate is low",
                    "fail_description": f"New id collision estimate is {estimate:.2g}",
                    "passed": estimate < ID_COLLISION_WARN_THRESHOLD,
                    "optional": True,
                    "note": "Retries on clash keep ids unique; a higher estimate only means more retries",
                }

            if load_config(path).get("mode") == "team":
                _check_git(path, checks)

        all_passed = all(c["passed"] or c.get("optional") for c in checks.values())

        if is_json_output(json_output):
            echo_json({"status": "ok" if all_passed else "issues_found", "checks": checks})
        else:
            typer.echo("tangle Health Check\n")
            for check in checks.values():
                is_optional = check.get("optional", False)
                if check["passed"]:
                    line = typer.style(f"✓ {check['description']}", fg="green")
                elif is_optional:
                    desc = check.get("fail_description", check["description"])
                    line = typer.style(f"○ {desc}", fg="yellow")
                else:
                    desc = check.get("fail_description", check["description"])
                    line = typer.style(f"✗ {desc}", fg="red")
                typer.echo(line)
                if not check["passed"] and not is_optional:
                    typer.echo(typer.style(f"  Fix: {check['fix']}", fg="yellow"))
                if not check["passed"] and is_optional and check.get("note"):
                    typer.echo(typer.style(f"  Note: {check['note']}", fg="yellow"))

            if all_passed:
                typer.echo(typer.style("\n✓ All checks passed!", fg="green"))
            else:
                typer.echo(typer.style("\n✗ Some checks failed. See above for fixes.", fg="red"))

        raise typer.Exit(0 if all_passed else 1)
