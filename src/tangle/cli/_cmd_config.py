"""Configuration commands for the tangle CLI."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer

from tangle.config import KNOWN_KEYS, get_value, load_config, set_value
from tangle.constants import INIT_MODES, ISSUES_FILENAME
from tangle.errors import NotInitializedError

from ._helpers import SortedGroup, cli_errors, resolve_tangle_dir
from ._json_state import echo_json, is_json_output

config_app = typer.Typer(
    help="Read and change store configuration.",
    no_args_is_help=True,
    cls=SortedGroup,
)

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})


def _coerce_value(key: str, value: str) -> Any:
    """Convert a command-line string to the type a known key expects.

    Raises:
        ValueError: If the key is unknown or the value does not fit its type.
    """
    info = KNOWN_KEYS.get(key)
    if info is None:
        msg = f"Unknown config key '{key}' (see 'tg config keys')"
        raise ValueError(msg)

    kind = info["type"]
    if kind == "bool":
        lower = value.lower()
        if lower in _TRUE_VALUES:
            return True
        if lower in _FALSE_VALUES:
            return False
        msg = f"Invalid boolean value '{value}' for key '{key}'. Use true/false."
        raise ValueError(msg)
    if kind == "float":
        try:
            number = float(value)
        except ValueError:
            msg = f"Invalid number '{value}' for key '{key}'"
            raise ValueError(msg) from None
        if number < 0:
            msg = f"'{key}' must not be negative"
            raise ValueError(msg)
        return number
    if key == "mode" and value not in INIT_MODES:
        msg = f"Invalid mode '{value}'. Choose from: {', '.join(INIT_MODES)}"
        raise ValueError(msg)
    return value


def _require_store(tangle_dir: str | None) -> Path:
    path = resolve_tangle_dir(tangle_dir)
    if not (path / ISSUES_FILENAME).exists():
        msg = f"No tangle store at '{path}'"
        raise NotInitializedError(msg)
    return path


def _flatten(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in config.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))  # type: ignore[arg-type]
        else:
            flat[dotted] = value
    return flat


def register(app: typer.Typer) -> None:
    """Register config commands."""
    app.add_typer(config_app, name="config")

    @config_app.command("set")
    def config_set(
        key: str = typer.Argument(..., help="Dotted configuration key"),
        value: str = typer.Argument(..., help="Value to set"),
        local: bool = typer.Option(
            False,
            "--local",
            help="Save to config.local.toml (git-ignored, this checkout only)",
        ),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Set a configuration value."""
        with cli_errors():
            path = _require_store(tangle_dir)
            coerced = _coerce_value(key, value)
            set_value(path, key, coerced, local=local)
        suffix = " (local)" if local else ""
        typer.echo(f"Set {key} = {coerced}{suffix}")

    @config_app.command("get")
    def config_get(
        key: str = typer.Argument(..., help="Dotted configuration key"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Print a configuration value, or its default when unset."""
        is_json_output(json_output)
        with cli_errors():
            path = _require_store(tangle_dir)
            value = get_value(load_config(path), key)
            if value is None and key not in KNOWN_KEYS:
                msg = f"Key '{key}' not found in config"
                raise ValueError(msg)

        if is_json_output(json_output):
            echo_json({key: value})
        elif isinstance(value, bool):
            typer.echo(str(value).lower())
        else:
            typer.echo(value)

    @config_app.command("list")
    def config_list(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """List the values set in this store's config files."""
        is_json_output(json_output)
        with cli_errors():
            path = _require_store(tangle_dir)
            merged = _flatten(load_config(path))
            local_keys = set(_flatten(load_config(path, local=True)))

        if is_json_output(json_output):
            echo_json(merged)
            return
        if not merged:
            typer.echo("No configuration values set.")
            return
        for key, value in sorted(merged.items()):
            suffix = " (local)" if key in local_keys else ""
            typer.echo(f"{key} = {value}{suffix}")

    @config_app.command("keys")
    def config_keys(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    ) -> None:
        """List the known configuration keys with their defaults."""
        if is_json_output(json_output):
            echo_json(KNOWN_KEYS)
            return

        from rich import box
        from rich.console import Console
        from rich.table import Table

        table = Table(
            show_header=True,
            header_style="bold",
            box=box.ROUNDED,
            pad_edge=False,
            show_edge=False,
        )
        table.add_column("Key", no_wrap=True)
        table.add_column("Type", no_wrap=True)
        table.add_column("Default", no_wrap=True)
        table.add_column("Description", overflow="fold")

        for key, info in KNOWN_KEYS.items():
            default = info["default"]
            table.add_row(
                key,
                info["type"],
                str(default).lower() if isinstance(default, bool) else str(default),
                info["description"],
            )
        Console().print(table)
