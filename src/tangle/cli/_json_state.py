"""Global JSON output state for the tangle CLI."""

from __future__ import annotations

import sys

import orjson
import typer

from tangle.errors import TangleError

_global_json: bool = False


def set_json_flag(value: bool) -> None:
    """Set the global JSON output flag."""
    global _global_json  # noqa: PLW0603
    _global_json = value


def is_json_output(local_flag: bool = False) -> bool:
    """Check if JSON output is enabled (global or local flag).

    Also syncs the local flag to global state so that ``echo_error``
    outputs JSON when the per-command ``--json`` flag is used.
    """
    global _global_json  # noqa: PLW0603
    if local_flag and not _global_json:
        _global_json = True
    return local_flag or _global_json


def echo_json(data: object) -> None:
    """Write ``data`` to stdout as a single JSON document."""
    typer.echo(orjson.dumps(data).decode())


def echo_error(error: str | TangleError) -> None:
    """Output an error, formatted as JSON if in JSON mode.

    In JSON mode, outputs ``{"error", "code", "ids", "remedy"}`` to stderr.
    In plain mode, outputs ``Error: ...`` plus the remedy to stderr.
    """
    if isinstance(error, TangleError):
        payload = error.to_dict()
    else:
        payload = {"error": error, "code": 1, "ids": [], "remedy": None}

    if _global_json:
        sys.stderr.write(orjson.dumps(payload).decode() + "\n")
        return
    message = f"Error: {payload['error']}"
    ids = payload["ids"]
    if ids and not all(str(i) in message for i in ids):  # type: ignore[union-attr]
        message += f" ({', '.join(ids)})"  # type: ignore[arg-type]
    typer.echo(message, err=True)
    if payload["remedy"]:
        typer.echo(f"  Hint: {payload['remedy']}", err=True)
