"""tangle CLI commands for dependency-aware issue tracking."""

from __future__ import annotations

import typer

from ._helpers import SortedGroup

app = typer.Typer(
    help="tangle - distributed, dependency-aware issue tracking "
    "that lives next to your code in git",
    no_args_is_help=True,
    cls=SortedGroup,
)


@app.callback(invoke_without_command=True)
def _global_options(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON for all commands",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output to stderr",
    ),
) -> None:
    from tangle.log import setup_cli_logging

    from ._json_state import set_json_flag

    set_json_flag(json_output)
    setup_cli_logging(verbose)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


from . import (  # noqa: E402
    _cmd_config,
    _cmd_create,
    _cmd_daemon,
    _cmd_dep,
    _cmd_doctor,
    _cmd_git,
    _cmd_init,
    _cmd_read,
    _cmd_sync,
    _cmd_update,
)

for _mod in (
    _cmd_config,
    _cmd_create,
    _cmd_daemon,
    _cmd_dep,
    _cmd_doctor,
    _cmd_git,
    _cmd_init,
    _cmd_read,
    _cmd_sync,
    _cmd_update,
):
    _mod.register(app)


def main() -> None:
    """Run the tangle CLI application."""
    app()
