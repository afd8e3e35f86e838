"""Dependency commands for the tangle CLI."""

from __future__ import annotations

import typer

from tangle.models import DependencyType, dependency_to_dict
from tangle.session import cycle_warnings

from ._formatting import format_blocker_tree, format_hierarchy
from ._helpers import SortedGroup, cli_errors, open_session
from ._json_state import echo_json, is_json_output

# Sub-app for 'tg dep' subcommands
dep_app = typer.Typer(
    help="Manage dependencies between issues.",
    no_args_is_help=True,
    cls=SortedGroup,
)

_TYPE_HELP = "Edge type: " + ", ".join(t.value for t in DependencyType)


def register(app: typer.Typer) -> None:
    """Register dep commands."""
    app.add_typer(dep_app, name="dep")

    @dep_app.command("add")
    def dep_add(
        from_id: str = typer.Argument(..., help="Source issue (the blocker, parent, ...)"),
        to_id: str = typer.Argument(..., help="Target issue (the blocked issue, child, ...)"),
        dep_type: str = typer.Option("blocks", "--type", "-t", help=_TYPE_HELP),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Add a dependency: FROM_ID <type> TO_ID.

        'tg dep add A B' means A blocks B. A cycle of blocks edges is
        accepted with a warning; issues on it are left out of ready work.
        """
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            dep, warnings = session.add_dependency(from_id, to_id, dep_type)

        if is_json_output(json_output):
            echo_json({**dependency_to_dict(dep), "warnings": warnings})
            return
        typer.echo(f"✓ Added dependency: {dep.from_id} {dep.dep_type.value} {dep.to_id}")
        for warning in warnings:
            typer.echo(typer.style(f"⚠ {warning}", fg="yellow"), err=True)

    @dep_app.command("remove")
    def dep_remove(
        from_id: str = typer.Argument(..., help="Source issue"),
        to_id: str = typer.Argument(..., help="Target issue"),
        dep_type: str = typer.Option("blocks", "--type", "-t", help=_TYPE_HELP),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Remove a dependency."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            removed = session.remove_dependency(from_id, to_id, dep_type)

        if is_json_output(json_output):
            echo_json({"removed": removed, "from": from_id, "to": to_id, "type": dep_type})
        elif removed:
            typer.echo(f"✓ Removed dependency: {from_id} {dep_type} {to_id}")
        else:
            typer.echo(f"No {dep_type} dependency from {from_id} to {to_id}")

    @dep_app.command("tree")
    def dep_tree(
        issue_id: str = typer.Argument(..., help="Issue ID"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Show an issue's hierarchy and what blocks it, transitively."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            tree = session.tree(issue_id)

        if is_json_output(json_output):
            echo_json(tree)
            return
        typer.echo(typer.style("Hierarchy:", bold=True))
        typer.echo(format_hierarchy(tree["hierarchy"]))
        typer.echo(typer.style("\nBlockers:", bold=True))
        if tree["blockers"]["blocked_by"]:
            typer.echo("\n".join(format_blocker_tree(tree["blockers"])))
        else:
            typer.echo("  (none)")

    @dep_app.command("cycles")
    def dep_cycles(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """List cycles among blocks edges."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            cycles = session.cycles()

        if is_json_output(json_output):
            echo_json({"cycles": cycles, "warnings": cycle_warnings(cycles)})
            return
        if not cycles:
            typer.echo("✓ No dependency cycles")
            return
        for warning in cycle_warnings(cycles):
            typer.echo(typer.style(f"⚠ {warning}", fg="yellow"))
