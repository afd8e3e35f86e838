"""Read/display commands for the tangle CLI.

Every command here answers from the locally imported state; a read imports
the logs first if they changed on disk.
"""

from __future__ import annotations

from typing import Any

import typer

from tangle.constants import parse_labels
from tangle.models import Status, issue_to_dict
from tangle.session import cycle_warnings

from ._formatting import (
    format_issue_brief,
    format_issue_full,
    format_issue_table,
    get_legend,
)
from ._helpers import _parse_priority_value, cli_errors, open_session
from ._json_state import echo_json, is_json_output


def _build_filters(
    status: str | None,
    issue_type: str | None,
    priority: str | None,
    label: str | None,
    assignee: str | None,
) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    if status is not None:
        try:
            filters["status"] = Status(status).value
        except ValueError:
            valid = ", ".join(s.value for s in Status)
            msg = f"Invalid status '{status}'. Use one of: {valid}"
            raise ValueError(msg) from None
    if issue_type is not None:
        filters["issue_type"] = issue_type
    if priority is not None:
        filters["priority"] = _parse_priority_value(priority)
    if label is not None:
        filters["label"] = parse_labels(label)
    if assignee is not None:
        filters["assignee"] = assignee
    return filters


def register(app: typer.Typer) -> None:
    """Register read/display commands."""

    @app.command("list")
    def list_issues(
        status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
        issue_type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
        priority: str | None = typer.Option(
            None,
            "--priority",
            "-p",
            help="Filter by priority",
        ),
        label: str | None = typer.Option(
            None,
            "--label",
            "-l",
            help="Filter by label (any of, comma or space separated)",
        ),
        assignee: str | None = typer.Option(None, "--assignee", "-a", help="Filter by assignee"),
        show_all: bool = typer.Option(
            False,
            "--all",
            help="Include closed issues",
        ),
        table: bool = typer.Option(False, "--table", help="Render as a table"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """List issues.

        Closed issues are hidden unless --all or --status closed is given.
        """
        is_json_output(json_output)
        with cli_errors():
            filters = _build_filters(status, issue_type, priority, label, assignee)
            with open_session(tangle_dir) as session:
                issues = session.list(filters)
        if status is None and not show_all:
            issues = [i for i in issues if not i.is_closed()]

        if is_json_output(json_output):
            echo_json([issue_to_dict(i, include_derived=True) for i in issues])
            return
        if not issues:
            typer.echo("No issues found")
            return
        if table:
            typer.echo(format_issue_table(issues))
        else:
            for issue in issues:
                typer.echo(format_issue_brief(issue))
            typer.echo(get_legend())

    @app.command()
    def ready(
        issue_type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
        label: str | None = typer.Option(None, "--label", "-l", help="Filter by label"),
        assignee: str | None = typer.Option(None, "--assignee", "-a", help="Filter by assignee"),
        limit: int | None = typer.Option(None, "--limit", "-n", help="Maximum issues to show"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Show issues ready to work (open, no open blockers, not on a cycle).

        Highest priority first, then oldest.
        """
        is_json_output(json_output)
        with cli_errors():
            filters = _build_filters(None, issue_type, None, label, assignee)
            with open_session(tangle_dir) as session:
                issues = session.ready(filters or None)
                warnings = cycle_warnings(session.cycles())
        if limit is not None:
            issues = issues[:limit]

        if is_json_output(json_output):
            echo_json(
                {
                    "issues": [issue_to_dict(i, include_derived=True) for i in issues],
                    "warnings": warnings,
                },
            )
            return
        for warning in warnings:
            typer.echo(typer.style(f"⚠ {warning}", fg="yellow"), err=True)
        if not issues:
            typer.echo("No ready work")
            return
        for issue in issues:
            typer.echo(format_issue_brief(issue))

    @app.command()
    def blocked(
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Show issues waiting on at least one open blocker."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            blocked_issues = session.blocked()
            issues = {b.issue_id: session.get(b.issue_id) for b in blocked_issues}

        if is_json_output(json_output):
            echo_json(
                [
                    {
                        **issue_to_dict(issues[b.issue_id], include_derived=True),
                        "blocked_by": b.blocking_ids,
                        "reason": b.reason,
                    }
                    for b in blocked_issues
                ],
            )
            return
        if not blocked_issues:
            typer.echo("No blocked issues")
            return
        for b in blocked_issues:
            typer.echo(format_issue_brief(issues[b.issue_id], b.blocking_ids))

    @app.command()
    def show(
        issue_id: str = typer.Argument(..., help="Issue ID (full or unique suffix)"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Show an issue with its dependencies and hierarchy."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            view = session.show(issue_id)

        if is_json_output(json_output):
            echo_json(view.to_dict())
        else:
            typer.echo(format_issue_full(view))
