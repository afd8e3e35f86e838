"""Update, close, reopen and delete commands for the tangle CLI."""

from __future__ import annotations

from typing import Any

import typer

from tangle.constants import parse_labels
from tangle.errors import EXIT_OK, TangleError
from tangle.models import issue_to_dict, tombstone_to_dict

from ._helpers import _parse_priority_value, cli_errors, open_session
from ._json_state import echo_error, echo_json, is_json_output


def register(app: typer.Typer) -> None:
    """Register update, close, reopen and delete commands."""

    @app.command()
    def update(
        issue_id: str = typer.Argument(..., help="Issue ID"),
        title: str | None = typer.Option(None, "--title", help="New title"),
        status: str | None = typer.Option(
            None,
            "--status",
            "-s",
            help="New status (open, in_progress, blocked, review, closed)",
        ),
        priority: int | None = typer.Option(
            None,
            "--priority",
            "-p",
            help="New priority (0-4, pN, or a name)",
            parser=_parse_priority_value,
            metavar="PRIORITY",
        ),
        issue_type: str | None = typer.Option(None, "--type", "-t", help="New issue type"),
        description: str | None = typer.Option(
            None,
            "--description",
            "-d",
            help="New description",
        ),
        assignee: str | None = typer.Option(None, "--assignee", "-a", help="New assignee"),
        parent: str | None = typer.Option(
            None,
            "--parent",
            help="New parent issue ID ('' to detach)",
        ),
        add_label: list[str] = typer.Option(  # noqa: B008
            [],
            "--add-label",
            help="Add a label (repeatable)",
        ),
        remove_label: list[str] = typer.Option(  # noqa: B008
            [],
            "--remove-label",
            help="Remove a label (repeatable)",
        ),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Update an issue's fields."""
        is_json_output(json_output)
        updates: dict[str, Any] = {}
        if title is not None:
            updates["title"] = title
        if status is not None:
            updates["status"] = status
        if priority is not None:
            updates["priority"] = priority
        if issue_type is not None:
            updates["issue_type"] = issue_type
        if description is not None:
            updates["description"] = description
        if assignee is not None:
            updates["assignee"] = assignee
        if parent is not None:
            updates["parent"] = parent or None

        with cli_errors(), open_session(tangle_dir) as session:
            if add_label or remove_label:
                current = set(session.get(issue_id).labels)
                for raw in add_label:
                    current.update(parse_labels(raw))
                for raw in remove_label:
                    current.difference_update(parse_labels(raw))
                updates["labels"] = sorted(current)
            if not updates:
                msg = "No updates given"
                raise ValueError(msg)
            issue = session.update(issue_id, updates)

        if is_json_output(json_output):
            echo_json(issue_to_dict(issue, include_derived=True))
        else:
            typer.echo(f"✓ Updated {issue.id}: {issue.title}")

    @app.command()
    def close(
        issue_ids: list[str] = typer.Argument(  # noqa: B008
            ...,
            help="Issue ID(s) to close",
        ),
        reason: str | None = typer.Option(
            None,
            "--reason",
            "-r",
            help="Reason for closing",
        ),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Close one or more issues."""
        is_json_output(json_output)
        exit_code = EXIT_OK
        with cli_errors(), open_session(tangle_dir) as session:
            for issue_id in issue_ids:
                try:
                    issue = session.close_issue(issue_id, reason)
                except (TangleError, ValueError) as e:
                    echo_error(e if isinstance(e, TangleError) else str(e))
                    exit_code = getattr(e, "exit_code", 1)
                    continue
                if is_json_output(json_output):
                    echo_json(issue_to_dict(issue, include_derived=True))
                else:
                    typer.echo(f"✓ Closed {issue.id}: {issue.title}")
        if exit_code != EXIT_OK:
            raise typer.Exit(exit_code)

    @app.command()
    def reopen(
        issue_id: str = typer.Argument(..., help="Issue ID to reopen"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Reopen a closed issue."""
        is_json_output(json_output)
        with cli_errors(), open_session(tangle_dir) as session:
            issue = session.reopen(issue_id)
        if is_json_output(json_output):
            echo_json(issue_to_dict(issue, include_derived=True))
        else:
            typer.echo(f"✓ Reopened {issue.id}: {issue.title}")

    @app.command()
    def delete(
        issue_ids: list[str] = typer.Argument(  # noqa: B008
            ...,
            help="Issue ID(s) to delete",
        ),
        reason: str | None = typer.Option(
            None,
            "--reason",
            "-r",
            help="Reason for deletion",
        ),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        """Delete issues permanently.

        A deleted ID is tombstoned: it is never reused, and no merge can bring
        the issue back.
        """
        is_json_output(json_output)
        exit_code = EXIT_OK
        with cli_errors(), open_session(tangle_dir) as session:
            for issue_id in issue_ids:
                try:
                    tomb = session.delete(issue_id, reason)
                except TangleError as e:
                    echo_error(e)
                    exit_code = e.exit_code
                    continue
                if is_json_output(json_output):
                    echo_json(tombstone_to_dict(tomb))
                else:
                    typer.echo(f"✓ Deleted {tomb.id}")
        if exit_code != EXIT_OK:
            raise typer.Exit(exit_code)
