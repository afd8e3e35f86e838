"""Create command for the tangle CLI."""

from __future__ import annotations

import typer

from tangle.constants import DEFAULT_PRIORITY, DEFAULT_TYPE, parse_labels
from tangle.models import issue_to_dict

from ._helpers import _parse_priority_value, cli_errors, open_session
from ._json_state import echo_json, is_json_output

_CREATE_DOC = """\
Create a new issue.

If the title starts with --, use -- to stop option parsing:
    tg create -- "--flag is not a flag"

Examples:
    tg create "Fix login bug"                # Priority 2, type task
    tg create "Fix login bug" -p 4           # Critical
    tg create "Fix login bug" -p high        # Priority by name
    tg create "Add export" -t feature -l ui  # Type and labels
    tg create "Write tests" --parent tg-a3f8 # Child of an epic\
"""


def register(app: typer.Typer) -> None:
    """Register the create command."""

    @app.command(help=_CREATE_DOC)
    def create(
        title: str = typer.Argument(..., help="Issue title"),
        description: str | None = typer.Option(
            None,
            "--description",
            "-d",
            help="Issue description",
        ),
        priority: str = typer.Option(
            str(DEFAULT_PRIORITY),
            "--priority",
            "-p",
            help="Priority 0-4 (4 is critical), pN, or a name",
        ),
        issue_type: str = typer.Option(
            DEFAULT_TYPE,
            "--type",
            "-t",
            help="Issue type (task, bug, feature, epic, ...)",
        ),
        labels: str | None = typer.Option(
            None,
            "--labels",
            "-l",
            help="Labels (comma or space separated)",
        ),
        assignee: str | None = typer.Option(None, "--assignee", "-a", help="Assignee"),
        parent: str | None = typer.Option(None, "--parent", help="Parent issue ID"),
        json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
        tangle_dir: str | None = typer.Option(
            None,
            "--tangle-dir",
            help="Path to .tangle directory",
        ),
    ) -> None:
        is_json_output(json_output)
        with cli_errors():
            priority_value = _parse_priority_value(priority)
            with open_session(tangle_dir) as session:
                issue = session.create(
                    title,
                    description=description,
                    priority=priority_value,
                    issue_type=issue_type,
                    labels=parse_labels(labels) if labels else [],
                    assignee=assignee,
                    parent=parent,
                )

        if is_json_output(json_output):
            echo_json(issue_to_dict(issue, include_derived=True))
        else:
            typer.echo(f"✓ Created {issue.id}: {issue.title}")
