"""Display and formatting functions for the tangle CLI."""

from __future__ import annotations

from io import StringIO
from typing import TYPE_CHECKING, Any

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tangle.constants import PRIORITY_COLORS, STATUS_COLORS, TYPE_COLORS

if TYPE_CHECKING:
    from tangle.models import Issue
    from tangle.session import IssueView


def get_legend() -> str:
    """Get a legend explaining status symbols and colors."""
    legend_lines = [
        "",
        "Legend:",
        "  Status: ● Open  ◐ In Progress  ? In Review  ■ Blocked  ✓ Closed",
        "  Priority: 0 (Lowest) → 4 (Critical)",
    ]
    return "\n".join(legend_lines)


def format_issue_brief(issue: Issue, blocked_by: list[str] | None = None) -> str:
    """Format issue for brief display with color coding.

    Args:
        issue: The issue to format
        blocked_by: IDs of open issues blocking this one

    Returns:
        Formatted string with status emoji, priority, ID, title, and type
    """
    status_emoji = "■" if blocked_by else issue.get_status_emoji()

    priority_color = PRIORITY_COLORS.get(issue.priority, "white")
    priority_str = typer.style(f"[{issue.priority}]", fg=priority_color, bold=True)

    type_color = TYPE_COLORS.get(issue.issue_type, "white")
    type_str = typer.style(f"[{issue.issue_type}]", fg=type_color)

    parent_str = (
        typer.style(f" [parent: {issue.parent}]", fg="bright_black")
        if issue.parent
        else ""
    )
    labels_str = ""
    if issue.labels:
        labels_str = " " + typer.style(f"[{', '.join(issue.labels)}]", fg="cyan")
    blocked_by_str = ""
    if blocked_by:
        blocked_by_str = " " + typer.style(f"[blocked by: {', '.join(blocked_by)}]", fg="red")
    base = f"{status_emoji} {priority_str} {issue.id}: {issue.title} {type_str}"
    return f"{base}{parent_str}{labels_str}{blocked_by_str}"


def _styled_key(label: str) -> str:
    """Style a field label as bold cyan."""
    return typer.style(label, fg="cyan", bold=True)


def format_issue_full(view: IssueView) -> str:
    """Format an issue and its edges for ``show``."""
    key = _styled_key
    issue = view.issue
    status_color = STATUS_COLORS.get(issue.status.value, "white")
    lines = [
        f"{key('ID:')} {issue.id}",
        f"{key('Title:')} {issue.title}",
        "",
        f"{key('Status:')} {typer.style(issue.status.value, fg=status_color)}",
        f"{key('Priority:')} {issue.priority}",
        f"{key('Type:')} {issue.issue_type}",
    ]
    if view.display_id != issue.id:
        lines.insert(1, f"{key('Display ID:')} {view.display_id}")
    lines.append("")

    if issue.parent:
        lines.append(f"{key('Parent:')} {issue.parent}")
    if issue.assignee:
        lines.append(f"{key('Assignee:')} {issue.assignee}")
    if issue.labels:
        lines.append(f"{key('Labels:')} {', '.join(issue.labels)}")

    dt_fmt = "%Y-%m-%d %H:%M:%S"
    created = f"{key('Created:')} {issue.created_at.strftime(dt_fmt)}"
    if issue.created_by:
        created += f" by {issue.created_by}"
    lines.append(created)
    if issue.closed_at:
        closed_line = f"{key('Closed:')} {issue.closed_at.strftime(dt_fmt)}"
        if issue.close_reason:
            closed_line += f" ({issue.close_reason})"
        lines.append(closed_line)

    if issue.description:
        lines.append(f"\n{key('Description:')}\n{issue.description}")

    sections = [
        ("Blocked by:", view.blocked_by),
        ("Blocks:", view.blocks),
        ("Children:", view.children),
        ("Related:", view.related),
        ("Discovered from:", view.discovered_from),
        ("Discovered:", view.discovered),
    ]
    for label, ids in sections:
        if ids:
            lines.append(f"\n{key(label)}")
            lines.extend(f"  → {i}" for i in ids)

    for warning in view.warnings:
        lines.append(typer.style(f"\n⚠ {warning}", fg="yellow"))

    return "\n".join(lines)


def format_issue_table(
    issues: list[Issue],
    blocked_by_map: dict[str, list[str]] | None = None,
) -> str:
    """Format issues as an aligned table with columns using Rich.

    Args:
        issues: List of issues to format
        blocked_by_map: Mapping of issue ID to list of blocking issue IDs

    Returns:
        Formatted table string (rendered by Rich)
    """
    if not issues:
        return ""

    has_blocked = bool(blocked_by_map) and any(i.id in blocked_by_map for i in issues)  # type: ignore[operator]

    table = Table(
        show_header=True,
        header_style="bold",
        box=box.ROUNDED,
        pad_edge=False,
        show_edge=False,
    )
    table.add_column("", width=2, no_wrap=True)
    table.add_column("ID", no_wrap=True)
    table.add_column("Parent", no_wrap=True)
    table.add_column("Type", no_wrap=True)
    table.add_column("Pri", width=3, no_wrap=True)
    table.add_column("Title", overflow="fold")
    table.add_column("Labels", no_wrap=False)
    if has_blocked:
        table.add_column("Blocked By", no_wrap=False)

    for issue in issues:
        blockers = (blocked_by_map or {}).get(issue.id, [])
        emoji = "■" if blockers else issue.get_status_emoji()
        priority_color = f"bold {PRIORITY_COLORS.get(issue.priority, 'white')}"
        type_color = TYPE_COLORS.get(issue.issue_type, "white")
        labels_str = ", ".join(escape(lbl) for lbl in issue.labels)

        row = [
            emoji,
            issue.id,
            issue.parent or "",
            f"[{type_color}]{escape(issue.issue_type)}[/]",
            f"[{priority_color}]{issue.priority}[/]",
            escape(issue.title),
            f"[cyan]{labels_str}[/]" if labels_str else "",
        ]
        if has_blocked:
            row.append(f"[red]{', '.join(blockers)}[/]" if blockers else "")
        table.add_row(*row)

    string_io = StringIO()
    console = Console(file=string_io, force_terminal=True, width=None)
    console.print(table)
    return string_io.getvalue().rstrip()


def format_hierarchy(entries: list[dict[str, Any]]) -> str:
    """Indented parent-child tree from ``Session.tree()['hierarchy']``."""
    lines = []
    for entry in entries:
        indent = "  " * entry["depth"]
        status = entry["status"]
        color = STATUS_COLORS.get(status, "white")
        lines.append(
            f"{indent}{entry['display_id']} {entry['title']} "
            + typer.style(f"[{status}]", fg=color),
        )
    return "\n".join(lines)


def format_blocker_tree(node: dict[str, Any]) -> list[str]:
    """Indented lines for a nested ``dependency_tree`` result."""
    lines: list[str] = []
    work: list[tuple[dict[str, Any], int]] = [(node, 0)]
    while work:
        current, depth = work.pop()
        indent = "  " * depth
        arrow = "← " if depth else ""
        line = f"{indent}{arrow}{current['id']} {current['title']} [{current['status']}]"
        if current.get("cycle"):
            line += typer.style(" (cycle)", fg="red")
        if current.get("truncated"):
            line += typer.style(" (...)", fg="bright_black")
        lines.append(line)
        work.extend((child, depth + 1) for child in reversed(current["blocked_by"]))
    return lines
