"""Data models for tangle issues using dataclasses."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import orjson

from tangle._version import version as _tangle_version


class Status(str, Enum):
    """Issue status enumeration."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    CLOSED = "closed"


class DependencyType(str, Enum):
    """Dependency edge type enumeration."""

    BLOCKS = "blocks"
    RELATED = "related"
    PARENT_CHILD = "parent-child"
    DISCOVERED_FROM = "discovered-from"


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Issue:
    """An issue in the tracking system."""

    id: str  # Full ID including prefix (e.g., "tg-4kzj")
    title: str
    description: str | None = None
    status: Status = Status.OPEN
    priority: int = 2  # 0-4 range, 4 is critical
    issue_type: str = "task"
    labels: list[str] = field(default_factory=list[str])
    assignee: str | None = None
    parent: str | None = None  # Derived from the parent-child edge
    close_reason: str | None = None
    created_at: datetime = field(default_factory=_now)
    created_by: str | None = None
    updated_at: datetime = field(default_factory=_now)
    updated_by: str | None = None
    closed_at: datetime | None = None

    def is_closed(self) -> bool:
        """Check if the issue is closed."""
        return self.status == Status.CLOSED

    @property
    def prefix(self) -> str:
        """Get the prefix part of the ID (e.g., 'tg' for 'tg-4kzj')."""
        return self.id.rsplit("-", 1)[0] if "-" in self.id else ""

    def get_status_emoji(self) -> str:
        """Get an emoji representation of the status."""
        status_emojis = {
            Status.OPEN: "●",
            Status.IN_PROGRESS: "◐",
            Status.BLOCKED: "■",
            Status.REVIEW: "?",
            Status.CLOSED: "✓",
        }
        return status_emojis.get(self.status, "?")


@dataclass
class Dependency:
    """A typed edge between two issues, keyed by (from_id, to_id, dep_type)."""

    from_id: str
    to_id: str
    dep_type: DependencyType
    created_at: datetime = field(default_factory=_now)
    created_by: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Identity tuple of the edge."""
        return (self.from_id, self.to_id, self.dep_type.value)


@dataclass
class Tombstone:
    """A permanent deletion marker for an issue id."""

    id: str
    deleted_at: datetime = field(default_factory=_now)
    deleted_by: str | None = None
    reason: str | None = None


def validate_priority(priority: Any) -> None:
    """Validate that priority is in valid range (0-4)."""
    if isinstance(priority, bool) or not isinstance(priority, int):
        msg = "Priority must be an integer between 0 and 4"
        raise ValueError(msg)
    if priority < 0 or priority > 4:
        msg = "Priority must be an integer between 0 and 4"
        raise ValueError(msg)


def validate_issue(issue: Issue) -> None:
    """Validate that an issue has all required fields and valid data."""
    if not isinstance(issue.title, str) or not issue.title.strip():
        msg = "Issue must have a non-empty title"
        raise ValueError(msg)
    validate_priority(issue.priority)
    if not isinstance(issue.status, Status):
        msg = f"Status must be a Status enum value, got {issue.status}"
        raise TypeError(msg)
    if not issue.issue_type:
        msg = "Issue type must not be empty"
        raise ValueError(msg)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def issue_to_dict(issue: Issue, *, include_derived: bool = False) -> dict[str, Any]:
    """Convert an Issue to a log record dictionary, serializing datetimes.

    The parent reference lives on the parent-child edge, so it is only
    emitted when ``include_derived`` is set (for display and JSON output).
    """
    data: dict[str, Any] = {
        "record_type": "issue",
        "tangle_version": _tangle_version,
        "id": issue.id,
        "title": issue.title,
        "description": issue.description,
        "status": issue.status.value,
        "priority": issue.priority,
        "issue_type": issue.issue_type,
        "labels": sorted(set(issue.labels)),
        "assignee": issue.assignee,
        "close_reason": issue.close_reason,
        "created_at": issue.created_at.isoformat(),
        "created_by": issue.created_by,
        "updated_at": issue.updated_at.isoformat(),
        "updated_by": issue.updated_by,
        "closed_at": issue.closed_at.isoformat() if issue.closed_at else None,
    }
    if include_derived:
        data["parent"] = issue.parent
    return data


def dict_to_issue(data: dict[str, Any]) -> Issue:
    """Convert a dictionary to an Issue, deserializing datetimes."""
    return Issue(
        id=data["id"],
        title=data["title"],
        description=data.get("description"),
        status=Status(data.get("status", Status.OPEN.value)),
        priority=data.get("priority", 2),
        issue_type=data.get("issue_type") or "task",
        labels=sorted(set(data.get("labels") or [])),
        assignee=data.get("assignee"),
        parent=data.get("parent"),
        close_reason=data.get("close_reason"),
        created_at=parse_timestamp(data["created_at"]),
        created_by=data.get("created_by"),
        updated_at=parse_timestamp(data["updated_at"]),
        updated_by=data.get("updated_by"),
        closed_at=parse_timestamp(data["closed_at"]) if data.get("closed_at") else None,
    )


def dependency_to_dict(
    dep: Dependency,
    *,
    op: str = "add",
    at: datetime | None = None,
) -> dict[str, Any]:
    """Serialize an edge operation to a log record.

    ``at`` is the time of the operation; it defaults to the edge's creation
    time for ``add`` records.
    """
    return {
        "record_type": "edge",
        "tangle_version": _tangle_version,
        "op": op,
        "from": dep.from_id,
        "to": dep.to_id,
        "type": dep.dep_type.value,
        "at": (at or dep.created_at).isoformat(),
        "created_at": dep.created_at.isoformat(),
        "created_by": dep.created_by,
    }


def dict_to_dependency(data: dict[str, Any]) -> Dependency:
    """Convert an edge record to a Dependency."""
    return Dependency(
        from_id=data["from"],
        to_id=data["to"],
        dep_type=DependencyType(data["type"]),
        created_at=parse_timestamp(data.get("created_at") or data["at"]),
        created_by=data.get("created_by"),
    )


def tombstone_to_dict(tombstone: Tombstone) -> dict[str, Any]:
    """Serialize a tombstone to a log record."""
    return {
        "record_type": "tombstone",
        "tangle_version": _tangle_version,
        "id": tombstone.id,
        "deleted_at": tombstone.deleted_at.isoformat(),
        "deleted_by": tombstone.deleted_by,
        "reason": tombstone.reason,
    }


def dict_to_tombstone(data: dict[str, Any]) -> Tombstone:
    """Convert a tombstone record to a Tombstone."""
    return Tombstone(
        id=data["id"],
        deleted_at=parse_timestamp(data["deleted_at"]),
        deleted_by=data.get("deleted_by"),
        reason=data.get("reason"),
    )


def classify_record(data: dict[str, Any]) -> str:
    """Classify a JSONL record as 'issue', 'edge', or 'tombstone'.

    Checks for an explicit ``record_type`` field first, then falls back to
    field-sniffing for records written by hand.
    """
    explicit = data.get("record_type")
    if explicit in ("issue", "edge", "tombstone"):
        return explicit  # type: ignore[return-value]

    if "from" in data and "to" in data:
        return "edge"
    if "deleted_at" in data and "title" not in data:
        return "tombstone"
    return "issue"


def record_hash(data: dict[str, Any]) -> str:
    """Return a canonical sha256 of a record, ignoring the writer's version stamp."""
    canonical = {k: v for k, v in data.items() if k != "tangle_version"}
    return hashlib.sha256(orjson.dumps(canonical, option=orjson.OPT_SORT_KEYS)).hexdigest()


def record_version(data: dict[str, Any]) -> tuple[datetime, str]:
    """Ordering key for competing versions of the same issue.

    Later ``updated_at`` wins; identical timestamps fall back to the content
    hash so every replica picks the same winner.
    """
    return (parse_timestamp(data["updated_at"]), record_hash(data))
