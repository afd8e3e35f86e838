"""Session: the one object that owns a store's cache, sync engine and lock.

A process constructs one :class:`Session` per store and tears it down when
done (``with Session(...) as session:``). Teardown flushes pending exports,
closes the cache and releases the lock.

Consistency: every query reflects only state this session has imported from
the logs. A read first checks whether the logs changed and re-imports if so;
it never observes another process's unexported edits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tangle import deps
from tangle.cache import Cache
from tangle.config import debounce_seconds as configured_debounce
from tangle.config import get_issue_prefix
from tangle.constants import BLOCKER_TREE_MAX_DEPTH, CACHE_FILENAME, SESSION_LOCK_FILENAME
from tangle.errors import IssueNotFoundError, InvalidDependency
from tangle.idgen import allocate_id
from tangle.locks import SessionLock
from tangle.models import (
    Dependency,
    DependencyType,
    Issue,
    Status,
    Tombstone,
    dependency_to_dict,
    dict_to_issue,
    issue_to_dict,
    tombstone_to_dict,
    validate_issue,
    validate_priority,
)
from tangle.storage import IssueLog, TombstoneLog, replay
from tangle.sync import SyncEngine

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def _after(previous: datetime | None) -> datetime:
    """Now, or just after ``previous`` if the clock has not moved past it."""
    now = datetime.now().astimezone()
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


@dataclass
class IssueView:
    """An issue together with its graph neighbourhood, for ``show``."""

    issue: Issue
    display_id: str
    blocked_by: list[str] = field(default_factory=list[str])
    blocks: list[str] = field(default_factory=list[str])
    children: list[str] = field(default_factory=list[str])
    ancestors: list[str] = field(default_factory=list[str])
    related: list[str] = field(default_factory=list[str])
    discovered_from: list[str] = field(default_factory=list[str])
    discovered: list[str] = field(default_factory=list[str])
    warnings: list[str] = field(default_factory=list[str])

    def to_dict(self) -> dict[str, Any]:
        """JSON form: the issue record plus graph fields."""
        data = issue_to_dict(self.issue, include_derived=True)
        data.update(
            {
                "display_id": self.display_id,
                "blocked_by": self.blocked_by,
                "blocks": self.blocks,
                "children": self.children,
                "ancestors": self.ancestors,
                "related": self.related,
                "discovered_from": self.discovered_from,
                "discovered": self.discovered,
                "warnings": self.warnings,
            },
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueView:
        """Inverse of :meth:`to_dict`."""
        return cls(
            issue=dict_to_issue(data),
            display_id=data["display_id"],
            blocked_by=list(data.get("blocked_by", [])),
            blocks=list(data.get("blocks", [])),
            children=list(data.get("children", [])),
            ancestors=list(data.get("ancestors", [])),
            related=list(data.get("related", [])),
            discovered_from=list(data.get("discovered_from", [])),
            discovered=list(data.get("discovered", [])),
            warnings=list(data.get("warnings", [])),
        )


def _dependency_type(value: DependencyType | str) -> DependencyType:
    try:
        return DependencyType(value)
    except ValueError:
        valid = ", ".join(t.value for t in DependencyType)
        msg = f"Invalid dependency type '{value}'. Use one of: {valid}"
        raise InvalidDependency(msg) from None


def cycle_warnings(cycles: list[list[str]]) -> list[str]:
    """Human-readable warnings for detected ``blocks`` cycles."""
    return [
        "Dependency cycle detected: " + " -> ".join(cycle)
        + " (these issues are excluded from ready work)"
        for cycle in cycles
    ]


class Session:
    """Owns the cache handle, sync engine and lock for one store."""

    UPDATABLE_FIELDS: frozenset[str] = frozenset(
        {
            "title",
            "description",
            "status",
            "priority",
            "issue_type",
            "labels",
            "assignee",
            "close_reason",
            "parent",
        },
    )

    def __init__(
        self,
        tangle_dir: str | Path,
        *,
        debounce_seconds: float | None = None,
        writer: str | None = None,
        lock_timeout: float = 10.0,
    ) -> None:
        """Open a session on a store.

        Args:
            tangle_dir: Path to the .tangle directory
            debounce_seconds: Export coalescing window; defaults to the
                configured value
            writer: Identity recorded on created/updated records
            lock_timeout: Seconds to wait for another process's session

        Raises:
            NotInitializedError: If no store exists at ``tangle_dir``.
            CorruptionError: If the cache database is unreadable.
        """
        self.tangle_dir = Path(tangle_dir)
        self.log = IssueLog(self.tangle_dir)
        self.tombstones = TombstoneLog(self.tangle_dir)
        self.writer = writer
        self.prefix = get_issue_prefix(self.tangle_dir)
        if debounce_seconds is None:
            debounce_seconds = configured_debounce(self.tangle_dir)

        self.lock = SessionLock(self.tangle_dir / SESSION_LOCK_FILENAME, timeout=lock_timeout)
        self.lock.acquire()
        try:
            self.cache = Cache(self.tangle_dir / CACHE_FILENAME)
        except Exception:
            self.lock.release()
            raise
        self.sync_engine = SyncEngine(
            self.log,
            self.tombstones,
            self.cache,
            debounce_seconds=debounce_seconds,
        )
        self._closed = False

    def __enter__(self) -> Session:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Flush pending exports, close the cache and release the lock."""
        if self._closed:
            return
        self._closed = True
        try:
            self.sync_engine.close()
        finally:
            try:
                self.cache.close()
            finally:
                self.lock.release()

    # -- internals ----------------------------------------------------------

    def _refresh(self) -> None:
        self.sync_engine.import_if_stale()

    def _commit(
        self,
        issue_records: list[dict[str, Any]] | None = None,
        tombstone_records: list[dict[str, Any]] | None = None,
    ) -> None:
        if issue_records:
            self.cache.enqueue("issues", issue_records)
        if tombstone_records:
            self.cache.enqueue("tombstones", tombstone_records)
        self.sync_engine.schedule_export()

    def _resolve(self, issue_id: str) -> str:
        resolved = self.cache.resolve_id(issue_id)
        if resolved is not None:
            return resolved
        tomb = self.cache.get_tombstone(issue_id)
        if tomb is not None:
            msg = f"Issue {issue_id} was deleted"
            raise IssueNotFoundError(msg, ids=[issue_id])
        msg = f"Issue {issue_id} not found"
        raise IssueNotFoundError(msg, ids=[issue_id])

    def graph(self) -> deps.Graph:
        """Dependency graph over the imported state."""
        self._refresh()
        return deps.Graph.from_snapshot(self.cache.snapshot())

    # -- mutations ----------------------------------------------------------

    def create(
        self,
        title: str,
        *,
        description: str | None = None,
        priority: int = 2,
        issue_type: str = "task",
        labels: list[str] | None = None,
        assignee: str | None = None,
        parent: str | None = None,
    ) -> Issue:
        """Create an issue and queue it for export.

        Raises:
            ValueError: If the title or priority is invalid
            IssueNotFoundError: If ``parent`` does not exist
            DepthExceeded: If ``parent`` is already at the maximum depth
        """
        self._refresh()
        now = datetime.now().astimezone()
        issue = Issue(
            id="",
            title=title,
            description=description,
            priority=priority,
            issue_type=issue_type,
            labels=sorted(set(labels or [])),
            assignee=assignee,
            created_at=now,
            created_by=self.writer,
            updated_at=now,
            updated_by=self.writer,
        )
        validate_issue(issue)

        parent_id = None
        if parent:
            parent_id = self._resolve(parent)
            deps.check_parent_depth(self.graph(), parent_id)

        issue.id = allocate_id(self.cache.all_ids(), prefix=self.prefix, writer=self.writer)
        self.cache.upsert_issue(issue)
        records = [issue_to_dict(issue)]
        if parent_id:
            edge = Dependency(
                from_id=parent_id,
                to_id=issue.id,
                dep_type=DependencyType.PARENT_CHILD,
                created_at=now,
                created_by=self.writer,
            )
            self.cache.add_edge(edge)
            records.append(dependency_to_dict(edge))
            issue.parent = parent_id
        self._commit(records)
        logger.debug("Created %s", issue.id)
        return issue

    def update(self, issue_id: str, updates: dict[str, Any]) -> Issue:
        """Update fields of an issue.

        Args:
            issue_id: Full or partial ID
            updates: Field values; only ``UPDATABLE_FIELDS`` are accepted

        Returns:
            The updated issue

        Raises:
            IssueNotFoundError: If the issue doesn't exist or is tombstoned
            ValueError: If a field is unknown or a value is invalid
        """
        self._refresh()
        resolved = self._resolve(issue_id)
        issue = self.cache.get_issue(resolved)
        assert issue is not None

        unknown = set(updates) - self.UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        records: list[dict[str, Any]] = []
        stamp = _after(issue.updated_at)

        if "parent" in updates:
            records.extend(self._reparent(issue, updates["parent"], stamp))

        old_status = issue.status
        for key, value in updates.items():
            if key == "parent":
                continue
            if key == "priority":
                validate_priority(value)
            elif key == "status":
                value = Status(value)
            elif key == "labels":
                value = sorted(set(value or []))
            elif key == "title" and (not isinstance(value, str) or not value.strip()):
                msg = "Issue must have a non-empty title"
                raise ValueError(msg)
            setattr(issue, key, value)

        if issue.status is Status.CLOSED and old_status is not Status.CLOSED:
            issue.closed_at = stamp
        elif issue.status is not Status.CLOSED and old_status is Status.CLOSED:
            issue.closed_at = None
            issue.close_reason = None

        issue.updated_at = stamp
        issue.updated_by = self.writer
        self.cache.upsert_issue(issue)
        records.insert(0, issue_to_dict(issue))
        self._commit(records)
        return issue

    def _reparent(self, issue: Issue, new_parent: str | None, stamp: datetime) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        new_parent_id = self._resolve(new_parent) if new_parent else None
        if new_parent_id == issue.parent:
            return records
        if new_parent_id is not None:
            deps.check_parent_depth(self.graph(), new_parent_id, issue.id)
        if issue.parent:
            old = Dependency(issue.parent, issue.id, DependencyType.PARENT_CHILD)
            self.cache.remove_edge(*old.key[:2], DependencyType.PARENT_CHILD)
            records.append(dependency_to_dict(old, op="remove", at=stamp))
        if new_parent_id is not None:
            edge = Dependency(
                new_parent_id,
                issue.id,
                DependencyType.PARENT_CHILD,
                created_at=stamp,
                created_by=self.writer,
            )
            self.cache.add_edge(edge)
            records.append(dependency_to_dict(edge))
        issue.parent = new_parent_id
        return records

    def close_issue(self, issue_id: str, reason: str | None = None) -> Issue:
        """Close an issue with an optional reason."""
        updates: dict[str, Any] = {"status": Status.CLOSED}
        if reason:
            updates["close_reason"] = reason
        return self.update(issue_id, updates)

    def reopen(self, issue_id: str) -> Issue:
        """Reopen a closed issue.

        Raises:
            ValueError: If the issue is not closed
        """
        issue = self.get(issue_id)
        if issue.status is not Status.CLOSED:
            msg = f"Issue {issue.id} is not closed (status: {issue.status.value})"
            raise ValueError(msg)
        return self.update(issue.id, {"status": Status.OPEN})

    def delete(self, issue_id: str, reason: str | None = None) -> Tombstone:
        """Tombstone an issue. The id is never reused or resurrected."""
        self._refresh()
        resolved = self._resolve(issue_id)
        tomb = Tombstone(
            id=resolved,
            deleted_at=datetime.now().astimezone(),
            deleted_by=self.writer,
            reason=reason,
        )
        self.cache.add_tombstone(tomb)
        self._commit(tombstone_records=[tombstone_to_dict(tomb)])
        return tomb

    def add_dependency(
        self,
        from_id: str,
        to_id: str,
        dep_type: DependencyType | str = DependencyType.BLOCKS,
    ) -> tuple[Dependency, list[str]]:
        """Add an edge ``from_id -> to_id``.

        ``blocks`` edges that close a cycle are accepted; the cycle is
        reported in the returned warnings and the issues on it drop out of
        ready work until it is broken.

        Returns:
            The edge and a list of warnings.

        Raises:
            InvalidDependency: Unknown type, self edge, or a second parent
            DepthExceeded: If a parent-child edge would nest too deeply
        """
        self._refresh()
        dep_type = _dependency_type(dep_type)

        src = self._resolve(from_id)
        dst = self._resolve(to_id)
        if src == dst:
            msg = f"An issue cannot depend on itself ({src})"
            raise InvalidDependency(msg, ids=[src])

        existing = self.cache.edges(from_id=src, to_id=dst, dep_type=dep_type)
        if existing:
            return existing[0], []

        graph = self.graph()
        warnings: list[str] = []
        if dep_type is DependencyType.PARENT_CHILD:
            current_parent = deps.parent_of(graph, dst)
            if current_parent is not None:
                msg = f"{dst} already has parent {current_parent}"
                raise InvalidDependency(
                    msg,
                    ids=[dst, current_parent],
                    remedy=f"run 'tg update {dst} --parent {src}' to move it",
                )
            deps.check_parent_depth(graph, src, dst)
        elif dep_type is DependencyType.BLOCKS and deps.would_create_cycle(graph, src, dst):
            warnings.append(
                f"Adding {src} blocks {dst} creates a dependency cycle; "
                "issues on the cycle are excluded from ready work",
            )
            logger.warning("Cycle created by %s blocks %s", src, dst)

        edge = Dependency(
            from_id=src,
            to_id=dst,
            dep_type=dep_type,
            created_at=datetime.now().astimezone(),
            created_by=self.writer,
        )
        self.cache.add_edge(edge)
        self._commit([dependency_to_dict(edge)])
        return edge, warnings

    def remove_dependency(
        self,
        from_id: str,
        to_id: str,
        dep_type: DependencyType | str = DependencyType.BLOCKS,
    ) -> bool:
        """Remove an edge. Returns False if it did not exist."""
        self._refresh()
        dep_type = _dependency_type(dep_type)
        src = self._resolve(from_id)
        dst = self._resolve(to_id)
        existing = self.cache.edges(from_id=src, to_id=dst, dep_type=dep_type)
        if not existing:
            return False
        self.cache.remove_edge(src, dst, dep_type)
        record = dependency_to_dict(existing[0], op="remove", at=_after(existing[0].created_at))
        self._commit([record])
        return True

    # -- queries ------------------------------------------------------------

    def get(self, issue_id: str) -> Issue:
        """Get an issue by full or partial ID.

        Raises:
            IssueNotFoundError: If unknown or tombstoned
        """
        self._refresh()
        issue = self.cache.get_issue(self._resolve(issue_id))
        assert issue is not None
        return issue

    def list(self, filters: dict[str, Any] | None = None) -> list[Issue]:
        """Issues matching ``filters`` (status, issue_type, priority, label, assignee, parent)."""
        self._refresh()
        filters = dict(filters or {})
        if "issue_type" in filters:
            filters["type"] = filters.pop("issue_type")
        return self.cache.list_issues(filters)

    def ready(self, filters: dict[str, Any] | None = None) -> list[Issue]:
        """Open issues whose blockers are all closed, off any cycle."""
        return deps.ready(self.graph(), filters)

    def blocked(self) -> list[deps.BlockedIssue]:
        """Issues with at least one unresolved blocker."""
        return deps.get_blocked_issues(self.graph())

    def cycles(self) -> list[list[str]]:
        """Cycles in the ``blocks`` graph."""
        return deps.detect_cycles(self.graph())

    def show(self, issue_id: str) -> IssueView:
        """An issue plus its edges, display id and warnings."""
        graph = self.graph()
        resolved = self._resolve(issue_id)
        on_cycle = resolved in deps.cycle_members(graph)
        warnings = []
        if on_cycle:
            warnings.append(
                f"{resolved} is on a dependency cycle and is excluded from ready work",
            )
        return IssueView(
            issue=graph.issues[resolved],
            display_id=deps.display_id(graph, resolved),
            blocked_by=[i.id for i in deps.blocked_by(graph, resolved)],
            blocks=[i.id for i in deps.blocks(graph, resolved)],
            children=[i.id for i in deps.children(graph, resolved)],
            ancestors=[i.id for i in deps.ancestors(graph, resolved)],
            related=[i.id for i in deps.related(graph, resolved)],
            discovered_from=graph.predecessors(resolved, DependencyType.DISCOVERED_FROM),
            discovered=graph.successors(resolved, DependencyType.DISCOVERED_FROM),
            warnings=warnings,
        )

    def tree(self, issue_id: str) -> dict[str, Any]:
        """Hierarchy subtree and transitive blockers of an issue."""
        graph = self.graph()
        resolved = self._resolve(issue_id)
        return {
            "id": resolved,
            "hierarchy": [
                {
                    "depth": depth,
                    "display_id": deps.display_id(graph, issue.id),
                    **issue_to_dict(issue, include_derived=True),
                }
                for depth, issue in deps.subtree(graph, resolved)
            ],
            "blockers": deps.dependency_tree(graph, resolved, BLOCKER_TREE_MAX_DEPTH),
        }

    # -- sync ---------------------------------------------------------------

    def sync(self, force: bool = False) -> dict[str, Any]:
        """Export pending records and import external changes.

        Args:
            force: Rebuild the cache even if the logs look unchanged.

        Returns:
            Counts of exported records and whether an import ran.
        """
        exported = self.sync_engine.export()
        if force:
            self.sync_engine.full_import()
            imported = True
        else:
            imported = self.sync_engine.import_if_stale()
        return {
            "exported": exported,
            "imported": imported,
            "issues": self.cache.counts()["issues"],
        }

    def compact(self) -> dict[str, int]:
        """Rewrite the issue log to one record per live issue and edge.

        Superseded versions, removed edges and records for tombstoned ids are
        dropped. The tombstone log is never compacted.

        Returns:
            Record counts before and after.
        """
        self.sync_engine.export()
        records = self.log.read_records()
        snapshot = replay(records, self.tombstones.read_records())
        self.log.compact(snapshot)
        self.sync_engine.full_import()
        after = len(snapshot.issues) + len(snapshot.edges)
        logger.info("Compacted %s: %d -> %d records", self.log.path, len(records), after)
        return {"before": len(records), "after": after}
