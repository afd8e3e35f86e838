"""Dependency graph queries and ready work detection.

Every function here answers from a :class:`Graph` built out of locally
imported state. Nothing in this module observes other processes or writers
directly; results are only as fresh as the last import.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tangle.constants import MAX_PARENT_DEPTH
from tangle.errors import DepthExceeded
from tangle.models import Dependency, DependencyType, Issue, Status

if TYPE_CHECKING:
    from tangle.storage import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class BlockedIssue:
    """An issue that is blocked by dependencies."""

    issue_id: str
    blocking_ids: list[str]
    reason: str


@dataclass
class Graph:
    """Adjacency view over a set of issues and edges."""

    issues: dict[str, Issue]
    out_edges: dict[str, list[Dependency]] = field(
        default_factory=dict[str, list[Dependency]],
    )
    in_edges: dict[str, list[Dependency]] = field(
        default_factory=dict[str, list[Dependency]],
    )

    @classmethod
    def build(cls, issues: dict[str, Issue], edges: list[Dependency]) -> Graph:
        """Build a graph, ignoring edges whose endpoints are unknown."""
        graph = cls(issues=issues)
        for dep in sorted(edges, key=lambda d: d.key):
            if dep.from_id not in issues or dep.to_id not in issues:
                continue
            graph.out_edges.setdefault(dep.from_id, []).append(dep)
            graph.in_edges.setdefault(dep.to_id, []).append(dep)
        return graph

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> Graph:
        """Build a graph from a replayed or cached snapshot."""
        return cls.build(dict(snapshot.issues), list(snapshot.edges.values()))

    def successors(self, issue_id: str, dep_type: DependencyType) -> list[str]:
        """Targets of ``dep_type`` edges leaving ``issue_id``."""
        return [d.to_id for d in self.out_edges.get(issue_id, []) if d.dep_type is dep_type]

    def predecessors(self, issue_id: str, dep_type: DependencyType) -> list[str]:
        """Sources of ``dep_type`` edges entering ``issue_id``."""
        return [d.from_id for d in self.in_edges.get(issue_id, []) if d.dep_type is dep_type]


def _priority_order(issue: Issue) -> tuple[int, Any, str]:
    # Highest priority first (4 is critical), then oldest
    return (-issue.priority, issue.created_at, issue.id)


def detect_cycles(graph: Graph) -> list[list[str]]:
    """Detect cycles in the ``blocks`` subgraph using DFS.

    The walk keeps an explicit work stack, so long chains do not hit the
    interpreter's recursion limit.

    Args:
        graph: The dependency graph

    Returns:
        List of cycles; each cycle lists its issue IDs with the first ID
        repeated at the end.
    """
    seen_cycles: set[frozenset[str]] = set()
    cycles: list[list[str]] = []
    visited: set[str] = set()
    rec_stack: set[str] = set()

    for root in sorted(graph.issues):
        if root in visited:
            continue
        path: list[str] = []
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_idx = work.pop()
            if child_idx == 0:
                visited.add(node)
                rec_stack.add(node)
                path.append(node)
            successors = graph.successors(node, DependencyType.BLOCKS)
            if child_idx < len(successors):
                work.append((node, child_idx + 1))
                neighbor = successors[child_idx]
                if neighbor not in visited:
                    work.append((neighbor, 0))
                elif neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    cycle = [*path[cycle_start:], neighbor]
                    cycle_key = frozenset(cycle)
                    if cycle_key not in seen_cycles:
                        seen_cycles.add(cycle_key)
                        cycles.append(cycle)
                continue
            path.pop()
            rec_stack.discard(node)

    return cycles


def cycle_members(graph: Graph) -> set[str]:
    """IDs of every issue that sits on a ``blocks`` cycle.

    The DFS above reports one representative cycle per back edge, which can
    miss issues that only lie on an overlapping cycle; strongly connected
    components give the complete set.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    members: set[str] = set()
    counter = 0

    for root in sorted(graph.issues):
        if root in index_of:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_idx = work.pop()
            if child_idx == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            successors = graph.successors(node, DependencyType.BLOCKS)
            if child_idx < len(successors):
                work.append((node, child_idx + 1))
                nxt = successors[child_idx]
                if nxt not in index_of:
                    work.append((nxt, 0))
                elif nxt in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[nxt])
                continue
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    item = stack.pop()
                    on_stack.discard(item)
                    component.append(item)
                    if item == node:
                        break
                if len(component) > 1 or node in successors:
                    members.update(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
    return members


def ready(graph: Graph, filters: dict[str, Any] | None = None) -> list[Issue]:
    """Get issues ready to work.

    An issue is ready when its status is ``open``, every issue that blocks it
    is ``closed``, and it is not on a ``blocks`` cycle.

    Args:
        graph: The dependency graph
        filters: Optional filters passed to :func:`filter_issues`

    Returns:
        Ready issues, highest priority first
    """
    on_cycle = cycle_members(graph)
    if on_cycle:
        logger.warning(
            "Dependency cycle detected; excluding from ready work: %s",
            ", ".join(sorted(on_cycle)),
        )

    result: list[Issue] = []
    for issue in graph.issues.values():
        if issue.status is not Status.OPEN or issue.id in on_cycle:
            continue
        blockers = graph.predecessors(issue.id, DependencyType.BLOCKS)
        if all(graph.issues[b].status is Status.CLOSED for b in blockers):
            result.append(issue)

    if filters:
        result = filter_issues(result, **filters)
    result.sort(key=_priority_order)
    return result


def blocked_by(graph: Graph, issue_id: str) -> list[Issue]:
    """Issues that block ``issue_id`` (sources of incoming ``blocks`` edges)."""
    return sorted(
        (graph.issues[i] for i in graph.predecessors(issue_id, DependencyType.BLOCKS)),
        key=_priority_order,
    )


def blocks(graph: Graph, issue_id: str) -> list[Issue]:
    """Issues that ``issue_id`` blocks."""
    return sorted(
        (graph.issues[i] for i in graph.successors(issue_id, DependencyType.BLOCKS)),
        key=_priority_order,
    )


def related(graph: Graph, issue_id: str) -> list[Issue]:
    """Issues linked by ``related`` edges in either direction."""
    ids = set(graph.successors(issue_id, DependencyType.RELATED))
    ids.update(graph.predecessors(issue_id, DependencyType.RELATED))
    return [graph.issues[i] for i in sorted(ids)]


def children(graph: Graph, issue_id: str) -> list[Issue]:
    """Direct children of ``issue_id`` ordered by creation time, then ID."""
    kids = [graph.issues[i] for i in graph.successors(issue_id, DependencyType.PARENT_CHILD)]
    kids.sort(key=lambda i: (i.created_at, i.id))
    return kids


def parent_of(graph: Graph, issue_id: str) -> str | None:
    """The parent of ``issue_id``, or None for a root issue."""
    parents = sorted(graph.predecessors(issue_id, DependencyType.PARENT_CHILD))
    return parents[0] if parents else None


def ancestors(graph: Graph, issue_id: str) -> list[Issue]:
    """Ancestors of ``issue_id``, nearest first."""
    chain: list[Issue] = []
    seen = {issue_id}
    current = parent_of(graph, issue_id)
    while current is not None and current not in seen:
        seen.add(current)
        chain.append(graph.issues[current])
        current = parent_of(graph, current)
    return chain


def subtree(graph: Graph, issue_id: str) -> list[tuple[int, Issue]]:
    """Pre-order traversal of ``issue_id`` and its descendants.

    Returns:
        ``(depth, issue)`` pairs, the root at depth 0.
    """
    result: list[tuple[int, Issue]] = []
    seen: set[str] = set()
    work: list[tuple[str, int]] = [(issue_id, 0)]
    while work:
        node, depth = work.pop()
        if node in seen:
            continue
        seen.add(node)
        result.append((depth, graph.issues[node]))
        for child in reversed(children(graph, node)):
            work.append((child.id, depth + 1))
    return result


def dependency_tree(
    graph: Graph,
    issue_id: str,
    max_depth: int | None = None,
) -> dict[str, Any]:
    """Nested view of what blocks ``issue_id``, transitively.

    Cycles are cut at the first repeated ID and flagged with ``"cycle": True``.

    Args:
        graph: The dependency graph
        issue_id: Root of the view
        max_depth: Stop expanding below this many levels; cut entries are
            flagged with ``"truncated": True``

    Returns:
        The root entry; each entry lists its blockers under ``blocked_by``.
    """
    top: list[dict[str, Any]] = []
    on_path: set[str] = set()
    # A None sibling list marks the point where ``node`` leaves the path
    work: list[tuple[str, int, list[dict[str, Any]] | None]] = [(issue_id, 0, top)]
    while work:
        node, depth, siblings = work.pop()
        if siblings is None:
            on_path.discard(node)
            continue
        issue = graph.issues[node]
        entry: dict[str, Any] = {
            "id": node,
            "title": issue.title,
            "status": issue.status.value,
            "blocked_by": [],
        }
        siblings.append(entry)
        if node in on_path:
            entry["cycle"] = True
            continue
        blockers = sorted(graph.predecessors(node, DependencyType.BLOCKS), reverse=True)
        if max_depth is not None and depth >= max_depth and blockers:
            entry["truncated"] = True
            continue
        on_path.add(node)
        work.append((node, depth, None))
        for blocker in blockers:
            work.append((blocker, depth + 1, entry["blocked_by"]))
    return top[0]


def get_blocked_issues(graph: Graph) -> list[BlockedIssue]:
    """Get all non-closed issues with at least one unresolved blocker."""
    on_cycle = cycle_members(graph)
    blocked_list: list[BlockedIssue] = []

    for issue in sorted(graph.issues.values(), key=_priority_order):
        if issue.status is Status.CLOSED:
            continue
        blocking_ids = [
            b
            for b in graph.predecessors(issue.id, DependencyType.BLOCKS)
            if graph.issues[b].status is not Status.CLOSED
        ]
        if blocking_ids:
            reason = f"Blocked by {len(blocking_ids)} issue(s)"
            if issue.id in on_cycle:
                reason += " (dependency cycle)"
            blocked_list.append(
                BlockedIssue(
                    issue_id=issue.id,
                    blocking_ids=blocking_ids,
                    reason=reason,
                ),
            )

    return blocked_list


def depth_of(graph: Graph, issue_id: str) -> int:
    """Hierarchy level of ``issue_id`` (a root issue is level 1)."""
    return len(ancestors(graph, issue_id)) + 1


def check_parent_depth(graph: Graph, parent_id: str, child_id: str | None = None) -> None:
    """Reject a parent-child edge that would nest too deeply or loop.

    Args:
        graph: The dependency graph
        parent_id: Proposed parent
        child_id: Proposed child, if it already exists (its own subtree
            height counts towards the limit)

    Raises:
        DepthExceeded: If the resulting hierarchy exceeds the maximum depth
            or the child is an ancestor of the parent.
    """
    if child_id is not None:
        if child_id == parent_id or any(a.id == child_id for a in ancestors(graph, parent_id)):
            msg = f"{child_id} is an ancestor of {parent_id}; parent-child edges cannot loop"
            raise DepthExceeded(msg, ids=(parent_id, child_id))
        height = max((d for d, _ in subtree(graph, child_id)), default=0) + 1
    else:
        height = 1

    resulting = depth_of(graph, parent_id) + height
    if resulting > MAX_PARENT_DEPTH:
        msg = (
            f"Adding a child under {parent_id} would create a hierarchy "
            f"{resulting} levels deep (maximum {MAX_PARENT_DEPTH})"
        )
        raise DepthExceeded(msg, ids=(parent_id,) if child_id is None else (parent_id, child_id))


def display_id(graph: Graph, issue_id: str) -> str:
    """Dotted hierarchical name, e.g. ``tg-a3f8.1.2`` for a grandchild.

    The root keeps its own ID; each level appends the 1-based position of
    the issue among its siblings.
    """
    chain = [issue_id]
    chain.extend(a.id for a in ancestors(graph, issue_id))
    chain.reverse()
    name = chain[0]
    for parent, child in zip(chain, chain[1:]):
        siblings = [c.id for c in children(graph, parent)]
        name += f".{siblings.index(child) + 1}"
    return name


def would_create_cycle(graph: Graph, from_id: str, to_id: str) -> bool:
    """Check if a new ``from_id`` blocks ``to_id`` edge would close a cycle."""
    if from_id == to_id:
        return True

    visited: set[str] = set()
    stack = [to_id]
    while stack:
        node = stack.pop()
        if node == from_id:
            return True
        if node in visited:
            continue
        visited.add(node)
        stack.extend(graph.successors(node, DependencyType.BLOCKS))
    return False


def filter_issues(
    issues: list[Issue],
    *,
    status: Status | str | None = None,
    issue_type: str | None = None,
    priority: int | None = None,
    label: str | list[str] | None = None,
    assignee: str | None = None,
) -> list[Issue]:
    """Filter issues by the common query fields.

    ``label`` matches any of the given labels.
    """
    result = issues
    if status is not None:
        wanted = Status(status)
        result = [i for i in result if i.status is wanted]
    if issue_type is not None:
        result = [i for i in result if i.issue_type == issue_type]
    if priority is not None:
        result = [i for i in result if i.priority == priority]
    if label is not None:
        labels = {label} if isinstance(label, str) else set(label)
        result = [i for i in result if labels & set(i.labels)]
    if assignee is not None:
        result = [i for i in result if i.assignee == assignee]
    return result
