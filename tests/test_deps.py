"""Tests for dependency tracking and ready work detection."""

from datetime import datetime, timedelta, timezone

import pytest

from tangle.deps import (
    Graph,
    ancestors,
    check_parent_depth,
    cycle_members,
    dependency_tree,
    depth_of,
    detect_cycles,
    display_id,
    filter_issues,
    get_blocked_issues,
    ready,
    subtree,
    would_create_cycle,
)
from tangle.errors import DepthExceeded
from tangle.models import Dependency, DependencyType, Issue, Status

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _graph(issues: list[Issue], edges: list[tuple[str, str, str]]) -> Graph:
    deps = [Dependency(f, t, DependencyType(k), created_at=T0) for f, t, k in edges]
    return Graph.build({i.id: i for i in issues}, deps)


def _issue(issue_id: str, minutes: int = 0, **kwargs: object) -> Issue:
    ts = T0 + timedelta(minutes=minutes)
    return Issue(id=issue_id, title=issue_id, created_at=ts, updated_at=ts, **kwargs)  # type: ignore[arg-type]


class TestReady:
    """Test ready work detection."""

    def test_no_edges_everything_ready(self) -> None:
        """Without edges every open issue is ready."""
        graph = _graph([_issue("a"), _issue("b", 1)], [])
        assert [i.id for i in ready(graph)] == ["a", "b"]

    def test_blocked_until_blocker_closed(self) -> None:
        """a1b2 blocks c3d4: only a1b2 is ready; closing it frees c3d4."""
        a = _issue("tg-a1b2")
        c = _issue("tg-c3d4", 1)
        graph = _graph([a, c], [("tg-a1b2", "tg-c3d4", "blocks")])
        assert [i.id for i in ready(graph)] == ["tg-a1b2"]

        a.status = Status.CLOSED
        assert [i.id for i in ready(graph)] == ["tg-c3d4"]

    def test_in_progress_blocker_still_blocks(self) -> None:
        """Only a closed blocker releases its target."""
        graph = _graph(
            [_issue("a", status=Status.IN_PROGRESS), _issue("b")],
            [("a", "b", "blocks")],
        )
        assert ready(graph) == []

    def test_non_open_issues_not_ready(self) -> None:
        """In-progress, review, blocked and closed issues are not ready."""
        issues = [
            _issue("a", status=Status.IN_PROGRESS),
            _issue("b", status=Status.REVIEW),
            _issue("c", status=Status.BLOCKED),
            _issue("d", status=Status.CLOSED),
        ]
        assert ready(_graph(issues, [])) == []

    def test_other_edge_types_do_not_block(self) -> None:
        """related, parent-child and discovered-from never gate readiness."""
        graph = _graph(
            [_issue("a"), _issue("b", 1)],
            [("a", "b", "related"), ("a", "b", "parent-child"), ("a", "b", "discovered-from")],
        )
        assert [i.id for i in ready(graph)] == ["a", "b"]

    def test_priority_order(self) -> None:
        """Highest priority first, then oldest."""
        graph = _graph(
            [_issue("low", priority=0), _issue("old", 0), _issue("new", 5), _issue("hot", 9, priority=4)],
            [],
        )
        assert [i.id for i in ready(graph)] == ["hot", "old", "new", "low"]

    def test_cycle_members_excluded(self) -> None:
        """Issues on a blocks cycle are never ready; others still are."""
        graph = _graph(
            [_issue("a"), _issue("b"), _issue("free")],
            [("a", "b", "blocks"), ("b", "a", "blocks")],
        )
        assert [i.id for i in ready(graph)] == ["free"]

    def test_filters(self) -> None:
        """Filters apply to the ready set."""
        graph = _graph(
            [_issue("a", labels=["ui"]), _issue("b", issue_type="bug", assignee="sam")],
            [],
        )
        assert [i.id for i in ready(graph, {"label": "ui"})] == ["a"]
        assert [i.id for i in ready(graph, {"issue_type": "bug"})] == ["b"]
        assert [i.id for i in ready(graph, {"assignee": "sam"})] == ["b"]


class TestCycles:
    """Test cycle detection."""

    def test_two_cycle(self) -> None:
        """A two-node cycle is reported once, closed on its first id."""
        graph = _graph([_issue("a"), _issue("b")], [("a", "b", "blocks"), ("b", "a", "blocks")])
        cycles = detect_cycles(graph)
        assert len(cycles) == 1
        assert cycles[0][0] == cycles[0][-1]
        assert set(cycles[0]) == {"a", "b"}

    def test_no_cycle(self) -> None:
        """A chain is not a cycle."""
        graph = _graph(
            [_issue("a"), _issue("b"), _issue("c")],
            [("a", "b", "blocks"), ("b", "c", "blocks")],
        )
        assert detect_cycles(graph) == []
        assert cycle_members(graph) == set()

    def test_overlapping_cycles_members(self) -> None:
        """Every issue on any cycle is a member."""
        graph = _graph(
            [_issue(x) for x in "abcd"],
            [("a", "b", "blocks"), ("b", "a", "blocks"), ("b", "c", "blocks"), ("c", "a", "blocks")],
        )
        assert cycle_members(graph) == {"a", "b", "c"}

    def test_self_loop(self) -> None:
        """A self edge is a cycle of one."""
        graph = _graph([_issue("a")], [("a", "a", "blocks")])
        assert cycle_members(graph) == {"a"}

    def test_related_edges_ignored(self) -> None:
        """Only blocks edges form cycles."""
        graph = _graph([_issue("a"), _issue("b")], [("a", "b", "related"), ("b", "a", "related")])
        assert detect_cycles(graph) == []

    def test_would_create_cycle(self) -> None:
        """Adding the closing edge of a loop is detected in advance."""
        graph = _graph(
            [_issue("a"), _issue("b"), _issue("c")],
            [("a", "b", "blocks"), ("b", "c", "blocks")],
        )
        assert would_create_cycle(graph, "c", "a")
        assert not would_create_cycle(graph, "a", "c")
        assert would_create_cycle(graph, "a", "a")


class TestBlocked:
    """Test blocked issue listing."""

    def test_blocked_lists_open_blockers(self) -> None:
        """Blocked issues name their unresolved blockers."""
        graph = _graph(
            [_issue("a"), _issue("b"), _issue("c", status=Status.CLOSED), _issue("d")],
            [("a", "d", "blocks"), ("c", "d", "blocks"), ("a", "b", "blocks")],
        )
        blocked = {b.issue_id: b.blocking_ids for b in get_blocked_issues(graph)}
        assert blocked == {"b": ["a"], "d": ["a"]}

    def test_cycle_noted_in_reason(self) -> None:
        """Issues blocked by a cycle say so."""
        graph = _graph([_issue("a"), _issue("b")], [("a", "b", "blocks"), ("b", "a", "blocks")])
        assert all("cycle" in b.reason for b in get_blocked_issues(graph))


class TestHierarchy:
    """Test parent-child depth, display ids and trees."""

    @pytest.fixture
    def tree(self) -> Graph:
        """root -> (c1, c2), c1 -> g1."""
        return _graph(
            [_issue("root"), _issue("c1", 1), _issue("c2", 2), _issue("g1", 3)],
            [
                ("root", "c1", "parent-child"),
                ("root", "c2", "parent-child"),
                ("c1", "g1", "parent-child"),
            ],
        )

    def test_depth(self, tree: Graph) -> None:
        """Roots are level 1."""
        assert depth_of(tree, "root") == 1
        assert depth_of(tree, "g1") == 3
        assert [a.id for a in ancestors(tree, "g1")] == ["c1", "root"]

    def test_display_id(self, tree: Graph) -> None:
        """Children are numbered by creation order under their parent."""
        assert display_id(tree, "root") == "root"
        assert display_id(tree, "c1") == "root.1"
        assert display_id(tree, "c2") == "root.2"
        assert display_id(tree, "g1") == "root.1.1"

    def test_depth_limit(self, tree: Graph) -> None:
        """A fourth level is refused."""
        check_parent_depth(tree, "c2")
        with pytest.raises(DepthExceeded):
            check_parent_depth(tree, "g1")

    def test_moving_subtree_counts_height(self, tree: Graph) -> None:
        """Moving c1 (which has a child) under c2 would make four levels."""
        with pytest.raises(DepthExceeded):
            check_parent_depth(tree, "c2", "c1")

    def test_loop_refused(self, tree: Graph) -> None:
        """An issue cannot be moved under its own descendant."""
        with pytest.raises(DepthExceeded, match="ancestor"):
            check_parent_depth(tree, "g1", "root")

    def test_subtree(self, tree: Graph) -> None:
        """Pre-order with depths."""
        assert [(d, i.id) for d, i in subtree(tree, "root")] == [
            (0, "root"),
            (1, "c1"),
            (2, "g1"),
            (1, "c2"),
        ]


class TestDependencyTree:
    """Test the transitive blocker tree."""

    def test_nested_blockers(self) -> None:
        """Blockers of blockers are nested."""
        graph = _graph(
            [_issue("a"), _issue("b"), _issue("c")],
            [("a", "b", "blocks"), ("b", "c", "blocks")],
        )
        tree = dependency_tree(graph, "c")
        assert tree["blocked_by"][0]["id"] == "b"
        assert tree["blocked_by"][0]["blocked_by"][0]["id"] == "a"

    def test_cycle_is_cut(self) -> None:
        """A cycle is cut at the repeated id and flagged."""
        graph = _graph([_issue("a"), _issue("b")], [("a", "b", "blocks"), ("b", "a", "blocks")])
        tree = dependency_tree(graph, "a")
        assert tree["blocked_by"][0]["blocked_by"][0].get("cycle") is True


class TestLongChains:
    """Test graph walks on blocker chains far deeper than the recursion limit."""

    LENGTH = 5000

    @pytest.fixture
    def chain(self) -> Graph:
        """i0000 blocks i0001 blocks ... i4999."""
        issues = [_issue(f"i{n:04d}") for n in range(self.LENGTH)]
        edges = [(f"i{n:04d}", f"i{n + 1:04d}", "blocks") for n in range(self.LENGTH - 1)]
        return _graph(issues, edges)

    def test_detect_cycles(self, chain: Graph) -> None:
        """A long acyclic chain has no cycles; closing it adds exactly one."""
        assert detect_cycles(chain) == []
        last = f"i{self.LENGTH - 1:04d}"
        chain = Graph.build(
            chain.issues,
            [d for deps in chain.out_edges.values() for d in deps]
            + [Dependency(last, "i0000", DependencyType.BLOCKS, created_at=T0)],
        )
        cycles = detect_cycles(chain)
        assert len(cycles) == 1
        assert len(cycles[0]) == self.LENGTH + 1

    def test_dependency_tree(self, chain: Graph) -> None:
        """The full tree nests every blocker in order."""
        node = dependency_tree(chain, f"i{self.LENGTH - 1:04d}")
        depth = 0
        while node["blocked_by"]:
            node = node["blocked_by"][0]
            depth += 1
        assert depth == self.LENGTH - 1
        assert node["id"] == "i0000"

    def test_dependency_tree_max_depth(self, chain: Graph) -> None:
        """Expansion stops at max_depth and marks the cut entry."""
        node = dependency_tree(chain, f"i{self.LENGTH - 1:04d}", max_depth=3)
        for _ in range(3):
            assert "truncated" not in node
            node = node["blocked_by"][0]
        assert node["truncated"] is True
        assert node["blocked_by"] == []

    def test_ready_and_blocked(self, chain: Graph) -> None:
        """Only the head of the chain is ready."""
        assert [i.id for i in ready(chain)] == ["i0000"]
        assert len(get_blocked_issues(chain)) == self.LENGTH - 1


class TestFilterIssues:
    """Test the common filter helper."""

    def test_label_any_of(self) -> None:
        """A list of labels matches any."""
        issues = [_issue("a", labels=["x"]), _issue("b", labels=["y"]), _issue("c")]
        assert [i.id for i in filter_issues(issues, label=["x", "y"])] == ["a", "b"]

    def test_status(self) -> None:
        """Status accepts strings."""
        issues = [_issue("a"), _issue("b", status=Status.CLOSED)]
        assert [i.id for i in filter_issues(issues, status="closed")] == ["b"]
