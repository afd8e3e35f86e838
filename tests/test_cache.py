"""Tests for the sqlite cache."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from tangle.cache import Cache
from tangle.errors import CorruptionError
from tangle.models import Dependency, DependencyType, Issue, Status, Tombstone
from tangle.storage import Snapshot, replay

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def cache() -> Cache:
    """An in-memory cache."""
    return Cache(":memory:")


def _issue(issue_id: str, **kwargs: object) -> Issue:
    return Issue(id=issue_id, title=f"Issue {issue_id}", created_at=T0, updated_at=T0, **kwargs)  # type: ignore[arg-type]


class TestCacheIssues:
    """Test issue storage and queries."""

    def test_upsert_and_get(self, cache: Cache) -> None:
        """An upserted issue is read back unchanged."""
        cache.upsert_issue(_issue("tg-aaaa", labels=["ui", "bug"]))
        issue = cache.get_issue("tg-aaaa")
        assert issue is not None
        assert issue.title == "Issue tg-aaaa"
        assert issue.labels == ["bug", "ui"]

    def test_get_missing(self, cache: Cache) -> None:
        """Unknown ids return None."""
        assert cache.get_issue("tg-zzzz") is None

    def test_list_filters(self, cache: Cache) -> None:
        """Filters narrow the listing."""
        cache.upsert_issue(_issue("tg-a", priority=4, labels=["ui"]))
        cache.upsert_issue(_issue("tg-b", status=Status.CLOSED, issue_type="bug"))
        cache.upsert_issue(_issue("tg-c", assignee="sam"))

        assert [i.id for i in cache.list_issues({"priority": 4})] == ["tg-a"]
        assert [i.id for i in cache.list_issues({"status": "closed"})] == ["tg-b"]
        assert [i.id for i in cache.list_issues({"type": "bug"})] == ["tg-b"]
        assert [i.id for i in cache.list_issues({"label": "ui"})] == ["tg-a"]
        assert [i.id for i in cache.list_issues({"assignee": "sam"})] == ["tg-c"]
        assert len(cache.list_issues()) == 3


class TestResolveId:
    """Test partial id resolution."""

    def test_full_and_partial(self, cache: Cache) -> None:
        """Full ids, hash parts and unique suffixes resolve."""
        cache.upsert_issue(_issue("tg-4kzj"))
        assert cache.resolve_id("tg-4kzj") == "tg-4kzj"
        assert cache.resolve_id("4kzj") == "tg-4kzj"
        assert cache.resolve_id("kzj") == "tg-4kzj"

    def test_not_found(self, cache: Cache) -> None:
        """Unknown ids resolve to None."""
        assert cache.resolve_id("nope") is None

    def test_ambiguous(self, cache: Cache) -> None:
        """A suffix shared by two ids is ambiguous."""
        cache.upsert_issue(_issue("tg-a1zz"))
        cache.upsert_issue(_issue("tg-b2zz"))
        with pytest.raises(ValueError, match="Ambiguous"):
            cache.resolve_id("zz")

    def test_like_wildcards_are_literal(self, cache: Cache) -> None:
        """Underscores and percent signs do not act as wildcards."""
        cache.upsert_issue(_issue("tg-abcd"))
        assert cache.resolve_id("_") is None
        assert cache.resolve_id("%") is None


class TestEdgesAndTombstones:
    """Test edges, parents and tombstones."""

    def test_parent_child_sets_parent(self, cache: Cache) -> None:
        """A parent-child edge sets the child's parent column."""
        cache.upsert_issue(_issue("tg-p"))
        cache.upsert_issue(_issue("tg-c"))
        cache.add_edge(Dependency("tg-p", "tg-c", DependencyType.PARENT_CHILD, created_at=T0))
        child = cache.get_issue("tg-c")
        assert child is not None
        assert child.parent == "tg-p"
        assert [i.id for i in cache.list_issues({"parent": "tg-p"})] == ["tg-c"]

    def test_remove_edge(self, cache: Cache) -> None:
        """Removing reports whether the edge existed and clears the parent."""
        cache.upsert_issue(_issue("tg-p"))
        cache.upsert_issue(_issue("tg-c"))
        cache.add_edge(Dependency("tg-p", "tg-c", DependencyType.PARENT_CHILD, created_at=T0))
        assert cache.remove_edge("tg-p", "tg-c", DependencyType.PARENT_CHILD) is True
        assert cache.remove_edge("tg-p", "tg-c", DependencyType.PARENT_CHILD) is False
        child = cache.get_issue("tg-c")
        assert child is not None
        assert child.parent is None

    def test_edges_query(self, cache: Cache) -> None:
        """Edges can be filtered by endpoint and type."""
        cache.add_edge(Dependency("tg-a", "tg-b", DependencyType.BLOCKS, created_at=T0))
        cache.add_edge(Dependency("tg-a", "tg-c", DependencyType.RELATED, created_at=T0))
        assert len(cache.edges(from_id="tg-a")) == 2
        assert [d.to_id for d in cache.edges(dep_type=DependencyType.BLOCKS)] == ["tg-b"]
        assert cache.edges(to_id="tg-x") == []

    def test_tombstone_removes_issue_and_edges(self, cache: Cache) -> None:
        """Tombstoning drops the issue and its edges but keeps the id reserved."""
        cache.upsert_issue(_issue("tg-a"))
        cache.upsert_issue(_issue("tg-b"))
        cache.add_edge(Dependency("tg-a", "tg-b", DependencyType.BLOCKS, created_at=T0))
        cache.add_tombstone(Tombstone(id="tg-a", deleted_at=T0))
        assert cache.get_issue("tg-a") is None
        assert cache.edges() == []
        assert "tg-a" in cache.all_ids()
        tomb = cache.get_tombstone("tg-a")
        assert tomb is not None
        assert tomb.deleted_at == T0


class TestPending:
    """Test the export queue."""

    def test_enqueue_and_clear(self, cache: Cache) -> None:
        """Queued records come back in order and can be cleared."""
        cache.enqueue("issues", [{"n": 1}, {"n": 2}])
        cache.enqueue("tombstones", [{"n": 3}])
        queued = cache.pending()
        assert [(t, r["n"]) for _, t, r in queued] == [
            ("issues", 1),
            ("issues", 2),
            ("tombstones", 3),
        ]
        cache.clear_pending(queued[1][0])
        assert [r["n"] for _, _, r in cache.pending()] == [3]

    def test_rebuild_keeps_pending(self, cache: Cache) -> None:
        """Rebuilding the projection does not drop unexported records."""
        cache.enqueue("issues", [{"n": 1}])
        cache.rebuild(Snapshot())
        assert cache.counts()["pending"] == 1


class TestRebuild:
    """Test rebuilding from a replayed snapshot."""

    def test_rebuild_matches_snapshot(self, cache: Cache) -> None:
        """snapshot() returns what rebuild() was given."""
        snap = Snapshot()
        snap.issues["tg-a"] = _issue("tg-a")
        snap.issues["tg-b"] = _issue("tg-b")
        dep = Dependency("tg-a", "tg-b", DependencyType.BLOCKS, created_at=T0)
        snap.edges[dep.key] = dep
        snap.tombstones["tg-x"] = Tombstone(id="tg-x", deleted_at=T0)

        cache.rebuild(snap)
        again = cache.snapshot()
        assert again.to_records() == snap.to_records()
        assert set(again.tombstones) == {"tg-x"}
        assert cache.counts() == {"issues": 2, "edges": 1, "tombstones": 1, "pending": 0}

    def test_rebuild_is_idempotent(self, cache: Cache) -> None:
        """Rebuilding twice from the same snapshot gives the same state."""
        snap = replay([])
        snap.issues["tg-a"] = _issue("tg-a")
        cache.rebuild(snap)
        first = cache.snapshot().to_records()
        cache.rebuild(snap)
        assert cache.snapshot().to_records() == first
        assert cache.counts()["issues"] == 1


class TestCacheFile:
    """Test on-disk behaviour."""

    def test_corrupt_file(self, tmp_path: Path) -> None:
        """A file that is not a database raises CorruptionError."""
        path = tmp_path / "cache.db"
        path.write_bytes(b"this is definitely not sqlite" * 100)
        with pytest.raises(CorruptionError):
            Cache(path)

    def test_metadata_persists(self, tmp_path: Path) -> None:
        """Metadata survives reopening."""
        path = tmp_path / "cache.db"
        first = Cache(path)
        first.set_meta("k", "v")
        first.close()
        second = Cache(path)
        assert second.get_meta("k") == "v"
        second.close()
