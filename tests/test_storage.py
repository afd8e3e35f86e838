"""Tests for the JSONL logs and replay."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import orjson
import pytest

from tangle.errors import CorruptionError, NotInitializedError, UnresolvedMergeConflict
from tangle.models import (
    Dependency,
    DependencyType,
    Issue,
    Status,
    Tombstone,
    dependency_to_dict,
    issue_to_dict,
    tombstone_to_dict,
)
from tangle.storage import IssueLog, TombstoneLog, replay

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _issue(issue_id: str, title: str = "Title", minutes: int = 0, **kwargs: Any) -> dict[str, Any]:
    ts = T0 + timedelta(minutes=minutes)
    return issue_to_dict(
        Issue(id=issue_id, title=title, created_at=T0, updated_at=ts, **kwargs),
    )


def _edge(
    from_id: str,
    to_id: str,
    dep_type: DependencyType = DependencyType.BLOCKS,
    op: str = "add",
    minutes: int = 0,
) -> dict[str, Any]:
    dep = Dependency(from_id, to_id, dep_type, created_at=T0)
    return dependency_to_dict(dep, op=op, at=T0 + timedelta(minutes=minutes))


def _tomb(issue_id: str, minutes: int = 0) -> dict[str, Any]:
    return tombstone_to_dict(Tombstone(id=issue_id, deleted_at=T0 + timedelta(minutes=minutes)))


class TestIssueLog:
    """Test opening, appending and reading the issue log."""

    def test_missing_store_raises(self, tmp_path: Path) -> None:
        """Opening a store that was never initialized is an error."""
        with pytest.raises(NotInitializedError):
            IssueLog(tmp_path / ".tangle")

    def test_create_makes_empty_log(self, tmp_path: Path) -> None:
        """create=True makes the directory and an empty log."""
        log = IssueLog(tmp_path / ".tangle", create=True)
        assert log.exists()
        assert log.read_records() == []

    def test_append_and_read(self, tangle_dir: Path) -> None:
        """Appended records are read back in order."""
        log = IssueLog(tangle_dir)
        log.append([_issue("tg-aaaa"), _issue("tg-bbbb")])
        log.append([_edge("tg-aaaa", "tg-bbbb")])
        records = log.read_records()
        assert [r.get("id", r.get("from")) for r in records] == ["tg-aaaa", "tg-bbbb", "tg-aaaa"]

    def test_append_repairs_missing_newline(self, tangle_dir: Path) -> None:
        """A file without a trailing newline gets one before the next record."""
        log = IssueLog(tangle_dir)
        log.path.write_bytes(orjson.dumps(_issue("tg-aaaa")))
        log.append([_issue("tg-bbbb")])
        assert len(log.read_records()) == 2

    def test_truncated_last_line_is_skipped(self, tangle_dir: Path) -> None:
        """A crash mid-append leaves a partial last line, which is tolerated."""
        log = IssueLog(tangle_dir)
        log.append([_issue("tg-aaaa")])
        with log.path.open("ab") as f:
            f.write(b'{"id": "tg-bb')
        assert [r["id"] for r in log.read_records()] == ["tg-aaaa"]

    def test_interior_garbage_is_corruption(self, tangle_dir: Path) -> None:
        """A malformed line that is not the last one raises CorruptionError."""
        log = IssueLog(tangle_dir)
        log.path.write_bytes(b"not json\n" + orjson.dumps(_issue("tg-aaaa")) + b"\n")
        with pytest.raises(CorruptionError, match="line 1"):
            log.read_records()

    def test_conflict_markers_raise(self, tangle_dir: Path) -> None:
        """Git conflict markers are reported as an unresolved merge."""
        log = IssueLog(tangle_dir)
        log.path.write_bytes(b"<<<<<<< HEAD\n{}\n=======\n{}\n>>>>>>> other\n")
        with pytest.raises(UnresolvedMergeConflict):
            log.read_records()

    def test_rewrite_replaces_contents(self, tangle_dir: Path) -> None:
        """rewrite() atomically swaps in new contents."""
        log = IssueLog(tangle_dir)
        log.append([_issue("tg-aaaa"), _issue("tg-aaaa", minutes=1)])
        log.rewrite([_issue("tg-cccc")])
        assert [r["id"] for r in log.read_records()] == ["tg-cccc"]
        assert sorted(p.name for p in tangle_dir.glob("*.jsonl")) == [
            "issues.jsonl",
            "tombstones.jsonl",
        ]

    def test_fingerprint_changes_with_content(self, tangle_dir: Path) -> None:
        """Appending changes size and hash."""
        log = IssueLog(tangle_dir)
        before = log.fingerprint()
        log.append([_issue("tg-aaaa")])
        after = log.fingerprint()
        assert after.size > before.size
        assert after.sha256 != before.sha256


class TestTombstoneLog:
    """Test the append-only tombstone log."""

    def test_rewrite_is_refused(self, tangle_dir: Path) -> None:
        """The tombstone log can only grow."""
        with pytest.raises(RuntimeError, match="append-only"):
            TombstoneLog(tangle_dir).rewrite([])


class TestReplay:
    """Test replaying log records into a snapshot."""

    def test_latest_version_wins(self) -> None:
        """The record with the greatest updated_at is the issue's state."""
        snap = replay([_issue("tg-a", "new", minutes=2), _issue("tg-a", "old", minutes=1)])
        assert snap.issues["tg-a"].title == "new"

    def test_order_independent(self) -> None:
        """Any permutation of the same records gives the same state."""
        records = [
            _issue("tg-a", "v1", minutes=1),
            _issue("tg-a", "v2", minutes=2),
            _issue("tg-b"),
            _edge("tg-a", "tg-b", minutes=1),
            _edge("tg-a", "tg-b", op="remove", minutes=3),
            _edge("tg-b", "tg-a", DependencyType.RELATED, minutes=2),
        ]
        forward = replay(records)
        backward = replay(list(reversed(records)))
        assert forward.to_records() == backward.to_records()

    def test_idempotent(self) -> None:
        """Replaying the same records twice changes nothing."""
        records = [_issue("tg-a"), _edge("tg-a", "tg-b"), _issue("tg-b")]
        assert replay(records + records).to_records() == replay(records).to_records()

    def test_equal_timestamps_break_ties_by_hash(self) -> None:
        """Same updated_at: the greater content hash wins on every replica."""
        a = _issue("tg-a", "alpha", minutes=1)
        b = _issue("tg-a", "beta", minutes=1)
        assert replay([a, b]).issues["tg-a"].title == replay([b, a]).issues["tg-a"].title

    def test_edge_remove_beats_add_at_same_instant(self) -> None:
        """At equal ``at`` the remove operation wins."""
        records = [
            _issue("tg-a"),
            _issue("tg-b"),
            _edge("tg-a", "tg-b", op="remove", minutes=1),
            _edge("tg-a", "tg-b", op="add", minutes=1),
        ]
        assert replay(records).edges == {}

    def test_edge_readded_after_remove(self) -> None:
        """A later add restores a removed edge."""
        records = [
            _issue("tg-a"),
            _issue("tg-b"),
            _edge("tg-a", "tg-b", op="remove", minutes=1),
            _edge("tg-a", "tg-b", op="add", minutes=2),
        ]
        assert ("tg-a", "tg-b", "blocks") in replay(records).edges

    def test_tombstone_suppresses_issue_and_edges(self) -> None:
        """A tombstoned id and every edge touching it disappear."""
        records = [_issue("tg-a"), _issue("tg-b"), _edge("tg-a", "tg-b")]
        snap = replay(records, [_tomb("tg-a")])
        assert set(snap.issues) == {"tg-b"}
        assert snap.edges == {}
        assert "tg-a" in snap.all_ids()

    def test_tombstone_beats_later_update(self) -> None:
        """An edit made after deletion does not resurrect the issue."""
        snap = replay([_issue("tg-a", minutes=10)], [_tomb("tg-a", minutes=1)])
        assert "tg-a" not in snap.issues

    def test_earliest_tombstone_kept(self) -> None:
        """Two deletions of the same id keep the earliest."""
        snap = replay([], [_tomb("tg-a", minutes=5), _tomb("tg-a", minutes=1)])
        assert snap.tombstones["tg-a"].deleted_at == T0 + timedelta(minutes=1)

    def test_parent_derived_from_edge(self) -> None:
        """Issue.parent comes from the parent-child edge."""
        records = [
            _issue("tg-p"),
            _issue("tg-c"),
            _edge("tg-p", "tg-c", DependencyType.PARENT_CHILD),
        ]
        snap = replay(records)
        assert snap.issues["tg-c"].parent == "tg-p"
        assert snap.issues["tg-p"].parent is None

    def test_status_round_trips(self) -> None:
        """Enum fields survive serialization."""
        snap = replay([_issue("tg-a", status=Status.IN_PROGRESS)])
        assert snap.issues["tg-a"].status is Status.IN_PROGRESS

    def test_malformed_record_is_corruption(self) -> None:
        """A record missing required fields raises CorruptionError."""
        with pytest.raises(CorruptionError):
            replay([{"record_type": "issue", "id": "tg-a"}])

    def test_unknown_edge_type_is_corruption(self) -> None:
        """An edge with an unknown type raises CorruptionError."""
        bad = _edge("tg-a", "tg-b")
        bad["type"] = "depends-on-vibes"
        with pytest.raises(CorruptionError):
            replay([bad])
