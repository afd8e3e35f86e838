"""Tests for the JSONL merge driver."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import orjson
import pytest

from tangle.errors import MergeAbstained
from tangle.merge_driver import (
    merge_issue_records,
    merge_logs,
    merge_tombstones,
    parse_log_bytes,
    run_merge_driver,
)
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
from tangle.storage import replay

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _issue(issue_id: str, minutes: int = 0, **kwargs: Any) -> dict[str, Any]:
    kwargs.setdefault("title", f"Issue {issue_id}")
    kwargs.setdefault("created_at", T0)
    return issue_to_dict(Issue(id=issue_id, updated_at=_at(minutes), **kwargs))


def _edge(from_id: str, to_id: str, minutes: int = 0, op: str = "add") -> dict[str, Any]:
    dep = Dependency(from_id, to_id, DependencyType.BLOCKS, created_at=_at(minutes))
    return dependency_to_dict(dep, op=op, at=_at(minutes))


def _tomb(issue_id: str, minutes: int = 0) -> dict[str, Any]:
    return tombstone_to_dict(Tombstone(id=issue_id, deleted_at=_at(minutes)))


def _issues_by_id(records: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    return {r["id"]: r for r in records if r["record_type"] == "issue"}


def _write(path: Path, records: list[dict[str, Any]]) -> Path:
    path.write_bytes(b"".join(orjson.dumps(r) + b"\n" for r in records))
    return path


class TestMergeIssueRecords:
    """Test field-level merging of one issue."""

    def test_disjoint_fields_both_kept(self) -> None:
        """Title changed on one side, priority on the other: both survive."""
        base = _issue("tg-a")
        ours = _issue("tg-a", 1, title="Renamed")
        theirs = _issue("tg-a", 2, priority=4)
        merged = merge_issue_records(base, ours, theirs)
        assert merged["title"] == "Renamed"
        assert merged["priority"] == 4
        assert merged["updated_at"] == theirs["updated_at"]

    def test_same_field_later_wins(self) -> None:
        """Both sides changed the title: the later edit wins."""
        base = _issue("tg-a")
        ours = _issue("tg-a", 5, title="Ours")
        theirs = _issue("tg-a", 2, title="Theirs")
        assert merge_issue_records(base, ours, theirs)["title"] == "Ours"
        assert merge_issue_records(base, theirs, ours)["title"] == "Ours"

    def test_close_is_merged_as_a_unit(self) -> None:
        """Closing on one side keeps status, closed_at and reason together."""
        base = _issue("tg-a")
        ours = _issue(
            "tg-a",
            1,
            status=Status.CLOSED,
            closed_at=_at(1),
            close_reason="done",
        )
        theirs = _issue("tg-a", 2, title="Clarified")
        merged = merge_issue_records(base, ours, theirs)
        assert merged["status"] == "closed"
        assert merged["close_reason"] == "done"
        assert merged["closed_at"] == _at(1).isoformat()
        assert merged["title"] == "Clarified"

    def test_labels_added_and_removed(self) -> None:
        """Label additions and removals from both sides apply."""
        base = _issue("tg-a", labels=["keep", "drop"])
        ours = _issue("tg-a", 1, labels=["keep", "drop", "ui"])
        theirs = _issue("tg-a", 2, labels=["keep"])
        assert merge_issue_records(base, ours, theirs)["labels"] == ["keep", "ui"]

    def test_order_independent(self) -> None:
        """Swapping sides gives the same record."""
        base = _issue("tg-a")
        ours = _issue("tg-a", 3, title="x", labels=["one"])
        theirs = _issue("tg-a", 3, title="y", labels=["two"])
        assert merge_issue_records(base, ours, theirs) == merge_issue_records(base, theirs, ours)


class TestMergeLogs:
    """Test merging whole logs."""

    def test_one_sided_issues_are_kept(self) -> None:
        """New issues from either side appear once in the result."""
        base = [_issue("tg-a")]
        ours = [*base, _issue("tg-b")]
        theirs = [*base, _issue("tg-c")]
        merged = merge_logs(base, ours, theirs)
        assert set(_issues_by_id(merged)) == {"tg-a", "tg-b", "tg-c"}

    def test_commutative(self) -> None:
        """merge(base, x, y) == merge(base, y, x)."""
        base = [_issue("tg-a"), _issue("tg-b")]
        ours = [*base, _issue("tg-a", 1, title="o"), _issue("tg-c"), _edge("tg-a", "tg-b", 1)]
        theirs = [*base, _issue("tg-a", 2, priority=0), _edge("tg-b", "tg-a", 2)]
        assert merge_logs(base, ours, theirs) == merge_logs(base, theirs, ours)

    def test_edges_are_unioned(self) -> None:
        """Edge operations from both sides are kept, duplicates once."""
        shared = _edge("tg-a", "tg-b", 1)
        base = [_issue("tg-a"), _issue("tg-b"), _issue("tg-c")]
        ours = [*base, shared, _edge("tg-b", "tg-c", 2)]
        theirs = [*base, shared, _edge("tg-a", "tg-b", 3, op="remove")]
        edges = [r for r in merge_logs(base, ours, theirs) if r["record_type"] == "edge"]
        assert len(edges) == 3
        assert [e["op"] for e in edges] == ["add", "add", "remove"]

    def test_tombstoned_ids_never_return(self) -> None:
        """An issue edited on one side and deleted on the other stays deleted."""
        base = [_issue("tg-a"), _issue("tg-b"), _edge("tg-a", "tg-b")]
        ours = [*base, _issue("tg-a", 5, title="edited after the delete")]
        theirs = list(base)
        merged = merge_logs(base, ours, theirs, tombstoned_ids={"tg-a"})
        assert set(_issues_by_id(merged)) == {"tg-b"}
        assert not any(r["record_type"] == "edge" for r in merged)

    def test_id_collision_keeps_both(self) -> None:
        """Two writers that picked the same id both keep their issue."""
        ours = [_issue("tg-aaaa", title="Ours", created_by="alice", created_at=_at(1))]
        theirs = [_issue("tg-aaaa", title="Theirs", created_by="bob", created_at=_at(2))]
        merged = _issues_by_id(merge_logs([], ours, theirs))
        assert len(merged) == 2
        assert "tg-aaaa" in merged
        assert {r["title"] for r in merged.values()} == {"Ours", "Theirs"}
        assert all(i.startswith("tg-") for i in merged)

    def test_id_collision_is_deterministic(self) -> None:
        """Both merge directions reallocate the same record to the same id."""
        ours = [_issue("tg-aaaa", title="Ours", created_by="alice", created_at=_at(1))]
        theirs = [_issue("tg-aaaa", title="Theirs", created_by="bob", created_at=_at(2))]
        assert merge_logs([], ours, theirs) == merge_logs([], theirs, ours)

    def test_id_collision_moves_own_edges(self) -> None:
        """Edges written alongside a reallocated issue follow it."""
        ours = [
            _issue("tg-aaaa", title="Ours", created_by="alice", created_at=_at(1)),
            _issue("tg-cccc", title="Ours blocker target"),
            _edge("tg-aaaa", "tg-cccc", 1),
        ]
        theirs = [_issue("tg-aaaa", title="Theirs", created_by="bob", created_at=_at(2))]
        merged = merge_logs([], ours, theirs)
        ours_id = next(i for i, r in _issues_by_id(merged).items() if r["title"] == "Ours")
        edges = [(r["from"], r["to"]) for r in merged if r["record_type"] == "edge"]
        assert edges == [(ours_id, "tg-cccc")]

    def test_same_issue_edited_both_sides_is_not_a_collision(self) -> None:
        """A shared ancestor means concurrent edits, not a collision."""
        base = [_issue("tg-a")]
        ours = [*base, _issue("tg-a", 1, title="o")]
        theirs = [*base, _issue("tg-a", 2, assignee="sam")]
        merged = _issues_by_id(merge_logs(base, ours, theirs))
        assert list(merged) == ["tg-a"]
        assert merged["tg-a"]["title"] == "o"
        assert merged["tg-a"]["assignee"] == "sam"

    def test_collision_with_deleted_id_keeps_live_issue(self) -> None:
        """A tombstone only removes the issue of the side that deleted it."""
        ours = [_issue("tg-aaaa", title="Ours, deleted", created_by="alice", created_at=_at(1))]
        theirs = [_issue("tg-aaaa", title="Theirs work", created_by="bob", created_at=_at(2))]

        merged = _issues_by_id(merge_logs([], ours, theirs, ours_tombstones={"tg-aaaa"}))
        assert [r["title"] for r in merged.values()] == ["Theirs work"]
        assert "tg-aaaa" not in merged

        swapped = merge_logs([], theirs, ours, theirs_tombstones={"tg-aaaa"})
        assert _issues_by_id(swapped) == merged

    def test_collision_with_tombstone_record_in_log(self) -> None:
        """A tombstone record in one side's log counts as that side's deletion."""
        ours = [
            _issue("tg-aaaa", title="Ours, deleted", created_by="alice", created_at=_at(1)),
            _tomb("tg-aaaa", 5),
        ]
        theirs = [_issue("tg-aaaa", title="Theirs work", created_by="bob", created_at=_at(2))]
        merged = _issues_by_id(merge_logs([], ours, theirs))
        assert [r["title"] for r in merged.values()] == ["Theirs work"]

    def test_collision_deleted_on_both_sides(self) -> None:
        """When both sides deleted the id nothing survives."""
        ours = [_issue("tg-aaaa", title="Ours", created_by="alice", created_at=_at(1))]
        theirs = [_issue("tg-aaaa", title="Theirs", created_by="bob", created_at=_at(2))]
        merged = merge_logs(
            [],
            ours,
            theirs,
            ours_tombstones={"tg-aaaa"},
            theirs_tombstones={"tg-aaaa"},
        )
        assert _issues_by_id(merged) == {}

    def test_edge_compacted_away_stays_removed(self) -> None:
        """An edge one side removed and then compacted does not come back."""
        a, b = _issue("tg-a"), _issue("tg-b")
        edge = _edge("tg-a", "tg-b", 1)
        base = [a, b, edge]
        ours = [a, b]
        theirs = [a, b, edge, _issue("tg-c")]

        for merged in (merge_logs(base, ours, theirs), merge_logs(base, theirs, ours)):
            assert replay(merged).edges == {}
            assert set(_issues_by_id(merged)) == {"tg-a", "tg-b", "tg-c"}

    def test_compaction_keeps_live_edges(self) -> None:
        """Compacting a live edge rewrites the same record, so it survives."""
        a, b = _issue("tg-a"), _issue("tg-b")
        edge = _edge("tg-a", "tg-b", 1)
        base = [a, b, _issue("tg-a", 1, title="old"), edge]
        ours = [_issue("tg-a", 1, title="old"), b, edge]
        theirs = [*base, _edge("tg-b", "tg-a", 2, op="remove")]
        edges = replay(merge_logs(base, ours, theirs)).edges
        assert list(edges) == [("tg-a", "tg-b", "blocks")]


class TestMergeTombstones:
    """Test merging the tombstone log."""

    def test_union_keeps_earliest(self) -> None:
        """Every id is kept once with its earliest deletion."""
        merged = merge_tombstones(
            [_tomb("tg-a", 1)],
            [_tomb("tg-a", 1), _tomb("tg-b", 3)],
            [_tomb("tg-a", 1), _tomb("tg-b", 2), _tomb("tg-c", 4)],
        )
        assert [(r["id"], r["deleted_at"]) for r in merged] == [
            ("tg-a", _at(1).isoformat()),
            ("tg-b", _at(2).isoformat()),
            ("tg-c", _at(4).isoformat()),
        ]

    def test_non_tombstone_record_abstains(self) -> None:
        """An issue record in the tombstone log is refused."""
        with pytest.raises(MergeAbstained):
            merge_tombstones([], [_issue("tg-a")], [])


class TestParsing:
    """Test strict parsing of merge inputs."""

    def test_conflict_markers_abstain(self) -> None:
        """Inputs that already contain conflict markers are refused."""
        with pytest.raises(MergeAbstained, match="Conflict marker"):
            parse_log_bytes(b"<<<<<<< ours\n")

    def test_malformed_line_abstains(self) -> None:
        """Unlike the reader, the driver does not skip a bad last line."""
        data = orjson.dumps(_issue("tg-a")) + b"\n{broken"
        with pytest.raises(MergeAbstained, match="line 2"):
            parse_log_bytes(data)

    def test_record_missing_fields_abstains(self) -> None:
        """A record that cannot be identified is refused."""
        with pytest.raises(MergeAbstained):
            parse_log_bytes(b'{"record_type": "edge", "from": "tg-a"}\n')

    def test_blank_lines_ignored(self) -> None:
        """Blank lines are not records."""
        data = b"\n" + orjson.dumps(_issue("tg-a")) + b"\n\n"
        assert len(parse_log_bytes(data)) == 1


class TestRunMergeDriver:
    """Test the file-level driver entry point."""

    @pytest.fixture(autouse=True)
    def _outside_git(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)

    def test_writes_merge_into_ours(self, tmp_path: Path) -> None:
        """The merged log replaces the ours file."""
        base = _write(tmp_path / "base", [_issue("tg-a")])
        ours = _write(tmp_path / "ours", [_issue("tg-a"), _issue("tg-b")])
        theirs = _write(tmp_path / "theirs", [_issue("tg-a"), _issue("tg-c")])
        assert run_merge_driver(base, ours, theirs, ".tangle/issues.jsonl") == 3
        ids = [orjson.loads(line)["id"] for line in ours.read_bytes().splitlines()]
        assert sorted(ids) == ["tg-a", "tg-b", "tg-c"]

    def test_tombstone_log_by_path(self, tmp_path: Path) -> None:
        """The path hint selects tombstone merging."""
        base = _write(tmp_path / "base", [])
        ours = _write(tmp_path / "ours", [_tomb("tg-a")])
        theirs = _write(tmp_path / "theirs", [_tomb("tg-b")])
        assert run_merge_driver(base, ours, theirs, ".tangle/tombstones.jsonl") == 2

    def test_abstain_leaves_ours_untouched(self, tmp_path: Path) -> None:
        """On abstention the ours file keeps its original bytes."""
        base = _write(tmp_path / "base", [_issue("tg-a")])
        ours = _write(tmp_path / "ours", [_issue("tg-a", 1, title="mine")])
        before = ours.read_bytes()
        theirs = tmp_path / "theirs"
        theirs.write_bytes(b"=======\n")
        with pytest.raises(MergeAbstained):
            run_merge_driver(base, ours, theirs, ".tangle/issues.jsonl")
        assert ours.read_bytes() == before

    def test_missing_base_is_empty(self, tmp_path: Path) -> None:
        """A file added on both branches merges against an empty base."""
        ours = _write(tmp_path / "ours", [_issue("tg-a")])
        theirs = _write(tmp_path / "theirs", [_issue("tg-b")])
        assert run_merge_driver(tmp_path / "nope", ours, theirs) == 2
