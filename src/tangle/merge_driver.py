"""Custom git merge driver for the tangle JSONL logs.

Understands record semantics so concurrent edits from different branches,
clones or agents merge without text conflicts:

- issues present on one side only are kept;
- issues edited on both sides are merged field by field, the later
  ``updated_at`` winning each contested field;
- tombstoned ids never come back;
- edge operations are unioned, except that a record one side has
  compacted away stays gone;
- two writers that independently allocated the same id keep both issues,
  one of them under a fresh id, even when one side has deleted its own.

Registered via .gitattributes and installed with ``tg git setup``. Invoked by
git as ``tg git merge-driver %O %A %B %P``; the result is written to ``%A``.
If the inputs cannot be merged safely the driver abstains and git reports a
conflict.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
from pathlib import Path
from typing import Any

import orjson

from tangle.constants import TOMBSTONES_FILENAME
from tangle.errors import MergeAbstained
from tangle.idgen import allocate_id
from tangle.models import (
    DependencyType,
    Status,
    classify_record,
    parse_timestamp,
    record_hash,
    record_version,
)
from tangle.storage import CONFLICT_MARKERS

logger = logging.getLogger(__name__)

# Fields that only make sense together are merged as one unit
_FIELD_GROUPS: tuple[tuple[str, ...], ...] = (
    ("status", "closed_at", "close_reason"),
)
_UNMERGED_FIELDS = frozenset(
    {"record_type", "tangle_version", "id", "updated_at", "updated_by"},
)

EdgeKey = tuple[str, str, str, str, str]


def parse_log_bytes(data: bytes, source: str = "<log>") -> list[dict[str, Any]]:
    """Strictly parse a JSONL log.

    Raises:
        MergeAbstained: On conflict markers, malformed lines or records that
            lack their identifying fields.
    """
    records: list[dict[str, Any]] = []
    for line_num, raw in enumerate(data.splitlines(), 1):
        stripped = raw.strip()
        if not stripped:
            continue
        if stripped.startswith(CONFLICT_MARKERS):
            msg = f"Conflict marker at line {line_num} in {source}"
            raise MergeAbstained(msg)
        try:
            record = orjson.loads(stripped)
        except orjson.JSONDecodeError as e:
            msg = f"Malformed JSONL at line {line_num} in {source}: {e}"
            raise MergeAbstained(msg) from e
        if not isinstance(record, dict):
            msg = f"Line {line_num} in {source} is not a JSON object"
            raise MergeAbstained(msg)
        _check_record(record, line_num, source)
        records.append(record)
    return records


def _check_record(record: dict[str, Any], line_num: int, source: str) -> None:
    rtype = classify_record(record)
    try:
        if rtype == "edge":
            DependencyType(record["type"])
            record["from"], record["to"]  # noqa: B018
            parse_timestamp(record["at"])
        elif rtype == "tombstone":
            parse_timestamp(record["deleted_at"])
            record["id"]  # noqa: B018
        else:
            Status(record["status"])
            parse_timestamp(record["updated_at"])
            parse_timestamp(record["created_at"])
            record["id"]  # noqa: B018
    except (KeyError, ValueError, TypeError) as e:
        msg = f"Unmergeable {rtype} record at line {line_num} in {source}: {e}"
        raise MergeAbstained(msg, ids=[str(record.get("id", ""))]) from e


def parse_log(path: Path) -> list[dict[str, Any]]:
    """Strictly parse a log file; a missing file is an empty log."""
    if not path.exists():
        return []
    return parse_log_bytes(path.read_bytes(), str(path))


def _edge_key(record: dict[str, Any]) -> EdgeKey:
    return (
        record["from"],
        record["to"],
        record["type"],
        record.get("op", "add"),
        record["at"],
    )


class _Side:
    """One version of the log, resolved to its effective records."""

    def __init__(self, records: list[dict[str, Any]]) -> None:
        self.issues: dict[str, dict[str, Any]] = {}
        self.edges: dict[EdgeKey, dict[str, Any]] = {}
        self.tombstones: dict[str, dict[str, Any]] = {}
        for record in records:
            rtype = classify_record(record)
            if rtype == "edge":
                self.edges[_edge_key(record)] = record
            elif rtype == "tombstone":
                self.tombstones[record["id"]] = record
            else:
                current = self.issues.get(record["id"])
                if current is None or record_version(record) > record_version(current):
                    self.issues[record["id"]] = record

    def rename(self, old_id: str, new_id: str, keep_edges: set[EdgeKey]) -> None:
        """Move ``old_id`` to ``new_id``, remapping this side's own edges."""
        record = dict(self.issues.pop(old_id))
        record["id"] = new_id
        self.issues[new_id] = record
        for key in list(self.edges):
            if key in keep_edges or old_id not in (key[0], key[1]):
                continue
            edge = dict(self.edges.pop(key))
            if edge["from"] == old_id:
                edge["from"] = new_id
            if edge["to"] == old_id:
                edge["to"] = new_id
            self.edges[_edge_key(edge)] = edge


def _creation_hash(record: dict[str, Any]) -> str:
    identity = {
        "id": record["id"],
        "created_at": record.get("created_at"),
        "created_by": record.get("created_by"),
        "title": record.get("title"),
    }
    return hashlib.sha256(orjson.dumps(identity, option=orjson.OPT_SORT_KEYS)).hexdigest()


def _is_collision(base: dict[str, Any] | None, a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Same id, independently created by two writers."""
    if base is not None:
        return False
    return (
        parse_timestamp(a["created_at"]) != parse_timestamp(b["created_at"])
        or a.get("created_by") != b.get("created_by")
    )


def _merge_labels(base: list[str] | None, a: list[str], b: list[str]) -> list[str]:
    if base is None:
        return sorted(set(a) | set(b))
    base_set = set(base)
    added = (set(a) - base_set) | (set(b) - base_set)
    removed = (base_set - set(a)) | (base_set - set(b))
    return sorted((base_set | added) - removed)


def merge_issue_records(
    base: dict[str, Any] | None,
    a: dict[str, Any],
    b: dict[str, Any],
) -> dict[str, Any]:
    """Field-level three-way merge of two versions of one issue.

    A field changed on one side only takes that side's value. A field
    changed on both sides takes the value from the later version (later
    ``updated_at``, then greater content hash). The result does not depend on
    argument order.
    """
    if record_hash(a) == record_hash(b):
        return min(a, b, key=lambda r: orjson.dumps(r, option=orjson.OPT_SORT_KEYS))

    later, earlier = (a, b) if record_version(a) > record_version(b) else (b, a)
    merged: dict[str, Any] = dict(later)

    grouped = {f for group in _FIELD_GROUPS for f in group}
    units: list[tuple[str, ...]] = list(_FIELD_GROUPS)
    keys = (set(a) | set(b) | set(base or {})) - _UNMERGED_FIELDS - grouped
    units.extend((k,) for k in sorted(keys))

    for unit in units:
        later_vals = tuple(later.get(k) for k in unit)
        earlier_vals = tuple(earlier.get(k) for k in unit)
        if unit == ("labels",):
            merged["labels"] = _merge_labels(
                base.get("labels") if base is not None else None,
                later.get("labels") or [],
                earlier.get("labels") or [],
            )
            continue
        if later_vals == earlier_vals:
            chosen = later_vals
        elif base is not None and later_vals == tuple(base.get(k) for k in unit):
            chosen = earlier_vals
        else:
            chosen = later_vals
        for k, v in zip(unit, chosen):
            merged[k] = v

    merged["updated_at"] = later["updated_at"]
    merged["updated_by"] = later.get("updated_by")
    return merged


def merge_logs(
    base_records: list[dict[str, Any]],
    ours_records: list[dict[str, Any]],
    theirs_records: list[dict[str, Any]],
    tombstoned_ids: frozenset[str] | set[str] = frozenset(),
    *,
    ours_tombstones: frozenset[str] | set[str] = frozenset(),
    theirs_tombstones: frozenset[str] | set[str] = frozenset(),
) -> list[dict[str, Any]]:
    """Merge three versions of the issue log.

    Args:
        base_records: Common ancestor records
        ours_records: Local records
        theirs_records: Incoming records
        tombstoned_ids: Ids deleted on some side that cannot be told apart
        ours_tombstones: Ids deleted by the local side
        theirs_tombstones: Ids deleted by the incoming side

    Returns:
        The merged records: one record per live issue, then the union of edge
        operations. ``merge_logs(b, x, y) == merge_logs(b, y, x)`` when the
        tombstone sets are swapped along with the sides.
    """
    base = _Side(base_records)
    ours = _Side(ours_records)
    theirs = _Side(theirs_records)

    ours_dead = set(ours_tombstones) | set(ours.tombstones)
    theirs_dead = set(theirs_tombstones) | set(theirs.tombstones)
    dead = set(tombstoned_ids) | set(base.tombstones) | ours_dead | theirs_dead

    _reallocate_collisions(base, ours, theirs, dead, ours_dead, theirs_dead)

    issues: dict[str, dict[str, Any]] = {}
    for issue_id in set(ours.issues) | set(theirs.issues):
        if issue_id in dead:
            continue
        a = ours.issues.get(issue_id)
        b = theirs.issues.get(issue_id)
        if a is None or b is None:
            issues[issue_id] = a if a is not None else b  # type: ignore[assignment]
        else:
            issues[issue_id] = merge_issue_records(base.issues.get(issue_id), a, b)

    edges: dict[EdgeKey, dict[str, Any]] = {}
    for side in (ours, theirs):
        for key, record in side.edges.items():
            if key[0] in dead or key[1] in dead:
                continue
            # Dropped by compaction on the side that no longer has it
            if key in base.edges and (key not in ours.edges or key not in theirs.edges):
                continue
            existing = edges.get(key)
            if existing is None or record_hash(record) > record_hash(existing):
                edges[key] = record

    tombstones: dict[str, dict[str, Any]] = {}
    for side in (ours, theirs):
        for tomb_id, record in side.tombstones.items():
            _keep_earliest_tombstone(tombstones, tomb_id, record)

    result: list[dict[str, Any]] = sorted(
        issues.values(),
        key=lambda r: (parse_timestamp(r["created_at"]), r["id"]),
    )
    result.extend(
        edges[key] for key in sorted(edges, key=lambda k: (parse_timestamp(k[4]), k))
    )
    result.extend(
        tombstones[tid]
        for tid in sorted(
            tombstones,
            key=lambda t: (parse_timestamp(tombstones[t]["deleted_at"]), t),
        )
    )
    return result


def _reallocate_collisions(
    base: _Side,
    ours: _Side,
    theirs: _Side,
    dead: set[str],
    ours_dead: set[str],
    theirs_dead: set[str],
) -> None:
    """Give one of each pair of independently created, same-id issues a new id.

    When only one side deleted a colliding id, the tombstone belongs to that
    side's issue and the other side's issue moves to the new id. When the
    deleting side cannot be told, the tombstone covers both.
    """
    taken = set(dead)
    for side in (base, ours, theirs):
        taken.update(side.issues)

    for issue_id in sorted(set(ours.issues) & set(theirs.issues)):
        a = ours.issues[issue_id]
        b = theirs.issues[issue_id]
        if not _is_collision(base.issues.get(issue_id), a, b):
            continue

        if issue_id in dead:
            if issue_id in ours_dead and issue_id not in theirs_dead:
                loser_side, loser = theirs, b
            elif issue_id in theirs_dead and issue_id not in ours_dead:
                loser_side, loser = ours, a
            else:
                continue
        elif _creation_hash(a) > _creation_hash(b):
            loser_side, loser = ours, a
        else:
            loser_side, loser = theirs, b
        other_side = theirs if loser_side is ours else ours
        seed = _creation_hash(loser)
        prefix = issue_id.rsplit("-", 1)[0] if "-" in issue_id else ""
        new_id = allocate_id(taken, prefix=prefix, seed=seed)
        taken.add(new_id)
        loser_side.rename(issue_id, new_id, keep_edges=set(other_side.edges))
        logger.warning(
            "Id collision on %s: '%s' and '%s' were created independently; "
            "reallocated the latter to %s",
            issue_id,
            (a if loser is b else b).get("title"),
            loser.get("title"),
            new_id,
        )


def _keep_earliest_tombstone(
    tombstones: dict[str, dict[str, Any]],
    tomb_id: str,
    record: dict[str, Any],
) -> None:
    current = tombstones.get(tomb_id)
    if current is None:
        tombstones[tomb_id] = record
        return
    new_key = (parse_timestamp(record["deleted_at"]), record_hash(record))
    old_key = (parse_timestamp(current["deleted_at"]), record_hash(current))
    if new_key < old_key:
        tombstones[tomb_id] = record


def merge_tombstones(
    base_records: list[dict[str, Any]],
    ours_records: list[dict[str, Any]],
    theirs_records: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Union of tombstones by id; the earliest deletion record is kept."""
    tombstones: dict[str, dict[str, Any]] = {}
    for record in [*base_records, *ours_records, *theirs_records]:
        if classify_record(record) != "tombstone":
            msg = f"Unexpected {classify_record(record)} record in tombstone log"
            raise MergeAbstained(msg, ids=[str(record.get("id", ""))])
        _keep_earliest_tombstone(tombstones, record["id"], record)
    return sorted(
        tombstones.values(),
        key=lambda r: (parse_timestamp(r["deleted_at"]), r["id"]),
    )


def _is_tombstone_log(path_hint: str | None, *record_sets: list[dict[str, Any]]) -> bool:
    if path_hint:
        return Path(path_hint).name == TOMBSTONES_FILENAME
    records = [r for rs in record_sets for r in rs]
    return bool(records) and all(classify_record(r) == "tombstone" for r in records)


def _tombstones_at(revision: str, path: str, cwd: Path) -> set[str]:
    """Tombstoned ids recorded in ``revision:path``, best effort."""
    try:
        result = subprocess.run(
            ["git", "show", f"{revision}:{path}"],
            capture_output=True,
            check=False,
            cwd=cwd,
        )
    except (FileNotFoundError, OSError):
        return set()
    if result.returncode != 0:
        return set()
    try:
        return {r["id"] for r in parse_log_bytes(result.stdout, f"{revision}:{path}")}
    except MergeAbstained:
        logger.debug("Ignoring unreadable tombstones at %s:%s", revision, path)
        return set()


# Refs naming the incoming side of a merge, rebase, cherry-pick or revert
_INCOMING_REFS = ("MERGE_HEAD", "REBASE_HEAD", "CHERRY_PICK_HEAD", "REVERT_HEAD")


def known_tombstones(
    path_hint: str | None,
    cwd: Path | None = None,
) -> tuple[set[str], set[str]]:
    """Tombstoned ids of the local and the incoming side of a git operation.

    The local side is ``HEAD`` plus the working tree; the incoming side is
    whichever of ``MERGE_HEAD``, ``REBASE_HEAD``, ``CHERRY_PICK_HEAD`` or
    ``REVERT_HEAD`` exists. Working-tree ids already known to the incoming
    side are left to it, since git may have merged the tombstone log first.

    Returns:
        ``(ours, theirs)`` sets of ids.
    """
    cwd = cwd or Path.cwd()
    tomb_rel = (
        str(Path(path_hint).parent / TOMBSTONES_FILENAME)
        if path_hint
        else f".tangle/{TOMBSTONES_FILENAME}"
    )
    ours = _tombstones_at("HEAD", tomb_rel, cwd)
    theirs: set[str] = set()
    for ref in _INCOMING_REFS:
        theirs |= _tombstones_at(ref, tomb_rel, cwd)
    worktree = cwd / tomb_rel
    if worktree.exists():
        try:
            ours.update({r["id"] for r in parse_log(worktree)} - theirs)
        except MergeAbstained:
            logger.debug("Ignoring unreadable working-tree tombstones %s", worktree)
    return ours, theirs


def run_merge_driver(
    base_path: Path,
    ours_path: Path,
    theirs_path: Path,
    path_hint: str | None = None,
) -> int:
    """Merge ``theirs`` into ``ours`` in place.

    Returns:
        The number of records written.

    Raises:
        MergeAbstained: If any input cannot be merged automatically. ``ours``
            is left untouched.
    """
    base = parse_log(base_path)
    ours = parse_log(ours_path)
    theirs = parse_log(theirs_path)

    if _is_tombstone_log(path_hint, base, ours, theirs):
        merged = merge_tombstones(base, ours, theirs)
    else:
        ours_dead, theirs_dead = known_tombstones(path_hint)
        merged = merge_logs(
            base,
            ours,
            theirs,
            ours_tombstones=ours_dead,
            theirs_tombstones=theirs_dead,
        )

    payload = b"".join(orjson.dumps(r) + b"\n" for r in merged)
    ours_path.write_bytes(payload)
    return len(merged)
