"""Durable JSONL logs for issues, edges and tombstones.

The issue log is the single source of truth. It is appended to during normal
operation so concurrent branches produce line-level diffs that git (and the
tangle merge driver) can reconcile. The tombstone log is strictly
append-only.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

from tangle.constants import ISSUES_FILENAME, TOMBSTONES_FILENAME, WRITE_LOCK_FILENAME
from tangle.errors import CorruptionError, NotInitializedError, UnresolvedMergeConflict
from tangle.models import (
    Dependency,
    DependencyType,
    Issue,
    Tombstone,
    classify_record,
    dependency_to_dict,
    dict_to_dependency,
    dict_to_issue,
    dict_to_tombstone,
    issue_to_dict,
    parse_timestamp,
    record_version,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = (b"<<<<<<<", b"=======", b">>>>>>>", b"|||||||")


@dataclass(frozen=True)
class Fingerprint:
    """What the cache last observed of a log file."""

    size: int
    mtime_ns: int
    sha256: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage in the cache metadata table."""
        return {"size": self.size, "mtime_ns": self.mtime_ns, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Fingerprint:
        """Inverse of :meth:`to_dict`."""
        return cls(int(data["size"]), int(data["mtime_ns"]), str(data["sha256"]))


EMPTY_FINGERPRINT = Fingerprint(0, 0, hashlib.sha256(b"").hexdigest())


class JSONLFile:
    """An append-oriented JSONL file guarded by an advisory write lock."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self.path = path
        self._lock_path = lock_path

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        """Acquire an advisory file lock for exclusive writes."""
        lock_fd = self._lock_path.open("w")
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            lock_fd.close()

    def exists(self) -> bool:
        """Whether the file exists on disk."""
        return self.path.exists()

    def fingerprint(self) -> Fingerprint:
        """Return size, mtime and content hash of the file."""
        if not self.path.exists():
            return EMPTY_FINGERPRINT
        stat = self.path.stat()
        digest = hashlib.sha256(self.path.read_bytes()).hexdigest()
        return Fingerprint(stat.st_size, stat.st_mtime_ns, digest)

    def quick_stat(self) -> tuple[int, int]:
        """Size and mtime only, for cheap staleness checks."""
        if not self.path.exists():
            return (0, 0)
        stat = self.path.stat()
        return (stat.st_size, stat.st_mtime_ns)

    def read_records(self) -> list[dict[str, Any]]:
        """Parse every record in the file.

        A malformed **last** line is tolerated (logged and skipped) because it
        is the most common result of a crash or disk-full during ``append()``.
        Any other malformed line raises ``CorruptionError``; git conflict
        markers raise ``UnresolvedMergeConflict``.
        """
        if not self.path.exists():
            return []
        try:
            lines = self.path.read_bytes().splitlines()
        except OSError as e:
            msg = f"Failed to read {self.path}: {e}"
            raise CorruptionError(msg) from e

        # Strip trailing empty lines so we can identify the true last line
        while lines and not lines[-1].strip():
            lines.pop()

        records: list[dict[str, Any]] = []
        for line_idx, raw_line in enumerate(lines):
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith(CONFLICT_MARKERS):
                msg = f"Unresolved merge conflict in {self.path} at line {line_idx + 1}"
                raise UnresolvedMergeConflict(msg)
            try:
                data = orjson.loads(line)
                if not isinstance(data, dict):
                    msg = "record is not an object"
                    raise TypeError(msg)
            except (orjson.JSONDecodeError, TypeError) as e:
                if line_idx == len(lines) - 1:
                    logger.warning("Skipping malformed last line in %s: %s", self.path, e)
                    continue
                msg = f"Invalid JSONL record in {self.path} at line {line_idx + 1}: {e}"
                raise CorruptionError(msg) from e
            records.append(data)
        return records

    def append(self, records: list[dict[str, Any]]) -> None:
        """Append records without rewriting the file.

        Builds the payload in memory first and writes it in a single call
        so that a partial write never leaves a truncated JSON line behind.
        If the file doesn't end with a newline (e.g. from a prior truncated
        write), a newline is prepended.
        """
        if not records:
            return
        payload = b"".join(orjson.dumps(r) + b"\n" for r in records)

        with self.write_lock():
            try:
                if self.path.exists() and self.path.stat().st_size > 0:
                    with self.path.open("rb") as check:
                        check.seek(-1, 2)
                        if check.read(1) != b"\n":
                            payload = b"\n" + payload

                with self.path.open("ab") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                msg = f"Failed to append to {self.path}: {e}"
                raise RuntimeError(msg) from e

    def rewrite(self, records: Iterable[dict[str, Any]]) -> None:
        """Atomically replace the file contents with ``records``."""
        with self.write_lock():
            with tempfile.NamedTemporaryFile(
                mode="wb",
                dir=self.path.parent,
                delete=False,
                suffix=".jsonl",
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                try:
                    for record in records:
                        tmp_file.write(orjson.dumps(record))
                        tmp_file.write(b"\n")
                    tmp_file.flush()
                    os.fsync(tmp_file.fileno())
                except Exception as e:
                    tmp_path.unlink(missing_ok=True)
                    msg = f"Failed to write to temporary file: {e}"
                    raise RuntimeError(msg) from e

            try:
                tmp_path.replace(self.path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                msg = f"Failed to write {self.path}: {e}"
                raise RuntimeError(msg) from e


class IssueLog(JSONLFile):
    """The durable issue and edge log (``issues.jsonl``)."""

    def __init__(self, tangle_dir: str | Path, create: bool = False) -> None:
        """Open the issue log.

        Args:
            tangle_dir: Path to the .tangle directory
            create: If True, create the directory and an empty log.
                If False (default), raise ``NotInitializedError`` when the log
                is missing.
        """
        tangle_dir = Path(tangle_dir)
        if create:
            tangle_dir.mkdir(parents=True, exist_ok=True)
            (tangle_dir / ISSUES_FILENAME).touch(exist_ok=True)
        elif not (tangle_dir / ISSUES_FILENAME).exists():
            msg = f"No tangle store at '{tangle_dir}'"
            raise NotInitializedError(msg)
        super().__init__(tangle_dir / ISSUES_FILENAME, tangle_dir / WRITE_LOCK_FILENAME)
        self.tangle_dir = tangle_dir

    def compact(self, snapshot: Snapshot) -> None:
        """Rewrite the log with only the current state of ``snapshot``."""
        self.rewrite(snapshot.to_records())


class TombstoneLog(JSONLFile):
    """The append-only tombstone log (``tombstones.jsonl``)."""

    def __init__(self, tangle_dir: str | Path) -> None:
        tangle_dir = Path(tangle_dir)
        super().__init__(
            tangle_dir / TOMBSTONES_FILENAME,
            tangle_dir / WRITE_LOCK_FILENAME,
        )

    def rewrite(self, records: Iterable[dict[str, Any]]) -> None:  # noqa: ARG002
        """Tombstones are never rewritten."""
        msg = "The tombstone log is append-only"
        raise RuntimeError(msg)


@dataclass
class Snapshot:
    """The state obtained by replaying the logs."""

    issues: dict[str, Issue] = field(default_factory=dict[str, Issue])
    edges: dict[tuple[str, str, str], Dependency] = field(
        default_factory=dict[tuple[str, str, str], Dependency],
    )
    tombstones: dict[str, Tombstone] = field(default_factory=dict[str, Tombstone])

    def all_ids(self) -> set[str]:
        """Every id ever seen, live or tombstoned."""
        return set(self.issues) | set(self.tombstones)

    def to_records(self) -> list[dict[str, Any]]:
        """Issue and edge records describing this snapshot, in a stable order."""
        records = [
            issue_to_dict(issue)
            for issue in sorted(self.issues.values(), key=lambda i: (i.created_at, i.id))
        ]
        records.extend(
            dependency_to_dict(dep)
            for _, dep in sorted(self.edges.items(), key=lambda kv: kv[0])
        )
        return records


def _edge_key(data: dict[str, Any]) -> tuple[str, str, str]:
    return (data["from"], data["to"], data["type"])


def replay(
    records: Iterable[dict[str, Any]],
    tombstone_records: Iterable[dict[str, Any]] = (),
) -> Snapshot:
    """Replay log records into a snapshot.

    Replay is order independent and idempotent:

    - for each issue id the record with the greatest ``(updated_at, hash)``
      wins;
    - for each edge key the operation with the greatest ``at`` wins, with
      ``remove`` beating ``add`` at the same instant;
    - tombstoned ids, and edges touching them, are suppressed.

    Raises:
        CorruptionError: If a record lacks required fields.
    """
    winners: dict[str, dict[str, Any]] = {}
    edge_ops: dict[tuple[str, str, str], dict[str, Any]] = {}
    tombstones: dict[str, Tombstone] = {}

    try:
        for data in records:
            rtype = classify_record(data)
            if rtype == "edge":
                DependencyType(data["type"])
                key = _edge_key(data)
                current = edge_ops.get(key)
                if current is None or _edge_order(data) > _edge_order(current):
                    edge_ops[key] = data
            elif rtype == "tombstone":
                tomb = dict_to_tombstone(data)
                _keep_earliest(tombstones, tomb)
            else:
                issue_id = data["id"]
                current = winners.get(issue_id)
                if current is None or record_version(data) > record_version(current):
                    winners[issue_id] = data

        for data in tombstone_records:
            _keep_earliest(tombstones, dict_to_tombstone(data))

        snapshot = Snapshot(tombstones=tombstones)
        for issue_id, data in winners.items():
            if issue_id not in tombstones:
                snapshot.issues[issue_id] = dict_to_issue(data)

        for key, data in edge_ops.items():
            if data.get("op", "add") == "remove":
                continue
            from_id, to_id, _ = key
            if from_id in tombstones or to_id in tombstones:
                continue
            snapshot.edges[key] = dict_to_dependency(data)
    except (KeyError, ValueError, TypeError) as e:
        msg = f"Malformed record in log: {e}"
        raise CorruptionError(msg) from e

    _derive_parents(snapshot)
    return snapshot


def _edge_order(data: dict[str, Any]) -> tuple[Any, int]:
    return (parse_timestamp(data["at"]), 1 if data.get("op") == "remove" else 0)


def _keep_earliest(tombstones: dict[str, Tombstone], tomb: Tombstone) -> None:
    current = tombstones.get(tomb.id)
    if current is None or tomb.deleted_at < current.deleted_at:
        tombstones[tomb.id] = tomb


def _derive_parents(snapshot: Snapshot) -> None:
    """Set ``Issue.parent`` from parent-child edges."""
    for issue in snapshot.issues.values():
        issue.parent = None
    for from_id, to_id, dep_type in sorted(snapshot.edges):
        if dep_type != DependencyType.PARENT_CHILD.value:
            continue
        child = snapshot.issues.get(to_id)
        if child is not None and from_id in snapshot.issues and child.parent is None:
            child.parent = from_id
