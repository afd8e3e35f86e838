"""Local sqlite projection of the durable log.

The cache is disposable: it can always be rebuilt from ``issues.jsonl`` and
``tombstones.jsonl``. It is never assumed to match the log unless the sync
engine has just imported it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import orjson

from tangle.errors import CorruptionError
from tangle.models import (
    Dependency,
    DependencyType,
    Issue,
    Status,
    Tombstone,
    dict_to_issue,
    issue_to_dict,
    parse_timestamp,
)
from tangle.storage import Snapshot

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "2"

SCHEMA = """
CREATE TABLE IF NOT EXISTS issues (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    priority INTEGER NOT NULL DEFAULT 2 CHECK(priority >= 0 AND priority <= 4),
    issue_type TEXT NOT NULL DEFAULT 'task',
    assignee TEXT,
    parent TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
CREATE INDEX IF NOT EXISTS idx_issues_priority ON issues(priority);
CREATE INDEX IF NOT EXISTS idx_issues_assignee ON issues(assignee);
CREATE INDEX IF NOT EXISTS idx_issues_parent ON issues(parent);

CREATE TABLE IF NOT EXISTS labels (
    issue_id TEXT NOT NULL,
    label TEXT NOT NULL,
    PRIMARY KEY (issue_id, label),
    FOREIGN KEY (issue_id) REFERENCES issues(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_labels_label ON labels(label);

CREATE TABLE IF NOT EXISTS edges (
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    type TEXT NOT NULL,
    created_at TEXT NOT NULL,
    created_by TEXT,
    PRIMARY KEY (from_id, to_id, type)
);

CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_id, type);

CREATE TABLE IF NOT EXISTS tombstones (
    id TEXT PRIMARY KEY,
    deleted_at TEXT NOT NULL,
    deleted_by TEXT,
    reason TEXT
);

-- Records written to the cache but not yet exported to the logs
CREATE TABLE IF NOT EXISTS pending (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    target TEXT NOT NULL CHECK(target IN ('issues', 'tombstones')),
    record TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class Cache:
    """Embedded, queryable projection of the issue log.

    All methods are serialized by an internal lock so the debounced export
    timer can share the connection with the owning thread.
    """

    def __init__(self, path: str | Path) -> None:
        """Open (or create) the cache database.

        Args:
            path: Path to the sqlite file, or ``":memory:"``.

        Raises:
            CorruptionError: If the file exists but is not a usable database.
        """
        self.path = str(path)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._ensure_schema()
        except sqlite3.DatabaseError as e:
            msg = f"Cache database {self.path} is unreadable: {e}"
            raise CorruptionError(msg) from e

    def _ensure_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        version = self.get_meta("schema_version")
        if version is None:
            self.set_meta("schema_version", SCHEMA_VERSION)
        elif version != SCHEMA_VERSION:
            logger.info("Cache schema %s is outdated, resetting", version)
            with self.transaction() as conn:
                for table in ("labels", "issues", "edges", "tombstones", "metadata"):
                    conn.execute(f"DELETE FROM {table}")  # noqa: S608
                conn.execute(
                    "INSERT INTO metadata (key, value) VALUES ('schema_version', ?)",
                    (SCHEMA_VERSION,),
                )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a single transaction."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.DatabaseError as e:
                msg = f"Cache database error: {e}"
                raise CorruptionError(msg) from e

    # -- metadata -----------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        """Read a metadata value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM metadata WHERE key = ?",
                (key,),
            ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write a metadata value."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (key, value),
            )

    # -- bulk load ------------------------------------------------------------

    def rebuild(self, snapshot: Snapshot) -> None:
        """Replace the projected state with ``snapshot`` in one transaction.

        Pending (unexported) records are left untouched.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM labels")
            conn.execute("DELETE FROM issues")
            conn.execute("DELETE FROM edges")
            conn.execute("DELETE FROM tombstones")
            for issue in snapshot.issues.values():
                self._write_issue(conn, issue)
            for dep in snapshot.edges.values():
                self._write_edge(conn, dep)
            for tomb in snapshot.tombstones.values():
                self._write_tombstone(conn, tomb)

    # -- issues -----------------------------------------------------------------

    @staticmethod
    def _write_issue(conn: sqlite3.Connection, issue: Issue) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO issues "
            "(id, title, status, priority, issue_type, assignee, parent, "
            "created_at, updated_at, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                issue.id,
                issue.title,
                issue.status.value,
                issue.priority,
                issue.issue_type,
                issue.assignee,
                issue.parent,
                issue.created_at.isoformat(),
                issue.updated_at.isoformat(),
                orjson.dumps(issue_to_dict(issue)).decode(),
            ),
        )
        conn.execute("DELETE FROM labels WHERE issue_id = ?", (issue.id,))
        conn.executemany(
            "INSERT OR IGNORE INTO labels (issue_id, label) VALUES (?, ?)",
            [(issue.id, label) for label in set(issue.labels)],
        )

    def upsert_issue(self, issue: Issue) -> None:
        """Insert or replace an issue."""
        with self.transaction() as conn:
            self._write_issue(conn, issue)

    @staticmethod
    def _row_to_issue(row: sqlite3.Row) -> Issue:
        issue = dict_to_issue(orjson.loads(row["data"]))
        issue.parent = row["parent"]
        return issue

    def get_issue(self, issue_id: str) -> Issue | None:
        """Get an issue by exact id, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM issues WHERE id = ?",
                (issue_id,),
            ).fetchone()
        return self._row_to_issue(row) if row else None

    def list_issues(self, filters: dict[str, Any] | None = None) -> list[Issue]:
        """List issues, optionally filtered.

        Args:
            filters: Optional filters (status, type, priority, label, assignee,
                parent). ``label`` may be a string or a list (any match).

        Returns:
            Matching issues ordered by creation time.
        """
        clauses: list[str] = []
        params: list[Any] = []
        filters = filters or {}

        if filters.get("status") is not None:
            status = filters["status"]
            clauses.append("status = ?")
            params.append(status.value if isinstance(status, Status) else str(status))
        if filters.get("type") is not None:
            clauses.append("issue_type = ?")
            params.append(filters["type"])
        if filters.get("priority") is not None:
            clauses.append("priority = ?")
            params.append(int(filters["priority"]))
        if filters.get("assignee") is not None:
            clauses.append("assignee = ?")
            params.append(filters["assignee"])
        if filters.get("parent") is not None:
            clauses.append("parent = ?")
            params.append(filters["parent"])
        if filters.get("label") is not None:
            labels = filters["label"]
            if isinstance(labels, str):
                labels = [labels]
            placeholders = ", ".join("?" for _ in labels)
            clauses.append(
                f"id IN (SELECT issue_id FROM labels WHERE label IN ({placeholders}))",
            )
            params.extend(labels)

        sql = "SELECT * FROM issues"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_issue(row) for row in rows]

    def all_ids(self) -> set[str]:
        """Every id known to the cache, tombstoned ones included."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM issues UNION SELECT id FROM tombstones",
            ).fetchall()
        return {row["id"] for row in rows}

    def resolve_id(self, partial_id: str) -> str | None:
        """Resolve a partial ID to a full issue ID.

        Supports multiple formats:
        - Full ID: "tg-3hup" -> "tg-3hup"
        - Hash only: "3hup" -> "tg-3hup"
        - Short hash suffix: "hup" -> matches if unique

        Returns:
            The full issue ID, or None if not found

        Raises:
            ValueError: If partial ID matches multiple issues (ambiguous)
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM issues WHERE id = ?",
                (partial_id,),
            ).fetchone()
            if row:
                return row["id"]
            escaped = partial_id.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            rows = self._conn.execute(
                "SELECT id FROM issues WHERE id LIKE ? ESCAPE '\\' ORDER BY id",
                (f"%{escaped}",),
            ).fetchall()

        matches = [
            r["id"]
            for r in rows
            if r["id"].rsplit("-", 1)[-1] == partial_id or r["id"].endswith(partial_id)
        ]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            msg = (
                f"Ambiguous partial ID '{partial_id}' matches {len(matches)} issues: "
                f"{', '.join(matches[:5])}"
                + (f" and {len(matches) - 5} more" if len(matches) > 5 else "")
            )
            raise ValueError(msg)
        return None

    # -- edges ------------------------------------------------------------------

    @staticmethod
    def _write_edge(conn: sqlite3.Connection, dep: Dependency) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO edges (from_id, to_id, type, created_at, created_by) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                dep.from_id,
                dep.to_id,
                dep.dep_type.value,
                dep.created_at.isoformat(),
                dep.created_by,
            ),
        )

    def add_edge(self, dep: Dependency) -> None:
        """Add an edge; parent-child edges also set the child's parent."""
        with self.transaction() as conn:
            self._write_edge(conn, dep)
            if dep.dep_type is DependencyType.PARENT_CHILD:
                conn.execute(
                    "UPDATE issues SET parent = ? WHERE id = ? AND parent IS NULL",
                    (dep.from_id, dep.to_id),
                )

    def remove_edge(self, from_id: str, to_id: str, dep_type: DependencyType) -> bool:
        """Remove an edge. Returns True if it existed."""
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM edges WHERE from_id = ? AND to_id = ? AND type = ?",
                (from_id, to_id, dep_type.value),
            )
            if dep_type is DependencyType.PARENT_CHILD:
                conn.execute(
                    "UPDATE issues SET parent = ("
                    "  SELECT from_id FROM edges WHERE to_id = ? AND type = ? "
                    "  ORDER BY from_id LIMIT 1"
                    ") WHERE id = ?",
                    (to_id, dep_type.value, to_id),
                )
            return cur.rowcount > 0

    def edges(
        self,
        *,
        from_id: str | None = None,
        to_id: str | None = None,
        dep_type: DependencyType | None = None,
    ) -> list[Dependency]:
        """Query edges, optionally narrowed by endpoint and type."""
        clauses: list[str] = []
        params: list[Any] = []
        if from_id is not None:
            clauses.append("from_id = ?")
            params.append(from_id)
        if to_id is not None:
            clauses.append("to_id = ?")
            params.append(to_id)
        if dep_type is not None:
            clauses.append("type = ?")
            params.append(dep_type.value)
        sql = "SELECT * FROM edges"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY from_id, to_id, type"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            Dependency(
                from_id=row["from_id"],
                to_id=row["to_id"],
                dep_type=DependencyType(row["type"]),
                created_at=parse_timestamp(row["created_at"]),
                created_by=row["created_by"],
            )
            for row in rows
        ]

    # -- tombstones -------------------------------------------------------------

    @staticmethod
    def _write_tombstone(conn: sqlite3.Connection, tomb: Tombstone) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO tombstones (id, deleted_at, deleted_by, reason) "
            "VALUES (?, ?, ?, ?)",
            (tomb.id, tomb.deleted_at.isoformat(), tomb.deleted_by, tomb.reason),
        )

    def add_tombstone(self, tomb: Tombstone) -> None:
        """Tombstone an id, dropping the issue and every edge touching it."""
        with self.transaction() as conn:
            self._write_tombstone(conn, tomb)
            conn.execute("DELETE FROM issues WHERE id = ?", (tomb.id,))
            conn.execute(
                "DELETE FROM edges WHERE from_id = ? OR to_id = ?",
                (tomb.id, tomb.id),
            )
            conn.execute("UPDATE issues SET parent = NULL WHERE parent = ?", (tomb.id,))

    def get_tombstone(self, issue_id: str) -> Tombstone | None:
        """Return the tombstone for ``issue_id``, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tombstones WHERE id = ?",
                (issue_id,),
            ).fetchone()
        if row is None:
            return None
        return Tombstone(
            id=row["id"],
            deleted_at=parse_timestamp(row["deleted_at"]),
            deleted_by=row["deleted_by"],
            reason=row["reason"],
        )

    # -- pending export queue ---------------------------------------------------

    def enqueue(self, target: str, records: list[dict[str, Any]]) -> None:
        """Queue records for the next export to ``target`` ('issues' or 'tombstones')."""
        with self.transaction() as conn:
            conn.executemany(
                "INSERT INTO pending (target, record) VALUES (?, ?)",
                [(target, orjson.dumps(r).decode()) for r in records],
            )

    def pending(self) -> list[tuple[int, str, dict[str, Any]]]:
        """Return queued ``(seq, target, record)`` triples in insertion order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT seq, target, record FROM pending ORDER BY seq",
            ).fetchall()
        return [(row["seq"], row["target"], orjson.loads(row["record"])) for row in rows]

    def clear_pending(self, up_to_seq: int) -> None:
        """Drop queued records up to and including ``up_to_seq``."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM pending WHERE seq <= ?", (up_to_seq,))

    # -- whole-state views ------------------------------------------------------

    def snapshot(self) -> Snapshot:
        """Materialize the cached state as a :class:`Snapshot`."""
        snapshot = Snapshot()
        for issue in self.list_issues():
            snapshot.issues[issue.id] = issue
        for dep in self.edges():
            snapshot.edges[dep.key] = dep
        with self._lock:
            rows = self._conn.execute("SELECT id FROM tombstones").fetchall()
        for row in rows:
            tomb = self.get_tombstone(row["id"])
            if tomb is not None:
                snapshot.tombstones[tomb.id] = tomb
        return snapshot

    def counts(self) -> dict[str, int]:
        """Row counts per table, for diagnostics."""
        with self._lock:
            return {
                table: self._conn.execute(
                    f"SELECT COUNT(*) FROM {table}",  # noqa: S608
                ).fetchone()[0]
                for table in ("issues", "edges", "tombstones", "pending")
            }
