"""Sync engine between the sqlite cache and the durable logs.

Two asymmetric operations:

- ``export()`` flushes records queued in the cache to the logs. Mutations
  call ``schedule_export()``, which coalesces a burst of edits into a single
  append after a debounce window.
- ``import_if_stale()`` notices that a log changed underneath the cache
  (a pull, a merge, another process) and rebuilds the cache by replay. Every
  read path calls it first.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import orjson

from tangle.constants import DEFAULT_DEBOUNCE_SECONDS
from tangle.storage import Fingerprint, replay

if TYPE_CHECKING:
    from tangle.cache import Cache
    from tangle.storage import IssueLog, JSONLFile, TombstoneLog

logger = logging.getLogger(__name__)

_META_KEYS = {"issues": "log_fingerprint:issues", "tombstones": "log_fingerprint:tombstones"}


class SyncEngine:
    """Keeps one cache consistent with one pair of logs."""

    def __init__(
        self,
        log: IssueLog,
        tombstones: TombstoneLog,
        cache: Cache,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        """Initialize the sync engine.

        Args:
            log: The issue log
            tombstones: The tombstone log
            cache: The cache to keep in sync
            debounce_seconds: Coalescing window for automatic exports. Zero
                or less exports immediately after every mutation.
        """
        self.log = log
        self.tombstones = tombstones
        self.cache = cache
        self.debounce_seconds = debounce_seconds
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()
        self.export_count = 0
        self.import_count = 0

    def _files(self) -> dict[str, JSONLFile]:
        return {"issues": self.log, "tombstones": self.tombstones}

    # -- export -----------------------------------------------------------------

    def schedule_export(self) -> None:
        """Arrange for pending records to be exported after the debounce window."""
        if self.debounce_seconds <= 0:
            self.export()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._timer_fired)
            self._timer.daemon = True
            self._timer.start()

    def _timer_fired(self) -> None:
        try:
            self.export()
        except Exception:
            logger.exception("Debounced export failed")

    def cancel_pending_timer(self) -> None:
        """Cancel the debounce timer without exporting."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def export_scheduled(self) -> bool:
        """Whether a debounced export is waiting to fire."""
        return self._timer is not None

    def export(self) -> int:
        """Flush queued cache records to the logs, bypassing any debounce.

        Any scheduled debounce timer is cancelled first.

        Returns:
            Number of records written.
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            queued = self.cache.pending()
            if not queued:
                return 0

            by_target: dict[str, list[dict[str, object]]] = {"issues": [], "tombstones": []}
            for _, target, record in queued:
                by_target[target].append(record)

            was_fresh = {name: not self._file_changed(name) for name in by_target}
            for target, records in by_target.items():
                if records:
                    self._files()[target].append(records)  # type: ignore[arg-type]

            self.cache.clear_pending(queued[-1][0])
            # Only adopt the new fingerprint when nothing else changed the
            # file since the last import; otherwise the next read re-imports.
            for name, fresh in was_fresh.items():
                if fresh:
                    self._record_fingerprint(name)
            self.export_count += 1
            logger.debug("Exported %d record(s)", len(queued))
            return len(queued)

    # -- import -----------------------------------------------------------------

    def _stored_fingerprint(self, name: str) -> Fingerprint | None:
        raw = self.cache.get_meta(_META_KEYS[name])
        if raw is None:
            return None
        return Fingerprint.from_dict(orjson.loads(raw))

    def _record_fingerprint(self, name: str) -> None:
        fp = self._files()[name].fingerprint()
        self.cache.set_meta(_META_KEYS[name], orjson.dumps(fp.to_dict()).decode())

    def _record_fingerprints(self) -> None:
        for name in self._files():
            self._record_fingerprint(name)

    def _file_changed(self, name: str) -> bool:
        stored = self._stored_fingerprint(name)
        current_file = self._files()[name]
        if stored is None:
            return True
        if (stored.size, stored.mtime_ns) == current_file.quick_stat():
            return False
        return current_file.fingerprint().sha256 != stored.sha256

    def is_stale(self) -> bool:
        """Whether either log changed since the cache last observed it.

        Compares size and mtime first; only when those differ is the content
        hash computed.
        """
        return any(self._file_changed(name) for name in self._files())

    def import_if_stale(self) -> bool:
        """Rebuild the cache from the logs if they changed.

        Pending local records are exported first; appending them to the
        changed log is safe because replay is order independent.

        Returns:
            True if an import happened.
        """
        with self._lock:
            if not self.is_stale():
                return False
            if self.cache.pending():
                self.export()
            self.full_import()
            return True

    def full_import(self) -> None:
        """Unconditionally rebuild the cache by replaying both logs."""
        with self._lock:
            snapshot = replay(self.log.read_records(), self.tombstones.read_records())
            self.cache.rebuild(snapshot)
            self._record_fingerprints()
            self.import_count += 1
            logger.debug(
                "Imported %d issue(s), %d edge(s), %d tombstone(s)",
                len(snapshot.issues),
                len(snapshot.edges),
                len(snapshot.tombstones),
            )

    def close(self) -> None:
        """Cancel the debounce timer and flush anything still queued."""
        self.export()
