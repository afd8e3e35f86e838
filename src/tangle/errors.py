"""Exception taxonomy for tangle.

Every error carries the offending ids and a remediation hint so the CLI can
tell the user what to run next. ``exit_code`` is the process exit status the
CLI uses for that class of failure.
"""

from __future__ import annotations

from collections.abc import Iterable

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_NOT_INITIALIZED = 3
EXIT_NOT_FOUND = 4
EXIT_MERGE_CONFLICT = 5
EXIT_TOOL_MISSING = 6
EXIT_CORRUPTION = 7


class TangleError(Exception):
    """Base class for all tangle errors."""

    exit_code = EXIT_USAGE
    default_remedy: str | None = None

    def __init__(
        self,
        message: str,
        *,
        ids: Iterable[str] = (),
        remedy: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.ids = tuple(ids)
        self.remedy = remedy if remedy is not None else self.default_remedy

    def to_dict(self) -> dict[str, object]:
        """Machine-readable form used by ``--json`` error output."""
        return {
            "error": self.message,
            "code": self.exit_code,
            "ids": list(self.ids),
            "remedy": self.remedy,
        }


class NotInitializedError(TangleError):
    """No durable log present."""

    exit_code = EXIT_NOT_INITIALIZED
    default_remedy = "run 'tg init' to create a store"


class IssueNotFoundError(TangleError):
    """Referenced id does not exist or has been tombstoned."""

    exit_code = EXIT_NOT_FOUND
    default_remedy = "run 'tg list' to see known ids"


class UnresolvedMergeConflict(TangleError):
    """The log contains an unresolved merge conflict."""

    exit_code = EXIT_MERGE_CONFLICT
    default_remedy = (
        "resolve conflict manually by comparing both versions, then run 'tg doctor'"
    )


class MergeAbstained(UnresolvedMergeConflict):
    """The merge resolver refused to merge its inputs automatically."""


class ToolMissingError(TangleError):
    """An external tool (usually git) is not available."""

    exit_code = EXIT_TOOL_MISSING
    default_remedy = "install git and make sure it is on PATH"


class CorruptionError(TangleError):
    """The cache or log is inconsistent or unreadable."""

    exit_code = EXIT_CORRUPTION
    default_remedy = "run 'tg doctor --fix' to rebuild the cache from the log"


class InvalidDependency(TangleError):
    """A dependency edge could not be added."""


class DepthExceeded(InvalidDependency):
    """A parent-child edge would nest deeper than allowed."""

    default_remedy = "attach the issue to a shallower parent"


class DaemonAlreadyRunning(TangleError):
    """A live daemon already holds the lock for this store."""

    default_remedy = "run 'tg daemon stop' first"


class DaemonUnavailable(TangleError):
    """The daemon socket could not be reached."""

    default_remedy = "run 'tg daemon start' or omit the daemon"
