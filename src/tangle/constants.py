"""Constants for tangle."""

from __future__ import annotations

import re


def parse_labels(raw: str) -> list[str]:
    """Parse a labels string that may be comma-separated, space-separated, or both.

    Examples:
        "bug,fix"     -> ["bug", "fix"]
        "bug fix"     -> ["bug", "fix"]
        "bug, fix"    -> ["bug", "fix"]
        ""            -> []
    """
    return [lbl for lbl in re.split(r"[,\s]+", raw) if lbl]


# Store layout
TANGLE_DIRNAME = ".tangle"
ISSUES_FILENAME = "issues.jsonl"
TOMBSTONES_FILENAME = "tombstones.jsonl"
CACHE_FILENAME = "cache.db"
SOCKET_FILENAME = "daemon.sock"
SESSION_LOCK_FILENAME = "cache.lock"
DAEMON_LOCK_FILENAME = "daemon.lock"
WRITE_LOCK_FILENAME = ".write.lock"
LOG_FILENAME = "tangle.log"
CONFIG_FILENAME = "config.toml"
LOCAL_CONFIG_FILENAME = "config.local.toml"

# Files that never belong in version control
LOCAL_ONLY_FILES = (
    f"{CACHE_FILENAME}*",
    SOCKET_FILENAME,
    SESSION_LOCK_FILENAME,
    DAEMON_LOCK_FILENAME,
    WRITE_LOCK_FILENAME,
    f"{LOG_FILENAME}*",
    LOCAL_CONFIG_FILENAME,
)

# Default values
DEFAULT_PREFIX = "tg"
DEFAULT_TYPE = "task"
DEFAULT_PRIORITY = 2
DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_DAEMON_START_TIMEOUT = 5.0

# parent-child hierarchy is limited to this many levels (root counts as 1)
MAX_PARENT_DEPTH = 3
# Levels of a blocker tree; each level nests a dict and a list, and orjson
# rejects documents nested deeper than 255
BLOCKER_TREE_MAX_DEPTH = 100

# Install modes accepted by `tg init`
INIT_MODES = ("standalone", "team", "hidden")

# Color mappings for CLI display (0 lowest, 4 critical)
PRIORITY_COLORS = {
    0: "bright_black",
    1: "cyan",
    2: "white",
    3: "yellow",
    4: "bright_red",
}

PRIORITY_NAMES: dict[str, int] = {
    "lowest": 0,
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

TYPE_COLORS = {
    "task": "white",
    "bug": "bright_red",
    "feature": "bright_green",
    "chore": "bright_black",
    "epic": "bright_magenta",
    "doc": "bright_blue",
}

STATUS_COLORS = {
    "open": "bright_green",
    "in_progress": "bright_blue",
    "blocked": "bright_red",
    "review": "bright_yellow",
    "closed": "white",
}

# Progressive ID length scaling thresholds
# Tuple of (max_issue_count, id_length)
ID_LENGTH_THRESHOLDS = (
    (500, 4),
    (1500, 5),
    (5000, 6),
)
ID_LENGTH_MAX = 7
# Collision estimate above which doctor flags the id length
ID_COLLISION_WARN_THRESHOLD = 0.25

# Git merge driver configuration
MERGE_DRIVER_CMD = "tg git merge-driver %O %A %B %P"
MERGE_DRIVER_NAME = "tangle JSONL merge driver"
MERGE_DRIVER_GIT_KEY = "merge.tangle-jsonl.driver"
MERGE_DRIVER_GIT_NAME_KEY = "merge.tangle-jsonl.name"
GITATTRIBUTES_ENTRY = f"{TANGLE_DIRNAME}/*.jsonl merge=tangle-jsonl"

# Git hooks installed by `tg hooks install` and the command each one runs
GIT_HOOKS: dict[str, str] = {
    "pre-commit": "tg sync --force --quiet",
    "post-merge": "tg sync --quiet",
    "post-checkout": "tg sync --quiet",
    "post-rewrite": "tg sync --quiet",
}
HOOK_MARKER = "# installed by tangle"
