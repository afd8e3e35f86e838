"""Configuration file handling for tangle."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

from tangle.constants import (
    CONFIG_FILENAME,
    DEFAULT_DAEMON_START_TIMEOUT,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_PREFIX,
    INIT_MODES,
    LOCAL_CONFIG_FILENAME,
)

logger = logging.getLogger(__name__)

# Known keys: (dotted key, type, default, description)
KNOWN_KEYS: dict[str, dict[str, Any]] = {
    "prefix": {
        "type": "str",
        "default": DEFAULT_PREFIX,
        "description": "Prefix for new issue IDs",
    },
    "mode": {
        "type": "str",
        "default": "standalone",
        "description": "How the store is shared",
        "values": ", ".join(INIT_MODES),
    },
    "sync.debounce_seconds": {
        "type": "float",
        "default": DEFAULT_DEBOUNCE_SECONDS,
        "description": "Coalescing window for exports to the log",
    },
    "daemon.autostart": {
        "type": "bool",
        "default": False,
        "description": "Spawn the daemon on first query",
    },
    "daemon.start_timeout": {
        "type": "float",
        "default": DEFAULT_DAEMON_START_TIMEOUT,
        "description": "Seconds to wait for a spawned daemon's socket",
    },
}


def get_config_path(tangle_dir: str | Path, local: bool = False) -> Path:
    """Get the path to the shared or local config file.

    Args:
        tangle_dir: Path to .tangle directory
        local: Return the git-ignored per-checkout file instead

    Returns:
        Path to config.toml or config.local.toml
    """
    return Path(tangle_dir) / (LOCAL_CONFIG_FILENAME if local else CONFIG_FILENAME)


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)  # type: ignore[arg-type]
        else:
            merged[key] = value
    return merged


def load_config(tangle_dir: str | Path, local: bool | None = None) -> dict[str, Any]:
    """Load configuration from .tangle/config.toml.

    Args:
        tangle_dir: Path to .tangle directory
        local: None merges the local file over the shared one; True or
            False reads only that file.

    Returns:
        Configuration dictionary, or empty dict if no config exists
    """
    if local is not None:
        return _read_toml(get_config_path(tangle_dir, local=local))
    return _deep_merge(
        _read_toml(get_config_path(tangle_dir)),
        _read_toml(get_config_path(tangle_dir, local=True)),
    )


def save_config(tangle_dir: str | Path, config: dict[str, Any], local: bool = False) -> None:
    """Save configuration to .tangle/config.toml (or config.local.toml).

    Args:
        tangle_dir: Path to .tangle directory
        config: Configuration dictionary to save
        local: Write the per-checkout file instead
    """
    config_path = get_config_path(tangle_dir, local=local)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("wb") as f:
        tomli_w.dump(config, f)


def get_value(config: dict[str, Any], dotted_key: str) -> Any:
    """Look up a dotted key, falling back to the documented default."""
    node: Any = config
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return KNOWN_KEYS.get(dotted_key, {}).get("default")
        node = node[part]
    return node


def set_value(tangle_dir: str | Path, dotted_key: str, value: Any, local: bool = False) -> None:
    """Set a dotted key in the shared (or local) config file."""
    config = load_config(tangle_dir, local=local)
    node = config
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value
    save_config(tangle_dir, config, local=local)


def get_issue_prefix(tangle_dir: str | Path) -> str:
    """Get the issue prefix.

    Precedence:
    1. ``prefix`` from config
    2. Sanitized name of the directory holding .tangle
    3. Default prefix ("tg")
    """
    config = load_config(tangle_dir)
    if config.get("prefix"):
        return str(config["prefix"])
    return _detect_prefix_from_directory(tangle_dir) or DEFAULT_PREFIX


def _detect_prefix_from_directory(tangle_dir: str | Path) -> str | None:
    """Detect prefix from the project directory name.

    Args:
        tangle_dir: Path to .tangle directory

    Returns:
        Directory name as prefix, or None
    """
    dir_name = Path(tangle_dir).resolve().parent.name

    # Sanitize: only allow alphanumeric and hyphens
    sanitized = "".join(c if c.isalnum() or c == "-" else "-" for c in dir_name.lower())
    sanitized = sanitized.strip("-")

    return sanitized or None


def debounce_seconds(tangle_dir: str | Path) -> float:
    """Configured export debounce window."""
    return float(get_value(load_config(tangle_dir), "sync.debounce_seconds"))
