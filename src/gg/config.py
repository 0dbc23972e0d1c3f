"""Per-workspace configuration.

Workspaces may tune gg in ``.gg/config.toml``::

    [storage]
    busy_timeout_ms = 5000

    [ready]
    limit = 1000

    [bulk]
    max_ids = 100

Missing files, tables or keys fall back to the defaults below.
``GG_BUSY_TIMEOUT_MS`` overrides the storage timeout.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_READY_LIMIT = 1000
MAX_BULK_TASK_IDS = 100


@dataclass(frozen=True)
class Settings:
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    ready_limit: int = DEFAULT_READY_LIMIT
    bulk_max_ids: int = MAX_BULK_TASK_IDS


def load_config(path: Path | None) -> dict[str, Any] | None:
    """Load a TOML config file.

    Returns the parsed dict, or None if the file doesn't exist or can't be parsed.
    """
    if path is None or not path.exists():
        return None
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return None


def _positive_int(raw: dict[str, Any], table: str, key: str, default: int) -> int:
    section = raw.get(table)
    if not isinstance(section, dict) or key not in section:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        log.warning("Ignoring [%s] %s = %r (expected a positive integer)", table, key, value)
        return default
    return value


def load_settings(path: Path | None) -> Settings:
    raw = load_config(path) or {}
    busy_timeout_ms = _positive_int(raw, "storage", "busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS)
    env_timeout = os.environ.get("GG_BUSY_TIMEOUT_MS")
    if env_timeout:
        try:
            busy_timeout_ms = max(0, int(env_timeout))
        except ValueError:
            log.warning("Ignoring GG_BUSY_TIMEOUT_MS=%r (not an integer)", env_timeout)
    return Settings(
        busy_timeout_ms=busy_timeout_ms,
        ready_limit=_positive_int(raw, "ready", "limit", DEFAULT_READY_LIMIT),
        bulk_max_ids=_positive_int(raw, "bulk", "max_ids", MAX_BULK_TASK_IDS),
    )
