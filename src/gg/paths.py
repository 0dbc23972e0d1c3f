"""Canonical filesystem paths for gg workspaces."""

from __future__ import annotations

import os
from pathlib import Path

GG_DIR_NAME = ".gg"
DB_FILE_NAME = "tasks.db"
CONFIG_FILE_NAME = "config.toml"


def find_workspace_root(start: Path | None = None) -> Path | None:
    """Walk upward from ``start`` (default: cwd) looking for a ``.gg/tasks.db``.

    Returns the directory containing ``.gg``, or None when no ancestor has one.
    """
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / GG_DIR_NAME / DB_FILE_NAME).is_file():
            return candidate
    return None


def workspace_db_path(root: Path) -> Path:
    return root / GG_DIR_NAME / DB_FILE_NAME


def config_path_for(db_path: Path) -> Path:
    """Config file read for ``db_path``; it sits beside the database."""
    return db_path.parent / CONFIG_FILE_NAME


def resolve_db_path(start: Path | None = None) -> Path:
    """Resolve the database file for the current invocation.

    Precedence: ``GG_DB_PATH``, then the nearest ancestor workspace, then
    ``.gg/tasks.db`` under ``start`` (which ``gg init`` creates).
    """
    env_db = os.environ.get("GG_DB_PATH")
    if env_db:
        return Path(env_db).expanduser()
    root = find_workspace_root(start)
    if root is None:
        root = (start or Path.cwd()).resolve()
    return workspace_db_path(root)
