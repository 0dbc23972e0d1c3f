"""Shared fixtures: one schema'd template DB, copied per test."""

import os
import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from gg.db import TaskRow, create_plan, create_task, get_connection
from gg.graph import add_dependency


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Build the schema and indexes once per session.

    Tests copy the file instead of replaying the schema script and
    migrations on every connection.
    """
    fd, raw = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    template = Path(raw)
    try:
        conn = get_connection(template)
        # Fold the WAL back into the main file so copy2 carries everything.
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.close()
        yield template
    finally:
        template.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Connection to a fresh, empty workspace database."""
    db_path = tmp_path / "tasks.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def auth_chain(db_conn: sqlite3.Connection) -> list[TaskRow]:
    """Plan ``auth`` with auth:002 blocking on auth:001 and auth:003 on auth:002."""
    create_plan(db_conn, "auth", "Auth rework")
    tasks = [create_task(db_conn, "auth", f"Step {n}") for n in (1, 2, 3)]
    add_dependency(db_conn, tasks[1]["id"], tasks[0]["id"])
    add_dependency(db_conn, tasks[2]["id"], tasks[1]["id"])
    return tasks
