"""SQLite storage for gg plans, tasks and dependency edges."""

from __future__ import annotations

import contextlib
import logging
import re
import sqlite3
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from gg.config import DEFAULT_BUSY_TIMEOUT_MS
from gg.errors import (
    DuplicateSlug,
    HasDependents,
    InvalidFormat,
    InvalidTitle,
    InvalidTransition,
    PlanNotFound,
    StorageBusy,
    TaskNotFound,
)

log = logging.getLogger(__name__)

VALID_TASK_STATUSES = ("open", "in_progress", "completed")
VALID_PLAN_STATUSES = VALID_TASK_STATUSES
_STATUS_RANK = {status: rank for rank, status in enumerate(VALID_TASK_STATUSES)}

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
MAX_PLAN_SLUG_LENGTH = 100
MAX_TITLE_LENGTH = 500
MAX_TASK_NUMBER = 999
# Largest value SQLite stores in an INTEGER column.
MAX_SQLITE_INTEGER = 2**63 - 1
MAX_DEPENDENCY_DEPTH = 100
MAX_DESCRIPTION_BYTES = 10 * 1024 * 1024

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime(TIMESTAMP_FORMAT)


def format_timestamp(value: datetime | str) -> str:
    """Normalize a datetime or ISO 8601 string to the stored timestamp format."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise InvalidFormat(f"Invalid timestamp '{value}'.") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


# Bump when adding migrations. 0 = fresh file.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS plans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL CHECK (length(title) BETWEEN 1 AND 500),
    description TEXT NOT NULL DEFAULT '',
    task_counter INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    execution_started_at TEXT,
    completed_at TEXT,
    CHECK (completed_at IS NULL OR execution_started_at IS NOT NULL),
    CHECK (execution_started_at IS NULL OR execution_started_at >= created_at),
    CHECK (completed_at IS NULL OR completed_at >= execution_started_at)
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plan_id INTEGER NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
    plan_task_number INTEGER NOT NULL CHECK (plan_task_number BETWEEN 1 AND 999),
    title TEXT NOT NULL CHECK (length(title) BETWEEN 1 AND 500),
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'open'
        CHECK (status IN ('open', 'in_progress', 'completed')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    completed_at TEXT,
    UNIQUE (plan_id, plan_task_number),
    CHECK ((status = 'completed') = (completed_at IS NOT NULL)),
    CHECK ((status = 'open') = (started_at IS NULL)),
    CHECK (completed_at IS NULL OR completed_at >= started_at)
);

CREATE TABLE IF NOT EXISTS dependencies (
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    blocks_on_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (task_id, blocks_on_id),
    CHECK (task_id != blocks_on_id)
);
"""

EXPECTED_INDEXES = (
    "idx_plans_slug",
    "idx_tasks_status",
    "idx_tasks_plan_id",
    "idx_tasks_status_plan",
    "idx_tasks_plan_created",
    "idx_dependencies_task",
    "idx_dependencies_blocks",
)


class PlanRow(TypedDict):
    id: int
    slug: str
    title: str
    description: str
    task_counter: int
    status: str
    created_at: str
    updated_at: str
    execution_started_at: str | None
    completed_at: str | None


class PlanSummary(PlanRow):
    total_tasks: int
    open_tasks: int
    in_progress_tasks: int
    completed_tasks: int


class TaskRow(TypedDict):
    id: int
    plan_id: int
    plan_slug: str
    plan_task_number: int
    title: str
    description: str
    status: str
    created_at: str
    updated_at: str
    started_at: str | None
    completed_at: str | None


_PLAN_SELECT = """\
SELECT plans.*,
       CASE
           WHEN completed_at IS NOT NULL THEN 'completed'
           WHEN execution_started_at IS NOT NULL THEN 'in_progress'
           ELSE 'open'
       END AS status
FROM plans"""

_TASK_SELECT = """\
SELECT tasks.*, plans.slug AS plan_slug
FROM tasks JOIN plans ON plans.id = tasks.plan_id"""


def get_connection(
    db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
    """Context manager wrapper for get_connection().

    Usage:
        with connect(path) as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path, busy_timeout_ms)
    try:
        yield conn
    finally:
        conn.close()


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the body inside ``BEGIN IMMEDIATE``.

    The write lock is taken up front, so check-then-write sequences in the
    body cannot interleave with another writer.  Commits on success, rolls
    back on any exception.  Lock waits that outlast ``busy_timeout`` surface
    as StorageBusy.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        if _is_lock_error(exc):
            raise StorageBusy(str(exc)) from exc
        raise
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        if _is_lock_error(exc):
            raise StorageBusy(str(exc)) from exc
        raise
    except BaseException:
        conn.rollback()
        raise


def _record_schema_version(conn: sqlite3.Connection) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
        (1, _utcnow()),
    )


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _record_schema_version),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            log.debug("Applying schema migration %d", version)
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_plans_slug ON plans(slug);
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_tasks_plan_id ON tasks(plan_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_status_plan ON tasks(status, plan_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_plan_created ON tasks(plan_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_dependencies_task ON dependencies(task_id);
        CREATE INDEX IF NOT EXISTS idx_dependencies_blocks ON dependencies(blocks_on_id);
    """)


# -- validation --


def validate_slug(slug: str) -> None:
    if not slug or len(slug) > MAX_PLAN_SLUG_LENGTH:
        raise InvalidFormat(
            f"Invalid plan slug '{slug}'. Must be 1-{MAX_PLAN_SLUG_LENGTH} characters."
        )
    if not SLUG_PATTERN.match(slug):
        raise InvalidFormat(
            f"Invalid plan slug '{slug}'. Use lowercase kebab-case (e.g. 'auth-refresh')."
        )


def validate_title(title: str) -> None:
    if not 1 <= len(title) <= MAX_TITLE_LENGTH:
        raise InvalidTitle(f"Title must be 1-{MAX_TITLE_LENGTH} characters (got {len(title)}).")


def validate_task_status(status: str) -> None:
    if status not in VALID_TASK_STATUSES:
        raise InvalidFormat(
            f"Invalid status '{status}'. Must be one of: {', '.join(VALID_TASK_STATUSES)}"
        )


# -- plans --


def create_plan(
    conn: sqlite3.Connection,
    slug: str,
    title: str,
    description: str = "",
    created_at: datetime | str | None = None,
) -> PlanRow:
    """Create a plan. ``created_at`` backdates the plan when given."""
    validate_slug(slug)
    validate_title(title)
    now = _utcnow()
    stamp = format_timestamp(created_at) if created_at is not None else now
    if stamp > now:
        raise InvalidFormat(f"created_at '{stamp}' is in the future.")

    with transaction(conn):
        exists = conn.execute("SELECT 1 FROM plans WHERE slug = ?", (slug,)).fetchone()
        if exists:
            raise DuplicateSlug(slug)
        conn.execute(
            "INSERT INTO plans (slug, title, description, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (slug, title, description, stamp, stamp),
        )
    log.info("Created plan %s", slug)
    return cast(PlanRow, get_plan(conn, slug))


def get_plan(conn: sqlite3.Connection, slug: str) -> PlanRow | None:
    row = conn.execute(f"{_PLAN_SELECT} WHERE slug = ?", (slug,)).fetchone()
    return cast(PlanRow, dict(row)) if row else None


def _plan_id(conn: sqlite3.Connection, slug: str) -> int:
    row = conn.execute("SELECT id FROM plans WHERE slug = ?", (slug,)).fetchone()
    if not row:
        raise PlanNotFound(slug)
    return row["id"]


def list_plans(conn: sqlite3.Connection, status: str | None = None) -> list[PlanRow]:
    query = f"SELECT * FROM ({_PLAN_SELECT})"
    params: list[object] = []
    if status:
        if status not in VALID_PLAN_STATUSES:
            raise InvalidFormat(
                f"Invalid status '{status}'. Must be one of: {', '.join(VALID_PLAN_STATUSES)}"
            )
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at, id"
    rows = conn.execute(query, params).fetchall()
    return [cast(PlanRow, dict(r)) for r in rows]


def get_plan_summary(conn: sqlite3.Connection, slug: str) -> PlanSummary | None:
    """Plan row plus task counts by status."""
    plan = get_plan(conn, slug)
    if not plan:
        return None
    counts = conn.execute(
        """SELECT COUNT(*) AS total_tasks,
                  COALESCE(SUM(status = 'open'), 0) AS open_tasks,
                  COALESCE(SUM(status = 'in_progress'), 0) AS in_progress_tasks,
                  COALESCE(SUM(status = 'completed'), 0) AS completed_tasks
           FROM tasks WHERE plan_id = ?""",
        (plan["id"],),
    ).fetchone()
    return cast(PlanSummary, {**plan, **dict(counts)})


def update_plan(
    conn: sqlite3.Connection,
    slug: str,
    title: str | None = None,
    description: str | None = None,
) -> PlanRow:
    if title is None and description is None:
        raise InvalidFormat("No fields to update.")
    if title is not None:
        validate_title(title)

    sets = ["updated_at = ?"]
    params: list[object] = [_utcnow()]
    if title is not None:
        sets.append("title = ?")
        params.append(title)
    if description is not None:
        sets.append("description = ?")
        params.append(description)

    with transaction(conn):
        plan_id = _plan_id(conn, slug)
        conn.execute(f"UPDATE plans SET {', '.join(sets)} WHERE id = ?", (*params, plan_id))
    log.debug("Updated plan %s", slug)
    return cast(PlanRow, get_plan(conn, slug))


def delete_plan(conn: sqlite3.Connection, slug: str) -> int:
    """Delete a plan with all its tasks and their edges. Returns the task count."""
    with transaction(conn):
        plan_id = _plan_id(conn, slug)
        count = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE plan_id = ?", (plan_id,)
        ).fetchone()[0]
        conn.execute("DELETE FROM plans WHERE id = ?", (plan_id,))
    log.info("Deleted plan %s (%d tasks)", slug, count)
    return count


def refresh_plan_timestamps(conn: sqlite3.Connection, plan_id: int, now: str) -> None:
    """Re-derive a plan's execution timestamps from its tasks.

    ``execution_started_at`` is stamped once, when the first task leaves
    ``open``, and never moves afterwards.  ``completed_at`` is stamped with
    ``now`` when every task is completed and cleared while any task is not.
    Must run inside the transaction that changed the tasks.
    """
    conn.execute(
        """UPDATE plans SET
               execution_started_at = CASE
                   WHEN execution_started_at IS NULL AND EXISTS (
                       SELECT 1 FROM tasks WHERE plan_id = plans.id AND status != 'open'
                   ) THEN :now
                   ELSE execution_started_at
               END,
               completed_at = CASE
                   WHEN NOT EXISTS (SELECT 1 FROM tasks WHERE plan_id = plans.id)
                     OR EXISTS (
                       SELECT 1 FROM tasks WHERE plan_id = plans.id AND status != 'completed'
                     ) THEN NULL
                   ELSE COALESCE(completed_at, :now)
               END,
               updated_at = :now
           WHERE id = :plan_id""",
        {"now": now, "plan_id": plan_id},
    )


# -- tasks --


def create_task(
    conn: sqlite3.Connection, plan_slug: str, title: str, description: str = ""
) -> TaskRow:
    """Create a task under a plan with the next per-plan number."""
    validate_title(title)
    now = _utcnow()
    with transaction(conn):
        plan = conn.execute(
            "SELECT id, task_counter FROM plans WHERE slug = ?", (plan_slug,)
        ).fetchone()
        if not plan:
            raise PlanNotFound(plan_slug)
        number = plan["task_counter"] + 1
        if number > MAX_TASK_NUMBER:
            raise InvalidFormat(f"Plan '{plan_slug}' already has {MAX_TASK_NUMBER} tasks.")
        conn.execute(
            "UPDATE plans SET task_counter = ?, updated_at = ? WHERE id = ?",
            (number, now, plan["id"]),
        )
        cur = conn.execute(
            "INSERT INTO tasks (plan_id, plan_task_number, title, description, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (plan["id"], number, title, description, now, now),
        )
        task_id = cast(int, cur.lastrowid)
        # A new open task reopens a completed plan.
        refresh_plan_timestamps(conn, plan["id"], now)
    log.info("Created task %s:%03d (id %d)", plan_slug, number, task_id)
    return cast(TaskRow, get_task(conn, task_id))


def get_task(conn: sqlite3.Connection, task_id: int) -> TaskRow | None:
    row = conn.execute(f"{_TASK_SELECT} WHERE tasks.id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def get_task_by_plan_and_number(
    conn: sqlite3.Connection, plan_slug: str, number: int
) -> TaskRow | None:
    row = conn.execute(
        f"{_TASK_SELECT} WHERE plans.slug = ? AND tasks.plan_task_number = ?",
        (plan_slug, number),
    ).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    status: str | None = None,
    plan_slug: str | None = None,
) -> list[TaskRow]:
    query = _TASK_SELECT
    conditions: list[str] = []
    params: list[object] = []
    if status:
        validate_task_status(status)
        conditions.append("tasks.status = ?")
        params.append(status)
    if plan_slug:
        _plan_id(conn, plan_slug)
        conditions.append("plans.slug = ?")
        params.append(plan_slug)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY tasks.created_at, tasks.id"
    rows = conn.execute(query, params).fetchall()
    return [cast(TaskRow, dict(r)) for r in rows]


def update_task(
    conn: sqlite3.Connection,
    task_id: int,
    title: str | None = None,
    description: str | None = None,
    status: str | None = None,
) -> TaskRow:
    """Partially update a task.

    A status change may only move forward (open -> in_progress -> completed)
    and fills in ``started_at``/``completed_at`` as it goes.
    """
    if title is None and description is None and status is None:
        raise InvalidFormat("No fields to update.")
    if title is not None:
        validate_title(title)
    if status is not None:
        validate_task_status(status)

    now = _utcnow()
    with transaction(conn):
        row = conn.execute(
            "SELECT status, plan_id FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if not row:
            raise TaskNotFound(task_id)
        current = row["status"]
        sets = ["updated_at = ?"]
        params: list[object] = [now]
        if title is not None:
            sets.append("title = ?")
            params.append(title)
        if description is not None:
            sets.append("description = ?")
            params.append(description)
        status_changed = False
        if status is not None and status != current:
            status_changed = True
            if _STATUS_RANK[status] < _STATUS_RANK[current]:
                raise InvalidTransition(task_id, current, status)
            sets.append("status = ?")
            params.append(status)
            if current == "open":
                sets.append("started_at = ?")
                params.append(now)
            if status == "completed":
                sets.append("completed_at = ?")
                params.append(now)
        conn.execute(f"UPDATE tasks SET {', '.join(sets)} WHERE id = ?", (*params, task_id))
        if status_changed:
            refresh_plan_timestamps(conn, row["plan_id"], now)
    log.debug("Updated task %d", task_id)
    return cast(TaskRow, get_task(conn, task_id))


def get_dependent_ids(conn: sqlite3.Connection, task_id: int) -> list[int]:
    """Direct dependents: tasks with an edge blocking on ``task_id``."""
    rows = conn.execute(
        "SELECT task_id FROM dependencies WHERE blocks_on_id = ? ORDER BY task_id",
        (task_id,),
    ).fetchall()
    return [r["task_id"] for r in rows]


def delete_task(conn: sqlite3.Connection, task_id: int) -> None:
    """Delete a single task and its incident edges.

    Refused with HasDependents while any other task blocks on it; whole-plan
    deletion (delete_plan) is the only path that cascades through dependents.
    """
    now = _utcnow()
    with transaction(conn):
        row = conn.execute("SELECT plan_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise TaskNotFound(task_id)
        dependents = get_dependent_ids(conn, task_id)
        if dependents:
            raise HasDependents(task_id, dependents)
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        refresh_plan_timestamps(conn, row["plan_id"], now)
    log.info("Deleted task %d", task_id)
