"""Dependency graph operations over the task store.

Edges are ``(task_id, blocks_on_id)``: ``task_id`` is not ready until
``blocks_on_id`` is completed.  ``add_dependency`` is the only code path that
writes edges, and it refuses any edge that would close a cycle.  Read-side
traversals (blockers, dependents) cap their depth instead of trusting that
the stored graph is acyclic; ``gg.doctor`` reports persisted cycles.

All functions take resolved integer task ids.  Human ``slug:NNN`` ids are
resolved in ``gg.lifecycle`` before reaching this module.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TypedDict, cast

from gg.db import (
    _TASK_SELECT,
    MAX_DEPENDENCY_DEPTH,
    TaskRow,
    _plan_id,
    _utcnow,
    transaction,
)
from gg.errors import (
    AlreadyExists,
    CycleDetected,
    DependencyNotFound,
    SelfDependency,
    TaskNotFound,
)

log = logging.getLogger(__name__)


class BlockerInfo(TypedDict):
    id: int
    plan_slug: str
    plan_task_number: int
    title: str
    status: str
    depth: int


class BlockedTask(TaskRow):
    blocker_count: int


class SystemStats(TypedDict):
    total_plans: int
    completed_plans: int
    total_tasks: int
    open_tasks: int
    in_progress_tasks: int
    completed_tasks: int
    ready_tasks: int
    blocked_tasks: int


def _require_task(conn: sqlite3.Connection, task_id: int) -> None:
    if not conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone():
        raise TaskNotFound(task_id)


def find_blocker_path(
    conn: sqlite3.Connection, start_id: int, target_id: int
) -> list[int] | None:
    """Shortest chain of blockers leading from ``start_id`` to ``target_id``.

    Walks ``task -> blocks_on`` edges breadth-first with a visited set, so it
    terminates on any stored graph.  Returns ``[start_id, ..., target_id]`` or
    None when ``target_id`` is not a transitive blocker of ``start_id``.
    """
    parents: dict[int, int | None] = {start_id: None}
    frontier = [start_id]
    while frontier:
        placeholders = ",".join("?" * len(frontier))
        rows = conn.execute(
            f"SELECT task_id, blocks_on_id FROM dependencies "
            f"WHERE task_id IN ({placeholders}) ORDER BY task_id, blocks_on_id",
            frontier,
        ).fetchall()
        next_frontier: list[int] = []
        for row in rows:
            blocker = row["blocks_on_id"]
            if blocker in parents:
                continue
            parents[blocker] = row["task_id"]
            if blocker == target_id:
                path = [blocker]
                node = parents[blocker]
                while node is not None:
                    path.append(node)
                    node = parents[node]
                path.reverse()
                return path
            next_frontier.append(blocker)
        frontier = next_frontier
    return None


def render_task_path(conn: sqlite3.Connection, path: list[int]) -> str:
    """Render internal ids as ``slug:NNN`` joined by arrows."""
    placeholders = ",".join("?" * len(set(path)))
    rows = conn.execute(
        f"SELECT tasks.id, plans.slug, tasks.plan_task_number FROM tasks "
        f"JOIN plans ON plans.id = tasks.plan_id WHERE tasks.id IN ({placeholders})",
        list(set(path)),
    ).fetchall()
    labels = {r["id"]: f"{r['slug']}:{r['plan_task_number']:03d}" for r in rows}
    return " -> ".join(labels.get(task_id, str(task_id)) for task_id in path)


def add_dependency(conn: sqlite3.Connection, task_id: int, blocks_on_id: int) -> None:
    """Record that ``task_id`` blocks on ``blocks_on_id``.

    The cycle check and the insert share one write transaction.  On a cycle,
    CycleDetected.path reads in blocking order, each task blocking the next:
    ``[task_id, ..., blocks_on_id, task_id]``.
    """
    with transaction(conn):
        _require_task(conn, task_id)
        _require_task(conn, blocks_on_id)
        if task_id == blocks_on_id:
            raise SelfDependency(task_id)
        existing = conn.execute(
            "SELECT 1 FROM dependencies WHERE task_id = ? AND blocks_on_id = ?",
            (task_id, blocks_on_id),
        ).fetchone()
        if existing:
            raise AlreadyExists(f"Task {task_id} already blocks on task {blocks_on_id}.")

        chain = find_blocker_path(conn, blocks_on_id, task_id)
        if chain is not None:
            path = [*reversed(chain), task_id]
            raise CycleDetected(path, render_task_path(conn, path))

        now = _utcnow()
        conn.execute(
            "INSERT INTO dependencies (task_id, blocks_on_id, created_at) VALUES (?, ?, ?)",
            (task_id, blocks_on_id, now),
        )
        conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (now, task_id))
    log.debug("Added dependency %d -> %d", task_id, blocks_on_id)


def remove_dependency(conn: sqlite3.Connection, task_id: int, blocks_on_id: int) -> None:
    with transaction(conn):
        cur = conn.execute(
            "DELETE FROM dependencies WHERE task_id = ? AND blocks_on_id = ?",
            (task_id, blocks_on_id),
        )
        if cur.rowcount == 0:
            raise DependencyNotFound(task_id, blocks_on_id)
        conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (_utcnow(), task_id))
    log.debug("Removed dependency %d -> %d", task_id, blocks_on_id)


def _closure(conn: sqlite3.Connection, task_id: int, *, upstream: bool) -> list[BlockerInfo]:
    # UNION dedupes (id, depth) pairs and the depth cap bounds the walk even
    # when the stored edges contain a cycle.
    src, dst = ("task_id", "blocks_on_id") if upstream else ("blocks_on_id", "task_id")
    _require_task(conn, task_id)
    rows = conn.execute(
        f"""WITH RECURSIVE closure(id, depth) AS (
                SELECT {dst}, 1 FROM dependencies WHERE {src} = :task_id
                UNION
                SELECT d.{dst}, c.depth + 1
                FROM dependencies d JOIN closure c ON d.{src} = c.id
                WHERE c.depth < :max_depth
            )
            SELECT tasks.id, plans.slug AS plan_slug, tasks.plan_task_number,
                   tasks.title, tasks.status, MIN(closure.depth) AS depth
            FROM closure
            JOIN tasks ON tasks.id = closure.id
            JOIN plans ON plans.id = tasks.plan_id
            WHERE closure.id != :task_id
            GROUP BY tasks.id
            ORDER BY depth, tasks.title, tasks.id""",
        {"task_id": task_id, "max_depth": MAX_DEPENDENCY_DEPTH},
    ).fetchall()
    return [cast(BlockerInfo, dict(r)) for r in rows]


def get_blockers(conn: sqlite3.Connection, task_id: int) -> list[BlockerInfo]:
    """Every task that must complete before ``task_id``; depth 1 = direct."""
    return _closure(conn, task_id, upstream=True)


def get_dependents(conn: sqlite3.Connection, task_id: int) -> list[BlockerInfo]:
    """Every task waiting (directly or transitively) on ``task_id``."""
    return _closure(conn, task_id, upstream=False)


# Tasks downstream of any incomplete task, through any number of edges.
_BLOCKED_CTE = """\
WITH RECURSIVE blocked(id) AS (
    SELECT d.task_id FROM dependencies d
    JOIN tasks b ON b.id = d.blocks_on_id
    WHERE b.status != 'completed'
    UNION
    SELECT d.task_id FROM dependencies d JOIN blocked ON d.blocks_on_id = blocked.id
)"""


def get_ready_tasks(
    conn: sqlite3.Connection,
    limit: int = 1000,
    plan_slug: str | None = None,
    task_id: int | None = None,
) -> list[TaskRow]:
    """Open tasks whose transitive blockers are all completed, oldest first.

    ``plan_slug`` narrows the result to one plan (PlanNotFound if unknown);
    ``task_id`` to a single task, which yields ``[]`` when it is not ready.
    """
    filters = ""
    params: list[object] = []
    if plan_slug is not None:
        _plan_id(conn, plan_slug)
        filters += " AND plans.slug = ?"
        params.append(plan_slug)
    if task_id is not None:
        _require_task(conn, task_id)
        filters += " AND tasks.id = ?"
        params.append(task_id)
    rows = conn.execute(
        f"""{_BLOCKED_CTE}
            {_TASK_SELECT}
            WHERE tasks.status = 'open'
              AND tasks.id NOT IN (SELECT id FROM blocked){filters}
            ORDER BY tasks.created_at, tasks.id
            LIMIT ?""",
        (*params, limit),
    ).fetchall()
    return [cast(TaskRow, dict(r)) for r in rows]


def get_blocked_tasks(conn: sqlite3.Connection) -> list[BlockedTask]:
    """Open tasks with at least one incomplete blocker.

    ``blocker_count`` counts distinct incomplete tasks anywhere upstream, so
    the first rows are the tasks waiting on the most unfinished work.
    """
    rows = conn.execute(
        f"""WITH RECURSIVE closure(task_id, blocker_id) AS (
                SELECT task_id, blocks_on_id FROM dependencies
                UNION
                SELECT c.task_id, d.blocks_on_id
                FROM closure c JOIN dependencies d ON d.task_id = c.blocker_id
            ),
            counts(task_id, blocker_count) AS (
                SELECT c.task_id, COUNT(DISTINCT c.blocker_id)
                FROM closure c JOIN tasks b ON b.id = c.blocker_id
                WHERE b.status != 'completed' AND c.blocker_id != c.task_id
                GROUP BY c.task_id
            )
            SELECT tasks.*, plans.slug AS plan_slug, counts.blocker_count
            FROM counts
            JOIN tasks ON tasks.id = counts.task_id
            JOIN plans ON plans.id = tasks.plan_id
            WHERE tasks.status = 'open'
            ORDER BY counts.blocker_count DESC, tasks.created_at, tasks.id"""
    ).fetchall()
    return [cast(BlockedTask, dict(r)) for r in rows]


def get_system_stats(conn: sqlite3.Connection) -> SystemStats:
    plans = conn.execute(
        "SELECT COUNT(*) AS total, COALESCE(SUM(completed_at IS NOT NULL), 0) AS completed "
        "FROM plans"
    ).fetchone()
    tasks = conn.execute(
        """SELECT COUNT(*) AS total,
                  COALESCE(SUM(status = 'open'), 0) AS open,
                  COALESCE(SUM(status = 'in_progress'), 0) AS in_progress,
                  COALESCE(SUM(status = 'completed'), 0) AS completed
           FROM tasks"""
    ).fetchone()
    blocked = conn.execute(
        f"""{_BLOCKED_CTE}
            SELECT COUNT(*) FROM tasks
            WHERE status = 'open' AND id IN (SELECT id FROM blocked)"""
    ).fetchone()[0]
    return {
        "total_plans": plans["total"],
        "completed_plans": plans["completed"],
        "total_tasks": tasks["total"],
        "open_tasks": tasks["open"],
        "in_progress_tasks": tasks["in_progress"],
        "completed_tasks": tasks["completed"],
        "ready_tasks": tasks["open"] - blocked,
        "blocked_tasks": blocked,
    }
