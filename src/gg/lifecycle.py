"""Task state machine and task identifier resolution.

Tasks move ``open -> in_progress -> completed`` and never back.  The first
task to start stamps its plan's ``execution_started_at``; the completion that
leaves no unfinished task stamps the plan's ``completed_at``.  Both happen in
the transaction that changes the task.

Callers name tasks either by internal id (``42``) or by ``slug:number``
(``auth:007``).  ``parse_task_ref`` turns text into one of the two variants
and ``resolve_task_id`` maps either to the internal id that the storage and
graph layers use.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import cast

from gg.db import (
    MAX_SQLITE_INTEGER,
    MAX_TASK_NUMBER,
    SLUG_PATTERN,
    TaskRow,
    _utcnow,
    get_task,
    get_task_by_plan_and_number,
    refresh_plan_timestamps,
    transaction,
)
from gg.errors import InvalidFormat, InvalidTransition, TaskNotFound

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InternalId:
    id: int

    def __str__(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class PlanTaskRef:
    slug: str
    number: int

    def __str__(self) -> str:
        return format_task_id(self.slug, self.number)


TaskRef = InternalId | PlanTaskRef


def format_task_id(slug: str, number: int) -> str:
    """Human task id, e.g. ``format_task_id("auth", 7) == "auth:007"``."""
    return f"{slug}:{number:03d}"


def _is_number(text: str) -> bool:
    return text.isascii() and text.isdigit()


def parse_task_ref(text: str) -> TaskRef:
    text = text.strip()
    if _is_number(text):
        task_id = int(text)
        if not 1 <= task_id <= MAX_SQLITE_INTEGER:
            raise InvalidFormat(f"Internal task id '{text}' is out of range.")
        return InternalId(task_id)
    slug, sep, number_text = text.partition(":")
    if not sep or not SLUG_PATTERN.match(slug) or not _is_number(number_text):
        raise InvalidFormat(
            f"Invalid task id '{text}'. Use an internal id (42) or slug:number (auth:007)."
        )
    number = int(number_text)
    if not 1 <= number <= MAX_TASK_NUMBER:
        raise InvalidFormat(f"Task number in '{text}' must be 1-{MAX_TASK_NUMBER}.")
    return PlanTaskRef(slug, number)


def resolve_task_id(conn: sqlite3.Connection, ref: TaskRef | str) -> int:
    """Map a task reference to its internal id, raising TaskNotFound."""
    if isinstance(ref, str):
        ref = parse_task_ref(ref)
    if isinstance(ref, InternalId):
        task = get_task(conn, ref.id) if 1 <= ref.id <= MAX_SQLITE_INTEGER else None
    else:
        task = get_task_by_plan_and_number(conn, ref.slug, ref.number)
    if not task:
        raise TaskNotFound(str(ref))
    return task["id"]


def _advance(conn: sqlite3.Connection, task_id: int, target: str, now: str) -> int:
    """Move one task a single step forward. Returns its plan id.

    Caller holds the write transaction.
    """
    source = "open" if target == "in_progress" else "in_progress"
    row = conn.execute("SELECT status, plan_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise TaskNotFound(task_id)
    if row["status"] != source:
        raise InvalidTransition(task_id, row["status"], target)
    stamp_column = "started_at" if target == "in_progress" else "completed_at"
    conn.execute(
        f"UPDATE tasks SET status = ?, {stamp_column} = ?, updated_at = ? "
        "WHERE id = ? AND status = ?",
        (target, now, now, task_id, source),
    )
    return row["plan_id"]


def start_task(conn: sqlite3.Connection, task_id: int) -> TaskRow:
    now = _utcnow()
    with transaction(conn):
        plan_id = _advance(conn, task_id, "in_progress", now)
        refresh_plan_timestamps(conn, plan_id, now)
    log.info("Started task %d", task_id)
    return cast(TaskRow, get_task(conn, task_id))


def complete_task(conn: sqlite3.Connection, task_id: int) -> TaskRow:
    now = _utcnow()
    with transaction(conn):
        plan_id = _advance(conn, task_id, "completed", now)
        refresh_plan_timestamps(conn, plan_id, now)
    log.info("Completed task %d", task_id)
    return cast(TaskRow, get_task(conn, task_id))


def complete_tasks_bulk(conn: sqlite3.Connection, task_ids: Iterable[int]) -> list[TaskRow]:
    """Complete several tasks atomically.

    Either every task moves to ``completed`` or, on the first missing id or
    task that is not in progress, none does.  Repeated ids count once.
    """
    ordered = list(dict.fromkeys(task_ids))
    if not ordered:
        raise InvalidFormat("No task ids given.")
    now = _utcnow()
    with transaction(conn):
        plan_ids: set[int] = set()
        for task_id in ordered:
            plan_ids.add(_advance(conn, task_id, "completed", now))
        for plan_id in sorted(plan_ids):
            refresh_plan_timestamps(conn, plan_id, now)
    log.info("Completed %d tasks", len(ordered))
    return [cast(TaskRow, get_task(conn, task_id)) for task_id in ordered]
