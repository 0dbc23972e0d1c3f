"""Integrity checks for a gg database.

``health_check`` scans a connection and returns every finding it can see,
split into errors and warnings.  It never stops at the first problem and
never raises for bad data: rows written with foreign keys or CHECK
constraints disabled are exactly what it exists to find.

``run_doctor`` wraps the same scan in the per-check report the ``gg doctor``
command prints.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Literal, TypedDict

from gg.config import DEFAULT_BUSY_TIMEOUT_MS
from gg.db import EXPECTED_INDEXES, MAX_TITLE_LENGTH, SCHEMA_VERSION, VALID_TASK_STATUSES

log = logging.getLogger(__name__)

LARGE_DESCRIPTION_BYTES = 1024 * 1024

ERROR_CHECKS = (
    "orphaned_dependencies",
    "cycle_detected",
    "orphaned_tasks",
    "completed_at_invariant",
    "invalid_status",
    "title_length",
    "schema_version",
)
WARNING_CHECKS = ("empty_plans", "missing_indexes", "large_description")
REQUIRED_TABLES = ("schema_version", "plans", "tasks", "dependencies")


class HealthIssue(TypedDict):
    check: str
    message: str
    details: dict[str, object]


class HealthReport(TypedDict):
    errors: list[HealthIssue]
    warnings: list[HealthIssue]


Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class DoctorReport(TypedDict):
    status: Status
    summary: str
    db_path: str
    checks: list[CheckReport]


def _issue(check: str, message: str, **details: object) -> HealthIssue:
    return {"check": check, "message": message, "details": details}


def health_check(conn: sqlite3.Connection) -> HealthReport:
    """Run every integrity check against ``conn`` and collect the findings.

    Read-only.  A check whose tables are missing is skipped; the missing
    tables themselves are reported under ``schema_version``.
    """
    present = _table_names(conn)
    errors: list[HealthIssue] = []
    warnings: list[HealthIssue] = []
    for findings, scans in ((errors, _ERROR_SCANS), (warnings, _WARNING_SCANS)):
        for scan, tables in scans:
            if set(tables) <= present:
                findings.extend(scan(conn))
    return {"errors": errors, "warnings": warnings}


def _table_names(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {r[0] for r in rows}


# -- error checks --


def _orphaned_dependencies(conn: sqlite3.Connection) -> list[HealthIssue]:
    rows = conn.execute(
        """SELECT d.task_id, d.blocks_on_id,
                  t.id IS NULL AS task_missing, b.id IS NULL AS blocker_missing
           FROM dependencies d
           LEFT JOIN tasks t ON t.id = d.task_id
           LEFT JOIN tasks b ON b.id = d.blocks_on_id
           WHERE t.id IS NULL OR b.id IS NULL
           ORDER BY d.task_id, d.blocks_on_id"""
    ).fetchall()
    issues = []
    for r in rows:
        missing = [
            str(task_id)
            for task_id, gone in (
                (r["task_id"], r["task_missing"]),
                (r["blocks_on_id"], r["blocker_missing"]),
            )
            if gone
        ]
        issues.append(
            _issue(
                "orphaned_dependencies",
                f"Dependency {r['task_id']} -> {r['blocks_on_id']} references "
                f"missing task(s): {', '.join(missing)}",
                task_id=r["task_id"],
                blocks_on_id=r["blocks_on_id"],
            )
        )
    return issues


def find_cycles(edges: list[tuple[int, int]]) -> list[list[int]]:
    """Find cycles in a ``task -> blocks_on`` edge list with an iterative DFS.

    Each cycle is reported once, as a closed path starting and ending on its
    smallest id, e.g. ``[1, 3, 2, 1]``.
    """
    graph: dict[int, list[int]] = {}
    for task_id, blocks_on_id in edges:
        graph.setdefault(task_id, []).append(blocks_on_id)
    for targets in graph.values():
        targets.sort()

    cycles: list[list[int]] = []
    seen_cycles: set[tuple[int, ...]] = set()
    visited: set[int] = set()
    for root in sorted(graph):
        if root in visited:
            continue
        path: list[int] = [root]
        on_path = {root}
        stack = [iter(graph.get(root, []))]
        visited.add(root)
        while stack:
            node = next(stack[-1], None)
            if node is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if node in on_path:
                loop = path[path.index(node) :]
                pivot = loop.index(min(loop))
                canonical = tuple(loop[pivot:] + loop[:pivot])
                if canonical not in seen_cycles:
                    seen_cycles.add(canonical)
                    cycles.append([*canonical, canonical[0]])
                continue
            if node in visited:
                continue
            visited.add(node)
            path.append(node)
            on_path.add(node)
            stack.append(iter(graph.get(node, [])))
    return cycles


def _cycles(conn: sqlite3.Connection) -> list[HealthIssue]:
    edges = [
        (r["task_id"], r["blocks_on_id"])
        for r in conn.execute("SELECT task_id, blocks_on_id FROM dependencies").fetchall()
    ]
    return [
        _issue(
            "cycle_detected",
            "Dependency cycle: " + " -> ".join(str(task_id) for task_id in cycle),
            path=cycle,
        )
        for cycle in find_cycles(edges)
    ]


def _orphaned_tasks(conn: sqlite3.Connection) -> list[HealthIssue]:
    rows = conn.execute(
        """SELECT t.id, t.plan_id FROM tasks t
           LEFT JOIN plans p ON p.id = t.plan_id
           WHERE p.id IS NULL ORDER BY t.id"""
    ).fetchall()
    return [
        _issue(
            "orphaned_tasks",
            f"Task {r['id']} belongs to missing plan {r['plan_id']}",
            task_id=r["id"],
            plan_id=r["plan_id"],
        )
        for r in rows
    ]


def _timestamp_invariants(conn: sqlite3.Connection) -> list[HealthIssue]:
    issues: list[HealthIssue] = []
    task_rows = conn.execute(
        """SELECT id, status, started_at, completed_at FROM tasks
           WHERE (status = 'completed') != (completed_at IS NOT NULL)
              OR (status IN ('in_progress', 'completed')) != (started_at IS NOT NULL)
              OR (completed_at IS NOT NULL AND started_at IS NOT NULL
                  AND completed_at < started_at)
           ORDER BY id"""
    ).fetchall()
    for r in task_rows:
        issues.append(
            _issue(
                "completed_at_invariant",
                f"Task {r['id']} has status '{r['status']}' with started_at="
                f"{r['started_at']} completed_at={r['completed_at']}",
                task_id=r["id"],
            )
        )
    plan_rows = conn.execute(
        """SELECT id, slug, created_at, execution_started_at, completed_at FROM plans
           WHERE (completed_at IS NOT NULL AND execution_started_at IS NULL)
              OR execution_started_at < created_at
              OR completed_at < execution_started_at
           ORDER BY id"""
    ).fetchall()
    for r in plan_rows:
        issues.append(
            _issue(
                "completed_at_invariant",
                f"Plan '{r['slug']}' has inconsistent timestamps: created_at="
                f"{r['created_at']} execution_started_at={r['execution_started_at']} "
                f"completed_at={r['completed_at']}",
                plan_id=r["id"],
            )
        )
    return issues


def _invalid_status(conn: sqlite3.Connection) -> list[HealthIssue]:
    placeholders = ",".join("?" * len(VALID_TASK_STATUSES))
    rows = conn.execute(
        f"SELECT id, status FROM tasks WHERE status NOT IN ({placeholders}) ORDER BY id",
        VALID_TASK_STATUSES,
    ).fetchall()
    return [
        _issue(
            "invalid_status",
            f"Task {r['id']} has invalid status '{r['status']}'",
            task_id=r["id"],
            status=r["status"],
        )
        for r in rows
    ]


def _title_length(conn: sqlite3.Connection) -> list[HealthIssue]:
    issues = []
    for table in ("plans", "tasks"):
        rows = conn.execute(
            f"SELECT id, length(title) AS n FROM {table} "
            "WHERE length(title) = 0 OR length(title) > ? ORDER BY id",
            (MAX_TITLE_LENGTH,),
        ).fetchall()
        entity = table[:-1]
        for r in rows:
            issues.append(
                _issue(
                    "title_length",
                    f"{entity.title()} {r['id']} has a title of {r['n']} characters "
                    f"(allowed 1-{MAX_TITLE_LENGTH})",
                    entity=entity,
                    id=r["id"],
                    length=r["n"],
                )
            )
    return issues


def _schema_version(conn: sqlite3.Connection) -> list[HealthIssue]:
    present = _table_names(conn)
    issues = [
        _issue("schema_version", f"Table {table} is missing", table=table)
        for table in REQUIRED_TABLES
        if table not in present
    ]
    recorded = None
    if "schema_version" in present:
        recorded = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    user_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if recorded != SCHEMA_VERSION or user_version != SCHEMA_VERSION:
        issues.append(
            _issue(
                "schema_version",
                f"Schema version is {recorded} (user_version {user_version}), "
                f"expected {SCHEMA_VERSION}",
                recorded=recorded,
                user_version=user_version,
                expected=SCHEMA_VERSION,
            )
        )
    return issues


# -- warning checks --


def _empty_plans(conn: sqlite3.Connection) -> list[HealthIssue]:
    rows = conn.execute(
        """SELECT p.id, p.slug FROM plans p
           WHERE NOT EXISTS (SELECT 1 FROM tasks t WHERE t.plan_id = p.id)
           ORDER BY p.id"""
    ).fetchall()
    return [
        _issue("empty_plans", f"Plan '{r['slug']}' has no tasks", plan_id=r["id"])
        for r in rows
    ]


def _missing_indexes(conn: sqlite3.Connection) -> list[HealthIssue]:
    present = {
        r["name"]
        for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'").fetchall()
    }
    return [
        _issue("missing_indexes", f"Index {name} is missing", index=name)
        for name in EXPECTED_INDEXES
        if name not in present
    ]


def _large_descriptions(conn: sqlite3.Connection) -> list[HealthIssue]:
    issues = []
    for table in ("plans", "tasks"):
        rows = conn.execute(
            f"SELECT id, length(CAST(description AS BLOB)) AS size FROM {table} "
            "WHERE length(CAST(description AS BLOB)) > ? ORDER BY id",
            (LARGE_DESCRIPTION_BYTES,),
        ).fetchall()
        entity = table[:-1]
        for r in rows:
            issues.append(
                _issue(
                    "large_description",
                    f"{entity.title()} {r['id']} has a {r['size']} byte description",
                    entity=entity,
                    id=r["id"],
                    size=r["size"],
                )
            )
    return issues


_Scan = tuple[Callable[[sqlite3.Connection], list[HealthIssue]], tuple[str, ...]]

_ERROR_SCANS: tuple[_Scan, ...] = (
    (_orphaned_dependencies, ("dependencies", "tasks")),
    (_cycles, ("dependencies",)),
    (_orphaned_tasks, ("tasks", "plans")),
    (_timestamp_invariants, ("tasks", "plans")),
    (_invalid_status, ("tasks",)),
    (_title_length, ("plans", "tasks")),
    (_schema_version, ()),
)
_WARNING_SCANS: tuple[_Scan, ...] = (
    (_empty_plans, ("plans", "tasks")),
    (_missing_indexes, ()),
    (_large_descriptions, ("plans", "tasks")),
)


# -- doctor report --


def _database_check(summary: str, message: str) -> CheckReport:
    return {
        "name": "database",
        "status": "fail",
        "summary": summary,
        "findings": [{"status": "fail", "message": message}],
    }


@contextlib.contextmanager
def _connect_readonly(db_path: Path, busy_timeout_ms: int) -> Iterator[sqlite3.Connection]:
    """Open ``db_path`` without the schema script or migrations."""
    conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        yield conn
    finally:
        conn.close()


def run_doctor(db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> DoctorReport:
    """Run all health checks against the database file at ``db_path``.

    The file is opened read-only and is never repaired.
    """
    checks: list[CheckReport]
    if not db_path.exists():
        checks = [
            _database_check(
                "Database not found.", f"No database at {db_path}. Run 'gg init' first."
            )
        ]
    else:
        try:
            with _connect_readonly(db_path, busy_timeout_ms) as conn:
                checks = [_check_sqlite_integrity(conn), *_health_checks(conn)]
        except sqlite3.Error as exc:
            log.warning("Could not read %s", db_path, exc_info=True)
            checks = [_database_check("Database could not be read.", f"{db_path}: {exc}")]

    return {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "db_path": str(db_path),
        "checks": checks,
    }


def _health_checks(conn: sqlite3.Connection) -> list[CheckReport]:
    report = health_check(conn)
    checks: list[CheckReport] = []
    for names, issues, status in (
        (ERROR_CHECKS, report["errors"], "fail"),
        (WARNING_CHECKS, report["warnings"], "warning"),
    ):
        for name in names:
            findings: list[CheckFinding] = [
                {"status": status, "message": i["message"], "details": i["details"]}
                for i in issues
                if i["check"] == name
            ]
            checks.append(
                {
                    "name": name,
                    "status": status if findings else "pass",
                    "summary": f"{len(findings)} finding(s)." if findings else "OK.",
                    "findings": findings,
                }
            )
    return checks


def _check_sqlite_integrity(conn: sqlite3.Connection) -> CheckReport:
    messages = [str(row[0]) for row in conn.execute("PRAGMA integrity_check").fetchall()]
    if messages == ["ok"]:
        return {"name": "sqlite", "status": "pass", "summary": "OK.", "findings": []}
    return {
        "name": "sqlite",
        "status": "fail",
        "summary": "SQLite integrity check failed.",
        "findings": [{"status": "fail", "message": message} for message in messages],
    }


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."
