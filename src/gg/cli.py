from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from gg import __version__
from gg.config import Settings, load_settings
from gg.db import (
    MAX_DESCRIPTION_BYTES,
    MAX_SQLITE_INTEGER,
    VALID_PLAN_STATUSES,
    VALID_TASK_STATUSES,
    PlanRow,
    TaskRow,
    connect,
    create_plan,
    create_task,
    delete_plan,
    delete_task,
    get_connection,
    get_plan_summary,
    get_task,
    list_plans,
    list_tasks,
    update_plan,
    update_task,
)
from gg.errors import GraphError, NotFound, PlanNotFound, TaskNotFound
from gg.graph import (
    BlockerInfo,
    add_dependency,
    get_blocked_tasks,
    get_blockers,
    get_dependents,
    get_ready_tasks,
    get_system_stats,
    remove_dependency,
)
from gg.lifecycle import (
    complete_task,
    complete_tasks_bulk,
    format_task_id,
    resolve_task_id,
    start_task,
)
from gg.paths import GG_DIR_NAME, config_path_for, resolve_db_path, workspace_db_path

log = logging.getLogger(__name__)

# Latest epoch accepted for --created-at (2100-01-01T00:00:00Z).
MAX_CREATED_AT_EPOCH = 4102444800

_NOT_FOUND_HINTS = {
    "plan": "Run 'gg plan ls' to see plans.",
    "task": "Run 'gg task ls' to see tasks.",
    "dependency": "Run 'gg dep blockers TASK' to see a task's blockers.",
}


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr.  Since every gg
    command prints JSON, this subclass intercepts Click exceptions and gg's
    own errors and emits a JSON error object on stdout.  Unknown commands
    get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except GraphError as e:
            log.debug("Command failed: %s", e, exc_info=True)
            click.echo(json.dumps({"ok": False, "error": _error_message(e), "code": e.code}))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _error_message(exc: GraphError) -> str:
    msg = str(exc)
    if isinstance(exc, NotFound):
        hint = _NOT_FOUND_HINTS.get(exc.entity)
        if hint:
            msg += f"\n{hint}"
    return msg


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Track plans, tasks and their dependencies for parallel coding agents.

    \b
    Quick start:
      gg init                                     Create .gg/tasks.db here
      gg plan new auth --title "Auth rework"      Create a plan
      gg task new --plan auth --title "Schema"    Add task auth:001
      gg dep add auth:002 --blocks-on auth:001    auth:002 waits for auth:001
      gg ready                                    Tasks an agent can pick up
      gg task start auth:001                      Claim a task
      gg task complete auth:001                   Finish it

    \b
    Key concepts:
      plan      A named unit of work, identified by a kebab-case slug
      task      One step of a plan, identified as slug:NNN or by internal id
      dep       "A blocks on B": A is not ready until B is completed
      ready     Open tasks whose blockers are all completed
    """
    if os.environ.get("GG_DEBUG"):
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )


# -- helpers --


def _settings(db_path: Path) -> Settings:
    return load_settings(config_path_for(db_path))


@contextlib.contextmanager
def _open_db():
    db_path = resolve_db_path()
    if not db_path.exists():
        raise click.ClickException(f"No gg database at {db_path}. Run 'gg init' first.")
    with connect(db_path, _settings(db_path).busy_timeout_ms) as conn:
        yield conn


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _task_payload(task: TaskRow) -> dict[str, Any]:
    payload: dict[str, Any] = dict(task)
    payload["ref"] = format_task_id(task["plan_slug"], task["plan_task_number"])
    return payload


def _blocker_payload(info: BlockerInfo) -> dict[str, Any]:
    payload: dict[str, Any] = dict(info)
    payload["ref"] = format_task_id(info["plan_slug"], info["plan_task_number"])
    return payload


def _plan_payload(plan: PlanRow) -> dict[str, Any]:
    return dict(plan)


def _read_description(description: str | None, description_file) -> str | None:
    """Resolve --description / --description-file ('-' reads stdin)."""
    if description is not None and description_file is not None:
        raise click.UsageError("Use either --description or --description-file, not both.")
    if description_file is None:
        return description
    data = description_file.read(MAX_DESCRIPTION_BYTES + 1)
    if len(data) > MAX_DESCRIPTION_BYTES:
        raise click.ClickException(
            f"Description exceeds the {MAX_DESCRIPTION_BYTES // (1024 * 1024)} MB limit."
        )
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise click.ClickException("Description file is not valid UTF-8.") from exc


_description_options = [
    click.option("--description", "-d", default=None, help="Description text."),
    click.option(
        "--description-file",
        type=click.File("rb"),
        default=None,
        help="Read the description from a file ('-' for stdin).",
    ),
]


def _apply_description_options(fn):  # type: ignore[no-untyped-def]
    for decorator in reversed(_description_options):
        fn = decorator(fn)
    return fn


# -- init --


@main.command()
@click.option("--force", is_flag=True, help="Delete and recreate an existing database.")
def init(force: bool):
    """Create a gg workspace (.gg/tasks.db) in the current directory."""
    db_path = workspace_db_path(Path.cwd())
    if db_path.exists():
        if not force:
            raise click.ClickException(
                f"Workspace already initialized at {db_path}. Use --force to recreate it."
            )
        for suffix in ("", "-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)
        log.info("Removed existing database %s", db_path)
    get_connection(db_path).close()
    _echo({"ok": True, "db_path": str(db_path), "workspace": str(Path.cwd() / GG_DIR_NAME)})


# -- plans --


@main.group(cls=_JsonAwareGroup)
def plan():
    """Create, inspect and delete plans."""


@plan.command("new")
@click.argument("slug")
@click.option("--title", "-t", required=True, help="Plan title (1-500 characters).")
@_apply_description_options
@click.option(
    "--created-at",
    type=click.IntRange(0, MAX_CREATED_AT_EPOCH),
    default=None,
    help="Backdate the plan (Unix epoch seconds).",
)
def plan_new(
    slug: str,
    title: str,
    description: str | None,
    description_file,
    created_at: int | None,
):
    """Create a plan identified by a kebab-case SLUG."""
    text = _read_description(description, description_file) or ""
    stamp = datetime.fromtimestamp(created_at, UTC) if created_at is not None else None
    with _open_db() as conn:
        p = create_plan(conn, slug, title, text, created_at=stamp)
    _echo(_plan_payload(p))


@plan.command("show")
@click.argument("slug")
def plan_show(slug: str):
    """Show a plan with task counts and its tasks."""
    with _open_db() as conn:
        summary = get_plan_summary(conn, slug)
        if not summary:
            raise PlanNotFound(slug)
        tasks = list_tasks(conn, plan_slug=slug)
    payload: dict[str, Any] = dict(summary)
    payload["tasks"] = [_task_payload(t) for t in tasks]
    _echo(payload)


@plan.command("ls")
@click.option(
    "--status",
    type=click.Choice(VALID_PLAN_STATUSES),
    default=None,
    help="Filter by derived plan status.",
)
def plan_ls(status: str | None):
    """List plans, oldest first."""
    with _open_db() as conn:
        plans = list_plans(conn, status=status)
    _echo([_plan_payload(p) for p in plans])


@plan.command("update")
@click.argument("slug")
@click.option("--title", "-t", default=None, help="New title.")
@_apply_description_options
def plan_update(slug: str, title: str | None, description: str | None, description_file):
    """Update a plan's title or description."""
    text = _read_description(description, description_file)
    if title is None and text is None:
        raise click.UsageError("Nothing to update. Pass --title or --description.")
    with _open_db() as conn:
        p = update_plan(conn, slug, title=title, description=text)
    _echo(_plan_payload(p))


@plan.command("delete")
@click.argument("slug")
def plan_delete(slug: str):
    """Delete a plan with all of its tasks and their dependencies."""
    with _open_db() as conn:
        count = delete_plan(conn, slug)
    _echo({"ok": True, "slug": slug, "deleted_tasks": count})


# -- tasks --


@main.group(cls=_JsonAwareGroup)
def task():
    """Create, inspect and advance tasks."""


@task.command("new")
@click.option("--plan", "-p", "plan_slug", required=True, help="Plan slug.")
@click.option("--title", "-t", required=True, help="Task title (1-500 characters).")
@_apply_description_options
def task_new(plan_slug: str, title: str, description: str | None, description_file):
    """Create a task under a plan."""
    text = _read_description(description, description_file) or ""
    with _open_db() as conn:
        t = create_task(conn, plan_slug, title, text)
    _echo(_task_payload(t))


@task.command("show")
@click.argument("task_ref")
def task_show(task_ref: str):
    """Show a task with its blockers and dependents."""
    with _open_db() as conn:
        task_id = resolve_task_id(conn, task_ref)
        t = get_task(conn, task_id)
        if not t:
            raise TaskNotFound(task_ref)
        payload = _task_payload(t)
        payload["blockers"] = [_blocker_payload(b) for b in get_blockers(conn, task_id)]
        payload["dependents"] = [_blocker_payload(d) for d in get_dependents(conn, task_id)]
    _echo(payload)


@task.command("ls")
@click.option("--status", type=click.Choice(VALID_TASK_STATUSES), default=None)
@click.option("--plan", "-p", "plan_slug", default=None, help="Only tasks of this plan.")
def task_ls(status: str | None, plan_slug: str | None):
    """List tasks by creation time."""
    with _open_db() as conn:
        tasks = list_tasks(conn, status=status, plan_slug=plan_slug)
    _echo([_task_payload(t) for t in tasks])


@task.command("start")
@click.argument("task_ref")
def task_start(task_ref: str):
    """Move an open task to in_progress."""
    with _open_db() as conn:
        t = start_task(conn, resolve_task_id(conn, task_ref))
    _echo(_task_payload(t))


@task.command("complete")
@click.argument("task_refs", nargs=-1, required=True)
def task_complete(task_refs: tuple[str, ...]):
    """Complete one or more in-progress tasks (all or nothing)."""
    db_path = resolve_db_path()
    max_ids = _settings(db_path).bulk_max_ids
    if len(task_refs) > max_ids:
        raise click.UsageError(f"At most {max_ids} task ids per call (got {len(task_refs)}).")
    with _open_db() as conn:
        task_ids = [resolve_task_id(conn, ref) for ref in task_refs]
        if len(task_ids) == 1:
            done = [complete_task(conn, task_ids[0])]
        else:
            done = complete_tasks_bulk(conn, task_ids)
    _echo([_task_payload(t) for t in done])


@task.command("update")
@click.argument("task_ref")
@click.option("--title", "-t", default=None, help="New title.")
@_apply_description_options
@click.option("--status", type=click.Choice(VALID_TASK_STATUSES), default=None)
def task_update(
    task_ref: str,
    title: str | None,
    description: str | None,
    description_file,
    status: str | None,
):
    """Update a task's title, description or status (forward only)."""
    text = _read_description(description, description_file)
    if title is None and text is None and status is None:
        raise click.UsageError("Nothing to update. Pass --title, --description or --status.")
    with _open_db() as conn:
        t = update_task(
            conn, resolve_task_id(conn, task_ref), title=title, description=text, status=status
        )
    _echo(_task_payload(t))


@task.command("delete")
@click.argument("task_ref")
def task_delete(task_ref: str):
    """Delete a task nothing else depends on."""
    with _open_db() as conn:
        task_id = resolve_task_id(conn, task_ref)
        delete_task(conn, task_id)
    _echo({"ok": True, "id": task_id, "ref": task_ref})


# -- dependencies --


@main.group(cls=_JsonAwareGroup)
def dep():
    """Add, remove and inspect dependencies between tasks."""


@dep.command("add")
@click.argument("task_ref")
@click.option("--blocks-on", "blocks_on", required=True, help="Task that must finish first.")
def dep_add(task_ref: str, blocks_on: str):
    """Make TASK wait for --blocks-on."""
    with _open_db() as conn:
        task_id = resolve_task_id(conn, task_ref)
        blocks_on_id = resolve_task_id(conn, blocks_on)
        add_dependency(conn, task_id, blocks_on_id)
    _echo({"ok": True, "task_id": task_id, "blocks_on_id": blocks_on_id})


@dep.command("remove")
@click.argument("task_ref")
@click.option("--blocks-on", "blocks_on", required=True, help="Blocker to detach.")
def dep_remove(task_ref: str, blocks_on: str):
    """Remove the edge TASK -> --blocks-on."""
    with _open_db() as conn:
        task_id = resolve_task_id(conn, task_ref)
        blocks_on_id = resolve_task_id(conn, blocks_on)
        remove_dependency(conn, task_id, blocks_on_id)
    _echo({"ok": True, "task_id": task_id, "blocks_on_id": blocks_on_id})


@dep.command("blockers")
@click.argument("task_ref")
def dep_blockers(task_ref: str):
    """Everything TASK waits on, nearest first."""
    with _open_db() as conn:
        rows = get_blockers(conn, resolve_task_id(conn, task_ref))
    _echo([_blocker_payload(r) for r in rows])


@dep.command("dependents")
@click.argument("task_ref")
def dep_dependents(task_ref: str):
    """Everything waiting on TASK, nearest first."""
    with _open_db() as conn:
        rows = get_dependents(conn, resolve_task_id(conn, task_ref))
    _echo([_blocker_payload(r) for r in rows])


# -- queries --


@main.command()
@click.argument("scope", required=False)
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(1, MAX_SQLITE_INTEGER),
    default=None,
    help="Maximum rows.",
)
def ready(scope: str | None, limit: int | None):
    """Open tasks with every blocker completed, oldest first.

    \b
    gg ready             All ready tasks
    gg ready auth        Ready tasks of plan 'auth'
    gg ready auth:003    auth:003 if it is ready, else []
    """
    db_path = resolve_db_path()
    plan_slug = None
    task_id = None
    with _open_db() as conn:
        if scope is not None and ":" in scope:
            task_id = resolve_task_id(conn, scope)
        elif scope is not None:
            plan_slug = scope
        tasks = get_ready_tasks(
            conn,
            limit or _settings(db_path).ready_limit,
            plan_slug=plan_slug,
            task_id=task_id,
        )
    _echo([_task_payload(t) for t in tasks])


@main.command()
def blocked():
    """Open tasks waiting on unfinished work, most blockers first."""
    with _open_db() as conn:
        tasks = get_blocked_tasks(conn)
    _echo([{**_task_payload(t), "blocker_count": t["blocker_count"]} for t in tasks])


@main.command()
def stats():
    """Plan and task counts."""
    with _open_db() as conn:
        _echo(get_system_stats(conn))


@main.command()
def doctor():
    """Check the workspace database for integrity problems."""
    from gg.doctor import run_doctor

    db_path = resolve_db_path()
    report = run_doctor(db_path, _settings(db_path).busy_timeout_ms)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")
