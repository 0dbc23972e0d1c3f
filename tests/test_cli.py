"""Tests for the CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from gg.cli import main
from gg.db import create_plan, create_task, get_connection, get_task
from gg.lifecycle import start_task


@pytest.fixture()
def cli_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / ".gg" / "tasks.db"
    get_connection(db_path).close()
    monkeypatch.setenv("GG_DB_PATH", str(db_path))
    return db_path


def _invoke(*args: str, input: str | bytes | None = None):
    return CliRunner().invoke(main, list(args), input=input)


def _ok(*args: str, input: str | bytes | None = None):
    result = _invoke(*args, input=input)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def _err(*args: str, exit_code: int = 1) -> dict:
    result = _invoke(*args)
    assert result.exit_code == exit_code, result.output
    payload = json.loads(result.output.strip().splitlines()[-1])
    assert payload["ok"] is False
    return payload


def _seed_chain() -> None:
    _ok("plan", "new", "auth", "--title", "Auth rework")
    for n in (1, 2, 3):
        _ok("task", "new", "--plan", "auth", "--title", f"Step {n}")
    _ok("dep", "add", "auth:002", "--blocks-on", "auth:001")
    _ok("dep", "add", "auth:003", "--blocks-on", "auth:002")


def test_chain_workflow(cli_db):
    _seed_chain()

    assert [t["ref"] for t in _ok("ready")] == ["auth:001"]

    started = _ok("task", "start", "auth:001")
    assert started["status"] == "in_progress"
    done = _ok("task", "complete", "auth:001")
    assert [t["status"] for t in done] == ["completed"]

    assert [t["ref"] for t in _ok("ready")] == ["auth:002"]

    blockers = _ok("dep", "blockers", "auth:003")
    assert [(b["ref"], b["depth"]) for b in blockers] == [("auth:002", 1), ("auth:001", 2)]

    dependents = _ok("dep", "dependents", "auth:001")
    assert [(d["ref"], d["depth"]) for d in dependents] == [("auth:002", 1), ("auth:003", 2)]


def test_cycle_is_reported(cli_db):
    _seed_chain()
    err = _err("dep", "add", "auth:001", "--blocks-on", "auth:003")
    assert err["code"] == "CYCLE_DETECTED"
    assert "auth:001 -> auth:002 -> auth:003 -> auth:001" in err["error"]


def test_plan_new_show_ls(cli_db):
    plan = _ok("plan", "new", "auth", "--title", "Auth", "--description", "why")
    assert plan["slug"] == "auth"
    assert plan["description"] == "why"
    _ok("task", "new", "-p", "auth", "-t", "First")

    shown = _ok("plan", "show", "auth")
    assert shown["total_tasks"] == 1
    assert [t["ref"] for t in shown["tasks"]] == ["auth:001"]

    assert [p["slug"] for p in _ok("plan", "ls")] == ["auth"]
    assert _ok("plan", "ls", "--status", "completed") == []


def test_plan_new_backdated(cli_db):
    plan = _ok("plan", "new", "old", "--title", "Old", "--created-at", "0")
    assert plan["created_at"] == "1970-01-01T00:00:00Z"


def test_plan_new_invalid_slug(cli_db):
    err = _err("plan", "new", "Not_Kebab", "--title", "x")
    assert err["code"] == "INVALID_FORMAT"


def test_plan_new_duplicate(cli_db):
    _ok("plan", "new", "auth", "--title", "Auth")
    err = _err("plan", "new", "auth", "--title", "Auth")
    assert err["code"] == "ALREADY_EXISTS"


def test_description_from_stdin(cli_db):
    _ok("plan", "new", "auth", "--title", "Auth")
    task = _ok(
        "task", "new", "--plan", "auth", "--title", "T", "--description-file", "-",
        input="from stdin\n",
    )
    assert task["description"] == "from stdin\n"


def test_description_from_file(cli_db, tmp_path: Path):
    desc = tmp_path / "desc.md"
    desc.write_text("# Plan\nDetails")
    plan = _ok("plan", "new", "auth", "--title", "Auth", "--description-file", str(desc))
    assert plan["description"] == "# Plan\nDetails"


def test_description_sources_are_exclusive(cli_db, tmp_path: Path):
    desc = tmp_path / "desc.md"
    desc.write_text("x")
    _err(
        "plan", "new", "auth", "--title", "Auth", "-d", "inline", "--description-file", str(desc),
        exit_code=2,
    )


def test_plan_update(cli_db):
    _ok("plan", "new", "auth", "--title", "Auth")
    updated = _ok("plan", "update", "auth", "--title", "Renamed")
    assert updated["title"] == "Renamed"
    _err("plan", "update", "auth", exit_code=2)


def test_plan_delete(cli_db):
    _seed_chain()
    result = _ok("plan", "delete", "auth")
    assert result == {"ok": True, "slug": "auth", "deleted_tasks": 3}
    assert _ok("task", "ls") == []


def test_missing_plan_has_hint(cli_db):
    err = _err("plan", "show", "ghost")
    assert err["code"] == "NOT_FOUND"
    assert "Plan 'ghost' not found." in err["error"]
    assert "gg plan ls" in err["error"]


def test_missing_task_has_hint(cli_db):
    err = _err("task", "show", "auth:001")
    assert err["code"] == "NOT_FOUND"
    assert "gg task ls" in err["error"]


def test_task_show_includes_graph(cli_db):
    _seed_chain()
    shown = _ok("task", "show", "auth:002")
    assert shown["ref"] == "auth:002"
    assert [b["ref"] for b in shown["blockers"]] == ["auth:001"]
    assert [d["ref"] for d in shown["dependents"]] == ["auth:003"]


def test_task_show_by_internal_id(cli_db):
    _seed_chain()
    first = _ok("task", "show", "auth:001")
    assert _ok("task", "show", str(first["id"]))["ref"] == "auth:001"


def test_task_ls_filters(cli_db):
    _seed_chain()
    _ok("task", "start", "auth:001")
    assert [t["ref"] for t in _ok("task", "ls", "--status", "open")] == ["auth:002", "auth:003"]
    assert [t["ref"] for t in _ok("task", "ls", "--plan", "auth")] == [
        "auth:001",
        "auth:002",
        "auth:003",
    ]


def test_task_update_status_forward_only(cli_db):
    _seed_chain()
    task = _ok("task", "update", "auth:001", "--status", "completed")
    assert task["status"] == "completed"
    err = _err("task", "update", "auth:001", "--status", "open")
    assert err["code"] == "INVALID_TRANSITION"
    _err("task", "update", "auth:001", exit_code=2)


def test_task_start_twice(cli_db):
    _seed_chain()
    _ok("task", "start", "auth:001")
    err = _err("task", "start", "auth:001")
    assert err["code"] == "INVALID_TRANSITION"


def test_bulk_complete_all_or_nothing(cli_db):
    _seed_chain()
    _ok("task", "start", "auth:001")
    _ok("task", "start", "auth:002")
    err = _err("task", "complete", "auth:001", "auth:002", "auth:003")
    assert err["code"] == "INVALID_TRANSITION"
    assert [t["status"] for t in _ok("task", "ls")] == ["in_progress", "in_progress", "open"]

    done = _ok("task", "complete", "auth:001", "auth:002")
    assert [t["ref"] for t in done] == ["auth:001", "auth:002"]


def test_bulk_complete_respects_configured_cap(cli_db):
    (cli_db.parent / "config.toml").write_text("[bulk]\nmax_ids = 2\n")
    _seed_chain()
    result = _invoke("task", "complete", "auth:001", "auth:002", "auth:003")
    assert result.exit_code == 2
    assert "At most 2 task ids" in result.output


def test_task_delete_guard(cli_db):
    _seed_chain()
    err = _err("task", "delete", "auth:001")
    assert err["code"] == "HAS_DEPENDENTS"
    deleted = _ok("task", "delete", "auth:003")
    assert deleted["ok"] is True


def test_dep_remove(cli_db):
    _seed_chain()
    _ok("dep", "remove", "auth:003", "--blocks-on", "auth:002")
    assert [t["ref"] for t in _ok("ready")] == ["auth:001", "auth:003"]
    err = _err("dep", "remove", "auth:003", "--blocks-on", "auth:002")
    assert err["code"] == "NOT_FOUND"


def test_ready_limit(cli_db):
    _ok("plan", "new", "auth", "--title", "Auth")
    for n in range(3):
        _ok("task", "new", "--plan", "auth", "--title", f"T{n}")
    assert len(_ok("ready", "--limit", "2")) == 2
    result = _invoke("ready", "--limit", "99999999999999999999")
    assert result.exit_code == 2


def test_ready_scope(cli_db):
    _seed_chain()
    _ok("plan", "new", "billing", "--title", "Billing")
    _ok("task", "new", "--plan", "billing", "--title", "Invoice")

    assert [t["ref"] for t in _ok("ready")] == ["auth:001", "billing:001"]
    assert [t["ref"] for t in _ok("ready", "auth")] == ["auth:001"]
    assert [t["ref"] for t in _ok("ready", "billing")] == ["billing:001"]
    assert [t["ref"] for t in _ok("ready", "auth:001")] == ["auth:001"]
    assert _ok("ready", "auth:002") == []

    assert _err("ready", "ghost")["code"] == "NOT_FOUND"
    assert _err("ready", "auth:009")["code"] == "NOT_FOUND"
    assert _err("ready", "auth:abc")["code"] == "INVALID_FORMAT"


def test_oversized_internal_id_is_a_json_error(cli_db):
    _seed_chain()
    for args in (
        ("task", "show", "99999999999999999999"),
        ("task", "start", "99999999999999999999"),
        ("dep", "add", "auth:001", "--blocks-on", "99999999999999999999"),
    ):
        assert _err(*args)["code"] == "INVALID_FORMAT"


def test_blocked_and_stats(cli_db):
    _seed_chain()
    blocked = _ok("blocked")
    assert [(t["ref"], t["blocker_count"]) for t in blocked] == [("auth:003", 2), ("auth:002", 1)]

    stats = _ok("stats")
    assert stats["total_tasks"] == 3
    assert stats["ready_tasks"] == 1
    assert stats["blocked_tasks"] == 2


def test_doctor_healthy(cli_db):
    conn = get_connection(cli_db)
    try:
        create_plan(conn, "auth", "Auth")
        task = create_task(conn, "auth", "T")
        start_task(conn, task["id"])
        assert get_task(conn, task["id"])["status"] == "in_progress"
    finally:
        conn.close()
    report = _ok("doctor")
    assert report["status"] == "pass"


def test_doctor_failure_exits_nonzero(cli_db):
    conn = get_connection(cli_db)
    try:
        conn.execute("DELETE FROM schema_version")
        conn.commit()
    finally:
        conn.close()
    result = _invoke("doctor")
    assert result.exit_code == 1
    report = json.loads(result.output.splitlines()[0])
    assert report["status"] == "fail"


def test_doctor_uses_configured_busy_timeout(cli_db, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GG_BUSY_TIMEOUT_MS", raising=False)
    (cli_db.parent / "config.toml").write_text("[storage]\nbusy_timeout_ms = 250\n")
    seen = {}

    def fake_run_doctor(db_path, busy_timeout_ms):
        seen["busy_timeout_ms"] = busy_timeout_ms
        return {"status": "pass", "summary": "", "db_path": str(db_path), "checks": []}

    monkeypatch.setattr("gg.doctor.run_doctor", fake_run_doctor)
    assert _ok("doctor")["status"] == "pass"
    assert seen == {"busy_timeout_ms": 250}


def test_doctor_does_not_touch_database(cli_db):
    conn = get_connection(cli_db)
    try:
        conn.execute("PRAGMA user_version = 0")
    finally:
        conn.close()
    before = cli_db.read_bytes()
    result = _invoke("doctor")
    assert result.exit_code == 1
    assert json.loads(result.output.splitlines()[0])["status"] == "fail"
    assert cli_db.read_bytes() == before


def test_unknown_command_suggests(cli_db):
    result = _invoke("redy")
    assert result.exit_code == 2
    payload = json.loads(result.output)
    assert "Did you mean: ready?" in payload["error"]


def test_missing_database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GG_DB_PATH", str(tmp_path / "nowhere" / "tasks.db"))
    err = _err("ready")
    assert "gg init" in err["error"]


def test_init_creates_workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GG_DB_PATH", raising=False)
    monkeypatch.chdir(tmp_path)

    created = _ok("init")
    db_path = tmp_path / ".gg" / "tasks.db"
    assert Path(created["db_path"]).resolve() == db_path.resolve()
    assert db_path.exists()

    _ok("plan", "new", "auth", "--title", "Auth")
    err = _err("init")
    assert "--force" in err["error"]

    _ok("init", "--force")
    assert _ok("plan", "ls") == []


def test_workspace_discovered_from_subdirectory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GG_DB_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    _ok("init")
    _ok("plan", "new", "auth", "--title", "Auth")

    nested = tmp_path / "src" / "pkg"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    assert [p["slug"] for p in _ok("plan", "ls")] == ["auth"]
