"""JSON shape checks for CLI output.

Agents parse these payloads, so field names and types are a contract.
``_validate_strict()`` also rejects top-level keys the schema doesn't list.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner
from jsonschema import ValidationError, validate

from gg.cli import main
from gg.db import get_connection

_TIMESTAMP = {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$"}
_NULLABLE_TIMESTAMP = {"anyOf": [_TIMESTAMP, {"type": "null"}]}
_TASK_STATUS = {"enum": ["open", "in_progress", "completed"]}

TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "id", "plan_id", "plan_slug", "plan_task_number", "ref", "title",
        "description", "status", "created_at", "updated_at", "started_at", "completed_at",
    ],
    "properties": {
        "id": {"type": "integer"},
        "plan_id": {"type": "integer"},
        "plan_slug": {"type": "string"},
        "plan_task_number": {"type": "integer", "minimum": 1, "maximum": 999},
        "ref": {"type": "string", "pattern": r"^[a-z0-9]+(-[a-z0-9]+)*:\d{3}$"},
        "title": {"type": "string", "minLength": 1, "maxLength": 500},
        "description": {"type": "string"},
        "status": _TASK_STATUS,
        "created_at": _TIMESTAMP,
        "updated_at": _TIMESTAMP,
        "started_at": _NULLABLE_TIMESTAMP,
        "completed_at": _NULLABLE_TIMESTAMP,
    },
}

BLOCKER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "plan_slug", "plan_task_number", "ref", "title", "status", "depth"],
    "properties": {
        "id": {"type": "integer"},
        "plan_slug": {"type": "string"},
        "plan_task_number": {"type": "integer"},
        "ref": {"type": "string"},
        "title": {"type": "string"},
        "status": _TASK_STATUS,
        "depth": {"type": "integer", "minimum": 1},
    },
}

PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "id", "slug", "title", "description", "task_counter", "status",
        "created_at", "updated_at", "execution_started_at", "completed_at",
    ],
    "properties": {
        "id": {"type": "integer"},
        "slug": {"type": "string"},
        "title": {"type": "string"},
        "description": {"type": "string"},
        "task_counter": {"type": "integer", "minimum": 0},
        "status": _TASK_STATUS,
        "created_at": _TIMESTAMP,
        "updated_at": _TIMESTAMP,
        "execution_started_at": _NULLABLE_TIMESTAMP,
        "completed_at": _NULLABLE_TIMESTAMP,
    },
}

ERROR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["ok", "error"],
    "properties": {
        "ok": {"const": False},
        "error": {"type": "string"},
        "code": {
            "enum": [
                "NOT_FOUND", "ALREADY_EXISTS", "INVALID_FORMAT", "INVALID_TRANSITION",
                "CYCLE_DETECTED", "HAS_DEPENDENTS", "STORAGE_BUSY",
            ]
        },
    },
}

DOCTOR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["status", "summary", "db_path", "checks"],
    "properties": {
        "status": {"enum": ["pass", "warning", "fail"]},
        "summary": {"type": "string"},
        "db_path": {"type": "string"},
        "checks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "status", "summary", "findings"],
                "properties": {
                    "name": {"type": "string"},
                    "status": {"enum": ["pass", "warning", "fail"]},
                    "summary": {"type": "string"},
                    "findings": {"type": "array"},
                },
            },
        },
    },
}


def _validate_strict(instance: dict, schema: dict) -> None:
    """Validate + reject unknown top-level keys not in schema['properties']."""
    validate(instance=instance, schema=schema)
    unknown = set(instance.keys()) - set(schema.get("properties", {}).keys())
    if unknown:
        raise ValidationError(f"Unknown top-level fields: {sorted(unknown)}")


@pytest.fixture()
def seeded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / ".gg" / "tasks.db"
    get_connection(db_path).close()
    monkeypatch.setenv("GG_DB_PATH", str(db_path))
    for args in (
        ["plan", "new", "auth", "--title", "Auth"],
        ["task", "new", "--plan", "auth", "--title", "One"],
        ["task", "new", "--plan", "auth", "--title", "Two"],
        ["task", "new", "--plan", "auth", "--title", "Three"],
        ["dep", "add", "auth:002", "--blocks-on", "auth:001"],
        ["task", "start", "auth:001"],
    ):
        assert _run(args).exit_code == 0


def _run(args: list[str]):
    return CliRunner().invoke(main, args)


def _json(args: list[str]) -> Any:
    result = _run(args)
    return json.loads(result.output)


def test_task_payloads(seeded) -> None:
    for args in (["task", "ls"], ["ready"], ["task", "complete", "auth:001"]):
        rows = _json(args)
        assert rows, args
        for row in rows:
            _validate_strict(row, TASK_SCHEMA)


def test_task_show_payload(seeded) -> None:
    shown = _json(["task", "show", "auth:002"])
    blockers = shown.pop("blockers")
    dependents = shown.pop("dependents")
    _validate_strict(shown, TASK_SCHEMA)
    assert blockers and dependents == []
    for row in blockers:
        _validate_strict(row, BLOCKER_SCHEMA)


def test_blocked_payload(seeded) -> None:
    schema = {
        **TASK_SCHEMA,
        "properties": {**TASK_SCHEMA["properties"], "blocker_count": {"type": "integer"}},
    }
    rows = _json(["blocked"])
    assert len(rows) == 1
    _validate_strict(rows[0], schema)


def test_plan_payloads(seeded) -> None:
    for row in _json(["plan", "ls"]):
        _validate_strict(row, PLAN_SCHEMA)


def test_error_payload(seeded) -> None:
    _validate_strict(_json(["dep", "add", "auth:001", "--blocks-on", "auth:002"]), ERROR_SCHEMA)
    _validate_strict(_json(["plan", "show", "nope"]), ERROR_SCHEMA)


def test_doctor_payload(seeded) -> None:
    validate(instance=_json(["doctor"]), schema=DOCTOR_SCHEMA)


def test_strict_validation_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        _validate_strict({"ok": False, "error": "x", "extra": 1}, ERROR_SCHEMA)
