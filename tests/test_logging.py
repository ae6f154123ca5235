"""Failure-mode and record tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from inventoryctl.logging import StructuredLogger, sanitize


def _records(logs_dir: Path) -> list[dict[str, object]]:
    path = logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """A completed operation appends one JSON record with its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "converge",
        args={"dry_run": False, "anthropic_api_key": "sk-ant-secret"},
        target={"kind": "instances"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("instance.alpha", detail={"changes": ["Create group."]})
        op.success("All instances converged.", changed=1)

    [record] = _records(tmp_path / "logs")
    assert record["command"] == "converge"
    assert record["lock_wait_ms"] == 12
    assert record["args"] == {"dry_run": False, "anthropic_api_key": "********"}
    assert record["steps"] == [
        {"name": "instance.alpha", "status": "success", "detail": {"changes": ["Create group."]}}
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert (tmp_path / "logs" / "inventoryctl.log").exists()


def test_unhandled_exception_is_recorded_as_error(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged before being re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("converge"):
            raise RuntimeError("boom")

    [record] = _records(tmp_path / "logs")
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert "boom" in str(result["message"])


def test_sanitize_redacts_nested_secrets() -> None:
    """Secret-looking keys are redacted at any depth; empty values stay visible."""
    payload = {
        "instances": [{"name": "a", "anthropic_api_key": "sk-ant-x", "token": ""}],
        "path": Path("/srv/a"),
    }

    assert sanitize(payload) == {
        "instances": [{"name": "a", "anthropic_api_key": "********", "token": ""}],
        "path": "/srv/a",
    }
