"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from siderdb.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger._operations_log_path.read_text(encoding="utf-8")  # type: ignore[attr-defined]
    return [json.loads(line) for line in text.splitlines()]


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

    with logger.operation("start", args={"name": "alpha"}) as op:
        op.success("done")

    assert not log_dir.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("remove") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("list") as op:
        op.success("done")


def test_operation_record_contains_steps_and_lock_wait(tmp_path: Path) -> None:
    """Successful operations record their steps, target and lock wait."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "promote",
        args={"snapshot": "seeded"},
        target={"instance": "alpha"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("lock.acquire", detail="snapshots/seeded.lock")
        op.add_step("snapshot.copy")
        op.success("Created snapshot 'seeded'.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "promote"
    assert record["args"] == {"snapshot": "seeded"}
    assert record["target"] == {"instance": "alpha"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "lock.acquire", "status": "success", "detail": "snapshots/seeded.lock"},
        {"name": "snapshot.copy", "status": "success"},
    ]
    assert record["result"] == {
        "status": "success",
        "message": "Created snapshot 'seeded'.",
        "changed": 1,
    }


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("reset", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "foo"}
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["errors"] == ["err"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("start") as op:
        op.error("boom", errors=None, rc=1, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 1
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the block is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(KeyError):
        with logger.operation("list"):
            raise KeyError("missing")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert "KeyError" in record["result"]["message"]


def test_operation_without_result_is_recorded_as_error(tmp_path: Path) -> None:
    """Blocks that never set a result still produce a log line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("list"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
