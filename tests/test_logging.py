"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from dockhand.logging import REDACTED, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger.operations_log_path.read_text(encoding="utf-8")
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
    assert logger.enabled is False

    with logger.operation("apply", args={"manifest": "stack.yml"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("apply") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("status") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_result(tmp_path: Path) -> None:
    """Each operation appends one JSON line with its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("apply", args={"dry_run": False}, target={"kind": "host"}) as op:
        op.add_step("manifest.load", detail={"path": Path("/etc/dockhand/manifest.yml")})
        op.add_step("start-service:nodered", status="failed")
        op.success("Applied.", changed=3)
    with logger.operation("status") as op:
        pass

    first, second = _records(logger)
    assert first["op"] == "apply"
    assert first["args"] == {"dry_run": False}
    assert first["target"] == {"kind": "host"}
    assert first["steps"] == [
        {"name": "manifest.load", "status": "success", "detail": {"path": "/etc/dockhand/manifest.yml"}},
        {"name": "start-service:nodered", "status": "failed"},
    ]
    assert first["result"] == {"status": "success", "message": "Applied.", "changed": 3}
    assert second["result"] == {"status": "success", "message": "completed"}


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("apply", args={"manifest": Path("stack.yml")}) as op:
        op.warning(
            "warned",
            warnings=("TS_AUTHKEY is not configured",),
            errors=("err",),
            changed=1,
            services=["tailscale"],
            context={"base_dir": Path("/opt/stack"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert record["args"] == {"manifest": "stack.yml"}
    assert result["status"] == "warning"
    assert result["warnings"] == ["TS_AUTHKEY is not configured"]
    assert result["errors"] == ["err"]
    assert result["services"] == ["tailscale"]
    assert result["context"] == {"base_dir": "/opt/stack", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("apply") as op:
        op.error("boom", rc=4, errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 4
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the block is logged as an error result."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="bad manifest"):
        with logger.operation("apply"):
            raise ValueError("bad manifest")

    (record,) = _records(logger)
    assert record["result"] == {
        "status": "error",
        "message": "ValueError: bad manifest",
        "errors": ["ValueError: bad manifest"],
    }


def test_secret_like_values_are_redacted(tmp_path: Path) -> None:
    """Arguments and context keys that look like credentials are masked."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "apply",
        args={"ts_authkey": "tskey-abc", "user": "admin", "empty_token": ""},
    ) as op:
        op.success("done", context={"RS_PASSWORD": "hunter2", "port": 8080})

    (record,) = _records(logger)
    assert record["args"] == {"ts_authkey": REDACTED, "user": "admin", "empty_token": ""}
    result = record["result"]
    assert isinstance(result, dict)
    assert result["context"] == {"RS_PASSWORD": REDACTED, "port": 8080}
