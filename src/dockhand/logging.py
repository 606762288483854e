"""Structured operation logging for dockhand.

Every CLI operation appends one JSON object to ``operations.jsonl`` inside the
configured logs directory. Records carry the operation name, its arguments,
the steps taken and the final result. Logging never breaks an operation: if
the directory cannot be created or written, the logger disables itself.
"""
from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
REDACTED = "***"
_SECRET_KEY = re.compile(r"(password|passwd|secret|token|authkey|auth_key|api_key)", re.IGNORECASE)


def _sanitize(value: object, *, key: str | None = None) -> object:
    if key is not None and _SECRET_KEY.search(key) and value not in (None, ""):
        return REDACTED
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _sanitize(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the result of a single logged operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for operation *name*."""
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
        **extra: object,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context, **extra)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
        **extra: object,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings) if warnings is not None else [message],
            errors=list(errors) if errors is not None else None,
            changed=changed,
            context=context,
            **extra,
        )

    def error(
        self,
        message: str,
        *,
        rc: int | None = None,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        **extra: object,
    ) -> None:
        """Mark the operation as failed; ``errors`` defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=list(errors) if errors else [message],
            warnings=list(warnings) if warnings is not None else None,
            context=context,
            **extra,
        )

    def _set_result(self, status: str, message: str, **fields: object) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        for key, value in fields.items():
            if value is None:
                continue
            result[key] = _sanitize(value, key=None if key == "context" else key)
        self.result = result


class StructuredLogger:
    """Append JSON operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is not writable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("operation log disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def operations_log_path(self) -> Path:
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope whose result is written when the block exits."""
        scope = OperationScope(name, args=args, target=target)
        started = datetime.now(timezone.utc)
        start = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("completed")
            self._write(scope, started, int((time.perf_counter() - start) * 1000))

    def _write(self, scope: OperationScope, started: datetime, duration_ms: int) -> None:
        if not self._enabled:
            return
        record = {
            "ts": started.isoformat(),
            "op": scope.name,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "duration_ms": duration_ms,
            "steps": scope.steps,
            "result": scope.result,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("operation log disabled; write to %s failed: %s", self._operations_log_path, exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "REDACTED"]
