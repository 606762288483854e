"""Summaries and serialisation for reconciliation passes."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import ProbeError
from ..exit_codes import ExitCode
from .models import Action, ActionResult, ActionStatus


@dataclass(slots=True, frozen=True)
class Report:
    """Aggregated outcome of one pass."""

    results: Sequence[ActionResult]
    counts: Mapping[ActionStatus, int]
    exit_code: ExitCode
    probe_errors: Sequence[ProbeError] = ()
    warnings: Sequence[str] = ()
    plan: Sequence[Action] = ()
    dry_run: bool = False
    metadata: Mapping[str, Any] | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.exit_code is ExitCode.OK

    @property
    def text(self) -> str:
        """Return the plain-text rendering of the report."""
        return render_text(self)


def _exit_code_for(
    results: Iterable[ActionResult],
    probe_errors: Sequence[ProbeError],
    interrupted: bool = False,
) -> ExitCode:
    statuses = {result.status for result in results}
    if interrupted or ActionStatus.INTERRUPTED in statuses:
        return ExitCode.INTERRUPTED
    if ActionStatus.FAILED in statuses:
        return ExitCode.ACTION
    if probe_errors:
        return ExitCode.PROBE
    return ExitCode.OK


def summarize(
    results: Sequence[ActionResult],
    *,
    probe_errors: Sequence[ProbeError] = (),
    warnings: Sequence[str] = (),
    plan: Sequence[Action] | None = None,
    dry_run: bool = False,
    metadata: Mapping[str, Any] | None = None,
    interrupted: bool = False,
) -> Report:
    """Count outcomes per status and derive the exit code.

    A pass stopped by an interrupt exits with :attr:`ExitCode.INTERRUPTED`
    even when no action was in flight at the time.
    """
    counts = {status: 0 for status in ActionStatus}
    for result in results:
        counts[result.status] += 1
    return Report(
        results=tuple(results),
        counts=counts,
        exit_code=_exit_code_for(results, probe_errors, interrupted),
        probe_errors=tuple(probe_errors),
        warnings=tuple(warnings),
        plan=tuple(plan if plan is not None else (result.action for result in results)),
        dry_run=dry_run,
        metadata=metadata,
    )


def render_plan(plan: Sequence[Action]) -> list[str]:
    """Return one numbered line per planned action."""
    if not plan:
        return ["Nothing to do; host already matches the manifest."]
    width = len(str(len(plan)))
    return [
        f"{index:>{width}}. [{action.kind.value}] {action.describe()}"
        for index, action in enumerate(plan, start=1)
    ]


def render_text(report: Report) -> str:
    lines: list[str] = []
    if report.dry_run:
        lines.append("Planned actions (dry run):")
        lines.extend(f"  {line}" for line in render_plan(report.plan))
    else:
        for result in report.results:
            line = f"{result.status.value:<13} {result.action.describe()}"
            if result.error:
                line += f" - {result.error}"
            lines.append(line)
        if not report.results:
            lines.append("Nothing to do; host already matches the manifest.")

    for error in report.probe_errors:
        lines.append(f"probe error: {error}")
    for warning in report.warnings:
        lines.append(f"warning: {warning}")

    counts = report.counts
    lines.append(
        "Summary: "
        + ", ".join(f"{counts.get(status, 0)} {status.value}" for status in ActionStatus)
        + f" (exit {int(report.exit_code)})"
    )
    return "\n".join(lines)


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _action_payload(action: Action) -> dict[str, object]:
    payload: dict[str, object] = {
        "kind": action.kind.value,
        "key": action.key,
        "description": action.describe(),
    }
    if action.service is not None:
        payload["service"] = action.service
    return payload


def serialize_report(report: Report) -> dict[str, object]:
    """Convert a report into a JSON-serialisable mapping."""
    summary_payload = {
        "exit_code": int(report.exit_code),
        "dry_run": report.dry_run,
        "totals": {status.value: int(report.counts.get(status, 0)) for status in ActionStatus},
    }
    results_payload: list[dict[str, object]] = []
    for result in report.results:
        result_payload: dict[str, object] = {
            **_action_payload(result.action),
            "status": result.status.value,
            "attempts": result.attempts,
            "duration": round(result.duration, 3),
        }
        if result.error:
            result_payload["error"] = result.error
            result_payload["retryable"] = result.retryable
        results_payload.append(result_payload)

    return {
        "summary": summary_payload,
        "plan": [_action_payload(action) for action in report.plan],
        "results": results_payload,
        "probe_errors": [{"key": err.key, "message": err.message} for err in report.probe_errors],
        "warnings": list(report.warnings),
        "metadata": _sanitize_payload(report.metadata) if report.metadata else {},
    }


__all__ = ["Report", "render_plan", "render_text", "serialize_report", "summarize"]
