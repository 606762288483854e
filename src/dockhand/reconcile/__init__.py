"""Reconciliation pipeline: probe, plan, execute, report."""

from __future__ import annotations

from .engine import ReconcileEngine, build_orchestrator, create_engine, unconfigured_warnings
from .executor import ActionExecutor, HostActions, stop_on_interrupt
from .models import (
    Action,
    ActionKind,
    ActionResult,
    ActionStatus,
    CreateDirectory,
    HostFact,
    InstallPackage,
    InstallRuntime,
    ProbeOptions,
    RunState,
    StartService,
    StopService,
    WriteFile,
)
from .planner import build_plan
from .probes import FactProber
from .report import Report, render_plan, serialize_report, summarize

__all__ = [
    "Action",
    "ActionExecutor",
    "ActionKind",
    "ActionResult",
    "ActionStatus",
    "CreateDirectory",
    "FactProber",
    "HostActions",
    "HostFact",
    "InstallPackage",
    "InstallRuntime",
    "ProbeOptions",
    "ReconcileEngine",
    "Report",
    "RunState",
    "StartService",
    "StopService",
    "WriteFile",
    "build_orchestrator",
    "build_plan",
    "create_engine",
    "render_plan",
    "serialize_report",
    "stop_on_interrupt",
    "summarize",
    "unconfigured_warnings",
]
