"""Reconciliation pass coordinator."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from ..compose import ComposeMaterializer
from ..manifest import Manifest
from ..orchestrator import ServiceOrchestrator
from ..providers import AptProvider, CommandRunner, DockerEngine, DockerRuntimeManager
from .executor import ActionExecutor, HostActions, stop_on_interrupt
from .models import (
    RUN_TRANSITIONS,
    ActionKind,
    ActionResult,
    ActionStatus,
    ProbeOptions,
    RunState,
)
from .planner import build_plan
from .probes import FactProber
from .report import Report, summarize

if TYPE_CHECKING:
    from ..config import AppConfig


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def unconfigured_warnings(manifest: Manifest) -> list[str]:
    """Describe optional secrets that were not supplied."""
    return [
        f"{spec.name}: {key} is not configured; the service will run without it"
        for spec in manifest.services
        for key in spec.unconfigured
    ]


def runtime_install_warnings(results: Sequence[ActionResult]) -> list[str]:
    """Remind the operator to refresh group membership after a runtime install."""
    return [
        f"{name} was installed; log out and back in (or run 'newgrp {name}') "
        f"so your user can use {name} without sudo"
        for name in (
            result.action.key
            for result in results
            if result.action.kind is ActionKind.INSTALL_RUNTIME
            and result.status is ActionStatus.SUCCEEDED
        )
    ]


class ReconcileEngine:
    """Drive one probe, plan, execute and report pass at a time."""

    def __init__(
        self,
        prober: FactProber,
        executor: ActionExecutor,
        *,
        materializer: ComposeMaterializer | None = None,
    ) -> None:
        """Store the collaborators used for each pass."""
        self._prober = prober
        self._executor = executor
        self._materializer = materializer or ComposeMaterializer()
        self._state = RunState.IDLE
        self.history: list[RunState] = [RunState.IDLE]

    @property
    def state(self) -> RunState:
        """Return the current phase."""
        return self._state

    def _transition(self, target: RunState) -> None:
        if target not in RUN_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal run transition {self._state.value} -> {target.value}."
            )
        self._state = target
        self.history.append(target)

    def run(self, manifest: Manifest, *, dry_run: bool = False) -> Report:
        """Reconcile the host against *manifest* and return the report.

        With ``dry_run`` the plan is built and reported without executing it.
        """
        start = time.perf_counter()
        try:
            self._transition(RunState.PROBING)
            fact = self._prober.probe(manifest)

            self._transition(RunState.PLANNING)
            plan = build_plan(manifest, fact, materializer=self._materializer)

            results: tuple[ActionResult, ...] = ()
            if not dry_run:
                self._transition(RunState.EXECUTING)
                with stop_on_interrupt(self._executor):
                    results = self._executor.execute(plan)

            self._transition(RunState.REPORTING)
            report = summarize(
                results,
                probe_errors=fact.probe_errors,
                warnings=[*unconfigured_warnings(manifest), *runtime_install_warnings(results)],
                plan=plan,
                dry_run=dry_run,
                interrupted=not dry_run and self._executor.stop_requested,
                metadata={
                    "duration_ms": _duration_ms(start),
                    "planned_actions": len(plan),
                    "base_dir": manifest.base_dir,
                },
            )
            self._transition(RunState.IDLE)
            return report
        except BaseException:
            # A crashed pass leaves nothing in flight; the next run starts clean.
            self._state = RunState.IDLE
            raise


def _command_runner(config: AppConfig) -> CommandRunner:
    return CommandRunner(use_sudo=config.use_sudo, sudo_bin=config.binaries.sudo)


def build_orchestrator(
    config: AppConfig,
    manifest: Manifest,
    *,
    runner: CommandRunner | None = None,
) -> ServiceOrchestrator:
    """Return an orchestrator for *manifest* using the configured docker binary."""
    return ServiceOrchestrator(
        DockerEngine(runner or _command_runner(config), docker_bin=config.binaries.docker),
        manifest,
        action_timeout=config.timeouts.install,
        status_timeout=config.timeouts.status,
    )


def create_engine(
    config: AppConfig,
    manifest: Manifest,
    *,
    on_result: Callable[[ActionResult], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileEngine:
    """Wire providers from *config* into a ready-to-run engine."""
    runner = _command_runner(config)
    packages = AptProvider(
        runner,
        apt_get_bin=config.binaries.apt_get,
        dpkg_query_bin=config.binaries.dpkg_query,
    )
    runtime = DockerRuntimeManager(runner, docker_bin=config.binaries.docker)
    orchestrator = build_orchestrator(config, manifest, runner=runner)
    prober = FactProber(
        packages,
        runtime,
        orchestrator,
        ProbeOptions(status_timeout=config.timeouts.status, retries=config.probe_retries),
    )
    handler = HostActions(
        manifest,
        packages,
        runtime,
        orchestrator,
        timeout=config.timeouts.install,
    )
    executor = ActionExecutor(handler, retry=config.retry, sleep=sleep, on_result=on_result)
    return ReconcileEngine(prober, executor)


__all__ = [
    "ReconcileEngine",
    "build_orchestrator",
    "create_engine",
    "runtime_install_warnings",
    "unconfigured_warnings",
]
