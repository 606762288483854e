"""Action executor: apply a plan strictly in order.

Each action is attempted once. Retryable failures are repeated up to the
configured number of attempts with a bounded backoff. Fatal failures abort
the rest of the plan, as do exhausted retries on installs and service starts
since every later action depends on them. Exhausted retries on a service's
directory or file action only skip the remaining actions of that service.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from ..config import RetryConfig
from ..errors import ActionError, FatalActionError, RetryableActionError
from ..filesystem import ensure_directory, write_text_atomic
from ..manifest import Manifest
from ..orchestrator import ServiceOrchestrator, ServiceState
from ..providers.docker import DockerError
from ..providers.packages import AptProvider, PackageManagerError
from ..providers.runtime import DockerRuntimeManager, RuntimeInstallError
from .models import (
    Action,
    ActionKind,
    ActionResult,
    ActionStatus,
    CreateDirectory,
    InstallPackage,
    InstallRuntime,
    StartService,
    StopService,
    WriteFile,
)

LOGGER = logging.getLogger(__name__)

# Kinds whose failure blocks every later action, even after retries run out.
BLOCKING_KINDS = frozenset(
    {ActionKind.INSTALL_PACKAGE, ActionKind.INSTALL_RUNTIME, ActionKind.START_SERVICE}
)

ActionHandler = Callable[[Action], bool]


class HostActions:
    """Apply single actions to the host; returns ``False`` when nothing changed."""

    def __init__(
        self,
        manifest: Manifest,
        packages: AptProvider,
        runtime: DockerRuntimeManager,
        orchestrator: ServiceOrchestrator,
        *,
        timeout: float = 60.0,
    ) -> None:
        """Store the providers each action kind delegates to."""
        self._manifest = manifest
        self._packages = packages
        self._runtime = runtime
        self._orchestrator = orchestrator
        self._timeout = timeout

    def __call__(self, action: Action) -> bool:
        if isinstance(action, InstallPackage):
            return self._install_package(action)
        if isinstance(action, InstallRuntime):
            return self._install_runtime(action)
        if isinstance(action, CreateDirectory):
            return self._create_directory(action)
        if isinstance(action, WriteFile):
            return self._write_file(action)
        if isinstance(action, StartService):
            return self._start_service(action)
        if isinstance(action, StopService):
            return self._stop_service(action)
        raise FatalActionError(getattr(action, "key", "?"), f"Unsupported action {action!r}.")

    def _install_package(self, action: InstallPackage) -> bool:
        try:
            self._packages.install([action.name], timeout=self._timeout)
        except PackageManagerError as exc:
            raise _classify(action.key, str(exc), exc.retryable) from exc
        return True

    def _install_runtime(self, action: InstallRuntime) -> bool:
        try:
            self._runtime.install(action.requirement, timeout=self._timeout)
        except RuntimeInstallError as exc:
            raise _classify(action.key, str(exc), exc.retryable) from exc
        return True

    def _create_directory(self, action: CreateDirectory) -> bool:
        changed = False
        for path in action.paths:
            try:
                changed = ensure_directory(path, action.mode) or changed
            except OSError as exc:
                raise FatalActionError(action.key, f"cannot create {path}: {exc}") from exc
        return changed

    def _write_file(self, action: WriteFile) -> bool:
        try:
            return write_text_atomic(action.path, action.content, mode=action.mode)
        except OSError as exc:
            raise FatalActionError(action.key, f"cannot write {action.path}: {exc}") from exc

    def _start_service(self, action: StartService) -> bool:
        spec = self._spec(action.key)
        try:
            handle = self._orchestrator.start_service(spec, refresh=action.refresh)
        except DockerError as exc:
            raise _classify(action.key, str(exc), exc.retryable) from exc
        if handle.state is not ServiceState.RUNNING:
            raise RetryableActionError(
                action.key, f"container {handle.container} is {handle.state.value} after start"
            )
        return handle.changed

    def _stop_service(self, action: StopService) -> bool:
        self._spec(action.key)
        try:
            handle = self._orchestrator.stop_service(action.key)
        except DockerError as exc:
            raise _classify(action.key, str(exc), exc.retryable) from exc
        return handle.changed

    def _spec(self, name: str):
        try:
            return self._manifest.service(name)
        except KeyError:
            raise FatalActionError(name, f"service '{name}' is not declared") from None


def _classify(key: str, message: str, retryable: bool) -> ActionError:
    if retryable:
        return RetryableActionError(key, message)
    return FatalActionError(key, message)


class ActionExecutor:
    """Run a plan in order, recording exactly one result per action."""

    def __init__(
        self,
        handler: ActionHandler,
        *,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_result: Callable[[ActionResult], None] | None = None,
    ) -> None:
        """Configure the handler, retry policy and timing hooks."""
        self._handler = handler
        self._retry = retry or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._on_result = on_result
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        """Return ``True`` once a stop has been requested."""
        return self._stop_requested

    def request_stop(self) -> None:
        """Finish the in-flight action, then leave the rest unattempted."""
        self._stop_requested = True

    def execute(self, plan: Sequence[Action]) -> tuple[ActionResult, ...]:
        """Execute *plan* and return one :class:`ActionResult` per action."""
        self._stop_requested = False
        results: list[ActionResult] = []
        try:
            self._execute_into(plan, results)
        except KeyboardInterrupt:
            # Raised outside an action (second SIGINT during bookkeeping).
            self._stop_requested = True
            LOGGER.warning("run interrupted; %d actions left unattempted", len(plan) - len(results))
            results.extend(
                ActionResult(action, ActionStatus.NOT_ATTEMPTED, "run interrupted")
                for action in plan[len(results) :]
            )
        return tuple(results)

    def _execute_into(self, plan: Sequence[Action], results: list[ActionResult]) -> None:
        blocked_services: set[str] = set()
        abort_reason: str | None = None

        for action in plan:
            if abort_reason is None and self._stop_requested:
                abort_reason = "run interrupted"
            if abort_reason is not None:
                self._record(results, ActionResult(action, ActionStatus.NOT_ATTEMPTED, abort_reason))
                continue
            if action.service is not None and action.service in blocked_services:
                self._record(
                    results,
                    ActionResult(
                        action,
                        ActionStatus.NOT_ATTEMPTED,
                        f"an earlier action for '{action.service}' failed",
                    ),
                )
                continue

            result = self._run(action)
            self._record(results, result)
            if result.status is ActionStatus.INTERRUPTED:
                abort_reason = "run interrupted"
            elif result.status is ActionStatus.FAILED:
                if not result.retryable or action.kind in BLOCKING_KINDS or action.service is None:
                    abort_reason = f"aborted after {action.kind.value} '{action.key}' failed"
                else:
                    blocked_services.add(action.service)

    # ------------------------------------------------------------------
    def _record(self, results: list[ActionResult], result: ActionResult) -> None:
        results.append(result)
        LOGGER.info("%s: %s", result.status.value, result.action.describe())
        if self._on_result is not None:
            self._on_result(result)

    def _run(self, action: Action) -> ActionResult:
        start = self._clock()
        attempts = max(1, self._retry.attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                changed = self._handler(action)
            except KeyboardInterrupt:
                self._stop_requested = True
                return ActionResult(
                    action,
                    ActionStatus.INTERRUPTED,
                    error="interrupted while in flight; outcome unknown",
                    attempts=attempt,
                    duration=self._clock() - start,
                )
            except FatalActionError as exc:
                return self._failure(action, exc, attempt, start)
            except RetryableActionError as exc:
                if attempt >= attempts or self._stop_requested:
                    return self._failure(action, exc, attempt, start)
                delay = self._retry.delay_for(attempt)
                LOGGER.warning(
                    "%s failed (attempt %d/%d), retrying in %ss: %s",
                    action.describe(),
                    attempt,
                    attempts,
                    delay,
                    exc.message,
                )
                try:
                    self._sleep(delay)
                except KeyboardInterrupt:
                    self._stop_requested = True
                    return self._failure(action, exc, attempt, start)
                continue
            except Exception as exc:  # noqa: BLE001 - recorded as a fatal result
                LOGGER.exception("unexpected error while running %s", action.describe())
                return self._failure(
                    action,
                    FatalActionError(action.key, f"unexpected error: {exc!r}"),
                    attempt,
                    start,
                )
            status = ActionStatus.SUCCEEDED if changed else ActionStatus.SKIPPED
            return ActionResult(
                action,
                status,
                attempts=attempt,
                duration=self._clock() - start,
            )

    def _failure(
        self,
        action: Action,
        exc: ActionError,
        attempt: int,
        start: float,
    ) -> ActionResult:
        status = ActionStatus.INTERRUPTED if self._stop_requested else ActionStatus.FAILED
        detail = exc.message
        if exc.retryable and not self._stop_requested:
            detail = f"{detail} (gave up after {attempt} attempts)"
        return ActionResult(
            action,
            status,
            error=detail,
            retryable=exc.retryable,
            attempts=attempt,
            duration=self._clock() - start,
        )


@contextmanager
def stop_on_interrupt(executor: ActionExecutor) -> Iterator[None]:
    """Turn the first SIGINT into a graceful stop; a second one interrupts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        if executor.stop_requested:
            raise KeyboardInterrupt
        LOGGER.warning("interrupt received; stopping after the current action")
        executor.request_stop()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


__all__ = [
    "ActionExecutor",
    "ActionHandler",
    "BLOCKING_KINDS",
    "HostActions",
    "stop_on_interrupt",
]
