"""Plan builder: diff desired state against a :class:`HostFact`.

Plans are ordered: package installs, then the runtime install, then each
service's directory, file and lifecycle actions in manifest order. Nothing is
emitted for state that already holds, so planning again after a successful
pass yields an empty plan.
"""

from __future__ import annotations

from ..compose import ComposeMaterializer
from ..manifest import Manifest, ServiceSpec
from ..orchestrator import ServiceState
from .models import (
    Action,
    CreateDirectory,
    HostFact,
    InstallPackage,
    InstallRuntime,
    StartService,
    StopService,
    WriteFile,
)


def build_plan(
    manifest: Manifest,
    fact: HostFact,
    *,
    materializer: ComposeMaterializer | None = None,
) -> tuple[Action, ...]:
    """Return the ordered actions needed to move *fact* to *manifest*."""
    renderer = materializer or ComposeMaterializer()
    actions: list[Action] = []

    for name in manifest.packages:
        if not fact.is_installed(name):
            actions.append(InstallPackage(name))

    # An unreadable runtime is reported as a probe error, not reinstalled.
    runtime_unknown = fact.runtime is not None and fact.runtime.error is not None
    if not runtime_unknown and not manifest.runtime.is_satisfied_by(fact.runtime_version()):
        actions.append(InstallRuntime(manifest.runtime))

    for spec in manifest.services:
        actions.extend(_service_actions(manifest, spec, fact, renderer))

    return tuple(actions)


def _service_actions(
    manifest: Manifest,
    spec: ServiceSpec,
    fact: HostFact,
    renderer: ComposeMaterializer,
) -> list[Action]:
    actions: list[Action] = []

    missing = tuple(path for path in manifest.directories(spec) if path not in fact.directories)
    if missing:
        actions.append(CreateDirectory(spec.name, missing))

    compose_path = manifest.compose_path(spec)
    desired = renderer.render(manifest, spec)
    definition_changed = fact.file_bytes(compose_path) != desired.encode("utf-8")
    if definition_changed:
        actions.append(
            WriteFile(spec.name, compose_path, desired, mode=renderer.file_mode(spec))
        )

    state = fact.service_state(spec.name)
    if not spec.enabled:
        if state is ServiceState.RUNNING:
            actions.append(StopService(spec.name))
        return actions

    if state is not ServiceState.RUNNING:
        actions.append(StartService(spec.name))
    elif definition_changed:
        actions.append(StartService(spec.name, refresh=True))
    return actions


__all__ = ["build_plan"]
