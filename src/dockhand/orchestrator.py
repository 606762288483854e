"""Service orchestration over the Docker compose control surface.

The orchestrator does not manage container lifecycles itself; it translates
manifest services into ``docker compose`` invocations and classifies what the
engine reports.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .manifest import Manifest, ServiceSpec
from .providers.docker import DockerEngine, DockerError

_STOPPED_STATES = {"created", "exited", "paused", "restarting", "dead", "removing"}


class ServiceState(str, Enum):
    """Observed state of a declared service."""

    RUNNING = "running"
    STOPPED = "stopped"
    ABSENT = "absent"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class ServiceHandle:
    """Result of a start or stop request."""

    name: str
    container: str
    state: ServiceState
    changed: bool


@dataclass(frozen=True, slots=True)
class ServiceListing:
    """Row of the bulk service listing."""

    name: str
    container: str
    state: ServiceState
    status: str
    ports: str


def classify_state(raw: str | None) -> ServiceState:
    """Map a docker ``State.Status`` value onto :class:`ServiceState`."""
    if raw is None:
        return ServiceState.ABSENT
    value = raw.strip().lower()
    if value == "running":
        return ServiceState.RUNNING
    if value in _STOPPED_STATES:
        return ServiceState.STOPPED
    return ServiceState.UNKNOWN


class ServiceOrchestrator:
    """Start, stop and query the services declared in a manifest."""

    def __init__(
        self,
        engine: DockerEngine,
        manifest: Manifest,
        *,
        action_timeout: float = 60.0,
        status_timeout: float = 10.0,
    ) -> None:
        """Bind the orchestrator to *engine* and *manifest*."""
        self._engine = engine
        self._manifest = manifest
        self._action_timeout = action_timeout
        self._status_timeout = status_timeout

    def query_state(self, spec: ServiceSpec) -> ServiceState:
        """Return the state of *spec*; engine failures raise :class:`DockerError`."""
        raw = self._engine.container_state(
            self._manifest.container_name(spec), timeout=self._status_timeout
        )
        return classify_state(raw)

    def status(self, name: str) -> ServiceState:
        """Return the state of service *name*, or ``UNKNOWN`` if it cannot be queried."""
        spec = self._manifest.service(name)
        try:
            return self.query_state(spec)
        except DockerError:
            return ServiceState.UNKNOWN

    def start_service(self, spec: ServiceSpec, *, refresh: bool = False) -> ServiceHandle:
        """Bring *spec* up; an already running service is left alone unless *refresh*."""
        container = self._manifest.container_name(spec)
        if not refresh and self.query_state(spec) is ServiceState.RUNNING:
            return ServiceHandle(spec.name, container, ServiceState.RUNNING, changed=False)
        self._engine.compose_up(
            container,
            self._manifest.compose_path(spec),
            timeout=self._action_timeout,
        )
        return ServiceHandle(spec.name, container, self.query_state(spec), changed=True)

    def stop_service(self, name: str) -> ServiceHandle:
        """Stop service *name*; stopping an absent or stopped service is a no-op."""
        spec = self._manifest.service(name)
        container = self._manifest.container_name(spec)
        state = self.query_state(spec)
        if state in {ServiceState.ABSENT, ServiceState.STOPPED}:
            return ServiceHandle(name, container, state, changed=False)
        compose_file = self._manifest.compose_path(spec)
        if compose_file.is_file():
            self._engine.compose_stop(container, compose_file, timeout=self._action_timeout)
        else:
            self._engine.stop_container(container, timeout=self._action_timeout)
        return ServiceHandle(name, container, self.query_state(spec), changed=True)

    def list_services(self) -> list[ServiceListing]:
        """Return one row per declared service, in manifest order."""
        by_name = {
            summary.name: summary
            for summary in self._engine.list_containers(timeout=self._status_timeout)
        }
        rows: list[ServiceListing] = []
        for spec in self._manifest.services:
            container = self._manifest.container_name(spec)
            summary = by_name.get(container)
            if summary is None:
                rows.append(ServiceListing(spec.name, container, ServiceState.ABSENT, "", ""))
                continue
            rows.append(
                ServiceListing(
                    spec.name,
                    container,
                    classify_state(summary.state),
                    summary.status,
                    summary.ports,
                )
            )
        return rows


__all__ = [
    "ServiceHandle",
    "ServiceListing",
    "ServiceOrchestrator",
    "ServiceState",
    "classify_state",
]
