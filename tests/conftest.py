"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from packaging.version import Version

from dockhand.config import RetryConfig
from dockhand.manifest import Manifest, RuntimeRequirement, ServiceSpec, load_manifest
from dockhand.orchestrator import ServiceHandle, ServiceListing, ServiceState
from dockhand.providers.runtime import RuntimeVersionInfo
from dockhand.reconcile import (
    ActionExecutor,
    ActionResult,
    FactProber,
    HostActions,
    ProbeOptions,
    ReconcileEngine,
)


@pytest.fixture
def manifest_data(tmp_path: Path) -> dict[str, object]:
    """Return a three-service manifest rooted under the temporary path."""
    return {
        "base_dir": str(tmp_path / "stack"),
        "container_prefix": "edge",
        "network": "edge-network",
        "packages": ["curl", "nano", "git"],
        "runtime": {"name": "docker", "min_version": "20.10", "install": [["true"]]},
        "services": [
            {
                "name": "nodered",
                "image": "nodered/node-red:latest",
                "ports": ["1880:1880"],
                "volumes": ["./data:/data"],
                "env": {"TZ": "UTC"},
            },
            {
                "name": "restreamer",
                "image": "datarhei/restreamer:latest",
                "ports": ["8080:8080"],
                "volumes": ["./data:/restreamer/data"],
                "env": {
                    "RS_USERNAME": "admin",
                    "RS_PASSWORD": {"secret": "RESTREAMER_PASSWORD", "optional": True},
                },
            },
            {
                "name": "tailscale",
                "image": "tailscale/tailscale:latest",
                "cap_add": ["NET_ADMIN", "NET_RAW"],
                "volumes": ["./state:/state", "/dev/net/tun:/dev/net/tun"],
                "env": {
                    "TS_STATE_DIR": "/state",
                    "TS_AUTHKEY": {"secret": "TS_AUTHKEY", "optional": True},
                },
            },
        ],
    }


@pytest.fixture
def manifest(manifest_data: dict[str, object]) -> Manifest:
    """Return the loaded three-service manifest without any secrets set."""
    return load_manifest(manifest_data, env={})


class FakeHost:
    """In-memory host shared by the fake package, runtime and service providers.

    ``fail(operation, key, *errors)`` queues exceptions raised by the next
    calls of *operation* for *key*; operations are ``is_installed``,
    ``install``, ``detect_version``, ``install_runtime``, ``query_state``,
    ``start`` and ``stop``.
    """

    def __init__(self, manifest: Manifest) -> None:
        """Start with nothing installed and no containers."""
        self.manifest = manifest
        self.installed: set[str] = set()
        self.runtime_version: Version | None = None
        self.states: dict[str, ServiceState] = {}
        self.failures: dict[tuple[str, str], list[BaseException]] = {}
        self.calls: list[tuple[str, str]] = []
        self.packages = FakePackages(self)
        self.runtime = FakeRuntime(self)
        self.orchestrator = FakeOrchestrator(self)

    def fail(self, operation: str, key: str, *errors: BaseException) -> None:
        """Queue *errors* for *operation* on *key*."""
        self.failures.setdefault((operation, key), []).extend(errors)

    def converge(self) -> None:
        """Mark everything in the manifest as installed and running."""
        self.installed.update(self.manifest.packages)
        self.runtime_version = Version("24.0.7")
        for spec in self.manifest.services:
            self.states[spec.name] = ServiceState.RUNNING

    def record(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        queue = self.failures.get((operation, key))
        if queue:
            raise queue.pop(0)


class FakePackages:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def is_installed(self, name: str, *, timeout: float) -> bool:
        self.host.record("is_installed", name)
        return name in self.host.installed

    def install(self, names: list[str], *, timeout: float) -> None:
        for name in names:
            self.host.record("install", name)
            self.host.installed.add(name)


class FakeRuntime:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def detect_version(self, *, timeout: float) -> RuntimeVersionInfo | None:
        self.host.record("detect_version", "docker")
        if self.host.runtime_version is None:
            return None
        return RuntimeVersionInfo(f"Docker version {self.host.runtime_version}", self.host.runtime_version)

    def install(self, requirement: RuntimeRequirement, *, timeout: float) -> None:
        self.host.record("install_runtime", requirement.name)
        self.host.runtime_version = Version("24.0.7")


class FakeOrchestrator:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def query_state(self, spec: ServiceSpec) -> ServiceState:
        self.host.record("query_state", spec.name)
        return self.host.states.get(spec.name, ServiceState.ABSENT)

    def start_service(self, spec: ServiceSpec, *, refresh: bool = False) -> ServiceHandle:
        container = self.host.manifest.container_name(spec)
        if not refresh and self.host.states.get(spec.name) is ServiceState.RUNNING:
            return ServiceHandle(spec.name, container, ServiceState.RUNNING, changed=False)
        self.host.record("start", spec.name)
        self.host.states[spec.name] = ServiceState.RUNNING
        return ServiceHandle(spec.name, container, ServiceState.RUNNING, changed=True)

    def stop_service(self, name: str) -> ServiceHandle:
        spec = self.host.manifest.service(name)
        container = self.host.manifest.container_name(spec)
        if self.host.states.get(name) is not ServiceState.RUNNING:
            return ServiceHandle(name, container, self.host.states.get(name, ServiceState.ABSENT), changed=False)
        self.host.record("stop", name)
        self.host.states[name] = ServiceState.STOPPED
        return ServiceHandle(name, container, ServiceState.STOPPED, changed=True)

    def list_services(self) -> list[ServiceListing]:
        self.host.record("list_services", "*")
        rows: list[ServiceListing] = []
        for spec in self.host.manifest.services:
            state = self.host.states.get(spec.name, ServiceState.ABSENT)
            status = "Up 5 minutes" if state is ServiceState.RUNNING else ""
            rows.append(
                ServiceListing(spec.name, self.host.manifest.container_name(spec), state, status, "")
            )
        return rows


class FakeClock:
    """Monotonic clock advanced only by :meth:`sleep`."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def host(manifest: Manifest) -> FakeHost:
    """Return an empty fake host for the three-service manifest."""
    return FakeHost(manifest)


@pytest.fixture
def clock() -> FakeClock:
    """Return a fake clock whose ``sleep`` advances time instantly."""
    return FakeClock()


@pytest.fixture
def make_engine(manifest: Manifest, host: FakeHost, clock: FakeClock) -> Callable[..., ReconcileEngine]:
    """Return a factory building an engine wired to the fake host."""

    def _make(
        *,
        retry: RetryConfig | None = None,
        probe_retries: int = 2,
        target: Manifest | None = None,
        on_result: Callable[[ActionResult], None] | None = None,
    ) -> ReconcileEngine:
        active = target or manifest
        prober = FactProber(
            host.packages,  # type: ignore[arg-type]
            host.runtime,  # type: ignore[arg-type]
            host.orchestrator,  # type: ignore[arg-type]
            ProbeOptions(status_timeout=1.0, retries=probe_retries),
        )
        handler = HostActions(
            active,
            host.packages,  # type: ignore[arg-type]
            host.runtime,  # type: ignore[arg-type]
            host.orchestrator,  # type: ignore[arg-type]
            timeout=1.0,
        )
        executor = ActionExecutor(
            handler,
            retry=retry or RetryConfig(),
            sleep=clock.sleep,
            clock=clock,
            on_result=on_result,
        )
        return ReconcileEngine(prober, executor)

    return _make
