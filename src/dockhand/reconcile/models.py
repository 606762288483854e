"""Data models shared by the probe, plan, execute and report stages."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import ClassVar, Union

from packaging.version import Version

from ..errors import ProbeError
from ..manifest import RuntimeRequirement
from ..orchestrator import ServiceState


class ActionKind(str, Enum):
    """Discriminator for the :data:`Action` variants."""

    INSTALL_PACKAGE = "install-package"
    INSTALL_RUNTIME = "install-runtime"
    CREATE_DIRECTORY = "create-directory"
    WRITE_FILE = "write-file"
    START_SERVICE = "start-service"
    STOP_SERVICE = "stop-service"


class ActionStatus(str, Enum):
    """Outcome recorded for every planned action."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not-attempted"
    INTERRUPTED = "interrupted"

    @property
    def is_success(self) -> bool:
        """Return ``True`` when the desired state holds after the action."""
        return self in {ActionStatus.SUCCEEDED, ActionStatus.SKIPPED}


class RunState(str, Enum):
    """Phases of a reconciliation run."""

    IDLE = "idle"
    PROBING = "probing"
    PLANNING = "planning"
    EXECUTING = "executing"
    REPORTING = "reporting"


RUN_TRANSITIONS: Mapping[RunState, frozenset[RunState]] = MappingProxyType(
    {
        RunState.IDLE: frozenset({RunState.PROBING}),
        RunState.PROBING: frozenset({RunState.PLANNING}),
        RunState.PLANNING: frozenset({RunState.EXECUTING, RunState.REPORTING}),
        RunState.EXECUTING: frozenset({RunState.REPORTING}),
        RunState.REPORTING: frozenset({RunState.IDLE}),
    }
)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InstallPackage:
    """Install one OS package."""

    name: str
    kind: ClassVar[ActionKind] = ActionKind.INSTALL_PACKAGE

    @property
    def key(self) -> str:
        return self.name

    @property
    def service(self) -> str | None:
        return None

    def describe(self) -> str:
        return f"install package {self.name}"


@dataclass(frozen=True, slots=True)
class InstallRuntime:
    """Install the container runtime."""

    requirement: RuntimeRequirement
    kind: ClassVar[ActionKind] = ActionKind.INSTALL_RUNTIME

    @property
    def key(self) -> str:
        return self.requirement.name

    @property
    def service(self) -> str | None:
        return None

    def describe(self) -> str:
        return f"install {self.requirement.name} >= {self.requirement.min_version}"


@dataclass(frozen=True, slots=True)
class CreateDirectory:
    """Create the missing directories of a service."""

    service_name: str
    paths: tuple[Path, ...]
    mode: int = 0o755
    kind: ClassVar[ActionKind] = ActionKind.CREATE_DIRECTORY

    @property
    def key(self) -> str:
        return self.service_name

    @property
    def service(self) -> str | None:
        return self.service_name

    def describe(self) -> str:
        joined = ", ".join(str(path) for path in self.paths)
        return f"create directory {joined} (mode {self.mode:03o})"


@dataclass(frozen=True, slots=True)
class WriteFile:
    """Write a service's compose definition."""

    service_name: str
    path: Path
    content: str = field(repr=False)
    mode: int = 0o644
    kind: ClassVar[ActionKind] = ActionKind.WRITE_FILE

    @property
    def key(self) -> str:
        return self.service_name

    @property
    def service(self) -> str | None:
        return self.service_name

    def describe(self) -> str:
        size = len(self.content.encode("utf-8"))
        return f"write {self.path} ({size} bytes, mode {self.mode:03o})"


@dataclass(frozen=True, slots=True)
class StartService:
    """Bring a service up; ``refresh`` re-applies a changed definition."""

    service_name: str
    refresh: bool = False
    kind: ClassVar[ActionKind] = ActionKind.START_SERVICE

    @property
    def key(self) -> str:
        return self.service_name

    @property
    def service(self) -> str | None:
        return self.service_name

    def describe(self) -> str:
        verb = "refresh" if self.refresh else "start"
        return f"{verb} service {self.service_name}"


@dataclass(frozen=True, slots=True)
class StopService:
    """Stop a running service declared as disabled."""

    service_name: str
    kind: ClassVar[ActionKind] = ActionKind.STOP_SERVICE

    @property
    def key(self) -> str:
        return self.service_name

    @property
    def service(self) -> str | None:
        return self.service_name

    def describe(self) -> str:
        return f"stop service {self.service_name}"


Action = Union[
    InstallPackage,
    InstallRuntime,
    CreateDirectory,
    WriteFile,
    StartService,
    StopService,
]

HOST_ACTION_KINDS = frozenset({ActionKind.INSTALL_PACKAGE, ActionKind.INSTALL_RUNTIME})


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome of one action after a pass."""

    action: Action
    status: ActionStatus
    error: str | None = None
    retryable: bool = False
    attempts: int = 0
    duration: float = 0.0

    @property
    def key(self) -> str:
        return self.action.key

    @property
    def is_failure(self) -> bool:
        return self.status in {ActionStatus.FAILED, ActionStatus.INTERRUPTED}


# ---------------------------------------------------------------------------
# Host facts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PackageFact:
    """Whether a package is installed; ``None`` when the probe failed."""

    name: str
    installed: bool | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RuntimeFact:
    """Observed runtime version; ``None`` means not installed."""

    name: str
    version: Version | None = None
    raw: str | None = None
    error: str | None = None

    @property
    def present(self) -> bool:
        return self.version is not None


@dataclass(frozen=True, slots=True)
class ServiceFact:
    """Observed state of one service."""

    name: str
    state: ServiceState
    error: str | None = None


def _frozen(mapping: Mapping[object, object] | None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True, slots=True)
class HostFact:
    """Snapshot of observed host state, rebuilt on every pass."""

    packages: Mapping[str, PackageFact] = field(default_factory=lambda: _frozen(None))
    runtime: RuntimeFact | None = None
    services: Mapping[str, ServiceFact] = field(default_factory=lambda: _frozen(None))
    directories: frozenset[Path] = frozenset()
    files: Mapping[Path, bytes] = field(default_factory=lambda: _frozen(None))

    @classmethod
    def empty(cls) -> HostFact:
        """Return a fact describing a host where nothing is installed."""
        return cls()

    @classmethod
    def build(
        cls,
        *,
        packages: Mapping[str, PackageFact] | None = None,
        runtime: RuntimeFact | None = None,
        services: Mapping[str, ServiceFact] | None = None,
        directories: frozenset[Path] | set[Path] = frozenset(),
        files: Mapping[Path, bytes] | None = None,
    ) -> HostFact:
        """Create a fact with read-only copies of the supplied collections."""
        return cls(
            packages=_frozen(packages),
            runtime=runtime,
            services=_frozen(services),
            directories=frozenset(directories),
            files=_frozen(files),
        )

    def is_installed(self, package: str) -> bool:
        fact = self.packages.get(package)
        return bool(fact and fact.installed)

    def runtime_version(self) -> Version | None:
        return self.runtime.version if self.runtime else None

    def service_state(self, name: str) -> ServiceState:
        fact = self.services.get(name)
        return fact.state if fact else ServiceState.ABSENT

    def file_bytes(self, path: Path) -> bytes | None:
        return self.files.get(path)

    @property
    def probe_errors(self) -> tuple[ProbeError, ...]:
        """Return every per-item probe failure recorded in this fact."""
        errors: list[ProbeError] = []
        for package in self.packages.values():
            if package.error:
                errors.append(ProbeError(package.name, package.error))
        if self.runtime and self.runtime.error:
            errors.append(ProbeError(self.runtime.name, self.runtime.error))
        for service in self.services.values():
            if service.error:
                errors.append(ProbeError(service.name, service.error))
        return tuple(errors)


@dataclass(frozen=True, slots=True)
class ProbeOptions:
    """Runtime tunables for probing."""

    status_timeout: float = 10.0
    retries: int = 2


__all__ = [
    "Action",
    "ActionKind",
    "ActionResult",
    "ActionStatus",
    "CreateDirectory",
    "HOST_ACTION_KINDS",
    "HostFact",
    "InstallPackage",
    "InstallRuntime",
    "PackageFact",
    "ProbeOptions",
    "RUN_TRANSITIONS",
    "RunState",
    "RuntimeFact",
    "ServiceFact",
    "StartService",
    "StopService",
    "WriteFile",
]
