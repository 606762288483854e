"""Fact prober: read-only inspection of the host.

Every probe is isolated: a failure while observing one package or service is
recorded on that item's fact and probing continues with the next one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from ..manifest import Manifest, ServiceSpec
from ..orchestrator import ServiceOrchestrator, ServiceState
from ..providers.docker import DockerError
from ..providers.packages import AptProvider, PackageManagerError
from ..providers.runtime import DockerRuntimeManager, RuntimeInstallError
from .models import HostFact, PackageFact, ProbeOptions, RuntimeFact, ServiceFact

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_PROBE_ERRORS = (PackageManagerError, RuntimeInstallError, DockerError, OSError)


class FactProber:
    """Build a :class:`HostFact` for a manifest."""

    def __init__(
        self,
        packages: AptProvider,
        runtime: DockerRuntimeManager,
        orchestrator: ServiceOrchestrator,
        options: ProbeOptions | None = None,
    ) -> None:
        """Store the providers used to observe the host."""
        self._packages = packages
        self._runtime = runtime
        self._orchestrator = orchestrator
        self._options = options or ProbeOptions()

    def probe(self, manifest: Manifest) -> HostFact:
        """Return a fresh snapshot of the host for *manifest*."""
        packages = {name: self._probe_package(name) for name in manifest.packages}
        runtime = self._probe_runtime(manifest)
        services: dict[str, ServiceFact] = {}
        for spec in manifest.services:
            if not runtime.present and runtime.error is None:
                # Without a runtime there can be no containers.
                services[spec.name] = ServiceFact(spec.name, ServiceState.ABSENT)
                continue
            services[spec.name] = self._probe_service(spec)

        directories: set[Path] = set()
        files: dict[Path, bytes] = {}
        for spec in manifest.services:
            for path in manifest.directories(spec):
                if path.is_dir():
                    directories.add(path)
            compose_path = manifest.compose_path(spec)
            content = _read_bytes(compose_path)
            if content is not None:
                files[compose_path] = content

        return HostFact.build(
            packages=packages,
            runtime=runtime,
            services=services,
            directories=directories,
            files=files,
        )

    # ------------------------------------------------------------------
    def _probe_package(self, name: str) -> PackageFact:
        try:
            installed = self._with_retries(
                lambda: self._packages.is_installed(name, timeout=self._options.status_timeout)
            )
        except _PROBE_ERRORS as exc:
            LOGGER.warning("package probe for %s failed: %s", name, exc)
            return PackageFact(name, installed=None, error=str(exc))
        return PackageFact(name, installed=installed)

    def _probe_runtime(self, manifest: Manifest) -> RuntimeFact:
        name = manifest.runtime.name
        try:
            info = self._with_retries(
                lambda: self._runtime.detect_version(timeout=self._options.status_timeout)
            )
        except _PROBE_ERRORS as exc:
            LOGGER.warning("runtime probe for %s failed: %s", name, exc)
            return RuntimeFact(name, error=str(exc))
        if info is None:
            return RuntimeFact(name)
        return RuntimeFact(name, version=info.version, raw=info.raw)

    def _probe_service(self, spec: ServiceSpec) -> ServiceFact:
        try:
            state = self._with_retries(lambda: self._orchestrator.query_state(spec))
        except _PROBE_ERRORS as exc:
            LOGGER.warning("service probe for %s failed: %s", spec.name, exc)
            return ServiceFact(spec.name, ServiceState.UNKNOWN, error=str(exc))
        return ServiceFact(spec.name, state)

    def _with_retries(self, probe: Callable[[], T]) -> T:
        attempts = max(0, self._options.retries) + 1
        attempt = 1
        while True:
            try:
                return probe()
            except _PROBE_ERRORS as exc:
                if attempt >= attempts or not getattr(exc, "retryable", False):
                    raise
                LOGGER.debug("probe attempt %d failed, retrying: %s", attempt, exc)
                attempt += 1


def _read_bytes(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        LOGGER.warning("could not read %s: %s", path, exc)
        return None


__all__ = ["FactProber"]
