"""Providers wrapping the external tools dockhand drives."""
from __future__ import annotations

from .docker import ContainerSummary, DockerEngine, DockerError
from .packages import AptProvider, PackageManagerError
from .process import CommandRunner
from .runtime import (
    DockerRuntimeManager,
    RuntimeInstallError,
    RuntimeInstallResult,
    RuntimeVersionInfo,
)

__all__ = [
    "AptProvider",
    "CommandRunner",
    "ContainerSummary",
    "DockerEngine",
    "DockerError",
    "DockerRuntimeManager",
    "PackageManagerError",
    "RuntimeInstallError",
    "RuntimeInstallResult",
    "RuntimeVersionInfo",
]
