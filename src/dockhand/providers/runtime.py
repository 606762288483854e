"""Helpers for detecting and installing the container runtime."""
from __future__ import annotations

import getpass
import logging
import os
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from ..manifest import RuntimeRequirement
from .process import CommandRunner, matches_any, output_of

LOGGER = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+(?:\.\d+){1,2})")
_FATAL_MARKERS = (
    "permission denied",
    "are you root",
    "unable to locate package",
    "has no installation candidate",
    "a password is required",
)


class RuntimeInstallError(RuntimeError):
    """Raised when the runtime cannot be detected or installed."""

    def __init__(self, message: str, *, retryable: bool) -> None:
        """Record whether repeating the installation may succeed."""
        super().__init__(message)
        self.retryable = retryable


@dataclass(slots=True)
class RuntimeVersionInfo:
    """Parsed runtime version details."""

    raw: str
    version: Version


@dataclass(slots=True)
class RuntimeInstallResult:
    """Outcome of an installation run."""

    version: Version
    commands_run: int


@dataclass(slots=True)
class DockerRuntimeManager:
    """Detect the Docker engine version and install it when missing."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    docker_bin: str = "docker"
    user: str | None = None

    def detect_version(self, *, timeout: float) -> RuntimeVersionInfo | None:
        """Return the installed runtime version, or ``None`` when unavailable.

        A missing binary, a non-zero exit or unparsable output all mean "not
        installed". Only a timeout raises, since it may clear on retry.
        """
        try:
            result = self.runner.run([self.docker_bin, "--version"], timeout=timeout)
        except FileNotFoundError:
            return None
        except subprocess.TimeoutExpired as exc:
            raise RuntimeInstallError(
                f"{self.docker_bin} --version timed out after {exc.timeout}s", retryable=True
            ) from exc
        if result.returncode != 0:
            return None
        output = (result.stdout or result.stderr or "").strip()
        version = parse_runtime_version(output)
        if version is None:
            LOGGER.debug("unparsable runtime version output: %r", output)
            return None
        return RuntimeVersionInfo(raw=output, version=version)

    def install(self, requirement: RuntimeRequirement, *, timeout: float) -> RuntimeInstallResult:
        """Run the install commands for *requirement* and confirm the result."""
        user = self.user or _login_user()
        count = 0
        for command in requirement.install_commands:
            args = [part.replace("{user}", user) for part in command]
            self._run_step(args, timeout=timeout)
            count += 1

        detected = self.detect_version(timeout=timeout)
        if detected is None:
            raise RuntimeInstallError(
                f"{requirement.name} install finished but '{self.docker_bin} --version' "
                "reports no usable version.",
                retryable=False,
            )
        if not requirement.is_satisfied_by(detected.version):
            raise RuntimeInstallError(
                f"{requirement.name} {detected.version} installed but "
                f"{requirement.min_version} or newer is required.",
                retryable=False,
            )
        return RuntimeInstallResult(version=detected.version, commands_run=count)

    def _run_step(self, args: Sequence[str], *, timeout: float) -> None:
        label = " ".join(args[:3])
        try:
            result = self.runner.run(args, timeout=timeout, privileged=True)
        except FileNotFoundError as exc:
            raise RuntimeInstallError(f"'{args[0]}' not found: {exc}", retryable=False) from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeInstallError(
                f"'{label}' timed out after {exc.timeout}s", retryable=True
            ) from exc
        if result.returncode != 0:
            message = output_of(result)
            raise RuntimeInstallError(
                f"'{label}' failed (exit {result.returncode}): {message}",
                retryable=not matches_any(
                    f"{result.stdout or ''}\n{result.stderr or ''}", _FATAL_MARKERS
                ),
            )


def parse_runtime_version(output: str) -> Version | None:
    """Extract a comparable version from ``docker --version`` style output."""
    match = _VERSION_RE.search(output or "")
    if match is None:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:
        return None


def _login_user() -> str:
    return os.environ.get("SUDO_USER") or getpass.getuser()


__all__ = [
    "DockerRuntimeManager",
    "RuntimeInstallError",
    "RuntimeInstallResult",
    "RuntimeVersionInfo",
    "parse_runtime_version",
]
