"""Debian/Ubuntu package manager provider (``apt-get`` / ``dpkg-query``)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

from .process import CommandRunner, matches_any, output_of

_RETRYABLE_MARKERS = (
    "could not get lock",
    "unable to acquire the dpkg frontend lock",
    "unable to lock",
    "temporary failure resolving",
    "failed to fetch",
    "connection timed out",
)
_FATAL_MARKERS = (
    "unable to locate package",
    "has no installation candidate",
    "permission denied",
    "are you root",
    "a terminal is required",
    "a password is required",
)
_NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageManagerError(RuntimeError):
    """Raised when querying or installing packages fails."""

    def __init__(self, message: str, *, retryable: bool) -> None:
        """Record whether repeating the operation may succeed."""
        super().__init__(message)
        self.retryable = retryable


@dataclass(slots=True)
class AptProvider:
    """Query and install OS packages."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    apt_get_bin: str = "apt-get"
    dpkg_query_bin: str = "dpkg-query"
    _index_refreshed: bool = field(default=False, init=False)

    def is_installed(self, name: str, *, timeout: float) -> bool:
        """Return ``True`` when *name* is installed according to dpkg."""
        args = [self.dpkg_query_bin, "-W", "-f=${Status}", name]
        try:
            result = self.runner.run(args, timeout=timeout)
        except FileNotFoundError as exc:
            raise PackageManagerError(
                f"{self.dpkg_query_bin} not found: {exc}", retryable=False
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise PackageManagerError(
                f"{self.dpkg_query_bin} timed out after {exc.timeout}s", retryable=True
            ) from exc
        if result.returncode != 0:
            return False
        return "install ok installed" in (result.stdout or "")

    def install(self, names: Sequence[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
        """Install *names*, refreshing the package index once per provider."""
        if not names:
            raise ValueError("At least one package name is required.")
        if not self._index_refreshed:
            self._apt(["update"], timeout=timeout, error_prefix="apt-get update")
            self._index_refreshed = True
        return self._apt(
            ["install", "-y", "-q", *names],
            timeout=timeout,
            error_prefix=f"apt-get install {' '.join(names)}",
        )

    def _apt(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.apt_get_bin, *args]
        try:
            result = self.runner.run(
                command,
                timeout=timeout,
                privileged=True,
                env=_NONINTERACTIVE_ENV,
            )
        except FileNotFoundError as exc:
            raise PackageManagerError(
                f"{self.apt_get_bin} not found: {exc}", retryable=False
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise PackageManagerError(
                f"{error_prefix} timed out after {exc.timeout}s", retryable=True
            ) from exc
        if result.returncode != 0:
            message = output_of(result)
            raise PackageManagerError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                retryable=classify_apt_failure(result),
            )
        return result


def classify_apt_failure(result: subprocess.CompletedProcess[str]) -> bool:
    """Return ``True`` when a failed apt invocation is worth retrying."""
    text = f"{result.stdout or ''}\n{result.stderr or ''}"
    if matches_any(text, _RETRYABLE_MARKERS):
        return True
    return not matches_any(text, _FATAL_MARKERS)


__all__ = ["AptProvider", "PackageManagerError", "classify_apt_failure"]
