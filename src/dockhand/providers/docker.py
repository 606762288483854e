"""Docker provider for managing compose services."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .process import CommandRunner, matches_any, output_of

_FATAL_MARKERS = (
    "permission denied",
    "pull access denied",
    "manifest unknown",
    "invalid reference format",
    "repository does not exist",
    "validating",
    "yaml:",
    "is not a compose file",
)


class DockerError(RuntimeError):
    """Raised when docker operations fail."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        """Record whether repeating the operation may succeed."""
        super().__init__(message)
        self.retryable = retryable


@dataclass(slots=True, frozen=True)
class ContainerSummary:
    """One row of ``docker ps`` output."""

    name: str
    state: str
    status: str
    ports: str


@dataclass(slots=True)
class DockerEngine:
    """Thin wrapper around the ``docker`` CLI."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    docker_bin: str = "docker"

    def container_state(self, container: str, *, timeout: float) -> str | None:
        """Return the raw ``State.Status`` of *container*, or ``None`` when absent."""
        args = [self.docker_bin, "inspect", "--format", "{{.State.Status}}", container]
        try:
            result = self._run(args, timeout=timeout, error_prefix=f"docker inspect {container}")
        except DockerError as exc:
            if "no such object" in str(exc).lower() or "no such container" in str(exc).lower():
                return None
            raise
        state = (result.stdout or "").strip().lower()
        return state or None

    def compose_up(
        self,
        project: str,
        compose_file: Path,
        *,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose up -d`` for *project*; changed definitions are recreated."""
        return self._run(
            [*self._compose(project, compose_file), "up", "-d", "--remove-orphans"],
            timeout=timeout,
            cwd=compose_file.parent,
            error_prefix=f"docker compose -p {project} up",
        )

    def compose_stop(
        self,
        project: str,
        compose_file: Path,
        *,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose stop`` for *project*."""
        return self._run(
            [*self._compose(project, compose_file), "stop"],
            timeout=timeout,
            cwd=compose_file.parent,
            error_prefix=f"docker compose -p {project} stop",
        )

    def stop_container(self, container: str, *, timeout: float) -> subprocess.CompletedProcess[str]:
        """Stop *container* directly when no compose file is available."""
        return self._run(
            [self.docker_bin, "stop", container],
            timeout=timeout,
            error_prefix=f"docker stop {container}",
        )

    def list_containers(self, *, timeout: float) -> list[ContainerSummary]:
        """Return every container known to the engine."""
        result = self._run(
            [self.docker_bin, "ps", "--all", "--no-trunc", "--format", "{{json .}}"],
            timeout=timeout,
            error_prefix="docker ps",
        )
        containers: list[ContainerSummary] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                raise DockerError(f"docker ps returned malformed output: {line!r}") from exc
            containers.append(
                ContainerSummary(
                    name=str(row.get("Names", "")).lstrip("/"),
                    state=str(row.get("State", "")).lower(),
                    status=str(row.get("Status", "")),
                    ports=str(row.get("Ports", "")),
                )
            )
        return containers

    # ------------------------------------------------------------------
    def _compose(self, project: str, compose_file: Path) -> list[str]:
        return [self.docker_bin, "compose", "-p", project, "-f", str(compose_file)]

    def _run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        error_prefix: str,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = self.runner.run(args, timeout=timeout, privileged=True, cwd=cwd)
        except FileNotFoundError as exc:
            raise DockerError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DockerError(
                f"{error_prefix} timed out after {exc.timeout}s", retryable=True
            ) from exc
        if result.returncode != 0:
            message = output_of(result)
            text = f"{result.stdout or ''}\n{result.stderr or ''}"
            raise DockerError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                retryable=not matches_any(text, _FATAL_MARKERS),
            )
        return result


__all__ = ["ContainerSummary", "DockerEngine", "DockerError"]
