"""Subprocess execution shared by the providers."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandRunner:
    """Run external commands with a timeout and an optional ``sudo`` prefix."""

    use_sudo: bool = False
    sudo_bin: str = "sudo"

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        privileged: bool = False,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* and return the completed process without checking its exit code.

        ``FileNotFoundError`` and ``subprocess.TimeoutExpired`` propagate so
        callers can classify them.
        """
        command = list(args)
        process_env: dict[str, str] | None = None
        if privileged and self._needs_sudo():
            extra = [f"{key}={value}" for key, value in sorted((env or {}).items())]
            command = [self.sudo_bin, *(["env", *extra] if extra else []), *command]
        elif env:
            process_env = {**os.environ, **env}
        LOGGER.debug("running %s (timeout=%ss)", " ".join(command), timeout)
        return subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            cwd=str(cwd) if cwd is not None else None,
            env=process_env,
        )

    def _needs_sudo(self) -> bool:
        return self.use_sudo and os.geteuid() != 0


def output_of(result: subprocess.CompletedProcess[str]) -> str:
    """Return the most useful single-line description of *result*'s output."""
    stderr = (getattr(result, "stderr", "") or "").strip()
    stdout = (getattr(result, "stdout", "") or "").strip()
    message = stderr or stdout or "no output"
    lines = [line for line in message.splitlines() if line.strip()]
    return lines[-1].strip() if lines else message


def matches_any(text: str, markers: Sequence[str]) -> bool:
    """Return ``True`` when *text* contains any of *markers* (case-insensitive)."""
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


__all__ = ["CommandRunner", "matches_any", "output_of"]
