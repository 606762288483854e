"""Tests for the docker provider."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from dockhand.providers.docker import DockerEngine, DockerError
from dockhand.providers.process import CommandRunner


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class RecordingRunner(CommandRunner):
    """Command runner that returns one canned result for every call."""

    def __init__(self, outcome: DummyResult | BaseException) -> None:
        """Store the outcome returned (or raised) by :meth:`run`."""
        super().__init__()
        self.outcome = outcome
        self.calls: list[dict[str, Any]] = []

    def run(self, args: Sequence[str], **kwargs: Any) -> Any:  # type: ignore[override]
        self.calls.append({"args": list(args), **kwargs})
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    """Return a compose file path inside a service directory."""
    service_dir = tmp_path / "nodered"
    service_dir.mkdir()
    path = service_dir / "docker-compose.yml"
    path.write_text("services: {}\n", encoding="utf-8")
    return path


def test_container_state_reads_inspect_output() -> None:
    """The raw state string is normalised to lower case."""
    runner = RecordingRunner(DummyResult(stdout="Running\n"))
    engine = DockerEngine(runner)

    assert engine.container_state("edge-nodered", timeout=10) == "running"
    assert runner.calls[0]["args"] == [
        "docker",
        "inspect",
        "--format",
        "{{.State.Status}}",
        "edge-nodered",
    ]
    assert runner.calls[0]["privileged"] is True


def test_container_state_absent_container_returns_none() -> None:
    """A missing container is not an error."""
    runner = RecordingRunner(
        DummyResult(returncode=1, stderr="Error: No such object: edge-nodered")
    )

    assert DockerEngine(runner).container_state("edge-nodered", timeout=10) is None


def test_container_state_daemon_down_is_retryable() -> None:
    """An unreachable daemon is reported as a retryable failure."""
    runner = RecordingRunner(
        DummyResult(
            returncode=1,
            stderr="Cannot connect to the Docker daemon at unix:///var/run/docker.sock.",
        )
    )

    with pytest.raises(DockerError) as excinfo:
        DockerEngine(runner).container_state("edge-nodered", timeout=10)

    assert excinfo.value.retryable is True


def test_compose_up_runs_in_service_directory(compose_file: Path) -> None:
    """``compose up`` targets the project and file and runs next to it."""
    runner = RecordingRunner(DummyResult())
    engine = DockerEngine(runner, docker_bin="/usr/bin/docker")

    engine.compose_up("edge-nodered", compose_file, timeout=60)

    call = runner.calls[0]
    assert call["args"] == [
        "/usr/bin/docker",
        "compose",
        "-p",
        "edge-nodered",
        "-f",
        str(compose_file),
        "up",
        "-d",
        "--remove-orphans",
    ]
    assert call["cwd"] == compose_file.parent
    assert call["timeout"] == 60


@pytest.mark.parametrize(
    ("stderr", "retryable"),
    [
        ("Error response from daemon: pull access denied for nosuch/image", False),
        ("invalid reference format: repository name must be lowercase", False),
        ("yaml: line 3: mapping values are not allowed in this context", False),
        ("Get \"https://registry-1.docker.io/v2/\": net/http: TLS handshake timeout", True),
    ],
)
def test_compose_up_failure_classification(
    compose_file: Path,
    stderr: str,
    retryable: bool,
) -> None:
    """Bad images and definitions are fatal; network trouble is retryable."""
    runner = RecordingRunner(DummyResult(returncode=1, stderr=stderr))

    with pytest.raises(DockerError) as excinfo:
        DockerEngine(runner).compose_up("edge-nodered", compose_file, timeout=60)

    assert excinfo.value.retryable is retryable


def test_timeout_is_retryable(compose_file: Path) -> None:
    """Timeouts are retryable."""
    runner = RecordingRunner(subprocess.TimeoutExpired(["docker"], 60))

    with pytest.raises(DockerError, match="timed out") as excinfo:
        DockerEngine(runner).compose_stop("edge-nodered", compose_file, timeout=60)

    assert excinfo.value.retryable is True


def test_missing_binary_is_fatal() -> None:
    """A missing docker binary cannot succeed on retry."""
    runner = RecordingRunner(FileNotFoundError("docker"))

    with pytest.raises(DockerError) as excinfo:
        DockerEngine(runner).stop_container("edge-nodered", timeout=10)

    assert excinfo.value.retryable is False


def test_list_containers_parses_json_lines() -> None:
    """Each ``docker ps`` JSON line becomes a summary row."""
    lines = [
        {"Names": "edge-nodered", "State": "running", "Status": "Up 2 hours", "Ports": "0.0.0.0:1880->1880/tcp"},
        {"Names": "edge-tailscale", "State": "exited", "Status": "Exited (1) 3 minutes ago", "Ports": ""},
    ]
    runner = RecordingRunner(DummyResult(stdout="\n".join(json.dumps(line) for line in lines) + "\n"))

    summaries = DockerEngine(runner).list_containers(timeout=10)

    assert [summary.name for summary in summaries] == ["edge-nodered", "edge-tailscale"]
    assert summaries[0].ports == "0.0.0.0:1880->1880/tcp"
    assert summaries[1].state == "exited"


def test_list_containers_rejects_malformed_output() -> None:
    """Unparsable output is surfaced as a DockerError."""
    runner = RecordingRunner(DummyResult(stdout="not json\n"))

    with pytest.raises(DockerError, match="malformed"):
        DockerEngine(runner).list_containers(timeout=10)
