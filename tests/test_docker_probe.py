from __future__ import annotations

import json
import subprocess
from datetime import datetime, timezone

import pytest

from nodewatch.config import DockerConfig
from nodewatch.containers import docker_cli
from nodewatch.containers.docker_cli import DockerCLI, parse_docker_timestamp
from nodewatch.errors import ContainerActionFailed, RuntimeUnavailable

INSPECT = {
    "Id": "0123456789abcdef0123",
    "Created": "2024-03-01T10:20:30.123456789Z",
    "State": {"Status": "running", "Running": True},
    "Config": {"Image": "registry.gitlab.com/pulsechaincom/go-pulse:latest"},
    "Mounts": [
        {"Type": "bind", "Source": "/srv/jwt", "Destination": "/jwt"},
        {"Type": "bind", "Source": "/srv/blockchain/execution", "Destination": "/blockchain"},
    ],
}


class Recorder:
    def __init__(self, result=None, exc: Exception | None = None):
        self.calls: list[tuple[list[str], float]] = []
        self.result = result
        self.exc = exc

    def __call__(self, command, capture_output, text, timeout, check):
        self.calls.append((command, timeout))
        if self.exc is not None:
            raise self.exc
        return self.result


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _patch(monkeypatch: pytest.MonkeyPatch, recorder: Recorder) -> None:
    monkeypatch.setattr(docker_cli.subprocess, "run", recorder)


def test_parse_docker_timestamp_truncates_nanoseconds() -> None:
    dt = parse_docker_timestamp("2024-03-01T10:20:30.123456789Z")
    assert dt == datetime(2024, 3, 1, 10, 20, 30, 123456, tzinfo=timezone.utc)
    assert parse_docker_timestamp("0001-01-01T00:00:00Z") is None
    assert parse_docker_timestamp("garbage") is None
    assert parse_docker_timestamp(None) is None


def test_inspect_running_container(monkeypatch: pytest.MonkeyPatch) -> None:
    rec = Recorder(_completed(stdout=json.dumps(INSPECT) + "\n"))
    _patch(monkeypatch, rec)

    state = DockerCLI().inspect("go-pulse")

    assert state.exists and state.running
    assert state.container_id == "0123456789ab"
    assert state.image.endswith("go-pulse:latest")
    assert state.created_at.year == 2024
    command, timeout = rec.calls[0]
    assert command == ["docker", "inspect", "--type", "container", "--format", "{{json .}}", "go-pulse"]
    assert timeout == 15


def test_inspect_missing_container_is_negative_result(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(_completed(stderr="Error: No such container: go-pulse", returncode=1)))
    probe = DockerCLI()
    assert probe.exists("go-pulse") is False
    assert probe.is_running("go-pulse") is False
    assert probe.created_at("go-pulse") is None


def test_daemon_down_raises_runtime_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    stderr = "Cannot connect to the Docker daemon at unix:///var/run/docker.sock. Is the docker daemon running?"
    _patch(monkeypatch, Recorder(_completed(stderr=stderr, returncode=1)))
    with pytest.raises(RuntimeUnavailable) as exc:
        DockerCLI().inspect("go-pulse")
    assert exc.value.cli_missing is False


def test_missing_binary_is_cli_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(exc=FileNotFoundError("docker")))
    with pytest.raises(RuntimeUnavailable) as exc:
        DockerCLI().ping()
    assert exc.value.cli_missing is True


def test_query_timeout_is_runtime_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(exc=subprocess.TimeoutExpired(cmd="docker", timeout=15)))
    with pytest.raises(RuntimeUnavailable):
        DockerCLI().is_running("go-pulse")


def test_resolve_data_mount_prefers_candidate_order(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(_completed(stdout=json.dumps(INSPECT))))
    probe = DockerCLI()
    assert probe.resolve_data_mount("go-pulse", ["/data", "/blockchain"]) == "/srv/blockchain/execution"
    assert probe.resolve_data_mount("go-pulse", ["/data"]) is None


def test_stop_passes_time_and_bounded_deadline(monkeypatch: pytest.MonkeyPatch) -> None:
    rec = Recorder(_completed(stdout="lighthouse"))
    _patch(monkeypatch, rec)
    DockerCLI(DockerConfig(stop_grace_seconds=30)).stop("lighthouse", 60)
    command, timeout = rec.calls[0]
    assert command == ["docker", "stop", "--time=60", "lighthouse"]
    assert timeout == 90


def test_stop_timeout_is_soft_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(exc=subprocess.TimeoutExpired(cmd="docker", timeout=90)))
    with pytest.raises(ContainerActionFailed) as exc:
        DockerCLI().stop("lighthouse", 60)
    assert exc.value.timed_out is True
    assert exc.value.action == "stop"


def test_start_failure_raises_action_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, Recorder(_completed(stderr="Error response from daemon: port is already allocated", returncode=1)))
    with pytest.raises(ContainerActionFailed) as exc:
        DockerCLI().start("go-pulse")
    assert exc.value.timed_out is False
    assert "port is already allocated" in str(exc.value)


def test_use_sudo_prefixes_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    rec = Recorder(_completed())
    _patch(monkeypatch, rec)
    DockerCLI(DockerConfig(use_sudo=True)).kill("go-pulse")
    assert rec.calls[0][0] == ["sudo", "-n", "docker", "kill", "go-pulse"]


def test_stats_parses_json_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = "\n".join(
        [
            json.dumps({"Name": "go-pulse", "CPUPerc": "12.50%", "MemUsage": "6.1GiB / 31GiB"}),
            "not json",
            json.dumps({"Name": "lighthouse", "CPUPerc": "3.00%", "MemUsage": "2GiB / 31GiB"}),
        ]
    )
    _patch(monkeypatch, Recorder(_completed(stdout=lines)))
    stats = DockerCLI().stats(["go-pulse", "lighthouse"])
    assert stats["go-pulse"].cpu_percent == "12.50%"
    assert stats["lighthouse"].memory_usage == "2GiB / 31GiB"


def test_scan_logs_counts_error_keywords(monkeypatch: pytest.MonkeyPatch) -> None:
    stdout = "INFO Imported new chain segment\nERROR peer dropped\n"
    stderr = "WARN slow block\nFatal: state missing\n"
    _patch(monkeypatch, Recorder(_completed(stdout=stdout, stderr=stderr)))
    scan = DockerCLI().scan_logs("go-pulse", ["error", "exception", "fatal"], 50)
    assert scan.lines_scanned == 4
    assert scan.error_lines == 2
