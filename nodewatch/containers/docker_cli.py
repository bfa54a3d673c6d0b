"""Container status probe over the docker CLI."""

from __future__ import annotations

import json
import re
import subprocess
from datetime import datetime, timezone
from typing import Iterable

import structlog

from ..config import DockerConfig
from ..errors import ContainerActionFailed, RuntimeUnavailable
from ..models import ContainerState, ContainerStats, LogScan, Mount

logger = structlog.get_logger(__name__)

_NOT_FOUND_MARKERS = ("no such object", "no such container")
_DAEMON_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "permission denied while trying to connect",
    "error during connect",
)


def parse_docker_timestamp(value: str | None) -> datetime | None:
    """Parse docker's RFC3339 timestamps (nanosecond precision, trailing Z)."""
    if not value:
        return None
    s = value.strip()
    if s.startswith("0001-01-01"):
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # fromisoformat wants exactly six fraction digits
    m = re.match(r"^(.*T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(.*)$", s)
    if m:
        frac = f".{m.group(2)[:6]:0<6}" if m.group(2) else ""
        s = f"{m.group(1)}{frac}{m.group(3)}"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class DockerCLI:
    """Reports container state and starts/stops/kills containers by name.

    A container that does not exist is a normal negative result. Only an
    unreachable engine raises :class:`RuntimeUnavailable`.
    """

    def __init__(self, config: DockerConfig | None = None):
        self.config = config or DockerConfig()

    def _command(self, *args: str) -> list[str]:
        base = [self.config.binary]
        if self.config.use_sudo:
            base = ["sudo", "-n"] + base
        return base + list(args)

    def _run(self, args: list[str], *, timeout: float | None = None) -> subprocess.CompletedProcess:
        command = self._command(*args)
        deadline = self.config.command_timeout_seconds if timeout is None else timeout
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=deadline,
                check=False,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailable(f"{command[0]} is not installed", cli_missing=True) from e

    def _query(self, args: list[str]) -> subprocess.CompletedProcess:
        """Run a read-only command; timeouts mean the engine is not answering."""
        try:
            result = self._run(args)
        except subprocess.TimeoutExpired as e:
            raise RuntimeUnavailable(
                f"docker {args[0]} did not answer within {self.config.command_timeout_seconds}s"
            ) from e
        if result.returncode != 0 and _looks_like_daemon_down(result.stderr):
            raise RuntimeUnavailable(result.stderr.strip() or "Docker daemon unreachable")
        return result

    def ping(self) -> str:
        """Return the server version, or raise RuntimeUnavailable."""
        result = self._query(["info", "--format", "{{.ServerVersion}}"])
        if result.returncode != 0:
            raise RuntimeUnavailable(result.stderr.strip() or "docker info failed")
        return result.stdout.strip()

    def inspect(self, name: str) -> ContainerState:
        result = self._query(["inspect", "--type", "container", "--format", "{{json .}}", name])
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
                return ContainerState.missing()
            raise RuntimeUnavailable(result.stderr.strip() or f"docker inspect {name} failed")

        try:
            data = json.loads(result.stdout.strip().splitlines()[0])
        except (json.JSONDecodeError, IndexError) as e:
            raise RuntimeUnavailable(f"Unreadable docker inspect output for {name}") from e

        state = data.get("State") if isinstance(data.get("State"), dict) else {}
        mounts = []
        for m in data.get("Mounts") or []:
            if isinstance(m, dict) and m.get("Source") and m.get("Destination"):
                mounts.append(Mount(source=str(m["Source"]), destination=str(m["Destination"])))
        config = data.get("Config") if isinstance(data.get("Config"), dict) else {}

        return ContainerState(
            exists=True,
            running=state.get("Running") is True,
            created_at=parse_docker_timestamp(data.get("Created")),
            container_id=str(data.get("Id") or "")[:12] or None,
            image=config.get("Image"),
            mounts=tuple(mounts),
        )

    def exists(self, name: str) -> bool:
        return self.inspect(name).exists

    def is_running(self, name: str) -> bool:
        return self.inspect(name).running

    def created_at(self, name: str) -> datetime | None:
        return self.inspect(name).created_at

    def resolve_data_mount(self, name: str, destinations: Iterable[str]) -> str | None:
        """Host source path of the first mount whose destination is a candidate."""
        wanted = list(destinations)
        state = self.inspect(name)
        for dest in wanted:
            for mount in state.mounts:
                if mount.destination == dest:
                    return mount.source
        return None

    def _act(self, action: str, name: str, args: list[str], *, timeout: float) -> None:
        logger.info("docker_action", action=action, container=name)
        try:
            result = self._run(args, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise ContainerActionFailed(action, name, f"no answer within {timeout}s", timed_out=True) from e
        if result.returncode != 0:
            if _looks_like_daemon_down(result.stderr):
                raise RuntimeUnavailable(result.stderr.strip())
            raise ContainerActionFailed(action, name, result.stderr.strip() or f"exit code {result.returncode}")

    def start(self, name: str) -> None:
        self._act("start", name, ["start", name], timeout=self.config.command_timeout_seconds + self.config.stop_grace_seconds)

    def stop(self, name: str, timeout_seconds: int) -> None:
        self._act(
            "stop",
            name,
            ["stop", f"--time={int(timeout_seconds)}", name],
            timeout=timeout_seconds + self.config.stop_grace_seconds,
        )

    def restart(self, name: str, timeout_seconds: int) -> None:
        self._act(
            "restart",
            name,
            ["restart", f"--time={int(timeout_seconds)}", name],
            timeout=timeout_seconds + self.config.stop_grace_seconds,
        )

    def kill(self, name: str) -> None:
        self._act("kill", name, ["kill", name], timeout=self.config.command_timeout_seconds)

    def stats(self, names: list[str]) -> dict[str, ContainerStats]:
        """One-shot CPU/memory usage for running containers."""
        if not names:
            return {}
        result = self._query(["stats", "--no-stream", "--format", "{{json .}}", *names])
        if result.returncode != 0:
            logger.warning("docker_stats_failed", containers=names, error=result.stderr.strip())
        out: dict[str, ContainerStats] = {}
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("docker_stats_unparsable", line=line)
                continue
            name = str(row.get("Name") or "")
            if name:
                out[name] = ContainerStats(
                    name=name,
                    cpu_percent=str(row.get("CPUPerc") or "?"),
                    memory_usage=str(row.get("MemUsage") or "?"),
                )
        return out

    def logs_tail(self, name: str, lines: int = 50) -> list[str]:
        result = self._query(["logs", "--tail", str(int(lines)), name])
        if result.returncode != 0:
            logger.warning("docker_logs_failed", container=name, error=result.stderr.strip())
            return []
        # Clients log to stderr as often as stdout.
        combined = (result.stdout or "") + (result.stderr or "")
        return [line for line in combined.splitlines() if line.strip()]

    def scan_logs(self, name: str, keywords: Iterable[str], lines: int = 50) -> LogScan:
        """Count recent log lines mentioning any of the error keywords."""
        tail = self.logs_tail(name, lines)
        pattern = re.compile("|".join(re.escape(k) for k in keywords), re.IGNORECASE)
        return LogScan(lines_scanned=len(tail), error_lines=sum(1 for line in tail if pattern.search(line)))


def _looks_like_daemon_down(stderr: str | None) -> bool:
    s = (stderr or "").lower()
    return any(marker in s for marker in _DAEMON_DOWN_MARKERS)
