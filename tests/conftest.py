from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
from structlog.testing import capture_logs

from nodewatch.config import NodeWatchConfig
from nodewatch.errors import ContainerActionFailed, RuntimeUnavailable
from nodewatch.health.collector import ObservationCollector
from nodewatch.health.rpc import ConsensusClient, ExecutionClient
from nodewatch.models import ContainerState, ContainerStats, LogScan, ResourceSnapshot

NOW = 1_700_000_000


class FakeProbe:
    """In-memory stand-in for DockerCLI that records every action."""

    def __init__(self, states: dict[str, ContainerState]):
        self.states = dict(states)
        self.actions: list[tuple] = []
        self.ping_error: RuntimeUnavailable | None = None
        self.fail_start: set[str] = set()
        self.fail_stop: set[str] = set()
        self.fail_kill: set[str] = set()
        self.stays_down: set[str] = set()

    def ping(self) -> str:
        if self.ping_error is not None:
            raise self.ping_error
        return "24.0.7"

    def inspect(self, name: str) -> ContainerState:
        return self.states.get(name, ContainerState.missing())

    def is_running(self, name: str) -> bool:
        return self.inspect(name).running

    def resolve_data_mount(self, name: str, destinations) -> str | None:
        mounts = self.inspect(name).mounts
        for dest in destinations:
            for mount in mounts:
                if mount.destination == dest:
                    return mount.source
        return None

    def _set_running(self, name: str, running: bool) -> None:
        self.states[name] = ContainerState(exists=True, running=running)

    def start(self, name: str) -> None:
        self.actions.append(("start", name))
        if name in self.fail_start:
            raise ContainerActionFailed("start", name, "boom")
        if name not in self.stays_down:
            self._set_running(name, True)

    def stop(self, name: str, timeout_seconds: int) -> None:
        self.actions.append(("stop", name, timeout_seconds))
        if name in self.fail_stop:
            raise ContainerActionFailed("stop", name, "timed out", timed_out=True)
        self._set_running(name, False)

    def kill(self, name: str) -> None:
        self.actions.append(("kill", name))
        if name in self.fail_kill:
            raise ContainerActionFailed("kill", name, "refused")
        self._set_running(name, False)

    def restart(self, name: str, timeout_seconds: int) -> None:
        self.actions.append(("restart", name, timeout_seconds))
        if name in self.fail_start:
            raise ContainerActionFailed("restart", name, "boom")
        self._set_running(name, name not in self.stays_down)

    def stats(self, names: list[str]) -> dict[str, ContainerStats]:
        return {n: ContainerStats(name=n, cpu_percent="1.00%", memory_usage="1GiB / 8GiB") for n in names}

    def logs_tail(self, name: str, lines: int = 50) -> list[str]:
        return ["Fatal: database corrupted", "INFO imported block"]

    def scan_logs(self, name: str, keywords, lines: int = 50) -> LogScan:
        return LogScan(lines_scanned=2, error_lines=1)


def running_pair() -> dict[str, ContainerState]:
    return {
        "go-pulse": ContainerState(exists=True, running=True),
        "lighthouse": ContainerState(exists=True, running=True),
    }


def execution_handler(
    *,
    syncing: Any = False,
    block_age: int = 12,
    peers: int = 25,
    block_number: int = 0x1234,
    status_code: int = 200,
) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        if status_code != 200:
            return httpx.Response(status_code, text="unavailable")
        payload = json.loads(request.content)
        method = payload["method"]
        if method == "eth_syncing":
            result: Any = syncing
        elif method == "eth_blockNumber":
            result = hex(block_number)
        elif method == "eth_getBlockByNumber":
            result = {"number": hex(block_number), "timestamp": hex(NOW - block_age)}
        elif method == "net_peerCount":
            result = hex(peers)
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"message": "no such method"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    return handler


def consensus_handler(*, is_syncing: bool = False, head_slot: int = 100, distance: int = 0, peers: int = 40):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/eth/v1/node/syncing":
            return httpx.Response(
                200,
                json={"data": {"is_syncing": is_syncing, "head_slot": str(head_slot), "sync_distance": str(distance)}},
            )
        if request.url.path == "/eth/v1/node/peer_count":
            return httpx.Response(200, json={"data": {"connected": str(peers), "disconnected": "3"}})
        return httpx.Response(404)

    return handler


def execution_client(handler) -> ExecutionClient:
    return ExecutionClient("http://localhost:8545", client=httpx.Client(transport=httpx.MockTransport(handler)))


def consensus_client(handler) -> ConsensusClient:
    return ConsensusClient("http://localhost:5052", client=httpx.Client(transport=httpx.MockTransport(handler)))


def resources(disk: int = 50, ram: int = 40) -> Callable[[str | None], ResourceSnapshot]:
    def reader(path: str | None) -> ResourceSnapshot:
        return ResourceSnapshot(
            data_path=path,
            disk_used_percent=disk,
            disk_available_bytes=(100 - disk) * 10**9,
            disk_total_bytes=100 * 10**9,
            ram_used_percent=ram,
            ram_used_bytes=ram * 10**8,
            ram_total_bytes=10**10,
        )

    return reader


@pytest.fixture(autouse=True)
def captured_logs():
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def config(tmp_path: Path) -> NodeWatchConfig:
    cfg = NodeWatchConfig()
    cfg.resources.fallback_paths = [str(tmp_path)]
    cfg.recovery.lease_path = str(tmp_path / "recovery.lease")
    return cfg


def make_collector(
    config: NodeWatchConfig,
    probe: FakeProbe,
    *,
    exec_handler=None,
    cons_handler=None,
    disk: int = 50,
    ram: int = 40,
    include_details: bool = False,
) -> ObservationCollector:
    return ObservationCollector(
        config,
        probe,
        execution_client(exec_handler or execution_handler()),
        consensus_client(cons_handler or consensus_handler()),
        include_details=include_details,
        resource_reader=resources(disk, ram),
        clock=lambda: NOW,
    )
