"""Gathers one NodeObservation per cycle from the probe, clients and host."""

from __future__ import annotations

import time
from typing import Callable

import structlog

from ..config import NodeWatchConfig
from ..containers.docker_cli import DockerCLI
from ..errors import MalformedResponse, ServiceUnreachable
from ..models import (
    ContainerState,
    NodeObservation,
    ResourceSnapshot,
    ServiceIdentity,
    ServiceObservation,
    SyncSnapshot,
)
from .resources import find_data_path, read_resources
from .rpc import ConsensusClient, ExecutionClient

logger = structlog.get_logger(__name__)


def _log_rpc_failure(identity: ServiceIdentity, call: str, error: ServiceUnreachable) -> None:
    event = "rpc_malformed_response" if isinstance(error, MalformedResponse) else "rpc_unreachable"
    logger.warning(event, container=identity.name, role=identity.role.value, call=call, error=str(error))


class ObservationCollector:
    """Reads container state first; RPC is only attempted for running services."""

    def __init__(
        self,
        config: NodeWatchConfig,
        probe: DockerCLI,
        execution: ExecutionClient,
        consensus: ConsensusClient,
        *,
        include_details: bool = False,
        resource_reader: Callable[[str | None], ResourceSnapshot] = read_resources,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.probe = probe
        self.execution = execution
        self.consensus = consensus
        self.include_details = include_details
        self.resource_reader = resource_reader
        self.clock = clock

    def collect(self) -> NodeObservation:
        exec_id, cons_id = self.config.identities()
        exec_state = self.probe.inspect(exec_id.name)
        cons_state = self.probe.inspect(cons_id.name)

        execution = self._observe_execution(exec_id, exec_state)
        consensus = self._observe_consensus(cons_id, cons_state)

        if self.include_details:
            execution, consensus = self._add_details(execution, consensus)

        resources, resources_error = self._read_resources(exec_id, cons_id)
        return NodeObservation(
            execution=execution,
            consensus=consensus,
            resources=resources,
            resources_error=resources_error,
            observed_at=self.clock(),
        )

    def _observe_execution(self, identity: ServiceIdentity, state: ContainerState) -> ServiceObservation:
        if not state.running:
            return ServiceObservation(identity=identity, container=state)

        sync = sync_error = peers = peers_error = None
        try:
            status = self.execution.get_sync_status()
            block = self.execution.get_latest_block()
            sync = SyncSnapshot(
                is_syncing=status.is_syncing,
                current=status.current,
                target=status.target,
                latest_timestamp=block.timestamp,
            )
        except ServiceUnreachable as e:
            _log_rpc_failure(identity, "sync", e)
            sync_error = str(e)
        try:
            peers = self.execution.get_peer_count()
        except ServiceUnreachable as e:
            _log_rpc_failure(identity, "peers", e)
            peers_error = str(e)
        return ServiceObservation(
            identity=identity,
            container=state,
            sync=sync,
            sync_error=sync_error,
            peers=peers,
            peers_error=peers_error,
        )

    def _observe_consensus(self, identity: ServiceIdentity, state: ContainerState) -> ServiceObservation:
        if not state.running:
            return ServiceObservation(identity=identity, container=state)

        sync = sync_error = peers = peers_error = None
        try:
            status = self.consensus.get_sync_status()
            sync = SyncSnapshot(
                is_syncing=status.is_syncing,
                current=status.head_slot,
                target=status.head_slot + status.sync_distance,
            )
        except ServiceUnreachable as e:
            _log_rpc_failure(identity, "sync", e)
            sync_error = str(e)
        try:
            peers = self.consensus.get_peer_count()
        except ServiceUnreachable as e:
            _log_rpc_failure(identity, "peers", e)
            peers_error = str(e)
        return ServiceObservation(
            identity=identity,
            container=state,
            sync=sync,
            sync_error=sync_error,
            peers=peers,
            peers_error=peers_error,
        )

    def _add_details(
        self, *services: ServiceObservation
    ) -> tuple[ServiceObservation, ServiceObservation]:
        """docker stats and a log keyword scan, for the operator report only."""
        running = [s.identity.name for s in services if s.running]
        stats = self.probe.stats(running) if running else {}
        res = self.config.resources
        out = []
        for svc in services:
            if not svc.container.exists:
                out.append(svc)
                continue
            scan = self.probe.scan_logs(svc.identity.name, res.error_keywords, res.log_tail_lines)
            out.append(
                ServiceObservation(
                    identity=svc.identity,
                    container=svc.container,
                    sync=svc.sync,
                    sync_error=svc.sync_error,
                    peers=svc.peers,
                    peers_error=svc.peers_error,
                    stats=stats.get(svc.identity.name),
                    log_scan=scan,
                )
            )
        return out[0], out[1]

    def _read_resources(self, *identities: ServiceIdentity) -> tuple[ResourceSnapshot | None, str | None]:
        destinations = self.config.resources.mount_destinations
        mount_source = None
        # Execution mounts first, then consensus, then host directories.
        for identity in identities:
            mount_source = self.probe.resolve_data_mount(identity.name, destinations)
            if mount_source:
                break
        data_path = find_data_path(mount_source, self.config.resources.fallback_paths)
        if data_path is None:
            logger.warning("data_path_not_found", destinations=destinations)
        snapshot = self.resource_reader(data_path)
        if data_path is None:
            return snapshot, "blockchain data path not found"
        if snapshot.disk_used_percent is None:
            return snapshot, f"disk usage unavailable for {data_path}"
        return snapshot, None
