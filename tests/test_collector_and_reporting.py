from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
from conftest import NOW, FakeProbe, execution_handler, make_collector, running_pair

from nodewatch.config import ThresholdsConfig
from nodewatch.exit_codes import ExitCode
from nodewatch.health.evaluator import evaluate
from nodewatch.models import ActionKind, ContainerState, Mount, RecoveryAction, RecoveryOutcome
from nodewatch.reporting.report import (
    StatusRenderer,
    block_age_band,
    format_bytes,
    format_duration,
    peer_band,
    render_container_states,
)


def test_collector_skips_rpc_for_stopped_service(config) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    states = running_pair()
    states["go-pulse"] = ContainerState(exists=True, running=False)
    obs = make_collector(config, FakeProbe(states), exec_handler=handler).collect()

    assert calls == []
    assert obs.execution.sync is None and obs.execution.sync_error is None
    assert obs.consensus.peers.peer_count == 40
    assert obs.observed_at == NOW


def test_collector_records_rpc_errors(config) -> None:
    obs = make_collector(config, FakeProbe(running_pair()), exec_handler=execution_handler(status_code=500)).collect()
    assert obs.execution.sync is None
    assert "HTTP 500" in obs.execution.sync_error
    assert obs.execution.peers_error


def test_collector_builds_execution_snapshot(config) -> None:
    obs = make_collector(config, FakeProbe(running_pair()), exec_handler=execution_handler(block_age=42)).collect()
    assert obs.execution.sync.latest_timestamp == NOW - 42
    assert obs.resources.data_path == config.resources.fallback_paths[0]
    assert obs.resources_error is None


def test_collector_details(config) -> None:
    obs = make_collector(config, FakeProbe(running_pair()), include_details=True).collect()
    assert obs.execution.stats.cpu_percent == "1.00%"
    assert obs.consensus.log_scan.error_lines == 1


def test_collector_falls_back_to_consensus_mount(config, tmp_path) -> None:
    chain = tmp_path / "lighthouse-data"
    chain.mkdir()
    states = running_pair()
    states["lighthouse"] = ContainerState(
        exists=True, running=True, mounts=(Mount(source=str(chain), destination="/blockchain"),)
    )
    obs = make_collector(config, FakeProbe(states)).collect()
    assert obs.resources.data_path == str(chain)


def test_collector_prefers_execution_mount(config, tmp_path) -> None:
    exec_data, cons_data = tmp_path / "exec", tmp_path / "cons"
    exec_data.mkdir()
    cons_data.mkdir()
    states = {
        "go-pulse": ContainerState(exists=True, running=True, mounts=(Mount(str(exec_data), "/data"),)),
        "lighthouse": ContainerState(exists=True, running=True, mounts=(Mount(str(cons_data), "/blockchain"),)),
    }
    obs = make_collector(config, FakeProbe(states)).collect()
    assert obs.resources.data_path == str(exec_data)


def test_collector_without_data_path(config) -> None:
    config.resources.fallback_paths = ["/definitely/not/here"]
    obs = make_collector(config, FakeProbe(running_pair())).collect()
    assert obs.resources_error == "blockchain data path not found"


def test_format_helpers() -> None:
    assert format_duration(5) == "5s"
    assert format_duration(125) == "2m 5s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(90061) == "1d 1h 1m"
    assert format_duration(None) == "unknown"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024**4) == "5.0 TB"


def test_display_bands() -> None:
    t = ThresholdsConfig()
    assert block_age_band(59, t) == "fresh"
    assert block_age_band(60, t) == "lagging"
    assert block_age_band(300, t) == "stale"
    assert peer_band(4, t) == "very low"
    assert peer_band(14, t) == "low"
    assert peer_band(15, t) == "good"


def test_render_status_lists_every_dimension(config) -> None:
    states = running_pair()
    states["go-pulse"] = ContainerState(
        exists=True, running=True, created_at=datetime.fromtimestamp(NOW - 3600, tz=timezone.utc)
    )
    obs = make_collector(config, FakeProbe(states), include_details=True, disk=85).collect()
    report = evaluate(obs, config.thresholds, NOW)

    text = StatusRenderer(config.thresholds).render_status(report)

    assert "[execution] go-pulse: running (up 1h 0m 0s)" in text
    assert "latest block age: 12s (fresh)" in text
    assert "peers: 25 (good)" in text
    assert "disk: 85% used" in text
    assert "Health: WARNING" in text
    for dimension in ("containers", "sync", "peers", "disk", "ram"):
        assert dimension in text
    assert "Free space on the blockchain volume" in text


def test_report_to_dict_is_json_serializable(config) -> None:
    obs = make_collector(config, FakeProbe(running_pair())).collect()
    data = evaluate(obs, config.thresholds, NOW).to_dict()
    decoded = json.loads(json.dumps(data))
    assert decoded["worst"] == "OK"
    assert [v["dimension"] for v in decoded["verdicts"]] == ["containers", "sync", "peers", "disk", "ram"]
    assert decoded["services"]["execution"]["peer_count"] == 25


def test_render_fatal_outcome_includes_remedy() -> None:
    action = RecoveryAction(ActionKind.FATAL_MANUAL_INTERVENTION, None, ExitCode.DISK_CRITICAL)
    outcome = RecoveryOutcome(
        action=action, exit_code=ExitCode.DISK_CRITICAL, message="96% used", remedy="Free up space."
    )
    text = StatusRenderer().render_outcome(outcome)
    assert "DISK_CRITICAL (exit 3): 96% used" in text
    assert "Remedy: Free up space." in text


def test_render_recovered_outcome_lists_steps() -> None:
    action = RecoveryAction(ActionKind.RESTART_EXECUTION, None, ExitCode.RECOVERED_PEERS)
    outcome = RecoveryOutcome(
        action=action, exit_code=ExitCode.RECOVERED_PEERS, message="low peers", steps=["restarted go-pulse"]
    )
    text = StatusRenderer().render_outcome(outcome)
    assert "RECOVERED_PEERS (exit 8)" in text
    assert "- restarted go-pulse" in text


def test_render_container_states() -> None:
    text = render_container_states(
        [("lighthouse", ContainerState(exists=True, running=False)), ("go-pulse", ContainerState.missing())]
    )
    assert text == "  lighthouse: stopped\n  go-pulse: missing"


def test_malformed_and_unreachable_are_logged_distinctly(config, captured_logs) -> None:
    def malformed(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": "not-hex"})

    make_collector(config, FakeProbe(running_pair()), exec_handler=malformed).collect()
    make_collector(config, FakeProbe(running_pair()), exec_handler=execution_handler(status_code=503)).collect()

    events = [entry["event"] for entry in captured_logs if entry.get("role") == "execution"]
    assert "rpc_malformed_response" in events
    assert "rpc_unreachable" in events
