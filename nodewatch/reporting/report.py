"""Human-readable rendering of health reports and recovery outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import structlog
from jinja2 import Environment, FileSystemLoader

from ..config import ThresholdsConfig
from ..models import ContainerState, HealthReport, RecoveryOutcome, Severity, ServiceObservation

logger = structlog.get_logger(__name__)

_SEVERITY_ICONS = {Severity.OK: "✅", Severity.WARNING: "⚠️", Severity.CRITICAL: "❌"}


def format_duration(seconds: float | int | None) -> str:
    """``3725`` -> ``"1h 2m 5s"``; days are shown once non-zero."""
    if seconds is None:
        return "unknown"
    total = max(0, int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_bytes(value: int | None) -> str:
    if value is None:
        return "unknown"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def block_age_band(age: int | None, thresholds: ThresholdsConfig) -> str:
    if age is None:
        return "unknown"
    if age < thresholds.block_age_fresh_seconds:
        return "fresh"
    if age < thresholds.block_age_lagging_seconds:
        return "lagging"
    return "stale"


def peer_band(count: int | None, thresholds: ThresholdsConfig) -> str:
    if count is None:
        return "unknown"
    if count < thresholds.peers_very_low:
        return "very low"
    if count < thresholds.peers_low:
        return "low"
    return "good"


def _uptime(state: ContainerState, now: float) -> str | None:
    if not state.running or state.created_at is None:
        return None
    return format_duration(now - state.created_at.timestamp())


def _service_context(svc: ServiceObservation, thresholds: ThresholdsConfig, now: float) -> dict[str, Any]:
    c = svc.container
    if not c.exists:
        status = "missing"
    elif c.running:
        status = "running"
    else:
        status = "stopped"

    age = None
    if svc.sync is not None and svc.sync.latest_timestamp is not None:
        age = int(now) - svc.sync.latest_timestamp

    return {
        "name": svc.identity.name,
        "role": svc.identity.role.value,
        "status": status,
        "uptime": _uptime(c, now),
        "image": c.image,
        "sync": svc.sync,
        "progress": svc.sync.progress_percent if svc.sync else None,
        "sync_error": svc.sync_error,
        "block_age": format_duration(age) if age is not None else None,
        "block_age_band": block_age_band(age, thresholds),
        "peers": svc.peers.peer_count if svc.peers else None,
        "peer_band": peer_band(svc.peers.peer_count if svc.peers else None, thresholds),
        "peers_error": svc.peers_error,
        "stats": svc.stats,
        "log_scan": svc.log_scan,
    }


def _recommendations(report: HealthReport) -> list[str]:
    tips = []
    for v in report.verdicts:
        if v.severity is Severity.OK:
            continue
        if v.dimension.value == "containers":
            tips.append("Run 'nodewatch recover' or 'nodewatch restart' to bring stopped containers back.")
        elif v.dimension.value == "sync" and v.severity is Severity.CRITICAL:
            tips.append("Sync looks stuck; 'nodewatch recover' restarts both services in order.")
        elif v.dimension.value == "peers":
            tips.append("Check firewall and port forwarding for the P2P ports.")
        elif v.dimension.value == "disk":
            tips.append("Free space on the blockchain volume or expand storage.")
        elif v.dimension.value == "ram":
            tips.append("Memory is tight; consider adding RAM or swap.")
    # Keep first occurrence order.
    return list(dict.fromkeys(tips))


class StatusRenderer:
    """Renders text reports from the bundled jinja2 templates."""

    def __init__(self, thresholds: ThresholdsConfig | None = None):
        self.thresholds = thresholds or ThresholdsConfig()
        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render_status(self, report: HealthReport) -> str:
        obs = report.observation
        now = report.generated_at
        res = obs.resources
        context = {
            "generated": datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            "services": [_service_context(s, self.thresholds, now) for s in obs.services],
            "resources": res,
            "resources_error": obs.resources_error,
            "disk_available": format_bytes(res.disk_available_bytes) if res else None,
            "disk_total": format_bytes(res.disk_total_bytes) if res else None,
            "ram_used": format_bytes(res.ram_used_bytes) if res else None,
            "ram_total": format_bytes(res.ram_total_bytes) if res else None,
            "verdicts": [
                {"icon": _SEVERITY_ICONS[v.severity], "verdict": v} for v in report.verdicts
            ],
            "worst": report.worst.value,
            "recommendations": _recommendations(report),
        }
        return self.jinja_env.get_template("status.txt.j2").render(**context)

    def render_outcome(self, outcome: RecoveryOutcome) -> str:
        return self.jinja_env.get_template("outcome.txt.j2").render(
            outcome=outcome,
            code=int(outcome.exit_code),
            code_name=outcome.exit_code.name,
        )


def render_container_states(states: Iterable[tuple[str, ContainerState]]) -> str:
    """One line per container, used when a sequence is interrupted."""
    lines = []
    for name, state in states:
        if not state.exists:
            status = "missing"
        elif state.running:
            status = "running"
        else:
            status = "stopped"
        lines.append(f"  {name}: {status}")
    return "\n".join(lines)
