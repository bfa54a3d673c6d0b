"""Configuration management for nodewatch.

The configuration is loaded once at process start (YAML file plus environment
overrides) and handed to every component explicitly.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import Role, ServiceIdentity

DEFAULT_CONFIG_PATH = "config/nodewatch.yaml"


class ServiceConfig(BaseModel):
    """One containerized service and where its status API listens."""
    container: str = Field(description="Docker container name")
    host: str = Field(default="localhost", description="Host the status API listens on")
    port: int = Field(description="Status API port")

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ThresholdsConfig(BaseModel):
    """Health classification thresholds."""
    sync_stall_seconds: int = Field(default=1800, description="Latest block older than this means sync is stuck")
    min_peers: int = Field(default=3, description="Execution peer count below this is critical")
    peers_very_low: int = Field(default=5, description="Display band: very low peer count")
    peers_low: int = Field(default=15, description="Display band: low peer count")
    block_age_fresh_seconds: int = Field(default=60, description="Display band: fresh block age")
    block_age_lagging_seconds: int = Field(default=300, description="Display band: lagging block age")
    disk_warning_percent: int = Field(default=80, description="Disk usage above this is a warning")
    disk_critical_percent: int = Field(default=90, description="Disk usage above this is critical")
    disk_unrecoverable_percent: int = Field(default=95, description="Disk usage above this needs manual intervention")
    ram_warning_percent: int = Field(default=80, description="RAM usage above this is a warning")
    ram_critical_percent: int = Field(default=90, description="RAM usage above this is critical")


class RecoveryConfig(BaseModel):
    """Settle times and the re-entrancy lease of the recovery pass."""
    wait_after_start_seconds: float = Field(default=10, description="Wait after starting execution")
    wait_after_stop_seconds: float = Field(default=10, description="Wait after stopping both services")
    wait_after_peer_restart_seconds: float = Field(default=5, description="Wait after restarting execution")
    lease_path: str = Field(default="/tmp/nodewatch-recovery.lease", description="Lease file guarding recovery passes")
    stale_lease_seconds: int = Field(default=1800, description="Leases older than this are broken")


class ShutdownConfig(BaseModel):
    """Graceful shutdown timeouts."""
    consensus_timeout_seconds: int = Field(default=60, description="docker stop --time for consensus")
    execution_timeout_seconds: int = Field(default=120, description="docker stop --time for execution")
    force: bool = Field(default=False, description="Kill containers whose graceful stop fails")


class DockerConfig(BaseModel):
    """How the docker CLI is invoked."""
    binary: str = Field(default="docker", description="docker executable")
    use_sudo: bool = Field(default=False, description="Prefix docker commands with sudo")
    command_timeout_seconds: float = Field(default=15, description="Deadline for query commands")
    stop_grace_seconds: float = Field(default=30, description="Extra deadline on top of docker stop --time")


class ResourcesConfig(BaseModel):
    """Where blockchain data lives and how to find it."""
    mount_destinations: list[str] = Field(
        default_factory=lambda: ["/blockchain", "/data"],
        description="Container mount destinations that hold chain data",
    )
    fallback_paths: list[str] = Field(
        default_factory=lambda: ["/blockchain", "/var/lib/blockchain", "~/blockchain"],
        description="Host directories to try when no mount is found",
    )
    log_tail_lines: int = Field(default=50, description="Log lines scanned for error keywords")
    error_keywords: list[str] = Field(
        default_factory=lambda: ["error", "exception", "fatal"],
        description="Keywords counted in the log scan",
    )


class SchedulerConfig(BaseModel):
    """Built-in periodic trigger for the watch command."""
    interval_seconds: int = Field(default=600, description="Seconds between recovery passes")


class NodeWatchConfig(BaseModel):
    """Main configuration."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Render log lines as JSON")
    rpc_timeout_seconds: float = Field(default=5.0, description="Connect/response timeout for status APIs")

    execution: ServiceConfig = Field(default_factory=lambda: ServiceConfig(container="go-pulse", port=8545))
    consensus: ServiceConfig = Field(default_factory=lambda: ServiceConfig(container="lighthouse", port=5052))

    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    def identities(self) -> tuple[ServiceIdentity, ServiceIdentity]:
        """Service identities in start order."""
        return (
            ServiceIdentity(name=self.execution.container, role=Role.EXECUTION, order=0),
            ServiceIdentity(name=self.consensus.container, role=Role.CONSENSUS, order=1),
        )


# env var -> (section, key, caster)
_ENV_OVERRIDES = {
    "NODEWATCH_LOG_LEVEL": (None, "log_level", str),
    "NODEWATCH_LOG_JSON": (None, "log_json", "bool"),
    "NODEWATCH_RPC_TIMEOUT": (None, "rpc_timeout_seconds", float),
    "NODEWATCH_EXECUTION_CONTAINER": ("execution", "container", str),
    "NODEWATCH_EXECUTION_HOST": ("execution", "host", str),
    "NODEWATCH_EXECUTION_PORT": ("execution", "port", int),
    "NODEWATCH_CONSENSUS_CONTAINER": ("consensus", "container", str),
    "NODEWATCH_CONSENSUS_HOST": ("consensus", "host", str),
    "NODEWATCH_CONSENSUS_PORT": ("consensus", "port", int),
    "NODEWATCH_DOCKER_SUDO": ("docker", "use_sudo", "bool"),
    "NODEWATCH_LEASE_PATH": ("recovery", "lease_path", str),
    "NODEWATCH_SYNC_STALL_SECONDS": ("thresholds", "sync_stall_seconds", int),
    "NODEWATCH_MIN_PEERS": ("thresholds", "min_peers", int),
}


def _cast(value: str, caster: Any) -> Any:
    if caster == "bool":
        return value.lower().strip() in ("1", "true", "t", "y", "yes")
    return caster(value)


def apply_env_overrides(config_data: dict[str, Any], environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    """Overlay NODEWATCH_* environment variables onto raw config data."""
    env = os.environ if environ is None else environ
    for var, (section, key, caster) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            cast_value = _cast(value, caster)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {var}: {value!r}") from e
        if section is None:
            config_data[key] = cast_value
        else:
            target = config_data.setdefault(section, {})
            if not isinstance(target, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            target[key] = cast_value
    return config_data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(config_path: Optional[str] = None, environ: Optional[dict[str, str]] = None) -> NodeWatchConfig:
    """Load configuration from file (if present) and environment variables."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("NODEWATCH_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path).expanduser()
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e
        if not isinstance(config_data, dict):
            raise ConfigError(f"Config YAML must be a mapping: {path}")

    apply_env_overrides(config_data, env)

    # Partial sections (e.g. only a port) are merged over the defaults.
    merged = _deep_merge(NodeWatchConfig().model_dump(), config_data)
    try:
        return NodeWatchConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
