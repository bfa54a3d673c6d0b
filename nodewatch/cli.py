"""Command line interface for nodewatch.

Usage:
    nodewatch status [--json]                      # Show node health
    nodewatch recover                              # One recovery pass (cron entry point)
    nodewatch shutdown [--force] [CONS] [EXEC]     # Graceful ordered shutdown
    nodewatch restart [--wait N] [--show-logs]     # Ordered start of stopped services
    nodewatch watch [--interval N]                 # Recovery pass every N seconds
    nodewatch exit-codes                           # Print the exit code contract
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from contextlib import ExitStack

import structlog

from .config import NodeWatchConfig, load_config
from .containers.docker_cli import DockerCLI
from .containers.sequencer import ShutdownSequencer, StartupSequencer
from .errors import ConfigError, RuntimeUnavailable
from .exit_codes import EXIT_CODE_DESCRIPTIONS, REMEDIES, ExitCode
from .health.collector import ObservationCollector
from .health.evaluator import evaluate
from .health.rpc import ConsensusClient, ExecutionClient
from .logging_config import configure_logging
from .recovery.controller import RecoveryController
from .reporting.report import StatusRenderer, render_container_states
from .scheduler.periodic import RecoveryScheduler

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodewatch", description="Execution/consensus node health and recovery")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $NODEWATCH_CONFIG or config/nodewatch.yaml)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--log-json", action="store_true", help="Render log lines as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show node health")
    status.add_argument("--json", action="store_true", help="Print the report as JSON")

    sub.add_parser("recover", help="Run one recovery pass and exit with its outcome code")

    shutdown = sub.add_parser("shutdown", help="Stop consensus then execution")
    shutdown.add_argument("--force", action="store_true", help="Kill containers whose graceful stop fails")
    shutdown.add_argument("consensus_timeout", nargs="?", type=int, help="Consensus stop timeout (seconds)")
    shutdown.add_argument("execution_timeout", nargs="?", type=int, help="Execution stop timeout (seconds)")

    restart = sub.add_parser("restart", help="Start stopped services, execution first")
    restart.add_argument("--wait", type=float, default=None, help="Seconds to wait after starting execution")
    restart.add_argument("--show-logs", action="store_true", help="Show recent logs of services that fail to start")

    watch = sub.add_parser("watch", help="Run recovery passes on an interval")
    watch.add_argument("--interval", type=int, default=None, help="Seconds between passes")

    sub.add_parser("exit-codes", help="Print the exit code contract")
    return parser


def _raise_keyboard_interrupt(signum, frame):
    raise KeyboardInterrupt


def _print_fatal(code: ExitCode, message: str) -> None:
    print(f"❌ {code.name} (exit {int(code)}): {message}")
    remedy = REMEDIES.get(code)
    if remedy:
        print(f"   Remedy: {remedy}")


def _engine_error_code(error: RuntimeUnavailable) -> ExitCode:
    return ExitCode.RUNTIME_MISSING if error.cli_missing else ExitCode.ENGINE_UNREACHABLE


def _print_current_state(config: NodeWatchConfig, probe: DockerCLI) -> None:
    print("\n⚠️  Interrupted. Current container state:")
    try:
        states = [(i.name, probe.inspect(i.name)) for i in config.identities()]
    except RuntimeUnavailable as e:
        print(f"  unknown (docker unavailable: {e})")
        return
    print(render_container_states(states))


def _clients(config: NodeWatchConfig, stack: ExitStack) -> tuple[ExecutionClient, ConsensusClient]:
    execution = stack.enter_context(ExecutionClient(config.execution.base_url, timeout=config.rpc_timeout_seconds))
    consensus = stack.enter_context(ConsensusClient(config.consensus.base_url, timeout=config.rpc_timeout_seconds))
    return execution, consensus


def cmd_status(config: NodeWatchConfig, probe: DockerCLI, args) -> int:
    probe.ping()
    with ExitStack() as stack:
        execution, consensus = _clients(config, stack)
        collector = ObservationCollector(config, probe, execution, consensus, include_details=True)
        observation = collector.collect()
    report = evaluate(observation, config.thresholds, observation.observed_at)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(StatusRenderer(config.thresholds).render_status(report), end="")
    return int(ExitCode.OK)


def cmd_recover(config: NodeWatchConfig, probe: DockerCLI, args) -> int:
    with ExitStack() as stack:
        execution, consensus = _clients(config, stack)
        collector = ObservationCollector(config, probe, execution, consensus)
        outcome = RecoveryController(config, probe, collector).run_pass()
    print(StatusRenderer(config.thresholds).render_outcome(outcome), end="")
    return int(outcome.exit_code)


def cmd_shutdown(config: NodeWatchConfig, probe: DockerCLI, args) -> int:
    probe.ping()
    sequencer = ShutdownSequencer.from_config(probe, config)
    if args.consensus_timeout is not None:
        sequencer.timeouts["consensus"] = args.consensus_timeout
    if args.execution_timeout is not None:
        sequencer.timeouts["execution"] = args.execution_timeout
    force = args.force or config.shutdown.force

    print(
        f"🛑 Stopping {config.consensus.container} ({sequencer.timeouts['consensus']}s) "
        f"then {config.execution.container} ({sequencer.timeouts['execution']}s)"
        + (" with force" if force else "")
    )
    result = sequencer.run(force=force)
    for svc in result.services:
        state = svc.final_state
        if state is not None and not state.exists:
            line = "not found"
        elif not svc.was_running:
            line = "already stopped"
        elif svc.stopped:
            line = "killed" if svc.killed else "stopped"
        else:
            line = f"STILL RUNNING ({svc.error})"
        print(f"  {svc.identity.name}: {line}")

    if not result.all_stopped:
        _print_fatal(ExitCode.CONTAINER_STOP_FAILED, f"still running: {', '.join(result.still_running())}")
        return int(ExitCode.CONTAINER_STOP_FAILED)
    print("✅ All services stopped")
    return int(ExitCode.OK)


def cmd_restart(config: NodeWatchConfig, probe: DockerCLI, args) -> int:
    probe.ping()
    sequencer = StartupSequencer.from_config(probe, config)
    if args.wait is not None:
        sequencer.init_delay_seconds = args.wait
    result = sequencer.run(show_logs_lines=config.resources.log_tail_lines if args.show_logs else 0)

    if result.missing:
        _print_fatal(ExitCode.CONTAINER_MISSING, f"container does not exist: {', '.join(result.missing)}")
        return int(ExitCode.CONTAINER_MISSING)

    for name in result.already_running:
        print(f"  {name}: already running")
    for name in result.started:
        print(f"  {name}: started")

    if not result.all_running:
        for name, why in sorted(result.failed.items()):
            print(f"  {name}: FAILED ({why})")
            for line in result.logs.get(name, []):
                print(f"    | {line}")
        _print_fatal(ExitCode.CONTAINER_START_FAILED, "services did not come up")
        return int(ExitCode.CONTAINER_START_FAILED)
    print("✅ Both services running")
    return int(ExitCode.OK)


def cmd_watch(config: NodeWatchConfig, probe: DockerCLI, args) -> int:
    interval = args.interval or config.scheduler.interval_seconds
    with ExitStack() as stack:
        execution, consensus = _clients(config, stack)
        collector = ObservationCollector(config, probe, execution, consensus)
        controller = RecoveryController(config, probe, collector)
        print(f"👀 Running a recovery pass every {interval}s (Ctrl+C to stop)")
        RecoveryScheduler(controller.run_pass, interval).start()
    return int(ExitCode.OK)


def cmd_exit_codes() -> int:
    for code in ExitCode:
        print(f"{int(code):>4}  {code.name:<24} {EXIT_CODE_DESCRIPTIONS[code]}")
    return int(ExitCode.OK)


COMMANDS = {
    "status": cmd_status,
    "recover": cmd_recover,
    "shutdown": cmd_shutdown,
    "restart": cmd_restart,
    "watch": cmd_watch,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "exit-codes":
        return cmd_exit_codes()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or config.log_level, json=args.log_json or config.log_json)
    signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)

    probe = DockerCLI(config.docker)
    try:
        return COMMANDS[args.command](config, probe, args)
    except RuntimeUnavailable as e:
        code = _engine_error_code(e)
        _print_fatal(code, str(e))
        return int(code)
    except KeyboardInterrupt:
        logger.warning("interrupted", command=args.command)
        _print_current_state(config, probe)
        return int(ExitCode.INTERRUPTED)


if __name__ == "__main__":
    raise SystemExit(main())
