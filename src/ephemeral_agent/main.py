"""Command-line driver for the ephemeral agent lifecycle orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

import yaml

from ephemeral_agent.config.env import (
    load_environment,
    redacted_snapshot,
    require_setting,
    setting,
)
from ephemeral_agent.enums import LifecycleState
from ephemeral_agent.lifecycle.controller import LifecycleController
from ephemeral_agent.lifecycle.ledger import FileLedger
from ephemeral_agent.lifecycle.policy import LifecyclePolicy
from ephemeral_agent.providers.aws import Ec2ComputeProvider, StsIdentityProvider
from ephemeral_agent.providers.handoff import PresenceWorkHandoff, SignalledWorkHandoff
from ephemeral_agent.providers.jenkins import JenkinsAgentRegistry
from ephemeral_agent.providers.simulated import (
    SimulatedComputeProvider,
    SimulatedIdentityProvider,
    SimulatedWorkRegistry,
)
from ephemeral_agent.schema.models import ResourceSpec
from ephemeral_agent.utilities.logger_manager import LoggerConfig, LoggerManager
from ephemeral_agent.utilities.version import get_runtime_version

DEFAULT_CONFIG_PATH = "config/lifecycle.example.yml"
DEFAULT_SIMULATED_BOOT_S = 2.0
DEFAULT_SIMULATED_JOB_S = 5.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="ephemeral-agent",
        description="Provision, hand off and reliably tear down ephemeral CI agents.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=get_runtime_version(),
        help="Show the runtime version and exit.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the lifecycle configuration file (YAML).",
    )
    parser.add_argument(
        "--ledger-dir",
        type=str,
        default=None,
        help="Ledger directory (defaults to EPHEMERAL_AGENT_LEDGER_DIR).",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use in-memory providers instead of AWS and Jenkins.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser(
        "run",
        help="Run one lifecycle from the configured resource spec and wait for it.",
    )
    recover_parser = subparsers.add_parser(
        "recover",
        help="Tear down every instance a previous process left unfinished.",
    )
    recover_parser.add_argument(
        "--sweep",
        action="store_true",
        help="Also reap tagged resources unknown to the ledger.",
    )
    status_parser = subparsers.add_parser("status", help="Show one instance.")
    status_parser.add_argument("instance_id", type=str)
    subparsers.add_parser("escalations", help="List unconfirmed teardowns.")
    return parser.parse_args(argv)


def load_config(config_path: str) -> dict[str, Any]:
    """Load the lifecycle configuration from YAML; a missing file yields `{}`."""
    path = Path(config_path)
    if not path.is_file():
        return {}
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return raw


def build_logger_manager(config: dict[str, Any]) -> LoggerManager:
    logging_config = config.get("logging", {}) or {}
    return LoggerManager(
        name="ephemeral_agent",
        config=LoggerConfig(
            log_dir=Path(logging_config.get("log_dir", "artifacts/logs")),
            log_level=logging_config.get("log_level") or setting("log_level") or "INFO",
            log_file_name=logging_config.get("log_file_name", "orchestrator.log"),
            structured_logging=logging_config.get("structured_logging", False),
            file_logging=logging_config.get("file_logging", True),
            telemetry_enabled=logging_config.get("telemetry_enabled", True),
        ),
    )


def build_controller(
    args: argparse.Namespace,
    config: dict[str, Any],
    logger_manager: LoggerManager,
) -> LifecycleController:
    policy = LifecyclePolicy.from_mapping(config.get("policy", {}) or {})
    ledger = FileLedger(args.ledger_dir or setting("ledger_dir") or "artifacts/ledger")
    if args.simulate:
        simulate = config.get("simulate", {}) or {}
        registry = SimulatedWorkRegistry()
        compute = SimulatedComputeProvider(
            quota=simulate.get("quota"),
            registry=registry,
            boot_delay_s=float(simulate.get("boot_delay_s", DEFAULT_SIMULATED_BOOT_S)),
        )
        return LifecycleController.build(
            SimulatedIdentityProvider(),
            compute,
            registry,
            SignalledWorkHandoff(),
            ledger,
            policy=policy,
            logger_manager=logger_manager,
        )

    region = setting("aws_region")
    jenkins = JenkinsAgentRegistry(
        require_setting("jenkins_url"),
        user=setting("jenkins_user"),
        token=setting("jenkins_token"),
    )
    return LifecycleController.build(
        StsIdentityProvider(region=region),
        Ec2ComputeProvider(region=region),
        jenkins,
        PresenceWorkHandoff(
            jenkins,
            poll_interval_s=policy.controller.handoff_poll_interval_s,
            logger_manager=logger_manager,
        ),
        ledger,
        policy=policy,
        logger_manager=logger_manager,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def _complete_later(handoff: SignalledWorkHandoff, instance_id: str, delay: float) -> None:
    await asyncio.sleep(delay)
    handoff.complete(instance_id, succeeded=True, detail="simulated job finished")


async def run_once(
    controller: LifecycleController, config: dict[str, Any], simulate: bool
) -> int:
    """Run one lifecycle to a terminal state; exit code 0 only for TERMINATED."""
    if "resource_spec" not in config or "target_account_ref" not in config:
        raise ValueError("Config needs 'resource_spec' and 'target_account_ref'")
    spec = ResourceSpec.model_validate(config["resource_spec"])
    deadlines = config.get("deadlines", {}) or {}
    events = controller.subscribe()
    instance_id = await controller.create_instance(
        spec,
        str(config["target_account_ref"]),
        ready_deadline=deadlines.get("ready_deadline_s"),
        job_deadline=deadlines.get("job_deadline_s"),
    )
    completions: set[asyncio.Task[None]] = set()
    job_s = float((config.get("simulate", {}) or {}).get("job_duration_s", DEFAULT_SIMULATED_JOB_S))
    while True:
        event = await events.get()
        if event.instance_id != instance_id:
            continue
        source = event.from_state.value if event.from_state else "-"
        print(f"{event.at.isoformat()} {source} -> {event.to_state.value}", file=sys.stderr)
        if (
            simulate
            and event.to_state == LifecycleState.IN_USE
            and isinstance(controller.handoff, SignalledWorkHandoff)
        ):
            completions.add(
                asyncio.create_task(_complete_later(controller.handoff, instance_id, job_s))
            )
        if event.to_state.is_terminal:
            break
    controller.unsubscribe(events)
    status = await controller.wait(instance_id)
    _print_json(status.model_dump(mode="json"))
    return 0 if status.state == LifecycleState.TERMINATED else 1


async def recover(
    controller: LifecycleController, config: dict[str, Any], sweep: bool
) -> int:
    recovered = await controller.recover()
    statuses = [await controller.wait(instance_id) for instance_id in recovered]
    reaped: list[str] = []
    if sweep:
        target = config.get("target_account_ref")
        if not target:
            raise ValueError("--sweep needs 'target_account_ref' in the config")
        reaped = await controller.sweep_orphans(str(target))
    _print_json(
        {
            "recovered": [status.model_dump(mode="json") for status in statuses],
            "orphans_reaped": reaped,
        }
    )
    return 1 if any(status.orphan_risk for status in statuses) else 0


async def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    load_environment()
    args = parse_args(argv)
    config = load_config(args.config)
    logger_manager = build_logger_manager(config)
    logger = logger_manager.get_logger()
    logger.info(f"ephemeral-agent {args.command} starting; settings={redacted_snapshot()}")

    controller = build_controller(args, config, logger_manager)
    try:
        if args.command == "run":
            return await run_once(controller, config, args.simulate)
        if args.command == "recover":
            return await recover(controller, config, args.sweep)
        if args.command == "status":
            instance = await controller.get_instance(args.instance_id)
            _print_json(instance.model_dump(mode="json"))
            return 0
        if args.command == "escalations":
            records = await controller.list_escalations()
            _print_json([record.model_dump(mode="json") for record in records])
            return 1 if records else 0
        return 2
    except Exception:
        logger.error("Unexpected error occurred", exc_info=True)
        return 1
    finally:
        await controller.shutdown()
        logger_manager.flush()


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("Interrupted; run 'ephemeral-agent recover' to finish teardown", file=sys.stderr)
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    cli()
