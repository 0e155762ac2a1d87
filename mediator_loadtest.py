from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from agent import (
    AgentFactory,
    SimulatedStageProfile,
    SimulationSettings,
    load_agent_factory,
    simulated_agent_factory,
)
from errors import ConfigurationError
from metrics import AggregateSnapshot
from phases import PRESET_KINDS, Phase, expected_arrivals, parse_phase, preset_phases
from probe import probe_mediator
from report import (
    DEFAULT_THRESHOLDS,
    evaluate_thresholds,
    load_run_result_json,
    thresholds_passed,
    write_summary_markdown,
)
from runner import LoadTestRunner, RunConfig, RunResult


logger = logging.getLogger("mediator_loadtest.cli")

SIMULATED_AGENT = "simulated"


# Numeric environment defaults; malformed values are rejected by _validate_args.
_NUMERIC_ENV = (
    ("CONNECTION_TIMEOUT", float, "a number"),
    ("MEDIATION_TIMEOUT", float, "a number"),
    ("PICKUP_TIMEOUT", float, "a number"),
    ("MAX_RETRIES", int, "an integer"),
)


def _env_problems() -> list[str]:
    problems: list[str] = []
    for name, kind, expected in _NUMERIC_ENV:
        value = os.environ.get(name)
        if value is None or not value.strip():
            continue
        try:
            kind(value)
        except ValueError:
            problems.append(f"{name} must be {expected}, got {value!r}")
    return problems


def _env_float(name: str, default: float, scale: float = 1.0) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value) * scale
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _phase_arg(value: str) -> Phase:
    try:
        return parse_phase(value)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _threshold_arg(value: str) -> tuple[str, float]:
    metric, sep, limit = value.partition("=")
    if not sep or not metric.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid threshold '{value}'. Expected metric=limit, e.g. connection.duration.p95=8000"
        )
    try:
        return metric.strip(), float(limit)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid threshold limit in '{value}'") from exc


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--invitation-url",
        default=os.environ.get("INVITATION_URL"),
        help="Out-of-band invitation URL of the mediator (env: INVITATION_URL).",
    )
    parser.add_argument(
        "--phase",
        dest="phases",
        action="append",
        type=_phase_arg,
        default=None,
        help="duration:rate[:end_rate[:name]]; repeat for several phases.",
    )
    parser.add_argument("--preset", choices=PRESET_KINDS, default=None)
    parser.add_argument("--rate", type=float, default=5.0, help="Wallets per second for presets.")
    parser.add_argument("--duration-s", type=float, default=30.0, help="Main phase length for presets.")
    parser.add_argument("--ramp-duration-s", type=float, default=30.0)

    parser.add_argument(
        "--connection-timeout-s",
        type=float,
        default=_env_float("CONNECTION_TIMEOUT", 15.0, scale=0.001),
    )
    parser.add_argument(
        "--mediation-timeout-s",
        type=float,
        default=_env_float("MEDIATION_TIMEOUT", 10.0, scale=0.001),
    )
    parser.add_argument(
        "--pickup-timeout-s",
        type=float,
        default=_env_float("PICKUP_TIMEOUT", 5.0, scale=0.001),
    )
    parser.add_argument("--max-attempts", type=int, default=_env_int("MAX_RETRIES", 3))
    parser.add_argument("--backoff-base-s", type=float, default=1.0)
    parser.add_argument("--backoff-multiplier", type=float, default=2.0)
    parser.add_argument("--max-concurrency", type=int, default=100)
    parser.add_argument("--run-timeout-s", type=float, default=None)
    parser.add_argument("--cancel-grace-s", type=float, default=5.0)
    parser.add_argument(
        "--time-scale",
        type=float,
        default=1.0,
        help="Multiplier on schedule offsets; below 1 compresses the run.",
    )

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--report-interval-s", type=float, default=5.0)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument(
        "--threshold",
        dest="thresholds",
        action="append",
        type=_threshold_arg,
        default=None,
        help="metric=limit upper bound, e.g. test.failed.rate=0.1; repeatable.",
    )
    parser.add_argument("--no-default-thresholds", action="store_true")

    parser.add_argument(
        "--agent",
        default=SIMULATED_AGENT,
        help="'simulated' or module:callable returning an agent per wallet id.",
    )
    parser.add_argument("--sim-connect-latency-ms", default="120")
    parser.add_argument("--sim-mediation-latency-ms", default="80")
    parser.add_argument("--sim-pickup-latency-ms", default="40")
    parser.add_argument("--sim-connect-failure-rate", type=float, default=0.0)
    parser.add_argument("--sim-mediation-failure-rate", type=float, default=0.0)
    parser.add_argument("--sim-pickup-failure-rate", type=float, default=0.0)
    parser.add_argument("--sim-hang-rate", type=float, default=0.0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Arrival-rate load test for a messaging mediator's connect/mediate/pickup flow."
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a load test.")
    _add_run_arguments(run_parser)

    check_parser = subparsers.add_parser("check", help="Check that the mediator answers HTTP.")
    check_parser.add_argument("--invitation-url", default=os.environ.get("INVITATION_URL"))
    check_parser.add_argument("--timeout-s", type=float, default=10.0)

    report_parser = subparsers.add_parser("report", help="Rebuild summary.md from run_result.json.")
    report_parser.add_argument("run_dir", type=Path)
    return parser


def _resolve_phases(args: argparse.Namespace) -> list[Phase]:
    if args.phases:
        return list(args.phases)
    return preset_phases(
        args.preset or "custom",
        rate=args.rate,
        duration_s=args.duration_s,
        ramp_duration_s=args.ramp_duration_s,
    )


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.command == "report":
        if not (args.run_dir / "run_result.json").is_file():
            parser.error(f"no run_result.json in {args.run_dir}")
        return
    if not args.invitation_url:
        parser.error("--invitation-url (or INVITATION_URL) is required")
    if args.command != "run":
        return
    env_problems = _env_problems()
    if env_problems:
        parser.error("; ".join(env_problems))
    if args.phases and args.preset:
        parser.error("--phase and --preset are mutually exclusive")
    if args.rate < 0 or args.duration_s <= 0 or args.ramp_duration_s <= 0:
        parser.error("--rate must be >= 0 and --duration-s/--ramp-duration-s must be > 0")
    for label in ("sim_connect_failure_rate", "sim_mediation_failure_rate",
                  "sim_pickup_failure_rate", "sim_hang_rate"):
        value = getattr(args, label)
        if not 0.0 <= value <= 1.0:
            parser.error(f"--{label.replace('_', '-')} must be within 0.0-1.0")


def _build_agent_factory(args: argparse.Namespace) -> AgentFactory:
    if args.agent != SIMULATED_AGENT:
        return load_agent_factory(args.agent)
    return simulated_agent_factory(
        SimulationSettings(
            connect=SimulatedStageProfile(
                latency_ms=args.sim_connect_latency_ms,
                failure_rate=args.sim_connect_failure_rate,
                hang_rate=args.sim_hang_rate,
            ),
            mediation=SimulatedStageProfile(
                latency_ms=args.sim_mediation_latency_ms,
                failure_rate=args.sim_mediation_failure_rate,
            ),
            pickup=SimulatedStageProfile(
                latency_ms=args.sim_pickup_latency_ms,
                failure_rate=args.sim_pickup_failure_rate,
            ),
            seed=args.seed,
        )
    )


def build_run_config(args: argparse.Namespace) -> RunConfig:
    thresholds: dict[str, float] = {} if args.no_default_thresholds else dict(DEFAULT_THRESHOLDS)
    thresholds.update(dict(args.thresholds or []))
    return RunConfig(
        invitation_url=args.invitation_url,
        phases=tuple(_resolve_phases(args)),
        connection_timeout_s=args.connection_timeout_s,
        mediation_timeout_s=args.mediation_timeout_s,
        pickup_timeout_s=args.pickup_timeout_s,
        max_attempts=args.max_attempts,
        backoff_base_s=args.backoff_base_s,
        backoff_multiplier=args.backoff_multiplier,
        max_concurrency=args.max_concurrency,
        run_timeout_s=args.run_timeout_s,
        cancel_grace_s=args.cancel_grace_s,
        time_scale=args.time_scale,
        output_dir=args.output_dir,
        run_name=args.run_name,
        report_interval_s=args.report_interval_s,
        seed=args.seed,
        thresholds=thresholds,
    )


async def _run_with_signals(config: RunConfig, agent_factory: AgentFactory) -> RunResult:
    runner = LoadTestRunner(config, agent_factory)
    logger.info(
        "expected wallets ~%.0f over %d phase(s)", expected_arrivals(config.phases), len(config.phases)
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except (NotImplementedError, RuntimeError):
            pass
    return await runner.run()


def _exit_code(result: RunResult, thresholds: dict[str, float]) -> int:
    if not result.succeeded:
        return 2
    if not thresholds_passed(evaluate_thresholds(result.final_snapshot, thresholds)):
        return 1
    return 0


def _rebuild_report(run_dir: Path) -> Path:
    payload = load_run_result_json(run_dir / "run_result.json")
    config_path = run_dir / "config.json"
    resolved_config: dict[str, Any] = (
        json.loads(config_path.read_text(encoding="utf-8")) if config_path.exists() else {}
    )
    snapshot = AggregateSnapshot.from_dict(payload["final_snapshot"])
    thresholds = {item["metric"]: item["limit"] for item in payload.get("thresholds", [])}
    summary_path = run_dir / "summary.md"
    write_summary_markdown(
        output_path=summary_path,
        run_name=resolved_config.get("run_name") or run_dir.name,
        resolved_config=resolved_config,
        result=payload,
        threshold_results=evaluate_thresholds(snapshot, thresholds),
    )
    return summary_path


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "check":
        try:
            result = asyncio.run(probe_mediator(args.invitation_url, timeout_s=args.timeout_s))
        except ValueError as exc:
            parser.error(f"check needs an http(s) invitation URL: {exc}")
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.reachable else 1

    if args.command == "report":
        summary_path = _rebuild_report(args.run_dir)
        print(f"Summary written to: {summary_path}")
        return 0

    try:
        config = build_run_config(args)
        result = asyncio.run(_run_with_signals(config, _build_agent_factory(args)))
    except ConfigurationError as exc:
        parser.error(str(exc))
    print(
        f"Run {result.status}: {result.total_completed} completed, {result.total_failed} failed, "
        f"{result.total_incomplete} incomplete of {result.total_scheduled} scheduled."
    )
    if result.output_dir:
        print(f"Outputs written to: {result.output_dir}")
    return _exit_code(result, config.thresholds)


if __name__ == "__main__":
    sys.exit(main())
