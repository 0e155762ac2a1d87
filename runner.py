from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from agent import AgentFactory
from coordinator import Coordinator
from errors import ConfigurationError
from loadgen import RetryPolicy, StageTimeouts, WalletRun, execute_wallet_run
from metrics import AggregateSnapshot, MetricsAggregator, ProgressReporter
from metrics_prometheus import write_prometheus_textfile
from phases import Phase, ScheduledStart, count_scheduled, iter_schedule, schedule_duration_s, validate_phases
from report import (
    evaluate_thresholds,
    thresholds_passed,
    write_run_result_json,
    write_summary_markdown,
)


logger = logging.getLogger("mediator_loadtest.runner")


@dataclass(frozen=True)
class RunConfig:
    invitation_url: str
    phases: tuple[Phase, ...]
    connection_timeout_s: float = 15.0
    mediation_timeout_s: float = 10.0
    pickup_timeout_s: float = 5.0
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_concurrency: int = 100
    run_timeout_s: Optional[float] = None
    cancel_grace_s: float = 5.0
    time_scale: float = 1.0
    output_dir: Optional[Path] = None
    run_name: Optional[str] = None
    report_interval_s: float = 5.0
    reservoir_size: int = 10_000
    seed: int = 42
    connect_options: dict[str, Any] = field(default_factory=dict)
    thresholds: dict[str, float] = field(default_factory=dict)

    @property
    def timeouts(self) -> StageTimeouts:
        return StageTimeouts(
            connection_s=self.connection_timeout_s,
            mediation_s=self.mediation_timeout_s,
            pickup_s=self.pickup_timeout_s,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_s=self.backoff_base_s,
            multiplier=self.backoff_multiplier,
        )


def _positive(value: float) -> bool:
    return value > 0 and not math.isinf(value)


def validate_config(config: RunConfig) -> None:
    problems: list[str] = []
    if not config.invitation_url or not config.invitation_url.strip():
        problems.append("invitation_url is required")
    try:
        validate_phases(config.phases)
    except ConfigurationError as exc:
        problems.extend(exc.problems)
    for label in ("connection_timeout_s", "mediation_timeout_s", "pickup_timeout_s"):
        if not _positive(getattr(config, label)):
            problems.append(f"{label} must be > 0, got {getattr(config, label)}")
    if config.max_attempts < 1:
        problems.append(f"max_attempts must be >= 1, got {config.max_attempts}")
    if config.backoff_base_s < 0:
        problems.append(f"backoff_base_s must be >= 0, got {config.backoff_base_s}")
    if config.backoff_multiplier < 1:
        problems.append(f"backoff_multiplier must be >= 1, got {config.backoff_multiplier}")
    if config.max_concurrency < 1:
        problems.append(f"max_concurrency must be >= 1, got {config.max_concurrency}")
    if config.run_timeout_s is not None and not _positive(config.run_timeout_s):
        problems.append(f"run_timeout_s must be > 0 when set, got {config.run_timeout_s}")
    if config.cancel_grace_s < 0:
        problems.append(f"cancel_grace_s must be >= 0, got {config.cancel_grace_s}")
    if not _positive(config.time_scale):
        problems.append(f"time_scale must be > 0, got {config.time_scale}")
    if config.report_interval_s < 0:
        problems.append(f"report_interval_s must be >= 0, got {config.report_interval_s}")
    if config.reservoir_size < 1:
        problems.append(f"reservoir_size must be >= 1, got {config.reservoir_size}")
    try:
        evaluate_thresholds(AggregateSnapshot(), config.thresholds)
    except ConfigurationError as exc:
        problems.extend(exc.problems)
    if problems:
        raise ConfigurationError(problems)


def worst_case_wallet_s(config: RunConfig) -> float:
    """Longest a single wallet can take if every attempt of every stage times out."""
    attempts_s = config.max_attempts * (
        config.connection_timeout_s + config.mediation_timeout_s + config.pickup_timeout_s
    )
    return attempts_s + 3 * config.retry_policy.worst_case_backoff_s() + config.cancel_grace_s


def default_run_timeout_s(config: RunConfig) -> float:
    return (
        schedule_duration_s(config.phases) * config.time_scale
        + worst_case_wallet_s(config)
        + config.cancel_grace_s
    )


@dataclass
class RunResult:
    started_at: str
    ended_at: str
    total_scheduled: int
    total_admitted: int
    total_completed: int
    total_failed: int
    total_incomplete: int
    peak_in_flight: int
    timed_out: bool
    stopped: bool
    final_snapshot: AggregateSnapshot
    output_dir: Optional[str] = None

    @property
    def status(self) -> str:
        if self.timed_out:
            return "timed_out"
        if self.stopped:
            return "stopped"
        return "completed"

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.total_incomplete == 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status
        payload["final_snapshot"] = self.final_snapshot.to_dict()
        return payload


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def resolved_config_dict(config: RunConfig, output_dir: Optional[Path]) -> dict[str, Any]:
    payload = asdict(config)
    payload["phases"] = [phase.to_dict() for phase in config.phases]
    payload["output_dir"] = str(config.output_dir) if config.output_dir else None
    payload["resolved_run_dir"] = str(output_dir) if output_dir else None
    payload["effective_run_timeout_s"] = (
        config.run_timeout_s if config.run_timeout_s is not None else default_run_timeout_s(config)
    )
    payload["scheduled_wallets"] = count_scheduled(config.phases)
    return payload


class LoadTestRunner:
    """One execution of a load test: schedule, coordinate, aggregate, report.

    Only configuration errors raise; everything that goes wrong for a wallet
    ends up in the metrics and the RunResult.
    """

    def __init__(self, config: RunConfig, agent_factory: AgentFactory) -> None:
        validate_config(config)
        self.config = config
        self.agent_factory = agent_factory
        self.aggregator = self._new_aggregator()
        self._stop_requested = asyncio.Event()
        self._running = False
        self._coordinator: Optional[Coordinator] = None
        self._wallet_writer: Optional[AsyncJSONLWriter] = None
        self.output_dir: Optional[Path] = None
        self.result: Optional[RunResult] = None

    def _new_aggregator(self) -> MetricsAggregator:
        return MetricsAggregator(reservoir_size=self.config.reservoir_size, seed=self.config.seed)

    def stop(self) -> None:
        """Request an explicit stop of the run in progress; in-flight wallets are cancelled."""
        logger.info("stop requested")
        self._stop_requested.set()

    async def _run_wallet(self, start: ScheduledStart, queue_delay_ms: float) -> WalletRun:
        run = await execute_wallet_run(
            sequence_id=start.sequence_id,
            agent_factory=self.agent_factory,
            emit=self.aggregator.record,
            invitation_url=self.config.invitation_url,
            timeouts=self.config.timeouts,
            retry_policy=self.config.retry_policy,
            connect_options=self.config.connect_options,
            queue_delay_ms=queue_delay_ms,
            teardown_timeout_s=max(self.config.cancel_grace_s, 0.1),
        )
        if self._wallet_writer is not None:
            await self._wallet_writer.write(run.to_dict())
        return run

    async def _drive(self, coordinator: Coordinator) -> None:
        await coordinator.dispatch(iter_schedule(self.config.phases))
        await coordinator.drain()

    async def run(self) -> RunResult:
        """Execute the configured load test. Each call starts from fresh metrics;
        calls may not overlap.
        """
        if self._running:
            raise RuntimeError("a run is already in progress on this runner")
        self._running = True
        self.aggregator = self._new_aggregator()
        self._stop_requested = asyncio.Event()
        self._wallet_writer = None
        self.output_dir = None
        try:
            return await self._run_once()
        finally:
            self._running = False

    async def _run_once(self) -> RunResult:
        config = self.config
        run_timeout_s = (
            config.run_timeout_s if config.run_timeout_s is not None else default_run_timeout_s(config)
        )
        total_scheduled = count_scheduled(config.phases)
        resolved_config = None
        intermediate_writer: Optional[AsyncJSONLWriter] = None
        if config.output_dir is not None:
            self.output_dir = _ensure_output_dir(config.output_dir, config.run_name)
            resolved_config = resolved_config_dict(config, self.output_dir)
            _write_json(self.output_dir / "config.json", resolved_config)
            self._wallet_writer = AsyncJSONLWriter(self.output_dir / "wallets.jsonl")
            intermediate_writer = AsyncJSONLWriter(self.output_dir / "intermediate.jsonl")

        coordinator = Coordinator(
            wallet_runner=self._run_wallet,
            aggregator=self.aggregator,
            max_concurrency=config.max_concurrency,
            time_scale=config.time_scale,
        )
        self._coordinator = coordinator
        reporter = ProgressReporter(
            self.aggregator,
            interval_s=config.report_interval_s,
            gauges_fn=coordinator.gauges,
            on_snapshot=(
                (lambda snapshot: intermediate_writer.write(snapshot.to_dict()))
                if intermediate_writer is not None
                else None
            ),
        )

        logger.info(
            "run starting scheduled=%d phases=%d max_concurrency=%d run_timeout_s=%.1f",
            total_scheduled, len(config.phases), config.max_concurrency, run_timeout_s,
        )
        started_at = datetime.now(timezone.utc)
        timed_out = False
        stopped = False
        drive_task = asyncio.create_task(self._drive(coordinator))
        stop_task = asyncio.create_task(self._stop_requested.wait())
        try:
            await reporter.start()
            done, _ = await asyncio.wait(
                {drive_task, stop_task},
                timeout=run_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if drive_task not in done:
                if stop_task in done:
                    stopped = True
                    logger.warning("run stopped explicitly; cancelling in-flight wallets")
                else:
                    timed_out = True
                    logger.warning(
                        "run timeout after %.1fs; cancelling in-flight wallets", run_timeout_s
                    )
                drive_task.cancel()
                await asyncio.gather(drive_task, return_exceptions=True)
            await coordinator.stop(grace_s=config.cancel_grace_s)
        finally:
            stop_task.cancel()
            await asyncio.gather(stop_task, return_exceptions=True)
            if not drive_task.done():
                drive_task.cancel()
                await asyncio.gather(drive_task, return_exceptions=True)
            await reporter.stop()
            if self._wallet_writer is not None:
                self._wallet_writer.close()
            if intermediate_writer is not None:
                intermediate_writer.close()

        ended_at = datetime.now(timezone.utc)
        snapshot = self.aggregator.snapshot()
        total_completed = snapshot.counter("runs.completed")
        total_failed = snapshot.counter("runs.failed") + snapshot.counter("runs.crashed")
        total_admitted = coordinator.admitted
        self.result = RunResult(
            started_at=started_at.isoformat(),
            ended_at=ended_at.isoformat(),
            total_scheduled=total_scheduled,
            total_admitted=total_admitted,
            total_completed=total_completed,
            total_failed=total_failed,
            total_incomplete=max(0, total_admitted - total_completed - total_failed),
            peak_in_flight=coordinator.peak_in_flight,
            timed_out=timed_out,
            stopped=stopped,
            final_snapshot=snapshot,
            output_dir=str(self.output_dir) if self.output_dir else None,
        )
        logger.info(
            "run %s scheduled=%d admitted=%d completed=%d failed=%d incomplete=%d",
            self.result.status, self.result.total_scheduled, total_admitted,
            total_completed, total_failed, self.result.total_incomplete,
        )
        if self.output_dir is not None:
            self._write_outputs(resolved_config or {})
        return self.result

    def _write_outputs(self, resolved_config: dict[str, Any]) -> None:
        assert self.output_dir is not None and self.result is not None
        payload = self.result.to_dict()
        threshold_results = evaluate_thresholds(self.result.final_snapshot, self.config.thresholds)
        payload["thresholds"] = [item.to_dict() for item in threshold_results]
        payload["thresholds_passed"] = thresholds_passed(threshold_results)
        write_run_result_json(self.output_dir / "run_result.json", payload)
        write_prometheus_textfile(
            self.output_dir / "metrics.prom",
            self.result.final_snapshot,
            run_name=self.config.run_name,
        )
        write_summary_markdown(
            output_path=self.output_dir / "summary.md",
            run_name=self.config.run_name or "run",
            resolved_config=resolved_config,
            result=payload,
            threshold_results=threshold_results,
        )


async def run_load_test(config: RunConfig, agent_factory: AgentFactory) -> RunResult:
    runner = LoadTestRunner(config, agent_factory)
    return await runner.run()
