from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from agent import AgentFactory, MediatorAgent
from errors import ErrorKind
from metrics import MetricEvent, now_unix_ms


logger = logging.getLogger("mediator_loadtest.loadgen")

MetricSink = Callable[[MetricEvent], None]


class WalletState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REQUESTING_MEDIATION = "requesting_mediation"
    MEDIATED = "mediated"
    PICKING_UP = "picking_up"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WalletState.COMPLETED, WalletState.FAILED)


class WalletId(NamedTuple):
    sequence_id: int
    created_at_ms: int

    def __str__(self) -> str:
        return f"wallet-{self.sequence_id:06d}-{self.created_at_ms}"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0

    def next_delay(self, attempt: int) -> Optional[float]:
        """Delay before the attempt after ``attempt`` (1-based), or None to give up."""
        if attempt >= self.max_attempts:
            return None
        return float(self.base_delay_s * (self.multiplier ** (attempt - 1)))

    def worst_case_backoff_s(self) -> float:
        return float(
            sum(self.next_delay(attempt) or 0.0 for attempt in range(1, self.max_attempts))
        )


@dataclass(frozen=True)
class StageTimeouts:
    connection_s: float = 15.0
    mediation_s: float = 10.0
    pickup_s: float = 5.0


@dataclass(frozen=True)
class StageOutcome:
    duration_ms: float
    success: bool
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_kind": str(self.error_kind) if self.error_kind else None,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class WalletRun:
    wallet_id: WalletId
    state: WalletState = WalletState.CREATED
    stage_outcomes: dict[str, StageOutcome] = field(default_factory=dict)
    overall_success: bool = False
    error_kind: Optional[ErrorKind] = None
    queue_delay_ms: float = 0.0
    start_time_unix_ms: int = 0
    end_time_unix_ms: Optional[int] = None
    total_duration_ms: Optional[float] = None

    @property
    def id(self) -> str:
        return str(self.wallet_id)

    @property
    def sequence_id(self) -> int:
        return self.wallet_id.sequence_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence_id": self.sequence_id,
            "state": self.state.value,
            "overall_success": self.overall_success,
            "error_kind": str(self.error_kind) if self.error_kind else None,
            "queue_delay_ms": self.queue_delay_ms,
            "start_time_unix_ms": self.start_time_unix_ms,
            "end_time_unix_ms": self.end_time_unix_ms,
            "total_duration_ms": self.total_duration_ms,
            "stages": {name: outcome.to_dict() for name, outcome in self.stage_outcomes.items()},
        }


class _StageSpec(NamedTuple):
    name: str
    active_state: WalletState
    done_state: WalletState
    timeout_kind: ErrorKind
    error_kind: ErrorKind


CONNECTION_STAGE = _StageSpec(
    "connection",
    WalletState.CONNECTING,
    WalletState.CONNECTED,
    ErrorKind.CONNECTION_TIMEOUT,
    ErrorKind.CONNECTION_ERROR,
)
MEDIATION_STAGE = _StageSpec(
    "mediation",
    WalletState.REQUESTING_MEDIATION,
    WalletState.MEDIATED,
    ErrorKind.MEDIATION_TIMEOUT,
    ErrorKind.MEDIATION_ERROR,
)
PICKUP_STAGE = _StageSpec(
    "pickup",
    WalletState.PICKING_UP,
    WalletState.COMPLETED,
    ErrorKind.PICKUP_TIMEOUT,
    ErrorKind.PICKUP_ERROR,
)


class StageFailed(Exception):
    """A stage exhausted its attempts. Never escapes ``WalletFlow.run``."""

    def __init__(self, stage: str, outcome: StageOutcome) -> None:
        self.stage = stage
        self.outcome = outcome
        super().__init__(f"{stage} failed: {outcome.error_kind} ({outcome.error})")


class _StageTimeout(Exception):
    pass


class WalletFlow:
    """Drives one wallet through connect -> mediate -> pickup.

    Owns its agent and its WalletRun; the only thing it shares with other
    wallets is the metric sink.
    """

    def __init__(
        self,
        run: WalletRun,
        agent: MediatorAgent,
        emit: MetricSink,
        invitation_url: str,
        timeouts: StageTimeouts = StageTimeouts(),
        retry_policy: RetryPolicy = RetryPolicy(),
        connect_options: Optional[dict[str, Any]] = None,
        teardown_timeout_s: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.run = run
        self.agent = agent
        self.emit = emit
        self.invitation_url = invitation_url
        self.timeouts = timeouts
        self.retry_policy = retry_policy
        self.connect_options = dict(connect_options or {})
        self.teardown_timeout_s = teardown_timeout_s
        self._sleep = sleep

    def _transition(self, state: WalletState) -> None:
        logger.debug("wallet=%s state %s -> %s", self.run.id, self.run.state.value, state.value)
        self.run.state = state

    async def _connect_once(self) -> Any:
        handle = await self.agent.connect(self.invitation_url, self.connect_options)
        completed = await self.agent.wait_for_connection_completed(
            handle, self.timeouts.connection_s
        )
        if completed is None:
            raise _StageTimeout("connection completion timeout")
        return completed

    async def _run_stage(
        self,
        spec: _StageSpec,
        timeout_s: float,
        attempt_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        self._transition(spec.active_state)
        stage_started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.wait_for(attempt_fn(), timeout=timeout_s)
            except asyncio.CancelledError:
                raise
            except (asyncio.TimeoutError, _StageTimeout) as exc:
                error_kind = spec.timeout_kind
                error_text = str(exc) or f"{spec.name} timeout after {timeout_s * 1000:.0f}ms"
            except Exception as exc:  # noqa: BLE001
                error_kind = spec.error_kind
                error_text = f"{type(exc).__name__}: {exc}"
            else:
                duration_ms = (time.monotonic() - stage_started) * 1000.0
                self.run.stage_outcomes[spec.name] = StageOutcome(
                    duration_ms=duration_ms,
                    success=True,
                    attempts=attempt,
                )
                self.emit(MetricEvent.histogram(f"{spec.name}.duration", duration_ms))
                self.emit(MetricEvent.counter(f"{spec.name}.success"))
                logger.info(
                    "wallet=%s stage=%s ok duration_ms=%.1f attempts=%d",
                    self.run.id, spec.name, duration_ms, attempt,
                )
                self._transition(spec.done_state)
                return result

            delay_s = self.retry_policy.next_delay(attempt)
            if delay_s is None:
                outcome = StageOutcome(
                    duration_ms=(time.monotonic() - stage_started) * 1000.0,
                    success=False,
                    error_kind=error_kind,
                    attempts=attempt,
                    error=error_text,
                )
                self.run.stage_outcomes[spec.name] = outcome
                raise StageFailed(spec.name, outcome)
            logger.debug(
                "wallet=%s stage=%s attempt=%d failed kind=%s retry_in_s=%.2f error=%s",
                self.run.id, spec.name, attempt, error_kind, delay_s, error_text,
            )
            await self._sleep(delay_s)

    async def _teardown(self) -> None:
        try:
            await asyncio.wait_for(self.agent.shutdown(), timeout=self.teardown_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("wallet=%s agent shutdown failed: %s", self.run.id, exc)

    def _fail(self, failure: StageFailed) -> None:
        self.run.overall_success = False
        self.run.error_kind = failure.outcome.error_kind
        self._transition(WalletState.FAILED)
        self.emit(MetricEvent.counter(f"{failure.stage}.failed"))
        self.emit(MetricEvent.counter(f"errors.{failure.outcome.error_kind}"))
        self.emit(MetricEvent.counter("test.failed"))
        logger.warning(
            "wallet=%s failed stage=%s kind=%s attempts=%d error=%s",
            self.run.id, failure.stage, failure.outcome.error_kind,
            failure.outcome.attempts, failure.outcome.error,
        )

    async def _pickup(self, grant: Any) -> None:
        try:
            await self._run_stage(
                PICKUP_STAGE,
                self.timeouts.pickup_s,
                lambda: self.agent.initiate_pickup(grant),
            )
        except StageFailed as failure:
            # Pickup is non-fatal: the wallet still completes successfully.
            self.emit(MetricEvent.counter("pickup.failed"))
            self.emit(MetricEvent.counter(f"errors.{failure.outcome.error_kind}"))
            logger.warning(
                "wallet=%s pickup failed but continuing kind=%s error=%s",
                self.run.id, failure.outcome.error_kind, failure.outcome.error,
            )
            self._transition(WalletState.COMPLETED)

    async def execute(self) -> WalletRun:
        self.run.start_time_unix_ms = now_unix_ms()
        started = time.monotonic()
        logger.debug("wallet=%s starting queue_delay_ms=%.1f", self.run.id, self.run.queue_delay_ms)
        try:
            connection = await self._run_stage(
                CONNECTION_STAGE, self.timeouts.connection_s, self._connect_once
            )
            grant = await self._run_stage(
                MEDIATION_STAGE,
                self.timeouts.mediation_s,
                lambda: self.agent.request_mediation(connection),
            )
            await self._pickup(grant)
        except StageFailed as failure:
            self._fail(failure)
        else:
            self.run.overall_success = True
            self.run.total_duration_ms = (time.monotonic() - started) * 1000.0
            self.emit(MetricEvent.histogram("test.total_duration", self.run.total_duration_ms))
            self.emit(MetricEvent.counter("test.success"))
            logger.info(
                "wallet=%s completed total_duration_ms=%.1f",
                self.run.id, self.run.total_duration_ms,
            )
        finally:
            await self._teardown()
            self.run.end_time_unix_ms = now_unix_ms()
        if self.run.total_duration_ms is None:
            self.run.total_duration_ms = (time.monotonic() - started) * 1000.0
        return self.run


async def execute_wallet_run(
    sequence_id: int,
    agent_factory: AgentFactory,
    emit: MetricSink,
    invitation_url: str,
    timeouts: StageTimeouts = StageTimeouts(),
    retry_policy: RetryPolicy = RetryPolicy(),
    connect_options: Optional[dict[str, Any]] = None,
    queue_delay_ms: float = 0.0,
    teardown_timeout_s: float = 5.0,
) -> WalletRun:
    run = WalletRun(
        wallet_id=WalletId(sequence_id=sequence_id, created_at_ms=now_unix_ms()),
        queue_delay_ms=queue_delay_ms,
    )
    agent = agent_factory(run.id)
    flow = WalletFlow(
        run=run,
        agent=agent,
        emit=emit,
        invitation_url=invitation_url,
        timeouts=timeouts,
        retry_policy=retry_policy,
        connect_options=connect_options,
        teardown_timeout_s=teardown_timeout_s,
    )
    return await flow.execute()
