from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from errors import ErrorKind
from loadgen import WalletRun
from metrics import MetricsAggregator
from phases import ScheduledStart


logger = logging.getLogger("mediator_loadtest.coordinator")

# Runs one admitted wallet; receives the start and its queueing delay in ms.
WalletRunner = Callable[[ScheduledStart, float], Awaitable[WalletRun]]


class WalletRunHandle:
    def __init__(self, start: ScheduledStart) -> None:
        self.start = start
        self.task: Optional[asyncio.Task[Optional[WalletRun]]] = None
        self.admitted = False
        self.queued = False
        self.run: Optional[WalletRun] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    @property
    def terminal(self) -> bool:
        return self.run is not None and self.run.state.is_terminal

    async def wait(self) -> Optional[WalletRun]:
        if self.task is None:
            return None
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return None
            raise


class Coordinator:
    """Paces scheduled starts against the loop clock and bounds how many
    wallets are in flight at once. Starts arriving at a saturated ceiling
    are queued, never dropped.
    """

    def __init__(
        self,
        wallet_runner: WalletRunner,
        aggregator: MetricsAggregator,
        max_concurrency: int,
        time_scale: float = 1.0,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")
        self.wallet_runner = wallet_runner
        self.aggregator = aggregator
        self.max_concurrency = max_concurrency
        self.time_scale = time_scale
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._stop_event = asyncio.Event()
        # Queued or running handles only; finished ones are dropped.
        self._live: set[WalletRunHandle] = set()
        self._started_at: Optional[float] = None
        self._saturation_warned = False
        self.in_flight = 0
        self.peak_in_flight = 0
        self.dispatched = 0
        self.delayed = 0
        self.admitted = 0

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def handles(self) -> list[WalletRunHandle]:
        """Handles still queued or running."""
        return list(self._live)

    def gauges(self) -> dict[str, int]:
        return {
            "dispatched": self.dispatched,
            "in_flight": self.in_flight,
            "peak_in_flight": self.peak_in_flight,
        }

    def _loop_time(self) -> float:
        return asyncio.get_running_loop().time()

    def mark_started(self) -> None:
        if self._started_at is None:
            self._started_at = self._loop_time()

    async def _wait_until_due(self, start: ScheduledStart) -> bool:
        """Sleep until the start's offset; False if stopped meanwhile."""
        assert self._started_at is not None
        due_at = self._started_at + (start.offset_ms / 1000.0) * self.time_scale
        while not self._stop_event.is_set():
            remaining = due_at - self._loop_time()
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        return False

    def admit(self, start: ScheduledStart) -> WalletRunHandle:
        """Hand a due start to its own task. It waits for a slot under the
        ceiling before a wallet is created.
        """
        if self._stop_event.is_set():
            raise RuntimeError("coordinator is stopped; no further starts are admitted")
        handle = WalletRunHandle(start)
        if len(self._live) >= self.max_concurrency:
            handle.queued = True
            self.delayed += 1
            self.aggregator.increment("scheduler.delayed")
            if not self._saturation_warned:
                self._saturation_warned = True
                logger.warning(
                    "concurrency ceiling reached kind=%s max_concurrency=%d sequence_id=%d",
                    ErrorKind.SCHEDULING_OVERLOAD, self.max_concurrency, start.sequence_id,
                )
        handle.task = asyncio.create_task(
            self._execute(handle), name=f"wallet-{start.sequence_id}"
        )
        self._live.add(handle)
        handle.task.add_done_callback(lambda _task: self._live.discard(handle))
        self.dispatched += 1
        return handle

    async def _execute(self, handle: WalletRunHandle) -> Optional[WalletRun]:
        queued_at = self._loop_time()
        async with self._semaphore:
            if self._stop_event.is_set():
                return None
            queue_delay_ms = (self._loop_time() - queued_at) * 1000.0
            if handle.queued:
                self.aggregator.observe("scheduler.queue_delay", queue_delay_ms)
            handle.admitted = True
            self.admitted += 1
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                run = await self.wallet_runner(handle.start, queue_delay_ms)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("wallet crashed sequence_id=%d", handle.start.sequence_id)
                self.aggregator.increment("runs.crashed")
                return None
            finally:
                self.in_flight -= 1
            handle.run = run
            self.aggregator.record_run(run)
            return run

    async def dispatch(self, schedule: Iterable[ScheduledStart]) -> int:
        """Admit every start at its offset; returns how many were dispatched."""
        self.mark_started()
        count = 0
        for start in schedule:
            if not await self._wait_until_due(start):
                logger.info("dispatch stopped before sequence_id=%d", start.sequence_id)
                break
            self.admit(start)
            count += 1
        return count

    async def drain(self) -> None:
        """Wait until every dispatched wallet has finished."""
        while True:
            pending = [handle.task for handle in self._live if handle.task and not handle.task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def stop(self, grace_s: float = 5.0) -> None:
        """Stop admitting, cancel queued and in-flight wallets, and wait for
        their teardown for at most ``grace_s`` before giving up on them.
        """
        self._stop_event.set()
        tasks = [handle.task for handle in self._live if handle.task and not handle.task.done()]
        if not tasks:
            return
        logger.info("cancelling wallets count=%d grace_s=%.1f", len(tasks), grace_s)
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_s))
        if pending:
            logger.warning("wallets still unwinding after grace period count=%d", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.gather(*tasks, return_exceptions=True)
