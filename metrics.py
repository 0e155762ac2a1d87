from __future__ import annotations

import asyncio
import logging
import math
import random
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


logger = logging.getLogger("mediator_loadtest.metrics")

DEFAULT_RESERVOIR_SIZE = 10_000


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


class MetricKind(str, Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricEvent:
    kind: MetricKind
    name: str
    value: float
    timestamp_ms: int

    @classmethod
    def counter(cls, name: str, value: float = 1) -> "MetricEvent":
        return cls(MetricKind.COUNTER, name, value, now_unix_ms())

    @classmethod
    def histogram(cls, name: str, value: float) -> "MetricEvent":
        return cls(MetricKind.HISTOGRAM, name, float(value), now_unix_ms())


@dataclass(frozen=True)
class HistogramStats:
    count: int
    min: float
    max: float
    mean: float
    p50: Optional[float]
    p95: Optional[float]
    p99: Optional[float]

    @property
    def total(self) -> float:
        return self.mean * self.count


@dataclass(frozen=True)
class AggregateSnapshot:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, HistogramStats] = field(default_factory=dict)
    taken_at_ms: int = 0

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def histogram(self, name: str) -> Optional[HistogramStats]:
        return self.histograms.get(name)

    def same_values(self, other: "AggregateSnapshot") -> bool:
        return self.counters == other.counters and self.histograms == other.histograms

    def to_dict(self) -> dict[str, Any]:
        return {
            "taken_at_ms": self.taken_at_ms,
            "counters": dict(sorted(self.counters.items())),
            "histograms": {
                name: asdict(stats) for name, stats in sorted(self.histograms.items())
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AggregateSnapshot":
        return cls(
            counters={name: int(value) for name, value in payload.get("counters", {}).items()},
            histograms={
                name: HistogramStats(**stats)
                for name, stats in payload.get("histograms", {}).items()
            },
            taken_at_ms=int(payload.get("taken_at_ms", 0)),
        )


class ReservoirHistogram:
    """Exact count/min/max/sum plus a bounded uniform sample for percentiles.

    Not thread-safe on its own; the aggregator serializes access.
    """

    def __init__(self, capacity: int = DEFAULT_RESERVOIR_SIZE, seed: Any = 0) -> None:
        if capacity <= 0:
            raise ValueError(f"reservoir capacity must be > 0, got {capacity}")
        self.capacity = capacity
        self.count = 0
        self.total = 0.0
        self.minimum = math.inf
        self.maximum = -math.inf
        self._samples: list[float] = []
        self._rng = random.Random(seed)

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        if value < self.minimum:
            self.minimum = value
        if value > self.maximum:
            self.maximum = value
        if len(self._samples) < self.capacity:
            self._samples.append(value)
            return
        # Algorithm R: keep each of the n values seen with probability k/n.
        slot = self._rng.randrange(self.count)
        if slot < self.capacity:
            self._samples[slot] = value

    @property
    def sample_size(self) -> int:
        return len(self._samples)

    def stats(self) -> HistogramStats:
        ordered = sorted(self._samples)
        return HistogramStats(
            count=self.count,
            min=float(self.minimum) if self.count else 0.0,
            max=float(self.maximum) if self.count else 0.0,
            mean=float(self.total / self.count) if self.count else 0.0,
            p50=percentile(ordered, 50.0),
            p95=percentile(ordered, 95.0),
            p99=percentile(ordered, 99.0),
        )


class MetricsAggregator:
    """Concurrent-safe sink for counters and latency histograms.

    Every mutation and every snapshot happens under one lock, so a snapshot
    reflects exactly the events recorded before it was taken.
    """

    def __init__(self, reservoir_size: int = DEFAULT_RESERVOIR_SIZE, seed: int = 42) -> None:
        self.reservoir_size = reservoir_size
        self.seed = seed
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, ReservoirHistogram] = {}
        self._lock = threading.Lock()
        self._events_recorded = 0

    def record(self, event: MetricEvent) -> None:
        with self._lock:
            self._events_recorded += 1
            if event.kind is MetricKind.COUNTER:
                self._counters[event.name] = self._counters.get(event.name, 0) + int(event.value)
                return
            histogram = self._histograms.get(event.name)
            if histogram is None:
                histogram = ReservoirHistogram(
                    capacity=self.reservoir_size,
                    seed=f"{self.seed}:{event.name}",
                )
                self._histograms[event.name] = histogram
            histogram.add(float(event.value))

    def increment(self, name: str, value: int = 1) -> None:
        self.record(MetricEvent.counter(name, value))

    def observe(self, name: str, value: float) -> None:
        self.record(MetricEvent.histogram(name, value))

    def record_run(self, run: Any) -> None:
        """Count a WalletRun that reached a terminal state."""
        self.increment("runs.completed" if run.overall_success else "runs.failed")

    @property
    def events_recorded(self) -> int:
        with self._lock:
            return self._events_recorded

    def snapshot(self) -> AggregateSnapshot:
        with self._lock:
            return AggregateSnapshot(
                counters=dict(self._counters),
                histograms={
                    name: histogram.stats() for name, histogram in self._histograms.items()
                },
                taken_at_ms=now_unix_ms(),
            )


def _progress_line(snapshot: AggregateSnapshot, extra: dict[str, Any]) -> str:
    parts = [f"{key}={value}" for key, value in extra.items()]
    for name in ("test.success", "test.failed", "scheduler.delayed"):
        parts.append(f"{name}={snapshot.counter(name)}")
    for name in ("connection.duration", "mediation.duration", "pickup.duration"):
        stats = snapshot.histogram(name)
        if stats is not None and stats.p95 is not None:
            parts.append(f"{name}.p95={stats.p95:.1f}ms")
    return " ".join(parts)


class ProgressReporter:
    """Takes an intermediate snapshot every ``interval_s`` and logs it."""

    def __init__(
        self,
        aggregator: MetricsAggregator,
        interval_s: float = 5.0,
        gauges_fn: Optional[Callable[[], dict[str, Any]]] = None,
        on_snapshot: Optional[Callable[[AggregateSnapshot], Any]] = None,
    ) -> None:
        self.aggregator = aggregator
        self.interval_s = interval_s
        self.gauges_fn = gauges_fn
        self.on_snapshot = on_snapshot
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._snapshots: list[AggregateSnapshot] = []

    async def start(self) -> None:
        if self._task is not None or self.interval_s <= 0:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def snapshots(self) -> list[AggregateSnapshot]:
        return list(self._snapshots)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            await self.report_once()

    async def report_once(self) -> AggregateSnapshot:
        snapshot = self.aggregator.snapshot()
        self._snapshots.append(snapshot)
        gauges = self.gauges_fn() if self.gauges_fn is not None else {}
        logger.info("progress %s", _progress_line(snapshot, gauges))
        if self.on_snapshot is not None:
            result = self.on_snapshot(snapshot)
            if asyncio.iscoroutine(result):
                await result
        return snapshot
