"""Tests for the concurrent metrics aggregator and progress reporter."""

import asyncio
import threading

import pytest

from metrics import (
    AggregateSnapshot,
    MetricEvent,
    MetricKind,
    MetricsAggregator,
    ProgressReporter,
    ReservoirHistogram,
    percentile,
)


def test_percentile_interpolates():
    assert percentile([], 50) is None
    assert percentile([1, 2, 3, 4], 50) == 2.5
    assert percentile([5, 1, 3], 0) == 1
    assert percentile([5, 1, 3], 100) == 5


class TestReservoirHistogram:
    def test_exact_stats_below_capacity(self):
        histogram = ReservoirHistogram(capacity=100)
        for value in range(1, 101):
            histogram.add(float(value))
        stats = histogram.stats()
        assert stats.count == 100
        assert stats.min == 1
        assert stats.max == 100
        assert stats.mean == pytest.approx(50.5)
        assert stats.p50 == pytest.approx(50.5)
        assert stats.p99 == pytest.approx(99.01)

    def test_reservoir_stays_bounded(self):
        histogram = ReservoirHistogram(capacity=500, seed=1)
        for value in range(100_000):
            histogram.add(float(value % 1000))
        stats = histogram.stats()
        assert histogram.sample_size == 500
        assert stats.count == 100_000
        assert stats.min == 0
        assert stats.max == 999
        assert stats.p50 == pytest.approx(500, abs=100)
        assert stats.p95 == pytest.approx(950, abs=60)

    def test_empty(self):
        stats = ReservoirHistogram().stats()
        assert stats.count == 0
        assert stats.p50 is None

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ReservoirHistogram(capacity=0)


class TestMetricsAggregator:
    def test_counters_and_histograms(self):
        aggregator = MetricsAggregator()
        aggregator.record(MetricEvent.counter("connection.success"))
        aggregator.record(MetricEvent.counter("connection.success", 2))
        aggregator.record(MetricEvent.histogram("connection.duration", 120))
        aggregator.record(MetricEvent.histogram("connection.duration", 80))

        snapshot = aggregator.snapshot()
        assert snapshot.counter("connection.success") == 3
        assert snapshot.counter("missing") == 0
        stats = snapshot.histogram("connection.duration")
        assert stats.count == 2
        assert stats.min == 80
        assert stats.max == 120
        assert stats.mean == 100

    def test_snapshot_is_idempotent(self):
        aggregator = MetricsAggregator(reservoir_size=50)
        for value in range(500):
            aggregator.observe("mediation.duration", value)
            aggregator.increment("mediation.success")
        first = aggregator.snapshot()
        second = aggregator.snapshot()
        assert first.same_values(second)
        assert first.to_dict()["histograms"] == second.to_dict()["histograms"]

    def test_snapshot_is_detached(self):
        aggregator = MetricsAggregator()
        aggregator.increment("test.success")
        snapshot = aggregator.snapshot()
        aggregator.increment("test.success")
        assert snapshot.counter("test.success") == 1
        assert aggregator.snapshot().counter("test.success") == 2

    def test_concurrent_threads_lose_nothing(self):
        aggregator = MetricsAggregator(reservoir_size=1000)
        threads_n, per_thread = 8, 5000

        def writer(idx):
            for i in range(per_thread):
                aggregator.increment("test.success")
                aggregator.observe("pickup.duration", float(idx * per_thread + i))

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = aggregator.snapshot()
        assert snapshot.counter("test.success") == threads_n * per_thread
        assert snapshot.histogram("pickup.duration").count == threads_n * per_thread
        assert aggregator.events_recorded == 2 * threads_n * per_thread

    @pytest.mark.asyncio
    async def test_concurrent_tasks_lose_nothing(self):
        aggregator = MetricsAggregator()

        async def writer():
            for _ in range(200):
                aggregator.increment("connection.success")
                await asyncio.sleep(0)

        await asyncio.gather(*[writer() for _ in range(50)])
        assert aggregator.snapshot().counter("connection.success") == 10_000

    def test_record_run(self):
        class Run:
            def __init__(self, ok):
                self.overall_success = ok

        aggregator = MetricsAggregator()
        aggregator.record_run(Run(True))
        aggregator.record_run(Run(False))
        aggregator.record_run(Run(True))
        snapshot = aggregator.snapshot()
        assert snapshot.counter("runs.completed") == 2
        assert snapshot.counter("runs.failed") == 1

    def test_snapshot_round_trips_through_dict(self):
        aggregator = MetricsAggregator()
        aggregator.increment("test.failed")
        aggregator.observe("connection.duration", 12.5)
        snapshot = aggregator.snapshot()
        restored = AggregateSnapshot.from_dict(snapshot.to_dict())
        assert restored.same_values(snapshot)


def test_metric_event_constructors():
    counter = MetricEvent.counter("test.success")
    histogram = MetricEvent.histogram("test.total_duration", 3)
    assert counter.kind is MetricKind.COUNTER and counter.value == 1
    assert histogram.kind is MetricKind.HISTOGRAM and histogram.value == 3.0
    assert counter.timestamp_ms > 0


@pytest.mark.asyncio
async def test_progress_reporter_collects_intermediate_snapshots():
    aggregator = MetricsAggregator()
    seen = []

    async def on_snapshot(snapshot):
        seen.append(snapshot)

    reporter = ProgressReporter(
        aggregator,
        interval_s=0.02,
        gauges_fn=lambda: {"in_flight": 0},
        on_snapshot=on_snapshot,
    )
    await reporter.start()
    aggregator.increment("test.success")
    await asyncio.sleep(0.11)
    await reporter.stop()

    assert len(reporter.snapshots) >= 2
    assert len(seen) == len(reporter.snapshots)
    assert reporter.snapshots[-1].counter("test.success") == 1


@pytest.mark.asyncio
async def test_progress_reporter_disabled_with_zero_interval():
    reporter = ProgressReporter(MetricsAggregator(), interval_s=0)
    await reporter.start()
    await reporter.stop()
    assert reporter.snapshots == []
