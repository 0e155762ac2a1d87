from __future__ import annotations

import re
from pathlib import Path
from typing import Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    Metric,
    SummaryMetricFamily,
)

from metrics import AggregateSnapshot


METRIC_NAMESPACE = "mediator_loadtest"
QUANTILE_FIELDS = [("0.5", "p50"), ("0.95", "p95"), ("0.99", "p99")]

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def prometheus_name(name: str, namespace: str = METRIC_NAMESPACE) -> str:
    """``connection.duration`` -> ``mediator_loadtest_connection_duration``."""
    normalized = _INVALID_NAME_CHARS.sub("_", name).strip("_").lower()
    return f"{namespace}_{normalized}" if namespace else normalized


class SnapshotCollector:
    """Exposes one AggregateSnapshot through a prometheus_client registry."""

    def __init__(
        self,
        snapshot: AggregateSnapshot,
        namespace: str = METRIC_NAMESPACE,
        run_name: Optional[str] = None,
    ) -> None:
        self.snapshot = snapshot
        self.namespace = namespace
        self.run_name = run_name

    def _labels(self) -> tuple[list[str], list[str]]:
        if self.run_name:
            return ["run"], [self.run_name]
        return [], []

    def collect(self) -> Iterator[Metric]:
        label_names, label_values = self._labels()
        for name, value in sorted(self.snapshot.counters.items()):
            family = CounterMetricFamily(
                prometheus_name(name, self.namespace),
                f"Load test counter {name}",
                labels=label_names,
            )
            family.add_metric(label_values, float(value))
            yield family

        for name, stats in sorted(self.snapshot.histograms.items()):
            base = prometheus_name(name, self.namespace) + "_ms"
            summary = SummaryMetricFamily(
                base,
                f"Load test latency {name} in milliseconds",
                labels=label_names,
            )
            summary.add_metric(label_values, count_value=stats.count, sum_value=stats.total)
            yield summary

            quantiles = GaugeMetricFamily(
                f"{base}_quantile",
                f"Approximate quantiles of {name} in milliseconds",
                labels=label_names + ["quantile"],
            )
            for quantile, attribute in QUANTILE_FIELDS:
                value = getattr(stats, attribute)
                if value is not None:
                    quantiles.add_metric(label_values + [quantile], float(value))
            yield quantiles

            extremes = GaugeMetricFamily(
                f"{base}_extreme",
                f"Observed min and max of {name} in milliseconds",
                labels=label_names + ["bound"],
            )
            extremes.add_metric(label_values + ["min"], float(stats.min))
            extremes.add_metric(label_values + ["max"], float(stats.max))
            yield extremes


def render_prometheus(
    snapshot: AggregateSnapshot,
    namespace: str = METRIC_NAMESPACE,
    run_name: Optional[str] = None,
) -> str:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(snapshot, namespace=namespace, run_name=run_name))
    return generate_latest(registry).decode("utf-8")


def write_prometheus_textfile(
    output_path: Path,
    snapshot: AggregateSnapshot,
    run_name: Optional[str] = None,
) -> None:
    output_path.write_text(render_prometheus(snapshot, run_name=run_name), encoding="utf-8")
