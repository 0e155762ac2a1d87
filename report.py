from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from errors import ConfigurationError
from metrics import AggregateSnapshot


STAGES = ["connection", "mediation", "pickup"]
HISTOGRAM_STATS = {"count", "min", "max", "mean", "p50", "p95", "p99"}

# Default p95 latency ceilings in ms, applied unless --no-default-thresholds.
DEFAULT_THRESHOLDS: dict[str, float] = {
    "connection.duration.p95": 8000.0,
    "mediation.duration.p95": 5000.0,
}


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _rate(numerator: int, denominator: int) -> Optional[float]:
    if denominator <= 0:
        return None
    return float(numerator / denominator)


def compute_stage_summaries(snapshot: AggregateSnapshot) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for stage in STAGES + ["test"]:
        success = snapshot.counter(f"{stage}.success")
        failed = snapshot.counter(f"{stage}.failed")
        histogram_name = f"{stage}.total_duration" if stage == "test" else f"{stage}.duration"
        stats = snapshot.histogram(histogram_name)
        rows.append(
            {
                "stage": stage,
                "success": success,
                "failed": failed,
                "success_rate": _rate(success, success + failed),
                "duration_count": stats.count if stats else 0,
                "duration_ms_min": stats.min if stats else None,
                "duration_ms_mean": stats.mean if stats else None,
                "duration_ms_p50": stats.p50 if stats else None,
                "duration_ms_p95": stats.p95 if stats else None,
                "duration_ms_p99": stats.p99 if stats else None,
                "duration_ms_max": stats.max if stats else None,
            }
        )
    return rows


def error_breakdown(snapshot: AggregateSnapshot) -> dict[str, int]:
    return {
        name[len("errors."):]: value
        for name, value in sorted(snapshot.counters.items())
        if name.startswith("errors.")
    }


@dataclass
class ThresholdResult:
    metric: str
    limit: float
    observed: Optional[float]
    passed: Optional[bool]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _observe(snapshot: AggregateSnapshot, metric: str) -> Optional[float]:
    base, _, stat = metric.rpartition(".")
    if stat == "rate" and base:
        stage, _, outcome = base.rpartition(".")
        if not stage or outcome not in {"success", "failed"}:
            raise ConfigurationError(f"Unsupported rate threshold: {metric}")
        total = snapshot.counter(f"{stage}.success") + snapshot.counter(f"{stage}.failed")
        return _rate(snapshot.counter(base), total)
    if stat in HISTOGRAM_STATS and base in snapshot.histograms:
        value = getattr(snapshot.histograms[base], stat)
        return None if value is None else float(value)
    if stat in HISTOGRAM_STATS and base:
        return None
    if metric in snapshot.counters:
        return float(snapshot.counters[metric])
    return None


def evaluate_thresholds(
    snapshot: AggregateSnapshot,
    thresholds: Mapping[str, float],
) -> list[ThresholdResult]:
    """Every threshold is an upper bound. Metrics without data are reported
    with ``passed=None`` and do not fail the run.
    """
    results: list[ThresholdResult] = []
    for metric, limit in thresholds.items():
        observed = _observe(snapshot, metric)
        passed = None if observed is None else observed <= float(limit)
        results.append(ThresholdResult(metric=metric, limit=float(limit), observed=observed, passed=passed))
    return results


def thresholds_passed(results: list[ThresholdResult]) -> bool:
    return all(result.passed is not False for result in results)


def write_run_result_json(output_path: Path, payload: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def load_run_result_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    result: dict[str, Any],
    threshold_results: list[ThresholdResult],
) -> None:
    snapshot = AggregateSnapshot.from_dict(result["final_snapshot"])
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Mediator Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Run")
    lines.append("")
    lines.append(f"- Status: **{result['status']}**")
    lines.append(f"- Started: `{result['started_at']}`")
    lines.append(f"- Ended: `{result['ended_at']}`")
    lines.append(
        "- Wallets: "
        f"scheduled {result['total_scheduled']}, "
        f"admitted {result['total_admitted']}, "
        f"completed {result['total_completed']}, "
        f"failed {result['total_failed']}, "
        f"incomplete {result['total_incomplete']}"
    )
    lines.append(f"- Peak in flight: {result['peak_in_flight']}")
    lines.append(f"- Starts delayed by concurrency ceiling: {snapshot.counter('scheduler.delayed')}")
    lines.append("")
    lines.append("## Stages")
    lines.append("")
    lines.append(
        "| Stage | Success | Failed | Success % | p50 ms | p95 ms | p99 ms | Mean ms | Max ms |"
    )
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|")
    for row in compute_stage_summaries(snapshot):
        success_pct = row["success_rate"] * 100.0 if row["success_rate"] is not None else None
        lines.append(
            "| "
            f"{row['stage']} | "
            f"{row['success']} | "
            f"{row['failed']} | "
            f"{_fmt(success_pct)} | "
            f"{_fmt(row['duration_ms_p50'])} | "
            f"{_fmt(row['duration_ms_p95'])} | "
            f"{_fmt(row['duration_ms_p99'])} | "
            f"{_fmt(row['duration_ms_mean'])} | "
            f"{_fmt(row['duration_ms_max'])} |"
        )

    errors = error_breakdown(snapshot)
    if errors:
        lines.append("")
        lines.append("## Errors")
        lines.append("")
        lines.append("| Kind | Count |")
        lines.append("|---|---:|")
        for kind, count in errors.items():
            lines.append(f"| {kind} | {count} |")

    if threshold_results:
        lines.append("")
        lines.append("## Thresholds")
        lines.append("")
        lines.append("| Metric | Limit | Observed | Result |")
        lines.append("|---|---:|---:|---|")
        for item in threshold_results:
            verdict = "no data" if item.passed is None else ("pass" if item.passed else "FAIL")
            lines.append(
                f"| {item.metric} | {_fmt(item.limit, 3)} | {_fmt(item.observed, 3)} | {verdict} |"
            )

    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
