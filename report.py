from __future__ import annotations

import json
import math
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import RequestOutcome


@dataclass
class StepStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_latency_ms: float = 0.0


@dataclass(frozen=True)
class StepSummary:
    concurrency: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_latency_ms: float
    avg_latency_ms: float
    success_rate: float
    elapsed_s: float
    throughput_rps: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _ratio(numerator: float, denominator: float) -> float:
    # Empty steps report 0 rather than NaN.
    if denominator <= 0:
        return 0.0
    return float(numerator / denominator)


class StatsAggregator:
    # reset() and summarize() assume the step's workers have been joined.

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats = StepStats()

    def record(self, outcome: RequestOutcome) -> None:
        with self._lock:
            stats = self._stats
            stats.total_requests += 1
            if outcome.success:
                stats.successful_requests += 1
            else:
                stats.failed_requests += 1
            stats.total_latency_ms += float(outcome.latency_ms)

    def reset(self) -> None:
        with self._lock:
            self._stats = StepStats()

    def snapshot(self) -> StepStats:
        with self._lock:
            return StepStats(**asdict(self._stats))

    def summarize(self, concurrency: int, elapsed_s: float = 0.0) -> StepSummary:
        stats = self.snapshot()
        return StepSummary(
            concurrency=concurrency,
            total_requests=stats.total_requests,
            successful_requests=stats.successful_requests,
            failed_requests=stats.failed_requests,
            total_latency_ms=stats.total_latency_ms,
            avg_latency_ms=_ratio(stats.total_latency_ms, stats.total_requests),
            success_rate=_ratio(stats.successful_requests, stats.total_requests),
            elapsed_s=float(elapsed_s),
            throughput_rps=_ratio(stats.total_requests, elapsed_s),
        )


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def format_step_summary(summary: StepSummary) -> list[str]:
    return [
        f"Results for {summary.concurrency} concurrent users:",
        f"Total Requests: {summary.total_requests}",
        f"Successful Requests: {summary.successful_requests}",
        f"Failed Requests: {summary.failed_requests}",
        f"Average Latency: {_fmt(summary.avg_latency_ms)}ms",
        f"Success Rate: {_fmt(summary.success_rate * 100.0)}%",
        f"Throughput: {_fmt(summary.throughput_rps)} req/s over {_fmt(summary.elapsed_s)}s",
    ]


def write_step_summary_json(output_path: Path, step_summaries: list[StepSummary]) -> None:
    output_path.write_text(
        json.dumps([summary.to_dict() for summary in step_summaries], indent=2),
        encoding="utf-8",
    )


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    step_summaries: list[StepSummary],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Step Results")
    lines.append("")
    lines.append(
        "| Concurrency | Req | OK | Failed | Success % | Avg latency ms | Throughput req/s |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|")

    for summary in step_summaries:
        lines.append(
            "| "
            f"{summary.concurrency} | "
            f"{summary.total_requests} | "
            f"{summary.successful_requests} | "
            f"{summary.failed_requests} | "
            f"{_fmt(summary.success_rate * 100.0)} | "
            f"{_fmt(summary.avg_latency_ms)} | "
            f"{_fmt(summary.throughput_rps)} |"
        )

    lines.append("")
    lines.append(
        "Virtual users run closed loops with no think time; throughput reflects "
        "concurrency divided by latency, not an open arrival rate."
    )
    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
