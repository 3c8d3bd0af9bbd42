from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import httpx
from prometheus_client.parser import text_string_to_metric_families

if TYPE_CHECKING:
    from logsink import LogSink


@dataclass
class ExporterSnapshot:
    timestamp_unix_ms: int
    scrape_ok: bool
    scrape_error: Optional[str] = None
    values: dict[str, float] = field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


def parse_exporter_metrics(
    text: str,
    timestamp_unix_ms: int,
    metric_names: Optional[list[str]] = None,
) -> ExporterSnapshot:
    wanted = set(metric_names) if metric_names else None
    values: dict[str, float] = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            name = sample.name
            if name.endswith("_bucket"):
                continue
            if wanted is not None and name not in wanted:
                continue
            values[name] = values.get(name, 0.0) + float(sample.value)
    return ExporterSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        scrape_ok=True,
        values=values,
    )


def summarize_exporter_snapshots(snapshots: list[ExporterSnapshot]) -> dict[str, Any]:
    last: dict[str, float] = {}
    peak: dict[str, float] = {}
    errors = 0
    for snapshot in snapshots:
        if not snapshot.scrape_ok:
            errors += 1
            continue
        for name, value in snapshot.values.items():
            last[name] = value
            peak[name] = max(peak.get(name, value), value)
    return {
        "samples": len(snapshots),
        "errors": errors,
        "last": last,
        "peak": peak,
    }


class PrometheusMetricsSampler:
    def __init__(
        self,
        metrics_url: str,
        sink: LogSink,
        poll_interval_s: float = 5.0,
        metric_names: Optional[list[str]] = None,
        request_timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.metrics_url = metrics_url
        self.sink = sink
        self.poll_interval_s = poll_interval_s
        self.metric_names = list(metric_names) if metric_names else None
        self.request_timeout_s = request_timeout_s
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._snapshots: list[ExporterSnapshot] = []
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

    @property
    def snapshots(self) -> list[ExporterSnapshot]:
        return list(self._snapshots)

    def _new_client(self) -> httpx.AsyncClient:
        if self.transport is not None:
            return httpx.AsyncClient(timeout=self.request_timeout_s, transport=self.transport)
        return httpx.AsyncClient(timeout=self.request_timeout_s)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._started_at = time.monotonic()
        self._stopped_at = None
        if self._client is None:
            self._client = self._new_client()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._started_at is not None and self._stopped_at is None:
            self._stopped_at = time.monotonic()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            loop_started = time.monotonic()
            await self.collect_once()
            elapsed = time.monotonic() - loop_started
            sleep_for = max(0.0, self.poll_interval_s - elapsed)
            if sleep_for <= 0.0:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    async def collect_once(self) -> ExporterSnapshot:
        timestamp_unix_ms = int(time.time() * 1000)
        if self._client is None:
            self._client = self._new_client()

        try:
            response = await self._client.get(self.metrics_url, timeout=self.request_timeout_s)
            if response.status_code != 200:
                snapshot = ExporterSnapshot(
                    timestamp_unix_ms=timestamp_unix_ms,
                    scrape_ok=False,
                    scrape_error=f"HTTP {response.status_code}",
                )
            else:
                snapshot = parse_exporter_metrics(
                    text=response.text,
                    timestamp_unix_ms=timestamp_unix_ms,
                    metric_names=self.metric_names,
                )
        except Exception as exc:  # noqa: BLE001
            snapshot = ExporterSnapshot(
                timestamp_unix_ms=timestamp_unix_ms,
                scrape_ok=False,
                scrape_error=str(exc),
            )

        if snapshot.scrape_ok:
            self.sink.write("INFO", f"Current exporter metrics: {snapshot.values}")
        else:
            self.sink.write("ERROR", f"Error collecting metrics: {snapshot.scrape_error}")
        self._snapshots.append(snapshot)
        return snapshot

    def print_summary(self) -> None:
        summary = summarize_exporter_snapshots(self._snapshots)
        if self._started_at is None:
            duration_s = 0.0
        else:
            duration_s = (self._stopped_at or time.monotonic()) - self._started_at
        self.sink.write("INFO", "Exporter Metrics Summary:")
        self.sink.write("INFO", "---------------------------")
        self.sink.write("INFO", f"Duration: {duration_s:.2f} seconds")
        self.sink.write("INFO", f"Samples: {summary['samples']}")
        self.sink.write("INFO", f"Errors: {summary['errors']}")
        for name in sorted(summary["peak"]):
            self.sink.write(
                "INFO",
                f"{name}: last={summary['last'][name]:.2f} peak={summary['peak'][name]:.2f}",
            )
