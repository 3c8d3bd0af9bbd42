from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from pymongo import AsyncMongoClient

if TYPE_CHECKING:
    from logsink import LogSink


READ_OPCOUNTERS = ["query", "getmore"]
WRITE_OPCOUNTERS = ["insert", "update", "delete"]
LATENCY_SECTIONS = ["reads", "writes", "commands"]


def _safe_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _counter_delta(start: Optional[float], end: Optional[float]) -> float:
    # Counters reset on a server restart; a negative delta is not meaningful.
    if start is None or end is None:
        return 0.0
    return max(0.0, end - start)


@dataclass
class MongoMetricsSnapshot:
    timestamp_unix_ms: int
    scrape_ok: bool
    scrape_error: Optional[str] = None
    connections_current: Optional[float] = None
    connections_available: Optional[float] = None
    opcounters: dict[str, float] = field(default_factory=dict)
    mem_resident_mb: Optional[float] = None
    mem_virtual_mb: Optional[float] = None
    data_size: Optional[float] = None
    storage_size: Optional[float] = None
    indexes: Optional[float] = None
    active_operations: Optional[int] = None
    network_bytes_in: Optional[float] = None
    network_bytes_out: Optional[float] = None
    network_requests: Optional[float] = None
    op_latency_us: Optional[float] = None
    op_latency_ops: Optional[float] = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


def parse_mongo_metrics(
    server_status: dict[str, Any],
    db_stats: dict[str, Any],
    current_op: dict[str, Any],
    timestamp_unix_ms: int,
) -> MongoMetricsSnapshot:
    connections = server_status.get("connections") or {}
    memory = server_status.get("mem") or {}
    network = server_status.get("network") or {}
    opcounters_raw = server_status.get("opcounters") or {}
    op_latencies = server_status.get("opLatencies") or {}

    opcounters: dict[str, float] = {}
    for name, value in opcounters_raw.items():
        number = _safe_number(value)
        if number is not None:
            opcounters[name] = number

    latency_us: Optional[float] = None
    latency_ops: Optional[float] = None
    for section in LATENCY_SECTIONS:
        entry = op_latencies.get(section)
        if not isinstance(entry, dict):
            continue
        latency = _safe_number(entry.get("latency"))
        ops = _safe_number(entry.get("ops"))
        if latency is None or ops is None:
            continue
        latency_us = (latency_us or 0.0) + latency
        latency_ops = (latency_ops or 0.0) + ops

    inprog = current_op.get("inprog")
    return MongoMetricsSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        scrape_ok=True,
        connections_current=_safe_number(connections.get("current")),
        connections_available=_safe_number(connections.get("available")),
        opcounters=opcounters,
        mem_resident_mb=_safe_number(memory.get("resident")),
        mem_virtual_mb=_safe_number(memory.get("virtual")),
        data_size=_safe_number(db_stats.get("dataSize")),
        storage_size=_safe_number(db_stats.get("storageSize")),
        indexes=_safe_number(db_stats.get("indexes")),
        active_operations=len(inprog) if isinstance(inprog, list) else None,
        network_bytes_in=_safe_number(network.get("bytesIn")),
        network_bytes_out=_safe_number(network.get("bytesOut")),
        network_requests=_safe_number(network.get("numRequests")),
        op_latency_us=latency_us,
        op_latency_ops=latency_ops,
    )


def summarize_mongo_snapshots(
    snapshots: list[MongoMetricsSnapshot],
    duration_s: float,
) -> dict[str, Any]:
    ok = [snapshot for snapshot in snapshots if snapshot.scrape_ok]
    errors = len(snapshots) - len(ok)
    reads = 0.0
    writes = 0.0
    avg_latency_ms = 0.0
    if len(ok) >= 2:
        first, last = ok[0], ok[-1]
        reads = sum(
            _counter_delta(first.opcounters.get(name), last.opcounters.get(name))
            for name in READ_OPCOUNTERS
        )
        writes = sum(
            _counter_delta(first.opcounters.get(name), last.opcounters.get(name))
            for name in WRITE_OPCOUNTERS
        )
        latency_delta = _counter_delta(first.op_latency_us, last.op_latency_us)
        ops_delta = _counter_delta(first.op_latency_ops, last.op_latency_ops)
        if ops_delta > 0:
            avg_latency_ms = float(latency_delta / ops_delta / 1000.0)

    connections = [
        snapshot.connections_current
        for snapshot in ok
        if snapshot.connections_current is not None
    ]
    return {
        "duration_s": float(duration_s),
        "samples": len(snapshots),
        "reads": int(reads),
        "writes": int(writes),
        "total_operations": int(reads + writes),
        "errors": errors,
        "avg_latency_ms": avg_latency_ms,
        "peak_connections": int(max(connections)) if connections else 0,
    }


class MongoMetricsSampler:
    def __init__(self, uri: str, sink: LogSink, poll_interval_s: float = 5.0) -> None:
        self.uri = uri
        self.sink = sink
        self.poll_interval_s = poll_interval_s
        self._client: Optional[AsyncMongoClient] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._snapshots: list[MongoMetricsSnapshot] = []
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

    @property
    def snapshots(self) -> list[MongoMetricsSnapshot]:
        return list(self._snapshots)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._started_at = time.monotonic()
        self._stopped_at = None
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._client is not None:
            await self._client.close()
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

    async def collect_once(self) -> MongoMetricsSnapshot:
        timestamp_unix_ms = int(time.time() * 1000)
        try:
            if self._client is None:
                self._client = AsyncMongoClient(self.uri, serverSelectionTimeoutMS=5000)
            admin = self._client.admin
            server_status = await admin.command("serverStatus")
            db_stats = await admin.command("dbStats")
            current_op = await admin.command("currentOp", active=True)
            snapshot = parse_mongo_metrics(
                server_status=server_status,
                db_stats=db_stats,
                current_op=current_op,
                timestamp_unix_ms=timestamp_unix_ms,
            )
            self.sink.write("INFO", f"Current MongoDB Metrics: {snapshot.to_row()}")
        except Exception as exc:  # noqa: BLE001
            snapshot = MongoMetricsSnapshot(
                timestamp_unix_ms=timestamp_unix_ms,
                scrape_ok=False,
                scrape_error=str(exc),
            )
            self.sink.write("ERROR", f"Error collecting metrics: {exc}")
        self._snapshots.append(snapshot)
        return snapshot

    def summary(self) -> dict[str, Any]:
        if self._started_at is None:
            duration_s = 0.0
        else:
            duration_s = (self._stopped_at or time.monotonic()) - self._started_at
        return summarize_mongo_snapshots(self._snapshots, duration_s)

    def print_summary(self) -> None:
        summary = self.summary()
        self.sink.write("INFO", "MongoDB Load Test Summary:")
        self.sink.write("INFO", "---------------------------")
        self.sink.write("INFO", f"Duration: {summary['duration_s']:.2f} seconds")
        self.sink.write("INFO", f"Total Operations: {summary['total_operations']}")
        self.sink.write("INFO", f"Read Operations: {summary['reads']}")
        self.sink.write("INFO", f"Write Operations: {summary['writes']}")
        self.sink.write("INFO", f"Errors: {summary['errors']}")
        self.sink.write("INFO", f"Average Latency: {summary['avg_latency_ms']:.2f}ms")
        self.sink.write("INFO", f"Peak Connections: {summary['peak_connections']}")
