from __future__ import annotations

import asyncio
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Protocol

import httpx

from loadgen import DEFAULT_HEADERS, RequestSettings, worker_loop
from logsink import LogSink
from report import StatsAggregator, StepSummary, format_step_summary


STATE_IDLE = "idle"
STATE_RAMPING_UP = "ramping_up"
STATE_RUNNING = "running"
STATE_REPORTING = "reporting"
STATE_DONE = "done"
STATE_FAILED = "failed"


@dataclass(frozen=True)
class RunConfig:
    url: str
    method: str = "GET"
    payload: Any = None
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    start_users: int = 1
    max_users: int = 100
    increment_by: int = 10
    duration_per_step_s: float = 60.0
    ramp_up_s: float = 10.0
    timeout_s: float = 30.0
    max_connections: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url is required")
        for name in ("duration_per_step_s", "ramp_up_s", "timeout_s"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
        if self.start_users < 1:
            raise ValueError(f"start_users must be >= 1, got {self.start_users}")
        if self.max_users < self.start_users:
            raise ValueError(
                f"max_users must be >= start_users, got {self.max_users} < {self.start_users}"
            )
        if self.increment_by < 1:
            raise ValueError(f"increment_by must be >= 1, got {self.increment_by}")
        if self.duration_per_step_s < 0:
            raise ValueError(
                f"duration_per_step_s must be >= 0, got {self.duration_per_step_s}"
            )
        if self.ramp_up_s < 0:
            raise ValueError(f"ramp_up_s must be >= 0, got {self.ramp_up_s}")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.max_connections is not None and self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")

    def request_settings(self) -> RequestSettings:
        return RequestSettings(
            url=self.url,
            method=self.method.upper(),
            headers=dict(self.headers),
            payload=self.payload,
            timeout_s=float(self.timeout_s),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsSampler(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def print_summary(self) -> None: ...


def step_sequence(config: RunConfig) -> list[int]:
    steps: list[int] = []
    users = config.start_users
    while users <= config.max_users:
        steps.append(users)
        users += config.increment_by
    return steps


async def _wait_for_workers(tasks: list[asyncio.Task[int]]) -> None:
    if not tasks:
        return
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    failed = [task for task in done if not task.cancelled() and task.exception() is not None]
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if failed:
        raise failed[0].exception()  # type: ignore[misc]


class RampController:
    # Each step ends with a full join, so the aggregator is only summarized
    # and reset once no worker can still record into it.

    def __init__(
        self,
        config: RunConfig,
        sink: LogSink,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.transport = transport
        self.aggregator = StatsAggregator()
        self.state = STATE_IDLE
        self.steps = step_sequence(config)
        self.summaries: list[StepSummary] = []

    def _client(self) -> httpx.AsyncClient:
        max_connections = self.config.max_connections or max(self.config.max_users, 64)
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(max_connections // 2, 32),
        )
        timeout = httpx.Timeout(self.config.timeout_s)
        if self.transport is not None:
            return httpx.AsyncClient(limits=limits, timeout=timeout, transport=self.transport)
        return httpx.AsyncClient(limits=limits, timeout=timeout)

    async def run(self) -> list[StepSummary]:
        self.state = STATE_IDLE
        self.summaries = []
        self.aggregator.reset()
        self.sink.write("INFO", "Starting load test...")
        request_settings = self.config.request_settings()
        try:
            async with self._client() as client:
                for users in self.steps:
                    summary = await self._run_step(users, client, request_settings)
                    self.summaries.append(summary)
        except BaseException:
            self.state = STATE_FAILED
            raise
        self.state = STATE_DONE
        self.sink.write("INFO", "Load test completed!")
        return list(self.summaries)

    async def _run_step(
        self,
        users: int,
        client: httpx.AsyncClient,
        request_settings: RequestSettings,
    ) -> StepSummary:
        self.state = STATE_RAMPING_UP
        self.sink.write("INFO", f"Ramping up to {users} users...")
        self.aggregator.reset()
        if self.config.ramp_up_s > 0:
            await asyncio.sleep(float(self.config.ramp_up_s))

        self.state = STATE_RUNNING
        started = time.monotonic()
        deadline = started + float(self.config.duration_per_step_s)
        worker_tasks: list[asyncio.Task[int]] = []
        try:
            for worker_id in range(users):
                worker_tasks.append(
                    asyncio.create_task(
                        worker_loop(
                            worker_id=worker_id,
                            deadline=deadline,
                            client=client,
                            settings=request_settings,
                            aggregator=self.aggregator,
                            sink=self.sink,
                        )
                    )
                )
        except BaseException:
            for task in worker_tasks:
                task.cancel()
            await asyncio.gather(*worker_tasks, return_exceptions=True)
            raise
        await _wait_for_workers(worker_tasks)
        elapsed_s = time.monotonic() - started

        self.state = STATE_REPORTING
        summary = self.aggregator.summarize(concurrency=users, elapsed_s=elapsed_s)
        for line in format_step_summary(summary):
            self.sink.write("INFO", line)
        self.aggregator.reset()
        return summary


async def run_load_test(
    config: RunConfig,
    sink: LogSink,
    sampler: Optional[MetricsSampler] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[StepSummary]:
    controller = RampController(config, sink, transport=transport)
    try:
        if sampler is not None:
            await sampler.start()
        return await controller.run()
    finally:
        if sampler is not None:
            try:
                await sampler.stop()
            except Exception as exc:  # noqa: BLE001
                sink.write("ERROR", f"Error stopping metrics sampler: {exc}")
            sampler.print_summary()
