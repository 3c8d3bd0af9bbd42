from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import httpx

if TYPE_CHECKING:
    from logsink import LogSink
    from report import StatsAggregator


DEFAULT_HEADERS = {"Content-Type": "application/json"}
ERROR_BODY_LIMIT = 200


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 400


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


@dataclass(frozen=True)
class RequestSettings:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    payload: Any = None
    timeout_s: float = 30.0


@dataclass(frozen=True)
class RequestOutcome:
    status_code: int
    latency_ms: float
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def execute_request(client: httpx.AsyncClient, settings: RequestSettings) -> RequestOutcome:
    request_kwargs: dict[str, Any] = {
        "headers": settings.headers,
        "timeout": settings.timeout_s,
    }
    if settings.payload is not None:
        request_kwargs["json"] = settings.payload

    # Non-streaming call: returns only once the body has been read.
    started = time.perf_counter()
    try:
        response = await client.request(settings.method, settings.url, **request_kwargs)
    except httpx.TimeoutException as exc:
        return RequestOutcome(
            status_code=0,
            latency_ms=_elapsed_ms(started),
            success=False,
            error=f"timeout: {exc}" if str(exc) else "timeout",
        )
    except httpx.HTTPError as exc:
        return RequestOutcome(
            status_code=0,
            latency_ms=_elapsed_ms(started),
            success=False,
            error=str(exc) or type(exc).__name__,
        )
    except Exception as exc:  # noqa: BLE001
        return RequestOutcome(
            status_code=0,
            latency_ms=_elapsed_ms(started),
            success=False,
            error=str(exc) or type(exc).__name__,
        )

    latency_ms = _elapsed_ms(started)
    status_code = int(response.status_code)
    if is_success_status(status_code):
        return RequestOutcome(status_code=status_code, latency_ms=latency_ms, success=True)

    body = response.text[:ERROR_BODY_LIMIT].strip()
    error_text = f"HTTP {status_code}"
    if body:
        error_text = f"{error_text}: {body}"
    return RequestOutcome(
        status_code=status_code,
        latency_ms=latency_ms,
        success=False,
        error=error_text,
    )


async def worker_loop(
    worker_id: int,
    deadline: float,
    client: httpx.AsyncClient,
    settings: RequestSettings,
    aggregator: StatsAggregator,
    sink: LogSink,
) -> int:
    """Closed loop with no think time, so step throughput is bounded
    by concurrency / latency and says nothing about an open arrival rate.
    The deadline is checked after every request: at least one request is
    issued, and the loop may overrun the deadline by one in-flight request.
    """
    issued = 0
    while True:
        outcome = await execute_request(client, settings)
        aggregator.record(outcome)
        issued += 1
        if outcome.success:
            sink.write(
                "DEBUG",
                f"Request completed with status code: {outcome.status_code} "
                f"({outcome.latency_ms:.2f}ms, worker {worker_id})",
            )
        else:
            sink.write(
                "WARN",
                f"Request failed with error: {outcome.error} "
                f"status={outcome.status_code} latency={outcome.latency_ms:.2f}ms "
                f"worker={worker_id}",
            )
        if time.monotonic() >= deadline:
            return issued
