from __future__ import annotations

import time

import pytest

from conftest import refused_transport, status_transport
from report import StatsAggregator
from runner import (
    STATE_DONE,
    STATE_FAILED,
    STATE_IDLE,
    RampController,
    RunConfig,
    run_load_test,
    step_sequence,
)


def _config(**overrides) -> RunConfig:
    values = {
        "url": "http://target.test/",
        "start_users": 1,
        "max_users": 3,
        "increment_by": 1,
        "duration_per_step_s": 0.0,
        "ramp_up_s": 0.0,
    }
    values.update(overrides)
    return RunConfig(**values)


def test_step_sequence_scenario() -> None:
    steps = step_sequence(_config(start_users=200, max_users=2000, increment_by=100))
    assert steps == list(range(200, 2001, 100))
    assert len(steps) == 19


@pytest.mark.parametrize(
    "start, maximum, increment",
    [(1, 1, 1), (1, 10, 4), (5, 50, 7), (10, 100, 10), (3, 4, 100)],
)
def test_step_sequence_properties(start: int, maximum: int, increment: int) -> None:
    steps = step_sequence(_config(start_users=start, max_users=maximum, increment_by=increment))
    assert steps[0] == start
    assert all((step - start) % increment == 0 for step in steps)
    assert all(step <= maximum for step in steps)
    assert steps[-1] + increment > maximum
    assert steps == sorted(set(steps))


@pytest.mark.parametrize(
    "overrides",
    [
        {"start_users": 0},
        {"start_users": 5, "max_users": 4},
        {"increment_by": 0},
        {"duration_per_step_s": -1},
        {"ramp_up_s": -0.5},
        {"timeout_s": 0},
        {"max_connections": 0},
        {"url": ""},
        {"duration_per_step_s": float("nan")},
        {"duration_per_step_s": float("inf")},
        {"ramp_up_s": float("nan")},
        {"timeout_s": float("nan")},
        {"timeout_s": float("inf")},
    ],
)
def test_run_config_rejects_invalid_values(overrides) -> None:
    with pytest.raises(ValueError):
        _config(**overrides)


def test_request_settings_uppercase_method() -> None:
    settings = _config(method="post", payload={"a": 1}, timeout_s=2.5).request_settings()
    assert settings.method == "POST"
    assert settings.payload == {"a": 1}
    assert settings.timeout_s == 2.5


@pytest.mark.asyncio
async def test_zero_length_steps_run_one_request_per_virtual_user(sink) -> None:
    controller = RampController(_config(), sink, transport=status_transport(200))
    assert controller.state == STATE_IDLE
    assert controller.steps == [1, 2, 3]

    summaries = await controller.run()

    assert controller.state == STATE_DONE
    assert [summary.concurrency for summary in summaries] == [1, 2, 3]
    assert [summary.total_requests for summary in summaries] == [1, 2, 3]
    assert all(summary.success_rate == 1.0 for summary in summaries)


@pytest.mark.asyncio
async def test_refused_target_fails_every_request(sink) -> None:
    summaries = await RampController(
        _config(max_users=4, increment_by=2), sink, transport=refused_transport()
    ).run()

    assert [summary.concurrency for summary in summaries] == [1, 3]
    for summary in summaries:
        assert summary.total_requests >= summary.concurrency
        assert summary.successful_requests == 0
        assert summary.failed_requests == summary.total_requests
        assert summary.success_rate == 0.0


@pytest.mark.asyncio
async def test_steps_are_announced_and_reported(sink) -> None:
    await RampController(_config(max_users=2), sink, transport=status_transport(200)).run()

    info = sink.messages("INFO")
    assert info[0] == "Starting load test..."
    assert "Ramping up to 1 users..." in info
    assert "Ramping up to 2 users..." in info
    assert "Results for 1 concurrent users:" in info
    assert "Results for 2 concurrent users:" in info
    assert info.index("Results for 1 concurrent users:") < info.index("Ramping up to 2 users...")
    assert info[-1] == "Load test completed!"


@pytest.mark.asyncio
async def test_ramp_up_delay_precedes_every_step(sink) -> None:
    started = time.monotonic()
    await RampController(
        _config(max_users=2, ramp_up_s=0.05), sink, transport=status_transport(200)
    ).run()
    assert time.monotonic() - started >= 0.1


@pytest.mark.asyncio
async def test_step_lasts_at_least_its_duration(sink) -> None:
    summaries = await RampController(
        _config(max_users=1, duration_per_step_s=0.05), sink, transport=status_transport(200)
    ).run()
    assert summaries[0].elapsed_s >= 0.05
    assert summaries[0].throughput_rps > 0


@pytest.mark.asyncio
async def test_aggregator_is_empty_after_each_step(sink) -> None:
    controller = RampController(_config(), sink, transport=status_transport(200))
    await controller.run()
    assert controller.aggregator.snapshot().total_requests == 0


@pytest.mark.asyncio
async def test_sampler_wraps_the_run(sink, sampler) -> None:
    summaries = await run_load_test(
        _config(max_users=1), sink, sampler=sampler, transport=status_transport(200)
    )
    assert len(summaries) == 1
    assert sampler.events == ["start", "stop", "summary"]


@pytest.mark.asyncio
async def test_infrastructure_error_aborts_run_and_still_stops_sampler(
    sink, sampler, monkeypatch
) -> None:
    def broken_record(self, outcome) -> None:
        raise RuntimeError("aggregator exploded")

    monkeypatch.setattr(StatsAggregator, "record", broken_record)

    with pytest.raises(RuntimeError, match="aggregator exploded"):
        await run_load_test(_config(), sink, sampler=sampler, transport=status_transport(200))

    assert sampler.events == ["start", "stop", "summary"]
    assert not any("Results for" in message for message in sink.messages())


@pytest.mark.asyncio
async def test_failed_run_sets_failed_state(sink, monkeypatch) -> None:
    def broken_record(self, outcome) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(StatsAggregator, "record", broken_record)
    controller = RampController(_config(), sink, transport=status_transport(200))

    with pytest.raises(RuntimeError):
        await controller.run()
    assert controller.state == STATE_FAILED
    assert controller.summaries == []


@pytest.mark.asyncio
async def test_second_run_reports_only_its_own_steps(sink) -> None:
    controller = RampController(_config(max_users=2), sink, transport=status_transport(200))

    first = await controller.run()
    second = await controller.run()

    assert [summary.concurrency for summary in first] == [1, 2]
    assert [summary.concurrency for summary in second] == [1, 2]
    assert controller.summaries == second
    assert controller.state == STATE_DONE


class _SamplerFailingOnStop:
    def __init__(self) -> None:
        self.summary_printed = False

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        raise ConnectionError("client close failed")

    def print_summary(self) -> None:
        self.summary_printed = True


@pytest.mark.asyncio
async def test_sampler_stop_error_does_not_hide_the_run_result(sink) -> None:
    sampler = _SamplerFailingOnStop()

    summaries = await run_load_test(
        _config(max_users=1), sink, sampler=sampler, transport=status_transport(200)
    )

    assert len(summaries) == 1
    assert sampler.summary_printed is True
    assert "Error stopping metrics sampler: client close failed" in sink.messages("ERROR")


@pytest.mark.asyncio
async def test_sampler_stop_error_does_not_mask_a_ramp_failure(sink, monkeypatch) -> None:
    def broken_record(self, outcome) -> None:
        raise RuntimeError("aggregator exploded")

    monkeypatch.setattr(StatsAggregator, "record", broken_record)
    sampler = _SamplerFailingOnStop()

    with pytest.raises(RuntimeError, match="aggregator exploded"):
        await run_load_test(_config(), sink, sampler=sampler, transport=status_transport(200))
    assert sampler.summary_printed is True
