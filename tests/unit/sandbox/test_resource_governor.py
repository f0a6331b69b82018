"""
sandbox-worker — unit tests for the resource governor

File: tests/unit/sandbox/test_resource_governor.py

Purpose
- Validate limit enforcement, kill idempotency and cancellation without real processes.

What this test file should cover
- Memory, timeout and output breaches with their formatted kill reasons.
- First kill reason wins; the group is signalled once.
- External cancellation routes into the same kill path.
- Vanished process groups are tolerated.

Non-functional requirements
- Deterministic: a manual clock and a fake process table stand in for time and psutil.
"""

from __future__ import annotations

import asyncio
import signal

import pytest

from sandbox_worker.domain.models import KillReason, ResourceLimits
from sandbox_worker.sandbox.resource_governor import GroupUsage, ManualClock, ResourceGovernor
from sandbox_worker.utils.concurrency import CancellationToken

_MB = 1024 * 1024
_PGID = 4242


class FakeProcessTable:
    def __init__(self, rss_mb: float = 10.0, cpu_step: float = 0.0) -> None:
        self.rss_mb = rss_mb
        self.cpu_step = cpu_step
        self.cpu_seconds = 0.0
        self.gone = False
        self.calls = 0

    def group_usage(self, process_group_id: int) -> GroupUsage:
        assert process_group_id == _PGID
        self.calls += 1
        if self.gone:
            raise ProcessLookupError(process_group_id)
        self.cpu_seconds += self.cpu_step
        return GroupUsage(
            rss_bytes=int(self.rss_mb * _MB), cpu_seconds=self.cpu_seconds, process_count=1
        )


class RecordingKill:
    def __init__(self, error: BaseException | None = None) -> None:
        self.calls: list[tuple[int, int]] = []
        self.error = error

    def __call__(self, pgid: int, sig: int) -> None:
        self.calls.append((pgid, sig))
        if self.error is not None:
            raise self.error


def _governor(
    limits: ResourceLimits | None = None,
    *,
    table: FakeProcessTable | None = None,
    clock: ManualClock | None = None,
    kill: RecordingKill | None = None,
) -> tuple[ResourceGovernor, FakeProcessTable, ManualClock, RecordingKill]:
    table = table if table is not None else FakeProcessTable()
    clock = clock if clock is not None else ManualClock()
    kill = kill if kill is not None else RecordingKill()
    governor = ResourceGovernor(
        limits if limits is not None else ResourceLimits(memory_mb=512, timeout_ms=60_000),
        process_table=table,
        clock=clock,
        sample_interval_ms=100,
        kill_group=kill,
    )
    return governor, table, clock, kill


async def test_memory_breach_kills_group_with_formatted_reason() -> None:
    governor, table, _, kill = _governor()
    governor.start_governance(_PGID)
    table.rss_mb = 600.0

    governor.sample()

    state = governor.state
    assert state.killed is True
    assert state.kill_kind is KillReason.MEMORY_LIMIT_EXCEEDED
    assert state.kill_reason == "memory_limit_exceeded: 600.0MB"
    assert kill.calls == [(_PGID, signal.SIGKILL)]
    assert governor.peak_memory_mb() == pytest.approx(600.0)
    governor.stop()
    await governor.join()


async def test_memory_within_limit_only_records_samples() -> None:
    governor, table, clock, kill = _governor()
    governor.start_governance(_PGID)

    for rss in (100.0, 300.0, 200.0):
        table.rss_mb = rss
        clock.advance(0.1)
        governor.sample()

    assert governor.state.killed is False
    assert governor.state.memory_samples == pytest.approx([100.0, 300.0, 200.0])
    assert governor.peak_memory_mb() == pytest.approx(300.0)
    assert kill.calls == []
    governor.stop()
    await governor.join()


async def test_timeout_is_checked_against_wall_clock() -> None:
    governor, _, clock, kill = _governor(ResourceLimits(memory_mb=512, timeout_ms=1000))
    governor.start_governance(_PGID)

    clock.advance(0.5)
    governor.sample()
    assert governor.state.killed is False

    clock.advance(1.0)
    governor.sample()

    assert governor.kill_kind is KillReason.TIMEOUT
    assert governor.state.kill_reason == "timeout: 1500ms"
    assert len(kill.calls) == 1
    governor.stop()
    await governor.join()


async def test_sampler_task_enforces_timeout_on_its_own() -> None:
    governor, _, _, kill = _governor(ResourceLimits(memory_mb=512, timeout_ms=1000))
    governor.start_governance(_PGID)

    await asyncio.wait_for(governor.killed_token.wait(), timeout=5)
    await governor.join()

    assert governor.kill_kind is KillReason.TIMEOUT
    assert governor.killed_token.reason == governor.state.kill_reason
    assert kill.calls == [(_PGID, signal.SIGKILL)]


async def test_output_overflow_kills_with_total_bytes() -> None:
    governor, _, _, kill = _governor(
        ResourceLimits(memory_mb=512, timeout_ms=60_000, max_output_bytes=1024)
    )
    governor.start_governance(_PGID)

    governor.track_output(1000)
    assert governor.state.killed is False
    governor.track_output(48)

    assert governor.kill_kind is KillReason.OUTPUT_LIMIT_EXCEEDED
    assert governor.state.kill_reason == "output_limit_exceeded: 1048 bytes"
    assert governor.state.output_bytes_seen == 1048
    assert len(kill.calls) == 1
    governor.stop()
    await governor.join()


async def test_first_kill_reason_wins_and_group_is_signalled_once() -> None:
    governor, table, _, kill = _governor()
    governor.start_governance(_PGID)

    assert governor.kill_process(KillReason.TIMEOUT, "5ms") is True
    table.rss_mb = 4096.0
    governor.sample()
    assert governor.kill_process(KillReason.MEMORY_LIMIT_EXCEEDED, "4096MB") is False

    assert governor.state.kill_reason == "timeout: 5ms"
    assert kill.calls == [(_PGID, signal.SIGKILL)]
    governor.stop()
    await governor.join()


async def test_kill_without_value_reports_unknown() -> None:
    governor, _, _, _ = _governor()
    governor.start_governance(_PGID)

    governor.kill_process("cancelled")

    assert governor.state.kill_reason == "cancelled: unknown"
    governor.stop()
    await governor.join()


async def test_cancellation_token_routes_into_kill_path() -> None:
    governor, _, _, kill = _governor()
    token = CancellationToken()
    governor.start_governance(_PGID, cancel_token=token)

    token.cancel("user requested stop")
    await asyncio.wait_for(governor.killed_token.wait(), timeout=5)
    await governor.join()

    assert governor.kill_kind is KillReason.CANCELLED
    assert governor.state.kill_reason == "cancelled: user requested stop"
    assert kill.calls == [(_PGID, signal.SIGKILL)]


async def test_vanished_group_is_not_a_breach() -> None:
    governor, table, _, kill = _governor()
    governor.start_governance(_PGID)
    table.gone = True

    governor.sample()

    assert governor.state.killed is False
    assert governor.state.memory_samples == []
    assert kill.calls == []
    governor.stop()
    await governor.join()


async def test_kill_signal_failure_is_tolerated() -> None:
    governor, _, _, kill = _governor(kill=RecordingKill(ProcessLookupError("gone")))
    governor.start_governance(_PGID)

    assert governor.kill_process(KillReason.TIMEOUT, "1ms") is True

    assert governor.state.killed is True
    assert governor.killed_token.is_cancelled is True
    assert len(kill.calls) == 1
    governor.stop()
    await governor.join()


async def test_cpu_usage_is_derived_from_cpu_time_deltas() -> None:
    table = FakeProcessTable(cpu_step=0.05)
    governor, _, clock, _ = _governor(table=table)
    governor.start_governance(_PGID)

    for _ in range(3):
        clock.advance(0.1)
        governor.sample()

    assert governor.cpu_usage() == pytest.approx(50.0)
    governor.stop()
    await governor.join()


async def test_start_twice_is_rejected() -> None:
    governor, _, _, _ = _governor()
    governor.start_governance(_PGID)

    with pytest.raises(RuntimeError, match="already active"):
        governor.start_governance(_PGID)
    governor.stop()
    await governor.join()


def test_start_requires_running_loop() -> None:
    governor, _, _, _ = _governor()

    with pytest.raises(RuntimeError):
        governor.start_governance(_PGID)


def test_invalid_sample_interval_is_rejected() -> None:
    with pytest.raises(ValueError, match="sample_interval_ms"):
        ResourceGovernor(sample_interval_ms=0)
