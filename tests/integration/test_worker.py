"""
sandbox-worker — integration tests for the worker service

File: tests/integration/test_worker.py

Purpose
- Validate job dispatch, the concurrency gate, cancellation and shutdown over real ``bash``.

What this test file should cover
- dispatch returns the executor's output and records history.
- Duplicate in-flight job ids are refused.
- A job cancelled while queued never runs.
- Metrics count results by status; stop() cancels in-flight work and cleans up.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import replace
from pathlib import Path

import pytest

from sandbox_worker.config.schema import SessionSettings, WorkerConfig, WorkerSettings
from sandbox_worker.domain.models import ErrorCode, JobInput, JobStatus
from sandbox_worker.observability.events import EventBus, JobEventType
from sandbox_worker.sandbox.worker import Worker

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("bash") is None, reason="bash is required"),
]


def _config(tmp_path: Path, *, concurrency: int = 2) -> WorkerConfig:
    return replace(
        WorkerConfig(),
        worker=WorkerSettings(id="worker-test", concurrency=concurrency),
        session=SessionSettings(root=str(tmp_path / "sessions")),
    )


async def _wait_for_status(worker: Worker, job_id: str, status: JobStatus) -> None:
    for _ in range(200):
        if worker.status(job_id) is status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{job_id} never reached {status.value}")


async def test_dispatch_runs_job_and_records_history(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path)) as worker:
        output = await worker.dispatch(JobInput(job_id="job-1", command="echo hi"))

        assert output.status is JobStatus.FINISHED
        assert output.stdout == "hi\n"
        assert output.metrics.worker_id == "worker-test"
        assert worker.status("job-1") is JobStatus.FINISHED
        assert worker.result("job-1") == output
        assert worker.list_sessions() == ()

    assert worker.is_running is False


async def test_unknown_job_has_no_status(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path)) as worker:
        assert worker.status("nope") is None
        assert worker.result("nope") is None
        assert worker.cancel("nope") is False


async def test_submit_before_start_is_refused(tmp_path: Path) -> None:
    worker = Worker(_config(tmp_path))

    with pytest.raises(RuntimeError, match="not started"):
        worker.submit(JobInput(job_id="job-1", command="echo hi"))


async def test_duplicate_in_flight_job_is_refused(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path)) as worker:
        task = worker.submit(JobInput(job_id="job-1", command="sleep 1"))

        with pytest.raises(ValueError, match="job already in flight: job-1"):
            worker.submit(JobInput(job_id="job-1", command="echo again"))

        assert worker.cancel("job-1", "test over") is True
        await task

        # The id is free again once the first run has finished.
        output = await worker.dispatch(JobInput(job_id="job-1", command="echo again"))
        assert output.stdout == "again\n"


async def test_job_cancelled_while_queued_never_runs(tmp_path: Path) -> None:
    bus = EventBus()
    async with Worker(_config(tmp_path, concurrency=1), event_sink=bus) as worker:
        blocker = worker.submit(JobInput(job_id="job-slow", command="sleep 10"))
        await _wait_for_status(worker, "job-slow", JobStatus.RUNNING)
        queued = worker.submit(JobInput(job_id="job-queued", command="echo never"))
        await asyncio.sleep(0.05)
        assert worker.status("job-queued") is JobStatus.PENDING

        assert worker.cancel("job-queued", "not needed") is True
        assert worker.cancel("job-queued") is False
        output = await queued

        assert output.status is JobStatus.FAILED
        assert output.error_code is ErrorCode.CANCELLED
        assert output.exit_code == -1
        assert output.stderr == "job cancelled before execution: not needed"
        assert worker.status("job-queued") is JobStatus.CANCELLED
        assert bus.replay(job_id="job-queued", event_type=JobEventType.OUTPUT) == ()
        assert bus.replay(job_id="job-queued", event_type=JobEventType.COMPLETE)

        worker.cancel("job-slow")
        slow = await blocker
        assert slow.status is JobStatus.TIMEOUT
        assert slow.error_code is ErrorCode.CANCELLED


async def test_concurrency_limit_bounds_running_jobs(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path, concurrency=2)) as worker:
        tasks = [
            worker.submit(JobInput(job_id=f"job-{index}", command="sleep 1"))
            for index in range(3)
        ]
        await _wait_for_status(worker, "job-0", JobStatus.RUNNING)
        await _wait_for_status(worker, "job-1", JobStatus.RUNNING)
        await asyncio.sleep(0.05)

        assert worker.status("job-2") is JobStatus.PENDING
        concurrency = worker.metrics()["concurrency"]
        assert isinstance(concurrency, dict)
        assert concurrency["in_use"] == 2

        outputs = await asyncio.gather(*tasks)
        assert [output.status for output in outputs] == [JobStatus.FINISHED] * 3


async def test_metrics_count_results_by_status(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path)) as worker:
        await worker.dispatch(JobInput(job_id="ok", command="echo ok"))
        await worker.dispatch(JobInput(job_id="bad", command="bash -c 'exit 3'"))
        await worker.dispatch(JobInput(job_id="denied", command="rm -rf /"))

        snapshot = worker.metrics()

    counters = snapshot["counters"]
    gauges = snapshot["gauges"]
    assert isinstance(counters, dict)
    assert isinstance(gauges, dict)
    assert counters["jobs_total{status=finished}"] == 1.0
    assert counters["jobs_total{status=failed}"] == 2.0
    assert gauges["jobs_in_flight"] == 0.0
    assert snapshot["worker_id"] == "worker-test"
    assert snapshot["active_sessions"] == 0


async def test_governor_kills_are_counted_by_reason(tmp_path: Path) -> None:
    async with Worker(_config(tmp_path)) as worker:
        job = JobInput.from_dict(
            {"job_id": "slow", "command": "sleep 10", "limits": {"timeout": 200}}
        )
        output = await worker.dispatch(job)
        snapshot = worker.metrics()

    assert output.status is JobStatus.TIMEOUT
    counters = snapshot["counters"]
    assert isinstance(counters, dict)
    assert counters["governor_kills_total{reason=timeout}"] == 1.0
    assert counters["jobs_total{status=timeout}"] == 1.0


async def test_stop_cancels_in_flight_jobs_and_cleans_up(tmp_path: Path) -> None:
    worker = Worker(_config(tmp_path))
    worker.start()
    task = worker.submit(JobInput(job_id="job-1", command="sleep 10"))
    await _wait_for_status(worker, "job-1", JobStatus.RUNNING)

    await worker.stop(reason="shutdown test")
    output = await task

    assert output.status is JobStatus.TIMEOUT
    assert output.error_code is ErrorCode.CANCELLED
    assert "shutdown test" in output.stderr
    assert worker.is_running is False
    assert list((tmp_path / "sessions").iterdir()) == []


async def test_start_is_idempotent(tmp_path: Path) -> None:
    worker = Worker(_config(tmp_path))
    worker.start()
    sessions = worker.session_manager
    worker.start()

    assert worker.session_manager is sessions
    await worker.stop()
    await worker.stop()
