"""
sandbox-worker — unit tests for the job event bus

File: tests/unit/observability/test_events.py

Purpose
- Validate event construction, filtered subscriptions, replay and subscriber isolation.
"""

from __future__ import annotations

import pytest

from sandbox_worker.domain.models import ErrorCode, JobMetrics, JobOutput, JobStatus
from sandbox_worker.observability.events import EventBus, JobEvent, JobEventType, OutputStream


def _output() -> JobOutput:
    return JobOutput(
        job_id="job-1",
        status=JobStatus.FINISHED,
        exit_code=0,
        stdout="",
        stderr="",
        artifacts=(),
        metrics=JobMetrics(duration_ms=1, worker_id="w"),
    )


def test_event_constructors_build_payloads() -> None:
    status = JobEvent.status("job-1", JobStatus.RUNNING, worker_id="w")
    output = JobEvent.output("job-1", OutputStream.STDERR, "boom")
    error = JobEvent.error("job-1", "rejected", ErrorCode.VALIDATION_REJECTED)
    complete = JobEvent.complete("job-1", _output())

    assert status.payload == {"status": "running", "worker_id": "w"}
    assert output.payload == {"stream": "stderr", "data": "boom"}
    assert error.payload == {"message": "rejected", "error_code": "validation_rejected"}
    assert complete.payload["result"] == _output().to_dict()
    assert JobEvent.error("job-1", "x").payload == {"message": "x"}


def test_event_to_dict_uses_utc_z_timestamps() -> None:
    event = JobEvent.output("job-1", OutputStream.STDOUT, "hi")

    encoded = event.to_dict()

    assert encoded["type"] == "output"
    assert encoded["job_id"] == "job-1"
    assert str(encoded["timestamp"]).endswith("Z")
    assert encoded["event_id"] == event.event_id


def test_subscribers_filter_by_type_and_job() -> None:
    bus = EventBus()
    everything: list[JobEvent] = []
    outputs: list[JobEvent] = []
    job_two: list[JobEvent] = []
    bus.subscribe(everything.append)
    bus.subscribe(outputs.append, event_type="output")
    bus.subscribe(job_two.append, job_id="job-2")

    bus.publish(JobEvent.status("job-1", JobStatus.RUNNING))
    bus.publish(JobEvent.output("job-1", OutputStream.STDOUT, "a"))
    bus.publish(JobEvent.output("job-2", OutputStream.STDOUT, "b"))

    assert len(everything) == 3
    assert [event.payload["data"] for event in outputs] == ["a", "b"]
    assert [event.job_id for event in job_two] == ["job-2"]


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[JobEvent] = []
    token = bus.subscribe(seen.append)

    assert bus.unsubscribe(token) is True
    assert bus.unsubscribe(token) is False
    bus.publish(JobEvent.status("job-1", JobStatus.RUNNING))

    assert seen == []


def test_failing_subscriber_is_isolated() -> None:
    bus = EventBus()
    seen: list[JobEvent] = []

    def broken(event: JobEvent) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    errors = bus.publish(JobEvent.status("job-1", JobStatus.RUNNING))

    assert len(seen) == 1
    assert len(errors) == 1
    assert errors[0].target == "broken"
    assert errors[0].error_type == "RuntimeError"
    assert bus.dispatch_errors() == errors


async def test_async_subscribers_are_scheduled_and_drained() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def record(event: JobEvent) -> None:
        seen.append(event.job_id)

    bus.subscribe(record)
    bus.publish(JobEvent.status("job-1", JobStatus.RUNNING))
    errors = await bus.drain_async()

    assert seen == ["job-1"]
    assert errors == ()


async def test_publish_async_awaits_subscribers_in_order() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def first(event: JobEvent) -> None:
        seen.append("first")

    bus.subscribe(first)
    bus.subscribe(lambda event: seen.append("second"))

    await bus.publish_async(JobEvent.status("job-1", JobStatus.RUNNING))

    assert seen == ["first", "second"]


def test_replay_is_bounded_and_filterable() -> None:
    bus = EventBus(buffer_size=3)
    for index in range(5):
        bus.publish(JobEvent.output(f"job-{index % 2}", OutputStream.STDOUT, str(index)))

    replayed = bus.replay()
    assert [event.payload["data"] for event in replayed] == ["2", "3", "4"]
    assert [event.payload["data"] for event in bus.replay(job_id="job-0")] == ["2", "4"]
    assert [event.payload["data"] for event in bus.replay(limit=1)] == ["4"]
    assert bus.replay(limit=0) == ()
    assert bus.replay(event_type=JobEventType.COMPLETE) == ()


def test_bus_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError, match="buffer_size"):
        EventBus(buffer_size=0)
    with pytest.raises(ValueError, match="callable"):
        EventBus().subscribe("nope")  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="must be JobEvent"):
        EventBus().publish({"type": "status"})  # type: ignore[arg-type]
