"""Public observability primitives: structured logging, metrics, and job events."""

from sandbox_worker.observability.events import (
    DispatchError,
    EventBus,
    EventSink,
    JobEvent,
    JobEventType,
    OutputStream,
    Subscriber,
)
from sandbox_worker.observability.logging import (
    configure_logging,
    job_context,
    redact_event_dict,
    redact_text,
    reset_logging,
)
from sandbox_worker.observability.metrics import MetricsRegistry, WorkerMetrics

__all__ = [
    "DispatchError",
    "EventBus",
    "EventSink",
    "JobEvent",
    "JobEventType",
    "MetricsRegistry",
    "OutputStream",
    "Subscriber",
    "WorkerMetrics",
    "configure_logging",
    "job_context",
    "redact_event_dict",
    "redact_text",
    "reset_logging",
]
