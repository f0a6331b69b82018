"""In-process job event bus with per-job filtering and replay.

The executor emits four event types per job: ``status`` when it starts,
``output`` for every stdout/stderr chunk, ``complete`` with the final result,
and ``error`` when the job fails before or during execution. Subscriber
failures are captured as :class:`DispatchError` records and never reach the
publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Protocol, cast

from sandbox_worker.domain.ids import generate_ulid

if TYPE_CHECKING:
    from sandbox_worker.domain.models import ErrorCode, JobOutput, JobStatus, JSONValue

Subscriber = Callable[["JobEvent"], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


class JobEventType(StrEnum):
    STATUS = "status"
    OUTPUT = "output"
    COMPLETE = "complete"
    ERROR = "error"


class OutputStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class JobEvent:
    """One lifecycle or output notification for a job."""

    event_type: JobEventType
    job_id: str
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    event_id: str = field(default_factory=generate_ulid)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @classmethod
    def status(cls, job_id: str, status: JobStatus, **details: JSONValue) -> JobEvent:
        return cls(JobEventType.STATUS, job_id, {"status": status.value, **details})

    @classmethod
    def output(cls, job_id: str, stream: OutputStream, data: str) -> JobEvent:
        return cls(JobEventType.OUTPUT, job_id, {"stream": stream.value, "data": data})

    @classmethod
    def complete(cls, job_id: str, result: JobOutput) -> JobEvent:
        return cls(JobEventType.COMPLETE, job_id, {"result": result.to_dict()})

    @classmethod
    def error(cls, job_id: str, message: str, error_code: ErrorCode | None = None) -> JobEvent:
        payload: dict[str, JSONValue] = {"message": message}
        if error_code is not None:
            payload["error_code"] = error_code.value
        return cls(JobEventType.ERROR, job_id, payload)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace(
                "+00:00", "Z"
            ),
            "payload": dict(self.payload),
        }


class EventSink(Protocol):
    """Anything the executor can hand job events to."""

    def publish(self, event: JobEvent) -> object: ...


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting publishers."""

    event_id: str
    job_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: JobEventType | None
    job_id: str | None
    callback: Subscriber

    def matches(self, event: JobEvent) -> bool:
        if self.event_type is not None and event.event_type is not self.event_type:
            return False
        return self.job_id is None or event.job_id == self.job_id


class EventBus:
    """Resilient event bus with sync and async subscribers and bounded replay."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")

        self._buffer = deque[JobEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(
        self,
        callback: Subscriber,
        *,
        event_type: JobEventType | str | None = None,
        job_id: str | None = None,
    ) -> int:
        """Subscribe to all events, or only one type and/or one job."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        type_filter = None if event_type is None else JobEventType(event_type)

        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token,
                event_type=type_filter,
                job_id=job_id,
                callback=callback,
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: JobEvent) -> tuple[DispatchError, ...]:
        """Publish from synchronous code; async subscribers are scheduled on the running loop."""

        if not isinstance(event, JobEvent):
            raise ValueError(f"event must be JobEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            subscriptions = tuple(self._subscriptions.values())

        running_loop = _current_running_loop()
        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            error = self._invoke(subscription.callback, event, running_loop)
            if error is not None:
                errors.append(error)

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    async def publish_async(self, event: JobEvent) -> tuple[DispatchError, ...]:
        """Publish from async code and await async subscribers in order."""

        if not isinstance(event, JobEvent):
            raise ValueError(f"event must be JobEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            subscriptions = tuple(self._subscriptions.values())

        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Await async subscriber tasks scheduled by synchronous ``publish``."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        with self._lock:
            return tuple(self._dispatch_errors)

    def replay(
        self,
        *,
        job_id: str | None = None,
        event_type: JobEventType | str | None = None,
        limit: int | None = None,
    ) -> tuple[JobEvent, ...]:
        """Replay buffered events in publish order."""

        type_filter = None if event_type is None else JobEventType(event_type)
        with self._lock:
            events = tuple(self._buffer)

        filtered = [
            event
            for event in events
            if (job_id is None or event.job_id == job_id)
            and (type_filter is None or event.event_type is type_filter)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)

    def _invoke(
        self,
        callback: Subscriber,
        event: JobEvent,
        running_loop: asyncio.AbstractEventLoop | None,
    ) -> DispatchError | None:
        try:
            result = callback(event)
            if not inspect.isawaitable(result):
                return None
            coroutine = _as_coroutine(result)
            if running_loop is None:
                asyncio.run(coroutine)
                return None
            task = running_loop.create_task(coroutine)
            with self._lock:
                self._pending_async_tasks.add(task)
            task.add_done_callback(
                lambda done: self._on_async_callback_done(done, event=event, callback=callback)
            )
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(event, callback, exc)

    def _on_async_callback_done(
        self,
        task: asyncio.Task[None],
        *,
        event: JobEvent,
        callback: Subscriber,
    ) -> None:
        with self._lock:
            self._pending_async_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            with self._lock:
                self._dispatch_errors.append(_dispatch_error(event, callback, exc))


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)
    return _await_awaitable(cast("Awaitable[None]", value))


async def _await_awaitable(awaitable: Awaitable[None]) -> None:
    await awaitable


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _dispatch_error(event: JobEvent, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        event_id=event.event_id,
        job_id=event.job_id,
        target=_callback_name(callback),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = [
    "DispatchError",
    "EventBus",
    "EventSink",
    "JobEvent",
    "JobEventType",
    "OutputStream",
    "Subscriber",
]
