"""Worker service: owns the session registry and dispatches jobs concurrently.

A job moves ``pending`` (waiting for a concurrency slot) -> ``running`` -> a
terminal output status. A job cancelled while still pending never runs and is
reported as ``cancelled``; a running job that is cancelled is killed by its
governor and finishes as ``timeout`` with ``error_code="cancelled"``.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any, Final

import structlog

from sandbox_worker.config.schema import WorkerConfig, default_config
from sandbox_worker.domain.models import (
    ErrorCode,
    JobInput,
    JobMetrics,
    JobOutput,
    JobStatus,
    JSONValue,
    KillReason,
    Session,
)
from sandbox_worker.observability.events import EventBus, EventSink, JobEvent
from sandbox_worker.observability.metrics import WorkerMetrics
from sandbox_worker.sandbox.executor import Executor
from sandbox_worker.sandbox.session_manager import SessionManager, SessionRegistry
from sandbox_worker.security.command_validator import CommandValidator
from sandbox_worker.utils.concurrency import BoundedSemaphore, CancellationToken

if TYPE_CHECKING:
    from sandbox_worker.sandbox.resource_governor import Clock, KillGroup, ProcessTable

_HISTORY_LIMIT: Final[int] = 1024
_KILL_REASONS: Final[frozenset[str]] = frozenset(item.value for item in KillReason)


@dataclass(slots=True)
class _JobRecord:
    job: JobInput
    token: CancellationToken = field(default_factory=CancellationToken)
    status: JobStatus = JobStatus.PENDING
    output: JobOutput | None = None
    task: asyncio.Task[JobOutput] | None = None


class Worker:
    """Runs submitted jobs through one shared :class:`Executor`."""

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        event_sink: EventSink | None = None,
        metrics: WorkerMetrics | None = None,
        validator: CommandValidator | None = None,
        process_table: ProcessTable | None = None,
        clock: Clock | None = None,
        kill_group: KillGroup | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config if config is not None else default_config()
        self._events: EventSink = event_sink if event_sink is not None else EventBus()
        self._metrics = metrics if metrics is not None else WorkerMetrics()
        self._validator = (
            validator
            if validator is not None
            else CommandValidator(max_command_length=self._config.security.max_command_length)
        )
        self._process_table = process_table
        self._clock = clock
        self._kill_group = kill_group
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._registry: SessionRegistry | None = None
        self._sessions: SessionManager | None = None
        self._executor: Executor | None = None
        self._semaphore: BoundedSemaphore | None = None
        self._active: dict[str, _JobRecord] = {}
        self._history: OrderedDict[str, _JobRecord] = OrderedDict()

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def worker_id(self) -> str:
        return self._config.worker.id

    @property
    def events(self) -> EventSink:
        return self._events

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    @property
    def session_manager(self) -> SessionManager:
        if self._sessions is None:
            raise RuntimeError("worker is not started")
        return self._sessions

    def start(self) -> None:
        """Create the session registry and root. Safe to call more than once."""
        if self._executor is not None:
            return
        session_cfg = self._config.session
        self._registry = SessionRegistry()
        self._sessions = SessionManager(
            Path(session_cfg.root),
            registry=self._registry,
            work_dir_name=session_cfg.work_dir_name,
            output_dir_name=session_cfg.output_dir_name,
            max_sessions=session_cfg.max_concurrent_sessions,
            strict_transitions=session_cfg.strict_transitions,
        )
        self._sessions.initialize()
        self._executor = Executor(
            self._sessions,
            validator=self._validator,
            governance=self._config.governance,
            require_validation=self._config.security.require_command_validation,
            event_sink=self._events,
            worker_id=self.worker_id,
            process_table=self._process_table,
            clock=self._clock,
            kill_group=self._kill_group,
        )
        self._semaphore = BoundedSemaphore(self._config.worker.concurrency)
        self._logger.info(
            "worker_started",
            worker_id=self.worker_id,
            concurrency=self._config.worker.concurrency,
            session_root=str(self._sessions.session_root),
        )

    async def stop(self, *, reason: str = "worker shutting down") -> None:
        """Cancel every in-flight job, wait for it, then destroy leftover sessions."""
        if self._executor is None:
            return
        records = list(self._active.values())
        for record in records:
            record.token.cancel(reason)
        tasks = [record.task for record in records if record.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._sessions is not None:
            self._sessions.close()
        self._logger.info("worker_stopped", worker_id=self.worker_id, cancelled=len(records))
        self._executor = None
        self._semaphore = None

    async def __aenter__(self) -> Worker:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def submit(self, job: JobInput) -> asyncio.Task[JobOutput]:
        """Queue ``job`` and return the task that resolves to its output."""
        if self._executor is None:
            raise RuntimeError("worker is not started")
        if job.job_id in self._active:
            raise ValueError(f"job already in flight: {job.job_id}")
        record = _JobRecord(job=job)
        self._active[job.job_id] = record
        self._history.pop(job.job_id, None)
        record.task = asyncio.get_running_loop().create_task(
            self._run(record), name=f"job-{job.job_id}"
        )
        self._logger.debug("job_submitted", job_id=job.job_id)
        return record.task

    async def dispatch(self, job: JobInput) -> JobOutput:
        """Run ``job`` and wait for its output."""
        return await self.submit(job)

    def status(self, job_id: str) -> JobStatus | None:
        record = self._active.get(job_id) or self._history.get(job_id)
        return None if record is None else record.status

    def result(self, job_id: str) -> JobOutput | None:
        record = self._history.get(job_id)
        return None if record is None else record.output

    def cancel(self, job_id: str, reason: str | None = None) -> bool:
        """Request cancellation. Returns ``False`` for unknown or finished jobs."""
        record = self._active.get(job_id)
        if record is None or record.token.is_cancelled:
            return False
        record.token.cancel(reason or "cancelled by request")
        if record.status is JobStatus.PENDING:
            record.status = JobStatus.CANCELLED
        self._logger.info(
            "job_cancel_requested",
            job_id=job_id,
            reason=record.token.reason,
            status=record.status.value,
        )
        return True

    def list_sessions(self) -> tuple[Session, ...]:
        if self._sessions is None:
            return ()
        return self._sessions.active_sessions()

    def metrics(self) -> dict[str, JSONValue]:
        snapshot = self._metrics.snapshot()
        snapshot["worker_id"] = self.worker_id
        snapshot["active_sessions"] = len(self.list_sessions())
        snapshot["concurrency"] = (
            {} if self._semaphore is None else dict(self._semaphore.snapshot())
        )
        return snapshot

    async def _run(self, record: _JobRecord) -> JobOutput:
        assert self._executor is not None
        assert self._semaphore is not None
        executor = self._executor
        semaphore = self._semaphore
        try:
            if not await self._wait_for_slot(semaphore, record.token):
                output = self._cancelled_output(record)
                self._metrics.job_recorded(output)
                self._retire(record, JobStatus.CANCELLED, output)
                return output

            try:
                record.status = JobStatus.RUNNING
                self._metrics.job_started()
                try:
                    output = await executor.execute(record.job, record.token)
                except BaseException:
                    self._metrics.job_aborted()
                    raise
                self._metrics.job_finished(output, kill_reason=_kill_reason(output))
                self._retire(record, output.status, output)
                return output
            finally:
                semaphore.release()
        finally:
            if self._active.get(record.job.job_id) is record:
                self._active.pop(record.job.job_id)

    @staticmethod
    async def _wait_for_slot(semaphore: BoundedSemaphore, token: CancellationToken) -> bool:
        """Acquire a permit; ``False`` (and no permit held) when cancelled first."""
        acquire = asyncio.ensure_future(semaphore.acquire())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait((acquire, cancelled), return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            cancelled.cancel()
            acquire.cancel()
            if await _settled(acquire):
                semaphore.release()
            raise
        cancelled.cancel()
        if not acquire.done():
            acquire.cancel()
        acquired = await _settled(acquire)
        if token.is_cancelled:
            if acquired:
                semaphore.release()
            return False
        return acquired

    def _cancelled_output(self, record: _JobRecord) -> JobOutput:
        reason = record.token.reason or "cancelled"
        output = JobOutput(
            job_id=record.job.job_id,
            status=JobStatus.FAILED,
            exit_code=-1,
            stdout="",
            stderr=f"job cancelled before execution: {reason}",
            artifacts=(),
            metrics=JobMetrics(duration_ms=0, worker_id=self.worker_id),
            error_code=ErrorCode.CANCELLED,
        )
        try:
            self._events.publish(JobEvent.complete(output.job_id, output))
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("job_event_publish_failed", job_id=output.job_id, error=str(exc))
        return output

    def _retire(self, record: _JobRecord, status: JobStatus, output: JobOutput) -> None:
        record.status = status
        record.output = output
        self._history[record.job.job_id] = record
        while len(self._history) > _HISTORY_LIMIT:
            self._history.popitem(last=False)


async def _settled(task: asyncio.Future[Any]) -> bool:
    """Wait for ``task`` to finish; ``True`` when it completed without cancellation."""
    with suppress(asyncio.CancelledError):
        await task
    return not task.cancelled()


def _kill_reason(output: JobOutput) -> KillReason | None:
    if output.error_code is None or output.error_code.value not in _KILL_REASONS:
        return None
    return KillReason(output.error_code.value)


__all__ = ["Worker"]
