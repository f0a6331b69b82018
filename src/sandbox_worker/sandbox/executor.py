"""Job executor: validate, provision, spawn, govern, classify, collect, destroy.

One call to :meth:`Executor.execute` owns one session, one process group and
one :class:`ResourceGovernor`. The session is destroyed on every path, and
every failure after validation is reported as a ``failed`` :class:`JobOutput`
instead of an exception.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import structlog

from sandbox_worker.config.schema import GovernanceSettings, default_worker_id
from sandbox_worker.constants import READ_CHUNK_BYTES, SHELL_EXECUTABLE
from sandbox_worker.domain.errors import ExecutionError, ProvisioningError
from sandbox_worker.domain.models import (
    ErrorCode,
    JobInput,
    JobLimits,
    JobMetrics,
    JobOutput,
    JobStatus,
    KillReason,
    ResourceLimits,
    Session,
    parse_memory_mb,
)
from sandbox_worker.observability.events import EventSink, JobEvent, OutputStream
from sandbox_worker.observability.logging import job_context
from sandbox_worker.sandbox.resource_governor import (
    Clock,
    KillGroup,
    ProcessTable,
    ResourceGovernor,
)
from sandbox_worker.security.command_validator import CommandValidator

if TYPE_CHECKING:
    from sandbox_worker.sandbox.session_manager import SessionManager
    from sandbox_worker.utils.concurrency import CancellationToken

_DEFAULT_PATH: Final[str] = "/usr/local/bin:/usr/bin:/bin"
# How long readers may keep draining pipes after the shell has exited.
_DRAIN_GRACE_SECONDS: Final[float] = 2.0
_SIGNALLED_EXIT_CODE: Final[int] = -1


class _CaptureBudget:
    """Byte allowance shared by every captured stream of one run."""

    __slots__ = ("remaining",)

    def __init__(self, limit: int) -> None:
        self.remaining = max(0, limit)


class _BoundedBuffer:
    """Keeps the bytes of a stream that still fit the shared budget and drops the rest."""

    __slots__ = ("_budget", "_data", "dropped")

    def __init__(self, budget: _CaptureBudget) -> None:
        self._data = bytearray()
        self._budget = budget
        self.dropped = 0

    def append(self, chunk: bytes) -> None:
        room = min(len(chunk), self._budget.remaining)
        if room:
            self._data.extend(chunk[:room])
            self._budget.remaining -= room
        self.dropped += len(chunk) - room

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class _ProcessRun:
    exit_code: int
    stdout: str
    stderr: str


class Executor:
    """Runs one job at a time per call; safe to share across concurrent calls."""

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        validator: CommandValidator | None = None,
        defaults: ResourceLimits | None = None,
        governance: GovernanceSettings | None = None,
        require_validation: bool = True,
        event_sink: EventSink | None = None,
        worker_id: str | None = None,
        logger: Any | None = None,
        process_table: ProcessTable | None = None,
        clock: Clock | None = None,
        kill_group: KillGroup | None = None,
    ) -> None:
        self._sessions = session_manager
        self._validator = validator if validator is not None else CommandValidator()
        self._governance = governance if governance is not None else GovernanceSettings()
        self._defaults = defaults if defaults is not None else self._governance.default_limits()
        self._require_validation = require_validation
        self._event_sink = event_sink
        self._worker_id = worker_id or default_worker_id()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._process_table = process_table
        self._clock = clock
        self._kill_group = kill_group if kill_group is not None else os.killpg

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def resolve_limits(self, limits: JobLimits) -> ResourceLimits:
        """Fill omitted job limits from the defaults and clamp to the configured maxima."""
        base = self._defaults
        cpu = limits.cpu if limits.cpu is not None and limits.cpu > 0 else base.cpu_cores
        memory_mb = (
            base.memory_mb
            if limits.memory is None
            else parse_memory_mb(limits.memory, default=base.memory_mb)
        )
        resolved = ResourceLimits(
            cpu_cores=cpu,
            memory_mb=memory_mb,
            timeout_ms=limits.timeout if limits.timeout is not None else base.timeout_ms,
            max_output_bytes=base.max_output_bytes,
        )
        return self._governance.clamp(resolved)

    async def execute(
        self,
        job: JobInput,
        cancel_token: CancellationToken | None = None,
    ) -> JobOutput:
        """Run ``job`` to completion and return its result. Never raises for job failures."""
        started = time.monotonic()
        with job_context(job_id=job.job_id, worker_id=self._worker_id):
            self._emit(JobEvent.status(job.job_id, JobStatus.RUNNING, worker_id=self._worker_id))

            command = job.command
            if self._require_validation:
                verdict = self._validator.validate(job.command)
                if not verdict.allowed:
                    reason = verdict.reason or "command rejected"
                    self._logger.warning("command_rejected", reason=reason)
                    output = self._failed_output(
                        job, reason, ErrorCode.VALIDATION_REJECTED, started
                    )
                    return self._complete(output, error=reason)
                command = verdict.sanitized or job.command

            output = await self._execute_validated(job, command, started, cancel_token)
            error = output.stderr if output.error_code in _ERROR_EVENT_CODES else None
            return self._complete(output, error=error)

    async def _execute_validated(
        self,
        job: JobInput,
        command: str,
        started: float,
        cancel_token: CancellationToken | None,
    ) -> JobOutput:
        session: Session | None = None
        governor: ResourceGovernor | None = None
        try:
            limits = self.resolve_limits(job.limits)
            session = self._sessions.create_session(job.job_id)
            with job_context(session_id=session.session_id):
                self._sessions.prepare_session(session, job.files)
                self._sessions.mark_executing(session)
                governor = self._new_governor(limits)
                run = await self._run_process(job, command, session, governor, cancel_token)
                artifacts = self._sessions.collect_artifacts(session)
                return self._classify(job, run, governor, artifacts, started)
        except ProvisioningError as exc:
            self._record_session_error(session, exc)
            return self._failed_output(job, str(exc), ErrorCode.PROVISIONING_FAILED, started)
        except asyncio.CancelledError:
            if governor is not None:
                governor.kill_process(KillReason.CANCELLED, "execution task cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "job_execution_failed", error=str(exc), error_type=type(exc).__name__
            )
            self._record_session_error(session, exc)
            return self._failed_output(
                job,
                str(exc),
                ErrorCode.EXECUTION_ERROR,
                started,
                peak_memory_mb=None if governor is None else governor.peak_memory_mb(),
            )
        finally:
            if governor is not None:
                governor.stop()
            if session is not None:
                self._sessions.destroy_session_safe(session)

    async def _run_process(
        self,
        job: JobInput,
        command: str,
        session: Session,
        governor: ResourceGovernor,
        cancel_token: CancellationToken | None,
    ) -> _ProcessRun:
        process = await self._spawn(command, session)
        assert process.stdout is not None
        assert process.stderr is not None
        self._logger.info("job_process_started", pid=process.pid)
        governor.start_governance(process.pid, cancel_token=cancel_token)

        # stdout and stderr share one allowance of max_output_bytes.
        budget = _CaptureBudget(governor.limits.max_output_bytes)
        stdout_buffer = _BoundedBuffer(budget)
        stderr_buffer = _BoundedBuffer(budget)
        readers = [
            asyncio.create_task(
                self._pump(job.job_id, stream, which, buffer, governor),
                name=f"job-{which.value}-{process.pid}",
            )
            for stream, which, buffer in (
                (process.stdout, OutputStream.STDOUT, stdout_buffer),
                (process.stderr, OutputStream.STDERR, stderr_buffer),
            )
        ]
        try:
            returncode = await process.wait()
            # Background children may still hold the pipes open.
            self._reap_group(process.pid)
            _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
        finally:
            if process.returncode is None:
                governor.kill_process(KillReason.CANCELLED, "execution interrupted")
            governor.stop()
            for task in readers:
                if not task.done():
                    task.cancel()
        await governor.join()
        for result in await asyncio.gather(*readers, return_exceptions=True):
            if isinstance(result, Exception):
                self._logger.warning("job_stream_read_failed", error=str(result))

        if stdout_buffer.dropped or stderr_buffer.dropped:
            self._logger.info(
                "job_output_truncated",
                stdout_dropped=stdout_buffer.dropped,
                stderr_dropped=stderr_buffer.dropped,
            )
        exit_code = returncode if returncode >= 0 else _SIGNALLED_EXIT_CODE
        return _ProcessRun(
            exit_code=exit_code,
            stdout=stdout_buffer.text(),
            stderr=stderr_buffer.text(),
        )

    async def _spawn(self, command: str, session: Session) -> asyncio.subprocess.Process:
        env = {
            "PATH": os.environ.get("PATH") or _DEFAULT_PATH,
            "HOME": str(session.work_dir),
        }
        try:
            return await asyncio.create_subprocess_exec(
                SHELL_EXECUTABLE,
                "-c",
                command,
                cwd=str(session.work_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionError(f"failed to spawn {SHELL_EXECUTABLE}: {exc}") from exc

    async def _pump(
        self,
        job_id: str,
        stream: asyncio.StreamReader,
        which: OutputStream,
        buffer: _BoundedBuffer,
        governor: ResourceGovernor,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            buffer.append(chunk)
            governor.track_output(len(chunk))
            text = decoder.decode(chunk)
            if text:
                self._emit(JobEvent.output(job_id, which, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._emit(JobEvent.output(job_id, which, tail))

    def _classify(
        self,
        job: JobInput,
        run: _ProcessRun,
        governor: ResourceGovernor,
        artifacts: list[str],
        started: float,
    ) -> JobOutput:
        state = governor.state
        stderr = run.stderr
        error_code: ErrorCode | None = None
        if state.kill_kind is not None:
            status = JobStatus.TIMEOUT
            error_code = ErrorCode(state.kill_kind.value)
            stderr = _append_line(stderr, f"process group killed: {state.kill_reason}")
        elif run.exit_code == 0:
            status = JobStatus.FINISHED
        else:
            status = JobStatus.FAILED

        return JobOutput(
            job_id=job.job_id,
            status=status,
            exit_code=run.exit_code,
            stdout=run.stdout,
            stderr=stderr,
            artifacts=tuple(artifacts),
            metrics=JobMetrics(
                duration_ms=_elapsed_ms(started),
                worker_id=self._worker_id,
                memory_peak_mb=governor.peak_memory_mb(),
                cpu_usage_percent=governor.cpu_usage(),
            ),
            error_code=error_code,
        )

    def _failed_output(
        self,
        job: JobInput,
        message: str,
        error_code: ErrorCode,
        started: float,
        *,
        peak_memory_mb: float | None = None,
    ) -> JobOutput:
        return JobOutput(
            job_id=job.job_id,
            status=JobStatus.FAILED,
            exit_code=-1,
            stdout="",
            stderr=message,
            artifacts=(),
            metrics=JobMetrics(
                duration_ms=_elapsed_ms(started),
                worker_id=self._worker_id,
                memory_peak_mb=peak_memory_mb,
            ),
            error_code=error_code,
        )

    def _new_governor(self, limits: ResourceLimits) -> ResourceGovernor:
        return ResourceGovernor(
            limits,
            process_table=self._process_table,
            clock=self._clock,
            sample_interval_ms=self._governance.sample_interval_ms,
            kill_group=self._kill_group,
        )

    def _reap_group(self, process_group_id: int) -> None:
        try:
            self._kill_group(process_group_id, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            return
        self._logger.debug("job_orphans_reaped", process_group_id=process_group_id)

    def _record_session_error(self, session: Session | None, exc: BaseException) -> None:
        if session is None:
            return
        try:
            self._sessions.mark_error(session, exc)
        except Exception as mark_exc:  # noqa: BLE001
            self._logger.warning("session_mark_error_failed", error=str(mark_exc))

    def _complete(self, output: JobOutput, *, error: str | None) -> JobOutput:
        if error is not None:
            self._emit(JobEvent.error(output.job_id, error, output.error_code))
        self._emit(JobEvent.complete(output.job_id, output))
        self._logger.info(
            "job_completed",
            status=output.status.value,
            exit_code=output.exit_code,
            duration_ms=output.metrics.duration_ms,
            error_code=None if output.error_code is None else output.error_code.value,
        )
        return output

    def _emit(self, event: JobEvent) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink.publish(event)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "job_event_publish_failed",
                event_type=event.event_type.value,
                error=str(exc),
            )


_ERROR_EVENT_CODES: Final[frozenset[ErrorCode | None]] = frozenset(
    {ErrorCode.PROVISIONING_FAILED, ErrorCode.EXECUTION_ERROR}
)


def _append_line(text: str, line: str) -> str:
    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{line}\n"


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


__all__ = ["Executor"]
