"""Per-execution resource governor for one process group.

The governor samples the group's resident memory and CPU time on a fixed
interval and checks wall-clock time against the timeout. Any breach, an output
overflow reported by the reader, or an external cancellation kills the whole
process group with ``SIGKILL``. The first reason wins; later kills are no-ops.

Timeouts are soft-polled: a job can run up to one sampling interval past its
limit before the kill lands.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

import psutil
import structlog

from sandbox_worker.constants import DEFAULT_SAMPLE_INTERVAL_MS
from sandbox_worker.domain.models import GovernorState, KillReason, ResourceLimits
from sandbox_worker.utils.concurrency import CancellationToken

_BYTES_PER_MB = 1024 * 1024

KillGroup = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class GroupUsage:
    """Summed usage of every live process in a group."""

    rss_bytes: int
    cpu_seconds: float
    process_count: int

    @property
    def rss_mb(self) -> float:
        return self.rss_bytes / _BYTES_PER_MB


class ProcessTable(Protocol):
    """Source for process-group usage (injectable for tests)."""

    def group_usage(self, process_group_id: int) -> GroupUsage:
        """Raise ``ProcessLookupError`` when no process of the group is alive."""
        ...


class PsutilProcessTable:
    """Read process-group usage with ``psutil``.

    The group leader's process tree is read first. When the leader is gone the
    full process list is scanned for surviving members of the group.
    """

    def group_usage(self, process_group_id: int) -> GroupUsage:
        members = self._leader_tree(process_group_id)
        if not members:
            members = self._scan_group(process_group_id)
        if not members:
            raise ProcessLookupError(f"no live process in group {process_group_id}")

        rss_bytes = 0
        cpu_seconds = 0.0
        counted = 0
        for process in members:
            try:
                with process.oneshot():
                    rss_bytes += int(process.memory_info().rss)
                    times = process.cpu_times()
                    cpu_seconds += float(times.user) + float(times.system)
                counted += 1
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue
        if counted == 0:
            raise ProcessLookupError(f"no live process in group {process_group_id}")
        return GroupUsage(rss_bytes=rss_bytes, cpu_seconds=cpu_seconds, process_count=counted)

    @staticmethod
    def _leader_tree(process_group_id: int) -> list[psutil.Process]:
        try:
            leader = psutil.Process(process_group_id)
            descendants = leader.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            return []
        return [leader, *descendants]

    @staticmethod
    def _scan_group(process_group_id: int) -> list[psutil.Process]:
        members: list[psutil.Process] = []
        for process in psutil.process_iter():
            try:
                if os.getpgid(process.pid) == process_group_id:
                    members.append(process)
            except (ProcessLookupError, PermissionError):
                continue
        return members


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Deterministic clock: ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def monotonic(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class ResourceGovernor:
    """Samples one process group and kills it on the first limit breach."""

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        process_table: ProcessTable | None = None,
        clock: Clock | None = None,
        sample_interval_ms: int = DEFAULT_SAMPLE_INTERVAL_MS,
        kill_group: KillGroup | None = None,
        logger: Any | None = None,
    ) -> None:
        if sample_interval_ms <= 0:
            raise ValueError("sample_interval_ms must be > 0")
        self._limits = limits if limits is not None else ResourceLimits()
        self._process_table = process_table if process_table is not None else PsutilProcessTable()
        self._clock = clock if clock is not None else SystemClock()
        self._sample_interval_ms = sample_interval_ms
        self._kill_group = kill_group if kill_group is not None else os.killpg
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._state = GovernorState()
        self._process_group_id: int | None = None
        self._killed_token = CancellationToken()
        self._last_cpu: tuple[float, float] | None = None
        self._sampler: asyncio.Task[None] | None = None
        self._watcher: asyncio.Task[None] | None = None

    @property
    def limits(self) -> ResourceLimits:
        return self._limits

    @property
    def state(self) -> GovernorState:
        return self._state.copy()

    @property
    def process_group_id(self) -> int | None:
        return self._process_group_id

    @property
    def killed_token(self) -> CancellationToken:
        """Cancelled the moment the group is killed."""
        return self._killed_token

    @property
    def kill_kind(self) -> KillReason | None:
        return self._state.kill_kind

    def start_governance(
        self,
        process_group_id: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Begin sampling ``process_group_id``. Requires a running event loop."""
        if self._state.is_active:
            raise RuntimeError("governance is already active")
        if process_group_id <= 0:
            raise ValueError("process_group_id must be > 0")
        loop = asyncio.get_running_loop()

        self._process_group_id = process_group_id
        self._state = GovernorState(is_active=True, start_time=self._clock.monotonic())
        self._killed_token = CancellationToken()
        self._last_cpu = None
        self._sampler = loop.create_task(
            self._run_sampler(), name=f"governor-sampler-{process_group_id}"
        )
        if cancel_token is not None:
            self._watcher = loop.create_task(
                self._watch_cancellation(cancel_token),
                name=f"governor-cancel-{process_group_id}",
            )
        self._logger.debug(
            "governor_started",
            process_group_id=process_group_id,
            memory_mb=self._limits.memory_mb,
            timeout_ms=self._limits.timeout_ms,
            max_output_bytes=self._limits.max_output_bytes,
            sample_interval_ms=self._sample_interval_ms,
        )

    def sample(self) -> None:
        """Take one memory/CPU/wall-clock reading and enforce the limits."""
        if self._process_group_id is None or self._state.killed:
            return
        now = self._clock.monotonic()

        try:
            usage = self._process_table.group_usage(self._process_group_id)
        except ProcessLookupError:
            self._logger.debug("governor_group_gone", process_group_id=self._process_group_id)
            usage = None

        if usage is not None:
            observed_mb = usage.rss_mb
            self._state.memory_samples.append(observed_mb)
            self._record_cpu(now, usage.cpu_seconds)
            if observed_mb > self._limits.memory_mb:
                self.kill_process(KillReason.MEMORY_LIMIT_EXCEEDED, f"{observed_mb:.1f}MB")
                return

        start_time = self._state.start_time if self._state.start_time is not None else now
        elapsed_ms = (now - start_time) * 1000.0
        if elapsed_ms > self._limits.timeout_ms:
            self.kill_process(KillReason.TIMEOUT, f"{int(elapsed_ms)}ms")

    def track_output(self, nbytes: int) -> None:
        if nbytes < 0:
            raise ValueError("nbytes must be >= 0")
        self._state.output_bytes_seen += nbytes
        if self._state.output_bytes_seen > self._limits.max_output_bytes:
            self.kill_process(
                KillReason.OUTPUT_LIMIT_EXCEEDED, f"{self._state.output_bytes_seen} bytes"
            )

    def kill_process(self, reason: KillReason | str, value: object = None) -> bool:
        """Kill the process group once. Returns ``False`` when already killed."""
        if self._state.killed:
            return False
        kind = KillReason(reason)
        detail = "unknown" if value is None else str(value)
        self._state.killed = True
        self._state.kill_kind = kind
        self._state.kill_reason = f"{kind.value}: {detail}"
        self._stop_tasks()

        if self._process_group_id is not None:
            try:
                self._kill_group(self._process_group_id, signal.SIGKILL)
            except (ProcessLookupError, PermissionError) as exc:
                self._logger.debug(
                    "governor_kill_signal_failed",
                    process_group_id=self._process_group_id,
                    error=str(exc),
                )

        self._logger.warning(
            "governor_kill",
            process_group_id=self._process_group_id,
            reason=kind.value,
            detail=detail,
            peak_memory_mb=round(self.peak_memory_mb(), 3),
            output_bytes_seen=self._state.output_bytes_seen,
        )
        self._killed_token.cancel(self._state.kill_reason)
        return True

    def stop(self) -> None:
        """Stop sampling. Kill state is kept so the caller can classify."""
        self._state.is_active = False
        self._stop_tasks()

    async def join(self) -> None:
        """Wait for the sampler and cancel watcher to finish after ``stop``."""
        tasks = [task for task in (self._sampler, self._watcher) if task is not None]
        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            with suppress(asyncio.CancelledError):
                await task

    def peak_memory_mb(self) -> float:
        return max(self._state.memory_samples, default=0.0)

    def cpu_usage(self) -> float:
        samples = self._state.cpu_samples
        if not samples:
            return 0.0
        return sum(samples) / len(samples)

    async def _run_sampler(self) -> None:
        interval = self._sample_interval_ms / 1000.0
        while self._state.is_active and not self._state.killed:
            await self._clock.sleep(interval)
            if not self._state.is_active or self._state.killed:
                break
            self.sample()

    async def _watch_cancellation(self, token: CancellationToken) -> None:
        await token.wait()
        if self._state.is_active and not self._state.killed:
            self.kill_process(KillReason.CANCELLED, token.reason or "requested")

    def _record_cpu(self, now: float, cpu_seconds: float) -> None:
        previous = self._last_cpu
        self._last_cpu = (now, cpu_seconds)
        if previous is None:
            return
        wall_delta = now - previous[0]
        if wall_delta <= 0:
            return
        cpu_delta = max(0.0, cpu_seconds - previous[1])
        self._state.cpu_samples.append(cpu_delta / wall_delta * 100.0)

    def _stop_tasks(self) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (self._sampler, self._watcher):
            if task is not None and task is not current and not task.done():
                task.cancel()


__all__ = [
    "Clock",
    "GroupUsage",
    "KillGroup",
    "ManualClock",
    "ProcessTable",
    "PsutilProcessTable",
    "ResourceGovernor",
    "SystemClock",
]
