"""Sandbox execution: sessions, resource governance, the executor and the worker."""

from sandbox_worker.sandbox.executor import Executor
from sandbox_worker.sandbox.resource_governor import (
    Clock,
    GroupUsage,
    ManualClock,
    ProcessTable,
    PsutilProcessTable,
    ResourceGovernor,
    SystemClock,
)
from sandbox_worker.sandbox.session_manager import SessionManager, SessionRegistry
from sandbox_worker.sandbox.worker import Worker

__all__ = [
    "Clock",
    "Executor",
    "GroupUsage",
    "ManualClock",
    "ProcessTable",
    "PsutilProcessTable",
    "ResourceGovernor",
    "SessionManager",
    "SessionRegistry",
    "SystemClock",
    "Worker",
]
