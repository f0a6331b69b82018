"""
Domain types shared across the worker: sessions, limits, job contract, ids
and the error taxonomy. No IO happens in this package.
"""

from __future__ import annotations

from sandbox_worker.domain.errors import (
    CollectionWarning,
    ExecutionError,
    InvalidSessionTransition,
    ProvisioningError,
    SandboxWorkerError,
    SessionFileError,
    ValidationError,
)
from sandbox_worker.domain.models import (
    ErrorCode,
    GovernorState,
    JobInput,
    JobLimits,
    JobMetrics,
    JobOutput,
    JobStatus,
    KillReason,
    ResourceLimits,
    Session,
    SessionState,
    ValidationResult,
    parse_memory_mb,
)

__all__ = [
    "CollectionWarning",
    "ErrorCode",
    "ExecutionError",
    "GovernorState",
    "InvalidSessionTransition",
    "JobInput",
    "JobLimits",
    "JobMetrics",
    "JobOutput",
    "JobStatus",
    "KillReason",
    "ProvisioningError",
    "ResourceLimits",
    "SandboxWorkerError",
    "Session",
    "SessionFileError",
    "SessionState",
    "ValidationError",
    "ValidationResult",
    "parse_memory_mb",
]
