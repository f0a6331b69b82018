"""Error taxonomy shared by the validator, session manager and executor.

Governance kills are not exceptions: they are recorded on the governor state
and surface as the job's ``timeout`` status plus an ``error_code``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox_worker.domain.models import SessionState


class SandboxWorkerError(RuntimeError):
    """Base error for worker failures."""


class ValidationError(SandboxWorkerError):
    """Raised when a command is rejected and the caller asked for an exception."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ProvisioningError(SandboxWorkerError):
    """Session directories or input files could not be created."""


class SessionFileError(ProvisioningError):
    """An injected filename is empty, absolute, or escapes the work directory."""


class InvalidSessionTransition(SandboxWorkerError):
    """A session state change is not in the transition table."""

    def __init__(self, session_id: str, current: SessionState, target: SessionState) -> None:
        super().__init__(
            f"session {session_id}: illegal transition {current.value} -> {target.value}"
        )
        self.session_id = session_id
        self.current = current
        self.target = target


class ExecutionError(SandboxWorkerError):
    """The job's process could not be spawned or awaited."""


class CollectionWarning(UserWarning):
    """Artifacts could not be enumerated; the job result carries an empty list."""


__all__ = [
    "CollectionWarning",
    "ExecutionError",
    "InvalidSessionTransition",
    "ProvisioningError",
    "SandboxWorkerError",
    "SessionFileError",
    "ValidationError",
]
