"""Disposable per-job session directories and their lifecycle state machine.

Layout: ``<session_root>/session-<ulid>/{work,output}``. A session moves
INIT -> PREPARING -> EXECUTING -> COLLECTING -> DESTROYING -> DESTROYED, with
ERROR reachable from every live state. Destruction is idempotent and always
ends in DESTROYED with the session gone from the registry, even when the
directories could not be removed.
"""

from __future__ import annotations

import threading
import warnings
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from sandbox_worker.constants import DEFAULT_OUTPUT_DIR_NAME, DEFAULT_WORK_DIR_NAME
from sandbox_worker.domain.errors import (
    CollectionWarning,
    InvalidSessionTransition,
    ProvisioningError,
    SessionFileError,
)
from sandbox_worker.domain.ids import generate_session_id, session_dir_name
from sandbox_worker.domain.models import Session, SessionState, is_legal_transition
from sandbox_worker.utils.fs import atomic_write, list_files, resolve_within, safe_delete

StateChangeHook = Callable[[Session, SessionState, SessionState], None]


class SessionRegistry:
    """Thread-safe map of live sessions keyed by session id."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"session already registered: {session.session_id}")
            self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def find_by_job_id(self, job_id: str) -> Session | None:
        with self._lock:
            for session in self._sessions.values():
                if session.job_id == job_id:
                    return session
        return None

    def list(self) -> tuple[Session, ...]:
        with self._lock:
            sessions = tuple(self._sessions.values())
        return tuple(sorted(sessions, key=lambda item: (item.created_at, item.session_id)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


class SessionManager:
    """Create, populate, collect and destroy job sessions under one root."""

    def __init__(
        self,
        session_root: Path | str,
        *,
        registry: SessionRegistry | None = None,
        work_dir_name: str = DEFAULT_WORK_DIR_NAME,
        output_dir_name: str = DEFAULT_OUTPUT_DIR_NAME,
        max_sessions: int | None = None,
        strict_transitions: bool = True,
        on_state_change: StateChangeHook | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_sessions is not None and max_sessions <= 0:
            raise ValueError("max_sessions must be > 0")
        self._work_dir_name = _validate_dir_name(work_dir_name, "work_dir_name")
        self._output_dir_name = _validate_dir_name(output_dir_name, "output_dir_name")
        if self._work_dir_name == self._output_dir_name:
            raise ValueError("work_dir_name and output_dir_name must differ")

        self._session_root = Path(session_root).expanduser()
        self._registry = registry if registry is not None else SessionRegistry()
        self._max_sessions = max_sessions
        self._strict_transitions = bool(strict_transitions)
        self._on_state_change = on_state_change
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._initialized = False
        self._capacity_lock = threading.Lock()

    @property
    def session_root(self) -> Path:
        return self._session_root

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def strict_transitions(self) -> bool:
        return self._strict_transitions

    def initialize(self) -> None:
        """Create the session root. Safe to call more than once."""
        try:
            self._session_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(
                f"cannot create session root {self._session_root!s}: {exc}"
            ) from exc
        self._session_root = self._session_root.resolve(strict=True)
        if not self._initialized:
            self._logger.info("session_root_ready", session_root=str(self._session_root))
        self._initialized = True

    def close(self) -> None:
        """Destroy every session still registered."""
        leftovers = self._registry.list()
        for session in leftovers:
            self.destroy_session_safe(session)
        if leftovers:
            self._logger.info("session_manager_closed", destroyed=len(leftovers))

    def __enter__(self) -> SessionManager:
        self.initialize()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def create_session(self, job_id: str) -> Session:
        """Provision directories for ``job_id`` and return a PREPARING session."""
        if not job_id:
            raise ProvisioningError("job_id must not be empty")
        if not self._initialized:
            self.initialize()

        with self._capacity_lock:
            active = len(self._registry)
            if self._max_sessions is not None and active >= self._max_sessions:
                raise ProvisioningError(
                    f"session capacity reached ({active}/{self._max_sessions})"
                )

            session_id = generate_session_id()
            session_dir = self._session_root / session_dir_name(session_id)
            session = Session(
                session_id=session_id,
                job_id=job_id,
                session_dir=session_dir,
                work_dir=session_dir / self._work_dir_name,
                output_dir=session_dir / self._output_dir_name,
            )
            try:
                session_dir.mkdir(mode=0o700)
                session.work_dir.mkdir(mode=0o700)
                session.output_dir.mkdir(mode=0o700)
            except OSError as exc:
                self._rollback_directories(session)
                raise ProvisioningError(
                    f"cannot create session directories for job {job_id}: {exc}"
                ) from exc
            self._registry.add(session)

        self._transition(session, SessionState.PREPARING)
        self._logger.info(
            "session_created",
            session_id=session_id,
            job_id=job_id,
            session_dir=str(session_dir),
        )
        return session

    def prepare_session(self, session: Session, files: Mapping[str, str]) -> tuple[Path, ...]:
        """Write ``files`` into the work directory and return the written paths.

        Every name is checked before anything is written, so a bad name leaves
        the work directory untouched.
        """
        if session.state is not SessionState.PREPARING:
            raise ProvisioningError(
                f"session {session.session_id} is {session.state.value}, expected preparing"
            )

        targets: list[tuple[Path, str]] = []
        claimed: dict[Path, str] = {}
        for name, content in files.items():
            try:
                target = resolve_within(session.work_dir, name)
            except ValueError as exc:
                raise SessionFileError(f"invalid file name {name!r}: {exc}") from exc
            except OSError as exc:
                raise ProvisioningError(f"work directory unavailable: {exc}") from exc
            if target in claimed:
                raise SessionFileError(
                    f"file names {claimed[target]!r} and {name!r} resolve to the same path"
                )
            claimed[target] = name
            if not isinstance(content, str):
                raise SessionFileError(
                    f"file {name!r} content must be a string, got {type(content).__name__}"
                )
            targets.append((target, content))

        written: list[Path] = []
        for target, content in targets:
            try:
                atomic_write(target, content, make_parents=True, durable=False)
            except OSError as exc:
                raise ProvisioningError(f"cannot write {target.name!r}: {exc}") from exc
            written.append(target)

        self._logger.debug(
            "session_prepared",
            session_id=session.session_id,
            job_id=session.job_id,
            file_count=len(written),
        )
        return tuple(written)

    def mark_executing(self, session: Session) -> None:
        self._transition(session, SessionState.EXECUTING)
        session.started_at = _utc_now()

    def mark_error(self, session: Session, error: BaseException | str) -> None:
        message = str(error)
        session.error = message
        if session.state is not SessionState.ERROR:
            self._transition(session, SessionState.ERROR)
        self._logger.warning(
            "session_error",
            session_id=session.session_id,
            job_id=session.job_id,
            error=message,
        )

    def collect_artifacts(self, session: Session) -> list[str]:
        """List every file under the output directory as a relative POSIX path.

        Never raises: an unreadable or missing output directory yields ``[]``
        and a :class:`CollectionWarning`.
        """
        if session.state is SessionState.EXECUTING:
            self._transition(session, SessionState.COLLECTING)
        if session.finished_at is None:
            session.finished_at = _utc_now()

        try:
            artifacts = list(list_files(session.output_dir))
        except OSError as exc:
            message = f"cannot list artifacts for session {session.session_id}: {exc}"
            warnings.warn(message, CollectionWarning, stacklevel=2)
            self._logger.warning(
                "session_collection_failed",
                session_id=session.session_id,
                job_id=session.job_id,
                error=str(exc),
            )
            return []

        self._logger.debug(
            "session_collected",
            session_id=session.session_id,
            job_id=session.job_id,
            artifact_count=len(artifacts),
        )
        return artifacts

    def destroy_session(self, session: Session) -> None:
        """Remove the session's directories and unregister it. Idempotent."""
        if session.state is SessionState.DESTROYED:
            return
        try:
            if session.state is not SessionState.DESTROYING:
                self._transition(session, SessionState.DESTROYING)
            self._remove_directories(session)
        finally:
            self._registry.remove(session.session_id)
            self._transition(session, SessionState.DESTROYED, force=True)
            self._logger.info(
                "session_destroyed",
                session_id=session.session_id,
                job_id=session.job_id,
                duration_ms=session.duration_ms,
                error=session.error,
            )

    def destroy_session_safe(self, session: Session) -> None:
        """``destroy_session`` that never raises; the session always ends DESTROYED."""
        try:
            self.destroy_session(session)
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "session_destroy_failed",
                session_id=session.session_id,
                job_id=session.job_id,
                error=str(exc),
            )
            self._registry.remove(session.session_id)
            session.state = SessionState.DESTROYED

    def get_session(self, session_id: str) -> Session | None:
        return self._registry.get(session_id)

    def get_session_by_job_id(self, job_id: str) -> Session | None:
        return self._registry.find_by_job_id(job_id)

    def active_sessions(self) -> tuple[Session, ...]:
        return self._registry.list()

    def _transition(
        self, session: Session, target: SessionState, *, force: bool = False
    ) -> None:
        current = session.state
        if not force and not is_legal_transition(current, target):
            if self._strict_transitions:
                raise InvalidSessionTransition(session.session_id, current, target)
            self._logger.warning(
                "session_transition_unexpected",
                session_id=session.session_id,
                job_id=session.job_id,
                from_state=current.value,
                to_state=target.value,
            )
        session.state = target
        self._logger.debug(
            "session_state_changed",
            session_id=session.session_id,
            job_id=session.job_id,
            from_state=current.value,
            to_state=target.value,
        )
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(session, current, target)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "session_state_hook_failed",
                session_id=session.session_id,
                error=str(exc),
            )

    def _remove_directories(self, session: Session) -> None:
        try:
            safe_delete(session.session_dir, self._session_root)
        except (OSError, ValueError) as exc:
            session.error = f"cleanup failed: {exc}"
            self._logger.error(
                "session_cleanup_failed",
                session_id=session.session_id,
                job_id=session.job_id,
                session_dir=str(session.session_dir),
                error=str(exc),
            )

    def _rollback_directories(self, session: Session) -> None:
        try:
            safe_delete(session.session_dir, self._session_root)
        except (OSError, ValueError) as exc:
            self._logger.error(
                "session_rollback_failed",
                session_id=session.session_id,
                job_id=session.job_id,
                error=str(exc),
            )


def _validate_dir_name(value: str, field_name: str) -> str:
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} must not contain path separators")
    if value in {".", ".."}:
        raise ValueError(f"{field_name} must not be '.' or '..'")
    return value


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "SessionManager",
    "SessionRegistry",
    "StateChangeHook",
]
