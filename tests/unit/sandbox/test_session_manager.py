"""
sandbox-worker — unit tests for the session manager

File: tests/unit/sandbox/test_session_manager.py

Purpose
- Validate session directory layout, file injection containment, artifact collection
  and idempotent destruction.

What this test file should cover
- create -> prepare -> execute -> collect -> destroy happy path.
- Traversal and absolute file names are rejected before anything is written.
- Capacity limits and strict/advisory transition handling.
- Missing output directories degrade to an empty artifact list plus a warning.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from sandbox_worker.domain.errors import (
    CollectionWarning,
    InvalidSessionTransition,
    ProvisioningError,
    SessionFileError,
)
from sandbox_worker.domain.ids import validate_session_id
from sandbox_worker.domain.models import Session, SessionState
from sandbox_worker.sandbox.session_manager import SessionManager, SessionRegistry


@pytest.fixture
def manager(tmp_path: Path) -> SessionManager:
    sessions = SessionManager(tmp_path / "sessions")
    sessions.initialize()
    return sessions


def test_create_session_lays_out_private_directories(manager: SessionManager) -> None:
    session = manager.create_session("job-1")

    validate_session_id(session.session_id)
    assert session.session_dir.name == f"session-{session.session_id}"
    assert session.session_dir.parent == manager.session_root
    assert session.work_dir == session.session_dir / "work"
    assert session.output_dir == session.session_dir / "output"
    assert session.work_dir.is_dir()
    assert session.output_dir.is_dir()
    assert session.session_dir.stat().st_mode & 0o777 == 0o700
    assert session.state is SessionState.PREPARING
    assert manager.get_session(session.session_id) is session
    assert manager.get_session_by_job_id("job-1") is session


def test_sessions_for_the_same_job_are_isolated(manager: SessionManager) -> None:
    first = manager.create_session("job-1")
    second = manager.create_session("job-1")

    assert first.session_id != second.session_id
    assert first.session_dir != second.session_dir
    assert len(manager.active_sessions()) == 2


def test_empty_job_id_is_rejected(manager: SessionManager) -> None:
    with pytest.raises(ProvisioningError, match="job_id"):
        manager.create_session("")


def test_prepare_writes_nested_files(manager: SessionManager) -> None:
    session = manager.create_session("job-1")

    written = manager.prepare_session(
        session, {"main.py": "print('hi')\n", "pkg/data/input.txt": "payload"}
    )

    assert (session.work_dir / "main.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert (session.work_dir / "pkg" / "data" / "input.txt").read_text(
        encoding="utf-8"
    ) == "payload"
    assert len(written) == 2
    assert all(path.is_relative_to(session.work_dir.resolve()) for path in written)


@pytest.mark.parametrize("name", ["../escape.txt", "/etc/passwd", "a/../../b", "", "   "])
def test_prepare_rejects_names_outside_work_dir(manager: SessionManager, name: str) -> None:
    session = manager.create_session("job-1")

    with pytest.raises(SessionFileError):
        manager.prepare_session(session, {"ok.txt": "fine", name: "bad"})

    # Validation happens before any write.
    assert list(session.work_dir.iterdir()) == []
    assert not (session.session_dir / "escape.txt").exists()


def test_prepare_keeps_names_differing_only_in_surrounding_spaces(
    manager: SessionManager,
) -> None:
    session = manager.create_session("job-1")

    written = manager.prepare_session(session, {"a.txt": "1", " a.txt": "2", "a.txt ": "3"})

    assert len(set(written)) == 3
    names = sorted(path.name for path in session.work_dir.iterdir())
    assert names == [" a.txt", "a.txt", "a.txt "]
    assert (session.work_dir / "a.txt").read_text(encoding="utf-8") == "1"
    assert (session.work_dir / " a.txt").read_text(encoding="utf-8") == "2"
    assert (session.work_dir / "a.txt ").read_text(encoding="utf-8") == "3"


@pytest.mark.parametrize("alias", ["./a.txt", "a.txt/", ".//a.txt"])
def test_prepare_rejects_names_resolving_to_the_same_file(
    manager: SessionManager, alias: str
) -> None:
    session = manager.create_session("job-1")

    with pytest.raises(SessionFileError, match="resolve to the same path"):
        manager.prepare_session(session, {"a.txt": "first", alias: "second"})

    assert list(session.work_dir.iterdir()) == []


def test_prepare_requires_preparing_state(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    manager.mark_executing(session)

    with pytest.raises(ProvisioningError, match="expected preparing"):
        manager.prepare_session(session, {"a.txt": "x"})


def test_collect_lists_output_files_relative_and_sorted(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    manager.mark_executing(session)
    (session.output_dir / "b.txt").write_text("b", encoding="utf-8")
    (session.output_dir / "nested").mkdir()
    (session.output_dir / "nested" / "a.log").write_text("a", encoding="utf-8")
    (session.work_dir / "scratch.txt").write_text("ignored", encoding="utf-8")

    artifacts = manager.collect_artifacts(session)

    assert artifacts == ["b.txt", "nested/a.log"]
    assert session.state is SessionState.COLLECTING
    assert session.started_at is not None
    assert session.finished_at is not None
    assert session.duration_ms is not None


def test_collect_with_missing_output_dir_warns_and_returns_empty(
    manager: SessionManager,
) -> None:
    session = manager.create_session("job-1")
    manager.mark_executing(session)
    shutil.rmtree(session.output_dir)

    with pytest.warns(CollectionWarning):
        artifacts = manager.collect_artifacts(session)

    assert artifacts == []


def test_destroy_removes_directories_and_is_idempotent(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    manager.prepare_session(session, {"a.txt": "x"})
    manager.mark_executing(session)
    manager.collect_artifacts(session)

    manager.destroy_session(session)
    manager.destroy_session(session)

    assert session.state is SessionState.DESTROYED
    assert session.is_destroyed
    assert not session.session_dir.exists()
    assert manager.get_session(session.session_id) is None
    assert list(manager.session_root.iterdir()) == []


def test_destroy_from_error_state(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    manager.mark_error(session, RuntimeError("boom"))

    assert session.state is SessionState.ERROR
    assert session.error == "boom"

    manager.destroy_session(session)
    assert session.state is SessionState.DESTROYED
    assert not session.session_dir.exists()


def test_failure_while_destroying_records_error_then_finishes(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    manager._transition(session, SessionState.DESTROYING)

    manager.mark_error(session, OSError("device busy"))

    assert session.state is SessionState.ERROR
    assert session.error == "device busy"

    manager.destroy_session(session)
    assert session.state is SessionState.DESTROYED
    assert not session.session_dir.exists()


def test_destroy_safe_tolerates_directory_already_gone(manager: SessionManager) -> None:
    session = manager.create_session("job-1")
    shutil.rmtree(session.session_dir)

    manager.destroy_session_safe(session)

    assert session.state is SessionState.DESTROYED
    assert len(manager.registry) == 0


def test_capacity_limit_rejects_extra_sessions(tmp_path: Path) -> None:
    manager = SessionManager(tmp_path / "sessions", max_sessions=1)
    first = manager.create_session("job-1")

    with pytest.raises(ProvisioningError, match="capacity"):
        manager.create_session("job-2")

    manager.destroy_session(first)
    second = manager.create_session("job-2")
    assert second.state is SessionState.PREPARING


def test_strict_transitions_reject_skipping_states(manager: SessionManager) -> None:
    session = manager.create_session("job-1")

    with pytest.raises(InvalidSessionTransition) as excinfo:
        manager._transition(session, SessionState.COLLECTING)

    assert excinfo.value.current is SessionState.PREPARING
    assert excinfo.value.target is SessionState.COLLECTING
    assert session.state is SessionState.PREPARING


def test_advisory_transitions_log_and_proceed(tmp_path: Path) -> None:
    manager = SessionManager(tmp_path / "sessions", strict_transitions=False)
    session = manager.create_session("job-1")

    manager._transition(session, SessionState.COLLECTING)

    assert session.state is SessionState.COLLECTING


def test_state_change_hook_sees_every_transition(tmp_path: Path) -> None:
    seen: list[tuple[SessionState, SessionState]] = []

    def hook(session: Session, previous: SessionState, current: SessionState) -> None:
        seen.append((previous, current))

    manager = SessionManager(tmp_path / "sessions", on_state_change=hook)
    session = manager.create_session("job-1")
    manager.mark_executing(session)
    manager.collect_artifacts(session)
    manager.destroy_session(session)

    assert seen == [
        (SessionState.INIT, SessionState.PREPARING),
        (SessionState.PREPARING, SessionState.EXECUTING),
        (SessionState.EXECUTING, SessionState.COLLECTING),
        (SessionState.COLLECTING, SessionState.DESTROYING),
        (SessionState.DESTROYING, SessionState.DESTROYED),
    ]


def test_failing_hook_does_not_break_lifecycle(tmp_path: Path) -> None:
    def hook(session: Session, previous: SessionState, current: SessionState) -> None:
        raise RuntimeError("observer down")

    manager = SessionManager(tmp_path / "sessions", on_state_change=hook)
    session = manager.create_session("job-1")
    manager.destroy_session(session)

    assert session.state is SessionState.DESTROYED


def test_close_destroys_leftover_sessions(tmp_path: Path) -> None:
    with SessionManager(tmp_path / "sessions") as manager:
        manager.create_session("job-1")
        manager.create_session("job-2")
        root = manager.session_root

    assert len(manager.registry) == 0
    assert list(root.iterdir()) == []


def test_directory_names_must_differ(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="must differ"):
        SessionManager(tmp_path, work_dir_name="out", output_dir_name="out")
    with pytest.raises(ValueError, match="path separators"):
        SessionManager(tmp_path, work_dir_name="a/b")


def test_registry_rejects_duplicate_ids(tmp_path: Path) -> None:
    registry = SessionRegistry()
    session = Session(
        session_id="S1",
        job_id="job-1",
        session_dir=tmp_path,
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "output",
    )
    registry.add(session)

    with pytest.raises(ValueError, match="already registered"):
        registry.add(session)
    assert "S1" in registry
    assert registry.remove("S1") is session
    assert registry.remove("S1") is None
