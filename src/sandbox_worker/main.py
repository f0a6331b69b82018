"""Process entrypoint: runs the CLI and turns any escaping error into an exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Exit codes of the ``sandbox-worker`` command."""

    SUCCESS = 0
    JOB_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4
    INTERRUPTED = 130


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Console-script and ``python -m sandbox_worker`` entrypoint."""

    try:
        from sandbox_worker.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.INTERRUPTED)
    except Exception as exc:  # noqa: BLE001 - last-resort mapping at the process boundary.
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _write_stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw if raw in {code.value for code in ExitCode} else int(ExitCode.INTERNAL_ERROR)
    if isinstance(raw, str) and raw.strip():
        _write_stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    from sandbox_worker.config.loader import ConfigLoadError
    from sandbox_worker.config.schema import ConfigValidationError
    from sandbox_worker.domain.errors import SandboxWorkerError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.CONFIG_ERROR),
        ((SandboxWorkerError,), ExitCode.JOB_FAILED),
    )
    for link in _causes(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and its explicit or implicit causes, stopping on cycles."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _write_stderr(message: str) -> None:
    print(message.rstrip("\n"), file=sys.stderr)


__all__ = ["ExitCode", "cli_entrypoint"]
