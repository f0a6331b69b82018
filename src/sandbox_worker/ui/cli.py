"""Command-line interface router for sandbox-worker."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from sandbox_worker import __version__
from sandbox_worker.config import (
    ConfigLoadError,
    ConfigValidationError,
    WorkerConfig,
    dump_effective_config,
    load_config,
)
from sandbox_worker.domain.ids import generate_job_id
from sandbox_worker.domain.models import JobInput, JobLimits, JobOutput
from sandbox_worker.main import ExitCode
from sandbox_worker.observability.logging import configure_logging
from sandbox_worker.sandbox.worker import Worker
from sandbox_worker.security.command_validator import CommandValidator
from sandbox_worker.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.JOB_FAILED)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="sandbox-worker",
        description=(
            "sandbox-worker — run shell jobs in disposable, resource-governed sessions.\n\n"
            "Common workflows:\n"
            "  sandbox-worker run --command 'echo hi'   Run one command\n"
            "  sandbox-worker run --job job.json        Run a job document\n"
            "  sandbox-worker validate 'rm -rf /'       Check a command\n"
            "  sandbox-worker config                    Show effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./sandbox-worker.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override one config value; repeatable. Takes precedence over env and file.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log at DEBUG level.",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", parents=[common], help="Execute one job.")
    source = run_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--job", dest="job_path", help="Job JSON document ('-' for stdin).")
    source.add_argument("--command", dest="shell_command", help="Shell command to run.")
    run_parser.add_argument("--job-id", default=None, help="Job id for --command jobs.")
    run_parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="Copy a local file into the work directory as NAME; repeatable.",
    )
    run_parser.add_argument("--memory", default=None, help="Memory limit, e.g. 512MB or 2GB.")
    run_parser.add_argument("--timeout", type=int, default=None, help="Timeout in ms.")
    run_parser.add_argument("--cpu", type=float, default=None, help="CPU cores (informational).")
    run_parser.add_argument(
        "--summary",
        action="store_true",
        default=False,
        help="Print a human-readable summary instead of the JobOutput JSON.",
    )
    run_parser.set_defaults(handler=_cmd_run)

    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Check a command against the validator."
    )
    validate_parser.add_argument("shell_command", metavar="COMMAND")
    validate_parser.add_argument("--json", action="store_true", default=False)
    validate_parser.set_defaults(handler=_cmd_validate)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective configuration."
    )
    config_parser.add_argument("--json", action="store_true", default=False)
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    configure_logging(config.logging, level="DEBUG" if args.verbose else None)
    job = _build_job(args)

    output = asyncio.run(_execute(config, job))

    if args.summary:
        _get_renderer(args).job_output(output)
    else:
        _emit_json(output.to_dict())
    return int(ExitCode.SUCCESS) if output.succeeded else int(ExitCode.JOB_FAILED)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    validator = CommandValidator(max_command_length=config.security.max_command_length)
    result = validator.validate(args.shell_command)

    if args.json:
        _emit_json({"command": "validate", "input": args.shell_command, **result.to_dict()})
    else:
        _get_renderer(args).validation(args.shell_command, result)
    return int(ExitCode.SUCCESS) if result.allowed else int(ExitCode.JOB_FAILED)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        print(dump_effective_config(config))
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Config file", args.config_path or "(default search)")
    renderer.text(config.to_json(indent=2))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _execute(config: WorkerConfig, job: JobInput) -> JobOutput:
    async with Worker(config) as worker:
        return await worker.dispatch(job)


def _load_effective_config(args: argparse.Namespace) -> WorkerConfig:
    overrides = _parse_assignments(args.overrides, flag="--set")
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _build_job(args: argparse.Namespace) -> JobInput:
    if args.job_path is not None:
        return _read_job_document(args.job_path)

    files: dict[str, str] = {}
    for name, path in _parse_assignments(args.files, flag="--file").items():
        try:
            files[name] = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise CLIError(
                f"cannot read --file {name}={path}: {exc}", exit_code=int(ExitCode.CONFIG_ERROR)
            ) from exc

    return JobInput(
        job_id=args.job_id or generate_job_id(),
        command=args.shell_command,
        files=files,
        limits=JobLimits(cpu=args.cpu, memory=args.memory, timeout=args.timeout),
    )


def _read_job_document(path: str) -> JobInput:
    try:
        raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(
            f"cannot read job document {path}: {exc}", exit_code=int(ExitCode.CONFIG_ERROR)
        ) from exc
    try:
        return JobInput.from_json(raw)
    except ValueError as exc:
        raise CLIError(
            f"invalid job document {path}: {exc}", exit_code=int(ExitCode.CONFIG_ERROR)
        ) from exc


def _parse_assignments(items: Sequence[str], *, flag: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise CLIError(
                f"{flag} expects KEY=VALUE, got {item!r}", exit_code=int(ExitCode.CONFIG_ERROR)
            )
        parsed[key.strip()] = value
    return parsed


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


__all__ = ["CLIError", "build_parser", "run_cli"]
