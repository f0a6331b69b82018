"""
sandbox-worker — unit tests for the CLI renderer and parser

File: tests/unit/ui/test_render.py

Purpose
- Validate deterministic plain-text rendering and argument parsing.
"""

from __future__ import annotations

import io

import pytest

from sandbox_worker.domain.models import (
    ErrorCode,
    JobMetrics,
    JobOutput,
    JobStatus,
    ValidationResult,
)
from sandbox_worker.ui.cli import build_parser
from sandbox_worker.ui.render import CLIRenderer


def test_job_output_summary() -> None:
    stream = io.StringIO()
    output = JobOutput(
        job_id="job-1",
        status=JobStatus.TIMEOUT,
        exit_code=-1,
        stdout="partial\n",
        stderr="process group killed: timeout: 1500ms\n",
        artifacts=("a.txt",),
        metrics=JobMetrics(duration_ms=1500, worker_id="w", memory_peak_mb=12.34),
        error_code=ErrorCode.TIMEOUT,
    )

    CLIRenderer(stream=stream).job_output(output)

    assert stream.getvalue() == (
        "Job: job-1\n"
        "Status: timeout\n"
        "Exit code: -1\n"
        "Error code: timeout\n"
        "Duration: 1500 ms\n"
        "Peak memory: 12.3 MB\n"
        "\nArtifacts:\n"
        "  - a.txt\n"
        "\nstdout:\n"
        "partial\n"
        "\nstderr:\n"
        "process group killed: timeout: 1500ms\n"
    )


def test_validation_rendering() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)

    renderer.validation("ls", ValidationResult.accept("ls"))
    renderer.validation("nc", ValidationResult.reject("command not in allowlist: nc"))

    assert stream.getvalue().splitlines() == [
        "Command: ls",
        "Allowed: yes",
        "Sanitized: ls",
        "Command: nc",
        "Allowed: no",
        "Reason: command not in allowlist: nc",
    ]


def test_parser_run_options() -> None:
    args = build_parser().parse_args(
        [
            "run",
            "--command",
            "echo hi",
            "--memory",
            "512MB",
            "--timeout",
            "1000",
            "--cpu",
            "0.5",
            "--file",
            "a=b",
            "--set",
            "worker.concurrency=2",
            "-v",
        ]
    )

    assert args.shell_command == "echo hi"
    assert args.job_path is None
    assert (args.memory, args.timeout, args.cpu) == ("512MB", 1000, 0.5)
    assert args.files == ["a=b"]
    assert args.overrides == ["worker.concurrency=2"]
    assert args.verbose is True


def test_parser_run_requires_exactly_one_source() -> None:
    parser = build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args(["run"])
    with pytest.raises(SystemExit):
        parser.parse_args(["run", "--command", "ls", "--job", "job.json"])
