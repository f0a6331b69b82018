"""Plain-text rendering for the sandbox-worker CLI.

Human-readable output goes to stdout; ``--json`` output bypasses the renderer.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sandbox_worker.domain.models import JobOutput, ValidationResult


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream if self._stream is not None else sys.stdout)

    def heading(self, text: str) -> None:
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def validation(self, command: str, result: ValidationResult) -> None:
        self.kv("Command", command)
        if result.allowed:
            self.kv("Allowed", "yes")
            self.kv("Sanitized", result.sanitized)
        else:
            self.kv("Allowed", "no")
            self.kv("Reason", result.reason)

    def job_output(self, output: JobOutput) -> None:
        """Print a job result summary followed by its captured streams."""

        self.kv("Job", output.job_id)
        self.kv("Status", output.status.value)
        self.kv("Exit code", output.exit_code)
        if output.error_code is not None:
            self.kv("Error code", output.error_code.value)
        self.kv("Duration", f"{output.metrics.duration_ms} ms")
        if output.metrics.memory_peak_mb is not None:
            self.kv("Peak memory", f"{output.metrics.memory_peak_mb:.1f} MB")
        if output.artifacts:
            self.section("Artifacts:")
            self.items(list(output.artifacts))
        if output.stdout:
            self.section("stdout:")
            self.text(output.stdout.rstrip("\n"))
        if output.stderr:
            self.section("stderr:")
            self.text(output.stderr.rstrip("\n"))


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
