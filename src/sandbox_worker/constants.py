"""Stable constants shared across the worker packages."""

from __future__ import annotations

from typing import Final

# Resource defaults applied when a job omits a limit.
DEFAULT_CPU_CORES: Final[int] = 2
DEFAULT_MEMORY_MB: Final[int] = 2048
DEFAULT_TIMEOUT_MS: Final[int] = 300_000
DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 10 * 1024 * 1024
DEFAULT_SAMPLE_INTERVAL_MS: Final[int] = 100

# Ceilings a job-supplied limit is clamped to.
DEFAULT_MAX_CPU_CORES: Final[int] = 8
DEFAULT_MAX_MEMORY_MB: Final[int] = 8192
DEFAULT_MAX_TIMEOUT_MS: Final[int] = 600_000

# Session layout: <root>/session-<id>/{work,output}.
SESSION_DIR_PREFIX: Final[str] = "session-"
DEFAULT_SESSION_ROOT: Final[str] = "/tmp/sandbox-worker/sessions"
DEFAULT_WORK_DIR_NAME: Final[str] = "work"
DEFAULT_OUTPUT_DIR_NAME: Final[str] = "output"
DEFAULT_MAX_CONCURRENT_SESSIONS: Final[int] = 10

DEFAULT_WORKER_CONCURRENCY: Final[int] = 4
DEFAULT_MAX_COMMAND_LENGTH: Final[int] = 10_000

# Shell used to interpret job commands.
SHELL_EXECUTABLE: Final[str] = "bash"
READ_CHUNK_BYTES: Final[int] = 64 * 1024

CONFIG_FILENAME: Final[str] = "sandbox-worker.toml"
ENV_PREFIX: Final[str] = "SANDBOX_WORKER_"

__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_CPU_CORES",
    "DEFAULT_MAX_COMMAND_LENGTH",
    "DEFAULT_MAX_CONCURRENT_SESSIONS",
    "DEFAULT_MAX_CPU_CORES",
    "DEFAULT_MAX_MEMORY_MB",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "DEFAULT_MAX_TIMEOUT_MS",
    "DEFAULT_MEMORY_MB",
    "DEFAULT_OUTPUT_DIR_NAME",
    "DEFAULT_SAMPLE_INTERVAL_MS",
    "DEFAULT_SESSION_ROOT",
    "DEFAULT_TIMEOUT_MS",
    "DEFAULT_WORKER_CONCURRENCY",
    "DEFAULT_WORK_DIR_NAME",
    "ENV_PREFIX",
    "READ_CHUNK_BYTES",
    "SESSION_DIR_PREFIX",
    "SHELL_EXECUTABLE",
]
