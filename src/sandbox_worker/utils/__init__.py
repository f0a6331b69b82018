"""Utility exports for filesystem and concurrency helpers."""

from sandbox_worker.utils.concurrency import BoundedSemaphore, CancellationToken
from sandbox_worker.utils.fs import atomic_write, is_within, list_files, resolve_within, safe_delete

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "atomic_write",
    "is_within",
    "list_files",
    "resolve_within",
    "safe_delete",
]
