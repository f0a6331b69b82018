"""Shared pytest fixtures for sandbox-worker tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from sandbox_worker.observability.logging import reset_logging


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Keep one test's logging sink (often a captured stream) out of the next."""
    yield
    reset_logging()
