"""Module entrypoint for ``python -m sandbox_worker``."""

from __future__ import annotations

from sandbox_worker.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
