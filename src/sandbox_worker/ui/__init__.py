"""UI package exports for the CLI and its plain-text renderer."""

from sandbox_worker.ui.cli import build_parser, run_cli
from sandbox_worker.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
