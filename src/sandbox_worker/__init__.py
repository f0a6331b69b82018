"""
sandbox-worker

Runs orchestrator-submitted shell commands inside disposable session
directories under memory, wall-clock and output ceilings, after a
pre-execution command check, and always cleans up afterwards.

Importing the package has no side effects (no config loading, no logging
setup).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
