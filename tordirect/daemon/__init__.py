"""Gateway process entry point."""

from __future__ import annotations

from tordirect.daemon.main import DaemonMain, run_daemon

__all__ = [
    "DaemonMain",
    "run_daemon",
]
