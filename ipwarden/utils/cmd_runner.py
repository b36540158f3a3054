"""Central, test-injectable subprocess runner used by the firewall executors.

This module exposes:
- run(cmd, **kwargs): proxy to the current runner (defaults to subprocess.run)
- set_runner(runner): set a custom runner for tests (callable with same signature)
- reset_runner(): restore default
- require_administrator(): raise PrivilegeRequired unless running as root/admin

The runner should accept the same parameters as subprocess.run and return
an object with attributes: returncode, stdout, stderr when capture_output/text
are used. Tests can inject a lightweight callable (e.g., FakeSubprocess).
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Callable

from ..core.errors import PrivilegeRequired

logger = logging.getLogger(__name__)

# Default runner is subprocess.run
_runner: Callable = subprocess.run


def run(cmd, **kwargs):
    """Run command via the currently configured runner.

    Accepts the same args as subprocess.run and returns whatever the runner returns.
    """
    logger.debug("Executing: %s", " ".join(str(c) for c in cmd) if isinstance(cmd, (list, tuple)) else cmd)
    return _runner(cmd, **kwargs)


def set_runner(runner: Callable):
    """Set custom runner for tests.

    runner: callable(cmd, **kwargs) -> CompletedProcess-like
    """
    global _runner
    _runner = runner


def reset_runner():
    """Reset runner to subprocess.run."""
    global _runner
    _runner = subprocess.run


def safe_stdout(proc) -> str:
    """Return stdout as str, tolerating test doubles or None."""
    return str(getattr(proc, "stdout", "") or "")


def safe_stderr(proc) -> str:
    return str(getattr(proc, "stderr", "") or "")


def is_administrator() -> bool:
    if sys.platform == "win32":
        try:
            import ctypes

            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def require_administrator() -> None:
    """Raise PrivilegeRequired if the process is not root (POSIX) or administrator (Windows)."""
    if not is_administrator():
        who = "administrator" if sys.platform == "win32" else "root"
        raise PrivilegeRequired(f"Firewall changes require running as {who}")
