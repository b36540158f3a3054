"""Executor base for variants that drive external firewall tools."""
from __future__ import annotations

import logging
import subprocess
from typing import Callable, List, Optional, Sequence

from ...utils import cmd_runner
from ..errors import ApplyFailed, PrivilegeRequired
from .base import Executor

logger = logging.getLogger(__name__)

# stderr fragments the firewall tools print when not run as root/administrator
PERMISSION_MARKERS = (
    "operation not permitted",
    "permission denied",
    "must be root",
    "you must be root",
    "requires elevation",
    "run as administrator",
)


class CommandExecutor(Executor):
    """Runs tool invocations through the injectable runner and maps failures."""

    def __init__(self, runner: Optional[Callable] = None, timeout: Optional[float] = 60) -> None:
        self._runner = runner
        self.timeout = timeout

    def set_subprocess_runner(self, runner_callable: Callable) -> None:
        """Use ``runner_callable`` (subprocess.run signature) instead of the module runner."""
        self._runner = runner_callable

    def _run(self, cmd: Sequence[str], input_text: Optional[str] = None, check: bool = True):
        kwargs = {"capture_output": True, "text": True, "timeout": self.timeout}
        if input_text is not None:
            kwargs["input"] = input_text
        try:
            if self._runner is not None:
                proc = self._runner(list(cmd), **kwargs)
            else:
                proc = cmd_runner.run(list(cmd), **kwargs)
        except FileNotFoundError as e:
            raise ApplyFailed(f"{cmd[0]} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ApplyFailed(f"{cmd[0]} timed out after {self.timeout}s") from e
        except PermissionError as e:
            raise PrivilegeRequired(f"{cmd[0]}: {e}") from e

        if check and getattr(proc, "returncode", 1) != 0:
            stderr = cmd_runner.safe_stderr(proc).strip()
            message = f"{' '.join(cmd[:3])} failed (rc={getattr(proc, 'returncode', '?')}): {stderr}"
            if any(marker in stderr.lower() for marker in PERMISSION_MARKERS):
                raise PrivilegeRequired(message)
            raise ApplyFailed(message)
        return proc

    def _succeeds(self, cmd: Sequence[str]) -> bool:
        """Run a check command (e.g. iptables -C) and report whether it exited 0."""
        return getattr(self._run(cmd, check=False), "returncode", 1) == 0

    @staticmethod
    def _lines(proc) -> List[str]:
        return [line.strip() for line in cmd_runner.safe_stdout(proc).splitlines() if line.strip()]
