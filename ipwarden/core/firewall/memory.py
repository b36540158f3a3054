"""In-memory variant: no OS calls. Used for dry runs and tests."""
from __future__ import annotations

import threading
from typing import List, Optional, Tuple

from ..errors import ApplyFailed
from ..rules import RuleGroup
from .base import Executor
from .managed import ManagedFirewall


class MemoryExecutor(Executor):
    """Records every call; optionally fails the next ``fail_next`` applies."""

    def __init__(self, fail_next: int = 0, error: Optional[Exception] = None) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.fail_next = fail_next
        self.error = error
        self._lock = threading.Lock()

    def _maybe_fail(self) -> None:
        with self._lock:
            if self.fail_next <= 0:
                return
            self.fail_next -= 1
        raise self.error or ApplyFailed("simulated apply failure")

    def apply_group(self, old, new, added, removed) -> None:
        self.calls.append(("apply", new.name))
        self._maybe_fail()

    def rewrite_group(self, group: RuleGroup) -> None:
        self.calls.append(("rewrite", group.name))

    def delete_group(self, group: RuleGroup) -> None:
        self.calls.append(("delete", group.name))


class MemoryFirewall(ManagedFirewall):
    platform_name = "memory"

    def __init__(self, executor: Optional[MemoryExecutor] = None, **kwargs) -> None:
        super().__init__(executor or MemoryExecutor(), **kwargs)
