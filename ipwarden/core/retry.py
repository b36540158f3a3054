"""Bounded retry policy shared by firewall executors and file helpers."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import AddressFamilyMismatch, Cancelled, InvalidAddress, NotSupported, PrivilegeRequired

logger = logging.getLogger(__name__)

T = TypeVar("T")

# errors that no amount of retrying can fix
NEVER_RETRY: Tuple[Type[BaseException], ...] = (
    Cancelled, AddressFamilyMismatch, InvalidAddress, NotSupported, PrivilegeRequired,
)


@dataclass
class RetryPolicy:
    """Run a callable up to ``attempts`` times with a (growing) delay in between.

    The delay waits on the cancel event when one is given, so a cancelled
    caller wakes up immediately and no further attempt is made.
    """

    attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    retry_on: Optional[Callable[[BaseException], bool]] = None

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryPolicy":
        cfg = cfg or {}
        return cls(
            attempts=max(int(cfg.get("attempts", 3) or 1), 1),
            delay=float(cfg.get("delay_seconds", 1.0) or 0.0),
            backoff=float(cfg.get("backoff", 1.0) or 1.0),
        )

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, NEVER_RETRY):
            return False
        if self.retry_on is not None:
            return bool(self.retry_on(error))
        return True

    def call(self, func: Callable[[], T], cancel: Optional[threading.Event] = None) -> T:
        last_error: Optional[BaseException] = None
        delay = self.delay
        for attempt in range(1, max(self.attempts, 1) + 1):
            if cancel is not None and cancel.is_set():
                raise Cancelled("Operation cancelled")
            try:
                return func()
            except Exception as e:
                last_error = e
                if not self._should_retry(e) or attempt >= self.attempts:
                    break
                logger.debug(f"Attempt {attempt}/{self.attempts} failed ({e}), retrying in {delay:.2f}s")
                if cancel is not None:
                    if cancel.wait(delay):
                        raise Cancelled("Operation cancelled") from e
                elif delay > 0:
                    time.sleep(delay)
                delay *= self.backoff
        if last_error is None:
            raise RuntimeError("Retry loop finished without calling the operation")
        raise last_error
