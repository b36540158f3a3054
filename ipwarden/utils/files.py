"""File helpers."""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from ..core.retry import RetryPolicy

logger = logging.getLogger(__name__)


def file_delete_with_retry(path, delay: float = 0.2, attempts: int = 10,
                           cancel: Optional[threading.Event] = None) -> bool:
    """Delete ``path``, retrying while another process holds it.

    Returns False when the file did not exist. The last OSError is raised
    once the attempts are exhausted.
    """
    target = Path(path)

    def _delete() -> bool:
        try:
            os.remove(target)
        except FileNotFoundError:
            return False
        return True

    deleted = RetryPolicy(attempts=attempts, delay=delay).call(_delete, cancel)
    if deleted:
        logger.debug(f"Deleted {target}")
    return deleted
