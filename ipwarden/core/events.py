"""Address events handed to the core by log watchers, feeds and the ban queue."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Protocol


class IPAddressEventType(str, Enum):
    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN = "successful_login"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    ALLOWED = "allowed"


@dataclass(frozen=True)
class IPAddressLogEvent:
    """One decision or observation about an address."""

    address: str
    source: str = ""
    user_name: str = ""
    count: int = 1
    event_type: IPAddressEventType = IPAddressEventType.FAILED_LOGIN
    timestamp: float = field(default_factory=time.time)


class IPAddressEventHandler(Protocol):
    def add_ip_address_log_events(self, events: Iterable[IPAddressLogEvent]) -> None:
        ...
