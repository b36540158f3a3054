"""Firewall capability contract shared by every platform variant."""
from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Set

from ..errors import Cancelled, InvalidAddress, NotSupported, PrivilegeRequired
from ..rangeset import RangeSet
from ..rules import RuleGroup

logger = logging.getLogger(__name__)

DEFAULT_RULE_PREFIX = "IPWarden_"
BLOCK_PREFIX = "Block"
ALLOW_PREFIX = "Allow"


class ResultStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    NOT_SUPPORTED = "not_supported"
    CANCELLED = "cancelled"
    PERMISSION_DENIED = "permission_denied"
    INVALID_ADDRESS = "invalid_address"


@dataclass(frozen=True)
class FirewallResult:
    """Outcome of a firewall operation.

    Truthy only when the operation succeeded. Query operations carry their
    answer in ``value``.
    """

    status: ResultStatus
    message: str = ""
    value: Any = None

    def __bool__(self) -> bool:
        return self.status is ResultStatus.OK

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.OK

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "FirewallResult":
        return cls(ResultStatus.OK, message, value)

    @classmethod
    def not_supported(cls, operation: str, platform_name: str = "") -> "FirewallResult":
        where = f" on {platform_name}" if platform_name else ""
        return cls(ResultStatus.NOT_SUPPORTED, f"{operation} is not supported{where}")

    @classmethod
    def from_error(cls, error: BaseException) -> "FirewallResult":
        if isinstance(error, Cancelled):
            status = ResultStatus.CANCELLED
        elif isinstance(error, PrivilegeRequired):
            status = ResultStatus.PERMISSION_DENIED
        elif isinstance(error, NotSupported):
            status = ResultStatus.NOT_SUPPORTED
        elif isinstance(error, InvalidAddress):
            status = ResultStatus.INVALID_ADDRESS
        else:
            status = ResultStatus.FAILED
        return cls(status, str(error) or error.__class__.__name__)


class Firewall(abc.ABC):
    """Platform independent firewall contract.

    Every operation returns a :class:`FirewallResult`; none of them raises for
    OS failures, cancellation or unsupported operations.
    """

    platform_name = "abstract"
    # variants that drive the OS firewall need root/administrator
    requires_administrator = False

    @abc.abstractmethod
    def allow(self, addresses: Iterable, ports: Optional[Iterable] = None,
              cancel: Optional[threading.Event] = None) -> FirewallResult:
        """Replace the allow list with ``addresses`` (addresses, ranges or CIDRs)."""

    @abc.abstractmethod
    def block(self, rule_name_prefix: str, addresses: Iterable, ports: Optional[Iterable] = None,
              cancel: Optional[threading.Event] = None) -> FirewallResult:
        """Replace the block group named by ``rule_name_prefix`` with ``addresses``."""

    @abc.abstractmethod
    def block_delta(self, rule_name_prefix: str, deltas: Iterable, ports: Optional[Iterable] = None,
                    cancel: Optional[threading.Event] = None) -> FirewallResult:
        """Add/remove individual addresses or ranges of a block group."""

    @abc.abstractmethod
    def get_rule_names(self, rule_name_prefix: Optional[str] = None,
                       cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: list of rule names."""

    @abc.abstractmethod
    def delete_rule(self, rule_name: str, cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: False when the rule did not exist."""

    @abc.abstractmethod
    def enumerate_allowed_addresses(self, cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: list of address/range strings."""

    @abc.abstractmethod
    def enumerate_banned_addresses(self, cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: list of address/range strings."""

    @abc.abstractmethod
    def enumerate_ip_addresses(self, rule_name_prefix: Optional[str] = None,
                               cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: list of AddressRange."""

    @abc.abstractmethod
    def is_ip_address_allowed(self, address, port: Optional[int] = None,
                              cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: bool."""

    @abc.abstractmethod
    def is_ip_address_blocked(self, address, port: Optional[int] = None,
                              cancel: Optional[threading.Event] = None) -> FirewallResult:
        """value: (blocked, rule name or None)."""

    @abc.abstractmethod
    def truncate(self, cancel: Optional[threading.Event] = None) -> FirewallResult:
        """Remove every rule created under this firewall's rule prefix."""

    def save_state(self, path, cancel: Optional[threading.Event] = None) -> FirewallResult:
        return FirewallResult.not_supported("save_state", self.platform_name)

    def restore_state(self, path, cancel: Optional[threading.Event] = None) -> FirewallResult:
        return FirewallResult.not_supported("restore_state", self.platform_name)


class UnsupportedFirewall(Firewall):
    """Variant for platforms without an implementation: every call is NOT_SUPPORTED."""

    platform_name = "unsupported"

    def __init__(self, platform_name: Optional[str] = None, **_: Any) -> None:
        if platform_name:
            self.platform_name = platform_name
        self._logged: Set[str] = set()
        self._logged_lock = threading.Lock()

    def _unsupported(self, operation: str) -> FirewallResult:
        with self._logged_lock:
            first = operation not in self._logged
            self._logged.add(operation)
        if first:
            logger.warning(f"Firewall operation {operation} is not supported on {self.platform_name}")
        return FirewallResult.not_supported(operation, self.platform_name)

    def allow(self, addresses, ports=None, cancel=None):
        return self._unsupported("allow")

    def block(self, rule_name_prefix, addresses, ports=None, cancel=None):
        return self._unsupported("block")

    def block_delta(self, rule_name_prefix, deltas, ports=None, cancel=None):
        return self._unsupported("block_delta")

    def get_rule_names(self, rule_name_prefix=None, cancel=None):
        return self._unsupported("get_rule_names")

    def delete_rule(self, rule_name, cancel=None):
        return self._unsupported("delete_rule")

    def enumerate_allowed_addresses(self, cancel=None):
        return self._unsupported("enumerate_allowed_addresses")

    def enumerate_banned_addresses(self, cancel=None):
        return self._unsupported("enumerate_banned_addresses")

    def enumerate_ip_addresses(self, rule_name_prefix=None, cancel=None):
        return self._unsupported("enumerate_ip_addresses")

    def is_ip_address_allowed(self, address, port=None, cancel=None):
        return self._unsupported("is_ip_address_allowed")

    def is_ip_address_blocked(self, address, port=None, cancel=None):
        return self._unsupported("is_ip_address_blocked")

    def truncate(self, cancel=None):
        return self._unsupported("truncate")

    def save_state(self, path, cancel=None):
        return self._unsupported("save_state")

    def restore_state(self, path, cancel=None):
        return self._unsupported("restore_state")


class Executor(abc.ABC):
    """Translates planned rule group changes into OS firewall primitives.

    Executors hold no state of their own beyond configuration; they raise
    :class:`ApplyFailed` (or :class:`PrivilegeRequired`) on failure.
    """

    @abc.abstractmethod
    def apply_group(self, old: Optional[RuleGroup], new: RuleGroup,
                    added: RangeSet, removed: RangeSet) -> None:
        """Make the OS rule for ``new.name`` match ``new``."""

    def rewrite_group(self, group: RuleGroup) -> None:
        """Full rewrite of a group regardless of its current OS state."""
        self.apply_group(None, group, group.ranges, RangeSet(group.family))

    def rollback(self, old: Optional[RuleGroup], attempted: RuleGroup) -> None:
        """Return the OS rule to ``old`` after applying ``attempted`` failed part way."""
        if old is None:
            self.delete_group(attempted)
        else:
            self.rewrite_group(old)

    @abc.abstractmethod
    def delete_group(self, group: RuleGroup) -> None:
        """Remove the OS rule(s) backing ``group``."""

    def load_groups(self, rule_prefix: str) -> List[RuleGroup]:
        """Rebuild groups from the live firewall at startup."""
        return []

    def save_state(self, path) -> None:
        raise NotSupported("save_state")

    def restore_state(self, path) -> None:
        raise NotSupported("restore_state")


__all__ = [
    "ALLOW_PREFIX",
    "BLOCK_PREFIX",
    "DEFAULT_RULE_PREFIX",
    "Executor",
    "Firewall",
    "FirewallResult",
    "ResultStatus",
    "UnsupportedFirewall",
]
