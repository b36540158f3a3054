"""Error taxonomy shared by the codec, range engine and firewall layers."""
from __future__ import annotations


class WardenError(Exception):
    """Base class for all ipwarden errors."""


class InvalidAddress(WardenError, ValueError):
    """Malformed or unparseable address, range or port text."""


class AddressFamilyMismatch(WardenError, TypeError):
    """An IPv4 operation was invoked with an IPv6 value or vice versa."""


class NotSupported(WardenError):
    """The active platform variant does not implement an operation."""


class ApplyFailed(WardenError):
    """The OS firewall primitive failed after all retries."""


class PrivilegeRequired(ApplyFailed):
    """The process lacks root/administrator rights for a firewall mutation."""


class Cancelled(WardenError):
    """The caller cancelled the operation before it was applied."""
