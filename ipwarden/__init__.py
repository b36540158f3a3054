"""IPWarden - address-range firewall rule management."""

__version__ = "0.1.0"

from .core.address import AddressRange, PortRange
from .core.config import WardenConfig, load_config
from .core.firewall import Firewall, FirewallResult, ResultStatus, create_firewall
from .core.rangeset import RangeSet

__all__ = [
    "AddressRange",
    "Firewall",
    "FirewallResult",
    "PortRange",
    "RangeSet",
    "ResultStatus",
    "WardenConfig",
    "create_firewall",
    "load_config",
]
