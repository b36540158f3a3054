"""Firewall capability contract and platform dispatch.

The variant is picked once at startup by :func:`create_firewall` and is not
swapped afterwards.
"""
from __future__ import annotations

import logging
import os
import platform
from typing import Dict, Optional, Type

from .base import (
    ALLOW_PREFIX,
    BLOCK_PREFIX,
    DEFAULT_RULE_PREFIX,
    Executor,
    Firewall,
    FirewallResult,
    ResultStatus,
    UnsupportedFirewall,
)
from .linux import IpsetExecutor, LinuxFirewall
from .macos import MacFirewall
from .managed import ManagedFirewall
from .memory import MemoryExecutor, MemoryFirewall
from .windows import NetshExecutor, WindowsFirewall

logger = logging.getLogger(__name__)

VARIANTS: Dict[str, Type[Firewall]] = {
    "linux": LinuxFirewall,
    "windows": WindowsFirewall,
    "macos": MacFirewall,
    "memory": MemoryFirewall,
}

_ALIASES = {"darwin": "macos", "mac": "macos", "osx": "macos", "win32": "windows"}


def detect_platform() -> str:
    """Return the variant key for the running OS (``IPWARDEN_PLATFORM`` overrides)."""
    name = os.environ.get("IPWARDEN_PLATFORM") or platform.system()
    name = name.strip().lower()
    return _ALIASES.get(name, name)


def _platform_key(platform_name: Optional[str]) -> str:
    key = platform_name.strip().lower() if platform_name else detect_platform()
    return _ALIASES.get(key, key)


def resolve_variant(platform_name: Optional[str] = None) -> Optional[Type[Firewall]]:
    """Return the variant class for ``platform_name``, or None if there is none."""
    return VARIANTS.get(_platform_key(platform_name))


def create_firewall(platform_name: Optional[str] = None, **kwargs) -> Firewall:
    """Build the firewall variant for ``platform_name`` (detected when omitted).

    Unknown platforms get an :class:`UnsupportedFirewall` rather than an error.
    """
    key = _platform_key(platform_name)
    variant = VARIANTS.get(key)
    if variant is None:
        logger.warning(f"No firewall implementation for platform {key!r}")
        return UnsupportedFirewall(platform_name=key)
    logger.info(f"Using {variant.__name__} firewall")
    return variant(**kwargs)


__all__ = [
    "ALLOW_PREFIX",
    "BLOCK_PREFIX",
    "DEFAULT_RULE_PREFIX",
    "Executor",
    "Firewall",
    "FirewallResult",
    "IpsetExecutor",
    "LinuxFirewall",
    "MacFirewall",
    "ManagedFirewall",
    "MemoryExecutor",
    "MemoryFirewall",
    "NetshExecutor",
    "ResultStatus",
    "UnsupportedFirewall",
    "VARIANTS",
    "WindowsFirewall",
    "create_firewall",
    "resolve_variant",
    "detect_platform",
]
