"""Configuration helpers for IPWarden."""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_ENV = "IPWARDEN_CONFIG"
PLATFORM_ENV = "IPWARDEN_PLATFORM"
DEFAULT_CONFIG_PATH = Path("/etc/ipwarden/ipwarden.yaml")

DEFAULTS: Dict[str, Any] = {
    "firewall": {
        "rule_prefix": "IPWarden_",
        "platform": None,
        "retry": {"attempts": 3, "delay_seconds": 1.0, "backoff": 2.0},
        "state_file": "/var/lib/ipwarden/firewall.state",
        "cleanup_on_exit": False,
    },
    "banning": {
        "failed_login_threshold": 5,
        "ban_seconds": 86400,
        "whitelist": [],
    },
    "updaters": {
        "interval_seconds": 15,
        "ban_file": "/var/lib/ipwarden/ban.txt",
        "ban_lists": [],
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "ipwarden",
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class WardenConfig:
    """Represents the configuration of a warden process, defaults included."""

    raw: Dict[str, Any]

    @classmethod
    def from_file(cls, path: str | Path) -> "WardenConfig":
        data = yaml.safe_load(Path(path).read_text())
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration root must be a mapping")
        return cls(raw=_merge(DEFAULTS, data))

    @classmethod
    def defaults(cls) -> "WardenConfig":
        return cls(raw=copy.deepcopy(DEFAULTS))

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw.get(key, default)

    def require(self, key: str) -> Any:
        if key not in self.raw:
            raise KeyError(f"Missing configuration key: {key}")
        return self.raw[key]

    def section(self, key: str) -> Dict[str, Any]:
        value = self.raw.get(key) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Configuration section {key!r} must be a mapping")
        return value

    @property
    def platform(self) -> Optional[str]:
        return os.environ.get(PLATFORM_ENV) or self.section("firewall").get("platform")


def load_config(path: Optional[str | Path] = None) -> WardenConfig:
    """Load ``path``, else ``$IPWARDEN_CONFIG``, else the system file if present."""
    candidate = path or os.environ.get(CONFIG_ENV)
    if candidate:
        return WardenConfig.from_file(candidate)
    if DEFAULT_CONFIG_PATH.exists():
        return WardenConfig.from_file(DEFAULT_CONFIG_PATH)
    return WardenConfig.defaults()
