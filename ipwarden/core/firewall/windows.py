"""Windows variant: ``netsh advfirewall`` inbound rules.

netsh cannot edit a rule's address list in place, so every apply rewrites
the group. A rule accepts a bounded number of remote addresses, so a group is
split across ``<name>_0``, ``<name>_1``, ... rules.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from ..address import IPV4, AddressRange, PortRange
from ..errors import InvalidAddress
from ..rangeset import RangeSet
from ..rules import ACTION_ALLOW, ACTION_BLOCK, RuleGroup
from .command import CommandExecutor
from .managed import ManagedFirewall

logger = logging.getLogger(__name__)

MAX_ADDRESSES_PER_RULE = 1000
NETSH = ["netsh", "advfirewall", "firewall"]

_CHUNK_SUFFIX = re.compile(r"^(?P<name>.+)_(?P<index>\d+)$")


def _remote_ip(rng: AddressRange) -> str:
    return str(rng.begin) if rng.is_single else f"{rng.begin}-{rng.end}"


def chunk_count(group: Optional[RuleGroup]) -> int:
    if group is None:
        return 0
    return (len(group.ranges) + MAX_ADDRESSES_PER_RULE - 1) // MAX_ADDRESSES_PER_RULE


class NetshExecutor(CommandExecutor):
    """Drives ``netsh advfirewall firewall``."""

    def add_rule_commands(self, group: RuleGroup) -> List[List[str]]:
        ranges = [_remote_ip(r) for r in group.ranges]
        commands = []
        for index, start in enumerate(range(0, len(ranges), MAX_ADDRESSES_PER_RULE)):
            chunk = ranges[start:start + MAX_ADDRESSES_PER_RULE]
            cmd = NETSH + [
                "add", "rule",
                f"name={group.name}_{index}",
                "dir=in",
                f"action={'allow' if group.action == ACTION_ALLOW else 'block'}",
                "enable=yes",
                "profile=any",
                f"remoteip={','.join(chunk)}",
            ]
            if group.ports:
                cmd += ["protocol=tcp", f"localport={','.join(str(p) for p in group.ports)}"]
            commands.append(cmd)
        return commands

    def _delete_chunks(self, name: str, count: int) -> None:
        for index in range(count):
            proc = self._run(NETSH + ["delete", "rule", f"name={name}_{index}"], check=False)
            if getattr(proc, "returncode", 1) != 0:
                logger.debug(f"netsh rule {name}_{index} was not present")

    def apply_group(self, old, new, added, removed) -> None:
        # an empty remoteip list would match every address, so empty groups have no OS rule
        self._delete_chunks(new.name, max(chunk_count(old), chunk_count(new)))
        for cmd in self.add_rule_commands(new):
            self._run(cmd)

    def rollback(self, old, attempted) -> None:
        # chunks past chunk_count(old) may have been added before the failure
        self._delete_chunks(attempted.name, max(chunk_count(old), chunk_count(attempted)))
        if old is not None:
            for cmd in self.add_rule_commands(old):
                self._run(cmd)

    def delete_group(self, group: RuleGroup) -> None:
        self._delete_chunks(group.name, chunk_count(group))

    def load_groups(self, rule_prefix: str) -> List[RuleGroup]:
        proc = self._run(NETSH + ["show", "rule", "name=all", "dir=in"])
        collected: Dict[str, Tuple[str, List[AddressRange], Tuple[PortRange, ...]]] = {}
        current: Dict[str, str] = {}

        def flush() -> None:
            name = current.get("rule name", "")
            match = _CHUNK_SUFFIX.match(name)
            if not match or not name.startswith(rule_prefix):
                return
            base = match.group("name")
            action = ACTION_ALLOW if current.get("action", "").lower() == "allow" else ACTION_BLOCK
            ports: Tuple[PortRange, ...] = ()
            local_port = current.get("localport", "any")
            if local_port.lower() != "any":
                ports = tuple(PortRange.parse(p) for p in local_port.split(","))
            entry = collected.setdefault(base, (action, [], ports))
            for token in current.get("remoteip", "").split(","):
                token = token.strip()
                if not token or token.lower() == "any":
                    continue
                try:
                    entry[1].append(AddressRange.parse(token))
                except InvalidAddress:
                    logger.warning(f"Skipping unparseable netsh remote address {token!r} in {name}")

        for line in self._lines(proc):
            if ":" not in line:
                continue
            key, _, value = line.partition(":")
            key = key.strip().lower()
            if key == "rule name":
                flush()
                current = {}
            current[key] = value.strip()
        flush()

        groups = []
        for name, (action, ranges, ports) in sorted(collected.items()):
            family = ranges[0].family if ranges else IPV4
            rangeset = RangeSet(family, [r for r in ranges if r.family == family])
            groups.append(RuleGroup(name=name, family=family, ranges=rangeset, ports=ports, action=action))
        return groups


class WindowsFirewall(ManagedFirewall):
    platform_name = "windows"
    requires_administrator = True

    def __init__(self, executor: Optional[NetshExecutor] = None, **kwargs) -> None:
        super().__init__(executor or NetshExecutor(), **kwargs)
