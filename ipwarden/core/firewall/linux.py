"""Linux variant: one ipset hash:net set per rule group plus one iptables rule.

Sets are created as ``hash:net family inet|inet6`` so both single addresses
and ranges (as their CIDR cover) fit. Full replacements build a temporary set
and ``swap`` it in atomically; incremental changes feed ``add``/``del`` lines
for only the changed CIDRs to ``ipset restore -!``.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..address import IPV4, IPV6, AddressRange, PortRange
from ..errors import ApplyFailed, InvalidAddress
from ..rangeset import RangeSet
from ..rules import ACTION_ALLOW, ACTION_BLOCK, RuleGroup
from .command import CommandExecutor
from .base import FirewallResult
from .managed import ManagedFirewall

logger = logging.getLogger(__name__)

IPSET_MAX_NAME = 31
IPSET_MAXELEM = 1048576
IPSET_HASHSIZE = 1024
CHAIN = "INPUT"

_MATCH_SET = re.compile(r"--match-set\s+(\S+)\s+src")
_DPORTS = re.compile(r"--dports\s+(\S+)")
_TARGET = re.compile(r"-j\s+(\S+)")


def _family_keyword(family: int) -> str:
    return "inet" if family == IPV4 else "inet6"


def _cidrs(ranges: Iterable[AddressRange]) -> List[str]:
    return [str(net) for rng in ranges for net in rng.to_cidrs()]


def _multiport(ports: Iterable[PortRange]) -> str:
    return ",".join(str(p.start) if p.start == p.end else f"{p.start}:{p.end}" for p in ports)


class IpsetExecutor(CommandExecutor):
    """Drives ``ipset`` and ``iptables``/``ip6tables``."""

    def __init__(self, runner=None, timeout: Optional[float] = 60, chain: str = CHAIN) -> None:
        super().__init__(runner=runner, timeout=timeout)
        self.chain = chain

    # ------------------------------------------------------------------
    # iptables rule
    # ------------------------------------------------------------------
    @staticmethod
    def iptables_binary(family: int) -> str:
        return "iptables" if family == IPV4 else "ip6tables"

    def rule_spec(self, group: RuleGroup) -> List[str]:
        spec = ["-m", "set", "--match-set", group.name, "src"]
        if group.ports:
            spec += ["-p", "tcp", "-m", "multiport", "--dports", _multiport(group.ports)]
        spec += ["-j", "ACCEPT" if group.action == ACTION_ALLOW else "DROP"]
        return spec

    def ensure_rule(self, group: RuleGroup) -> None:
        binary = self.iptables_binary(group.family)
        spec = self.rule_spec(group)
        if self._succeeds([binary, "-C", self.chain, *spec]):
            return
        if group.action == ACTION_ALLOW:
            # allow rules must be evaluated before any drop rule
            self._run([binary, "-I", self.chain, "1", *spec])
        else:
            self._run([binary, "-A", self.chain, *spec])

    def _remove_rule(self, group: RuleGroup) -> None:
        binary = self.iptables_binary(group.family)
        spec = self.rule_spec(group)
        # duplicates can exist after manual edits; delete until none is left
        for _ in range(16):
            if not self._succeeds([binary, "-C", self.chain, *spec]):
                return
            self._run([binary, "-D", self.chain, *spec])

    # ------------------------------------------------------------------
    # ipset payloads
    # ------------------------------------------------------------------
    def _create_line(self, name: str, family: int) -> str:
        return (f"create {name} hash:net family {_family_keyword(family)} "
                f"hashsize {IPSET_HASHSIZE} maxelem {IPSET_MAXELEM} -exist")

    def swap_payload(self, group: RuleGroup) -> str:
        temp = f"{group.name[:IPSET_MAX_NAME - 2]}_t"
        lines = [self._create_line(temp, group.family), f"flush {temp}"]
        lines += [f"add {temp} {cidr} -exist" for cidr in _cidrs(group.ranges)]
        lines += [self._create_line(group.name, group.family), f"swap {temp} {group.name}", f"destroy {temp}"]
        return "\n".join(lines) + "\n"

    def delta_payload(self, group: RuleGroup, added: RangeSet, removed: RangeSet) -> str:
        lines = [f"del {group.name} {cidr} -exist" for cidr in _cidrs(removed)]
        lines += [f"add {group.name} {cidr} -exist" for cidr in _cidrs(added)]
        return "\n".join(lines) + "\n" if lines else ""

    # ------------------------------------------------------------------
    # Executor
    # ------------------------------------------------------------------
    def apply_group(self, old, new, added, removed) -> None:
        if len(new.name) > IPSET_MAX_NAME:
            raise ApplyFailed(f"Rule name {new.name!r} exceeds {IPSET_MAX_NAME} characters")
        if old is None or old.family != new.family:
            self._run(["ipset", "restore"], input_text=self.swap_payload(new))
        else:
            payload = self.delta_payload(new, added, removed)
            if payload:
                self._run(["ipset", "restore", "-!"], input_text=payload)

        if old is not None and (old.ports != new.ports or old.action != new.action):
            self.ensure_rule(new)
            self._remove_rule(old)
        else:
            self.ensure_rule(new)

    def rollback(self, old, attempted) -> None:
        if old is not None and (old.ports != attempted.ports or old.action != attempted.action):
            self._remove_rule(attempted)
        super().rollback(old, attempted)

    def delete_group(self, group: RuleGroup) -> None:
        self._remove_rule(group)
        proc = self._run(["ipset", "destroy", group.name], check=False)
        if getattr(proc, "returncode", 1) != 0:
            stderr = (getattr(proc, "stderr", "") or "").lower()
            if "does not exist" not in stderr:
                self._run(["ipset", "destroy", group.name])

    # ------------------------------------------------------------------
    # Startup rebuild and persistence
    # ------------------------------------------------------------------
    def _rule_metadata(self, family: int) -> Dict[str, Tuple[str, Tuple[PortRange, ...]]]:
        """Map set name -> (action, ports) from ``iptables -S``."""
        proc = self._run([self.iptables_binary(family), "-S", self.chain], check=False)
        meta: Dict[str, Tuple[str, Tuple[PortRange, ...]]] = {}
        for line in self._lines(proc):
            match = _MATCH_SET.search(line)
            if not match:
                continue
            target = _TARGET.search(line)
            action = ACTION_ALLOW if target and target.group(1) == "ACCEPT" else ACTION_BLOCK
            ports: Tuple[PortRange, ...] = ()
            dports = _DPORTS.search(line)
            if dports:
                ports = tuple(PortRange.parse(p.replace(":", "-")) for p in dports.group(1).split(","))
            meta[match.group(1)] = (action, ports)
        return meta

    def load_groups(self, rule_prefix: str) -> List[RuleGroup]:
        proc = self._run(["ipset", "save"])
        families: Dict[str, int] = {}
        members: Dict[str, List[AddressRange]] = {}
        for line in self._lines(proc):
            parts = line.split()
            if len(parts) < 3 or not parts[1].startswith(rule_prefix) or parts[1].endswith("_t"):
                continue
            name = parts[1]
            if parts[0] == "create":
                families[name] = IPV6 if "inet6" in parts else IPV4
                members.setdefault(name, [])
            elif parts[0] == "add":
                try:
                    members.setdefault(name, []).append(AddressRange.parse(parts[2]))
                except InvalidAddress:
                    logger.warning(f"Skipping unparseable ipset entry: {line}")

        metadata = {IPV4: self._rule_metadata(IPV4), IPV6: self._rule_metadata(IPV6)}
        groups = []
        for name, family in sorted(families.items()):
            action, ports = metadata[family].get(name, (ACTION_BLOCK, ()))
            groups.append(RuleGroup(name=name, family=family, ranges=RangeSet(family, members.get(name, [])),
                                    ports=ports, action=action))
        return groups

    def save_state(self, path) -> None:
        proc = self._run(["ipset", "save"])
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".tmp")
        tmp.write_text(getattr(proc, "stdout", "") or "")
        tmp.replace(target)

    def restore_state(self, path) -> None:
        source = Path(path)
        if not source.exists():
            raise ApplyFailed(f"Firewall state file {source} does not exist")
        self._run(["ipset", "restore", "-!"], input_text=source.read_text())


class LinuxFirewall(ManagedFirewall):
    platform_name = "linux"
    requires_administrator = True

    def __init__(self, executor: Optional[IpsetExecutor] = None, **kwargs) -> None:
        super().__init__(executor or IpsetExecutor(), **kwargs)

    def restore_state(self, path, cancel=None):
        result = super().restore_state(path, cancel)
        if not result:
            return result
        # ipset snapshots carry no iptables rules; recreate the one per set
        for group in self.store.groups(self.rule_prefix):
            try:
                self.executor.ensure_rule(group)
            except ApplyFailed as e:
                logger.error(f"Recreating iptables rule for {group.name} failed: {e}")
                return FirewallResult.from_error(e)
        return result
