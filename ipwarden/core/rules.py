"""Rule groups, deltas and the in-memory rule store.

Groups are immutable snapshots. A mutation plans a new snapshot from the
current one, the caller applies it to the OS, and only then publishes it, so
readers always see either the previous or the new complete group.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .address import AddressRange, PortRange, address_forms, coerce_range
from .rangeset import RangeSet

ACTION_BLOCK = "block"
ACTION_ALLOW = "allow"


@dataclass(frozen=True)
class IPAddressDelta:
    """Single add/remove change of a group's address membership."""

    range: AddressRange
    added: bool = True

    @classmethod
    def of(cls, value, added: bool = True) -> "IPAddressDelta":
        return cls(coerce_range(value), added)


@dataclass(frozen=True)
class RuleGroup:
    name: str
    family: int
    ranges: RangeSet
    ports: Tuple[PortRange, ...] = ()
    action: str = ACTION_BLOCK

    def matches_port(self, port: Optional[int]) -> bool:
        if port is None or port < 0 or not self.ports:
            return True
        return any(p.contains(port) for p in self.ports)

    def matches(self, address, port: Optional[int] = None) -> bool:
        return self.ranges.contains(address) and self.matches_port(port)


def compute_changes(old: Optional[RuleGroup], new: RuleGroup) -> Tuple[RangeSet, RangeSet]:
    """Minimal (added, removed) range sets turning ``old`` into ``new``."""
    previous = old.ranges if old is not None else RangeSet(new.family)
    return new.ranges.difference(previous), previous.difference(new.ranges)


def _ports(ports: Optional[Iterable]) -> Tuple[PortRange, ...]:
    return tuple(PortRange.parse(p) for p in (ports or ()))


class RuleStore:
    """Published rule groups plus the locks that serialize their mutation."""

    def __init__(self) -> None:
        self._groups: Dict[str, RuleGroup] = {}
        # guards _groups and _name_locks; held only while reading/publishing
        self._lock = threading.Lock()
        self._name_locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def mutating(self, *names: str) -> Iterator[None]:
        """Serialize mutations of the given group names (sorted to avoid deadlock, reentrant)."""
        with self._lock:
            locks = [self._name_locks.setdefault(n, threading.RLock()) for n in sorted(set(names))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # -- planning (no side effects) ----------------------------------------
    def create_or_update_rule_group(
        self,
        name: str,
        family: int,
        ranges: Iterable,
        ports: Optional[Iterable] = None,
        action: str = ACTION_BLOCK,
    ) -> RuleGroup:
        return RuleGroup(name=name, family=family, ranges=RangeSet(family, ranges), ports=_ports(ports), action=action)

    def plan_delta(
        self,
        name: str,
        family: int,
        deltas: Sequence[IPAddressDelta],
        ports: Optional[Iterable] = None,
        action: str = ACTION_BLOCK,
    ) -> RuleGroup:
        current = self.get(name)
        ranges = current.ranges.copy() if current is not None else RangeSet(family)
        for delta in deltas:
            if delta.added:
                ranges.insert(delta.range)
            else:
                ranges.remove(delta.range)
        if ports is None and current is not None:
            port_ranges = current.ports
        else:
            port_ranges = _ports(ports)
        return RuleGroup(name=name, family=family, ranges=ranges, ports=port_ranges, action=action)

    # -- publishing ----------------------------------------------------------
    def publish(self, group: RuleGroup) -> None:
        with self._lock:
            self._groups[group.name] = group

    def discard(self, name: str) -> Optional[RuleGroup]:
        with self._lock:
            return self._groups.pop(name, None)

    # -- queries -------------------------------------------------------------
    def get(self, name: str) -> Optional[RuleGroup]:
        with self._lock:
            return self._groups.get(name)

    def groups(self, prefix: Optional[str] = None) -> List[RuleGroup]:
        with self._lock:
            snapshot = list(self._groups.values())
        return sorted((g for g in snapshot if not prefix or g.name.startswith(prefix)), key=lambda g: g.name)

    def rule_names(self, prefix: Optional[str] = None) -> List[str]:
        return [g.name for g in self.groups(prefix)]

    def _matching(self, action: str, address, port: Optional[int]) -> Optional[RuleGroup]:
        # an IPv4 address may also be stored in a _6 group in its ::ffff: mapped form
        forms = address_forms(address)
        for group in self.groups():
            if group.action != action:
                continue
            for ip in forms:
                if group.family == ip.version and group.matches(ip, port):
                    return group
        return None

    def is_blocked(self, address, port: Optional[int] = None) -> Tuple[bool, Optional[str]]:
        group = self._matching(ACTION_BLOCK, address, port)
        return (True, group.name) if group is not None else (False, None)

    def is_allowed(self, address, port: Optional[int] = None) -> bool:
        return self._matching(ACTION_ALLOW, address, port) is not None
