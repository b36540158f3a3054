"""State engine shared by the platform variants that have an implementation.

Mutations follow one discipline: plan the new group snapshot while holding
only the per-group mutation lock, run the (slow, blocking) executor call with
retries, then publish the snapshot. On failure or cancellation the previous
snapshot stays published and the OS rule is rolled back to it.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..address import IPV4, IPV6, AddressRange, coerce_range
from ..errors import Cancelled, InvalidAddress, WardenError
from ..retry import RetryPolicy
from ..rules import ACTION_ALLOW, ACTION_BLOCK, IPAddressDelta, RuleGroup, RuleStore, compute_changes
from .base import ALLOW_PREFIX, BLOCK_PREFIX, DEFAULT_RULE_PREFIX, Executor, Firewall, FirewallResult, ResultStatus

logger = logging.getLogger(__name__)


def _split_by_family(values: Iterable) -> Tuple[Dict[int, List[AddressRange]], List[str]]:
    by_family: Dict[int, List[AddressRange]] = {IPV4: [], IPV6: []}
    rejected: List[str] = []
    for value in values:
        try:
            rng = coerce_range(value)
        except InvalidAddress:
            rejected.append(str(value))
            continue
        by_family[rng.family].append(rng)
    return by_family, rejected


def _coerce_deltas(deltas: Iterable) -> Tuple[Dict[int, List[IPAddressDelta]], List[str]]:
    by_family: Dict[int, List[IPAddressDelta]] = {IPV4: [], IPV6: []}
    rejected: List[str] = []
    for item in deltas:
        try:
            if isinstance(item, IPAddressDelta):
                delta = item
            else:
                value, added = item
                delta = IPAddressDelta.of(value, bool(added))
        except (InvalidAddress, TypeError, ValueError):
            rejected.append(str(item))
            continue
        by_family[delta.range.family].append(delta)
    return by_family, rejected


class ManagedFirewall(Firewall):
    """Firewall variant backed by an in-memory rule store and an OS executor."""

    platform_name = "managed"

    def __init__(
        self,
        executor: Executor,
        rule_prefix: str = DEFAULT_RULE_PREFIX,
        retry: Optional[RetryPolicy] = None,
        load_existing: bool = False,
    ) -> None:
        self.executor = executor
        self.rule_prefix = rule_prefix or ""
        self.retry = retry or RetryPolicy()
        self.store = RuleStore()
        if load_existing:
            self.reload()

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def group_name(self, rule_name_prefix: str, family: int) -> str:
        name = f"{self.rule_prefix}{rule_name_prefix}"
        return name if family == IPV4 else f"{name}_6"

    def _names(self, rule_name_prefix: str) -> Dict[int, str]:
        return {family: self.group_name(rule_name_prefix, family) for family in (IPV4, IPV6)}

    def reload(self) -> int:
        """Replace the in-memory groups with what the live firewall holds."""
        groups = self.executor.load_groups(self.rule_prefix)
        for group in groups:
            self.store.publish(group)
        logger.info(f"Loaded {len(groups)} firewall rule group(s) with prefix {self.rule_prefix!r}")
        return len(groups)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------
    def _commit(self, planned: Sequence[RuleGroup], cancel: Optional[threading.Event]) -> FirewallResult:
        """Apply planned groups in order, rolling back earlier ones if a later one fails."""
        names = [g.name for g in planned]
        with self.store.mutating(*names):
            applied: List[Tuple[Optional[RuleGroup], RuleGroup]] = []
            try:
                for group in planned:
                    if cancel is not None and cancel.is_set():
                        raise Cancelled("Operation cancelled")
                    old = self.store.get(group.name)
                    added, removed = compute_changes(old, group)
                    if old is not None and not added and not removed \
                            and old.ports == group.ports and old.action == group.action:
                        continue
                    try:
                        self.retry.call(lambda: self.executor.apply_group(old, group, added, removed), cancel)
                    except Exception:
                        self._rollback(old, group)
                        raise
                    applied.append((old, group))
            except Exception as e:
                for old, group in reversed(applied):
                    self._rollback(old, group)
                result = FirewallResult.from_error(e)
                if isinstance(e, Cancelled):
                    logger.info(f"Firewall update of {', '.join(names)} cancelled")
                elif isinstance(e, WardenError):
                    logger.error(f"Firewall update of {', '.join(names)} failed: {e}")
                else:
                    logger.exception(f"Firewall update of {', '.join(names)} failed")
                return result

            for _, group in applied:
                self.store.publish(group)
                logger.info(f"Applied rule {group.name}: {len(group.ranges)} range(s)")
        return FirewallResult.success(value=[g.name for _, g in applied])

    def _rollback(self, old: Optional[RuleGroup], attempted: RuleGroup) -> None:
        try:
            self.executor.rollback(old, attempted)
        except Exception:
            logger.exception(f"Rollback of rule {attempted.name} failed")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _replace(self, rule_name_prefix: str, addresses: Iterable, ports, action: str,
                 cancel: Optional[threading.Event]) -> FirewallResult:
        by_family, rejected = _split_by_family(addresses)
        for value in rejected:
            logger.warning(f"Ignoring unparseable address {value!r}")
        if rejected and not any(by_family.values()):
            return FirewallResult(ResultStatus.INVALID_ADDRESS, f"No valid addresses in {', '.join(rejected)}")
        planned = []
        try:
            for family, name in self._names(rule_name_prefix).items():
                # an existing group of a family absent from the new list is emptied
                if by_family[family] or self.store.get(name) is not None:
                    planned.append(
                        self.store.create_or_update_rule_group(name, family, by_family[family], ports, action))
        except InvalidAddress as e:
            return FirewallResult.from_error(e)
        return self._commit(planned, cancel)

    def allow(self, addresses, ports=None, cancel=None):
        return self._replace(ALLOW_PREFIX, addresses, ports, ACTION_ALLOW, cancel)

    def block(self, rule_name_prefix, addresses, ports=None, cancel=None):
        return self._replace(rule_name_prefix or BLOCK_PREFIX, addresses, ports, ACTION_BLOCK, cancel)

    def block_delta(self, rule_name_prefix, deltas, ports=None, cancel=None):
        by_family, rejected = _coerce_deltas(deltas)
        for value in rejected:
            logger.warning(f"Ignoring unparseable delta {value!r}")
        if rejected and not any(by_family.values()):
            return FirewallResult(ResultStatus.INVALID_ADDRESS, f"No valid addresses in {', '.join(rejected)}")
        names = self._names(rule_name_prefix or BLOCK_PREFIX)
        # plan and commit under the same (reentrant) locks so concurrent deltas compose
        with self.store.mutating(*names.values()):
            try:
                planned = [
                    self.store.plan_delta(name, family, by_family[family], ports, ACTION_BLOCK)
                    for family, name in names.items()
                    if by_family[family]
                ]
            except InvalidAddress as e:
                return FirewallResult.from_error(e)
            if not planned:
                return FirewallResult.success(value=[])
            return self._commit(planned, cancel)

    def delete_rule(self, rule_name, cancel=None):
        with self.store.mutating(rule_name):
            group = self.store.get(rule_name)
            if group is None:
                return FirewallResult.success(value=False)
            try:
                self.retry.call(lambda: self.executor.delete_group(group), cancel)
            except Exception as e:
                logger.error(f"Deleting rule {rule_name} failed: {e}")
                return FirewallResult.from_error(e)
            self.store.discard(rule_name)
        logger.info(f"Deleted rule {rule_name}")
        return FirewallResult.success(value=True)

    def truncate(self, cancel=None):
        deleted = []
        for name in self.store.rule_names(self.rule_prefix):
            result = self.delete_rule(name, cancel)
            if not result:
                return result
            if result.value:
                deleted.append(name)
        return FirewallResult.success(value=deleted)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_rule_names(self, rule_name_prefix=None, cancel=None):
        return FirewallResult.success(value=self.store.rule_names(f"{self.rule_prefix}{rule_name_prefix or ''}"))

    def _enumerate(self, action: str) -> List[str]:
        return [str(r) for g in self.store.groups(self.rule_prefix) if g.action == action for r in g.ranges]

    def enumerate_allowed_addresses(self, cancel=None):
        return FirewallResult.success(value=self._enumerate(ACTION_ALLOW))

    def enumerate_banned_addresses(self, cancel=None):
        return FirewallResult.success(value=self._enumerate(ACTION_BLOCK))

    def enumerate_ip_addresses(self, rule_name_prefix=None, cancel=None):
        groups = self.store.groups(f"{self.rule_prefix}{rule_name_prefix or ''}")
        return FirewallResult.success(value=[r for g in groups for r in g.ranges])

    def is_ip_address_allowed(self, address, port=None, cancel=None):
        try:
            return FirewallResult.success(value=self.store.is_allowed(address, port))
        except InvalidAddress as e:
            return FirewallResult.from_error(e)

    def is_ip_address_blocked(self, address, port=None, cancel=None):
        try:
            return FirewallResult.success(value=self.store.is_blocked(address, port))
        except InvalidAddress as e:
            return FirewallResult.from_error(e)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save_state(self, path, cancel=None):
        try:
            self.retry.call(lambda: self.executor.save_state(path), cancel)
        except Exception as e:
            logger.error(f"Saving firewall state to {path} failed: {e}")
            return FirewallResult.from_error(e)
        return FirewallResult.success(value=str(path))

    def restore_state(self, path, cancel=None):
        try:
            self.retry.call(lambda: self.executor.restore_state(path), cancel)
            count = self.reload()
        except Exception as e:
            logger.error(f"Restoring firewall state from {path} failed: {e}")
            return FirewallResult.from_error(e)
        return FirewallResult.success(value=count)
