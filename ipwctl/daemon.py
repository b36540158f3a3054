"""Runtime daemon glue for IPWarden."""
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ipwarden.core.address import IPV4, IPV6, coerce_range, is_internal, normalize, try_parse_address
from ipwarden.core.config import WardenConfig
from ipwarden.core.errors import ApplyFailed, Cancelled, InvalidAddress, PrivilegeRequired
from ipwarden.core.events import IPAddressEventType, IPAddressLogEvent
from ipwarden.core.firewall import (
    BLOCK_PREFIX,
    Firewall,
    ManagedFirewall,
    ResultStatus,
    create_firewall,
    resolve_variant,
)
from ipwarden.core.rangeset import RangeSet
from ipwarden.core.retry import RetryPolicy
from ipwarden.core.updater import (
    BanListUrlUpdater,
    BanStore,
    BlockFileUpdater,
    ExpiredBanUpdater,
    UpdaterScheduler,
)
from ipwarden.utils import cmd_runner
from ipwarden.utils.http import HttpRequestMaker

logger = logging.getLogger(__name__)


def build_firewall(config: WardenConfig, platform_name: Optional[str] = None,
                   load_existing: bool = True) -> Firewall:
    """Create the platform firewall described by ``config``.

    Raises :class:`PrivilegeRequired` before touching the OS when the variant
    drives the real firewall and the process is not root/administrator.
    """
    fw_cfg = config.section("firewall")
    platform_name = platform_name or config.platform
    variant = resolve_variant(platform_name)
    if variant is not None and variant.requires_administrator:
        cmd_runner.require_administrator()
    return create_firewall(
        platform_name,
        rule_prefix=fw_cfg.get("rule_prefix", "IPWarden_"),
        retry=RetryPolicy.from_config(fw_cfg.get("retry") or {}),
        load_existing=load_existing,
    )


@dataclass
class WardenDaemon:
    firewall: Firewall
    config: WardenConfig = field(default_factory=WardenConfig.defaults)
    http: Optional[HttpRequestMaker] = None
    ban_store: BanStore = field(default_factory=BanStore)

    def __post_init__(self) -> None:
        banning = self.config.section("banning")
        updaters = self.config.section("updaters")
        self.failed_login_threshold = max(int(banning.get("failed_login_threshold", 5) or 1), 1)
        self.ban_seconds = float(banning.get("ban_seconds", 0) or 0)
        self.whitelist_entries: List[str] = [str(w) for w in banning.get("whitelist") or []]
        self._whitelist: Dict[int, RangeSet] = {IPV4: RangeSet(IPV4), IPV6: RangeSet(IPV6)}
        for entry in self.whitelist_entries:
            try:
                rng = coerce_range(entry)
            except InvalidAddress:
                logger.warning(f"Ignoring invalid whitelist entry {entry!r}")
                continue
            self._whitelist[rng.family].insert(rng)
        self._failed_logins: Counter = Counter()
        self._lock = threading.Lock()
        self.scheduler = UpdaterScheduler(float(updaters.get("interval_seconds", 15) or 15))

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def is_whitelisted(self, address: str) -> bool:
        ip = try_parse_address(address)
        if ip is None:
            return False
        ip = normalize(ip)
        return self._whitelist[ip.version].contains(ip)

    def add_ip_address_log_events(self, events: Iterable[IPAddressLogEvent]) -> None:
        to_ban: List[str] = []
        to_unban: List[str] = []
        with self._lock:
            for event in events:
                ip = try_parse_address(event.address)
                if ip is None:
                    logger.warning(f"Ignoring event for invalid address {event.address!r}")
                    continue
                address = str(normalize(ip))
                if is_internal(address) or self.is_whitelisted(address):
                    logger.debug(f"Ignoring {event.event_type.value} event for {address}")
                    continue
                if event.event_type == IPAddressEventType.FAILED_LOGIN:
                    self._failed_logins[address] += max(event.count, 1)
                    if self._failed_logins[address] >= self.failed_login_threshold \
                            and address not in self.ban_store and address not in to_ban:
                        logger.info(f"{address} reached {self._failed_logins[address]} failed login(s)"
                                    f" (user {event.user_name or '?'}, source {event.source or '?'})")
                        to_ban.append(address)
                elif event.event_type == IPAddressEventType.BLOCKED:
                    if address not in self.ban_store and address not in to_ban:
                        to_ban.append(address)
                elif event.event_type == IPAddressEventType.UNBLOCKED:
                    self._failed_logins.pop(address, None)
                    if address in self.ban_store:
                        to_unban.append(address)
            self._apply(to_ban, to_unban)

    def _apply(self, to_ban: List[str], to_unban: List[str]) -> None:
        """Push bans/unbans to the firewall.

        Raises :class:`ApplyFailed` (or a subclass) when the firewall refused
        the change so callers such as the ban-file updater can retry later.
        A platform without firewall support only logs.
        """
        if not to_ban and not to_unban:
            return
        deltas = [(a, True) for a in to_ban] + [(a, False) for a in to_unban]
        result = self.firewall.block_delta(BLOCK_PREFIX, deltas)
        if result.status is ResultStatus.NOT_SUPPORTED:
            logger.warning(f"Bans not applied: {result.message}")
            return
        if not result:
            message = f"Updating bans failed ({result.status.value}): {result.message}"
            if result.status is ResultStatus.CANCELLED:
                raise Cancelled(message)
            if result.status is ResultStatus.PERMISSION_DENIED:
                raise PrivilegeRequired(message)
            raise ApplyFailed(message)
        now = time.time()
        for address in to_ban:
            self.ban_store.add(address, now)
            self._failed_logins.pop(address, None)
            logger.info(f"Banned {address}")
        for address in to_unban:
            self.ban_store.remove(address)
            logger.info(f"Unbanned {address}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def adopt_existing_bans(self) -> int:
        """Track single-address bans already in the firewall so they expire too."""
        if not isinstance(self.firewall, ManagedFirewall):
            return 0
        adopted = 0
        now = time.time()
        for family in (IPV4, IPV6):
            group = self.firewall.store.get(self.firewall.group_name(BLOCK_PREFIX, family))
            if group is None:
                continue
            for rng in group.ranges:
                if rng.is_single and self.ban_store.add(str(rng.begin), now):
                    adopted += 1
        return adopted

    def build_updaters(self) -> list:
        updaters_cfg = self.config.section("updaters")
        updaters: list = []
        ban_file = updaters_cfg.get("ban_file")
        if ban_file:
            updaters.append(BlockFileUpdater(self, ban_file))
        if self.ban_seconds > 0:
            updaters.append(ExpiredBanUpdater(self.firewall, self.ban_store, self.ban_seconds))
        for feed in updaters_cfg.get("ban_lists") or []:
            url = (feed or {}).get("url")
            prefix = (feed or {}).get("prefix")
            if not url or not prefix:
                logger.warning(f"Ignoring ban list entry without url/prefix: {feed!r}")
                continue
            if self.http is None:
                http_cfg = self.config.section("http")
                self.http = HttpRequestMaker(timeout=float(http_cfg.get("timeout_seconds", 30)),
                                             user_agent=http_cfg.get("user_agent"))
            updaters.append(BanListUrlUpdater(self.firewall, self.http, url, prefix))
        return updaters

    def start(self) -> None:
        if self.whitelist_entries:
            result = self.firewall.allow(self.whitelist_entries)
            if not result:
                logger.error(f"Allowing whitelist failed ({result.status.value}): {result.message}")
        adopted = self.adopt_existing_bans()
        if adopted:
            logger.info(f"Tracking {adopted} existing ban(s) for expiry")
        self.scheduler.extend(self.build_updaters())
        self.scheduler.start()
        logger.info(f"Daemon started with {len(self.scheduler.updaters)} updater(s)")

    def stop(self) -> None:
        self.scheduler.stop()
        if self.config.section("firewall").get("cleanup_on_exit"):
            result = self.firewall.truncate()
            if not result:
                logger.error(f"Removing firewall rules on exit failed: {result.message}")
        if self.http is not None:
            self.http.close()
        logger.info("Daemon stopped")
