"""Periodic updaters: ban-queue ingestion, ban expiry and remote ban lists.

Updaters run on the scheduler thread. Their failures are logged and the
loop keeps going; nothing here is allowed to take the scheduler down.
"""
from __future__ import annotations

import abc
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..utils.files import file_delete_with_retry
from .address import AddressRange, coerce_range, try_parse_address
from .errors import InvalidAddress, WardenError
from .events import IPAddressEventHandler, IPAddressEventType, IPAddressLogEvent
from .firewall.base import BLOCK_PREFIX, Firewall, FirewallResult

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SOURCE = "Block"


class Updater(abc.ABC):
    """A unit of periodic work."""

    name = "updater"

    @abc.abstractmethod
    def update(self, cancel: Optional[threading.Event] = None) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources; the default holds none."""


class BlockFileUpdater(Updater):
    """Reads a ban-queue file, emits BLOCKED events and removes the file.

    Each line is ``address`` or ``address,source``. Lines whose address does
    not parse are skipped.
    """

    name = "ban-file"

    def __init__(self, handler: IPAddressEventHandler, path) -> None:
        self.handler = handler
        self.path = Path(path)

    def parse_lines(self, text: str) -> List[IPAddressLogEvent]:
        events = []
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            address, _, source = line.partition(",")
            address = address.strip()
            if try_parse_address(address) is None:
                logger.warning(f"Skipping invalid address {address!r} in {self.path}")
                continue
            events.append(IPAddressLogEvent(
                address=address,
                source=source.strip() or DEFAULT_BLOCK_SOURCE,
                count=1,
                event_type=IPAddressEventType.BLOCKED,
            ))
        return events

    def update(self, cancel=None) -> None:
        if not self.path.exists():
            return
        try:
            events = self.parse_lines(self.path.read_text())
            if events:
                self.handler.add_ip_address_log_events(events)
            file_delete_with_retry(self.path, cancel=cancel)
        except WardenError as e:
            logger.error(f"Ban file {self.path} kept for the next cycle: {e}")
            return
        except Exception:
            logger.exception(f"Failed to process ban file {self.path}")
            return
        logger.info(f"Queued {len(events)} ban(s) from {self.path}")


class BanStore:
    """Thread-safe map of banned address -> ban timestamp."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bans: Dict[str, float] = {}

    def add(self, address: str, when: Optional[float] = None) -> bool:
        """Record a ban; returns False if the address was already banned."""
        with self._lock:
            if address in self._bans:
                return False
            self._bans[address] = time.time() if when is None else when
            return True

    def remove(self, address: str) -> bool:
        with self._lock:
            return self._bans.pop(address, None) is not None

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._bans

    def __len__(self) -> int:
        with self._lock:
            return len(self._bans)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._bans)

    def expired(self, ban_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        with self._lock:
            return sorted(a for a, when in self._bans.items() if now - when >= ban_seconds)


class ExpiredBanUpdater(Updater):
    """Unbans addresses whose ban is older than ``ban_seconds``."""

    name = "ban-expiry"

    def __init__(self, firewall: Firewall, ban_store: BanStore, ban_seconds: float,
                 prefix: str = BLOCK_PREFIX) -> None:
        self.firewall = firewall
        self.ban_store = ban_store
        self.ban_seconds = ban_seconds
        self.prefix = prefix

    def update(self, cancel=None) -> None:
        if self.ban_seconds <= 0:
            return
        expired = self.ban_store.expired(self.ban_seconds)
        if not expired:
            return
        result = self.firewall.block_delta(self.prefix, [(a, False) for a in expired], cancel=cancel)
        if not result:
            logger.error(f"Unbanning {len(expired)} expired address(es) failed: {result.message}")
            return
        for address in expired:
            self.ban_store.remove(address)
        logger.info(f"Unbanned {len(expired)} expired address(es)")


def parse_ban_list(text: str) -> List[AddressRange]:
    """Parse a newline separated list of addresses, ranges and CIDRs.

    ``#`` and ``;`` start comments; unparseable entries are skipped.
    """
    ranges = []
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].split(";", 1)[0].strip()
        if not line:
            continue
        try:
            ranges.append(coerce_range(line))
        except InvalidAddress:
            logger.debug(f"Skipping unparseable ban list entry {line!r}")
    return ranges


class BanListUrlUpdater(Updater):
    """Downloads a remote ban list and makes it the content of one rule group."""

    name = "ban-list"

    def __init__(self, firewall: Firewall, http, url: str, prefix: str) -> None:
        self.firewall = firewall
        self.http = http
        self.url = url
        self.prefix = prefix

    def update(self, cancel=None) -> Optional[FirewallResult]:
        try:
            body = self.http.make_request(self.url, cancel=cancel)
        except Exception as e:
            logger.error(f"Downloading ban list {self.url} failed: {e}")
            return None
        ranges = parse_ban_list(body.decode("utf-8", errors="replace"))
        result = self.firewall.block(self.prefix, ranges, cancel=cancel)
        if result:
            logger.info(f"Ban list {self.url}: {len(ranges)} range(s) into {self.prefix}")
        else:
            logger.error(f"Applying ban list {self.url} failed: {result.message}")
        return result


class UpdaterScheduler:
    """Runs registered updaters on a fixed cadence in a daemon thread."""

    def __init__(self, interval: float = 15.0) -> None:
        self.interval = interval
        self._updaters: List[Updater] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(self, updater: Updater) -> None:
        with self._lock:
            self._updaters.append(updater)

    def extend(self, updaters: Iterable[Updater]) -> None:
        for updater in updaters:
            self.add(updater)

    @property
    def updaters(self) -> List[Updater]:
        with self._lock:
            return list(self._updaters)

    def run_once(self) -> None:
        for updater in self.updaters:
            if self._stop.is_set():
                return
            try:
                updater.update(self._stop)
            except Exception:
                logger.exception(f"Updater {updater.name} failed")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()

        def _worker():
            while not self._stop.is_set():
                self.run_once()
                self._stop.wait(self.interval)

        t = threading.Thread(target=_worker, daemon=True, name="ipwarden-updaters")
        self._thread = t
        t.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        for updater in self.updaters:
            try:
                updater.close()
            except Exception:
                logger.exception(f"Closing updater {updater.name} failed")
