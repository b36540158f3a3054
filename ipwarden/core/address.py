"""Address codec: text <-> ipaddress objects <-> fixed width integers.

IPv4 values are 32-bit unsigned integers, IPv6 values 128-bit. The ``swap``
flag mirrors what OS tools do with raw buffers:

- ``swap=True``: the integer is in host order, so numeric comparison follows
  address order. This is what the range engine uses.
- ``swap=False``: the network order bytes are reinterpreted in the CPU's
  native order unchanged, which keeps the on-wire byte layout intact.
"""
from __future__ import annotations

import ipaddress
import logging
import sys
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from .errors import AddressFamilyMismatch, InvalidAddress

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

IPV4 = 4
IPV6 = 6

_WIDTH = {IPV4: 4, IPV6: 16}
_LOCALHOST_V6 = ipaddress.IPv6Address("::1")
_SITE_LOCAL_V6 = ipaddress.IPv6Network("fec0::/10")


def parse_address(text) -> IPAddress:
    """Parse an IPv4 or IPv6 address, raising InvalidAddress on failure."""
    if isinstance(text, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return text
    if not isinstance(text, str):
        raise InvalidAddress(f"Not an address: {text!r}")
    candidate = text.strip()
    # scoped link-local addresses (fe80::1%eth0) carry no meaning for the firewall
    if "%" in candidate:
        candidate = candidate.split("%", 1)[0]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError as e:
        raise InvalidAddress(f"Unparseable address: {text!r}") from e


def try_parse_address(text) -> Optional[IPAddress]:
    try:
        return parse_address(text)
    except InvalidAddress:
        return None


def _check_family(address: IPAddress, family: Optional[int]) -> int:
    if family is not None and address.version != family:
        raise AddressFamilyMismatch(f"{address} is not an ipv{family} address")
    return address.version


def to_integer(address, family: Optional[int] = None, swap: bool = True) -> int:
    """Convert an address to its 32 or 128 bit unsigned integer."""
    ip = parse_address(address)
    _check_family(ip, family)
    packed = ip.packed
    if swap:
        return int.from_bytes(packed, "big")
    return int.from_bytes(packed, sys.byteorder)


def from_integer(value: int, family: int, swap: bool = True) -> IPAddress:
    """Inverse of :func:`to_integer` with the same ``swap`` semantics."""
    if family not in _WIDTH:
        raise AddressFamilyMismatch(f"Unknown address family: {family}")
    width = _WIDTH[family]
    if not isinstance(value, int) or value < 0 or value >= 1 << (width * 8):
        raise InvalidAddress(f"{value!r} does not fit in an ipv{family} address")
    packed = value.to_bytes(width, "big" if swap else sys.byteorder)
    if family == IPV4:
        return ipaddress.IPv4Address(packed)
    return ipaddress.IPv6Address(packed)


def normalize(address) -> IPAddress:
    """Parse and unwrap IPv4-mapped IPv6 addresses to plain IPv4."""
    ip = parse_address(address)
    if ip.version == IPV6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def address_forms(address) -> Tuple[IPAddress, ...]:
    """The address plus its IPv4 / IPv4-mapped IPv6 twin, IPv4 form first."""
    ip = normalize(address)
    if ip.version == IPV4:
        return ip, ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + ip.packed)
    return (ip,)


def is_internal(address) -> bool:
    """Whether an address is private, loopback or otherwise non-routable.

    Used to keep the daemon from banning itself; not a security decision.
    Unexpected failures err on the side of "internal".
    """
    try:
        ip = normalize(address)
        if ip.version == IPV4:
            first, second = ip.packed[0], ip.packed[1]
            if first in (0, 10, 127):
                return True
            if first == 172:
                return 16 <= second < 32
            if first == 192:
                return second == 168
            return False

        text = str(ip)
        if len(text) < 3 or text == "::1":
            return True
        if ip in _SITE_LOCAL_V6:
            return True
        words = [w for w in text.split(":") if w]
        if not words:
            return True
        first_word = words[0]
        # unique local (fc00::/8 and fd00::/8) only when the first hextet is fully written
        if len(first_word) >= 4 and first_word[:2] in ("fc", "fd"):
            return True
        if first_word == "fe80":
            return True
        # discard prefix
        if first_word == "100":
            return True
        return False
    except InvalidAddress:
        raise
    except Exception as e:
        logger.warning(f"Invalid is_internal check for {address}: {e}")
        return True


def is_loopback(address) -> bool:
    ip = parse_address(address)
    packed = ip.packed
    if ip.version == IPV4:
        return packed[0] == 127 and packed[1] == 0 and packed[2] in (0, 1) and packed[3] == 1
    return ip == _LOCALHOST_V6


def _map_to_ipv6(ip: IPAddress) -> ipaddress.IPv6Address:
    if is_loopback(ip):
        return _LOCALHOST_V6
    if ip.version == IPV6:
        return ip
    return ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + ip.packed)


def addresses_equal(a, b) -> bool:
    """Compare two addresses, treating IPv4 and its IPv4-mapped IPv6 form as equal."""
    ip_a, ip_b = parse_address(a), parse_address(b)
    if ip_a == ip_b:
        return True
    return _map_to_ipv6(ip_a) == _map_to_ipv6(ip_b)


@dataclass(frozen=True)
class AddressRange:
    """Inclusive range of addresses of a single family."""

    begin: IPAddress
    end: IPAddress

    def __post_init__(self) -> None:
        begin = parse_address(self.begin)
        end = parse_address(self.end)
        if begin.version != end.version:
            raise AddressFamilyMismatch(f"Range {begin}-{end} mixes address families")
        if begin > end:
            raise InvalidAddress(f"Range begin {begin} is after end {end}")
        object.__setattr__(self, "begin", begin)
        object.__setattr__(self, "end", end)

    @classmethod
    def single(cls, address) -> "AddressRange":
        ip = parse_address(address)
        return cls(ip, ip)

    @classmethod
    def from_integers(cls, family: int, first: int, last: int) -> "AddressRange":
        return cls(from_integer(first, family), from_integer(last, family))

    @classmethod
    def parse(cls, text: str) -> "AddressRange":
        """Parse ``a``, ``a-b`` or ``a/prefixlen``."""
        if not isinstance(text, str):
            raise InvalidAddress(f"Not a range: {text!r}")
        value = text.strip()
        if "/" in value:
            try:
                network = ipaddress.ip_network(value, strict=False)
            except ValueError as e:
                raise InvalidAddress(f"Unparseable network: {text!r}") from e
            return cls(network.network_address, network.broadcast_address)
        if "-" in value:
            begin, _, end = value.partition("-")
            return cls(parse_address(begin), parse_address(end))
        return cls.single(value)

    @property
    def family(self) -> int:
        return self.begin.version

    @property
    def first(self) -> int:
        return int(self.begin)

    @property
    def last(self) -> int:
        return int(self.end)

    @property
    def is_single(self) -> bool:
        return self.begin == self.end

    def contains(self, address) -> bool:
        ip = parse_address(address)
        if ip.version != self.family:
            return False
        return self.begin <= ip <= self.end

    def to_cidrs(self) -> List[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
        return list(ipaddress.summarize_address_range(self.begin, self.end))

    def __iter__(self) -> Iterator[IPAddress]:
        current = self.first
        while current <= self.last:
            yield from_integer(current, self.family)
            current += 1

    def __str__(self) -> str:
        if self.is_single:
            return str(self.begin)
        cidrs = self.to_cidrs()
        if len(cidrs) == 1:
            return str(cidrs[0])
        return f"{self.begin}-{self.end}"


def coerce_range(value) -> AddressRange:
    """Accept an AddressRange, address object or range text."""
    if isinstance(value, AddressRange):
        return value
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return AddressRange.single(value)
    if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return AddressRange(value.network_address, value.broadcast_address)
    return AddressRange.parse(value)


@dataclass(frozen=True)
class PortRange:
    """Inclusive TCP/UDP port range."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not (0 <= self.start <= self.end <= 65535):
            raise InvalidAddress(f"Invalid port range {self.start}-{self.end}")

    @classmethod
    def parse(cls, text) -> "PortRange":
        if isinstance(text, PortRange):
            return text
        if isinstance(text, int):
            return cls(text, text)
        value = str(text).strip()
        try:
            if "-" in value:
                start, _, end = value.partition("-")
                return cls(int(start), int(end))
            port = int(value)
        except ValueError as e:
            raise InvalidAddress(f"Unparseable port range: {text!r}") from e
        return cls(port, port)

    def contains(self, port: int) -> bool:
        return self.start <= port <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"
