"""Sorted, merged sets of address ranges with O(log n) containment."""
from __future__ import annotations

from bisect import bisect_left, bisect_right
from typing import Iterable, Iterator, List, Tuple

from .address import IPV4, IPV6, AddressRange, coerce_range, parse_address
from .errors import AddressFamilyMismatch

Span = Tuple[int, int]


def compare_range(query: Span, stored: Span, adjacent: bool = True) -> int:
    """Order a query span against a stored span.

    Returns -1 when the query lies entirely below, 1 when entirely above and 0
    when they collide. With ``adjacent`` a query touching the stored span also
    collides, which is what merging needs; containment uses the strict form.
    """
    slack = 1 if adjacent else 0
    if query[1] + slack < stored[0]:
        return -1
    if query[0] > stored[1] + slack:
        return 1
    return 0


class RangeSet:
    """Per-family set of non-overlapping, non-adjacent ranges sorted by begin."""

    __slots__ = ("family", "_begins", "_ends")

    def __init__(self, family: int, ranges: Iterable = ()) -> None:
        if family not in (IPV4, IPV6):
            raise AddressFamilyMismatch(f"Unknown address family: {family}")
        self.family = family
        self._begins: List[int] = []
        self._ends: List[int] = []
        for value in ranges:
            self.insert(value)

    @classmethod
    def from_ranges(cls, family: int, ranges: Iterable) -> "RangeSet":
        return cls(family, ranges)

    def copy(self) -> "RangeSet":
        clone = RangeSet(self.family)
        clone._begins = list(self._begins)
        clone._ends = list(self._ends)
        return clone

    def _span(self, value) -> Span:
        rng = coerce_range(value)
        if rng.family != self.family:
            raise AddressFamilyMismatch(f"{rng} is not an ipv{self.family} range")
        return rng.first, rng.last

    def _colliding(self, span: Span, adjacent: bool) -> Tuple[int, int]:
        """Index bounds [lo, hi) of stored spans colliding with ``span``."""
        slack = 1 if adjacent else 0
        # first stored span whose end reaches the query begin
        lo = bisect_left(self._ends, span[0] - slack)
        # first stored span starting beyond the query end
        hi = bisect_right(self._begins, span[1] + slack)
        return lo, max(lo, hi)

    def insert(self, value) -> None:
        """Add a range, coalescing every overlapping or touching neighbour."""
        begin, end = self._span(value)
        lo, hi = self._colliding((begin, end), adjacent=True)
        if lo < hi:
            begin = min(begin, self._begins[lo])
            end = max(end, self._ends[hi - 1])
        self._begins[lo:hi] = [begin]
        self._ends[lo:hi] = [end]

    def remove(self, value) -> None:
        """Remove a range, trimming or splitting any stored range it touches."""
        begin, end = self._span(value)
        lo, hi = self._colliding((begin, end), adjacent=False)
        if lo >= hi:
            return
        new_begins: List[int] = []
        new_ends: List[int] = []
        first_begin = self._begins[lo]
        last_end = self._ends[hi - 1]
        if first_begin < begin:
            new_begins.append(first_begin)
            new_ends.append(begin - 1)
        if last_end > end:
            new_begins.append(end + 1)
            new_ends.append(last_end)
        self._begins[lo:hi] = new_begins
        self._ends[lo:hi] = new_ends

    def contains(self, address) -> bool:
        ip = parse_address(address)
        if ip.version != self.family:
            return False
        value = int(ip)
        index = bisect_right(self._begins, value) - 1
        return index >= 0 and compare_range((value, value), (self._begins[index], self._ends[index]), adjacent=False) == 0

    def contains_range(self, value) -> bool:
        begin, end = self._span(value)
        index = bisect_right(self._begins, begin) - 1
        return index >= 0 and self._begins[index] <= begin and end <= self._ends[index]

    def difference(self, other: "RangeSet") -> "RangeSet":
        """Addresses in this set that are not in ``other``."""
        if other.family != self.family:
            raise AddressFamilyMismatch("Cannot diff range sets of different families")
        result = self.copy()
        for span in other.spans():
            result.remove(AddressRange.from_integers(self.family, *span))
        return result

    def spans(self) -> Iterator[Span]:
        return iter(list(zip(self._begins, self._ends)))

    def ranges(self) -> List[AddressRange]:
        return [AddressRange.from_integers(self.family, b, e) for b, e in zip(self._begins, self._ends)]

    def address_count(self) -> int:
        return sum(e - b + 1 for b, e in zip(self._begins, self._ends))

    def __iter__(self) -> Iterator[AddressRange]:
        return iter(self.ranges())

    def __len__(self) -> int:
        return len(self._begins)

    def __bool__(self) -> bool:
        return bool(self._begins)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self.family == other.family and self._begins == other._begins and self._ends == other._ends

    def __repr__(self) -> str:
        return f"RangeSet(ipv{self.family}, [{', '.join(str(r) for r in self.ranges())}])"
