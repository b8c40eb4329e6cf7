"""
This module provides the CIDRBlock, CIDRRangeSet, PrefixOriginTrie and
SplitPointIndex classes, and the functions that attribute address space to
the ASNs originating it.
"""

from __future__ import annotations
import copy
import ipaddress
import random
import unittest
from enum import Enum
from functools import total_ordering
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

# Number of hops, counted from the origin, considered when inferring shared upstreams.
MAX_UPSTREAM_HOPS = 4


class InvalidBlock(ValueError):
    """A CIDR block with a bad prefix length, host bits set, or of the wrong family."""


class AddressFamily(Enum):
    """An address family. The value is the address width in bits."""
    IPV4 = 32
    IPV6 = 128

    @property
    def width(self) -> int:
        """Number of bits in an address of this family."""
        return self.value

    @property
    def max_address(self) -> int:
        """The last address of this family's address space."""
        return (1 << self.value) - 1


def _host_mask(width: int, prefix_len: int) -> int:
    return (1 << (width - prefix_len)) - 1


@total_ordering
class CIDRBlock:
    """
    A class for objects representing one CIDR block of a given address family.

    CIDRBlock objects have a family, network and prefix_len field. The network
    is the integer value of the first address in the block, and only its
    upper prefix_len bits may be set. Blocks order by network address first and
    prefix length second, so a block sorts directly before its subnets.

    Examples:
    - 10.0.0.0/8:       family=IPV4 network=0x0a000000 prefix_len=8
    - 0.0.0.0/0:        family=IPV4 network=0 prefix_len=0
    - 2001:db8::/32:    family=IPV6 network=0x20010db8 << 96 prefix_len=32
    """

    __slots__ = ('family', 'network', 'prefix_len')

    def __init__(self, family: AddressFamily, network: int, prefix_len: int) -> None:
        """Construct a CIDRBlock, raising InvalidBlock if it is not canonical."""
        width = family.width
        if not 0 <= prefix_len <= width:
            raise InvalidBlock("prefix length %i exceeds the %i-bit address width" % (prefix_len, width))
        if not 0 <= network <= family.max_address:
            raise InvalidBlock("network %#x out of range for %s" % (network, family.name))
        if network & _host_mask(width, prefix_len):
            raise InvalidBlock("network %#x has host bits set for /%i" % (network, prefix_len))
        self.family = family
        self.network = network
        self.prefix_len = prefix_len

    @property
    def last(self) -> int:
        """The last address inside this block."""
        return self.network | _host_mask(self.family.width, self.prefix_len)

    def num_addresses(self) -> int:
        """Number of addresses covered by this block."""
        return 1 << (self.family.width - self.prefix_len)

    def bit(self, depth: int) -> int:
        """Get bit number depth of the network, counting from the most significant one."""
        return (self.network >> (self.family.width - 1 - depth)) & 1

    def supernet(self, prefix_len: int) -> CIDRBlock:
        """Get the block of length prefix_len (at most this block's length) containing this one."""
        assert 0 <= prefix_len <= self.prefix_len
        network = self.network & ~_host_mask(self.family.width, prefix_len)
        return CIDRBlock(self.family, network, prefix_len)

    def contains(self, other: CIDRBlock) -> bool:
        """Determine whether other lies entirely inside this block."""
        return (self.family == other.family and other.prefix_len >= self.prefix_len and
                self.network <= other.network <= self.last)

    def to_network(self) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
        """Construct an ipaddress.IPv[46]Network object for this block."""
        if self.family == AddressFamily.IPV4:
            return ipaddress.IPv4Network((self.network, self.prefix_len))
        return ipaddress.IPv6Network((self.network, self.prefix_len))

    @staticmethod
    def from_network(net: Union[ipaddress.IPv4Network, ipaddress.IPv6Network]) -> CIDRBlock:
        """Construct a CIDRBlock from an ipaddress network object."""
        family = AddressFamily.IPV4 if net.version == 4 else AddressFamily.IPV6
        return CIDRBlock(family, int(net.network_address), net.prefixlen)

    @staticmethod
    def from_string(text: str) -> CIDRBlock:
        """Construct a CIDRBlock from a string like "192.168.0.0/16" or "2001:db8::/32"."""
        try:
            net = ipaddress.ip_network(text.strip(), strict=True)
        except ValueError as err:
            raise InvalidBlock(str(err)) from err
        return CIDRBlock.from_network(net)

    def _key(self) -> Tuple[int, int, int]:
        return (self.family.width, self.network, self.prefix_len)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CIDRBlock):
            return self._key() == other._key()
        return NotImplemented

    def __lt__(self, other: CIDRBlock) -> bool:
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return str(self.to_network())

    def __repr__(self) -> str:
        return "CIDRBlock(%s)" % self


class CIDRRangeSet:
    """
    A class whose objects represent a set of addresses of one family, as a
    union of non-overlapping CIDR blocks.

    Internally the set is stored as a binary trie over the address bits. Nodes
    are represented as bare lists for efficiency and ease of manipulation:
    - [] means a block none of whose addresses are in the set.
    - [True] means a block entirely in the set.
    - [node,node] means a block whose lower half and upper half are described
    -             by new trie nodes.

    Adding and removing blocks keeps the trie free of overlap, but may leave
    sibling pairs that could be merged into their parent. simplify() merges
    them, after which iteration yields the minimal list of blocks.
    """

    def __init__(self, family: AddressFamily, blocks: Iterable[CIDRBlock] = ()) -> None:
        """Construct a CIDRRangeSet, optionally adding the specified blocks."""
        self.family = family
        self._trie: List = []
        for block in blocks:
            self.add(block)

    def _check(self, block: CIDRBlock) -> None:
        if block.family != self.family:
            raise InvalidBlock("%s block %s in %s range set" % (block.family.name, block, self.family.name))

    def add(self, block: CIDRBlock) -> None:
        """Add all addresses of block to this set."""
        self._check(block)
        node = self._trie
        for depth in range(block.prefix_len):
            if len(node) == 1:
                # Already covered by a shorter block.
                return
            if len(node) == 0:
                node.append([])
                node.append([])
            node = node[block.bit(depth)]
        node.clear()
        node.append(True)

    def remove(self, block: CIDRBlock) -> None:
        """Remove the addresses of block from this set, splitting blocks that overlap it."""
        self._check(block)
        def recurse(node: List, depth: int) -> None:
            if len(node) == 0:
                return
            if depth == block.prefix_len:
                node.clear()
                return
            if len(node) == 1:
                node.clear()
                node.append([True])
                node.append([True])
            recurse(node[block.bit(depth)], depth + 1)
            if len(node[0]) == 0 and len(node[1]) == 0:
                node.clear()
        recurse(self._trie, 0)

    def union(self, other: CIDRRangeSet) -> CIDRRangeSet:
        """Add all addresses of other to this set. Returns self."""
        if other.family != self.family:
            raise InvalidBlock("cannot merge %s and %s range sets" % (self.family.name, other.family.name))
        def recurse(dst: List, src: List) -> None:
            if len(dst) == 1 or len(src) == 0:
                return
            if len(src) == 1 or len(dst) == 0:
                dst[:] = copy.deepcopy(src)
                return
            recurse(dst[0], src[0])
            recurse(dst[1], src[1])
        recurse(self._trie, other._trie)
        return self

    def difference(self, other: CIDRRangeSet) -> CIDRRangeSet:
        """Construct a new set with the addresses of this set that are not in other."""
        ret = self.copy()
        for block in other:
            ret.remove(block)
        return ret

    def simplify(self) -> CIDRRangeSet:
        """Merge sibling blocks that together cover their parent block. Returns self."""
        def recurse(node: List) -> None:
            if len(node) < 2:
                return
            recurse(node[0])
            recurse(node[1])
            if len(node[0]) == 1 and len(node[1]) == 1:
                node.clear()
                node.append(True)
            elif len(node[0]) == 0 and len(node[1]) == 0:
                node.clear()
        recurse(self._trie)
        return self

    def covers(self, block: CIDRBlock) -> Optional[CIDRBlock]:
        """
        Find the block in this set that contains block and is not more specific
        than it (an exact match or a supernet). Returns None if no such block
        exists, including when block is only partially covered by this set.
        """
        self._check(block)
        node = self._trie
        for depth in range(block.prefix_len + 1):
            if len(node) == 1:
                return block.supernet(depth)
            if len(node) == 0 or depth == block.prefix_len:
                return None
            node = node[block.bit(depth)]
        return None

    def copy(self) -> CIDRRangeSet:
        """Construct an independent copy of this set."""
        ret = CIDRRangeSet(self.family)
        ret._trie = copy.deepcopy(self._trie)
        return ret

    def _to_blocks(self) -> List[CIDRBlock]:
        width = self.family.width
        ret: List[CIDRBlock] = []
        def recurse(node: List, prefix_len: int, prefix: int) -> None:
            if len(node) == 1:
                ret.append(CIDRBlock(self.family, prefix << (width - prefix_len), prefix_len))
            elif len(node) == 2:
                recurse(node[0], prefix_len + 1, prefix << 1)
                recurse(node[1], prefix_len + 1, (prefix << 1) | 1)
        recurse(self._trie, 0, 0)
        return ret

    def __iter__(self) -> Iterator[CIDRBlock]:
        """Iterate over the blocks in this set, sorted by network address then prefix length."""
        return iter(self._to_blocks())

    def to_pairs(self) -> List[Tuple[int, int]]:
        """Convert this set to a list of (network, prefix_len) tuples."""
        return [(block.network, block.prefix_len) for block in self]

    @staticmethod
    def from_pairs(family: AddressFamily, pairs: Iterable[Tuple[int, int]]) -> CIDRRangeSet:
        """Construct a CIDRRangeSet from (network, prefix_len) tuples."""
        return CIDRRangeSet(family, (CIDRBlock(family, network, prefix_len) for network, prefix_len in pairs))

    @staticmethod
    def from_random(family: AddressFamily, num_blocks: int = 10, max_len: int = 8) -> CIDRRangeSet:
        """
        Construct a CIDRRangeSet out of num_blocks random blocks of at most
        max_len bits prefix length. Blocks may overlap, so the result can hold
        fewer blocks than requested. This method is mostly intended for testing.
        """
        assert 0 <= max_len <= family.width
        ret = CIDRRangeSet(family)
        for _ in range(num_blocks):
            prefix_len = random.randrange(max_len + 1)
            network = random.getrandbits(prefix_len) << (family.width - prefix_len) if prefix_len else 0
            ret.add(CIDRBlock(family, network, prefix_len))
        return ret

    def num_addresses(self) -> int:
        """Count the addresses in this set."""
        return sum(block.num_addresses() for block in self)

    def __contains__(self, block: CIDRBlock) -> bool:
        return self.covers(block) is not None

    def __len__(self) -> int:
        return len(self._to_blocks())

    def __bool__(self) -> bool:
        return len(self._trie) > 0

    def __eq__(self, other: object) -> bool:
        """Two sets are equal when they contain the same addresses."""
        if isinstance(other, CIDRRangeSet):
            return (self.family == other.family and
                    self.copy().simplify()._trie == other.copy().simplify()._trie)
        return False

    __hash__ = None  # type: ignore

    def __repr__(self) -> str:
        return "CIDRRangeSet(%s, [%s])" % (self.family.name, ", ".join(str(b) for b in self))


class PrefixOriginTrie:
    """
    A longest-prefix-match index from announced CIDR blocks of one family to
    the set of ASNs observed originating them.

    Nodes are bare lists [child0, child1, asns], where asns is None for nodes
    that only exist as the path to a more specific block.
    """

    def __init__(self, family: AddressFamily) -> None:
        self.family = family
        self._root: List = [None, None, None]
        self._count = 0

    def insert(self, block: CIDRBlock, asns: Iterable[int]) -> None:
        """Union asns into the origin set stored for block."""
        if block.family != self.family:
            raise InvalidBlock("%s block %s in %s trie" % (block.family.name, block, self.family.name))
        node = self._root
        for depth in range(block.prefix_len):
            bit = block.bit(depth)
            if node[bit] is None:
                node[bit] = [None, None, None]
            node = node[bit]
        if node[2] is None:
            node[2] = set()
            self._count += 1
        node[2].update(asns)

    def get(self, block: CIDRBlock) -> Optional[FrozenSet[int]]:
        """Get the origin set stored for exactly block, or None."""
        if block.family != self.family:
            return None
        node = self._root
        for depth in range(block.prefix_len):
            node = node[block.bit(depth)]
            if node is None:
                return None
        return None if node[2] is None else frozenset(node[2])

    def lookup_address(self, addr: int) -> Optional[Tuple[CIDRBlock, FrozenSet[int]]]:
        """Find the most specific inserted block containing addr, with its origin set."""
        width = self.family.width
        if not 0 <= addr <= self.family.max_address:
            raise ValueError("address %#x out of range for %s" % (addr, self.family.name))
        best = None
        node = self._root
        depth = 0
        while True:
            if node[2] is not None:
                best = (depth, node[2])
            if depth == width:
                break
            node = node[(addr >> (width - 1 - depth)) & 1]
            if node is None:
                break
            depth += 1
        if best is None:
            return None
        prefix_len, asns = best
        return CIDRBlock(self.family, addr & ~_host_mask(width, prefix_len), prefix_len), frozenset(asns)

    def items(self) -> Iterator[Tuple[CIDRBlock, FrozenSet[int]]]:
        """Iterate over (block, origin set) pairs, sorted by network address then prefix length."""
        width = self.family.width
        stack = [(self._root, 0, 0)]
        while stack:
            node, prefix_len, prefix = stack.pop()
            if node[2] is not None:
                yield CIDRBlock(self.family, prefix << (width - prefix_len), prefix_len), frozenset(node[2])
            if node[1] is not None:
                stack.append((node[1], prefix_len + 1, (prefix << 1) | 1))
            if node[0] is not None:
                stack.append((node[0], prefix_len + 1, prefix << 1))

    def update(self, other: PrefixOriginTrie) -> None:
        """Union all entries of other into this trie."""
        for block, asns in other.items():
            self.insert(block, asns)

    def __len__(self) -> int:
        return self._count


class SplitPointIndex:
    """
    The set of address-space boundaries induced by announced prefixes of one
    family. Between two consecutive split points no announced prefix starts or
    ends, so a single longest-prefix-match lookup at the lower one determines
    the origins of the whole interval.
    """

    def __init__(self, family: AddressFamily) -> None:
        self.family = family
        self._points: Set[int] = set()

    def insert_prefix(self, block: CIDRBlock) -> None:
        """Add the first address of block, and the address following it if there is one."""
        self._points.add(block.network)
        if block.last < self.family.max_address:
            self._points.add(block.last + 1)

    def update(self, other: SplitPointIndex) -> None:
        self._points.update(other._points)

    def points(self) -> List[int]:
        """Get the split points in increasing order."""
        return sorted(self._points)

    def intervals(self) -> Iterator[Tuple[int, int]]:
        """
        Iterate over the elementary intervals [start, end) in increasing order.
        The last split point only closes the interval before it; nothing past it
        is ever produced.
        """
        points = self.points()
        return zip(points, points[1:])

    def __len__(self) -> int:
        return len(self._points)


def interval_to_cidrs(family: AddressFamily, start: int, end: int) -> List[CIDRBlock]:
    """
    Convert the address interval [start, end) to the minimal list of CIDR
    blocks covering exactly it, in increasing order. The end is clamped to the
    top of the address space.
    """
    width = family.width
    end = min(end, 1 << width)
    ret = []
    while start < end:
        # Largest block aligned at start...
        bits = (start & -start).bit_length() - 1 if start else width
        # ...that does not extend past end.
        bits = min(bits, (end - start).bit_length() - 1)
        ret.append(CIDRBlock(family, start, width - bits))
        start += 1 << bits
    return ret


def aggregate_origin_ranges(trie: PrefixOriginTrie, splits: SplitPointIndex) -> Dict[int, CIDRRangeSet]:
    """
    Attribute address space to origin ASNs.

    Every elementary interval of splits is assigned to all ASNs in the origin
    set of the longest matching prefix in trie. Intervals no announced prefix
    covers are left unassigned. The resulting per-ASN sets are simplified, so
    adjacent blocks of one ASN announced separately are merged.

    Args:
        trie: the announced prefixes with their origin sets.
        splits: the split points built from the same prefixes.
    Returns:
        A dict mapping each ASN to the CIDRRangeSet it originates.
    """
    assert trie.family == splits.family
    family = trie.family
    ranges: Dict[int, CIDRRangeSet] = {}
    for start, end in splits.intervals():
        match = trie.lookup_address(start)
        if match is None:
            continue
        _, asns = match
        blocks = interval_to_cidrs(family, start, end)
        for asn in asns:
            asn_range = ranges.get(asn)
            if asn_range is None:
                asn_range = ranges[asn] = CIDRRangeSet(family)
            for block in blocks:
                asn_range.add(block)
    for asn_range in ranges.values():
        asn_range.simplify()
    return ranges


def select_announced(trie: PrefixOriginTrie, targets: Iterable[int]) -> Tuple[CIDRRangeSet, CIDRRangeSet]:
    """
    Split the announced prefixes in trie into the union of those announced by
    at least one of targets (included) and the union of those announced only
    by other ASNs (excluded). Both are returned simplified.
    """
    targets = frozenset(targets)
    included = CIDRRangeSet(trie.family)
    excluded = CIDRRangeSet(trie.family)
    for block, asns in trie.items():
        if asns & targets:
            included.add(block)
        else:
            excluded.add(block)
    return included.simplify(), excluded.simplify()


def exclude_overlaps(included: CIDRRangeSet, excluded: CIDRRangeSet) -> CIDRRangeSet:
    """
    Remove from included the blocks of excluded that punch a hole into a
    broader included block.

    An excluded block is only subtracted if included holds a strictly less
    specific block covering it. Excluded blocks equal to, broader than, or not
    contained in any included block leave included untouched. Neither argument
    is modified; the result is simplified.
    """
    mask = []
    for block in excluded:
        cover = included.covers(block)
        if cover is not None and cover.prefix_len < block.prefix_len:
            mask.append(block)
    ret = included.copy()
    for block in mask:
        ret.remove(block)
    return ret.simplify()


def shared_upstream_suffix(paths: Iterable[Sequence[int]], max_hops: int = MAX_UPSTREAM_HOPS) -> List[int]:
    """
    Compute the longest common suffix of the AS paths, looking at no more than
    the last max_hops hops of each. Returns an empty list if there are no
    paths or they disagree on the last hop.
    """
    tails = [list(path)[-max_hops:] if max_hops else [] for path in paths]
    if not tails:
        return []
    suffix: List[int] = []
    for pos in range(1, max_hops + 1):
        if any(len(tail) < pos for tail in tails):
            break
        asn = tails[0][-pos]
        if any(tail[-pos] != asn for tail in tails):
            break
        suffix.append(asn)
    suffix.reverse()
    return suffix


def attribute_shared_upstreams(tries: Dict[AddressFamily, PrefixOriginTrie],
                               paths: Dict[Tuple[CIDRBlock, int], Set[Tuple[int, Tuple[int, ...]]]],
                               min_sources: int = 2, max_hops: int = MAX_UPSTREAM_HOPS) -> int:
    """
    Credit transit ASNs that every source agrees on with originating a prefix.

    Args:
        tries: the origin tries to extend, per family.
        paths: for each (prefix, origin ASN) pair, the (source, AS path) pairs observed.
        min_sources: number of distinct sources a pair must be seen from.
        max_hops: number of hops nearest the origin to compare.
    Returns:
        The number of prefixes whose origin set grew.
    """
    enriched = 0
    for (block, _origin), observed in paths.items():
        if len(set(source for source, _ in observed)) < min_sources:
            continue
        suffix = shared_upstream_suffix((path for _, path in observed), max_hops)
        if not suffix:
            continue
        trie = tries[block.family]
        before = trie.get(block) or frozenset()
        if not before.issuperset(suffix):
            trie.insert(block, suffix)
            enriched += 1
    return enriched


def is_private_asn(asn: int) -> bool:
    """Determine whether asn is reserved for private use (RFC6996)."""
    return 64512 <= asn <= 65534 or 4200000000 <= asn <= 4294967294


class TestASRanges(unittest.TestCase):
    """Randomized self-tests for this module."""

    def test_simplify_idempotent(self) -> None:
        """Simplifying twice gives the same result as simplifying once, without losing addresses."""
        for family in AddressFamily:
            for num_blocks in range(1, 30):
                rset = CIDRRangeSet.from_random(family, num_blocks=num_blocks, max_len=10)
                count = rset.num_addresses()
                once = rset.copy().simplify()
                twice = once.copy().simplify()
                self.assertEqual(once._trie, twice._trie)
                self.assertEqual(once.num_addresses(), count)

    def test_interval_roundtrips(self) -> None:
        """Random intervals convert to minimal, exactly covering block lists."""
        for family in AddressFamily:
            for _ in range(500):
                start = random.randrange(1 << family.width)
                end = start + random.randrange(1, 1 << random.randrange(1, 24))
                end = min(end, 1 << family.width)
                blocks = interval_to_cidrs(family, start, end)
                self.assertEqual(blocks[0].network, start)
                self.assertEqual(blocks[-1].last, end - 1)
                for prev, cur in zip(blocks, blocks[1:]):
                    self.assertEqual(prev.last + 1, cur.network)
                rset = CIDRRangeSet(family, blocks)
                self.assertEqual(len(rset.copy().simplify()), len(blocks))


if __name__ == '__main__':
    unittest.main()
