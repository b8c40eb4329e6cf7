import random
import unittest

import asranges
from asranges import AddressFamily, CIDRBlock, CIDRRangeSet, PrefixOriginTrie, SplitPointIndex

V4 = AddressFamily.IPV4
V6 = AddressFamily.IPV6


def block(text):
    return CIDRBlock.from_string(text)

def rset(*texts):
    blocks = [block(t) for t in texts]
    return CIDRRangeSet(blocks[0].family if blocks else V4, blocks)

def strs(container):
    return [str(b) for b in container]


class TestCIDRBlock(unittest.TestCase):

    def test_from_string(self):
        b = block("10.0.0.0/8")
        self.assertEqual(b.family, V4)
        self.assertEqual(b.network, 0x0a000000)
        self.assertEqual(b.prefix_len, 8)
        self.assertEqual(b.last, 0x0affffff)
        self.assertEqual(str(b), "10.0.0.0/8")
        self.assertEqual(str(block("2001:db8::/32")), "2001:db8::/32")

    def test_invalid(self):
        """Prefix lengths beyond the family width and host bits are rejected."""
        with self.assertRaises(asranges.InvalidBlock):
            CIDRBlock(V4, 0, 33)
        with self.assertRaises(asranges.InvalidBlock):
            CIDRBlock(V6, 0, 129)
        with self.assertRaises(asranges.InvalidBlock):
            CIDRBlock(V4, 1, 24)
        with self.assertRaises(asranges.InvalidBlock):
            block("10.0.0.1/8")
        with self.assertRaises(ValueError):
            block("not a prefix")

    def test_ordering(self):
        blocks = [block("10.1.0.0/16"), block("10.0.0.0/16"), block("10.0.0.0/8"), block("9.0.0.0/8")]
        self.assertEqual([str(b) for b in sorted(blocks)],
                         ["9.0.0.0/8", "10.0.0.0/8", "10.0.0.0/16", "10.1.0.0/16"])

    def test_contains_and_supernet(self):
        self.assertTrue(block("10.0.0.0/8").contains(block("10.255.0.0/16")))
        self.assertFalse(block("10.255.0.0/16").contains(block("10.0.0.0/8")))
        self.assertEqual(block("10.255.1.0/24").supernet(8), block("10.0.0.0/8"))


class TestCIDRRangeSet(unittest.TestCase):

    def test_add_absorbs_subnets(self):
        s = rset("10.1.0.0/16", "10.0.0.0/8", "10.2.3.0/24")
        self.assertEqual(strs(s), ["10.0.0.0/8"])

    def test_simplify_merges_siblings(self):
        s = rset("10.0.0.0/9", "10.128.0.0/10", "10.192.0.0/10")
        self.assertEqual(len(s), 3)
        s.simplify()
        self.assertEqual(strs(s), ["10.0.0.0/8"])

    def test_simplify_keeps_unmergeable(self):
        s = rset("10.128.0.0/9", "11.0.0.0/9").simplify()
        self.assertEqual(strs(s), ["10.128.0.0/9", "11.0.0.0/9"])

    def test_remove_splits(self):
        s = rset("10.0.0.0/8")
        s.remove(block("10.255.0.0/16"))
        self.assertEqual(s.num_addresses(), (1 << 24) - (1 << 16))
        self.assertNotIn(block("10.255.0.0/24"), s)
        self.assertIn(block("10.254.0.0/16"), s)

    def test_remove_outside_and_whole(self):
        s = rset("10.0.0.0/8")
        s.remove(block("11.0.0.0/8"))
        self.assertEqual(strs(s), ["10.0.0.0/8"])
        s.remove(block("0.0.0.0/0"))
        self.assertFalse(s)
        self.assertEqual(list(s), [])

    def test_covers(self):
        s = rset("10.0.0.0/8", "192.168.0.0/24")
        self.assertEqual(s.covers(block("10.1.0.0/16")), block("10.0.0.0/8"))
        self.assertEqual(s.covers(block("10.0.0.0/8")), block("10.0.0.0/8"))
        self.assertIsNone(s.covers(block("10.0.0.0/7")))
        self.assertIsNone(s.covers(block("192.168.0.0/16")))
        self.assertIsNone(s.covers(block("172.16.0.0/12")))

    def test_union_and_difference(self):
        a = rset("10.0.0.0/9")
        b = rset("10.128.0.0/9", "12.0.0.0/8")
        a.union(b).simplify()
        self.assertEqual(strs(a), ["10.0.0.0/8", "12.0.0.0/8"])
        d = a.difference(rset("10.0.0.0/9"))
        self.assertEqual(strs(d.simplify()), ["10.128.0.0/9", "12.0.0.0/8"])
        self.assertEqual(strs(a), ["10.0.0.0/8", "12.0.0.0/8"])

    def test_union_does_not_alias(self):
        a = CIDRRangeSet(V4)
        b = rset("10.0.0.0/9", "10.128.0.0/10")
        a.union(b)
        b.remove(block("10.0.0.0/9"))
        self.assertEqual(strs(a), ["10.0.0.0/9", "10.128.0.0/10"])

    def test_family_mismatch(self):
        with self.assertRaises(asranges.InvalidBlock):
            CIDRRangeSet(V4).add(block("2001:db8::/32"))

    def test_equality_is_by_addresses(self):
        self.assertEqual(rset("10.0.0.0/9", "10.128.0.0/9"), rset("10.0.0.0/8"))
        self.assertNotEqual(rset("10.0.0.0/9"), rset("10.0.0.0/8"))

    def test_pairs_roundtrip(self):
        s = rset("2001:db8::/32", "2001:db9::/48").simplify()
        self.assertEqual(CIDRRangeSet.from_pairs(V6, s.to_pairs()), s)

    def test_random_remove(self):
        """Removing random blocks leaves exactly the addresses outside them."""
        for _ in range(50):
            s = CIDRRangeSet.from_random(V4, num_blocks=8, max_len=12)
            r = CIDRRangeSet.from_random(V4, num_blocks=8, max_len=14)
            d = s.difference(r)
            self.assertEqual(d.num_addresses() + s.copy().simplify().difference(d).num_addresses(),
                             s.num_addresses())
            for b in r:
                self.assertIsNone(d.covers(b))
            for b in d:
                self.assertIsNotNone(s.covers(b))


class TestIntervalToCidrs(unittest.TestCase):

    def convert(self, start, end):
        return [str(b) for b in asranges.interval_to_cidrs(
            V4, int(block(start + "/32").network), int(block(end + "/32").network))]

    def test_single(self):
        self.assertEqual(self.convert("192.168.0.0", "192.168.1.0"), ["192.168.0.0/24"])
        self.assertEqual(self.convert("10.0.0.0", "10.0.2.0"), ["10.0.0.0/23"])
        self.assertEqual(self.convert("10.0.1.0", "10.0.2.0"), ["10.0.1.0/24"])

    def test_multiple(self):
        self.assertEqual(self.convert("10.0.1.0", "10.0.3.0"), ["10.0.1.0/24", "10.0.2.0/24"])

    def test_empty(self):
        self.assertEqual(asranges.interval_to_cidrs(V4, 10, 10), [])
        self.assertEqual(asranges.interval_to_cidrs(V4, 11, 10), [])

    def test_top_of_space(self):
        """The end may be one past the last address, but never further."""
        self.assertEqual([str(b) for b in asranges.interval_to_cidrs(V4, 0, 1 << 32)], ["0.0.0.0/0"])
        blocks = asranges.interval_to_cidrs(V6, (1 << 128) - 2, 1 << 130)
        self.assertEqual([(b.network, b.prefix_len) for b in blocks], [((1 << 128) - 2, 127)])

    def test_exact_and_minimal(self):
        for family in (V4, V6):
            for _ in range(200):
                start = random.randrange(1 << family.width)
                end = min(start + random.randrange(1, 1 << 20), 1 << family.width)
                blocks = asranges.interval_to_cidrs(family, start, end)
                s = CIDRRangeSet(family, blocks)
                self.assertEqual(s.num_addresses(), end - start)
                self.assertEqual(strs(s.copy().simplify()), [str(b) for b in blocks])


class TestPrefixOriginTrie(unittest.TestCase):

    def test_longest_prefix_match(self):
        trie = PrefixOriginTrie(V4)
        trie.insert(block("10.0.0.0/8"), {1000})
        trie.insert(block("10.255.0.0/16"), {1001})
        trie.insert(block("10.255.0.0/24"), {1002})
        match = trie.lookup_address(block("10.255.0.7/32").network)
        self.assertEqual(match, (block("10.255.0.0/24"), frozenset({1002})))
        match = trie.lookup_address(block("10.255.1.0/32").network)
        self.assertEqual(match, (block("10.255.0.0/16"), frozenset({1001})))
        match = trie.lookup_address(block("10.1.0.0/32").network)
        self.assertEqual(match, (block("10.0.0.0/8"), frozenset({1000})))
        self.assertIsNone(trie.lookup_address(block("11.0.0.0/32").network))

    def test_insert_unions(self):
        trie = PrefixOriginTrie(V6)
        trie.insert(block("2001:db8::/32"), {1})
        trie.insert(block("2001:db8::/32"), {2})
        self.assertEqual(trie.get(block("2001:db8::/32")), frozenset({1, 2}))
        self.assertIsNone(trie.get(block("2001:db8::/33")))
        self.assertEqual(len(trie), 1)

    def test_default_route_and_host(self):
        trie = PrefixOriginTrie(V4)
        trie.insert(block("0.0.0.0/0"), {7})
        trie.insert(block("255.255.255.255/32"), {8})
        self.assertEqual(trie.lookup_address(0)[1], frozenset({7}))
        self.assertEqual(trie.lookup_address((1 << 32) - 1)[1], frozenset({8}))

    def test_items_sorted(self):
        trie = PrefixOriginTrie(V4)
        for text in ["10.255.0.0/16", "10.0.0.0/8", "9.0.0.0/8", "10.0.0.0/16"]:
            trie.insert(block(text), {1})
        self.assertEqual([str(b) for b, _ in trie.items()],
                         ["9.0.0.0/8", "10.0.0.0/8", "10.0.0.0/16", "10.255.0.0/16"])


class TestSplitPointIndex(unittest.TestCase):

    def test_points(self):
        splits = SplitPointIndex(V4)
        splits.insert_prefix(block("10.0.0.0/8"))
        splits.insert_prefix(block("10.255.0.0/16"))
        self.assertEqual(splits.points(), [0x0a000000, 0x0aff0000, 0x0b000000])
        self.assertEqual(list(splits.intervals()), [(0x0a000000, 0x0aff0000), (0x0aff0000, 0x0b000000)])

    def test_top_overflow_skipped(self):
        splits = SplitPointIndex(V4)
        splits.insert_prefix(block("255.255.255.0/24"))
        self.assertEqual(splits.points(), [0xffffff00])
        self.assertEqual(list(splits.intervals()), [])


class TestAggregation(unittest.TestCase):

    def build(self, family, entries):
        trie = PrefixOriginTrie(family)
        splits = SplitPointIndex(family)
        for text, asns in entries:
            trie.insert(block(text), asns)
            splits.insert_prefix(block(text))
        return asranges.aggregate_origin_ranges(trie, splits)

    def test_more_specific_takes_space(self):
        ranges = self.build(V4, [("10.0.0.0/8", {1000}), ("10.255.0.0/16", {1001})])
        self.assertEqual(strs(ranges[1001]), ["10.255.0.0/16"])
        self.assertEqual(len(ranges[1000]), 8)
        self.assertEqual(ranges[1000].num_addresses(), (1 << 24) - (1 << 16))

    def test_adjacent_blocks_merge(self):
        ranges = self.build(V4, [("10.0.0.0/9", {1}), ("10.128.0.0/9", {1}), ("12.0.0.0/8", {2})])
        self.assertEqual(strs(ranges[1]), ["10.0.0.0/8"])
        self.assertEqual(strs(ranges[2]), ["12.0.0.0/8"])

    def test_multi_origin(self):
        ranges = self.build(V6, [("2001:db8::/32", {1, 2})])
        self.assertEqual(strs(ranges[1]), ["2001:db8::/32"])
        self.assertEqual(strs(ranges[2]), ["2001:db8::/32"])

    def test_single_origin_roundtrip(self):
        """Without overlap, aggregation equals adding the announced blocks directly."""
        for _ in range(30):
            announced = CIDRRangeSet.from_random(V4, num_blocks=12, max_len=16)
            announced.remove(block("255.0.0.0/8"))
            ranges = self.build(V4, [(str(b), {42}) for b in announced])
            expected = announced.copy().simplify()
            self.assertEqual(ranges.get(42, CIDRRangeSet(V4)), expected)


class TestOverlapExclusion(unittest.TestCase):

    def test_hole_punched(self):
        result = asranges.exclude_overlaps(rset("10.0.0.0/8"), rset("10.255.0.0/16"))
        self.assertEqual(strs(result), [
            "10.0.0.0/9", "10.128.0.0/10", "10.192.0.0/11", "10.224.0.0/12",
            "10.240.0.0/13", "10.248.0.0/14", "10.252.0.0/15", "10.254.0.0/16"])

    def test_equal_length_not_erased(self):
        result = asranges.exclude_overlaps(rset("10.0.0.0/8"), rset("10.0.0.0/8"))
        self.assertEqual(strs(result), ["10.0.0.0/8"])

    def test_broader_not_erased(self):
        result = asranges.exclude_overlaps(rset("10.0.0.0/8"), rset("10.0.0.0/7"))
        self.assertEqual(strs(result), ["10.0.0.0/8"])

    def test_unrelated_not_erased(self):
        included = rset("10.0.0.0/8")
        result = asranges.exclude_overlaps(included, rset("11.1.0.0/16"))
        self.assertEqual(strs(result), ["10.0.0.0/8"])
        self.assertEqual(strs(included), ["10.0.0.0/8"])

    def test_select_announced(self):
        trie = PrefixOriginTrie(V4)
        trie.insert(block("10.0.0.0/8"), {1000})
        trie.insert(block("10.255.0.0/16"), {1001})
        trie.insert(block("10.1.0.0/16"), {1001, 1000})
        included, excluded = asranges.select_announced(trie, [1000])
        self.assertEqual(strs(included), ["10.0.0.0/8"])
        self.assertEqual(strs(excluded), ["10.255.0.0/16"])


class TestSharedUpstream(unittest.TestCase):

    def test_common_suffix(self):
        paths = [[1, 64512, 13335, 15169], [64500, 64512, 13335, 15169], [64501, 9999, 13335, 15169]]
        self.assertEqual(asranges.shared_upstream_suffix(paths), [13335, 15169])

    def test_hop_cap(self):
        self.assertEqual(asranges.shared_upstream_suffix([[10, 20, 30, 40, 50, 60]]), [30, 40, 50, 60])

    def test_disagreeing_origin(self):
        self.assertEqual(asranges.shared_upstream_suffix([[1, 2], [1, 3]]), [])
        self.assertEqual(asranges.shared_upstream_suffix([]), [])

    def test_attribution_needs_two_sources(self):
        b = block("203.0.113.0/24")
        tries = {V4: PrefixOriginTrie(V4), V6: PrefixOriginTrie(V6)}
        tries[V4].insert(b, {15169})
        paths = {(b, 15169): {(0, (1, 13335, 15169)), (0, (2, 13335, 15169))}}
        self.assertEqual(asranges.attribute_shared_upstreams(tries, paths), 0)
        self.assertEqual(tries[V4].get(b), frozenset({15169}))
        paths[(b, 15169)].add((1, (3, 13335, 15169)))
        self.assertEqual(asranges.attribute_shared_upstreams(tries, paths), 1)
        self.assertEqual(tries[V4].get(b), frozenset({13335, 15169}))


class TestPrivateASN(unittest.TestCase):

    def test_ranges(self):
        for asn in (64512, 65534, 4200000000, 4294967294):
            self.assertTrue(asranges.is_private_asn(asn), asn)
        for asn in (64511, 13335, 65535, 4294967295):
            self.assertFalse(asranges.is_private_asn(asn), asn)


if __name__ == '__main__':
    unittest.main()
