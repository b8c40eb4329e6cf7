# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
Reading RIB dumps into announcement records, merging them across sources,
and caching the per-ASN ranges computed from them.
"""

from __future__ import annotations
import bz2
import concurrent.futures
import gzip
import hashlib
import itertools
import logging
import os
import pickle
import re
from typing import IO, Dict, FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

import asranges
from asranges import AddressFamily, CIDRBlock, CIDRRangeSet

log = logging.getLogger(__name__)

# Per family, the CIDRRangeSet each ASN originates.
OriginRanges = Dict[AddressFamily, Dict[int, CIDRRangeSet]]

# bgpdump -m output, as produced for RIB snapshots and update files.
LINE_PATTERN = re.compile(r"^(?:TABLE_DUMP2?|BGP4MP(?:_ET)?)\|[0-9.]+\|[AB]\|[0-9a-f:.]+\|[0-9]+\|([0-9a-f:./]+)\|([0-9, {}]*)\|")
LINE_AP_PATTERN = re.compile(r"^TABLE_DUMP2_AP\|[0-9.]+\|B\|[0-9a-f:.]+\|[0-9]+\|([0-9a-f:./]+)\|(?:[0-9]+)\|([0-9, {}]*)\|")
SKIP_PATTERN = re.compile(r"^BGP4MP(?:_ET)?\|[0-9.]+\|(?:W|STATE)\|")
TEXT_MAGIC = (b"TABLE_DUMP", b"BGP4MP")

CACHE_SUFFIX = ".cache"


class SourceUnreadable(Exception):
    """An input source cannot be opened or parsed."""


class UnrecognizedLine(ValueError):
    """A line of a text dump that is not an entry this module understands."""


class CacheUnusable(Exception):
    """A cache file exists but cannot be used for the current request."""


class Announcement(NamedTuple):
    """One announcement of a prefix, as consumed by the attribution engine."""
    prefix: CIDRBlock
    origin_asns: FrozenSet[int]
    as_path: Optional[Tuple[int, ...]] = None


class BuildOptions(NamedTuple):
    """Options that change the computed per-ASN ranges (and so the cache key)."""
    ignore_private_asn: bool = False
    shared_upstream: bool = False


def split_as_path(path_str: str) -> Tuple[FrozenSet[int], Tuple[int, ...]]:
    """
    Split an AS path like "3356 174 {64512,64513}" into its origin ASNs and
    the sequence of hops leading to them.

    A trailing AS_SET makes its members the origins. Anything up to and
    including an earlier AS_SET is dropped from the hops, and prepended
    (repeated) ASNs are collapsed. Raises ValueError on malformed input.
    """
    path_str = path_str.strip()
    origins: Set[int] = set()
    while path_str.endswith('}'):
        open_pos = path_str.rindex('{')
        origins.update(int(x) for x in re.split(r"[ ,]+", path_str[open_pos + 1:-1]) if len(x) > 0)
        path_str = path_str[:open_pos].rstrip()
    close_pos = path_str.rfind('}')
    if close_pos >= 0:
        path_str = path_str[close_pos + 1:]
    path = [int(x) for x in path_str.split(' ') if len(x) > 0]
    path = [i[0] for i in itertools.groupby(path)]
    if not origins and path:
        origins.add(path[-1])
    return frozenset(origins), tuple(path)


def parse_dump_line(line: str) -> Optional[Announcement]:
    """
    Parse one line of bgpdump -m output. Returns None for lines that carry
    no announcement (withdrawals, state changes, empty paths). Raises
    UnrecognizedLine for lines in an unknown format, and ValueError for
    entries whose prefix or AS path cannot be parsed.
    """
    if SKIP_PATTERN.match(line):
        return None
    match = LINE_PATTERN.match(line)
    if not match:
        match = LINE_AP_PATTERN.match(line)
    if not match:
        raise UnrecognizedLine("ignoring unparseable line: %s" % line.strip())
    prefix = CIDRBlock.from_string(match[1])
    origins, path = split_as_path(match[2])
    if not origins:
        return None
    return Announcement(prefix, origins, path or None)


def announcement_from_elem(elem) -> Optional[Announcement]:
    """Convert a pybgpkit_parser elem to an Announcement, or None if it is not an announcement."""
    if str(elem.elem_type).upper() not in ("A", "ANNOUNCE"):
        return None
    if not elem.origin_asns:
        return None
    prefix = CIDRBlock.from_string(str(elem.prefix))
    path = None
    if elem.as_path:
        _, hops = split_as_path(str(elem.as_path))
        path = hops or None
    return Announcement(prefix, frozenset(int(asn) for asn in elem.origin_asns), path)


def _open(path: str, mode: str) -> IO:
    encoding = "utf-8" if "t" in mode else None
    if path.endswith(".gz"):
        return gzip.open(path, mode, encoding=encoding)
    if path.endswith(".bz2"):
        return bz2.open(path, mode, encoding=encoding)
    return open(path, mode, encoding=encoding)


def _read_dump(path: str) -> Iterator[Announcement]:
    linenum = 0
    try:
        with _open(path, "rt") as f:
            for line in f:
                linenum += 1
                line = line.rstrip("\r\n")
                if len(line) == 0:
                    continue
                try:
                    record = parse_dump_line(line)
                except UnrecognizedLine as err:
                    log.warning("%s:%i: %s", path, linenum, err)
                    continue
                except ValueError as err:
                    raise SourceUnreadable("Input file '%s' cannot be parsed at line %i: %s" % (path, linenum, err)) from err
                if record is not None:
                    yield record
    except (OSError, EOFError, UnicodeError) as err:
        raise SourceUnreadable("Input file '%s' cannot be read: %s" % (path, err)) from err


def _read_mrt(path: str) -> Iterator[Announcement]:
    from pybgpkit_parser import Parser

    try:
        for elem in Parser(url=path):
            try:
                record = announcement_from_elem(elem)
            except ValueError as err:
                raise SourceUnreadable("Input file '%s' has an invalid entry: %s" % (path, err)) from err
            if record is not None:
                yield record
    except SourceUnreadable:
        raise
    except Exception as err:
        raise SourceUnreadable("Input file '%s' is not a readable MRT file: %s" % (path, err)) from err


def read_source(path: str) -> Iterator[Announcement]:
    """
    Read the announcements in one input source. Text dumps (bgpdump -m) are
    recognized by their first bytes, after any leading whitespace; empty
    files are read as (empty) text dumps. Anything else is read as binary MRT.
    """
    try:
        with _open(path, "rb") as f:
            head = f.read(4096).lstrip()
    except (OSError, EOFError) as err:
        raise SourceUnreadable("Input file '%s' cannot be read: %s" % (path, err)) from err
    if len(head) == 0 or head.startswith(TEXT_MAGIC):
        return _read_dump(path)
    return _read_mrt(path)


def unique_sources(paths: Iterable[str]) -> List[str]:
    """Drop paths naming a file already listed earlier (after resolving links)."""
    seen = set()
    ret = []
    for path in paths:
        real = os.path.realpath(path)
        if real in seen:
            log.debug("Ignoring duplicate source %s", path)
            continue
        seen.add(real)
        ret.append(path)
    return ret


def expand_sources(paths: Iterable[str]) -> List[str]:
    """
    Replace directories in paths with the (non-hidden) files inside them,
    sorted. A file reachable through more than one path is listed once.
    """
    ret = []
    for path in paths:
        if os.path.isdir(path):
            ret.extend(os.path.join(path, name) for name in sorted(os.listdir(path))
                       if not name.startswith('.') and os.path.isfile(os.path.join(path, name)))
        else:
            ret.append(path)
    return unique_sources(ret)


class RibTables:
    """
    The tables built from the announcements of one or more sources: the
    origin trie and split points per family, and (optionally) the AS paths
    seen per (prefix, origin ASN).

    Each source is read into its own RibTables; merge() combines them. Merging
    is a union of sets, so the result does not depend on merge order.
    """

    def __init__(self, keep_paths: bool = False) -> None:
        self.tries = {family: asranges.PrefixOriginTrie(family) for family in AddressFamily}
        self.splits = {family: asranges.SplitPointIndex(family) for family in AddressFamily}
        self.keep_paths = keep_paths
        self.paths: Dict[Tuple[CIDRBlock, int], Set[Tuple[int, Tuple[int, ...]]]] = {}
        self.records = 0

    def add(self, record: Announcement, source: int = 0) -> None:
        """Add one announcement, seen in the source with index source."""
        family = record.prefix.family
        self.tries[family].insert(record.prefix, record.origin_asns)
        self.splits[family].insert_prefix(record.prefix)
        if self.keep_paths and record.as_path:
            tail = record.as_path[-asranges.MAX_UPSTREAM_HOPS:]
            for origin in record.origin_asns:
                self.paths.setdefault((record.prefix, origin), set()).add((source, tail))
        self.records += 1

    def merge(self, other: RibTables) -> RibTables:
        """Union the tables of other into these. Returns self."""
        for family in AddressFamily:
            self.tries[family].update(other.tries[family])
            self.splits[family].update(other.splits[family])
        for key, observed in other.paths.items():
            self.paths.setdefault(key, set()).update(observed)
        self.keep_paths = self.keep_paths or other.keep_paths
        self.records += other.records
        return self

    def num_prefixes(self) -> int:
        return sum(len(trie) for trie in self.tries.values())


def parse_source(path: str, source: int = 0, options: BuildOptions = BuildOptions()) -> RibTables:
    """Read one source into a fresh RibTables. Runs in a worker process."""
    tables = RibTables(keep_paths=options.shared_upstream)
    skipped = 0
    for record in read_source(path):
        if options.ignore_private_asn and any(asranges.is_private_asn(asn) for asn in record.origin_asns):
            skipped += 1
            continue
        tables.add(record, source)
    log.info("Read %i announcements from %s (%i with private origins skipped)", tables.records, path, skipped)
    return tables


def ingest_sources(paths: List[str], options: BuildOptions = BuildOptions(),
                   jobs: Optional[int] = None) -> RibTables:
    """
    Read all sources, in parallel when jobs allows it, and merge the results
    in input order. A file named more than once is read (and counted as a
    source) once. Any unreadable source raises SourceUnreadable.
    """
    paths = unique_sources(paths)
    if jobs is None:
        jobs = os.cpu_count() or 1
    jobs = max(1, min(jobs, len(paths)))
    if jobs == 1:
        partials = [parse_source(path, source, options) for source, path in enumerate(paths)]
    else:
        log.info("Reading %i sources with %i workers", len(paths), jobs)
        with concurrent.futures.ProcessPoolExecutor(max_workers=jobs) as executor:
            partials = list(executor.map(parse_source, paths, range(len(paths)), itertools.repeat(options)))
    merged = RibTables(keep_paths=options.shared_upstream)
    for partial in partials:
        merged.merge(partial)
    log.info("Read %i announcements of %i prefixes from %i sources", merged.records, merged.num_prefixes(), len(paths))
    return merged


def build_tables(paths: List[str], options: BuildOptions = BuildOptions(),
                 jobs: Optional[int] = None) -> RibTables:
    """Ingest all sources and, if enabled, credit shared upstreams with their prefixes."""
    tables = ingest_sources(paths, options, jobs)
    if options.shared_upstream:
        enriched = asranges.attribute_shared_upstreams(tables.tries, tables.paths)
        log.info("Credited shared upstreams for %i prefixes", enriched)
    return tables


def aggregate_tables(tables: RibTables) -> OriginRanges:
    """Compute the per-ASN ranges for both families."""
    ranges = {}
    for family in AddressFamily:
        ranges[family] = asranges.aggregate_origin_ranges(tables.tries[family], tables.splits[family])
        log.info("Attributed %s space to %i ASNs", family.name, len(ranges[family]))
    return ranges


def source_fingerprint(paths: Iterable[str], options: BuildOptions) -> str:
    """Hash the identities (path, size, modification time) of the sources and the options."""
    identities = set()
    for path in paths:
        try:
            st = os.stat(path)
        except OSError as err:
            raise SourceUnreadable("Input file '%s' cannot be read: %s" % (path, err.strerror)) from err
        identities.add("%s:%i:%i" % (os.path.realpath(path), st.st_size, st.st_mtime_ns))
    hasher = hashlib.sha256()
    for identity in sorted(identities):
        hasher.update(identity.encode("utf-8"))
        hasher.update(b"\n")
    hasher.update(b"ignore_private_asn=%i shared_upstream=%i" % (options.ignore_private_asn, options.shared_upstream))
    return hasher.hexdigest()


def cache_file(path: str, fingerprint: str) -> str:
    """Resolve the cache path; a directory holds one file per fingerprint."""
    if os.path.isdir(path):
        return os.path.join(path, fingerprint + CACHE_SUFFIX)
    return path


def _decode_cache(record, fingerprint: str, options: BuildOptions) -> OriginRanges:
    try:
        if record["fingerprint"] != fingerprint:
            raise CacheUnusable("built from different sources")
        if (record["ignore_private_asn"] != options.ignore_private_asn or
                record["shared_upstream"] != options.shared_upstream):
            raise CacheUnusable("built with different options")
        return {family: {asn: CIDRRangeSet.from_pairs(family, pairs)
                         for asn, pairs in record[family.name.lower()].items()}
                for family in AddressFamily}
    except (KeyError, TypeError, ValueError, AttributeError, IndexError) as err:
        raise CacheUnusable("malformed record: %s" % err) from err


def load_cache(path: str, fingerprint: str, options: BuildOptions) -> Optional[OriginRanges]:
    """Load cached per-ASN ranges, or return None if the cache is missing or unusable."""
    try:
        with open(path, "rb") as f:
            try:
                record = pickle.load(f)
            except Exception as err:
                # A corrupt pickle can raise nearly anything.
                raise CacheUnusable("cannot be unpickled: %r" % err) from err
        return _decode_cache(record, fingerprint, options)
    except FileNotFoundError:
        log.debug("No cache at %s", path)
    except OSError as err:
        log.info("Ignoring unreadable cache %s: %s", path, err)
    except CacheUnusable as err:
        log.info("Ignoring cache %s: %s", path, err)
    return None


def save_cache(path: str, fingerprint: str, options: BuildOptions, ranges: OriginRanges) -> bool:
    """Persist per-ASN ranges. Failures are logged and reported by returning False."""
    record = {
        "fingerprint": fingerprint,
        "ignore_private_asn": options.ignore_private_asn,
        "shared_upstream": options.shared_upstream,
    }
    for family in AddressFamily:
        record[family.name.lower()] = {asn: rset.to_pairs() for asn, rset in ranges[family].items()}
    part = path + ".part"
    try:
        with open(part, "wb") as f:
            pickle.dump(record, f, protocol=pickle.HIGHEST_PROTOCOL)
        os.replace(part, path)
    except (OSError, pickle.PicklingError) as err:
        log.warning("Cache %s cannot be written: %s", path, err)
        if os.path.exists(part):
            os.remove(part)
        return False
    log.info("Wrote cache %s", path)
    return True


def build_origin_ranges(paths: List[str], options: BuildOptions = BuildOptions(),
                        cache: Optional[str] = None, jobs: Optional[int] = None) -> OriginRanges:
    """
    Compute the per-ASN ranges of all sources, reusing the cache when it was
    built from the same sources with the same options.
    """
    fingerprint = None
    if cache is not None:
        fingerprint = source_fingerprint(paths, options)
        cache = cache_file(cache, fingerprint)
        ranges = load_cache(cache, fingerprint, options)
        if ranges is not None:
            log.info("Using cached ranges from %s", cache)
            return ranges
    ranges = aggregate_tables(build_tables(paths, options, jobs))
    if cache is not None:
        save_cache(cache, fingerprint, options, ranges)
    return ranges


def select_ranges(ranges: OriginRanges, targets: Iterable[int]) -> Dict[AddressFamily, CIDRRangeSet]:
    """Union the ranges of the target ASNs, per family."""
    targets = set(targets)
    ret = {}
    for family in AddressFamily:
        selected = CIDRRangeSet(family)
        for asn in targets:
            if asn in ranges[family]:
                selected.union(ranges[family][asn])
        ret[family] = selected.simplify()
    return ret


def select_exclusive(tables: RibTables, targets: Iterable[int]) -> Dict[AddressFamily, CIDRRangeSet]:
    """
    Union the prefixes announced by the target ASNs, minus more specific
    prefixes announced only by other ASNs, per family.
    """
    targets = frozenset(targets)
    ret = {}
    for family in AddressFamily:
        included, excluded = asranges.select_announced(tables.tries[family], targets)
        ret[family] = asranges.exclude_overlaps(included, excluded)
    return ret


def format_blocks(selection: Dict[AddressFamily, CIDRRangeSet]) -> Iterator[str]:
    """Yield one line per block: IPv4 first, each family sorted by network then prefix length."""
    for family in AddressFamily:
        for block in sorted(selection[family]):
            yield str(block)


def format_ranges(ranges: OriginRanges) -> Iterator[str]:
    """Yield "<prefix> AS<asn>" lines for all attributed ranges, sorted by prefix then ASN."""
    for family in AddressFamily:
        entries = [(block, asn) for asn, rset in ranges[family].items() for block in rset]
        for block, asn in sorted(entries):
            yield "%s AS%i" % (block, asn)
