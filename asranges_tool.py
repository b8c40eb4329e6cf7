# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

import argparse
import logging
import sys

import ribingest

DEFAULT_SOURCE = "./rib"


def parse_asn(text):
    """Parse an ASN given as "13335" or "AS13335"."""
    digits = text[2:] if text[:2].upper() == "AS" else text
    if len(digits) == 0 or any(c < '0' or c > '9' for c in digits):
        raise argparse.ArgumentTypeError("invalid ASN '%s'" % text)
    asn = int(digits)
    if asn >= 1 << 32:
        raise argparse.ArgumentTypeError("ASN '%s' does not fit in 32 bits" % text)
    return asn

def add_source_arguments(parser):
    parser.add_argument('-m', '--mrt-file', dest="sources", action="append", metavar="FILE",
                        help="RIB dump (MRT, or bgpdump -m text), or a directory of them; "
                             "may be repeated; default is %s" % DEFAULT_SOURCE)
    parser.add_argument('--ignore-private-asn', dest="ignore_private_asn", default=False, action="store_true",
                        help="drop announcements whose origin includes a private ASN")
    parser.add_argument('--shared-upstream', dest="shared_upstream", default=False, action="store_true",
                        help="also credit transit ASNs that all sources agree on near the origin")
    parser.add_argument('--cache', dest="cache", default=None, metavar="PATH",
                        help="file (or directory) to reuse computed per-ASN ranges from")
    parser.add_argument('-j', '--jobs', dest="jobs", type=int, default=None,
                        help="number of sources to read in parallel; default is the number of CPUs")
    parser.add_argument('-o', '--output', dest="outfile", type=argparse.FileType('w'), default=sys.stdout,
                        help="output text file; default is stdout")

def save_text(output_file, lines):
    try:
        for line in lines:
            print(line, file=output_file)
        output_file.close()
    except OSError as err:
        sys.exit("Output file '%s' cannot be written to: %s." % (output_file.name, err.strerror))

def main():
    parser = argparse.ArgumentParser(description="Tool for extracting the address ranges ASNs originate from BGP RIB dumps.")
    parser.add_argument('-v', '--verbose', dest="log_level", default=logging.INFO, action="store_const",
                        const=logging.DEBUG, help="also log debugging details")
    parser.add_argument('-q', '--quiet', dest="log_level", action="store_const",
                        const=logging.WARNING, help="only log warnings and errors")
    subparsers = parser.add_subparsers(title="valid subcommands", dest="subcommand")

    parser_ranges = subparsers.add_parser("ranges", help="print the minimal CIDR blocks the given ASNs originate")
    add_source_arguments(parser_ranges)
    parser_ranges.add_argument('--exclude-overlaps', dest="exclude_overlaps", default=False, action="store_true",
                               help="use the announced prefixes of the ASNs, minus more specific prefixes "
                                    "announced only by others (bypasses the cache)")
    parser_ranges.add_argument('asns', nargs='+', type=parse_asn, metavar="ASN",
                               help="origin ASN to select (e.g. 13335 or AS13335)")

    parser_dump = subparsers.add_parser("dump", help="print all attributed ranges as '<prefix> AS<asn>' lines")
    add_source_arguments(parser_dump)

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level, format="[%(levelname)s] %(message)s", stream=sys.stderr)
    if args.subcommand is None:
        parser.print_help()
        sys.exit("No command provided.")

    sources = ribingest.expand_sources(args.sources or [DEFAULT_SOURCE])
    if len(sources) == 0:
        sys.exit("No input files found.")
    options = ribingest.BuildOptions(ignore_private_asn=args.ignore_private_asn,
                                     shared_upstream=args.shared_upstream)
    try:
        if args.subcommand == "ranges" and args.exclude_overlaps:
            if args.cache is not None:
                logging.warning("--cache is not used with --exclude-overlaps")
            tables = ribingest.build_tables(sources, options, jobs=args.jobs)
            lines = ribingest.format_blocks(ribingest.select_exclusive(tables, args.asns))
        else:
            ranges = ribingest.build_origin_ranges(sources, options, cache=args.cache, jobs=args.jobs)
            if args.subcommand == "ranges":
                lines = ribingest.format_blocks(ribingest.select_ranges(ranges, args.asns))
            else:
                lines = ribingest.format_ranges(ranges)
    except ribingest.SourceUnreadable as err:
        sys.exit(str(err))
    save_text(args.outfile, lines)

if __name__ == '__main__':
    main()
