#!env python3

import argparse
import logging
import sys

from fst2pprof.errors import ConversionError
from fst2pprof.fst_hierarchy import hierarchy_entries
from fst2pprof.parse_fst import open_fst

logger = logging.getLogger("fst_dump")


def dump(filename, show_hierarchy=True, show_changes=False, handles=None, out=None):
    """Prints the header, the hierarchy entries and the value changes of an FST file."""
    out = out or sys.stdout
    with open_fst(filename) as trace:
        header = trace.header
        print(
            f"fst file start time: {header.start_time}, fst file end time: {header.end_time}",
            file=out,
        )
        print(f"timescale: 1e{header.timescale} s, version: {header.version}", file=out)
        if show_hierarchy:
            for entry in hierarchy_entries(trace.hierarchy_block()):
                print(entry.describe(), file=out)
        if show_changes or handles:
            for change in trace.value_changes(set(handles) if handles else None):
                print(
                    f"time: {change.time} handle: {change.handle} value: {change.value}",
                    file=out,
                )


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Print the header, hierarchy and value changes of an FST trace."
    )
    parser.add_argument("filename", type=str, help="The filename of the FST trace")
    parser.add_argument(
        "--no-hierarchy", action="store_true", help="Do not print the hierarchy entries"
    )
    parser.add_argument(
        "-c", "--changes", action="store_true", help="Print all the value changes"
    )
    parser.add_argument(
        "--handle",
        type=int,
        action="append",
        help="Only print the value changes of this handle (repeatable)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        dump(args.filename, not args.no_hierarchy, args.changes, args.handle)
    except ConversionError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
