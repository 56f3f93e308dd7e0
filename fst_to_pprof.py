#!env python3

import argparse
from dataclasses import dataclass
import logging
import os
import sys

from fst2pprof.activity import DEFAULT_ACTIVE, aggregate_activity, make_predicate
from fst2pprof.emit_profile import emit_profile
from fst2pprof.errors import ConversionError
from fst2pprof.parse_fst import open_fst
from fst2pprof.pprof_writer import PprofWriter
from fst2pprof.signal_filter import SignalFilter, read_signal_filter

logger = logging.getLogger("fst_to_pprof")


@dataclass
class ConversionOptions:
    """Describes how a trace is turned into a profile."""

    active: str = DEFAULT_ACTIVE
    separator: str = "."
    signal_filter: SignalFilter = None
    compress: bool = True
    source_name: str = None


def convert(filename, options=None):
    """Converts an FST file to a `PprofWriter` holding the finished profile."""
    options = options or ConversionOptions()
    is_active = make_predicate(options.active)
    with open_fst(filename, options.separator) as trace:
        hierarchy = trace.hierarchy
        paths = hierarchy.paths()
        if options.signal_filter:
            paths = options.signal_filter.select(paths)
            logger.info("Selected %d of %d signals", len(paths), len(hierarchy.signals))
        selected = set(paths)
        handle_to_paths = {}
        for handle, handle_paths in hierarchy.handle_to_paths.items():
            kept = tuple(p for p in handle_paths if p in selected)
            if kept:
                handle_to_paths[handle] = kept

        changes = trace.value_changes(set(handle_to_paths))
        activities = aggregate_activity(
            changes,
            handle_to_paths,
            paths,
            trace.header.start_time,
            trace.header.end_time,
            is_active,
        )

        writer = PprofWriter()
        items = emit_profile(
            activities,
            trace.header,
            hierarchy,
            filename=options.source_name or os.path.basename(filename),
            active_expression=options.active,
            separator=options.separator,
        )
        for item in items:
            writer.add(item)
    return writer


def run(filename, out, options=None):
    options = options or ConversionOptions()
    writer = convert(filename, options)
    writer.write(out, compress=options.compress)


def _default_output(filename, compress):
    stem = os.path.splitext(os.path.basename(filename))[0]
    return stem + (".pb.gz" if compress else ".pb")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Transform an FST waveform trace to a pprof profile of signal activity."
    )
    parser.add_argument("filename", type=str, help="The filename of the FST trace")
    parser.add_argument(
        "-o",
        "--out",
        type=str,
        help="The output filename (pprof profile); defaults to <trace>.pb.gz",
    )
    parser.add_argument(
        "--active",
        type=str,
        default=DEFAULT_ACTIVE,
        help="When a signal counts as active, e.g. '!=0', '==1', '>=4' (default: %(default)s)",
    )
    parser.add_argument(
        "-s",
        "--signals",
        type=str,
        help="File with glob patterns of the signal paths to include ('!' excludes)",
    )
    parser.add_argument(
        "--separator",
        type=str,
        default=".",
        help="Separator between scope and signal names (default: %(default)s)",
    )
    parser.add_argument(
        "--no-gzip",
        action="store_true",
        help="Write the profile without gzip compression",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)],
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        make_predicate(args.active)
    except ValueError as e:
        parser.error(str(e))

    options = ConversionOptions(
        active=args.active,
        separator=args.separator,
        compress=not args.no_gzip,
    )
    out = args.out or _default_output(args.filename, options.compress)
    try:
        if args.signals:
            options.signal_filter = read_signal_filter(args.signals)
        run(args.filename, out, options)
    except ConversionError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
