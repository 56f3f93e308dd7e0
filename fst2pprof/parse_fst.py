from contextlib import contextmanager
import logging

from fst2pprof.errors import IoError, MalformedContainer, MalformedHierarchy
from fst2pprof.fst_blocks import (
    HIERARCHY_BLOCKS,
    VALUE_CHANGE_BLOCKS,
    BlockType,
    read_blocks,
    unwrap_container,
)
from fst2pprof.fst_hierarchy import (
    build_hierarchy,
    check_storage,
    parse_geometry,
    parse_header,
    storage_from_hierarchy,
)
from fst2pprof.fst_value_changes import value_changes

logger = logging.getLogger(__name__)

_HEADER_BLOCKS = (BlockType.header, BlockType.geometry) + HIERARCHY_BLOCKS


class FstTrace:
    """An FST file with its header and hierarchy read, and lazy access to its value changes.

    The hierarchy and geometry blocks are usually written at the end of the
    file, so the container is read twice: once for the header-kind blocks,
    then once more, lazily, for the value-change blocks.
    """

    def __init__(self, f, separator="."):
        self._source = unwrap_container(f)
        self._start = self._source.tell()
        self.header = None
        self.hierarchy = None
        self.storage = None
        self.vc_block_count = 0
        self._hierarchy_block = None

        geometry = None
        for block in read_blocks(self._source, skip=VALUE_CHANGE_BLOCKS):
            if block.kind == BlockType.header:
                if self.header is not None:
                    raise MalformedContainer(
                        "more than one header block", offset=block.offset, block=block.index
                    )
                self.header = parse_header(block)
            elif block.kind == BlockType.geometry:
                geometry = parse_geometry(block)
            elif block.kind in HIERARCHY_BLOCKS:
                if self.hierarchy is not None:
                    raise MalformedHierarchy(
                        "more than one hierarchy block", offset=block.offset, block=block.index
                    )
                self.hierarchy = build_hierarchy(block, separator)
                self._hierarchy_block = block
            elif block.kind in VALUE_CHANGE_BLOCKS:
                self.vc_block_count += 1

        if self.header is None:
            raise MalformedContainer("no header block")
        if self.hierarchy is None:
            raise MalformedHierarchy("no hierarchy block")
        if geometry is None:
            logger.debug("No geometry block; deriving signal storage from declarations")
            geometry = storage_from_hierarchy(self.hierarchy)
        check_storage(self.hierarchy, geometry)
        self.storage = geometry
        logger.info(
            "Read FST: %d signals, %d value-change blocks, time [%d, %d] x 1e%d s",
            len(self.hierarchy.signals),
            self.vc_block_count,
            self.header.start_time,
            self.header.end_time,
            self.header.timescale,
        )

    def hierarchy_block(self):
        """The (decompressed) hierarchy block, for listing its raw entries."""
        return self._hierarchy_block

    def value_changes(self, handles=None):
        """Lazily yields the `ValueChange` events of the trace; single forward pass."""
        self._source.seek(self._start)
        blocks = read_blocks(self._source, skip=_HEADER_BLOCKS)
        return value_changes(blocks, self.header, self.hierarchy, self.storage, handles)


@contextmanager
def open_fst(filename, separator="."):
    """Opens an FST file, reading its header and hierarchy."""
    try:
        f = open(filename, "rb")
    except OSError as e:
        raise IoError(f"cannot open '{filename}': {e.strerror}") from e
    with f:
        try:
            yield FstTrace(f, separator)
        except OSError as e:
            raise IoError(f"error reading '{filename}': {e}") from e
