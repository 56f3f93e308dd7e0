from enum import Enum
import io
import logging
import struct
import zlib

import lz4.block

from fst2pprof.errors import MalformedContainer
from fst2pprof.parse_dto import Block

logger = logging.getLogger(__name__)


class BlockType(Enum):
    header = 0
    value_change = 1
    blackout = 2
    geometry = 3
    hierarchy = 4
    value_change_alias = 5
    hierarchy_lz4 = 6
    hierarchy_lz4_duo = 7
    value_change_alias2 = 8
    zlib_wrapper = 254
    skip = 255
    unknown = -1


VALUE_CHANGE_BLOCKS = (
    BlockType.value_change,
    BlockType.value_change_alias,
    BlockType.value_change_alias2,
)

HIERARCHY_BLOCKS = (
    BlockType.hierarchy,
    BlockType.hierarchy_lz4,
    BlockType.hierarchy_lz4_duo,
)


class ByteReader:
    """Sequential reader over a byte buffer, reporting errors as `error` kinds.

    `base_offset` is the position of the buffer inside the file, so that the
    errors point to absolute offsets when the buffer was not decompressed.
    """

    def __init__(self, data, error=MalformedContainer, base_offset=0, block=None):
        self.data = data
        self.pos = 0
        self.error = error
        self.base_offset = base_offset
        self.block = block

    def at_end(self):
        return self.pos >= len(self.data)

    def remaining(self):
        return len(self.data) - self.pos

    def fail(self, message):
        raise self.error(message, offset=self.base_offset + self.pos, block=self.block)

    def read(self, size):
        if size < 0 or self.pos + size > len(self.data):
            self.fail(f"need {size} bytes, only {self.remaining()} left")
        r = self.data[self.pos : self.pos + size]
        self.pos += size
        return r

    def unpack(self, format):
        return struct.unpack(format, self.read(struct.calcsize(format)))

    def u8(self):
        return self.read(1)[0]

    def u64(self):
        return self.unpack(">Q")[0]

    def i64(self):
        return self.unpack(">q")[0]

    def varint(self):
        """Reads an unsigned LEB128 integer."""
        result = 0
        shift = 0
        while True:
            if self.pos >= len(self.data):
                self.fail("truncated varint")
            byte = self.data[self.pos]
            self.pos += 1
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                return result

    def svarint(self):
        """Reads a signed (sign-extended) LEB128 integer."""
        result = 0
        shift = 0
        while True:
            if self.pos >= len(self.data):
                self.fail("truncated varint")
            byte = self.data[self.pos]
            self.pos += 1
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                if byte & 0x40:
                    result -= 1 << shift
                return result

    def cstring(self):
        """Reads a zero-terminated UTF-8 string."""
        end = self.data.find(b"\x00", self.pos)
        if end < 0:
            self.fail("unterminated string")
        s = self.data[self.pos : end].decode("utf-8", errors="replace")
        self.pos = end + 1
        return s

    def fixed_string(self, size):
        """Reads a zero-padded string field of `size` bytes."""
        raw = self.read(size)
        return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def inflate(data, uncompressed_length, error=MalformedContainer, offset=None, block=None, gzip=False):
    """Decompresses a zlib (or gzip) stream, checking the declared output size."""
    wbits = 16 + zlib.MAX_WBITS if gzip else zlib.MAX_WBITS
    decompressor = zlib.decompressobj(wbits)
    try:
        result = decompressor.decompress(data) + decompressor.flush()
    except zlib.error as e:
        raise error(f"corrupt compressed data: {e}", offset=offset, block=block) from e
    if not decompressor.eof:
        raise error("truncated compressed data", offset=offset, block=block)
    if len(result) != uncompressed_length:
        raise error(
            f"decompressed {len(result)} bytes, {uncompressed_length} declared",
            offset=offset,
            block=block,
        )
    return result


def lz4_inflate(data, uncompressed_length, error=MalformedContainer, offset=None, block=None):
    """Decompresses a raw LZ4 block, checking the declared output size."""
    if uncompressed_length == 0:
        return b""
    try:
        result = lz4.block.decompress(data, uncompressed_size=uncompressed_length)
    except lz4.block.LZ4BlockError as e:
        raise error(f"corrupt LZ4 data: {e}", offset=offset, block=block) from e
    if len(result) != uncompressed_length:
        raise error(
            f"decompressed {len(result)} bytes, {uncompressed_length} declared",
            offset=offset,
            block=block,
        )
    return result


def _block_type(tag):
    try:
        return BlockType(tag)
    except ValueError:
        return BlockType.unknown


def _read_header_section(f, offset, index, source_size):
    """Reads the type tag and section length; returns None at the end of the source."""
    tag = f.read(1)
    if not tag:
        return None
    raw_length = f.read(8)
    if len(raw_length) != 8:
        raise MalformedContainer("truncated block length", offset=offset, block=index)
    length = struct.unpack(">Q", raw_length)[0]
    if length < 8:
        raise MalformedContainer(
            f"invalid section length {length}", offset=offset, block=index
        )
    if offset + 1 + length > source_size:
        raise MalformedContainer(
            f"section length {length} runs past the end of the source",
            offset=offset,
            block=index,
        )
    return tag[0], length


def _decode_block(kind, index, offset, length, payload):
    if kind == BlockType.geometry:
        r = ByteReader(payload, base_offset=offset + 9, block=index)
        uncompressed_length = r.u64()
        count = r.u64()
        data = r.read(r.remaining())
        if len(data) != uncompressed_length:
            data = inflate(data, uncompressed_length, offset=offset, block=index)
        return Block(kind, index, offset, length, data, uncompressed_length, count)
    elif kind == BlockType.hierarchy:
        r = ByteReader(payload, base_offset=offset + 9, block=index)
        uncompressed_length = r.u64()
        data = inflate(
            r.read(r.remaining()),
            uncompressed_length,
            offset=offset,
            block=index,
            gzip=True,
        )
        return Block(kind, index, offset, length, data, uncompressed_length)
    elif kind in (BlockType.hierarchy_lz4, BlockType.hierarchy_lz4_duo):
        r = ByteReader(payload, base_offset=offset + 9, block=index)
        uncompressed_length = r.u64()
        if kind == BlockType.hierarchy_lz4_duo:
            # Compressed twice; the varint is the size after the first pass.
            packed_length = r.varint()
            data = lz4_inflate(r.read(r.remaining()), packed_length, offset=offset, block=index)
        else:
            data = r.read(r.remaining())
        data = lz4_inflate(data, uncompressed_length, offset=offset, block=index)
        return Block(kind, index, offset, length, data, uncompressed_length)
    return Block(kind, index, offset, length, payload)


def _unwrap(payload, offset, index):
    r = ByteReader(payload, base_offset=offset + 9, block=index)
    uncompressed_length = r.u64()
    return inflate(
        r.read(r.remaining()),
        uncompressed_length,
        offset=offset,
        block=index,
        gzip=True,
    )


def read_blocks(f, skip=()):
    """Lazily yields the blocks of an FST container from a binary, seekable file.

    Header-kind blocks (geometry, hierarchy) come out decompressed; value-change
    blocks keep their raw payload, since their sections are compressed
    independently. Unknown block types are skipped. Blocks whose kind is in
    `skip` are yielded without reading their payload. A zlib-wrapped file
    must go through `unwrap_container` first.
    """
    start = f.tell()
    source_size = f.seek(0, io.SEEK_END)
    f.seek(start)
    index = 0
    while True:
        offset = f.tell()
        section = _read_header_section(f, offset, index, source_size)
        if section is None:
            break
        tag, length = section
        kind = _block_type(tag)
        if kind in (BlockType.unknown, BlockType.skip, BlockType.blackout):
            logger.debug("Skipping block %d of type %d at offset %d", index, tag, offset)
            f.seek(length - 8, io.SEEK_CUR)
            index += 1
            continue

        if kind in skip:
            f.seek(length - 8, io.SEEK_CUR)
            yield Block(kind, index, offset, length, None)
            index += 1
            continue

        payload = f.read(length - 8)
        if len(payload) != length - 8:
            raise MalformedContainer("truncated block payload", offset=offset, block=index)

        if kind == BlockType.zlib_wrapper:
            raise MalformedContainer(
                "zlib wrapper block inside a container", offset=offset, block=index
            )

        yield _decode_block(kind, index, offset, length, payload)
        index += 1


def unwrap_container(f):
    """Returns a file over the inner FST when `f` holds a zlib-wrapped container."""
    start = f.tell()
    tag = f.read(1)
    f.seek(start)
    if not tag or tag[0] != BlockType.zlib_wrapper.value:
        return f
    source_size = f.seek(0, io.SEEK_END)
    f.seek(start)
    _tag, length = _read_header_section(f, start, 0, source_size)
    payload = f.read(length - 8)
    logger.debug("Unwrapping zlib-wrapped FST of %d bytes", length)
    return io.BytesIO(_unwrap(payload, start, 0))
