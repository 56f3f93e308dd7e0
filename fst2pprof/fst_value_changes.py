import heapq
import logging
import struct

from fst2pprof.errors import MalformedValueChange, UnsupportedFeature
from fst2pprof.fst_blocks import (
    VALUE_CHANGE_BLOCKS,
    BlockType,
    ByteReader,
    inflate,
    lz4_inflate,
)
from fst2pprof.parse_dto import ValueChange

logger = logging.getLogger(__name__)

_FOUR_STATE = "xzhuwl-?"

_PACK_ZLIB = ord("Z")
_PACK_FASTLZ = ord("F")
_PACK_LZ4 = ord("4")


class _Alias:
    """Position table entry: the handle shares the wave data of `index`."""

    def __init__(self, index):
        self.index = index


class _ValueChangeBlock:
    """The sections of one value-change block, decoded up to the wave data."""

    def __init__(self, block, float_format):
        self.block = block
        self.float_format = float_format
        payload = block.payload
        r = self._reader(payload, 9)
        self.start_time, self.end_time, _memory = r.unpack(">3Q")

        frame_length = r.varint()
        frame_compressed_length = r.varint()
        self.frame_count = r.varint()
        frame = r.read(frame_compressed_length)
        if frame_compressed_length != frame_length:
            frame = self._inflate(frame, frame_length)
        self.frame = frame

        self.waves_count = r.varint()
        waves_start = r.pos
        self.pack_type = r.u8()

        # The time and position tables are located from the end of the block.
        if len(payload) < r.pos + 32:
            r.fail("value-change block too short for its tables")
        tail = self._reader(payload[-24:], 9 + len(payload) - 24)
        time_length, time_compressed_length, time_count = tail.unpack(">3Q")
        time_start = len(payload) - 24 - time_compressed_length
        if time_start < r.pos + 8:
            r.fail("time table overlaps the wave data")
        time_data = payload[time_start : len(payload) - 24]
        if time_compressed_length != time_length:
            time_data = self._inflate(time_data, time_length)
        self.times = self._read_time_table(time_data, time_count, time_start)

        chain_length = struct.unpack(">Q", payload[time_start - 8 : time_start])[0]
        chain_start = time_start - 8 - chain_length
        if chain_start < r.pos:
            r.fail("position table overlaps the wave data")
        self.waves = payload[waves_start:chain_start]
        chain = self._reader(payload[chain_start : time_start - 8], 9 + chain_start)
        if block.kind == BlockType.value_change_alias2:
            self.positions = self._read_positions_alias2(chain)
        else:
            self.positions = self._read_positions(chain)

    def _reader(self, data, base_offset):
        return ByteReader(
            data,
            error=MalformedValueChange,
            base_offset=self.block.offset + base_offset,
            block=self.block.index,
        )

    def _inflate(self, data, length):
        return inflate(
            data,
            length,
            error=MalformedValueChange,
            offset=self.block.offset,
            block=self.block.index,
        )

    def _read_time_table(self, data, count, start):
        r = self._reader(data, 9 + start)
        times = []
        time = 0
        for _ in range(count):
            if r.at_end():
                r.fail(f"time table declares {count} entries, found {len(times)}")
            time += r.varint()
            times.append(time)
        if not r.at_end():
            r.fail(f"time table declares {count} entries but holds more data")
        return times

    def _read_positions(self, r):
        entries = []
        offset = 0
        while not r.at_end():
            value = r.varint()
            if value == 0:
                entries.append(_Alias(r.varint() - 1))
            elif value & 1:
                offset += value >> 1
                entries.append(offset)
            else:
                entries.extend([None] * (value >> 1))
        return self._with_lengths(entries, r)

    def _read_positions_alias2(self, r):
        entries = []
        offset = 0
        previous_alias = 0
        while not r.at_end():
            if r.data[r.pos] & 1:
                value = r.svarint() >> 1
                if value > 0:
                    offset += value
                    entries.append(offset)
                elif value < 0:
                    previous_alias = -value - 1
                    entries.append(_Alias(previous_alias))
                else:
                    entries.append(_Alias(previous_alias))
            else:
                entries.extend([None] * (r.varint() >> 1))
        return self._with_lengths(entries, r)

    def _with_lengths(self, entries, r):
        """Turns offsets into (offset, length) pairs; aliases point to those pairs."""
        result = list(entries)
        previous = None
        for i, e in enumerate(entries):
            if isinstance(e, int):
                if previous is not None:
                    result[previous] = (entries[previous], e - entries[previous])
                previous = i
        if previous is not None:
            result[previous] = (entries[previous], len(self.waves) - entries[previous])
        for i, e in enumerate(result):
            if isinstance(e, tuple) and (e[0] < 1 or e[1] <= 0 or e[0] + e[1] > len(self.waves)):
                r.fail(f"invalid wave data position for handle {i + 1}")
        for i, e in enumerate(result):
            if isinstance(e, _Alias):
                if e.index < 0 or e.index >= len(result) or not isinstance(result[e.index], tuple):
                    r.fail(f"handle {i + 1} aliases handle {e.index + 1}, which has no data")
                result[i] = result[e.index]
        return result

    def frame_values(self, storage, handles):
        """Yields (handle, value) for the values at the start of the block."""
        if self.frame_count > len(storage):
            raise MalformedValueChange(
                f"frame holds {self.frame_count} handles, {len(storage)} declared",
                offset=self.block.offset,
                block=self.block.index,
            )
        r = self._reader(self.frame, 9)
        for index in range(self.frame_count):
            s = storage[index]
            raw = r.read(s.frame_size())
            if index + 1 not in handles:
                continue
            if s.is_real:
                yield index + 1, struct.unpack(self.float_format, raw)[0]
            elif s.is_var_length:
                continue
            else:
                yield index + 1, raw.decode("ascii", errors="replace")

    def changes(self, storage, handles, declared):
        """Lazily yields (time, handle, value) for the wave data of the block, in time order."""
        per_handle = []
        for index, position in enumerate(self.positions):
            if position is None:
                continue
            handle = index + 1
            if handle not in declared:
                raise MalformedValueChange(
                    f"value changes for undeclared handle {handle}",
                    offset=self.block.offset,
                    block=self.block.index,
                )
            if handle in handles:
                per_handle.append(self._handle_changes(handle, storage[index], position))
        for time_index, handle, value in heapq.merge(*per_handle, key=lambda c: c[0]):
            yield self.times[time_index], handle, value

    def _handle_changes(self, handle, s, position):
        offset, length = position
        r = self._reader(self.waves[offset : offset + length], 9)
        length = r.varint()
        data = r.read(r.remaining())
        if length:
            data = self._unpack_waves(data, length)
        r = self._reader(data, 9)
        time_index = 0
        while not r.at_end():
            if s.is_real:
                vli = r.varint()
                if not vli & 1:
                    raise UnsupportedFeature(
                        f"non-binary real encoding for handle {handle}",
                        offset=self.block.offset,
                        block=self.block.index,
                    )
                time_index += vli >> 1
                value = struct.unpack(self.float_format, r.read(8))[0]
            elif s.is_var_length:
                vli = r.varint()
                time_index += vli >> 1
                value = r.read(r.varint()).decode("utf-8", errors="replace")
            elif s.width == 1:
                vli = r.varint()
                if vli & 1:
                    value = _FOUR_STATE[(vli >> 1) & 7]
                    time_index += vli >> 4
                else:
                    value = "1" if vli & 2 else "0"
                    time_index += vli >> 2
            else:
                vli = r.varint()
                time_index += vli >> 1
                if vli & 1:
                    value = r.read(s.width).decode("ascii", errors="replace")
                else:
                    value = _unpack_bits(r.read((s.width + 7) // 8), s.width)
            if time_index >= len(self.times):
                r.fail(
                    f"handle {handle} refers to time index {time_index}, "
                    f"the time table has {len(self.times)} entries"
                )
            yield time_index, handle, value

    def _unpack_waves(self, data, length):
        if self.pack_type == _PACK_ZLIB:
            return self._inflate(data, length)
        if self.pack_type == _PACK_LZ4:
            return lz4_inflate(
                data,
                length,
                error=MalformedValueChange,
                offset=self.block.offset,
                block=self.block.index,
            )
        if self.pack_type == _PACK_FASTLZ:
            raise UnsupportedFeature(
                f"wave data packed with '{chr(self.pack_type)}' is not supported",
                offset=self.block.offset,
                block=self.block.index,
            )
        raise MalformedValueChange(
            f"unknown wave pack type {self.pack_type}",
            offset=self.block.offset,
            block=self.block.index,
        )


def _unpack_bits(raw, width):
    """Bits are packed MSB first, left aligned."""
    bits = format(int.from_bytes(raw, "big"), f"0{len(raw) * 8}b")
    return bits[:width]


def value_changes(blocks, header, hierarchy, storage, handles=None):
    """Yields the `ValueChange` events of all the value-change blocks, in time order.

    The last value of every handle is carried across blocks; initial values
    from a block's frame are only reported when they differ from it.
    `handles` restricts decoding to a subset of the declared handles.
    """
    declared = hierarchy.handle_to_paths
    if handles is None:
        handles = set(declared)
    last_values = {}
    last_time = None
    count = 0
    for block in blocks:
        if block.kind not in VALUE_CHANGE_BLOCKS:
            logger.debug("Ignoring %s block %d", block.kind.name, block.index)
            continue
        vc = _ValueChangeBlock(block, header.float_format)
        logger.debug(
            "Value-change block %d: [%d, %d], %d time steps",
            block.index,
            vc.start_time,
            vc.end_time,
            len(vc.times),
        )
        if last_time is not None and vc.start_time < last_time:
            raise MalformedValueChange(
                f"block starts at {vc.start_time}, before the previous change at {last_time}",
                offset=block.offset,
                block=block.index,
            )
        for handle, value in vc.frame_values(storage, handles):
            if last_values.get(handle) != value:
                last_values[handle] = value
                last_time = vc.start_time
                yield ValueChange(vc.start_time, handle, value)
        for time, handle, value in vc.changes(storage, handles, declared):
            if last_time is not None and time < last_time:
                raise MalformedValueChange(
                    f"change at {time} goes back before {last_time}",
                    offset=block.offset,
                    block=block.index,
                )
            last_values[handle] = value
            last_time = time
            yield ValueChange(time, handle, value)
        count += 1
    logger.debug("Decoded %d value-change blocks", count)
