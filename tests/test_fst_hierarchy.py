import io
import math
import struct

import pytest

from fst2pprof.errors import MalformedContainer, MalformedHierarchy
from fst2pprof.fst_blocks import BlockType, read_blocks
from fst2pprof.fst_hierarchy import (
    HierarchyBuilder,
    ScopeEntry,
    UpScopeEntry,
    VarEntry,
    build_hierarchy,
    hierarchy_entries,
    parse_geometry,
    parse_header,
    storage_from_hierarchy,
)
from fst2pprof.parse_dto import Block, Direction, ScopeType, SignalStorage, VarType
from fst_writer import PORT, REAL, STRING, FstWriter, varint


def _block(w, kind):
    return [b for b in read_blocks(io.BytesIO(w.to_bytes())) if b.kind == kind][0]


def _hierarchy_block(raw):
    return Block(BlockType.hierarchy, 0, 0, 0, raw)


def _cpu():
    w = FstWriter(timescale=-12)
    w.scope("top")
    clk = w.var("clk")
    w.scope("cpu", kind=ScopeType.generate.value, component="riscv")
    w.var("pc", width=32, kind=VarType.reg.value, direction=Direction.output.value)
    w.var("clk_in", alias=clk)
    w.upscope()
    w.upscope()
    return w


def test_header():
    w = FstWriter(timescale=-12, start_time=3, end_time=500)
    header = parse_header(_block(w, BlockType.header))
    assert header.start_time == 3
    assert header.end_time == 500
    assert header.timescale == -12
    assert header.version == "fst_writer test"
    assert header.date == "today"
    assert header.float_format == ">d"


def test_little_endian_float_marker():
    w = FstWriter()
    block = _block(w, BlockType.header)
    block.payload = block.payload[:16] + struct.pack("<d", math.e) + block.payload[24:]
    assert parse_header(block).float_format == "<d"


def test_bad_endianness_marker():
    block = _block(FstWriter(), BlockType.header)
    block.payload = block.payload[:16] + struct.pack(">d", 1.5) + block.payload[24:]
    with pytest.raises(MalformedContainer):
        parse_header(block)


def test_truncated_header():
    block = _block(FstWriter(), BlockType.header)
    block.payload = block.payload[:100]
    with pytest.raises(MalformedContainer):
        parse_header(block)


def test_geometry():
    w = FstWriter()
    w.scope("top")
    w.var("bus", width=16)
    w.var("temperature", kind=REAL, width=8)
    w.var("message", kind=STRING, width=0)
    w.upscope()
    assert parse_geometry(_block(w, BlockType.geometry)) == [
        SignalStorage(width=16),
        SignalStorage(width=8, is_real=True),
        SignalStorage(width=0),
    ]


def test_scope_tree():
    hierarchy = build_hierarchy(_block(_cpu(), BlockType.hierarchy))
    top = hierarchy.root.children[0]
    assert top.name == "top"
    assert top.kind == ScopeType.module
    assert [s.name for s in top.signals] == ["clk"]
    cpu = top.children[0]
    assert cpu.path == "top.cpu"
    assert cpu.kind == ScopeType.generate
    assert cpu.component == "riscv"
    assert [s.path for s in cpu.signals] == ["top.cpu.pc", "top.cpu.clk_in"]
    pc = hierarchy.signals_by_path["top.cpu.pc"]
    assert pc.width == 32
    assert pc.kind == VarType.reg
    assert pc.direction == Direction.output


def test_aliases_are_kept_per_path():
    hierarchy = build_hierarchy(_block(_cpu(), BlockType.hierarchy))
    assert hierarchy.paths() == ["top.clk", "top.cpu.pc", "top.cpu.clk_in"]
    assert hierarchy.path_to_handle == {"top.clk": 1, "top.cpu.pc": 2, "top.cpu.clk_in": 1}
    assert hierarchy.handle_to_paths == {1: ("top.clk", "top.cpu.clk_in"), 2: ("top.cpu.pc",)}
    assert hierarchy.signals_by_path["top.cpu.clk_in"].is_alias


def test_custom_separator():
    hierarchy = build_hierarchy(_block(_cpu(), BlockType.hierarchy), separator="/")
    assert hierarchy.paths() == ["top/clk", "top/cpu/pc", "top/cpu/clk_in"]


def test_port_width():
    w = FstWriter()
    w.scope("top")
    w.var("p", width=5, kind=PORT)
    w.upscope()
    hierarchy = build_hierarchy(_block(w, BlockType.hierarchy))
    assert hierarchy.signals_by_path["top.p"].width == 5


def test_attributes_are_ignored():
    w = FstWriter()
    w.scope("top")
    w.attribute("source.v", attr_type=0, subtype=4, arg=12)
    w.var("a")
    w.upscope()
    hierarchy = build_hierarchy(_block(w, BlockType.hierarchy))
    assert hierarchy.paths() == ["top.a"]


def test_entries():
    entries = list(hierarchy_entries(_block(_cpu(), BlockType.hierarchy)))
    assert [type(e) for e in entries] == [
        ScopeEntry,
        VarEntry,
        ScopeEntry,
        VarEntry,
        VarEntry,
        UpScopeEntry,
        UpScopeEntry,
    ]
    assert entries[0].describe() == "Scope: top (module) "
    assert entries[4].describe() == "(1): clk_in [1] wire (alias)"


def test_upscope_without_scope():
    raw = bytes([254, 0]) + b"top\x00\x00" + bytes([255, 255])
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_hierarchy_block(raw))


def test_unclosed_scope():
    raw = bytes([254, 0]) + b"top\x00\x00" + bytes([16, 0]) + b"a\x00" + varint(1) + varint(0)
    with pytest.raises(MalformedHierarchy) as e:
        build_hierarchy(_hierarchy_block(raw))
    assert "never closed" in str(e.value)


def test_signal_outside_scope():
    raw = bytes([16, 0]) + b"a\x00" + varint(1) + varint(0)
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_hierarchy_block(raw))


def test_duplicate_declaration():
    w = FstWriter()
    w.scope("top")
    w.var("a")
    w.var("a")
    w.upscope()
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_block(w, BlockType.hierarchy))


def test_alias_of_undeclared_handle():
    w = FstWriter()
    w.scope("top")
    w.var("a", alias=7)
    w.upscope()
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_block(w, BlockType.hierarchy))


def test_unknown_entry():
    raw = bytes([254, 0]) + b"top\x00\x00" + bytes([100])
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_hierarchy_block(raw))


def test_truncated_entry():
    raw = bytes([254, 0]) + b"top"
    with pytest.raises(MalformedHierarchy):
        build_hierarchy(_hierarchy_block(raw))


def test_builder_accepts_entries_one_by_one():
    builder = HierarchyBuilder()
    for entry in hierarchy_entries(_block(_cpu(), BlockType.hierarchy)):
        builder.add(entry)
    assert len(builder.finish().signals) == 3


def test_storage_from_declarations():
    w = FstWriter()
    w.scope("top")
    w.var("bus", width=3)
    w.var("t", kind=REAL, width=8)
    w.var("bus2", alias=1)
    w.upscope()
    hierarchy = build_hierarchy(_block(w, BlockType.hierarchy))
    assert storage_from_hierarchy(hierarchy) == [
        SignalStorage(width=3),
        SignalStorage(width=8, is_real=True),
    ]


def test_hierarchy_payload_is_decompressed():
    w = _cpu()
    assert _block(w, BlockType.hierarchy).payload == bytes(w.hierarchy)
