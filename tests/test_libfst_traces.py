"""Traces written by libfst itself, read back and compared with what was emitted."""

import pytest

pylibfst = pytest.importorskip("pylibfst")
from pylibfst import ffi, lib  # noqa: E402

from fst2pprof.errors import UnsupportedFeature  # noqa: E402
from fst2pprof.fst_blocks import BlockType  # noqa: E402
from fst2pprof.parse_fst import open_fst  # noqa: E402
import fst2pprof.profile_proto as pb2  # noqa: E402
from fst_to_pprof import convert  # noqa: E402
from fst_writer import REAL, STRING, WIRE  # noqa: E402

if not hasattr(lib, "fstWriterCreate"):
    pytest.skip("pylibfst built without the libfst writer", allow_module_level=True)

PACK_ZLIB = 0
PACK_FASTLZ = 1
PACK_LZ4 = 2


class LibfstTrace:
    """Writes a trace through libfst and keeps every change it was given."""

    def __init__(self, path, pack_type=PACK_ZLIB, repack=False):
        self.path = path
        self.ctx = lib.fstWriterCreate(str(path).encode(), 1)
        assert self.ctx != ffi.NULL
        lib.fstWriterSetPackType(self.ctx, pack_type)
        lib.fstWriterSetTimescale(self.ctx, -9)
        if repack:
            lib.fstWriterSetRepackOnClose(self.ctx, 1)
        self.kinds = {}
        self.changes = []
        self.time = None

    def scope(self, name):
        lib.fstWriterSetScope(self.ctx, 0, name.encode(), b"")

    def upscope(self):
        lib.fstWriterSetUpscope(self.ctx)

    def var(self, name, width=1, kind=WIRE):
        handle = lib.fstWriterCreateVar(self.ctx, kind, 0, width, name.encode(), 0)
        self.kinds[handle] = kind
        return handle

    def change(self, time, handle, value):
        if time != self.time:
            lib.fstWriterEmitTimeChange(self.ctx, time)
            self.time = time
        kind = self.kinds[handle]
        if kind == REAL:
            lib.fstWriterEmitValueChange(self.ctx, handle, ffi.new("double *", value))
        elif kind == STRING:
            data = value.encode("utf-8")
            buf = ffi.new("char[]", data)
            lib.fstWriterEmitVariableLengthValueChange(self.ctx, handle, buf, len(data))
        else:
            lib.fstWriterEmitValueChange(self.ctx, handle, ffi.new("char[]", value.encode()))
        self.changes.append((time, handle, value))

    def toggle(self, handle, times, period=5):
        for i in range(times):
            self.change(i * period, handle, "01"[i % 2])

    def flush(self):
        lib.fstWriterFlushContext(self.ctx)

    def close(self):
        lib.fstWriterClose(self.ctx)
        return self.path


def _decoded(path):
    """The last decoded value of each (time, handle)."""
    with open_fst(path) as trace:
        return {(c.time, c.handle): c.value for c in trace.value_changes()}


def _check(trace):
    decoded = _decoded(trace.close())
    expected = {(t, h): v for t, h, v in trace.changes}
    for key, value in expected.items():
        assert decoded[key] == value, key
    # Apart from the initial frame at time 0, nothing is decoded that was not emitted.
    assert {k for k in decoded if k[0]} == {k for k in expected if k[0]}


def test_bits_buses_reals_and_strings(tmp_path):
    w = LibfstTrace(tmp_path / "mixed.fst")
    w.scope("top")
    clk = w.var("clk")
    bus = w.var("bus", width=8)
    temp = w.var("temp", width=8, kind=REAL)
    state = w.var("state", width=0, kind=STRING)
    w.upscope()
    w.change(0, clk, "0")
    w.change(0, bus, "00000000")
    w.change(0, temp, 20.5)
    w.change(0, state, "reset")
    w.change(3, clk, "1")
    w.change(3, bus, "1010x01z")
    w.change(6, clk, "x")
    w.change(6, temp, -3.25)
    w.change(9, clk, "z")
    w.change(9, state, "running")
    w.change(12, bus, "11110000")
    w.change(12, clk, "0")
    _check(w)


def test_identical_signals(tmp_path):
    # libfst stores one copy of identical wave data and aliases the rest.
    w = LibfstTrace(tmp_path / "aliases.fst")
    w.scope("top")
    a = w.var("a")
    b = w.var("b")
    c = w.var("c")
    w.upscope()
    for i in range(40):
        value = "01"[i % 2]
        w.change(i * 2, a, value)
        w.change(i * 2, b, value)
        if i % 3 == 0:
            w.change(i * 2, c, value)
    _check(w)


def test_multiple_blocks(tmp_path):
    w = LibfstTrace(tmp_path / "blocks.fst")
    w.scope("top")
    clk = w.var("clk")
    count = w.var("count", width=4)
    w.upscope()
    for i in range(30):
        w.change(i * 10, clk, "01"[i % 2])
        w.change(i * 10, count, format(i % 16, "04b"))
        if i % 10 == 9:
            w.flush()
    path = w.path
    _check(w)
    with open_fst(path) as trace:
        assert trace.vc_block_count >= 3


def test_zlib_wrapped_file(tmp_path):
    w = LibfstTrace(tmp_path / "wrapped.fst", repack=True)
    w.scope("top")
    clk = w.var("clk")
    w.upscope()
    w.toggle(clk, 50)
    path = w.path
    _check(w)
    assert path.read_bytes()[0] == BlockType.zlib_wrapper.value


def test_lz4_packing(tmp_path):
    w = LibfstTrace(tmp_path / "lz4.fst", pack_type=PACK_LZ4)
    w.scope("top")
    clk = w.var("clk")
    bus = w.var("bus", width=16)
    w.upscope()
    for i in range(400):
        w.change(i * 5, clk, "01"[i % 2])
        if i % 4 == 0:
            w.change(i * 5 + 1, bus, format(i * 613 % 65536, "016b"))
    path = w.path
    _check(w)
    with open_fst(path) as trace:
        assert trace.hierarchy_block().kind in (
            BlockType.hierarchy_lz4,
            BlockType.hierarchy_lz4_duo,
        )


def test_fastlz_packing_is_unsupported(tmp_path):
    w = LibfstTrace(tmp_path / "fastlz.fst", pack_type=PACK_FASTLZ)
    w.scope("top")
    clk = w.var("clk")
    w.upscope()
    w.toggle(clk, 400)
    with pytest.raises(UnsupportedFeature):
        _decoded(w.close())


def test_conversion(tmp_path):
    w = LibfstTrace(tmp_path / "clk.fst")
    w.scope("top")
    clk = w.var("clk")
    w.upscope()
    # 0 at t=0, 1 at t=5, ... and back to 0 at t=100.
    w.toggle(clk, 21)
    profile = pb2.Profile.FromString(convert(w.close()).serialize(compress=False))
    s = profile.string_table
    (sample,) = profile.sample
    assert s[profile.function[0].name] == "top.clk"
    assert list(sample.value) == [50, 20]
