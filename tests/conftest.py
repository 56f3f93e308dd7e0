import pytest

from fst_writer import FstWriter


@pytest.fixture
def clk_trace():
    """top.clk toggling 0 -> 1 -> 0 at t = 0, 5, 10."""
    w = FstWriter()
    w.scope("top")
    clk = w.var("clk")
    w.upscope()
    w.add_block([(0, clk, "0"), (5, clk, "1"), (10, clk, "0")])
    return w


@pytest.fixture
def write_fst(tmp_path):
    """Writes an `FstWriter` (or raw bytes) to a file and returns its path."""

    def _write(w, name="trace.fst"):
        path = tmp_path / name
        path.write_bytes(w if isinstance(w, bytes) else w.to_bytes())
        return path

    return _write
