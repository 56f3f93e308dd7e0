from dataclasses import dataclass, field
from enum import Enum


class ScopeType(Enum):
    module = 0
    task = 1
    function = 2
    begin = 3
    fork = 4
    generate = 5
    struct = 6
    union = 7
    class_ = 8
    interface = 9
    package = 10
    program = 11
    vhdl_architecture = 12
    vhdl_procedure = 13
    vhdl_function = 14
    vhdl_record = 15
    vhdl_process = 16
    vhdl_block = 17
    vhdl_for_generate = 18
    vhdl_if_generate = 19
    vhdl_generate = 20
    vhdl_package = 21


class VarType(Enum):
    event = 0
    integer = 1
    parameter = 2
    real = 3
    real_parameter = 4
    reg = 5
    supply0 = 6
    supply1 = 7
    time = 8
    tri = 9
    triand = 10
    trior = 11
    trireg = 12
    tri0 = 13
    tri1 = 14
    wand = 15
    wire = 16
    wor = 17
    port = 18
    sparray = 19
    realtime = 20
    string = 21
    bit = 22
    logic = 23
    int = 24
    shortint = 25
    longint = 26
    byte = 27
    enum = 28
    shortreal = 29


class Direction(Enum):
    implicit = 0
    input = 1
    output = 2
    inout = 3
    buffer = 4
    linkage = 5


@dataclass
class Header:
    """Describes the header block of an FST file."""

    start_time: int
    end_time: int
    timescale: int
    version: str
    date: str
    file_type: int
    time_zero: int
    num_scopes: int
    num_hierarchy_vars: int
    num_vars: int
    num_vc_blocks: int
    float_format: str = ">d"


@dataclass
class Block:
    """Describes one block of the FST container."""

    kind: Enum
    index: int
    offset: int
    length: int
    payload: bytes
    uncompressed_length: int = None
    item_count: int = None


@dataclass
class SignalStorage:
    """Describes how values of a handle are stored in value-change blocks."""

    width: int
    is_real: bool = False

    @property
    def is_var_length(self):
        return self.width == 0 and not self.is_real

    def frame_size(self):
        """Number of bytes taken by this handle in a block's initial-value frame."""
        if self.is_real:
            return 8
        return self.width


@dataclass
class Signal:
    """Describes a signal (variable) declaration."""

    name: str
    path: str
    handle: int
    width: int
    kind: VarType
    direction: Direction = Direction.implicit
    is_alias: bool = False


@dataclass
class Scope:
    """Describes a scope in the signal hierarchy."""

    name: str
    kind: ScopeType
    component: str = ""
    path: str = ""
    children: list = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)


@dataclass
class Attribute:
    """Describes an attribute attached to the following hierarchy entries."""

    attr_type: int
    subtype: int
    name: str
    arg: int


@dataclass
class Hierarchy:
    """The scope tree together with the path and handle lookup tables."""

    root: Scope
    signals: list[Signal] = field(default_factory=list)
    path_to_handle: dict = field(default_factory=dict)
    handle_to_paths: dict = field(default_factory=dict)
    signals_by_path: dict = field(default_factory=dict)

    def paths(self):
        """All signal paths, in declaration order."""
        return [s.path for s in self.signals]


@dataclass
class ValueChange:
    """Describes a change of value for a handle at a given time."""

    time: int
    handle: int
    value: str | float
