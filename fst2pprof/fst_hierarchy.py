import logging
import math
import struct

from fst2pprof.errors import MalformedContainer, MalformedHierarchy
from fst2pprof.fst_blocks import ByteReader
from fst2pprof.parse_dto import (
    Attribute,
    Direction,
    Header,
    Hierarchy,
    Scope,
    ScopeType,
    Signal,
    SignalStorage,
    VarType,
)

logger = logging.getLogger(__name__)

_ATTRIBUTE_BEGIN = 252
_ATTRIBUTE_END = 253
_SCOPE = 254
_UPSCOPE = 255

_REAL_VAR_TYPES = (
    VarType.real,
    VarType.real_parameter,
    VarType.realtime,
    VarType.shortreal,
)


def parse_header(block):
    """Parses the header block."""
    r = ByteReader(block.payload, base_offset=block.offset + 9, block=block.index)
    start_time, end_time = r.unpack(">QQ")
    float_format = _float_format(r.read(8), r)
    _memory_used, num_scopes, num_hier_vars, num_vars, num_vc_blocks = r.unpack(">5Q")
    timescale = r.unpack(">b")[0]
    version = r.fixed_string(128)
    date = r.fixed_string(119)
    file_type = r.u8()
    time_zero = r.i64()
    return Header(
        start_time=start_time,
        end_time=end_time,
        timescale=timescale,
        version=version,
        date=date,
        file_type=file_type,
        time_zero=time_zero,
        num_scopes=num_scopes,
        num_hierarchy_vars=num_hier_vars,
        num_vars=num_vars,
        num_vc_blocks=num_vc_blocks,
        float_format=float_format,
    )


def _float_format(marker, r):
    # The writer stores e in its native byte order.
    for format in (">d", "<d"):
        if math.isclose(struct.unpack(format, marker)[0], math.e):
            return format
    r.fail("unrecognized endianness marker in header")


def parse_geometry(block):
    """Returns the storage description of every handle, indexed by `handle - 1`."""
    r = ByteReader(block.payload, block=block.index)
    storage = []
    for _ in range(block.item_count):
        length = r.varint()
        if length == 0:
            storage.append(SignalStorage(width=8, is_real=True))
        elif length == 0xFFFFFFFF:
            storage.append(SignalStorage(width=0))
        else:
            storage.append(SignalStorage(width=length))
    return storage


class ScopeEntry:
    def __init__(self, r):
        kind = r.u8()
        try:
            self.kind = ScopeType(kind)
        except ValueError:
            r.fail(f"unknown scope type {kind}")
        self.name = r.cstring()
        self.component = r.cstring()

    def describe(self):
        return f"Scope: {self.name} ({self.kind.name}) {self.component}"


class UpScopeEntry:
    def __init__(self, r):
        pass

    def describe(self):
        return "UpScope"


class VarEntry:
    def __init__(self, r, tag, handle_count):
        self.kind = VarType(tag)
        direction = r.u8()
        try:
            self.direction = Direction(direction)
        except ValueError:
            r.fail(f"unknown variable direction {direction}")
        self.name = r.cstring()
        length = r.varint()
        if self.kind == VarType.port:
            length = (length - 2) // 3
        self.width = length
        alias = r.varint()
        self.is_alias = alias != 0
        if not self.is_alias:
            self.handle = handle_count + 1
        elif alias > handle_count:
            r.fail(f"alias of undeclared handle {alias}")
        else:
            self.handle = alias

    def describe(self):
        alias = " (alias)" if self.is_alias else ""
        return f"({self.handle}): {self.name} [{self.width}] {self.kind.name}{alias}"


class AttributeEntry:
    def __init__(self, r):
        attr_type = r.u8()
        subtype = r.u8()
        name = r.cstring()
        self.attribute = Attribute(attr_type, subtype, name, r.varint())

    def describe(self):
        a = self.attribute
        return f"Attribute: {a.name} (type {a.attr_type}, subtype {a.subtype}) {a.arg}"


class AttributeEndEntry:
    def __init__(self, r):
        pass

    def describe(self):
        return "EndAttr"


def hierarchy_entries(block):
    """Yields the entries of a (decompressed) hierarchy block, in file order."""
    r = ByteReader(block.payload, error=MalformedHierarchy, block=block.index)
    handle_count = 0
    while not r.at_end():
        tag = r.u8()
        if tag == _SCOPE:
            yield ScopeEntry(r)
        elif tag == _UPSCOPE:
            yield UpScopeEntry(r)
        elif tag == _ATTRIBUTE_BEGIN:
            yield AttributeEntry(r)
        elif tag == _ATTRIBUTE_END:
            yield AttributeEndEntry(r)
        elif tag <= VarType.shortreal.value:
            var = VarEntry(r, tag, handle_count)
            if not var.is_alias:
                handle_count = var.handle
            yield var
        else:
            r.fail(f"unknown hierarchy entry {tag}")


class HierarchyBuilder:
    """Builds the scope tree and the path/handle tables from hierarchy entries."""

    def __init__(self, separator="."):
        self.separator = separator
        self.root = Scope(name="", kind=None)
        self._open_scopes = [self.root]
        self._hierarchy = Hierarchy(root=self.root)

    def add(self, entry, block=None):
        """Adds one hierarchy entry."""
        if isinstance(entry, ScopeEntry):
            parent = self._open_scopes[-1]
            path = self._join(parent.path, entry.name)
            scope = Scope(entry.name, entry.kind, entry.component, path)
            parent.children.append(scope)
            self._open_scopes.append(scope)
        elif isinstance(entry, UpScopeEntry):
            if len(self._open_scopes) == 1:
                raise MalformedHierarchy("upscope with no open scope", block=block)
            self._open_scopes.pop()
        elif isinstance(entry, VarEntry):
            self._add_signal(entry, block)
        elif isinstance(entry, (AttributeEntry, AttributeEndEntry)):
            pass
        else:
            raise ValueError(f"Unknown hierarchy entry {entry}")

    def _add_signal(self, var, block):
        if len(self._open_scopes) == 1:
            raise MalformedHierarchy(
                f"signal '{var.name}' declared outside any scope", block=block
            )
        scope = self._open_scopes[-1]
        path = self._join(scope.path, var.name)
        if path in self._hierarchy.path_to_handle:
            raise MalformedHierarchy(f"duplicate declaration of '{path}'", block=block)
        signal = Signal(
            name=var.name,
            path=path,
            handle=var.handle,
            width=var.width,
            kind=var.kind,
            direction=var.direction,
            is_alias=var.is_alias,
        )
        scope.signals.append(signal)
        h = self._hierarchy
        h.signals.append(signal)
        h.signals_by_path[path] = signal
        h.path_to_handle[path] = var.handle
        h.handle_to_paths[var.handle] = h.handle_to_paths.get(var.handle, ()) + (path,)

    def _join(self, prefix, name):
        if not prefix:
            return name
        return f"{prefix}{self.separator}{name}"

    def finish(self, block=None):
        """Checks that all scopes were closed and returns the hierarchy."""
        if len(self._open_scopes) != 1:
            open_path = self._open_scopes[-1].path
            raise MalformedHierarchy(f"scope '{open_path}' is never closed", block=block)
        return self._hierarchy


def build_hierarchy(block, separator="."):
    """Builds a `Hierarchy` from a hierarchy block."""
    builder = HierarchyBuilder(separator)
    for entry in hierarchy_entries(block):
        builder.add(entry, block.index)
    hierarchy = builder.finish(block.index)
    logger.debug(
        "Hierarchy has %d signals over %d handles",
        len(hierarchy.signals),
        len(hierarchy.handle_to_paths),
    )
    return hierarchy


def storage_from_hierarchy(hierarchy):
    """Derives handle storage from the declarations, for files with no geometry block."""
    storage = {}
    for s in hierarchy.signals:
        if s.handle in storage:
            continue
        if s.kind in _REAL_VAR_TYPES:
            storage[s.handle] = SignalStorage(width=8, is_real=True)
        else:
            storage[s.handle] = SignalStorage(width=s.width)
    if not storage:
        return []
    return [storage.get(h, SignalStorage(width=0)) for h in range(1, max(storage) + 1)]


def check_storage(hierarchy, storage):
    """Checks that every declared handle has a storage description."""
    for handle in hierarchy.handle_to_paths:
        if handle > len(storage):
            raise MalformedContainer(
                f"handle {handle} is declared but missing from the geometry block"
            )
