class ConversionError(Exception):
    """Base class for all the errors that abort an FST to pprof conversion."""

    kind = "ConversionError"

    def __init__(self, message, offset=None, block=None):
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.block = block

    def __str__(self):
        where = []
        if self.block is not None:
            where.append(f"block {self.block}")
        if self.offset is not None:
            where.append(f"offset {self.offset}")
        if where:
            return f"{self.kind}: {self.message} ({', '.join(where)})"
        return f"{self.kind}: {self.message}"


class MalformedContainer(ConversionError):
    """Structural or length inconsistency in the FST container."""

    kind = "MalformedContainer"


class MalformedHierarchy(ConversionError):
    """Unbalanced scopes or invalid declarations in the hierarchy."""

    kind = "MalformedHierarchy"


class MalformedValueChange(ConversionError):
    """Unknown handle, count mismatch or corrupt packing in a value-change block."""

    kind = "MalformedValueChange"


class UnsupportedFeature(ConversionError):
    """A valid FST construct that this converter does not implement."""

    kind = "UnsupportedFeature"


class ProfileEncodingError(ConversionError):
    """Internal invariant violated while building the output profile."""

    kind = "ProfileEncodingError"


class IoError(ConversionError):
    """Read or write failure on the input or output file."""

    kind = "IoError"
