from dataclasses import dataclass, field

# String fields hold indices into the profile string table.


@dataclass
class ValueType:
    """Describes the type and unit of a sample value."""

    type: int
    unit: int


@dataclass
class ProfileInfo:
    """Describes the profile-wide fields."""

    sample_types: list[ValueType]
    period_type: ValueType
    period: int
    time_nanos: int
    duration_nanos: int
    comments: list[int] = field(default_factory=list)


@dataclass
class Function:
    """Describes a function; here, a signal path."""

    id: int
    name: int
    system_name: int
    filename: int


@dataclass
class Location:
    """Describes a location pointing to one function."""

    id: int
    function_id: int


@dataclass
class Label:
    """Describes a string or numeric label attached to a sample."""

    key: int
    str: int = 0
    num: int = 0
    num_unit: int = 0


@dataclass
class Sample:
    """Describes a stack of locations with its values."""

    location_ids: list[int]
    values: list[int]
    labels: list[Label] = field(default_factory=list)


@dataclass
class StringTable:
    """The final, deduplicated string table."""

    strings: list[str]
