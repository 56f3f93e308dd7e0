from dataclasses import dataclass


@dataclass
class ActivityInterval:
    """Describes a span [start, end) during which a path holds one value."""

    path: str
    start: int
    end: int
    value: str | float | None
    previous_value: str | float | None = None
    changed: bool = False


@dataclass
class PathActivity:
    """Describes how active a signal path was over the whole trace."""

    path: str
    active_duration: int = 0
    transitions: int = 0
    active_intervals: int = 0
