import logging

from fst2pprof.errors import ProfileEncodingError
import fst2pprof.emit_dto as emit_dto

logger = logging.getLogger(__name__)

_TIME_UNITS = {
    -15: "femtoseconds",
    -12: "picoseconds",
    -9: "nanoseconds",
    -6: "microseconds",
    -3: "milliseconds",
    0: "seconds",
}


def time_unit(timescale):
    """Returns (unit name, multiplier) to express trace times in a pprof time unit."""
    base = timescale - timescale % 3
    if base > 0:
        base = 0
    if base not in _TIME_UNITS:
        return f"1e{timescale}s", 1
    return _TIME_UNITS[base], 10 ** (timescale - base)


def duration_nanos(duration, timescale):
    """Converts a duration in trace time units to nanoseconds."""
    exponent = timescale + 9
    if exponent >= 0:
        return duration * 10**exponent
    return duration // 10**-exponent


class _Strings:
    """Deduplicating string table; index 0 is the empty string."""

    def __init__(self):
        self._strings = [""]
        self._index = {"": 0}

    def intern(self, s):
        if s not in self._index:
            self._index[s] = len(self._strings)
            self._strings.append(s)
        return self._index[s]

    def finish(self):
        return emit_dto.StringTable(list(self._strings))


def emit_profile(
    activities,
    header,
    hierarchy=None,
    filename="",
    active_expression=None,
    separator=".",
):
    """Generates the emit DTO objects of a profile with one sample per path.

    `activities` maps paths to `PathActivity`, in the order samples are
    emitted. Every sample has a single location (the path) and the values
    [active duration, transition count]. The string table comes last, once
    every string has been interned.
    """
    strings = _Strings()
    unit, scale = time_unit(header.timescale)

    active_type = emit_dto.ValueType(strings.intern("active"), strings.intern(unit))
    transitions_type = emit_dto.ValueType(
        strings.intern("transitions"), strings.intern("count")
    )
    comments = [strings.intern(f"Generated from {filename or 'FST trace'}")]
    if active_expression:
        comments.append(strings.intern(f"active when value {active_expression}"))
    yield emit_dto.ProfileInfo(
        sample_types=[active_type, transitions_type],
        period_type=active_type,
        period=1,
        time_nanos=0,
        duration_nanos=duration_nanos(header.end_time - header.start_time, header.timescale),
        comments=comments,
    )

    filename_id = strings.intern(filename)
    scope_key = strings.intern("scope")
    kind_key = strings.intern("kind")
    width_key = strings.intern("width")
    bits_unit = strings.intern("bits")
    intervals_key = strings.intern("active_intervals")
    count_unit = strings.intern("count")

    for id, activity in enumerate(activities.values(), start=1):
        if not activity.path:
            raise ProfileEncodingError("empty signal path")
        signal = hierarchy.signals_by_path.get(activity.path) if hierarchy else None
        name = signal.name if signal else activity.path
        yield emit_dto.Function(
            id=id,
            name=strings.intern(activity.path),
            system_name=strings.intern(name),
            filename=filename_id,
        )
        yield emit_dto.Location(id=id, function_id=id)

        labels = []
        if signal:
            scope = activity.path[: -len(signal.name) - len(separator)]
            labels.append(emit_dto.Label(key=scope_key, str=strings.intern(scope)))
            labels.append(emit_dto.Label(key=kind_key, str=strings.intern(signal.kind.name)))
            labels.append(emit_dto.Label(key=width_key, num=signal.width, num_unit=bits_unit))
        labels.append(
            emit_dto.Label(
                key=intervals_key, num=activity.active_intervals, num_unit=count_unit
            )
        )
        yield emit_dto.Sample(
            location_ids=[id],
            values=[activity.active_duration * scale, activity.transitions],
            labels=labels,
        )

    table = strings.finish()
    logger.debug(
        "Profile has %d samples and %d strings", len(activities), len(table.strings)
    )
    yield table
