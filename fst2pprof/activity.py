import logging
import operator
import re

from fst2pprof.dto import ActivityInterval, PathActivity

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE = "!=0"

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

_EXPRESSION_RE = re.compile(r"^\s*(==|!=|>=|<=|>|<)\s*(-?\d+(?:\.\d*)?)\s*$")


def numeric_value(value):
    """Returns the number held by a signal value, or None for x/z bits, text or no value."""
    if value is None:
        return None
    if isinstance(value, float):
        return value
    if value and all(c in "01" for c in value):
        return int(value, 2)
    return None


def make_predicate(expression=DEFAULT_ACTIVE):
    """Builds the activity predicate for an expression like "!=0", ">=4" or "==1".

    Values that are not numbers are never active.
    """
    m = _EXPRESSION_RE.match(expression)
    if not m:
        raise ValueError(f"Invalid activity expression '{expression}'")
    compare = _OPERATORS[m.group(1)]
    threshold = float(m.group(2)) if "." in m.group(2) else int(m.group(2))

    def is_active(value):
        n = numeric_value(value)
        return n is not None and compare(n, threshold)

    is_active.expression = expression
    return is_active


class _PathState:
    """The interval in progress for one path."""

    def __init__(self, path, start):
        self.path = path
        self.start = start
        self.value = None
        self.seen = False
        self.previous_value = None
        self.changed = False
        self.activity = PathActivity(path)

    def observe(self, time, value, is_active, on_interval):
        if not self.seen:
            self.seen = True
            self.start = time
            self.value = value
            return
        if value == self.value:
            return
        if is_active(self.value) or is_active(value):
            self.activity.transitions += 1
        self.close(time, is_active, on_interval)
        self.start = time
        self.previous_value = self.value
        self.value = value
        self.changed = True

    def close(self, time, is_active, on_interval):
        if time <= self.start:
            return
        if is_active(self.value):
            self.activity.active_duration += time - self.start
            self.activity.active_intervals += 1
        if on_interval:
            on_interval(
                ActivityInterval(
                    self.path,
                    self.start,
                    time,
                    self.value,
                    self.previous_value,
                    self.changed,
                )
            )


def aggregate_activity(
    changes,
    handle_to_paths,
    paths,
    start_time,
    end_time,
    is_active=None,
    on_interval=None,
):
    """Folds value changes into a `PathActivity` per path.

    Changes are applied one timestamp at a time: all the changes sharing a
    timestamp are collapsed before comparing with the interval in progress, so
    simultaneous changes never produce zero-length intervals. A path that never
    changes keeps a single interval over the whole trace. The result preserves
    the order of `paths`; `on_interval` receives every closed interval.
    """
    if is_active is None:
        is_active = make_predicate()
    states = {path: _PathState(path, start_time) for path in paths}
    aliases = {
        handle: [states[p] for p in handle_paths if p in states]
        for handle, handle_paths in handle_to_paths.items()
    }

    pending = {}  # handle -> last value at `pending_time`
    pending_time = None
    last_time = start_time
    count = 0

    def _apply():
        for handle, value in pending.items():
            for state in aliases.get(handle, ()):
                state.observe(pending_time, value, is_active, on_interval)

    for change in changes:
        if change.time != pending_time:
            _apply()
            pending.clear()
            pending_time = change.time
        pending[change.handle] = change.value
        last_time = max(last_time, change.time)
        count += 1
    _apply()

    end = max(end_time, last_time)
    for state in states.values():
        state.close(end, is_active, on_interval)
    logger.debug("Aggregated %d value changes over %d paths", count, len(states))
    return {path: state.activity for path, state in states.items()}
