import fnmatch

from fst2pprof.errors import IoError


def _lines_in_file(filename):
    with open(filename, "r") as file:
        for line in file.readlines():
            yield line.strip()


def _content_lines(lines):
    for line in lines:
        if line == "":
            continue
        if line.startswith("#"):
            continue
        yield line


class SignalFilter:
    """Selects signal paths with glob patterns; patterns starting with `!` exclude.

    With no include pattern, every path not excluded is selected.
    """

    def __init__(self, patterns):
        self.includes = []
        self.excludes = []
        for p in patterns:
            if p.startswith("!"):
                self.excludes.append(p[1:].strip())
            else:
                self.includes.append(p)

    def matches(self, path):
        if self.includes and not any(fnmatch.fnmatchcase(path, p) for p in self.includes):
            return False
        return not any(fnmatch.fnmatchcase(path, p) for p in self.excludes)

    def select(self, paths):
        """Returns the selected paths, keeping their order."""
        return [p for p in paths if self.matches(p)]


def read_signal_filter(filename):
    """Reads a signal selection file: one glob pattern per line, `#` comments."""
    try:
        return SignalFilter(list(_content_lines(_lines_in_file(filename))))
    except OSError as e:
        raise IoError(f"cannot read signal selection '{filename}': {e.strerror}") from e
