import gzip
import logging
import os
import tempfile

from fst2pprof.errors import IoError, ProfileEncodingError
import fst2pprof.emit_dto as dto
import fst2pprof.profile_proto as pb2

logger = logging.getLogger(__name__)


class PprofWriter:
    """Knows how to write a pprof profile file."""

    def __init__(self):
        self._profile = pb2.Profile()
        self._finished = False
        self._function_ids = set()
        self._location_ids = set()

    def serialize(self, compress=True):
        """Returns the encoded profile, gzip-compressed unless told otherwise."""
        self._check()
        data = self._profile.SerializeToString(deterministic=True)
        if compress:
            data = gzip.compress(data, mtime=0)
        return data

    def write(self, filename, compress=True):
        """Writes the profile to a file; the file only appears once fully written."""
        data = self.serialize(compress)
        directory = os.path.dirname(os.path.abspath(filename))
        try:
            fd, temp_name = tempfile.mkstemp(
                dir=directory, prefix=".", suffix=".tmp"
            )
        except OSError as e:
            raise IoError(f"cannot write to '{directory}': {e.strerror}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(temp_name, filename)
        except OSError as e:
            os.unlink(temp_name)
            raise IoError(f"cannot write '{filename}': {e.strerror}") from e
        logger.info("Wrote %d bytes to %s", len(data), filename)

    def add(self, item):
        """Add an emit dto object to the profile."""
        if self._finished:
            raise ProfileEncodingError(f"{item} added after the string table")
        if isinstance(item, dto.ProfileInfo):
            self.add_profile_info(item)
        elif isinstance(item, dto.Function):
            self.add_function(item)
        elif isinstance(item, dto.Location):
            self.add_location(item)
        elif isinstance(item, dto.Sample):
            self.add_sample(item)
        elif isinstance(item, dto.StringTable):
            self.add_string_table(item)
        else:
            raise ValueError(f"Unknown object {item}")

    def add_profile_info(self, p: dto.ProfileInfo):
        """Sets the profile-wide fields."""
        for t in p.sample_types:
            sample_type = self._profile.sample_type.add()
            sample_type.type = t.type
            sample_type.unit = t.unit
        self._profile.period_type.type = p.period_type.type
        self._profile.period_type.unit = p.period_type.unit
        self._profile.period = p.period
        self._profile.time_nanos = p.time_nanos
        self._profile.duration_nanos = p.duration_nanos
        self._profile.comment.extend(p.comments)

    def add_function(self, f: dto.Function):
        """Adds a function to the profile."""
        if f.id == 0 or f.id in self._function_ids:
            raise ProfileEncodingError(f"invalid or duplicate function id {f.id}")
        self._function_ids.add(f.id)
        function = self._profile.function.add()
        function.id = f.id
        function.name = f.name
        function.system_name = f.system_name
        function.filename = f.filename

    def add_location(self, l: dto.Location):
        """Adds a location to the profile."""
        if l.id == 0 or l.id in self._location_ids:
            raise ProfileEncodingError(f"invalid or duplicate location id {l.id}")
        if l.function_id not in self._function_ids:
            raise ProfileEncodingError(
                f"location {l.id} refers to unknown function {l.function_id}"
            )
        self._location_ids.add(l.id)
        location = self._profile.location.add()
        location.id = l.id
        line = location.line.add()
        line.function_id = l.function_id

    def add_sample(self, s: dto.Sample):
        """Adds a sample to the profile."""
        for id in s.location_ids:
            if id not in self._location_ids:
                raise ProfileEncodingError(f"sample refers to unknown location {id}")
        sample = self._profile.sample.add()
        sample.location_id.extend(s.location_ids)
        sample.value.extend(s.values)
        for l in s.labels:
            label = sample.label.add()
            label.key = l.key
            label.str = l.str
            label.num = l.num
            label.num_unit = l.num_unit

    def add_string_table(self, t: dto.StringTable):
        """Sets the string table, which finalizes the profile."""
        if not t.strings or t.strings[0] != "":
            raise ProfileEncodingError("string table must start with the empty string")
        self._profile.string_table.extend(t.strings)
        self._finished = True

    def _check(self):
        """Checks that every string index refers to the string table."""
        if not self._finished:
            raise ProfileEncodingError("profile has no string table")
        count = len(self._profile.string_table)
        p = self._profile
        indices = [p.period_type.type, p.period_type.unit]
        indices.extend(p.comment)
        for t in p.sample_type:
            indices.extend((t.type, t.unit))
        for f in p.function:
            indices.extend((f.name, f.system_name, f.filename))
        for s in p.sample:
            if len(s.value) != len(p.sample_type):
                raise ProfileEncodingError(
                    f"sample has {len(s.value)} values, {len(p.sample_type)} sample types"
                )
            for l in s.label:
                indices.extend((l.key, l.str, l.num_unit))
        for i in indices:
            if i < 0 or i >= count:
                raise ProfileEncodingError(f"string index {i} is out of the string table")
