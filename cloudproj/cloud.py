"""
Structured Point Cloud Container

This module provides the row/column addressable point cloud buffer consumed
and produced by the range image projection. It contains the following
components:

Field descriptors (name, byte offset, datatype code, element count) that
describe one fixed-size point record.
A PointCloud dataclass holding the cloud geometry (height, width, point_step,
row_step), the endianness and density flags, a header, and a flat byte buffer.
Typed accessors that read named fields as numpy arrays, and raw record views
used to copy whole points byte-for-byte without interpreting them.
Constructors that pack Python sequences or numpy structured arrays into a cloud.

Datatype codes follow the common sensor message convention (INT8 = 1 through
FLOAT64 = 8), so clouds coming from such sources map onto this container
field by field.
"""

from dataclasses import dataclass, field

import numpy as np

# Field datatype codes
INT8 = 1
UINT8 = 2
INT16 = 3
UINT16 = 4
INT32 = 5
UINT32 = 6
FLOAT32 = 7
FLOAT64 = 8

# numpy type string (without byte order) for each datatype code
_DATATYPE_FORMATS = {
    INT8: "i1",
    UINT8: "u1",
    INT16: "i2",
    UINT16: "u2",
    INT32: "i4",
    UINT32: "u4",
    FLOAT32: "f4",
    FLOAT64: "f8",
}

# Names of the coordinate fields every projectable cloud must carry
COORDINATE_FIELDS = ("x", "y", "z")


class InvalidGeometryError(ValueError):
    """Raised when a cloud's geometry or record layout cannot be projected."""


@dataclass(frozen=True)
class PointField:
    """
    Description of one named field inside a point record.

    :param name:     Field name, e.g. "x" or "intensity".
    :param offset:   Byte offset of the field from the start of the record.
    :param datatype: Datatype code (INT8 .. FLOAT64).
    :param count:    Number of consecutive elements of that datatype.
    """
    name: str
    offset: int
    datatype: int
    count: int = 1

    def __post_init__(self):
        if self.datatype not in _DATATYPE_FORMATS:
            raise ValueError(f"Unknown datatype code {self.datatype!r} for field {self.name!r}.")
        if self.offset < 0:
            raise ValueError(f"Field {self.name!r} has a negative offset.")
        if self.count < 1:
            raise ValueError(f"Field {self.name!r} must have count >= 1.")

    @property
    def size(self):
        """Bytes occupied by the field inside the record."""
        return np.dtype(_DATATYPE_FORMATS[self.datatype]).itemsize * self.count


@dataclass(frozen=True)
class CloudHeader:
    frame_id: str = ""   # coordinate frame the points are expressed in
    stamp: float = 0.0   # [s] acquisition time


@dataclass
class PointCloud:
    """
    Row-major grid of fixed-size point records backed by a flat byte buffer.

    Record (i, j) starts at byte i * row_step + j * point_step. Only the
    fields listed in ``fields`` have a meaning; any padding bytes are
    carried along untouched when records are copied.
    """
    height: int
    width: int
    fields: list
    point_step: int
    row_step: int
    data: bytearray
    is_bigendian: bool = False
    is_dense: bool = False
    header: CloudHeader = field(default_factory=CloudHeader)

    def __post_init__(self):
        self.height = int(self.height)
        self.width = int(self.width)
        self.point_step = int(self.point_step)
        self.row_step = int(self.row_step)
        self.fields = list(self.fields)
        # Outputs are written in place, so hold a mutable buffer.
        if not isinstance(self.data, bytearray):
            self.data = bytearray(self.data)

    @classmethod
    def empty_like(cls, cloud, height=None, width=None):
        """
        Allocate a zero-filled cloud with the record layout of another cloud.

        Fields, point_step, endianness, density flag and header are copied;
        every byte of the new buffer is zero, so every point is invalid.

        :param cloud:  Template cloud.
        :param height: Rows of the new cloud (defaults to cloud.height).
        :param width:  Columns of the new cloud (defaults to cloud.width).
        :return: New PointCloud.
        """
        height = cloud.height if height is None else int(height)
        width = cloud.width if width is None else int(width)
        row_step = width * cloud.point_step
        return cls(
            height=height,
            width=width,
            fields=list(cloud.fields),
            point_step=cloud.point_step,
            row_step=row_step,
            data=bytearray(height * row_step),
            is_bigendian=cloud.is_bigendian,
            is_dense=cloud.is_dense,
            header=cloud.header,
        )

    def __len__(self):
        return self.height * self.width

    def validate(self):
        """
        Check that geometry and record layout are consistent.

        :raises InvalidGeometryError: On empty dimensions, a row_step that is
            not width * point_step, a buffer of the wrong size, or a field
            that does not fit into the record.
        """
        if self.height < 1:
            raise InvalidGeometryError(f"Cloud height must be >= 1, got {self.height}.")
        if self.width < 1:
            raise InvalidGeometryError(f"Cloud width must be >= 1, got {self.width}.")
        if self.point_step < 1:
            raise InvalidGeometryError(f"Cloud point_step must be >= 1, got {self.point_step}.")
        if self.row_step != self.width * self.point_step:
            raise InvalidGeometryError(
                f"Cloud row_step ({self.row_step}) must equal width * point_step "
                f"({self.width} * {self.point_step})."
            )
        if len(self.data) != self.height * self.row_step:
            raise InvalidGeometryError(
                f"Cloud buffer holds {len(self.data)} bytes, expected height * row_step = "
                f"{self.height * self.row_step}."
            )
        for f in self.fields:
            if f.offset + f.size > self.point_step:
                raise InvalidGeometryError(
                    f"Field {f.name!r} (offset {f.offset}, {f.size} bytes) does not fit "
                    f"into point_step {self.point_step}."
                )

    def dtype(self):
        """numpy structured dtype describing one point record."""
        byte_order = ">" if self.is_bigendian else "<"
        names, formats, offsets = [], [], []
        for f in self.fields:
            fmt = byte_order + _DATATYPE_FORMATS[f.datatype]
            names.append(f.name)
            formats.append(fmt if f.count == 1 else (fmt, (f.count,)))
            offsets.append(f.offset)
        return np.dtype({"names": names, "formats": formats, "offsets": offsets, "itemsize": self.point_step})

    def as_array(self):
        """Writable (height, width) structured view of the buffer."""
        points = np.frombuffer(self.data, dtype=self.dtype(), count=self.height * self.width)
        return points.reshape(self.height, self.width)

    def field_names(self):
        return [f.name for f in self.fields]

    def get_field(self, name):
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def field_values(self, name, dtype=None):
        """
        Copy one field out of every record.

        :param name:  Field name.
        :param dtype: Optional target numpy dtype. By default the field's own
                      type in native byte order.
        :return: Array of shape (height, width), or (height, width, count)
                 for multi-element fields.
        """
        values = self.as_array()[name]
        target = values.dtype.newbyteorder("=") if dtype is None else np.dtype(dtype)
        return values.astype(target)

    def coordinate_dtype(self):
        """
        Floating-point type shared by the x, y and z fields.

        :return: np.dtype("float32") or np.dtype("float64").
        :raises InvalidGeometryError: If a coordinate field is missing, is not
            a scalar floating-point field, or the three types differ.
        """
        datatypes = set()
        for name in COORDINATE_FIELDS:
            try:
                f = self.get_field(name)
            except KeyError:
                raise InvalidGeometryError(f"Cloud has no {name!r} field.") from None
            if f.datatype not in (FLOAT32, FLOAT64) or f.count != 1:
                raise InvalidGeometryError(f"Field {name!r} must be a single FLOAT32 or FLOAT64 value.")
            datatypes.add(f.datatype)
        if len(datatypes) != 1:
            raise InvalidGeometryError("Fields 'x', 'y' and 'z' must share one floating-point datatype.")
        return np.dtype(_DATATYPE_FORMATS[datatypes.pop()])

    def xyz(self, dtype=None):
        """
        Read the coordinate fields.

        :param dtype: Floating-point type of the result; defaults to the
                      declared coordinate type.
        :return: Tuple (x, y, z) of (height, width) arrays.
        """
        dtype = self.coordinate_dtype() if dtype is None else np.dtype(dtype)
        return tuple(self.field_values(name, dtype) for name in COORDINATE_FIELDS)

    def records(self):
        """Writable (height * width, point_step) byte view, one row per point."""
        raw = np.frombuffer(self.data, dtype=np.uint8, count=self.height * self.row_step)
        return raw.reshape(self.height * self.width, self.point_step)

    def copy_records(self, source, source_index, target_index):
        """
        Copy whole point records from another cloud into this one.

        Indices are flat row-major point indices (i * width + j). Target
        indices should be unique; the bytes are copied verbatim.

        :param source:       Cloud to read records from.
        :param source_index: Flat indices into ``source``.
        :param target_index: Flat indices into this cloud, same length.
        """
        if source.point_step != self.point_step:
            raise ValueError(
                f"Cannot copy {source.point_step}-byte records into a cloud with "
                f"point_step {self.point_step}."
            )
        self.records()[target_index] = source.records()[source_index]


def make_fields(*specs):
    """
    Build a packed field list from (name, datatype[, count]) tuples.

    Offsets are assigned consecutively without padding, e.g.
    ``make_fields(("x", FLOAT32), ("y", FLOAT32), ("z", FLOAT32))``.
    """
    fields = []
    offset = 0
    for spec in specs:
        name, datatype = spec[0], spec[1]
        count = spec[2] if len(spec) > 2 else 1
        f = PointField(name=name, offset=offset, datatype=datatype, count=count)
        fields.append(f)
        offset += f.size
    return fields


def create_cloud(header, fields, points, height=1, point_step=None, is_bigendian=False, is_dense=False):
    """
    Pack points into a new PointCloud.

    :param header:       CloudHeader (or None for an empty header).
    :param fields:       List of PointField describing the record.
    :param points:       Sequence of per-point tuples in field order, or a
                         numpy structured array with the field names.
    :param height:       Number of rows; the point count must be divisible by it.
    :param point_step:   Record size in bytes; defaults to the end of the last field.
    :param is_bigendian: Byte order of the packed buffer.
    :param is_dense:     Density flag carried by the cloud.
    :return: PointCloud in row-major order.
    """
    if point_step is None:
        point_step = max((f.offset + f.size for f in fields), default=0)
    for f in fields:
        if f.offset + f.size > point_step:
            raise ValueError(
                f"Field {f.name!r} (offset {f.offset}, {f.size} bytes) does not fit "
                f"into point_step {point_step}."
            )
    height = int(height)
    if height < 1:
        raise ValueError("height must be >= 1.")

    cloud = PointCloud(
        height=height,
        width=0,
        fields=fields,
        point_step=point_step,
        row_step=0,
        data=bytearray(),
        is_bigendian=is_bigendian,
        is_dense=is_dense,
        header=header if header is not None else CloudHeader(),
    )
    dtype = cloud.dtype()

    if isinstance(points, np.ndarray) and points.dtype.names is not None:
        source = points.reshape(-1)
    else:
        source = np.array([tuple(p) for p in points], dtype=dtype)

    # Assign field by field so padding bytes stay zero.
    packed = np.zeros(source.shape[0], dtype=dtype)
    for name in dtype.names:
        packed[name] = source[name]

    if packed.shape[0] % height != 0:
        raise ValueError(f"{packed.shape[0]} points cannot be arranged into {height} rows.")

    cloud.width = packed.shape[0] // height
    cloud.row_step = cloud.width * point_step
    cloud.data = bytearray(packed.tobytes())
    return cloud


def create_cloud_xyz32(header, points, height=1):
    """
    Pack an (N, 3) array of coordinates into a float32 x/y/z cloud.

    :param header: CloudHeader or None.
    :param points: Array-like of shape (N, 3).
    :param height: Number of rows.
    :return: PointCloud with a 12-byte record.
    """
    xyz = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    fields = make_fields(("x", FLOAT32), ("y", FLOAT32), ("z", FLOAT32))
    return create_cloud(header, fields, [tuple(p) for p in xyz], height=height)
