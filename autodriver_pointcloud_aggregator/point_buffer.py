"""
Packed pointcloud record model.

A PointBuffer mirrors sensor_msgs/PointCloud2 without depending on ROS: a flat byte buffer of
width * height records, each point_step bytes long, described by a field table. Stamps are integer
nanoseconds so that exact synchronization compares them bit for bit.

Invalid and max range points:
    Some range sensors publish points they could not measure with non-finite x, y, z. If such a point
    also carries a finite 'distance' value it is a max range reading: the distance holds the depth along
    the sensor's x axis. Points are classified into the PointState variants before they are transformed.
"""
import enum
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from autodriver_pointcloud_aggregator.errors import (InvalidPointBufferError, MissingFieldError,
                                                     UnsupportedTypeError)
from autodriver_pointcloud_aggregator.utils import (FLOAT32, FIELD_DTYPE_MAP,
                                                    get_datatype_size, get_numpy_dtype, get_logger,
                                                    system_is_bigendian)

XYZ_FIELD_NAMES = ('x', 'y', 'z')
DISTANCE_FIELD_NAME = 'distance'
VIEWPOINT_FIELD_NAMES = ('vp_x', 'vp_y', 'vp_z')

logger = get_logger(name=__name__)


@dataclass(frozen=True)
class PointField:
    name: str
    offset: int
    datatype: int
    count: int = 1

    @property
    def size(self):
        return get_datatype_size(self.datatype) * self.count


@dataclass
class PointBuffer:
    frame_id: str = ''
    stamp: int = 0  # nanoseconds
    height: int = 1
    width: int = 0
    fields: list = field(default_factory=list)
    is_bigendian: bool = False
    point_step: int = 0
    row_step: int = 0
    data: bytes = b''
    is_dense: bool = True

    @property
    def num_points(self):
        return self.width * self.height

    @property
    def field_names(self):
        return tuple(f.name for f in self.fields)

    def get_field(self, name) -> Optional[PointField]:
        for point_field in self.fields:
            if point_field.name == name:
                return point_field
        return None

    def copy(self, **changes):
        """Shallow copy. data is immutable bytes so sharing it is safe."""
        return replace(self, fields=list(self.fields), **changes)

    def validate(self):
        expected_size = self.point_step * self.width * self.height
        if len(self.data) != expected_size:
            raise InvalidPointBufferError(
                    f"Pointcloud in frame '{self.frame_id}' has {len(self.data)} bytes of data, "
                    f"expected point_step * width * height = {expected_size}.")
        for point_field in self.fields:
            if point_field.datatype not in FIELD_DTYPE_MAP:
                raise InvalidPointBufferError(f"Field '{point_field.name}' has unknown datatype {point_field.datatype}.")
            if point_field.offset + point_field.size > self.point_step:
                raise InvalidPointBufferError(
                        f"Field '{point_field.name}' ends at byte {point_field.offset + point_field.size}, "
                        f"past point_step {self.point_step}.")
        return self

    def strip_row_padding(self):
        """
        Copy without the bytes that pad each row past point_step * width.
        Buffers without row padding, or whose size does not match row_step * height, are returned unchanged.
        """
        packed_row_size = self.point_step * self.width
        if self.row_step <= packed_row_size or len(self.data) != self.row_step * self.height:
            return self
        rows = [self.data[row * self.row_step:row * self.row_step + packed_row_size] for row in range(self.height)]
        return self.copy(row_step=packed_row_size, data=b''.join(rows))


@dataclass(frozen=True)
class PointFieldOffsets:
    """Byte offsets of the fields that transforms touch. Optional fields are None when absent."""
    x: int
    y: int
    z: int
    distance: Optional[int] = None
    viewpoint: Optional[tuple] = None

    @property
    def has_distance(self):
        return self.distance is not None

    @property
    def has_viewpoint(self):
        return self.viewpoint is not None


class PointState(enum.IntEnum):
    VALID = 0
    MAX_RANGE = 1
    INVALID = 2


def resolve_point_fields(cloud):
    """
    Resolve the offsets of x, y, z and the optional distance and viewpoint fields.
    :param cloud: PointBuffer
    :return: PointFieldOffsets
    :raises MissingFieldError: if x, y or z is absent.
    :raises UnsupportedTypeError: if x, y or z is not FLOAT32.
    """
    xyz_offsets = []
    for name in XYZ_FIELD_NAMES:
        point_field = cloud.get_field(name)
        if point_field is None:
            raise MissingFieldError(name, cloud.frame_id)
        if point_field.datatype != FLOAT32:
            raise UnsupportedTypeError(name, point_field.datatype, cloud.frame_id)
        xyz_offsets.append(point_field.offset)

    distance_offset = None
    distance_field = cloud.get_field(DISTANCE_FIELD_NAME)
    if distance_field is not None:
        if distance_field.datatype == FLOAT32:
            distance_offset = distance_field.offset
        else:
            logger.debug(f"Ignoring '{DISTANCE_FIELD_NAME}' field with datatype {distance_field.datatype}.")

    viewpoint_offsets = None
    viewpoint_fields = [cloud.get_field(name) for name in VIEWPOINT_FIELD_NAMES]
    if all(f is not None and f.datatype == FLOAT32 for f in viewpoint_fields):
        viewpoint_offsets = tuple(f.offset for f in viewpoint_fields)

    return PointFieldOffsets(*xyz_offsets, distance=distance_offset, viewpoint=viewpoint_offsets)


def classify_points(xyz, distance=None):
    """
    Tag every point as VALID, MAX_RANGE or INVALID.
    :param xyz: (N, 3) float array.
    :param distance: optional (N,) float array.
    :return: (N,) uint8 array of PointState values.
    """
    finite = np.all(np.isfinite(xyz), axis=1)
    states = np.full(finite.shape, PointState.INVALID, dtype=np.uint8)
    states[finite] = PointState.VALID
    if distance is not None:
        states[~finite & np.isfinite(distance)] = PointState.MAX_RANGE
    return states


def get_structured_dtype(cloud, field_names=None):
    """
    Numpy structured dtype that overlays the packed records, honoring offsets, padding and byte order.
    :param cloud: PointBuffer
    :param field_names: optional subset of field names. Defaults to all fields.
    """
    names, formats, offsets = [], [], []
    for point_field in cloud.fields:
        if field_names is not None and point_field.name not in field_names:
            continue
        np_type = get_numpy_dtype(point_field.datatype, cloud.is_bigendian)
        names.append(point_field.name)
        formats.append(np_type if point_field.count == 1 else (np_type, (point_field.count,)))
        offsets.append(point_field.offset)
    return np.dtype({'names': names, 'formats': formats, 'offsets': offsets, 'itemsize': cloud.point_step})


def buffer_to_structured_array(cloud, field_names=None):
    """Read-only structured view of the data of a pointcloud, shape (width * height,)."""
    dtype = get_structured_dtype(cloud, field_names)
    if cloud.num_points == 0:
        return np.zeros(0, dtype=dtype)
    return np.frombuffer(cloud.data, dtype=dtype, count=cloud.num_points)


def structured_array_to_bytes(structured_array):
    return structured_array.tobytes(order='C')


def build_point_fields(field_names, field_datatypes, field_counts=None):
    """
    Build a packed field table from names and datatypes.
    Fields are laid out back to back without padding, in the given order.

    :param field_names: list of field names, in order.
    :param field_datatypes: list of PointField datatypes (e.g. FLOAT32), matching field_names.
    :param field_counts: optional element counts per field (defaults to 1).
    :return: (fields, point_step)
    """
    if field_counts is None:
        field_counts = [1] * len(field_names)

    fields = []
    offset = 0
    for name, datatype, count in zip(field_names, field_datatypes, field_counts):
        point_field = PointField(name=name, offset=offset, datatype=datatype, count=count)
        fields.append(point_field)
        offset += point_field.size

    return fields, offset


def create_pointbuffer(columns, frame_id='', stamp=0, is_dense=None, field_datatypes=None):
    """
    Create an unorganized PointBuffer from named columns.

    :param columns: dict of field name -> 1D array-like, all the same length. Insertion order is the field order.
    :param frame_id:
    :param stamp: nanoseconds.
    :param is_dense: defaults to True if x, y, z are all finite.
    :param field_datatypes: optional dict of field name -> PointField datatype. Defaults to FLOAT32.
    """
    field_datatypes = field_datatypes or {}
    names = list(columns.keys())
    arrays = {name: np.asarray(columns[name]) for name in names}
    datatypes = [field_datatypes.get(name, FLOAT32) for name in names]

    num_points = len(arrays[names[0]]) if names else 0
    fields, point_step = build_point_fields(names, datatypes)
    cloud = PointBuffer(frame_id=frame_id, stamp=int(stamp), height=1, width=num_points, fields=fields,
                        is_bigendian=system_is_bigendian(), point_step=point_step, row_step=point_step * num_points)

    structured = np.zeros(num_points, dtype=get_structured_dtype(cloud))
    for name in names:
        structured[name] = arrays[name]
    cloud.data = structured_array_to_bytes(structured)

    if is_dense is None:
        is_dense = all(name in arrays for name in XYZ_FIELD_NAMES) and bool(
                np.all(np.isfinite(np.stack([arrays[name] for name in XYZ_FIELD_NAMES], axis=-1))))
    cloud.is_dense = is_dense
    return cloud


def get_field_values(cloud, name):
    """Copy of one field as a numpy array in native byte order."""
    if cloud.get_field(name) is None:
        raise MissingFieldError(name, cloud.frame_id)
    values = buffer_to_structured_array(cloud, field_names=(name,))[name]
    return values.astype(values.dtype.newbyteorder('='))


def get_xyz(cloud):
    """(N, 3) float32 array of x, y, z."""
    return np.stack([get_field_values(cloud, name) for name in XYZ_FIELD_NAMES], axis=1).astype(np.float32)
