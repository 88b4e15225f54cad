import sys
import time
import logging

import numpy as np

# Same codes as sensor_msgs/PointField so ROS fields can be used as-is.
INT8 = 1
UINT8 = 2
INT16 = 3
UINT16 = 4
INT32 = 5
UINT32 = 6
FLOAT32 = 7
FLOAT64 = 8

FIELD_DTYPE_MAP = {
    INT8: np.int8,
    UINT8: np.uint8,
    INT16: np.int16,
    UINT16: np.uint16,
    INT32: np.int32,
    UINT32: np.uint32,
    FLOAT32: np.float32,
    FLOAT64: np.float64,
}

FIELD_DTYPE_MAP_INV = {v: k for k, v in FIELD_DTYPE_MAP.items()}

NANOSECONDS_PER_SECOND = 1_000_000_000


def get_datatype_size(datatype):
    try:
        return np.dtype(FIELD_DTYPE_MAP[datatype]).itemsize
    except KeyError:
        raise ValueError(f"Unknown PointField datatype: {datatype}") from None


def get_numpy_dtype(datatype, is_bigendian=False):
    """
    Numpy dtype for a PointField datatype with explicit byte order.
    :param datatype: PointField datatype code.
    :param is_bigendian: byte order of the pointcloud data.
    :return: np.dtype
    """
    byte_order = '>' if is_bigendian else '<'
    return np.dtype(FIELD_DTYPE_MAP[datatype]).newbyteorder(byte_order)


def stamp_to_nanoseconds(sec, nanosec):
    return int(sec) * NANOSECONDS_PER_SECOND + int(nanosec)


def nanoseconds_to_stamp(nanoseconds):
    """Split integer nanoseconds into a (sec, nanosec) pair as used by builtin_interfaces/Time."""
    sec, nanosec = divmod(int(nanoseconds), NANOSECONDS_PER_SECOND)
    return sec, nanosec


def nanoseconds_to_seconds(nanoseconds):
    return nanoseconds / NANOSECONDS_PER_SECOND


def system_is_bigendian():
    return sys.byteorder != 'little'


def get_logger(logger=None, name=None):
    """
    Return the given logger or a module logger.
    Anything with debug/info/warning/error methods works, e.g. a ROS node logger.
    """
    if logger is not None:
        return logger
    return logging.getLogger(name or 'autodriver_pointcloud_aggregator')


def get_current_time(monotonic=True):
    """
    Reference function to make switching time sources as easy as overriding the time returned.
    Can be overridden, e.g., ROS clock.
    :param monotonic: If true, returns values that are guaranteed to monotonically increase.
    :return:
    """
    if not monotonic:
        return time.time()
    return time.perf_counter()


def get_time_difference(start_time, end_time, return_absolute_difference=False):
    """
    Reference implementation for time difference calculation.
    Can be overridden, e.g., ROS clock message or ROS Time object

    :param start_time:
    :param end_time:
    :param return_absolute_difference: If true, returns absolute difference so the order of start/end time
                                        arguments are irrelevant.
    :return:
    """
    time_difference = end_time - start_time
    if return_absolute_difference:
        return abs(time_difference)
    return time_difference
