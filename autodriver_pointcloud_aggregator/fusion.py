"""
Concatenation of aligned pointclouds.

All clouds must carry the same fields, compared by name, datatype and count, with the same byte order.
Offsets and padding may differ: records are repacked into the layout of the first cloud.
"""
import numpy as np

from autodriver_pointcloud_aggregator.errors import SchemaMismatchError
from autodriver_pointcloud_aggregator.point_buffer import (PointBuffer, buffer_to_structured_array,
                                                           get_structured_dtype)


def get_field_signature(cloud):
    return sorted((f.name, f.datatype, f.count) for f in cloud.fields)


def has_same_layout(cloud, reference):
    return cloud.point_step == reference.point_step and list(cloud.fields) == list(reference.fields)


def check_schema(clouds):
    reference = clouds[0]
    reference_signature = get_field_signature(reference)
    for index, cloud in enumerate(clouds[1:], start=1):
        if cloud.is_bigendian != reference.is_bigendian:
            raise SchemaMismatchError(f"Cloud {index} ('{cloud.frame_id}') has a different byte order than cloud 0.")
        signature = get_field_signature(cloud)
        if signature != reference_signature:
            missing = sorted(set(reference_signature) - set(signature))
            extra = sorted(set(signature) - set(reference_signature))
            raise SchemaMismatchError(f"Cloud {index} ('{cloud.frame_id}') fields do not match cloud 0. "
                                      f"Missing: {missing}, unexpected: {extra}.")


def repack(cloud, reference):
    """Copy the records of cloud into the field layout of reference."""
    source = buffer_to_structured_array(cloud)
    repacked = np.zeros(cloud.num_points, dtype=get_structured_dtype(reference))
    for name in reference.field_names:
        repacked[name] = source[name]
    return repacked.tobytes()


def concatenate_pointclouds(clouds):
    """
    Concatenate the points of several clouds into one unorganized cloud.
    The header (frame and stamp) is copied from the first cloud.

    :param clouds: list of PointBuffer, already in a common frame.
    :return: PointBuffer with height 1, width = total number of points and is_dense = all inputs dense.
    :raises SchemaMismatchError: fields or byte order differ.
    """
    if not clouds:
        raise ValueError("At least one pointcloud is required.")
    check_schema(clouds)

    reference = clouds[0]
    chunks = []
    for cloud in clouds:
        if has_same_layout(cloud, reference):
            chunks.append(cloud.data)
        else:
            chunks.append(repack(cloud, reference))

    width = sum(cloud.num_points for cloud in clouds)
    return PointBuffer(frame_id=reference.frame_id, stamp=reference.stamp, height=1, width=width,
                       fields=list(reference.fields), is_bigendian=reference.is_bigendian,
                       point_step=reference.point_step, row_step=reference.point_step * width,
                       data=b''.join(chunks), is_dense=all(cloud.is_dense for cloud in clouds))
