"""
Rigid transforms and their application to packed pointclouds.

Transforms are applied in single precision, the same way the sensors publish their coordinates.
Max range points (non-finite x, y, z with a finite distance) are transformed through their distance value
and re-encoded afterwards. Fully invalid points are copied through untouched.
"""
from typing import Protocol

import numpy as np
from scipy.spatial.transform import Rotation as R

try:
    import torch
except ImportError:
    torch = None

from autodriver_pointcloud_aggregator.errors import ConfigurationError, TransformUnavailableError
from autodriver_pointcloud_aggregator.point_buffer import (DISTANCE_FIELD_NAME, VIEWPOINT_FIELD_NAMES,
                                                           XYZ_FIELD_NAMES, PointState,
                                                           classify_points, get_structured_dtype,
                                                           resolve_point_fields)

TRANSFORM_BACKENDS = ('numpy', 'torch')


class RigidTransform:
    """4x4 homogeneous transform. A transform without a matrix is the null transform (lookup failed)."""

    def __init__(self, matrix=None):
        if matrix is None:
            self._matrix = None
        else:
            matrix = np.array(matrix, dtype=np.float64).reshape(4, 4)
            self._matrix = matrix

    @classmethod
    def null(cls):
        return cls(None)

    @classmethod
    def identity(cls):
        return cls(np.eye(4))

    @classmethod
    def from_translation_quaternion(cls, translation, quaternion):
        """
        :param translation: (x, y, z)
        :param quaternion: (x, y, z, w)
        """
        matrix = np.eye(4)
        matrix[:3, :3] = R.from_quat(quaternion).as_matrix()
        matrix[:3, 3] = translation
        return cls(matrix)

    @classmethod
    def from_translation_euler(cls, translation, angles, sequence='xyz', degrees=False):
        matrix = np.eye(4)
        matrix[:3, :3] = R.from_euler(sequence, angles, degrees=degrees).as_matrix()
        matrix[:3, 3] = translation
        return cls(matrix)

    @property
    def is_null(self):
        return self._matrix is None

    @property
    def translation(self):
        return self.as_matrix()[:3, 3].copy()

    def as_matrix(self, dtype=np.float64):
        if self._matrix is None:
            raise TransformUnavailableError("Null transform has no matrix.")
        return self._matrix.astype(dtype)

    def is_identity(self, atol=1e-9):
        return not self.is_null and np.allclose(self._matrix, np.eye(4), atol=atol)

    def inverse(self):
        if self.is_null:
            return RigidTransform.null()
        rotation = self._matrix[:3, :3]
        inverse = np.eye(4)
        inverse[:3, :3] = rotation.T
        inverse[:3, 3] = -rotation.T @ self._matrix[:3, 3]
        return RigidTransform(inverse)

    def compose(self, other):
        """self @ other: apply other first, then self. Composing with a null transform gives a null transform."""
        if self.is_null or other.is_null:
            return RigidTransform.null()
        return RigidTransform(self._matrix @ other._matrix)

    def __matmul__(self, other):
        return self.compose(other)

    def transform_points(self, points, backend='numpy', device='cpu'):
        """
        :param points: (N, 3) array.
        :return: (N, 3) float32 array.
        """
        return _transform_points(self.as_matrix(np.float32), np.asarray(points, dtype=np.float32), backend, device)

    def __repr__(self):
        if self.is_null:
            return 'RigidTransform(null)'
        return f'RigidTransform(translation={self._matrix[:3, 3].tolist()})'


class TransformResolver(Protocol):
    """
    Looks up rigid transforms between frames. Both methods return RigidTransform.null() on failure.
    """

    def resolve(self, target_frame, source_frame, stamp, timeout):
        """Transform from source_frame to target_frame at stamp (nanoseconds)."""

    def resolve_drift(self, frame, fixed_frame, source_stamp, target_stamp, timeout):
        """Displacement of frame between source_stamp and target_stamp, expressed through fixed_frame."""


class StaticTransformResolver:
    """
    Resolver for static extrinsics, e.g. sensors bolted to the robot body.
    Transforms are registered as target <- source and can be looked up in either direction.
    """

    def __init__(self, transforms=None):
        self._transforms = {}
        for (target_frame, source_frame), transform in (transforms or {}).items():
            self.set_transform(target_frame, source_frame, transform)

    def set_transform(self, target_frame, source_frame, transform):
        if not isinstance(transform, RigidTransform):
            transform = RigidTransform(transform)
        self._transforms[(target_frame, source_frame)] = transform

    def known_frames(self):
        return {frame for pair in self._transforms for frame in pair}

    def resolve(self, target_frame, source_frame, stamp=None, timeout=0.0):
        if target_frame == source_frame:
            return RigidTransform.identity()
        transform = self._transforms.get((target_frame, source_frame))
        if transform is not None:
            return transform
        transform = self._transforms.get((source_frame, target_frame))
        if transform is not None:
            return transform.inverse()
        return RigidTransform.null()

    def resolve_drift(self, frame, fixed_frame, source_stamp=None, target_stamp=None, timeout=0.0):
        # static frames do not move relative to the fixed frame
        if self.resolve(fixed_frame, frame).is_null:
            return RigidTransform.null()
        return RigidTransform.identity()


def transform_stamped_to_matrix(transform):
    """
    Convert a geometry_msgs/TransformStamped to a RigidTransform.
    """
    translation = transform.transform.translation
    rotation = transform.transform.rotation
    tx, ty, tz = translation.x, translation.y, translation.z
    qx, qy, qz, qw = rotation.x, rotation.y, rotation.z, rotation.w
    return RigidTransform.from_translation_quaternion([tx, ty, tz], [qx, qy, qz, qw])


def select_device(use_gpu=False):
    """torch device for the torch backend. Falls back to the cpu when CUDA is unavailable."""
    if use_gpu and torch is not None and torch.cuda.is_available():
        return 'cuda:0'
    return 'cpu'


def check_backend(backend):
    if backend.lower() in ['np', 'numpy']:
        return
    if backend.lower() in ['torch', 'pytorch']:
        if torch is None:
            raise ConfigurationError("The torch backend was requested but torch is not installed.")
        return
    raise ConfigurationError(f"Unknown transform backend '{backend}'. Use one of {TRANSFORM_BACKENDS}.")


def _transform_points(matrix, points, backend='numpy', device='cpu'):
    if backend.lower() in ['np', 'numpy']:
        return points @ matrix[:3, :3].T + matrix[:3, 3]
    check_backend(backend)
    points_tensor = torch.from_numpy(np.ascontiguousarray(points)).to(device)
    matrix_tensor = torch.from_numpy(np.ascontiguousarray(matrix)).to(device)
    transformed = points_tensor @ matrix_tensor[:3, :3].T + matrix_tensor[:3, 3]
    return transformed.cpu().numpy()


def apply_transform(transform, cloud, backend='numpy', device='cpu'):
    """
    Transform the x, y, z (and viewpoint) of every point of a pointcloud.

    Every other byte of the input is copied unchanged. Per point:
        * VALID (finite x, y, z): p' = T * p
        * MAX_RANGE (non-finite x, y, z, finite distance): x is replaced by distance, the point is transformed,
          the transformed x is written to distance and x is set to NaN.
        * INVALID: copied through.
    If vp_x, vp_y, vp_z are present, every viewpoint is transformed regardless of point validity.

    :param transform: RigidTransform
    :param cloud: PointBuffer
    :param backend: numpy or torch.
    :param device: torch device, e.g. cpu or cuda:0.
    :return: new PointBuffer.
    :raises MissingFieldError, UnsupportedTypeError: the cloud is not transformed at all.
    :raises TransformUnavailableError: the transform is null.
    """
    check_backend(backend)
    matrix = transform.as_matrix(np.float32)
    field_offsets = resolve_point_fields(cloud)
    if cloud.num_points == 0:
        return cloud.copy()

    names = list(XYZ_FIELD_NAMES)
    if field_offsets.has_distance:
        names.append(DISTANCE_FIELD_NAME)
    if field_offsets.has_viewpoint:
        names.extend(VIEWPOINT_FIELD_NAMES)
    data = bytearray(cloud.data)
    points = np.frombuffer(data, dtype=get_structured_dtype(cloud, names), count=cloud.num_points)

    xyz = np.stack([points[name] for name in XYZ_FIELD_NAMES], axis=1).astype(np.float32)
    distance = points[DISTANCE_FIELD_NAME].astype(np.float32) if field_offsets.has_distance else None
    states = classify_points(xyz, distance)

    valid_mask = states == PointState.VALID
    max_range_mask = states == PointState.MAX_RANGE

    if np.any(valid_mask):
        transformed = _transform_points(matrix, xyz[valid_mask], backend, device)
        for axis, name in enumerate(XYZ_FIELD_NAMES):
            points[name][valid_mask] = transformed[:, axis]

    if np.any(max_range_mask):
        max_range_points = xyz[max_range_mask]
        max_range_points[:, 0] = distance[max_range_mask]
        with np.errstate(invalid='ignore', over='ignore'):
            transformed = _transform_points(matrix, max_range_points, backend, device)
        points[DISTANCE_FIELD_NAME][max_range_mask] = transformed[:, 0]
        points['x'][max_range_mask] = np.nan
        points['y'][max_range_mask] = transformed[:, 1]
        points['z'][max_range_mask] = transformed[:, 2]

    if field_offsets.has_viewpoint:
        viewpoints = np.stack([points[name] for name in VIEWPOINT_FIELD_NAMES], axis=1).astype(np.float32)
        with np.errstate(invalid='ignore', over='ignore'):
            transformed = _transform_points(matrix, viewpoints, backend, device)
        for axis, name in enumerate(VIEWPOINT_FIELD_NAMES):
            points[name] = transformed[:, axis]

    return cloud.copy(data=bytes(data))
