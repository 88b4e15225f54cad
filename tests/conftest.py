import numpy as np
import pytest

from autodriver_pointcloud_aggregator.point_buffer import create_pointbuffer
from autodriver_pointcloud_aggregator.transforms import RigidTransform, StaticTransformResolver

MILLISECOND = 1_000_000


def make_cloud(points, frame_id='base_link', stamp=0, **extra_columns):
    """Unorganized FLOAT32 cloud from an (N, 3) array plus optional extra columns."""
    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    columns = {'x': points[:, 0], 'y': points[:, 1], 'z': points[:, 2]}
    columns.update(extra_columns)
    return create_pointbuffer(columns, frame_id=frame_id, stamp=stamp)


class RecordingResolver(StaticTransformResolver):
    """Static resolver that records lookups and serves configurable drift transforms."""

    def __init__(self, transforms=None, drift=None):
        super().__init__(transforms)
        self.drift = drift or {}
        self.calls = []

    def resolve(self, target_frame, source_frame, stamp=None, timeout=0.0):
        self.calls.append(('resolve', target_frame, source_frame, stamp))
        return super().resolve(target_frame, source_frame, stamp, timeout)

    def resolve_drift(self, frame, fixed_frame, source_stamp=None, target_stamp=None, timeout=0.0):
        self.calls.append(('resolve_drift', frame, fixed_frame, source_stamp, target_stamp))
        return self.drift.get((source_stamp, target_stamp), RigidTransform.null())


class Recorder:
    def __init__(self):
        self.items = []

    def __call__(self, item):
        self.items.append(item)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def resolver():
    return RecordingResolver()
