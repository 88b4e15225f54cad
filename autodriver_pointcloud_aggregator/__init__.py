from autodriver_pointcloud_aggregator.aggregator import FrameAligner, PointCloudAggregator
from autodriver_pointcloud_aggregator.config import AggregatorConfig
from autodriver_pointcloud_aggregator.fusion import concatenate_pointclouds
from autodriver_pointcloud_aggregator.point_buffer import PointBuffer, PointField, PointState, create_pointbuffer
from autodriver_pointcloud_aggregator.synchronizer import DataWatchdog, SyncPolicy, TemporalMatcher
from autodriver_pointcloud_aggregator.transforms import RigidTransform, StaticTransformResolver, apply_transform
