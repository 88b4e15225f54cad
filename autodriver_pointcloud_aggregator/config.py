from dataclasses import dataclass, fields

from autodriver_pointcloud_aggregator.errors import ConfigurationError
from autodriver_pointcloud_aggregator.synchronizer import MAX_SOURCES, MIN_SOURCES, SyncPolicy
from autodriver_pointcloud_aggregator.transforms import TRANSFORM_BACKENDS


@dataclass
class AggregatorConfig:
    """
    Settings of the aggregator. Names match the ROS parameters of the node.

    count: number of input clouds (2 to 4).
    approx_sync: approximate (True) or exact (False) time synchronization.
    queue_size: clouds kept per input while waiting for a match.
    frame_id: output frame. Empty uses the frame of the first cloud.
    fixed_frame_id: frame used to compensate the motion between unsynchronized clouds. Empty disables it.
    transform_timeout: seconds to wait for a transform.
    approx_sync_max_interval: seconds, 0 means unbounded.
    watchdog_period: seconds without synchronized data before warning.
    backend: numpy or torch.
    use_gpu: run the torch backend on cuda:0 when available.
    """
    count: int = 2
    approx_sync: bool = True
    queue_size: int = 5
    frame_id: str = ''
    fixed_frame_id: str = ''
    transform_timeout: float = 0.1
    approx_sync_max_interval: float = 0.0
    watchdog_period: float = 5.0
    backend: str = 'numpy'
    use_gpu: bool = False

    @classmethod
    def from_dict(cls, parameters):
        known = {f.name for f in fields(cls)}
        unknown = set(parameters) - known
        if unknown:
            raise ConfigurationError(f"Unknown parameters: {sorted(unknown)}")
        return cls(**parameters).validate()

    @property
    def sync_policy(self):
        return SyncPolicy.APPROXIMATE if self.approx_sync else SyncPolicy.EXACT

    def validate(self):
        if not MIN_SOURCES <= self.count <= MAX_SOURCES:
            raise ConfigurationError(f"count must be between {MIN_SOURCES} and {MAX_SOURCES}, got {self.count}.")
        if self.queue_size < 1:
            raise ConfigurationError(f"queue_size must be a positive integer, got {self.queue_size}.")
        if self.transform_timeout < 0.0:
            raise ConfigurationError(f"transform_timeout must not be negative, got {self.transform_timeout}.")
        if self.approx_sync_max_interval < 0.0:
            raise ConfigurationError("approx_sync_max_interval must not be negative.")
        if self.watchdog_period <= 0.0:
            raise ConfigurationError(f"watchdog_period must be positive, got {self.watchdog_period}.")
        if self.backend.lower() not in TRANSFORM_BACKENDS and self.backend.lower() not in ('np', 'pytorch'):
            raise ConfigurationError(f"backend must be one of {TRANSFORM_BACKENDS}, got '{self.backend}'.")
        return self
