"""
Exceptions raised by the pointcloud aggregator.

Errors are local to a single fusion cycle. The pipeline catches them, logs
them and drops the tuple; none of them should terminate the hosting node.
"""


class PointCloudAggregatorError(Exception):
    """Base class for all aggregator errors."""


class InvalidPointBufferError(PointCloudAggregatorError):
    """The buffer's data size or field table is inconsistent with its header."""


class MissingFieldError(PointCloudAggregatorError):
    """A required field (x, y or z) is not present in the pointcloud."""

    def __init__(self, field_name, frame_id=''):
        self.field_name = field_name
        self.frame_id = frame_id
        super().__init__(f"Pointcloud in frame '{frame_id}' has no '{field_name}' field.")


class UnsupportedTypeError(PointCloudAggregatorError):
    """A spatial field is not stored as FLOAT32."""

    def __init__(self, field_name, datatype, frame_id=''):
        self.field_name = field_name
        self.datatype = datatype
        self.frame_id = frame_id
        super().__init__(f"Field '{field_name}' in frame '{frame_id}' has datatype {datatype}. "
                         f"Only FLOAT32 x-y-z coordinates are supported.")


class SchemaMismatchError(PointCloudAggregatorError):
    """Pointclouds cannot be concatenated because their fields differ."""


class TransformUnavailableError(PointCloudAggregatorError):
    """A null transform was passed where a real one is required."""


class ConfigurationError(PointCloudAggregatorError, ValueError):
    """A configuration value is out of range."""
