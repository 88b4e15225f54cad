"""
Aligns synchronized pointclouds to a common frame and fuses them into one cloud.

Pipeline per synchronized tuple:
    0. Every cloud is stripped of row padding and validated against its header. A bad cloud drops the tuple.
    1. The first cloud is transformed to the output frame (frame_id, or its own frame if empty).
       If that transform is unavailable the tuple is dropped.
    2. Every other cloud is transformed to the output frame. If fixed_frame_id is set and its stamp differs from
       the first cloud's, the motion of the output frame between the two stamps (looked up through the fixed frame)
       is applied afterwards. A failed motion lookup only skips the compensation.
    3. The aligned clouds are concatenated and published with the first cloud's stamp.
"""
import time

from autodriver_pointcloud_aggregator.config import AggregatorConfig
from autodriver_pointcloud_aggregator.errors import PointCloudAggregatorError
from autodriver_pointcloud_aggregator.fusion import concatenate_pointclouds
from autodriver_pointcloud_aggregator.synchronizer import DataWatchdog, SyncPolicy, TemporalMatcher
from autodriver_pointcloud_aggregator.transforms import RigidTransform, apply_transform, select_device
from autodriver_pointcloud_aggregator.utils import (get_current_time, get_logger, get_time_difference,
                                                    nanoseconds_to_seconds)


class FrameAligner:
    def __init__(self, resolver, target_frame='', fixed_frame='', timeout=0.1, backend='numpy', device='cpu',
                 logger=None):
        self.resolver = resolver
        self.target_frame = target_frame
        self.fixed_frame = fixed_frame
        self.timeout = timeout
        self.backend = backend
        self.device = device
        self.logger = get_logger(logger, __name__)

    def get_output_frame(self, clouds):
        return self.target_frame or clouds[0].frame_id

    def align(self, clouds):
        """
        :param clouds: synchronized PointBuffers, the first one is the reference.
        :return: list of PointBuffers in the output frame, in input order, or None if the tuple must be dropped.
        :raises InvalidPointBufferError: a cloud's data size does not match its header.
        :raises MissingFieldError, UnsupportedTypeError: a cloud that has to be transformed has no usable x, y, z.
        """
        clouds = [cloud.strip_row_padding().validate() for cloud in clouds]
        reference_cloud = clouds[0]
        frame_id = self.get_output_frame(clouds)

        if reference_cloud.frame_id != frame_id:
            transform = self.resolver.resolve(frame_id, reference_cloud.frame_id, reference_cloud.stamp, self.timeout)
            if transform.is_null:
                self.logger.error(f"Could not get transform from '{reference_cloud.frame_id}' to '{frame_id}' "
                                  f"at {nanoseconds_to_seconds(reference_cloud.stamp):.6f}. Dropping clouds.")
                return None
            reference_cloud = apply_transform(transform, reference_cloud, self.backend, self.device)

        aligned_clouds = [reference_cloud.copy(frame_id=frame_id)]

        for index, cloud in enumerate(clouds[1:], start=1):
            displacement = self.get_displacement(frame_id, cloud.stamp, clouds[0].stamp)

            transform = RigidTransform.identity()
            if cloud.frame_id != frame_id:
                transform = self.resolver.resolve(frame_id, cloud.frame_id, cloud.stamp, self.timeout)
                if transform.is_null:
                    self.logger.error(f"Could not get transform from '{cloud.frame_id}' (cloud {index}) to "
                                      f"'{frame_id}' at {nanoseconds_to_seconds(cloud.stamp):.6f}. Dropping clouds.")
                    return None

            if not displacement.is_null:
                # displacement is applied after the frame transform
                transform = displacement @ transform

            if transform.is_identity():
                aligned_clouds.append(cloud.copy(frame_id=frame_id))
            else:
                aligned_clouds.append(apply_transform(transform, cloud, self.backend, self.device).copy(frame_id=frame_id))

        return aligned_clouds

    def get_displacement(self, frame_id, source_stamp, target_stamp):
        """Motion of frame_id from source_stamp to target_stamp. Null if disabled, not needed or unavailable."""
        if not self.fixed_frame or source_stamp == target_stamp:
            return RigidTransform.null()

        displacement = self.resolver.resolve_drift(frame_id, self.fixed_frame, source_stamp, target_stamp,
                                                   self.timeout)
        if displacement.is_null:
            self.logger.warning(f"Could not get the motion of '{frame_id}' relative to '{self.fixed_frame}' between "
                                f"{nanoseconds_to_seconds(source_stamp):.6f} and "
                                f"{nanoseconds_to_seconds(target_stamp):.6f}. Clouds are not motion compensated.")
        return displacement


class PointCloudAggregator:
    """
    Synchronizes 2 to 4 pointcloud streams and publishes one fused cloud per synchronized tuple.

    :param config: AggregatorConfig
    :param resolver: object with resolve() and resolve_drift(), see transforms.TransformResolver.
    :param publish: called with the fused PointBuffer.
    :param has_subscribers: returns False when nobody listens; fusion is skipped entirely in that case.
    :param logger: any logger with debug/info/warning/error methods, e.g. a ROS node logger.
    :param input_topics: names of the inputs, only used in warnings.
    """

    def __init__(self, config=None, resolver=None, publish=None, has_subscribers=None, logger=None,
                 input_topics=None, clock=time.monotonic):
        self.config = (config or AggregatorConfig()).validate()
        self.logger = get_logger(logger, __name__)
        self.publish = publish
        self.has_subscribers = has_subscribers or (lambda: True)
        self.processing_times = {}
        self.published_count = 0
        self.skipped_count = 0
        self.failed_count = 0

        self.device = 'cpu'
        if self.config.backend.lower() in ['torch', 'pytorch']:
            self.device = select_device(self.config.use_gpu)

        self.aligner = FrameAligner(resolver, target_frame=self.config.frame_id,
                                    fixed_frame=self.config.fixed_frame_id,
                                    timeout=self.config.transform_timeout, backend=self.config.backend,
                                    device=self.device, logger=self.logger)
        self.matcher = TemporalMatcher(self.config.count, self.config.sync_policy, self.config.queue_size,
                                       callback=self.combine_clouds,
                                       max_interval=self.config.approx_sync_max_interval or None,
                                       logger=self.logger)
        self.watchdog = DataWatchdog(self.config.watchdog_period, logger=self.logger,
                                     message=self.get_watchdog_message(input_topics), clock=clock)

    def get_watchdog_message(self, input_topics=None):
        message = ''
        if self.config.sync_policy == SyncPolicy.EXACT:
            message = ('Parameter "approx_sync" is false, which means that input topics should have all the exact '
                       'timestamp for the callback to be called.')
        if input_topics:
            sync_type = 'approx' if self.config.approx_sync else 'exact'
            topics = ',\n   '.join(input_topics)
            message = f"{message}\nSubscribed to ({sync_type} sync):\n   {topics}"
        return message

    def add_cloud(self, index, cloud):
        """Queue a cloud from input `index`. Returns the number of fused clouds published as a result."""
        published_count = self.published_count
        self.matcher.add(index, cloud)
        return self.published_count - published_count

    def combine_clouds(self, clouds):
        """
        Fuse one synchronized tuple.
        :return: the fused PointBuffer, or None if nothing was published.
        """
        self.watchdog.notify()
        if not self.has_subscribers():
            self.skipped_count += 1
            return None

        callback_start_time = get_current_time(monotonic=True)
        try:
            start_time = get_current_time(monotonic=True)
            aligned_clouds = self.aligner.align(clouds)
            self.processing_times['alignment'] = get_time_difference(start_time, get_current_time(monotonic=True))
            if aligned_clouds is None:
                self.failed_count += 1
                return None

            start_time = get_current_time(monotonic=True)
            fused_cloud = concatenate_pointclouds(aligned_clouds)
            self.processing_times['concatenation'] = get_time_difference(start_time, get_current_time(monotonic=True))
        except PointCloudAggregatorError as e:
            self.failed_count += 1
            self.logger.error(f"Dropping clouds at {nanoseconds_to_seconds(clouds[0].stamp):.6f}: {str(e)}")
            return None

        fused_cloud.stamp = clouds[0].stamp
        fused_cloud.frame_id = aligned_clouds[0].frame_id

        if self.publish is not None:
            self.publish(fused_cloud)
        self.published_count += 1
        self.processing_times['total_callback_time'] = get_time_difference(callback_start_time,
                                                                           get_current_time(monotonic=True))
        return fused_cloud
