"""
Concatenates and synchronizes multiple (n) point clouds into a single point cloud.
Can transform to a target frame, e.g robot frame, lidar frame, etc.

Subscribes to cloud1 ... cloud{count} and publishes combined_cloud.

Parameters:
    * count: number of input clouds, 2 to 4.
    * approx_sync: approximate (true) or exact (false) time synchronization.
    * queue_size: clouds kept per input while waiting for a match.
    * frame_id: output frame. Empty keeps the frame of cloud1.
    * fixed_frame_id: frame used to compensate the robot motion between unsynchronized clouds, e.g. odom.
    * transform_timeout: seconds to wait for a transform.
"""
import array
from functools import partial

import rclpy
from rclpy.node import Node
from rclpy.parameter import Parameter
from rclpy.time import Time
from rclpy.duration import Duration
from rclpy.qos import QoSProfile, QoSReliabilityPolicy, QoSHistoryPolicy
from rcl_interfaces.msg import ParameterDescriptor, ParameterType, SetParametersResult
from std_msgs.msg import Header
from sensor_msgs.msg import PointCloud2, PointField
import tf2_ros
from tf2_ros import TransformListener, Buffer

from autodriver_pointcloud_aggregator import point_buffer
from autodriver_pointcloud_aggregator.aggregator import PointCloudAggregator
from autodriver_pointcloud_aggregator.config import AggregatorConfig
from autodriver_pointcloud_aggregator.errors import ConfigurationError
from autodriver_pointcloud_aggregator.transforms import (RigidTransform, check_backend, select_device,
                                                         transform_stamped_to_matrix)
from autodriver_pointcloud_aggregator.utils import nanoseconds_to_stamp, stamp_to_nanoseconds


def pointcloud2_to_pointbuffer(ros_cloud):
    return point_buffer.PointBuffer(
            frame_id=ros_cloud.header.frame_id,
            stamp=stamp_to_nanoseconds(ros_cloud.header.stamp.sec, ros_cloud.header.stamp.nanosec),
            height=ros_cloud.height,
            width=ros_cloud.width,
            fields=[point_buffer.PointField(name=f.name, offset=f.offset, datatype=f.datatype, count=f.count)
                    for f in ros_cloud.fields],
            is_bigendian=ros_cloud.is_bigendian,
            point_step=ros_cloud.point_step,
            row_step=ros_cloud.row_step,
            data=bytes(ros_cloud.data),
            is_dense=ros_cloud.is_dense
    )


def pointbuffer_to_pointcloud2(cloud):
    header = Header()
    header.frame_id = cloud.frame_id
    header.stamp.sec, header.stamp.nanosec = nanoseconds_to_stamp(cloud.stamp)

    cloud_msg = PointCloud2()
    cloud_msg.header = header
    cloud_msg.height = cloud.height
    cloud_msg.width = cloud.width
    cloud_msg.fields = [PointField(name=f.name, offset=f.offset, datatype=f.datatype, count=f.count)
                        for f in cloud.fields]
    cloud_msg.is_bigendian = cloud.is_bigendian
    cloud_msg.point_step = cloud.point_step
    cloud_msg.row_step = cloud.row_step
    # array.array is copied directly by the message setter, assigning bytes goes element by element.
    cloud_msg.data = array.array('B', cloud.data)
    cloud_msg.is_dense = cloud.is_dense
    return cloud_msg


class Tf2TransformResolver:
    """
    Resolves transforms through a tf2_ros Buffer. Lookup failures return a null transform; the aggregator reports
    them, the tf2 error text is only logged at debug level.
    """

    def __init__(self, tf_buffer, logger):
        self.tf_buffer = tf_buffer
        self.logger = logger

    def resolve(self, target_frame, source_frame, stamp, timeout):
        try:
            transform = self.tf_buffer.lookup_transform(
                target_frame,
                source_frame,
                Time(nanoseconds=stamp),
                Duration(seconds=timeout)
            )
        except tf2_ros.LookupException as e:
            self.logger.debug(f"TF Lookup Error: {str(e)}")
            return RigidTransform.null()
        except tf2_ros.ConnectivityException as e:
            self.logger.debug(f"TF Connectivity Error: {str(e)}")
            return RigidTransform.null()
        except tf2_ros.ExtrapolationException as e:
            self.logger.debug(f"TF Extrapolation Error: {str(e)}")
            return RigidTransform.null()

        return transform_stamped_to_matrix(transform)

    def resolve_drift(self, frame, fixed_frame, source_stamp, target_stamp, timeout):
        try:
            transform = self.tf_buffer.lookup_transform_full(
                target_frame=frame,
                target_time=Time(nanoseconds=target_stamp),
                source_frame=frame,
                source_time=Time(nanoseconds=source_stamp),
                fixed_frame=fixed_frame,
                timeout=Duration(seconds=timeout)
            )
        except (tf2_ros.LookupException, tf2_ros.ConnectivityException, tf2_ros.ExtrapolationException) as e:
            self.logger.debug(f"TF Error while looking up the motion of '{frame}': {str(e)}")
            return RigidTransform.null()

        return transform_stamped_to_matrix(transform)


class PointcloudAggregatorNode(Node):
    def __init__(self, node_name='pointcloud_aggregator'):
        super(PointcloudAggregatorNode, self).__init__(node_name)

        # Declare parameters
        self.declare_parameter(name='count', value=2, descriptor=ParameterDescriptor(
            description='Number of input clouds (2 to 4).',
            type=ParameterType.PARAMETER_INTEGER))
        self.declare_parameter(name='approx_sync', value=True, descriptor=ParameterDescriptor(
            description='Approximate time synchronization. If false, clouds must have the exact same stamp.',
            type=ParameterType.PARAMETER_BOOL))
        self.declare_parameter(name='queue_size', value=5, descriptor=ParameterDescriptor(
            description='Clouds kept per input while waiting for a match.',
            type=ParameterType.PARAMETER_INTEGER))
        self.declare_parameter(name='frame_id', value='', descriptor=ParameterDescriptor(
            description='Output frame. Empty keeps the frame of cloud1.',
            type=ParameterType.PARAMETER_STRING))
        self.declare_parameter(name='fixed_frame_id', value='', descriptor=ParameterDescriptor(
            description='Fixed frame used to compensate motion between unsynchronized clouds, e.g. odom.',
            type=ParameterType.PARAMETER_STRING))
        self.declare_parameter('transform_timeout', 0.1)
        self.declare_parameter('approx_sync_max_interval', 0.0)  # 0.0: unbounded
        self.declare_parameter('watchdog_period', 5.0)
        self.declare_parameter('backend', 'numpy')  # numpy or torch
        self.declare_parameter('use_gpu', False)
        self.declare_parameter(name='qos', value="SENSOR_DATA", descriptor=ParameterDescriptor(
            description='SENSOR_DATA (best effort) or RELIABLE',
            type=ParameterType.PARAMETER_STRING))

        # Get parameters.
        self.config = AggregatorConfig(
            count=self.get_parameter('count').get_parameter_value().integer_value,
            approx_sync=self.get_parameter('approx_sync').get_parameter_value().bool_value,
            queue_size=self.get_parameter('queue_size').get_parameter_value().integer_value,
            frame_id=self.get_parameter('frame_id').get_parameter_value().string_value,
            fixed_frame_id=self.get_parameter('fixed_frame_id').get_parameter_value().string_value,
            transform_timeout=self.get_parameter('transform_timeout').get_parameter_value().double_value,
            approx_sync_max_interval=self.get_parameter('approx_sync_max_interval').get_parameter_value().double_value,
            watchdog_period=self.get_parameter('watchdog_period').get_parameter_value().double_value,
            backend=self.get_parameter('backend').value,
            use_gpu=self.get_parameter('use_gpu').value,
        ).validate()
        self.qos = self.get_parameter('qos').get_parameter_value().string_value

        # Initialize TF buffer and listener
        self.tf_buffer = Buffer()
        self.tf_listener = TransformListener(self.tf_buffer, self)

        # setup QoS
        self.qos_profile = QoSProfile(
            reliability=QoSReliabilityPolicy.RELIABLE,
            history=QoSHistoryPolicy.KEEP_LAST,
            depth=self.config.queue_size
        )
        if self.qos.lower() == "sensor_data":
            self.qos_profile = QoSProfile(
                reliability=QoSReliabilityPolicy.BEST_EFFORT,
                history=QoSHistoryPolicy.KEEP_LAST,
                depth=self.config.queue_size
            )

        # Setup publishers
        self.cloud_pub = self.create_publisher(PointCloud2, 'combined_cloud', 1)

        self.input_topics = [f'cloud{index + 1}' for index in range(self.config.count)]
        resolved_topics = [self.resolve_topic_name(topic) for topic in self.input_topics]

        self.aggregator = PointCloudAggregator(
                self.config,
                Tf2TransformResolver(self.tf_buffer, self.get_logger()),
                publish=self.publish_cloud,
                has_subscribers=lambda: self.cloud_pub.get_subscription_count() > 0,
                logger=self.get_logger(),
                input_topics=resolved_topics)

        # Setup subscribers
        self.cloud_subs = []
        for index, topic in enumerate(self.input_topics):
            self.cloud_subs.append(self.create_subscription(PointCloud2, topic, partial(self.callback, index),
                                                            qos_profile=self.qos_profile))

        # Warn if nothing gets synchronized
        self.watchdog_timer = self.create_timer(self.aggregator.watchdog.check_period, self.watchdog_callback)

        self.add_on_set_parameters_callback(self.parameter_change_callback)

        sync_type = 'approx' if self.config.approx_sync else 'exact'
        topics = ',\n   '.join(resolved_topics)
        self.get_logger().info(f"\n{self.get_fully_qualified_name()} subscribed to ({sync_type} sync):\n   {topics}")

    def callback(self, index, ros_cloud):
        try:
            self.aggregator.add_cloud(index, pointcloud2_to_pointbuffer(ros_cloud))
        except Exception as e:
            self.get_logger().error(f"Error processing point cloud from {self.input_topics[index]}: {str(e)}")

    def publish_cloud(self, cloud):
        self.cloud_pub.publish(pointbuffer_to_pointcloud2(cloud))

    def watchdog_callback(self):
        self.aggregator.watchdog.check()

    def parameter_change_callback(self, params):
        """
        Triggered whenever there is a change request for one or more parameters.
        Only parameters that do not change the subscriptions can be set at runtime.

        Args:
            params (List[Parameter]): A list of Parameter objects representing the parameters that are
                being attempted to change.

        Returns:
            SetParametersResult: Object indicating whether the change was successful.
        """
        result = SetParametersResult()
        result.successful = True
        aligner = self.aggregator.aligner

        for param in params:
            if param.name == 'frame_id' and param.type_ == Parameter.Type.STRING:
                aligner.target_frame = param.value
                self.config.frame_id = param.value
            elif param.name == 'fixed_frame_id' and param.type_ == Parameter.Type.STRING:
                aligner.fixed_frame = param.value
                self.config.fixed_frame_id = param.value
            elif param.name == 'transform_timeout' and param.type_ == Parameter.Type.DOUBLE:
                if param.value < 0.0:
                    result.successful = False
                    result.reason = 'transform_timeout must not be negative'
                    continue
                aligner.timeout = param.value
                self.config.transform_timeout = param.value
            elif param.name == 'backend' and param.type_ == Parameter.Type.STRING:
                try:
                    check_backend(param.value)
                except ConfigurationError as e:
                    result.successful = False
                    result.reason = str(e)
                    continue
                aligner.backend = param.value
                self.config.backend = param.value
            elif param.name == 'use_gpu' and param.type_ == Parameter.Type.BOOL:
                aligner.device = select_device(param.value)
                self.config.use_gpu = param.value
                if param.value and aligner.device == 'cpu':
                    self.get_logger().warning("Torch was not installed/built with CUDA support. "
                                           "Using CPU for transforms instead.")
            elif param.name in ('count', 'approx_sync', 'queue_size', 'approx_sync_max_interval',
                                'watchdog_period', 'qos'):
                result.successful = False
                result.reason = f"Parameter '{param.name}' can only be set at startup."

        return result


def main(args=None):
    rclpy.init(args=args)
    aggregator_node = PointcloudAggregatorNode()

    try:
        rclpy.spin(aggregator_node)
    except KeyboardInterrupt:
        pass
    finally:
        aggregator_node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
