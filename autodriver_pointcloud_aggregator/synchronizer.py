"""
Synchronizes N pointcloud streams into tuples of one cloud per source.

Exact policy:
    A tuple is emitted only when every source has a cloud with the identical stamp.
Approximate policy:
    Among all queued combinations (one cloud per source) the one with the smallest spread between its oldest
    and newest stamp is chosen, ties going to the older combination. It is emitted once no later cloud could
    improve it, i.e. every source has delivered a cloud at least as new as the combination's newest stamp or
    has a full queue.

In both policies queues hold at most queue_size clouds per source. Older clouds are evicted silently, and once a
tuple is emitted every cloud at or before the matched one is dropped, so tuples come out in increasing stamp order.
"""
import bisect
import enum
import threading
import time
from collections import deque

from autodriver_pointcloud_aggregator.errors import ConfigurationError
from autodriver_pointcloud_aggregator.utils import NANOSECONDS_PER_SECOND, get_logger

MIN_SOURCES = 2
MAX_SOURCES = 4
CHECKS_PER_INTERVAL = 4


class SyncPolicy(str, enum.Enum):
    EXACT = 'exact'
    APPROXIMATE = 'approximate'


class TemporalMatcher:
    def __init__(self, source_count, policy=SyncPolicy.APPROXIMATE, queue_size=5, callback=None,
                 max_interval=None, logger=None):
        """
        :param source_count: number of synchronized streams, 2 to 4.
        :param policy: SyncPolicy or its string value.
        :param queue_size: clouds kept per source while waiting for a match.
        :param callback: called with a list of source_count clouds for every match.
        :param max_interval: optional, seconds. Approximate matches spreading more than this are rejected.
        :param logger: any logger with debug/info/warning/error methods.
        """
        if not MIN_SOURCES <= source_count <= MAX_SOURCES:
            raise ConfigurationError(f"source_count must be between {MIN_SOURCES} and {MAX_SOURCES}, got {source_count}.")
        if queue_size < 1:
            raise ConfigurationError(f"queue_size must be positive, got {queue_size}.")
        try:
            self.policy = SyncPolicy(policy)
        except ValueError:
            raise ConfigurationError(f"Unknown sync policy '{policy}'.") from None

        self.source_count = source_count
        self.queue_size = queue_size
        self.max_interval = None
        if max_interval:
            self.max_interval = int(max_interval * NANOSECONDS_PER_SECOND)
        self.logger = get_logger(logger, __name__)
        self._callbacks = []
        if callback is not None:
            self._callbacks.append(callback)

        self._lock = threading.Lock()
        self._queues = [deque() for _ in range(source_count)]
        self._newest_stamps = [None] * source_count
        # matches are numbered under _lock and handed to the callbacks strictly in that order
        self._emit_condition = threading.Condition()
        self._next_sequence = 0
        self._emitted_sequence = 0
        self.matched_count = 0
        self.dropped_count = 0

    def register_callback(self, callback):
        self._callbacks.append(callback)

    def add(self, source_index, cloud):
        """
        Queue a cloud from one source and emit every tuple that becomes available.
        Safe to call concurrently from different delivery threads. Callbacks run outside the queue lock, one
        tuple at a time and in match order, so a thread whose match is newer waits for older ones to be handed on.
        :return: number of tuples emitted.
        """
        if not 0 <= source_index < self.source_count:
            raise IndexError(f"source_index {source_index} out of range for {self.source_count} sources.")

        with self._lock:
            newest_stamp = self._newest_stamps[source_index]
            if newest_stamp is not None and cloud.stamp <= newest_stamp:
                # out of order or duplicate
                self.dropped_count += 1
                return 0

            self._newest_stamps[source_index] = cloud.stamp
            queue = self._queues[source_index]
            queue.append(cloud)
            if len(queue) > self.queue_size:
                queue.popleft()
                self.dropped_count += 1

            matches = []
            while True:
                if self.policy == SyncPolicy.EXACT:
                    match = self._find_exact_match()
                else:
                    match = self._find_approximate_match()
                if match is None:
                    break
                matches.append(match)
                self.matched_count += 1

            if not matches:
                return 0
            sequence = self._next_sequence
            self._next_sequence += len(matches)

        with self._emit_condition:
            self._emit_condition.wait_for(lambda: self._emitted_sequence == sequence)
            try:
                for match in matches:
                    self._emit(match)
            finally:
                self._emitted_sequence += len(matches)
                self._emit_condition.notify_all()
        return len(matches)

    def pending(self):
        with self._lock:
            return [len(queue) for queue in self._queues]

    def reset(self):
        with self._lock:
            for queue in self._queues:
                queue.clear()
            self._newest_stamps = [None] * self.source_count

    def _emit(self, clouds):
        for callback in self._callbacks:
            try:
                callback(clouds)
            except Exception as e:
                self.logger.error(f"Synchronized callback failed for stamp {clouds[0].stamp}: {str(e)}")

    def _consume(self, matched):
        """Remove the matched clouds and everything older from the queues."""
        for queue, cloud in zip(self._queues, matched):
            while queue and queue[0].stamp <= cloud.stamp:
                if queue.popleft() is not cloud:
                    self.dropped_count += 1

    def _find_exact_match(self):
        common_stamps = None
        for queue in self._queues:
            stamps = {cloud.stamp for cloud in queue}
            common_stamps = stamps if common_stamps is None else common_stamps & stamps
            if not common_stamps:
                return None

        stamp = min(common_stamps)
        matched = [next(cloud for cloud in queue if cloud.stamp == stamp) for queue in self._queues]
        self._consume(matched)
        return matched

    def _find_approximate_match(self):
        while all(self._queues):
            candidate = self._best_candidate()
            stamps = [cloud.stamp for cloud in candidate]
            oldest_stamp, newest_stamp = min(stamps), max(stamps)

            if self.max_interval is not None and newest_stamp - oldest_stamp > self.max_interval:
                self._drop_oldest()
                continue

            for queue, source_newest in zip(self._queues, self._newest_stamps):
                if source_newest < newest_stamp and len(queue) < self.queue_size:
                    # this source may still deliver a closer cloud
                    return None

            self._consume(candidate)
            return list(candidate)
        return None

    def _best_candidate(self):
        """
        Minimum spread combination of one queued cloud per source.
        Every queued cloud is tried as the oldest member, paired with the earliest cloud at or after it from each
        other source. Queues are sorted by stamp, so each pairing is a bisection.
        """
        queue_stamps = [[cloud.stamp for cloud in queue] for queue in self._queues]
        best_candidate, best_key = None, None
        for pivot_index, pivot_stamps in enumerate(queue_stamps):
            for pivot_position, pivot_stamp in enumerate(pivot_stamps):
                candidate = []
                for index, stamps in enumerate(queue_stamps):
                    if index == pivot_index:
                        position = pivot_position
                    else:
                        position = bisect.bisect_left(stamps, pivot_stamp)
                        if position == len(stamps):
                            break
                    candidate.append(self._queues[index][position])
                else:
                    key = self._candidate_key(candidate)
                    if best_key is None or key < best_key:
                        best_candidate, best_key = candidate, key
        return best_candidate

    @staticmethod
    def _candidate_key(candidate):
        stamps = [cloud.stamp for cloud in candidate]
        return max(stamps) - min(stamps), max(stamps), stamps

    def _drop_oldest(self):
        oldest_queue = min(self._queues, key=lambda queue: queue[0].stamp)
        oldest_queue.popleft()
        self.dropped_count += 1


class DataWatchdog:
    """
    Warns when no synchronized data arrived for `interval` seconds since start or since the last match.

    The host either calls check() every check_period seconds from its own timer (e.g. a ROS timer) or uses
    start()/stop(), which run the check on a cancellable threading.Timer. Checking more often than `interval`
    keeps the warning at most check_period late; warnings repeat at most once per `interval`. Advisory only.
    """

    def __init__(self, interval=5.0, logger=None, message='', clock=time.monotonic):
        self.interval = interval
        self.check_period = interval / CHECKS_PER_INTERVAL
        self.logger = get_logger(logger, __name__)
        self.message = message
        self._clock = clock
        self._start_time = clock()
        self._last_data_time = None
        self._last_warning_time = None
        self._timer = None
        self._timer_lock = threading.Lock()
        self.warning_count = 0

    @property
    def received_data(self):
        return self._last_data_time is not None

    def notify(self):
        # single float assignment, no lock needed
        self._last_data_time = self._clock()

    def time_since_data(self, now=None):
        if now is None:
            now = self._clock()
        reference_time = self._last_data_time if self._last_data_time is not None else self._start_time
        return now - reference_time

    def check(self, now=None):
        """:return: True if a warning was emitted."""
        if now is None:
            now = self._clock()
        elapsed = self.time_since_data(now)
        if elapsed < self.interval:
            return False
        if self._last_warning_time is not None and now - self._last_warning_time < self.interval:
            return False
        self._last_warning_time = now
        self.warning_count += 1
        self.logger.warning(f"Did not receive data since {elapsed:.1f} seconds! Make sure the input topics are "
                            f"published and the timestamps in their header are set. {self.message}")
        return True

    def start(self):
        with self._timer_lock:
            if self._timer is None:
                self._schedule()

    def stop(self):
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self):
        self._timer = threading.Timer(self.check_period, self._on_timer)
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self):
        with self._timer_lock:
            if self._timer is None:
                return
            self.check()
            self._schedule()
