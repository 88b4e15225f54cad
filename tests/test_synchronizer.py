"""
Time synchronization tests.

Tests for:
- Exact stamp matching across 2 to 4 sources
- Approximate matching, minimum spread selection and max interval
- Queue bounds, ordering and out of order drops
- Concurrent delivery
- DataWatchdog warnings
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from autodriver_pointcloud_aggregator.errors import ConfigurationError
from autodriver_pointcloud_aggregator.synchronizer import DataWatchdog, SyncPolicy, TemporalMatcher

from conftest import MILLISECOND, make_cloud


def cloud_at(stamp, frame_id='base_link'):
    return make_cloud([[0.0, 0.0, 0.0]], frame_id=frame_id, stamp=stamp)


def stamps_of(match):
    return [cloud.stamp for cloud in match]


class TestExactPolicy:
    """Matching on identical stamps."""

    def test_identical_stamps_match(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=recorder)

        assert matcher.add(0, cloud_at(10)) == 0
        assert matcher.add(1, cloud_at(10)) == 1

        assert len(recorder.items) == 1
        assert stamps_of(recorder.items[0]) == [10, 10]
        assert matcher.matched_count == 1
        assert matcher.pending() == [0, 0]

    def test_match_is_ordered_by_source(self, recorder):
        matcher = TemporalMatcher(2, 'exact', callback=recorder)
        first, second = cloud_at(10, 'lidar_front'), cloud_at(10, 'lidar_rear')

        matcher.add(1, second)
        matcher.add(0, first)

        assert recorder.items[0][0] is first
        assert recorder.items[0][1] is second

    def test_different_stamps_never_match(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=recorder)

        matcher.add(0, cloud_at(10))
        matcher.add(1, cloud_at(11))

        assert recorder.items == []

    def test_partial_set_is_not_emitted(self, recorder):
        matcher = TemporalMatcher(3, SyncPolicy.EXACT, callback=recorder)

        matcher.add(0, cloud_at(10))
        matcher.add(1, cloud_at(10))
        matcher.add(2, cloud_at(20))
        assert recorder.items == []

        matcher.add(0, cloud_at(20))
        matcher.add(1, cloud_at(20))

        assert [stamps_of(match) for match in recorder.items] == [[20, 20, 20]]
        # the unmatched clouds at 10 are older than the match and get discarded
        assert matcher.pending() == [0, 0, 0]
        assert matcher.dropped_count == 2

    def test_four_sources(self, recorder):
        matcher = TemporalMatcher(4, SyncPolicy.EXACT, callback=recorder)
        for index in range(4):
            matcher.add(index, cloud_at(5))
        assert len(recorder.items) == 1
        assert len(recorder.items[0]) == 4

    def test_out_of_order_and_duplicate_clouds_are_dropped(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=recorder)

        matcher.add(0, cloud_at(5))
        assert matcher.add(0, cloud_at(3)) == 0
        assert matcher.add(0, cloud_at(5)) == 0

        assert matcher.dropped_count == 2
        assert matcher.pending() == [1, 0]

    def test_queue_is_bounded(self):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, queue_size=2)
        for stamp in (1, 2, 3):
            matcher.add(0, cloud_at(stamp))

        assert matcher.pending() == [2, 0]
        assert matcher.dropped_count == 1

    def test_reset(self):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT)
        matcher.add(0, cloud_at(5))
        matcher.reset()
        assert matcher.pending() == [0, 0]
        # stamps may start over after a reset
        matcher.add(0, cloud_at(1))
        assert matcher.pending() == [1, 0]


class TestApproximatePolicy:
    """Minimum spread matching."""

    def test_minimum_spread_candidate(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.APPROXIMATE, queue_size=5, callback=recorder)

        for stamp in (0, 100, 200):
            matcher.add(0, cloud_at(stamp * MILLISECOND))
        # A100 is the best partner but B may still deliver something closer
        assert matcher.add(1, cloud_at(90 * MILLISECOND)) == 0

        assert matcher.add(1, cloud_at(210 * MILLISECOND)) == 1
        assert stamps_of(recorder.items[0]) == [100 * MILLISECOND, 90 * MILLISECOND]
        assert matcher.dropped_count == 1

        assert matcher.add(0, cloud_at(300 * MILLISECOND)) == 1
        assert stamps_of(recorder.items[1]) == [200 * MILLISECOND, 210 * MILLISECOND]

    def test_tuples_are_emitted_in_increasing_stamp_order(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.APPROXIMATE, callback=recorder)
        for stamp in range(10):
            matcher.add(0, cloud_at(stamp * 100 * MILLISECOND))
            matcher.add(1, cloud_at((stamp * 100 + 3) * MILLISECOND))

        first_stamps = [match[0].stamp for match in recorder.items]
        assert len(first_stamps) >= 8
        assert first_stamps == sorted(first_stamps)
        for match in recorder.items:
            assert match[1].stamp - match[0].stamp == 3 * MILLISECOND

    def test_max_interval_rejects_wide_candidates(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.APPROXIMATE, callback=recorder, max_interval=0.05)

        matcher.add(0, cloud_at(0))
        matcher.add(1, cloud_at(100 * MILLISECOND))
        assert recorder.items == []
        assert matcher.dropped_count == 1

        matcher.add(0, cloud_at(100 * MILLISECOND))
        assert [stamps_of(match) for match in recorder.items] == [[100 * MILLISECOND, 100 * MILLISECOND]]

    def test_full_queue_makes_candidate_final(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.APPROXIMATE, queue_size=1, callback=recorder)

        matcher.add(0, cloud_at(0))
        matcher.add(1, cloud_at(50 * MILLISECOND))

        assert [stamps_of(match) for match in recorder.items] == [[0, 50 * MILLISECOND]]

    def test_three_sources(self, recorder):
        matcher = TemporalMatcher(3, SyncPolicy.APPROXIMATE, callback=recorder)

        matcher.add(0, cloud_at(10 * MILLISECOND))
        matcher.add(1, cloud_at(12 * MILLISECOND))
        matcher.add(2, cloud_at(11 * MILLISECOND))
        assert recorder.items == []

        for index, stamp in enumerate((110, 112, 111)):
            matcher.add(index, cloud_at(stamp * MILLISECOND))

        assert stamps_of(recorder.items[0]) == [10 * MILLISECOND, 12 * MILLISECOND, 11 * MILLISECOND]

    def test_oldest_member_from_any_source(self, recorder):
        matcher = TemporalMatcher(3, SyncPolicy.APPROXIMATE, callback=recorder)

        matcher.add(0, cloud_at(100 * MILLISECOND))
        matcher.add(1, cloud_at(96 * MILLISECOND))
        matcher.add(2, cloud_at(60 * MILLISECOND))
        matcher.add(2, cloud_at(103 * MILLISECOND))
        matcher.add(0, cloud_at(150 * MILLISECOND))
        assert recorder.items == []

        matcher.add(1, cloud_at(150 * MILLISECOND))

        assert stamps_of(recorder.items[0]) == [100 * MILLISECOND, 96 * MILLISECOND, 103 * MILLISECOND]

    def test_large_queues_stay_fast(self):
        matcher = TemporalMatcher(4, SyncPolicy.APPROXIMATE, queue_size=30)
        # sources 0-2 are far ahead of source 3, so no candidate is final yet
        for index in range(3):
            for sample in range(29):
                matcher.add(index, cloud_at((1000 + sample * 10) * MILLISECOND))
        for sample in range(28):
            matcher.add(3, cloud_at(sample * MILLISECOND))

        start_time = time.perf_counter()
        matcher.add(3, cloud_at(28 * MILLISECOND))
        elapsed = time.perf_counter() - start_time

        assert matcher.pending() == [29, 29, 29, 29]
        assert matcher.matched_count == 0
        assert elapsed < 0.1


class TestMatcherBehaviour:
    """Callbacks, validation and threading."""

    def test_callback_exception_does_not_stop_matching(self):
        logger = MagicMock()
        calls = []

        def callback(clouds):
            calls.append(clouds)
            if len(calls) == 1:
                raise RuntimeError('boom')

        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=callback, logger=logger)
        for stamp in (1, 2):
            matcher.add(0, cloud_at(stamp))
            matcher.add(1, cloud_at(stamp))

        assert len(calls) == 2
        assert matcher.matched_count == 2
        logger.error.assert_called_once()

    def test_registered_callbacks_are_all_called(self, recorder):
        other = []
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=recorder)
        matcher.register_callback(other.append)

        matcher.add(0, cloud_at(1))
        matcher.add(1, cloud_at(1))

        assert len(recorder.items) == 1
        assert len(other) == 1

    @pytest.mark.parametrize('source_count', [0, 1, 5])
    def test_invalid_source_count(self, source_count):
        with pytest.raises(ConfigurationError):
            TemporalMatcher(source_count)

    def test_invalid_queue_size(self):
        with pytest.raises(ConfigurationError):
            TemporalMatcher(2, queue_size=0)

    def test_invalid_policy(self):
        with pytest.raises(ConfigurationError):
            TemporalMatcher(2, policy='nearest')

    def test_invalid_source_index(self):
        matcher = TemporalMatcher(2)
        with pytest.raises(IndexError):
            matcher.add(2, cloud_at(0))

    def test_concurrent_delivery(self, recorder):
        matcher = TemporalMatcher(2, SyncPolicy.EXACT, queue_size=200, callback=recorder)

        def deliver(index):
            for stamp in range(1, 101):
                matcher.add(index, cloud_at(stamp))

        threads = [threading.Thread(target=deliver, args=(index,)) for index in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert matcher.matched_count == 100
        assert len(recorder.items) == 100
        for match in recorder.items:
            assert match[0].stamp == match[1].stamp
        assert [match[0].stamp for match in recorder.items] == list(range(1, 101))

    def test_newer_match_waits_for_slow_callback(self):
        emitted = []
        first_started = threading.Event()
        release_first = threading.Event()

        def callback(clouds):
            if clouds[0].stamp == 1:
                first_started.set()
                release_first.wait(timeout=5.0)
            emitted.append(clouds[0].stamp)

        matcher = TemporalMatcher(2, SyncPolicy.EXACT, callback=callback)

        def deliver(stamp):
            matcher.add(0, cloud_at(stamp))
            matcher.add(1, cloud_at(stamp))

        first = threading.Thread(target=deliver, args=(1,))
        first.start()
        assert first_started.wait(timeout=5.0)

        second = threading.Thread(target=deliver, args=(2,))
        second.start()
        time.sleep(0.1)
        # the second match is found but not handed on while the first callback runs
        assert matcher.matched_count == 2
        assert emitted == []

        release_first.set()
        first.join(timeout=5.0)
        second.join(timeout=5.0)
        assert emitted == [1, 2]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestDataWatchdog:
    """Warnings when no synchronized data arrives."""

    def test_warns_after_interval_without_data(self):
        logger = MagicMock()
        watchdog = DataWatchdog(5.0, logger=logger, message='Subscribed to cloud1, cloud2', clock=FakeClock())

        assert not watchdog.check(now=4.9)
        assert watchdog.check(now=5.0)

        assert watchdog.warning_count == 1
        assert 'Subscribed to cloud1, cloud2' in logger.warning.call_args[0][0]

    def test_notify_resets_the_interval(self):
        clock = FakeClock()
        watchdog = DataWatchdog(5.0, logger=MagicMock(), clock=clock)

        clock.now = 6.0
        watchdog.notify()

        assert watchdog.received_data
        assert not watchdog.check(now=10.9)
        assert watchdog.check(now=11.0)
        assert watchdog.time_since_data(now=11.0) == pytest.approx(5.0)

    def test_periodic_checks_warn_soon_after_data_stops(self):
        clock = FakeClock()
        watchdog = DataWatchdog(5.0, logger=MagicMock(), clock=clock)
        assert watchdog.check_period < watchdog.interval

        clock.now = 1.3
        watchdog.notify()

        warning_times = []
        for step in range(1, 10):
            now = step * watchdog.check_period
            if watchdog.check(now=now):
                warning_times.append(now)

        # data stopped at 1.3, so the first warning is due at 6.3
        assert warning_times == [7.5]
        assert warning_times[0] - 6.3 <= watchdog.check_period

    def test_warnings_repeat_once_per_interval(self):
        watchdog = DataWatchdog(5.0, logger=MagicMock(), clock=FakeClock())

        warnings = [watchdog.check(now=now / 4) for now in range(20, 61)]

        assert sum(warnings) == 3
        assert watchdog.warning_count == 3

    def test_timer(self):
        logger = MagicMock()
        watchdog = DataWatchdog(0.02, logger=logger)

        watchdog.start()
        time.sleep(0.2)
        watchdog.stop()

        assert logger.warning.called
        warning_count = watchdog.warning_count
        time.sleep(0.1)
        assert watchdog.warning_count == warning_count
