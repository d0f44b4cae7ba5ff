import pytest
from datetime import datetime, timedelta, timezone

from perfscope.domain.entities.metric_sample import (
    CPU_USAGE, FPS, MEMORY_USAGE, NAVIGATION_TIME, SCREEN_LOAD, SCREEN_TIME, MetricSample,
)
from perfscope.domain.entities.session import Session
from perfscope.services.metric_aggregator import (
    MetricAggregator, average_by_type, bucket_timestamp, platform_health_score,
)


T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def sample(session_id: str, seconds: float, metric_type: str, value: float, context=None) -> MetricSample:
    return MetricSample(
        session_id=session_id,
        timestamp=T0 + timedelta(seconds=seconds),
        metric_type=metric_type,
        value=value,
        context=context or {},
    )


def create_session(session_id: str, user: str = 'user1', device_type: str = 'iPhone 14', **kwargs) -> Session:
    return Session(
        id=session_id,
        anonymous_user_id=user,
        device_type=device_type,
        session_start=kwargs.pop('session_start', T0),
        **kwargs,
    )


@pytest.fixture
def aggregator():
    return MetricAggregator()


class TestBucketing:
    def test_rounds_to_nearest_interval(self):
        assert bucket_timestamp(T0 + timedelta(milliseconds=2499), 5000) == T0
        assert bucket_timestamp(T0 + timedelta(milliseconds=2500), 5000) == T0 + timedelta(seconds=5)
        assert bucket_timestamp(T0 + timedelta(seconds=7), 5000) == T0 + timedelta(seconds=5)

    def test_result_is_utc(self):
        assert bucket_timestamp(T0, 1000).tzinfo is not None

    def test_average_by_type_folds_load_times(self):
        averages = average_by_type([
            sample('s1', 0, NAVIGATION_TIME, 400),
            sample('s1', 1, SCREEN_LOAD, 800),
            sample('s1', 2, FPS, 60),
        ])
        assert averages['load_time'] == 600
        assert averages[FPS] == 60
        assert averages[MEMORY_USAGE] == 0


class TestSessionAggregation:
    def test_cpu_inferred_without_cpu_samples(self, aggregator):
        averages = aggregator.session_averages(
            [sample('s1', 0, FPS, 30), sample('s1', 1, MEMORY_USAGE, 450)], 'Android'
        )
        assert averages['cpu_inferred'] is True
        assert averages[CPU_USAGE] == pytest.approx(49.5)

    def test_measured_cpu_wins(self, aggregator):
        averages = aggregator.session_averages([sample('s1', 0, FPS, 30), sample('s1', 1, CPU_USAGE, 22)])
        assert averages['cpu_inferred'] is False
        assert averages[CPU_USAGE] == 22

    def test_aggregate_sessions(self, aggregator):
        sessions = [create_session('s1'), create_session('s2', user='user2')]
        samples = [
            sample('s1', 0, FPS, 15),
            sample('s1', 1, MEMORY_USAGE, 300),
            sample('s1', 2, CPU_USAGE, 40),
        ]
        aggregates = aggregator.aggregate_sessions(sessions, samples)

        first, empty = aggregates
        assert first.sample_count == 3
        assert first.avg_fps == 15
        assert first.risk_level == 'high'
        assert empty.sample_count == 0
        assert empty.risk_level == 'low'
        assert empty.cpu_inferred is False

    def test_count_transitions(self, aggregator):
        samples = [
            sample('s1', 0, SCREEN_TIME, 1000, {'screen_name': 'Home'}),
            sample('s1', 1, FPS, 60),
            sample('s1', 2, SCREEN_TIME, 1000, {'screen_name': 'Home'}),
            sample('s1', 3, SCREEN_TIME, 1000, {'routeName': 'Game', 'routePath': '/game/1', 'segments': ['game', '1']}),
            sample('s1', 4, SCREEN_TIME, 1000, {'screen_name': 'Home'}),
        ]
        assert aggregator.count_transitions(samples) == 2


class TestTimeline:
    def test_mixed_types_merge_into_one_point(self, aggregator):
        points = aggregator.build_timeline([
            sample('s1', 0, FPS, 58),
            sample('s1', 1, MEMORY_USAGE, 210),
            sample('s1', 10, FPS, 40),
        ])

        assert len(points) == 2
        assert points[0].timestamp == T0
        assert points[0].fps == 58
        assert points[0].memory_usage == 210
        assert points[0].session_id == 's1'
        assert points[1].timestamp == T0 + timedelta(seconds=10)

    def test_chronological(self, aggregator):
        points = aggregator.build_timeline([sample('s1', 30, FPS, 50), sample('s2', 0, FPS, 60)], interval_ms=1000)
        assert [p.fps for p in points] == [60, 50]

    def test_shared_bucket_has_no_session(self, aggregator):
        points = aggregator.build_timeline([sample('s1', 0, FPS, 50), sample('s2', 0, FPS, 60)])
        assert points[0].session_id is None
        assert points[0].fps == 55


class TestSummary:
    def test_empty(self, aggregator):
        summary = aggregator.summarize([], [])
        assert summary.total_sessions == 0
        assert summary.avg_fps == 0

    def test_summary(self, aggregator):
        sessions = [
            create_session('s1', session_end=T0 + timedelta(minutes=5)),
            create_session('s2', user='user2', device_type='Android'),
            create_session('s3', user='user2', device_type='Android'),
        ]
        samples = [sample('s1', 0, FPS, 62), sample('s2', 0, FPS, 25), sample('s3', 0, MEMORY_USAGE, 300)]
        summary = aggregator.summarize(sessions, samples)

        assert summary.total_sessions == 3
        assert summary.active_sessions == 2
        assert summary.device_count == 2
        assert summary.avg_fps == 43.5
        assert summary.platform_breakdown[0].label == 'Android'
        assert summary.platform_breakdown[0].count == 2
        buckets = {b.label: b.count for b in summary.fps_distribution}
        assert buckets == {'<20': 0, '20-30': 1, '30-45': 0, '45-60': 0, '60+': 1}

    def test_inferred_cpu_is_flagged(self, aggregator):
        sessions = [create_session('s1')]
        inferred = aggregator.summarize(sessions, [sample('s1', i, FPS, 10) for i in range(5)])
        measured = aggregator.summarize(sessions, [sample('s1', 0, FPS, 10), sample('s1', 1, CPU_USAGE, 35)])

        assert inferred.cpu_inferred is True
        assert inferred.avg_cpu > 0
        assert measured.cpu_inferred is False
        assert measured.avg_cpu == 35

    def test_device_count_matches_device_profiles(self, aggregator):
        sessions = [
            create_session('s1', device_id='phone-a'),
            create_session('s2', device_id='phone-b'),
            create_session('s3', user='user2'),
        ]
        samples = [sample('s1', 0, FPS, 60)]

        summary = aggregator.summarize(sessions, samples)

        assert summary.device_count == 3
        assert summary.device_count == len(aggregator.device_profiles(sessions, samples))

    def test_idempotent(self, aggregator):
        sessions = [create_session('s1')]
        samples = [sample('s1', 0, FPS, 50), sample('s1', 1, MEMORY_USAGE, 300)]
        assert aggregator.summarize(sessions, samples) == aggregator.summarize(sessions, samples)
        assert aggregator.build_timeline(samples) == aggregator.build_timeline(samples)


class TestDevicesAndPlatforms:
    def test_device_profiles(self, aggregator):
        sessions = [
            create_session('s1', user='user1', app_version='1.0.0'),
            create_session('s2', user='user1', app_version='1.1.0', session_start=T0 + timedelta(hours=1)),
            create_session('s3', user='user2', device_type='Android'),
        ]
        samples = [
            sample('s1', 0, FPS, 58),
            sample('s1', 1, MEMORY_USAGE, 150),
            sample('s2', 3600, FPS, 56),
            sample('s3', 0, FPS, 50),
        ]
        profiles = aggregator.device_profiles(sessions, samples)

        # a device seen once is high risk, riskiest first
        assert [p.device_id for p in profiles] == ['user2', 'user1']
        assert profiles[0].risk_level == 'high'
        returning = profiles[1]
        assert returning.total_sessions == 2
        assert returning.risk_level == 'medium'
        assert returning.app_version == '1.1.0'
        assert returning.avg_fps == 57.0
        assert returning.cpu_inferred is True
        assert returning.last_seen == T0 + timedelta(hours=1)

    def test_device_id_preferred_over_user(self, aggregator):
        sessions = [create_session('s1', user='user1', device_id='dev-1'), create_session('s2', user='user2', device_id='dev-1')]
        profiles = aggregator.device_profiles(sessions, [])
        assert len(profiles) == 1
        assert profiles[0].device_id == 'dev-1'

    def test_platform_health_score(self):
        assert platform_health_score(55, 150, 400) == 90
        assert platform_health_score(25, 500, 3000) == 43
        assert platform_health_score(10, 900, 2500) == 30

    def test_platform_health(self, aggregator):
        sessions = [
            create_session('s1', user='user1'),
            create_session('s2', user='user2'),
            create_session('s3', user='user3', device_type='Android'),
        ]
        samples = [
            sample('s1', 0, FPS, 58),
            sample('s2', 0, MEMORY_USAGE, 150),
            sample('s3', 0, FPS, 22),
            sample('s3', 1, MEMORY_USAGE, 700),
            sample('s3', 2, SCREEN_LOAD, 2500),
        ]
        platforms = aggregator.platform_health(sessions, samples)

        assert [p.platform for p in platforms] == ['iPhone 14', 'Android']
        ios, android = platforms
        assert ios.total_devices == 2
        assert ios.risk_level == 'low'
        assert android.health_score == round((50 + 30 + 30) / 3)
        assert android.risk_level == 'high'


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
