import pytest
from datetime import datetime, timedelta, timezone

from perfscope.analyzer.constants import ROUTE_RISK
from perfscope.analyzer.models import AppAverages
from perfscope.domain.entities.metric_sample import CPU_USAGE, FPS, LOAD_TIME, MEMORY_USAGE, SCREEN_TIME, MetricSample
from perfscope.domain.entities.session import Session
from perfscope.services.route_analyzer import (
    RoutePerformanceAnalyzer, classify_risk, classify_trend, fps_distribution,
    memory_distribution, performance_score,
)


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def create_session(session_id: str, user: str, start: datetime, device_type: str = 'iPhone 14') -> Session:
    return Session(id=session_id, anonymous_user_id=user, device_type=device_type, session_start=start)


def screen(session_id: str, at: datetime, path: str) -> MetricSample:
    return MetricSample(
        session_id=session_id,
        timestamp=at,
        metric_type=SCREEN_TIME,
        value=10_000,
        context={'routeName': path, 'routePath': path, 'segments': [s for s in path.split('/') if s]},
    )


def reading(session_id: str, at: datetime, metric_type: str, value: float) -> MetricSample:
    return MetricSample(session_id=session_id, timestamp=at, metric_type=metric_type, value=value)


def create_visits(count: int, path: str = '/home', fps: float = 58, memory: float = 180, cpu: float = 20):
    """`count` sessions of one user each showing `path` once, a day apart"""
    sessions, samples = [], []
    for i in range(count):
        start = T0 + timedelta(days=i)
        session_id = f'{path}-{i}'
        sessions.append(create_session(session_id, f'user{i}', start))
        samples.append(screen(session_id, start, path))
        samples.append(reading(session_id, start + timedelta(seconds=1), FPS, fps))
        samples.append(reading(session_id, start + timedelta(seconds=1), MEMORY_USAGE, memory))
        samples.append(reading(session_id, start + timedelta(seconds=2), CPU_USAGE, cpu))
    return sessions, samples


@pytest.fixture
def analyzer():
    return RoutePerformanceAnalyzer()


class TestScoring:
    def test_performance_score_bounds(self):
        assert performance_score(60, 0, 0, 0) == 100
        assert performance_score(0, 2000, 100, 10_000) == 0
        for fps, memory, cpu, load in ((30, 400, 50, 1500), (90, -5, 120, None), (12, 900, 80, 4000)):
            assert 0 <= performance_score(fps, memory, cpu, load) <= 100

    def test_missing_load_time_renormalises(self):
        # fps 100, memory 50, cpu 50 weighted .3/.25/.25 over .8
        assert performance_score(60, 500, 50) == pytest.approx((30 + 12.5 + 12.5) / 0.8)

    def test_classify_risk_is_deterministic(self):
        assert classify_risk(15, 200, 10) == 'high'
        assert classify_risk(50, 200, 1) == 'high'
        assert classify_risk(40, 200, 10) == 'medium'
        assert classify_risk(55, 450, 10) == 'medium'
        assert classify_risk(55, 200, 10) == 'low'
        assert classify_risk(55, 200, 10, ROUTE_RISK) == classify_risk(55, 200, 10)

    def test_classify_trend(self):
        assert classify_trend([50, 60, 70]) == 'stable'
        assert classify_trend([40, 40, 60, 60]) == 'improving'
        assert classify_trend([80, 80, 60, 60]) == 'degrading'
        assert classify_trend([50, 52, 51, 53]) == 'stable'

    def test_distributions(self):
        fps = fps_distribution([55, 35, 25, 10])
        assert (fps.excellent, fps.good, fps.fair, fps.poor) == (1, 1, 1, 1)
        memory = memory_distribution([150, 350, 550, 800])
        assert (memory.excellent, memory.good, memory.fair, memory.poor) == (1, 1, 1, 1)


class TestCorrelateRouteSessions:
    def test_window_ends_at_next_screen(self, analyzer):
        session = create_session('s1', 'user1', T0)
        samples = [
            screen('s1', T0, '/home'),
            reading('s1', T0 + timedelta(seconds=5), FPS, 60),
            screen('s1', T0 + timedelta(seconds=10), '/game/77'),
            reading('s1', T0 + timedelta(seconds=15), FPS, 30),
            reading('s1', T0 + timedelta(minutes=6), FPS, 1),
        ]
        visits = analyzer.correlate_route_sessions([session], samples)

        assert [v.route_pattern for v in visits] == ['/home', '/game/:id']
        home, game = visits
        assert home.avg_fps == 60
        assert home.screen_duration == 10_000
        # the last screen gets a five minute window
        assert game.avg_fps == 30
        assert game.screen_duration == 300_000
        assert home.cpu_inferred is True

    def test_screen_without_route_is_ignored(self, analyzer):
        session = create_session('s1', 'user1', T0)
        samples = [MetricSample(session_id='s1', timestamp=T0, metric_type=SCREEN_TIME, value=1000)]
        assert analyzer.correlate_route_sessions([session], samples) == []


class TestAnalyze:
    def test_empty(self, analyzer):
        analysis = analyzer.analyze([], [])
        assert analysis.routes == []
        assert analysis.summary.total_routes == 0

    def test_routes_sorted_by_score(self, analyzer):
        good_sessions, good_samples = create_visits(6, '/home', fps=58, memory=150, cpu=15)
        bad_sessions, bad_samples = create_visits(6, '/game/1', fps=18, memory=850, cpu=85)
        analysis = analyzer.analyze(good_sessions + bad_sessions, good_samples + bad_samples)

        assert [r.route_pattern for r in analysis.routes] == ['/home', '/game/:id']
        home, game = analysis.routes
        assert home.total_sessions == 6
        assert home.unique_devices == 6
        assert home.risk_level == 'low'
        assert game.risk_level == 'high'
        assert home.performance_score > game.performance_score
        assert 0 <= game.performance_score <= 100
        assert home.performance_trend == 'stable'
        assert home.relative_performance.fps > 0
        assert analysis.summary.best_performing_routes[0] == '/home'
        assert analysis.summary.worst_performing_routes[0] == '/game/:id'
        assert analysis.summary.routes_with_low_fps == ['/game/:id']
        assert analysis.app_averages.avg_fps == 38

    def test_load_time_averages_only_nonzero(self, analyzer):
        sessions, samples = create_visits(2, '/home')
        samples.append(reading(sessions[0].id, T0 + timedelta(seconds=3), LOAD_TIME, 800))
        analysis = analyzer.analyze(sessions, samples)
        assert analysis.routes[0].avg_load_time == 800

    def test_degrading_trend(self, analyzer):
        sessions, samples = [], []
        for i, fps in enumerate((60, 60, 20, 20)):
            start = T0 + timedelta(days=i)
            sessions.append(create_session(f'l{i}', f'user{i}', start))
            samples.append(screen(f'l{i}', start, '/list'))
            samples.append(reading(f'l{i}', start + timedelta(seconds=1), FPS, fps))
        analysis = analyzer.analyze(sessions, samples)
        assert analysis.routes[0].performance_trend == 'degrading'


class TestTriage:
    def test_problematic_routes(self, analyzer):
        good_sessions, good_samples = create_visits(5, '/home', fps=58, memory=150, cpu=20)
        bad_sessions, bad_samples = create_visits(5, '/game/1', fps=15, memory=650, cpu=20)
        analysis = analyzer.analyze(good_sessions + bad_sessions, good_samples + bad_samples)

        problems = analyzer.identify_problematic_routes(analysis)
        assert [p.route_pattern for p in problems] == ['/game/:id']
        assert problems[0].severity == 'critical'
        assert len(problems[0].issues) == 2

    def test_compare_with_global(self, analyzer):
        sessions, samples = create_visits(5, '/home')
        route = analyzer.analyze(sessions, samples).routes[0]
        comparison = analyzer.compare_with_global(route, AppAverages(avg_fps=58, avg_memory=180, avg_cpu=20))
        assert comparison.fps_deviation == 0
        assert comparison.anomaly_score == 0
        assert comparison.is_outlier is False

    def test_detect_route_anomalies_needs_five_routes(self, analyzer):
        sessions, samples = create_visits(3, '/home')
        analysis = analyzer.analyze(sessions, samples)
        assert analyzer.detect_route_anomalies(analysis) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
