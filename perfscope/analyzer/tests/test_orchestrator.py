"""
Tests for AnalysisOrchestrator
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from perfscope.analyzer.config import AnalyzerConfig
from perfscope.analyzer.errors import UpstreamError
from perfscope.analyzer.orchestrator import AnalysisOrchestrator
from perfscope.domain.entities.metric_sample import FPS, MEMORY_USAGE, SCREEN_TIME, MetricSample
from perfscope.domain.entities.session import Session
from perfscope.domain.repositories.data_source import IDataSource, MetricFilter, SessionFilter


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeDataSource(IDataSource):
    """In-memory data source honouring the filters, row limits and ordering of a real store"""

    def __init__(self, sessions, samples):
        self.sessions = sessions
        self.samples = samples
        self.session_filters = []
        self.metric_filters = []
        self.requested_session_ids = []

    async def list_sessions(self, session_filter: SessionFilter) -> list[Session]:
        self.session_filters.append(session_filter)
        matching = [
            s for s in self.sessions
            if (session_filter.device_type is None or s.device_type == session_filter.device_type)
            and (session_filter.time_start is None or s.session_start >= session_filter.time_start)
            and (session_filter.time_end is None or s.session_start <= session_filter.time_end)
        ]
        matching.sort(key=lambda s: s.session_start, reverse=True)
        return matching[:session_filter.limit]

    async def list_metrics(self, session_ids, metric_filter: MetricFilter) -> list[MetricSample]:
        self.metric_filters.append(metric_filter)
        self.requested_session_ids.append(session_ids)
        matching = [
            m for m in self.samples
            if (session_ids is None or m.session_id in session_ids)
            and (metric_filter.time_start is None or m.timestamp >= metric_filter.time_start)
            and (metric_filter.time_end is None or m.timestamp <= metric_filter.time_end)
        ]
        matching.sort(key=lambda m: m.timestamp, reverse=not metric_filter.ascending)
        return matching[:metric_filter.limit]


def screen(session_id: str, at: datetime, path: str, duration_ms: float = 20_000) -> MetricSample:
    """Helper to create a screen_time sample"""
    return MetricSample(
        session_id=session_id,
        timestamp=at,
        metric_type=SCREEN_TIME,
        value=duration_ms,
        context={"routeName": path.strip('/').title(), "routePath": path, "segments": path.strip('/').split('/')},
    )


def reading(session_id: str, at: datetime, metric_type: str, value: float) -> MetricSample:
    return MetricSample(session_id=session_id, timestamp=at, metric_type=metric_type, value=value)


def create_dataset():
    """Two users, each visiting /home then /game/<id>"""
    sessions = []
    samples = []
    for index, (user, device_type) in enumerate((("user1", "iPhone 14"), ("user2", "Android"))):
        session_id = f"s{index + 1}"
        start = NOW - timedelta(hours=2 - index)
        sessions.append(Session(
            id=session_id,
            anonymous_user_id=user,
            device_type=device_type,
            session_start=start,
            session_end=start + timedelta(minutes=2),
            app_version="1.0.0",
        ))
        samples.append(screen(session_id, start, "/home"))
        samples.append(screen(session_id, start + timedelta(seconds=30), f"/game/{40 + index}"))
        for offset, fps, memory in ((5, 58, 180), (35, 40, 320), (50, 35, 360)):
            at = start + timedelta(seconds=offset)
            samples.append(reading(session_id, at, FPS, fps))
            samples.append(reading(session_id, at, MEMORY_USAGE, memory))
    return sessions, samples


@pytest.fixture
def data_source():
    sessions, samples = create_dataset()
    return FakeDataSource(sessions, samples)


@pytest.fixture
def orchestrator(data_source):
    return AnalysisOrchestrator(data_source, config=AnalyzerConfig(analysis_window_days=7))


class TestAnalysisOrchestrator:
    """Tests for AnalysisOrchestrator"""

    def test_init(self, orchestrator):
        """Test orchestrator wiring"""
        assert orchestrator.aggregator is not None
        assert orchestrator.route_analyzer is not None
        assert orchestrator.early_warning.confidence_threshold == 0.6

    def test_window(self, orchestrator):
        start, end = orchestrator.window(NOW)
        assert end == NOW
        assert start == NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_fetch_sorts_and_bounds(self, orchestrator, data_source):
        """Test samples come back chronologically and filters carry the limits"""
        sessions, samples = await orchestrator.fetch(*orchestrator.window(NOW))

        assert len(sessions) == 2
        assert [s.timestamp for s in samples] == sorted(s.timestamp for s in samples)
        assert data_source.session_filters[0].limit == orchestrator.config.session_limit
        assert data_source.metric_filters[0].limit == orchestrator.config.metric_limit
        assert data_source.metric_filters[0].time_start == NOW - timedelta(days=7)
        assert data_source.metric_filters[0].ascending is False
        assert set(data_source.requested_session_ids[0]) == {"s1", "s2"}

    @pytest.mark.asyncio
    async def test_fetch_keeps_newest_samples_under_metric_limit(self):
        """Test the most recent session keeps its samples when the window holds more rows than the limit"""
        old_start = NOW - timedelta(days=20)
        new_start = NOW - timedelta(hours=1)
        sessions = [
            Session(id="old", anonymous_user_id="user1", device_type="Android", session_start=old_start),
            Session(id="new", anonymous_user_id="user2", device_type="Android", session_start=new_start),
        ]
        samples = [reading("old", old_start + timedelta(seconds=i), FPS, 30) for i in range(10)]
        samples.append(screen("new", new_start, "/home"))
        samples.extend(reading("new", new_start + timedelta(seconds=i + 1), FPS, 60) for i in range(5))
        orchestrator = AnalysisOrchestrator(
            FakeDataSource(sessions, samples), config=AnalyzerConfig(metric_limit=10)
        )

        _, fetched = await orchestrator.fetch(*orchestrator.window(NOW))
        analysis = await orchestrator.route_analysis(now=NOW)

        assert len(fetched) == 10
        assert sum(1 for s in fetched if s.session_id == "new") == 6
        assert fetched[-1].session_id == "new"
        assert [r.route_pattern for r in analysis.routes] == ["/home"]

    @pytest.mark.asyncio
    async def test_fetch_device_filter_drops_foreign_samples(self, orchestrator):
        """Test a device filter also restricts samples to the matching sessions"""
        sessions, samples = await orchestrator.fetch(*orchestrator.window(NOW), device_type="Android")

        assert [s.id for s in sessions] == ["s2"]
        assert samples
        assert {s.session_id for s in samples} == {"s2"}

    @pytest.mark.asyncio
    async def test_build_report(self, orchestrator):
        """Test a full report over a small dataset"""
        report = await orchestrator.build_report(now=NOW)

        assert report.errors == []
        assert report.generated_at == NOW
        assert report.time_range["end"] == NOW
        assert report.summary.total_sessions == 2
        assert report.summary.total_metrics == 16
        patterns = {r.route_pattern for r in report.route_analysis.routes}
        assert patterns == {"/home", "/game/:id"}
        assert report.route_correlations is not None
        assert {p.route_pattern for p in report.route_predictions} == patterns
        assert report.journey_analysis.journeys == []
        assert report.regressions == []
        assert report.early_warnings is not None
        assert report.metadata["sessions_processed"] == 2
        assert report.metadata["metrics_processed"] == 16
        assert report.metadata["routes_analyzed"] == 2
        assert report.metadata["failed_sections"] == 0

    @pytest.mark.asyncio
    async def test_build_report_partial_failure(self, orchestrator):
        """Test a failing section is recorded and the rest of the report survives"""
        with patch.object(orchestrator.correlation_analyzer, 'analyze_all', side_effect=RuntimeError("boom")):
            report = await orchestrator.build_report(now=NOW)

        assert report.route_correlations is None
        assert [e.section for e in report.errors] == ["route_correlations"]
        assert report.errors[0].error == "boom"
        assert report.summary is not None
        assert report.route_analysis is not None
        assert report.metadata["failed_sections"] == 1

    @pytest.mark.asyncio
    async def test_build_report_upstream_error(self):
        """Test a data source failure is not turned into a partial report"""
        source = AsyncMock(spec=IDataSource)
        source.list_sessions.side_effect = UpstreamError("store down", status=503)
        source.list_metrics.return_value = []
        orchestrator = AnalysisOrchestrator(source, config=AnalyzerConfig())

        with pytest.raises(UpstreamError):
            await orchestrator.build_report(now=NOW)

    @pytest.mark.asyncio
    async def test_build_report_empty(self):
        """Test an empty window gives an empty report"""
        orchestrator = AnalysisOrchestrator(FakeDataSource([], []), config=AnalyzerConfig())
        report = await orchestrator.build_report(now=NOW)

        assert report.errors == []
        assert report.summary.total_sessions == 0
        assert report.route_analysis.routes == []
        assert report.route_correlations == []
        assert report.early_warnings == []

    @pytest.mark.asyncio
    async def test_trends_limit(self):
        """Test trends read newest samples first and keep the last `limit` buckets"""
        samples = [reading("s1", NOW - timedelta(seconds=i), FPS, 60 - i % 5) for i in range(60)]
        source = AsyncMock(spec=IDataSource)
        source.list_metrics.return_value = samples
        orchestrator = AnalysisOrchestrator(source, config=AnalyzerConfig())

        points = await orchestrator.trends(limit=5)

        assert len(points) == 5
        assert points[-1].timestamp == NOW
        metric_filter = source.list_metrics.call_args.args[1]
        assert metric_filter.ascending is False
        assert metric_filter.limit == 50

    @pytest.mark.asyncio
    async def test_devices_and_platforms(self, orchestrator):
        devices = await orchestrator.devices(now=NOW)
        platforms = await orchestrator.platforms(now=NOW)

        assert {d.device_id for d in devices} == {"user1", "user2"}
        assert {p.platform for p in platforms} == {"iPhone 14", "Android"}

    @pytest.mark.asyncio
    async def test_journeys(self, orchestrator):
        report = await orchestrator.journeys(now=NOW, limit=1)

        assert len(report.journeys) == 1
        # most recent journey first
        assert report.journeys[0].anonymous_user_id == "user2"
        assert report.journeys[0].route_sequence[0].route_pattern == "/home"

    @pytest.mark.asyncio
    async def test_health_check(self, orchestrator):
        """Test health check with and without a data source probe"""
        health = await orchestrator.health_check()
        assert health["services"]["data_source"]["status"] == "configured"
        assert health["overall_status"] == "healthy"

        source = AsyncMock(spec=IDataSource)
        source.health_check = AsyncMock(return_value=False)
        health = await AnalysisOrchestrator(source, config=AnalyzerConfig()).health_check()
        assert health["overall_status"] == "degraded"

    @pytest.mark.asyncio
    async def test_close(self):
        """Test the orchestrator closes a data source that owns a connection"""
        source = AsyncMock(spec=IDataSource)
        source.close = AsyncMock()
        async with AnalysisOrchestrator(source, config=AnalyzerConfig()):
            pass
        source.close.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
