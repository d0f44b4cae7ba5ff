"""
Analysis Orchestrator - fetches data once and runs every analysis over it
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import AnalyzerConfig, load_config
from .models import (
    AnalyticsReport, DeviceProfile, EarlyWarningAlert, JourneyAnalysisReport, PerformancePrediction, PlatformHealth,
    PerformanceSummary, RoutePerformanceAnalysis, RouteInsightsReport, SectionError, TrendPoint,
)
from .utils.routes import RouteNormalizer, default_normalizer
from ..domain.entities.metric_sample import CPU_USAGE, FPS, LOAD_TIME, MEMORY_USAGE, MetricSample
from ..domain.entities.session import Session
from ..domain.repositories.data_source import IDataSource, MetricFilter, SessionFilter
from ..services.correlation_analyzer import CorrelationAnalyzer
from ..services.early_warning import EarlyWarningEngine
from ..services.journey_analysis import build_journey_report
from ..services.journey_tracker import UserJourneyTracker
from ..services.metric_aggregator import LIVE_INTERVAL_MS, MetricAggregator
from ..services.prediction_engine import RoutePredictionEngine
from ..services.route_analyzer import RoutePerformanceAnalyzer, performance_score
from ..services.route_insights import RouteInsightsService
from ..services.trend_engine import PERFORMANCE_SCORE, TrendEngine, series_from_samples

logger = logging.getLogger(__name__)

HOURLY_INTERVAL_MS = 60 * 60 * 1000
REGRESSION_METRICS = (FPS, MEMORY_USAGE, CPU_USAGE, LOAD_TIME)
SEASONAL_METRICS = (FPS, MEMORY_USAGE, CPU_USAGE)
FORECAST_HORIZON = '24h'


class AnalysisOrchestrator:
    """
    Coordinates the analytics workflow:
    1. Fetches sessions and metrics from the data source
    2. Runs aggregation, route, journey, trend and early warning analyses
    3. Assembles the report, recording failed sections instead of failing the whole report
    """

    def __init__(
        self,
        data_source: IDataSource,
        config: Optional[AnalyzerConfig] = None,
        normalizer: RouteNormalizer = default_normalizer,
    ):
        """
        Initialize the orchestrator.

        Args:
            data_source: Where sessions and samples are read from
            config: Analyzer configuration, loaded from the environment when omitted
            normalizer: Route normalizer shared by every analysis
        """
        self.data_source = data_source
        self.config = config or load_config()
        self.aggregator = MetricAggregator(normalizer)
        self.route_analyzer = RoutePerformanceAnalyzer(normalizer)
        self.correlation_analyzer = CorrelationAnalyzer()
        self.prediction_engine = RoutePredictionEngine()
        self.insights = RouteInsightsService(self.correlation_analyzer, self.prediction_engine)
        self.journey_tracker = UserJourneyTracker(self.config, normalizer)
        self.trend_engine = TrendEngine()
        self.early_warning = EarlyWarningEngine(
            confidence_threshold=self.config.early_warning_confidence,
            trend_engine=self.trend_engine,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the data source if it owns a connection"""
        close = getattr(self.data_source, 'close', None)
        if close is not None:
            await close()

    def window(self, now: datetime) -> Tuple[datetime, datetime]:
        return now - timedelta(days=self.config.analysis_window_days), now

    async def fetch(
        self,
        time_start: datetime,
        time_end: datetime,
        device_type: Optional[str] = None,
        app_version: Optional[str] = None,
    ) -> Tuple[List[Session], List[MetricSample]]:
        """
        Sessions of the window and the samples of those sessions, bounded by the row limits.
        Both are read newest first so the most recent data survives the limits;
        samples are returned in chronological order.
        """
        sessions = await self.data_source.list_sessions(SessionFilter(
            time_start=time_start,
            time_end=time_end,
            device_type=device_type,
            app_version=app_version,
            limit=self.config.session_limit,
        ))
        session_ids = [s.id for s in sessions]
        samples = await self.data_source.list_metrics(session_ids, MetricFilter(
            time_start=time_start,
            time_end=time_end,
            ascending=False,
            limit=self.config.metric_limit,
        ))
        known = set(session_ids)
        samples = sorted((s for s in samples if s.session_id in known), key=lambda s: s.timestamp)
        logger.info(f"Fetched {len(sessions)} sessions and {len(samples)} samples")
        return sessions, samples

    async def summary(self, now: Optional[datetime] = None) -> PerformanceSummary:
        sessions, samples = await self.fetch(*self.window(now or datetime.now(timezone.utc)))
        return self.aggregator.summarize(sessions, samples)

    async def devices(self, now: Optional[datetime] = None) -> List[DeviceProfile]:
        sessions, samples = await self.fetch(*self.window(now or datetime.now(timezone.utc)))
        return self.aggregator.device_profiles(sessions, samples)

    async def platforms(self, now: Optional[datetime] = None) -> List[PlatformHealth]:
        sessions, samples = await self.fetch(*self.window(now or datetime.now(timezone.utc)))
        return self.aggregator.platform_health(sessions, samples)

    async def trends(self, limit: int = 50, interval_ms: int = LIVE_INTERVAL_MS) -> List[TrendPoint]:
        """Latest `limit` bucketed points, oldest first"""
        samples = await self.data_source.list_metrics(None, MetricFilter(ascending=False, limit=limit * 10))
        points = self.aggregator.build_timeline(samples, interval_ms)
        return points[-limit:] if limit > 0 else []

    async def route_analysis(self, now: Optional[datetime] = None) -> RoutePerformanceAnalysis:
        sessions, samples = await self.fetch(*self.window(now or datetime.now(timezone.utc)))
        return self.route_analyzer.analyze(sessions, samples)

    async def route_insights(
        self,
        include_correlations: bool = True,
        include_predictions: bool = True,
        include_flows: bool = True,
        include_patterns: bool = True,
        now: Optional[datetime] = None,
    ) -> RouteInsightsReport:
        now = now or datetime.now(timezone.utc)
        sessions, samples = await self.fetch(*self.window(now))
        analysis = self.route_analyzer.analyze(sessions, samples)
        return self.insights.generate(
            analysis,
            include_correlations=include_correlations,
            include_predictions=include_predictions,
            include_flows=include_flows,
            include_patterns=include_patterns,
            now=now,
        )

    async def journeys(
        self, window_hours: Optional[float] = None, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> JourneyAnalysisReport:
        now = now or datetime.now(timezone.utc)
        time_start, time_end = self.window(now)
        sessions, samples = await self.fetch(time_start, time_end)
        journeys = self.journey_tracker.reconstruct_journeys(sessions, samples, window_hours)
        return build_journey_report(
            self.journey_tracker, journeys, baseline_before=time_start + (time_end - time_start) / 2, limit=limit
        )

    async def early_warnings(self, now: Optional[datetime] = None) -> List[EarlyWarningAlert]:
        report = await self.build_report(now=now)
        return report.early_warnings or []

    def forecasts(self, samples: List[MetricSample], now: datetime) -> List[PerformancePrediction]:
        """24 hour forecasts of the hourly performance score and of fps"""
        hourly = self.aggregator.build_timeline(samples, HOURLY_INTERVAL_MS)
        scored = [p for p in hourly if p.fps > 0 or p.memory_usage > 0]
        predictions = []
        score = self.trend_engine.forecast(
            [p.timestamp for p in scored],
            [performance_score(p.fps, p.memory_usage, p.cpu_usage, p.load_time or None) for p in scored],
            PERFORMANCE_SCORE,
            FORECAST_HORIZON,
            now=now,
        )
        if score:
            predictions.append(score)
        timestamps, values = series_from_samples(samples, FPS)
        fps = self.trend_engine.forecast(timestamps, values, FPS, FORECAST_HORIZON, now=now)
        if fps:
            predictions.append(fps)
        return predictions

    def _run_section(self, report: AnalyticsReport, section: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            logger.exception(f"Section {section} failed")
            report.errors.append(SectionError(section=section, error=str(e)))
            return None

    async def build_report(
        self,
        now: Optional[datetime] = None,
        device_type: Optional[str] = None,
        app_version: Optional[str] = None,
    ) -> AnalyticsReport:
        """
        Full analytics report over the configured window.

        Args:
            now: End of the window, defaults to the current UTC time
            device_type: Optional device type filter
            app_version: Optional app version filter

        Returns:
            AnalyticsReport. A failing section is left as None and listed in `errors`.

        Raises:
            UpstreamError: If the data source fails
        """
        started = time.perf_counter()
        now = now or datetime.now(timezone.utc)
        time_start, time_end = self.window(now)
        sessions, samples = await self.fetch(time_start, time_end, device_type, app_version)

        report = AnalyticsReport(
            generated_at=now,
            time_range={'start': time_start, 'end': time_end},
        )
        run = self._run_section

        report.summary = run(report, 'summary', lambda: self.aggregator.summarize(sessions, samples))
        report.route_analysis = run(report, 'route_analysis', lambda: self.route_analyzer.analyze(sessions, samples))
        routes = report.route_analysis.routes if report.route_analysis else []
        averages = report.route_analysis.app_averages if report.route_analysis else None

        report.route_correlations = run(
            report, 'route_correlations', lambda: self.correlation_analyzer.analyze_all(routes)
        )
        if averages is not None:
            report.route_predictions = run(
                report, 'route_predictions', lambda: self.prediction_engine.predict_all(routes, averages)
            )

        def journeys():
            reconstructed = self.journey_tracker.reconstruct_journeys(sessions, samples)
            return build_journey_report(
                self.journey_tracker, reconstructed,
                baseline_before=time_start + (time_end - time_start) / 2,
                include_journeys=False,
            )

        report.journey_analysis = run(report, 'journey_analysis', journeys)

        report.regressions = run(report, 'regressions', lambda: [
            r for r in (self.trend_engine.detect_regression(samples, m, now) for m in REGRESSION_METRICS) if r
        ])
        report.seasonal_patterns = run(report, 'seasonal_patterns', lambda: [
            p for m in SEASONAL_METRICS for p in self.trend_engine.detect_seasonality(samples, m, now)
        ])

        def early_warnings():
            memory_history = [p.memory_usage for p in self.aggregator.build_timeline(samples) if p.memory_usage > 0]
            return self.early_warning.generate(
                self.forecasts(samples, now),
                report.route_predictions or [],
                report.seasonal_patterns or [],
                report.summary or PerformanceSummary(),
                memory_history,
                now,
            )

        report.early_warnings = run(report, 'early_warnings', early_warnings)

        report.metadata = {
            'sessions_processed': len(sessions),
            'metrics_processed': len(samples),
            'routes_analyzed': len(routes),
            'processing_time_ms': round((time.perf_counter() - started) * 1000, 2),
            'failed_sections': len(report.errors),
        }
        logger.info(
            f"Report built: {len(sessions)} sessions, {len(samples)} samples, "
            f"{len(report.errors)} failed sections"
        )
        return report

    async def health_check(self) -> Dict[str, Any]:
        health = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {},
        }
        check = getattr(self.data_source, 'health_check', None)
        if check is None:
            health["services"]["data_source"] = {"status": "configured"}
        else:
            healthy = await check()
            health["services"]["data_source"] = {"status": "healthy" if healthy else "unhealthy"}
        health["overall_status"] = (
            "healthy" if health["services"]["data_source"]["status"] in ("healthy", "configured") else "degraded"
        )
        return health
