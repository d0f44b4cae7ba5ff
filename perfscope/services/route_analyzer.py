"""
Route Performance Analysis Service.
Correlates screen visits with the metrics recorded while the screen was shown
and builds per-route performance profiles.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from perfscope.analyzer.constants import (
    FPS_EXCELLENT, FPS_FAIR, FPS_GOOD, LOAD_TIME_SCORE_CEILING_MS,
    MEMORY_EXCELLENT, MEMORY_FAIR, MEMORY_GOOD, MEMORY_SCORE_CEILING_MB,
    ROUTE_RISK, SCORE_WEIGHTS, SEVERITY_RANK, TARGET_FPS, RiskThresholds,
)
from perfscope.analyzer.models import (
    Anomaly, AppAverages, PerformanceDistribution, ProblematicRoute, RelativePerformance,
    RouteGlobalComparison, RoutePerformanceAnalysis, RoutePerformanceData,
    RouteSessionSample, RouteSummary,
)
from perfscope.analyzer.utils.routes import RouteNormalizer, default_normalizer, parse_screen_context
from perfscope.analyzer.utils.stats import clamp, mean
from perfscope.domain.entities.metric_sample import CPU_USAGE, FPS, MEMORY_USAGE, SCREEN_TIME, MetricSample
from perfscope.domain.entities.session import Session
from perfscope.services.cpu_inference import infer_cpu_usage
from perfscope.services.trend_engine import TrendEngine

logger = logging.getLogger(__name__)

LAST_SCREEN_WINDOW = timedelta(minutes=5)
TREND_MIN_SESSIONS = 4
TREND_DELTA = 5

FPS_TARGET_MIN = 50
MEMORY_WARNING = 400
MEMORY_HIGH = 500
MEMORY_CRITICAL = 600
CPU_DEVIATION_LIMIT = 35


def performance_score(fps: float, memory: float, cpu: float, load_time: Optional[float] = None) -> float:
    """
    Weighted 0-100 score, fps 0.3, memory 0.25, cpu 0.25, load time 0.2.

    Without a load time reading the remaining weights are rescaled to sum to 1.
    """
    w_fps, w_memory, w_cpu, w_load = SCORE_WEIGHTS
    fps_score = clamp(fps / TARGET_FPS * 100, 0, 100)
    memory_score = clamp(100 - memory / MEMORY_SCORE_CEILING_MB * 100, 0, 100)
    cpu_score = clamp(100 - cpu, 0, 100)

    if load_time is None:
        total = w_fps + w_memory + w_cpu
        score = (w_fps * fps_score + w_memory * memory_score + w_cpu * cpu_score) / total
    else:
        load_score = clamp(100 - load_time / LOAD_TIME_SCORE_CEILING_MS * 100, 0, 100)
        score = w_fps * fps_score + w_memory * memory_score + w_cpu * cpu_score + w_load * load_score
    return clamp(score, 0, 100)


def sample_score(sample: RouteSessionSample) -> float:
    return performance_score(
        sample.avg_fps, sample.avg_memory, sample.avg_cpu,
        sample.avg_load_time if sample.avg_load_time > 0 else None,
    )


def classify_risk(avg_fps: float, avg_memory: float, session_count: int, table: RiskThresholds = ROUTE_RISK) -> str:
    return table.classify(avg_fps, avg_memory, session_count)


def classify_trend(scores: Sequence[float]) -> str:
    """Chronological scores, second half average against the first"""
    if len(scores) < TREND_MIN_SESSIONS:
        return 'stable'
    middle = len(scores) // 2
    delta = mean(scores[middle:]) - mean(scores[:middle])
    if delta > TREND_DELTA:
        return 'improving'
    if delta < -TREND_DELTA:
        return 'degrading'
    return 'stable'


def fps_distribution(values: Sequence[float]) -> PerformanceDistribution:
    distribution = PerformanceDistribution()
    for value in values:
        if value >= FPS_EXCELLENT:
            distribution.excellent += 1
        elif value >= FPS_GOOD:
            distribution.good += 1
        elif value >= FPS_FAIR:
            distribution.fair += 1
        else:
            distribution.poor += 1
    return distribution


def memory_distribution(values: Sequence[float]) -> PerformanceDistribution:
    distribution = PerformanceDistribution()
    for value in values:
        if value <= MEMORY_EXCELLENT:
            distribution.excellent += 1
        elif value <= MEMORY_GOOD:
            distribution.good += 1
        elif value <= MEMORY_FAIR:
            distribution.fair += 1
        else:
            distribution.poor += 1
    return distribution


def _percent_of(value: float, average: float) -> float:
    return (value - average) / average * 100 if average > 0 else 0.0


class RoutePerformanceAnalyzer:
    """
    Builds RoutePerformanceAnalysis from sessions and their samples.
    """

    def __init__(
        self,
        normalizer: RouteNormalizer = default_normalizer,
        risk_table: RiskThresholds = ROUTE_RISK,
        trend_engine: Optional[TrendEngine] = None,
    ):
        self.normalizer = normalizer
        self.risk_table = risk_table
        self.trend_engine = trend_engine or TrendEngine()

    def correlate_route_sessions(
        self, sessions: List[Session], samples: List[MetricSample]
    ) -> List[RouteSessionSample]:
        """
        Each screen_time sample opens a window lasting until the next screen starts
        (5 minutes for the last one). fps, memory, cpu and load samples inside the
        window are averaged into one RouteSessionSample.
        """
        by_session: Dict[str, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            by_session[sample.session_id].append(sample)

        visits = []
        for session in sessions:
            session_samples = sorted(by_session.get(session.id, []), key=lambda s: s.timestamp)
            visits.extend(self._session_visits(session, session_samples))
        return visits

    def _session_visits(self, session: Session, samples: List[MetricSample]) -> List[RouteSessionSample]:
        screens = []
        for sample in samples:
            if sample.metric_type != SCREEN_TIME:
                continue
            screen = parse_screen_context(sample.context)
            if screen is None:
                continue
            screens.append((screen.screen_start_time or sample.timestamp, screen, sample))
        screens.sort(key=lambda item: item[0])

        readings = [s for s in samples if s.metric_type in (FPS, MEMORY_USAGE, CPU_USAGE) or s.is_load_time]
        visits = []
        for index, (window_start, screen, sample) in enumerate(screens):
            if index + 1 < len(screens):
                window_end = screens[index + 1][0]
            else:
                window_end = window_start + LAST_SCREEN_WINDOW
            inside = [r for r in readings if window_start <= r.timestamp < window_end]

            fps_values = [r.value for r in inside if r.metric_type == FPS]
            memory_values = [r.value for r in inside if r.metric_type == MEMORY_USAGE]
            cpu_values = [r.value for r in inside if r.metric_type == CPU_USAGE]
            load_values = [r.value for r in inside if r.is_load_time]

            avg_fps = mean(fps_values)
            avg_memory = mean(memory_values)
            avg_cpu = mean(cpu_values)
            avg_load = mean(load_values)
            cpu_inferred = False
            if not cpu_values and (fps_values or memory_values):
                avg_cpu = infer_cpu_usage(
                    avg_fps or 30,
                    avg_memory or 200,
                    avg_load if load_values else None,
                    session.device_type,
                )
                cpu_inferred = True

            visits.append(RouteSessionSample(
                session_id=session.id,
                device_id=session.device_key,
                device_type=session.device_type,
                route_pattern=self.normalizer.pattern_for(screen),
                route_name=self.normalizer.display_name(screen),
                timestamp=sample.timestamp,
                screen_duration=(window_end - window_start).total_seconds() * 1000,
                avg_fps=avg_fps,
                avg_memory=avg_memory,
                avg_cpu=avg_cpu,
                avg_load_time=avg_load,
                cpu_inferred=cpu_inferred,
            ))
        return visits

    def build_route(self, pattern: str, visits: List[RouteSessionSample]) -> RoutePerformanceData:
        ordered = sorted(visits, key=lambda v: v.timestamp)
        avg_fps = mean([v.avg_fps for v in ordered])
        avg_memory = mean([v.avg_memory for v in ordered])
        avg_cpu = mean([v.avg_cpu for v in ordered])
        load_values = [v.avg_load_time for v in ordered if v.avg_load_time > 0]
        avg_load = mean(load_values)

        return RoutePerformanceData(
            route_pattern=pattern,
            route_name=ordered[0].route_name,
            total_sessions=len(ordered),
            unique_devices=len({v.device_id for v in ordered}),
            avg_fps=round(avg_fps, 2),
            avg_memory=round(avg_memory),
            avg_cpu=round(avg_cpu, 2),
            avg_load_time=round(avg_load, 2),
            avg_screen_duration=round(mean([v.screen_duration for v in ordered])),
            fps_distribution=fps_distribution([v.avg_fps for v in ordered]),
            memory_distribution=memory_distribution([v.avg_memory for v in ordered]),
            performance_score=round(performance_score(avg_fps, avg_memory, avg_cpu, avg_load if load_values else None), 2),
            risk_level=classify_risk(avg_fps, avg_memory, len(ordered), self.risk_table),
            performance_trend=classify_trend([sample_score(v) for v in ordered]),
            relative_performance=RelativePerformance(),
            sessions=ordered,
        )

    def analyze(self, sessions: List[Session], samples: List[MetricSample], top_n: int = 3) -> RoutePerformanceAnalysis:
        """
        Group visits by route pattern, score each route and summarize.

        Args:
            sessions: Sessions in the analysis window
            samples: Their metric samples
            top_n: Size of best/worst and triage lists

        Returns:
            Routes sorted by performance score, best first. Empty input gives an empty analysis.
        """
        visits = self.correlate_route_sessions(sessions, samples)
        if not visits:
            return RoutePerformanceAnalysis()

        grouped: Dict[str, List[RouteSessionSample]] = defaultdict(list)
        for visit in visits:
            grouped[visit.route_pattern].append(visit)

        averages = AppAverages(
            avg_fps=mean([v.avg_fps for v in visits]),
            avg_memory=mean([v.avg_memory for v in visits]),
            avg_cpu=mean([v.avg_cpu for v in visits]),
            avg_load_time=mean([v.avg_load_time for v in visits if v.avg_load_time > 0]),
        )

        routes = []
        for pattern, route_visits in grouped.items():
            route = self.build_route(pattern, route_visits)
            route.relative_performance = RelativePerformance(
                fps=round(_percent_of(route.avg_fps, averages.avg_fps), 2),
                memory=round(_percent_of(route.avg_memory, averages.avg_memory), 2),
                cpu=round(_percent_of(route.avg_cpu, averages.avg_cpu), 2),
            )
            routes.append(route)
        routes.sort(key=lambda r: (-r.performance_score, r.route_pattern))

        high_memory = sorted(
            (r for r in routes if r.avg_memory > averages.avg_memory * 1.5), key=lambda r: -r.avg_memory
        )
        low_fps = sorted((r for r in routes if r.avg_fps < averages.avg_fps * 0.7), key=lambda r: r.avg_fps)
        summary = RouteSummary(
            total_routes=len(routes),
            total_sessions=len(visits),
            best_performing_routes=[r.route_pattern for r in routes[:top_n]],
            worst_performing_routes=[r.route_pattern for r in reversed(routes[-top_n:])],
            routes_with_high_memory_usage=[r.route_pattern for r in high_memory[:top_n]],
            routes_with_low_fps=[r.route_pattern for r in low_fps[:top_n]],
        )

        logger.info(f"Analyzed {len(routes)} routes from {len(visits)} screen visits")
        return RoutePerformanceAnalysis(
            routes=routes,
            summary=summary,
            app_averages=AppAverages(
                avg_fps=round(averages.avg_fps, 2),
                avg_memory=round(averages.avg_memory),
                avg_cpu=round(averages.avg_cpu, 2),
                avg_load_time=round(averages.avg_load_time, 2),
            ),
        )

    @staticmethod
    def compare_with_global(route: RoutePerformanceData, app_averages: AppAverages) -> RouteGlobalComparison:
        fps_dev = _percent_of(route.avg_fps, app_averages.avg_fps)
        memory_dev = _percent_of(route.avg_memory, app_averages.avg_memory)
        cpu_dev = _percent_of(route.avg_cpu, app_averages.avg_cpu)
        anomaly_score = min(1.0, (abs(fps_dev) + abs(memory_dev) + abs(cpu_dev)) / 300)
        return RouteGlobalComparison(
            route_pattern=route.route_pattern,
            fps_deviation=round(fps_dev, 2),
            memory_deviation=round(memory_dev, 2),
            cpu_deviation=round(cpu_dev, 2),
            anomaly_score=round(anomaly_score, 3),
            is_outlier=anomaly_score > 0.7 or route.performance_score < 50,
        )

    def identify_problematic_routes(self, analysis: RoutePerformanceAnalysis) -> List[ProblematicRoute]:
        """Routes below the fps target, above the memory warning level or far off the app cpu average"""
        problems = []
        for route in analysis.routes:
            issues = []
            severities = []
            if route.avg_fps < FPS_TARGET_MIN:
                issues.append(f'FPS {route.avg_fps:.1f} below target {FPS_TARGET_MIN}')
                severities.append('critical' if route.avg_fps < 20 else 'high' if route.avg_fps < 30 else 'medium')
            if route.avg_memory > MEMORY_WARNING:
                issues.append(f'Memory {route.avg_memory:.0f}MB above {MEMORY_WARNING}MB')
                severities.append(
                    'critical' if route.avg_memory > MEMORY_CRITICAL
                    else 'high' if route.avg_memory > MEMORY_HIGH else 'medium'
                )
            cpu_dev = abs(self.compare_with_global(route, analysis.app_averages).cpu_deviation)
            if cpu_dev > CPU_DEVIATION_LIMIT:
                issues.append(f'CPU {cpu_dev:.0f}% away from app average')
                severities.append('critical' if cpu_dev > 70 else 'high' if cpu_dev > 50 else 'medium')
            if issues:
                problems.append(ProblematicRoute(
                    route_pattern=route.route_pattern,
                    issues=issues,
                    severity=max(severities, key=SEVERITY_RANK.get),
                ))
        return sorted(problems, key=lambda p: -SEVERITY_RANK[p.severity])

    def detect_route_anomalies(self, analysis: RoutePerformanceAnalysis, threshold: float = 2.5) -> List[Anomaly]:
        """Routes whose score is a z-score outlier among all routes"""
        return self.trend_engine.detect_anomalies(
            [r.performance_score for r in analysis.routes],
            'performance_score',
            route_patterns=[r.route_pattern for r in analysis.routes],
            threshold=threshold,
        )
