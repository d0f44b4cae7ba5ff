"""
Cross-route correlation analysis.

Pairs the per-visit metric series of two routes index-wise and measures how
strongly they move together.
"""

import logging
from typing import List

from perfscope.analyzer.models import RouteCorrelation, RoutePerformanceData
from perfscope.analyzer.utils.stats import correlation_significance, pearson

logger = logging.getLogger(__name__)

MEMORY_LEAK_CORR = 0.5
CPU_SPIKE_CORR = 0.5
FPS_DEGRADATION_CORR = -0.3
LOW_FPS = 40
BOOST_CORR = 0.3
BOOST_FPS = 45
NEUTRAL_BELOW = 0.2


def correlation_type(
    source: RoutePerformanceData,
    target: RoutePerformanceData,
    fps_corr: float,
    memory_corr: float,
    cpu_corr: float,
) -> str:
    """First matching rule wins; no match is reported as unclassified"""
    if memory_corr > MEMORY_LEAK_CORR and source.avg_memory > target.avg_memory:
        return 'memory_leak'
    if cpu_corr > CPU_SPIKE_CORR and source.avg_cpu > target.avg_cpu:
        return 'cpu_spike'
    if fps_corr < FPS_DEGRADATION_CORR or (source.avg_fps < LOW_FPS and target.avg_fps < LOW_FPS):
        return 'fps_degradation'
    if fps_corr > BOOST_CORR and source.avg_fps > BOOST_FPS and target.avg_fps > BOOST_FPS:
        return 'performance_boost'
    return 'unclassified'


def performance_impact(source: RoutePerformanceData, target: RoutePerformanceData, correlation: float) -> str:
    if abs(correlation) < NEUTRAL_BELOW:
        return 'neutral'
    source_better = source.performance_score > target.performance_score
    if correlation > 0:
        return 'positive' if source_better else 'negative'
    return 'negative' if source_better else 'positive'


def confidence_level(source: RoutePerformanceData, target: RoutePerformanceData) -> float:
    sessions = min(source.total_sessions, target.total_sessions)
    if sessions >= 20:
        return 0.9
    if sessions >= 10:
        return 0.7
    if sessions >= 5:
        return 0.5
    return 0.3


class CorrelationAnalyzer:
    def analyze_route_relationship(
        self, source: RoutePerformanceData, target: RoutePerformanceData
    ) -> RouteCorrelation:
        """
        Pearson coefficients of fps, memory and cpu over visits ordered by time.

        correlation_strength is |mean of the three|, so it does not depend on which
        route is the source.
        """
        fps_corr = pearson([s.avg_fps for s in source.sessions], [s.avg_fps for s in target.sessions])
        memory_corr = pearson([s.avg_memory for s in source.sessions], [s.avg_memory for s in target.sessions])
        cpu_corr = pearson([s.avg_cpu for s in source.sessions], [s.avg_cpu for s in target.sessions])
        overall = (fps_corr + memory_corr + cpu_corr) / 3
        paired = min(len(source.sessions), len(target.sessions))

        return RouteCorrelation(
            source_route=source.route_pattern,
            target_route=target.route_pattern,
            fps_corr=round(fps_corr, 4),
            memory_corr=round(memory_corr, 4),
            cpu_corr=round(cpu_corr, 4),
            correlation_strength=round(min(1.0, abs(overall)), 4),
            performance_impact=performance_impact(source, target, overall),
            correlation_type=correlation_type(source, target, fps_corr, memory_corr, cpu_corr),
            statistical_significance=round(correlation_significance(overall, paired), 4),
            confidence_level=confidence_level(source, target),
            sample_size=min(source.total_sessions, target.total_sessions),
        )

    def analyze_all(self, routes: List[RoutePerformanceData], min_strength: float = 0.05) -> List[RouteCorrelation]:
        """Every unordered pair of routes, strongest first"""
        correlations = []
        for i, source in enumerate(routes):
            for target in routes[i + 1:]:
                correlation = self.analyze_route_relationship(source, target)
                if correlation.correlation_strength >= min_strength:
                    correlations.append(correlation)
        correlations.sort(key=lambda c: c.correlation_strength, reverse=True)
        logger.debug(f"{len(correlations)} route correlations above {min_strength}")
        return correlations
