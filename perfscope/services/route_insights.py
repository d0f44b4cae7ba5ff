"""
Cross-route insights: navigation flows, multi-route patterns and the
recommendations derived from correlations and predictions.
"""

import hashlib
import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from perfscope.analyzer.models import (
    CrossRoutePattern, DegradationPoint, NavigationFlow, ProactiveRecommendation,
    RouteCorrelation, RouteInsight, RouteInsightsReport, RoutePerformanceAnalysis,
    RoutePerformanceData, RoutePrediction, RouteSessionSample,
)
from perfscope.analyzer.utils.stats import mean
from perfscope.services.correlation_analyzer import CorrelationAnalyzer
from perfscope.services.prediction_engine import RoutePredictionEngine
from perfscope.services.route_analyzer import sample_score

logger = logging.getLogger(__name__)

FLOW_SEPARATOR = ' -> '
SEQUENCE_GAP = timedelta(minutes=30)
MAX_TRANSITION = timedelta(minutes=10)
MIN_FLOW_FREQUENCY = 2

MEMORY_CHAIN_STEP = 0.2
HIGH_CPU = 60

PRIORITY_ORDER = {'high': 3, 'medium': 2, 'low': 1}


class RouteSequence:
    """Consecutive visits of one device, each within 30 minutes of the previous"""

    def __init__(self, device_id: str):
        self.device_id = device_id
        self.routes: List[str] = []
        self.scores: List[float] = []
        self.timestamps: List[datetime] = []

    def append(self, visit: RouteSessionSample):
        self.routes.append(visit.route_pattern)
        self.scores.append(sample_score(visit))
        self.timestamps.append(visit.timestamp)


def extract_route_sequences(routes: Sequence[RoutePerformanceData]) -> List[RouteSequence]:
    by_device: Dict[str, List[RouteSessionSample]] = defaultdict(list)
    for route in routes:
        for visit in route.sessions:
            by_device[visit.device_id].append(visit)

    sequences = []
    for device_id, visits in by_device.items():
        current: Optional[RouteSequence] = None
        for visit in sorted(visits, key=lambda v: v.timestamp):
            if current is not None and visit.timestamp - current.timestamps[-1] > SEQUENCE_GAP:
                if len(current.routes) >= 2:
                    sequences.append(current)
                current = None
            if current is None:
                current = RouteSequence(device_id)
            current.append(visit)
        if current is not None and len(current.routes) >= 2:
            sequences.append(current)
    return sequences


def _average_trajectory(sequences: Sequence[RouteSequence]) -> List[float]:
    longest = max(len(s.scores) for s in sequences)
    return [
        mean([s.scores[i] for s in sequences if i < len(s.scores)])
        for i in range(longest)
    ]


def _drop_percent(previous: float, current: float) -> float:
    return (previous - current) / previous * 100 if previous > 0 else 0.0


def bottleneck_routes(route_sequence: Sequence[str], trajectory: Sequence[float]) -> List[str]:
    """Positions with a drop over 20% from the previous one, or a score below 50"""
    bottlenecks: List[str] = []
    for i, score in enumerate(trajectory):
        if i >= len(route_sequence):
            break
        previous = trajectory[i - 1] if i > 0 else score
        route = route_sequence[i]
        if (_drop_percent(previous, score) > 20 or score < 50) and route not in bottlenecks:
            bottlenecks.append(route)
    return bottlenecks


def optimization_potential(trajectory: Sequence[float]) -> float:
    if not trajectory:
        return 0.0
    gap = 100 - mean(trajectory)
    if gap <= 0:
        return 0.0
    return min(100.0, (max(trajectory) - min(trajectory)) / gap * 100)


def user_impact_score(frequency: int, trajectory: Sequence[float]) -> float:
    # frequency weight saturates at 10 occurrences
    return round((100 - mean(trajectory)) * min(1.0, frequency / 10), 2)


def degradation_points(route_sequence: Sequence[str], trajectory: Sequence[float]) -> List[DegradationPoint]:
    points = []
    for i in range(1, min(len(trajectory), len(route_sequence))):
        drop = _drop_percent(trajectory[i - 1], trajectory[i])
        if drop <= 10:
            continue
        if drop > 40:
            severity = 'critical'
        elif drop > 25:
            severity = 'high'
        elif drop > 15:
            severity = 'medium'
        else:
            severity = 'low'
        points.append(DegradationPoint(
            from_route=route_sequence[i - 1],
            to_route=route_sequence[i],
            performance_drop=round(drop, 2),
            severity=severity,
        ))
    return sorted(points, key=lambda p: p.performance_drop, reverse=True)


def average_transition_time(sequences: Sequence[RouteSequence]) -> float:
    """Milliseconds between consecutive visits, ignoring gaps of 10 minutes or more"""
    gaps = [
        (later - earlier).total_seconds() * 1000
        for s in sequences
        for earlier, later in zip(s.timestamps, s.timestamps[1:])
        if later - earlier < MAX_TRANSITION
    ]
    return mean(gaps)


def analyze_flows(sequences: Sequence[RouteSequence]) -> List[NavigationFlow]:
    """Route sequences seen at least twice, highest user impact first"""
    groups: Dict[str, List[RouteSequence]] = defaultdict(list)
    for sequence in sequences:
        groups[FLOW_SEPARATOR.join(sequence.routes)].append(sequence)

    flows = []
    for key, group in groups.items():
        if len(group) < MIN_FLOW_FREQUENCY:
            continue
        route_sequence = key.split(FLOW_SEPARATOR)
        trajectory = _average_trajectory(group)
        flows.append(NavigationFlow(
            flow_id='flow_' + hashlib.md5(key.encode()).hexdigest()[:10],
            route_sequence=route_sequence,
            performance_trajectory=[round(s, 2) for s in trajectory],
            bottleneck_routes=bottleneck_routes(route_sequence, trajectory),
            optimization_potential=round(optimization_potential(trajectory), 2),
            user_impact_score=user_impact_score(len(group), trajectory),
            flow_frequency=len(group),
            avg_transition_time=round(average_transition_time(group), 2),
            performance_degradation_points=degradation_points(route_sequence, trajectory),
        ))
    return sorted(flows, key=lambda f: f.user_impact_score, reverse=True)


def memory_leak_chains(routes: Sequence[RoutePerformanceData]) -> List[CrossRoutePattern]:
    """Three routes in memory order where each step grows memory by more than 20%"""
    ordered = sorted(routes, key=lambda r: r.avg_memory)
    patterns = []
    for i in range(len(ordered) - 2):
        first, second, third = ordered[i:i + 3]
        if first.avg_memory <= 0 or second.avg_memory <= 0:
            continue
        step1 = (second.avg_memory - first.avg_memory) / first.avg_memory
        step2 = (third.avg_memory - second.avg_memory) / second.avg_memory
        if step1 > MEMORY_CHAIN_STEP and step2 > MEMORY_CHAIN_STEP:
            patterns.append(CrossRoutePattern(
                pattern_id=f'memory_leak_{i}',
                pattern_type='memory_leak_chain',
                affected_routes=[first.route_pattern, second.route_pattern, third.route_pattern],
                pattern_strength=round(min(step1 + step2, 1.0), 4),
                detection_confidence=0.8,
                suggested_mitigation=[
                    "Implement memory profiling for these routes",
                    "Check for object leaks and circular references",
                    "Add memory cleanup in route transitions",
                    "Consider implementing memory pressure monitoring",
                ],
            ))
    return patterns


def cpu_cascades(routes: Sequence[RoutePerformanceData]) -> List[CrossRoutePattern]:
    high_cpu = [r for r in routes if r.avg_cpu > HIGH_CPU]
    if len(high_cpu) < 2:
        return []
    return [CrossRoutePattern(
        pattern_id='cpu_cascade',
        pattern_type='cpu_cascade',
        affected_routes=[r.route_pattern for r in high_cpu],
        pattern_strength=round(min(len(high_cpu) / len(routes), 1.0), 4),
        detection_confidence=0.7,
        suggested_mitigation=[
            "Optimize CPU-intensive operations in these routes",
            "Consider route-level performance budgeting",
            "Implement CPU throttling for background tasks",
            "Review component rendering optimizations",
        ],
    )]


def fps_recoveries(routes: Sequence[RoutePerformanceData]) -> List[CrossRoutePattern]:
    improving = [r for r in routes if r.performance_trend == 'improving']
    if len(improving) < 2:
        return []
    return [CrossRoutePattern(
        pattern_id='fps_recovery',
        pattern_type='fps_recovery',
        affected_routes=[r.route_pattern for r in improving],
        pattern_strength=round(len(improving) / len(routes), 4),
        detection_confidence=0.8,
        suggested_mitigation=[
            "Analyze successful optimization strategies",
            "Apply similar improvements to other routes",
            "Document best practices for performance improvements",
            "Set up performance monitoring to maintain gains",
        ],
    )]


def detect_cross_route_patterns(routes: Sequence[RoutePerformanceData]) -> List[CrossRoutePattern]:
    patterns = memory_leak_chains(routes) + cpu_cascades(routes) + fps_recoveries(routes)
    return sorted(patterns, key=lambda p: p.pattern_strength, reverse=True)


def _route_name(pattern: str) -> str:
    return pattern.split('/')[-1] or pattern


def correlation_recommendation(correlation: RouteCorrelation) -> str:
    source, target = correlation.source_route, correlation.target_route
    if correlation.correlation_type == 'memory_leak':
        return (f"Address potential memory leak pattern between {source} and {target}. "
                f"Consider implementing memory cleanup mechanisms.")
    if correlation.correlation_type == 'cpu_spike':
        return ("Optimize CPU usage correlation between routes. "
                "Consider load balancing or performance optimization strategies.")
    if correlation.correlation_type == 'fps_degradation':
        return "Investigate FPS degradation pattern. Focus on rendering optimizations and frame rate stability."
    if correlation.correlation_type == 'performance_boost':
        return f"Leverage positive performance correlation. Apply successful strategies from {source} to other routes."
    return f"Monitor performance relationship between {source} and {target}."


def prediction_recommendation(prediction: RoutePrediction) -> str:
    if prediction.recommendation_priority == 'high':
        return (f"High priority: Route {prediction.route_pattern} predicted to have performance score "
                f"{prediction.predicted_performance_score:.1f} in {prediction.prediction_horizon}. "
                f"Immediate attention required.")
    if prediction.trend_direction == 'degrading':
        return "Monitor route performance trend. Consider proactive optimization before performance degrades further."
    return "Route showing stable performance. Continue monitoring and maintain current optimization strategies."


def flow_recommendation(flow: NavigationFlow) -> str:
    if flow.bottleneck_routes:
        return (f"Optimize bottleneck routes: {', '.join(flow.bottleneck_routes)}. "
                f"Focus on these routes to improve overall navigation flow performance.")
    return ("Navigation flow performing well. Monitor for any performance degradation in the route sequence: "
            f"{FLOW_SEPARATOR.join(flow.route_sequence)}.")


def pattern_recommendation(pattern: CrossRoutePattern) -> str:
    if pattern.suggested_mitigation:
        return pattern.suggested_mitigation[0]
    return f"Address {pattern.pattern_type} pattern affecting {len(pattern.affected_routes)} routes."


def build_insights(
    correlations: Sequence[RouteCorrelation],
    predictions: Sequence[RoutePrediction],
    flows: Sequence[NavigationFlow],
    patterns: Sequence[CrossRoutePattern],
) -> List[RouteInsight]:
    """Top 3 correlations, 3 predictions, 2 flows and 2 patterns, most confident first"""
    insights = []
    for correlation in correlations[:3]:
        insights.append(RouteInsight(
            route_pattern=correlation.source_route,
            route_name=_route_name(correlation.source_route),
            insight_type='correlation',
            confidence=correlation.confidence_level,
            impact_assessment='high' if correlation.performance_impact == 'negative' else 'medium',
            actionable_recommendation=correlation_recommendation(correlation),
        ))
    for prediction in predictions[:3]:
        insights.append(RouteInsight(
            route_pattern=prediction.route_pattern,
            route_name=_route_name(prediction.route_pattern),
            insight_type='prediction',
            confidence=prediction.forecast_accuracy,
            impact_assessment=prediction.recommendation_priority,
            actionable_recommendation=prediction_recommendation(prediction),
        ))
    for flow in flows[:2]:
        insights.append(RouteInsight(
            route_pattern=FLOW_SEPARATOR.join(flow.route_sequence),
            route_name=f"Flow: {len(flow.route_sequence)} routes",
            insight_type='flow_analysis',
            confidence=0.8,
            impact_assessment='high' if flow.user_impact_score > 50 else 'medium',
            actionable_recommendation=flow_recommendation(flow),
        ))
    for pattern in patterns[:2]:
        insights.append(RouteInsight(
            route_pattern=', '.join(pattern.affected_routes),
            route_name=f"Pattern: {pattern.pattern_type}",
            insight_type='pattern_detection',
            confidence=pattern.detection_confidence,
            impact_assessment='high' if pattern.pattern_strength > 0.4 else 'medium',
            actionable_recommendation=pattern_recommendation(pattern),
        ))
    return sorted(insights, key=lambda i: i.confidence, reverse=True)


def proactive_recommendations(
    correlations: Sequence[RouteCorrelation],
    predictions: Sequence[RoutePrediction],
    patterns: Sequence[CrossRoutePattern],
    now: datetime,
) -> List[ProactiveRecommendation]:
    recommendations = []
    for prediction in predictions:
        if prediction.recommendation_priority not in ('high', 'medium'):
            continue
        recommendations.append(ProactiveRecommendation(
            recommendation_id=f"pred_{prediction.route_pattern}",
            priority=prediction.recommendation_priority,
            category='performance_optimization',
            title=f"Optimize {prediction.route_pattern} Route",
            description=(f"Route predicted to have performance score {prediction.predicted_performance_score:.1f} "
                         f"in {prediction.prediction_horizon}."),
            implementation_steps=[
                "Profile route performance bottlenecks",
                "Optimize critical rendering path",
                "Implement performance monitoring",
                "Test improvements under load",
            ],
            deadline=now + timedelta(days=7),
        ))
    for correlation in correlations:
        if correlation.performance_impact != 'negative' or correlation.confidence_level <= 0.5:
            continue
        recommendations.append(ProactiveRecommendation(
            recommendation_id=f"corr_{correlation.source_route}_{correlation.target_route}",
            priority='medium',
            category='route_optimization',
            title="Address Route Correlation Issue",
            description=(f"Negative correlation detected between {correlation.source_route} "
                         f"and {correlation.target_route}."),
            implementation_steps=[
                "Investigate shared resources between routes",
                "Optimize route transition performance",
                "Consider route-specific caching strategies",
            ],
            deadline=now + timedelta(days=14),
        ))
    for pattern in patterns:
        if pattern.pattern_strength <= 0.3:
            continue
        recommendations.append(ProactiveRecommendation(
            recommendation_id=f"pattern_{pattern.pattern_id}",
            priority='high' if pattern.detection_confidence > 0.8 else 'medium',
            category='system_optimization',
            title=f"Address {pattern.pattern_type} Pattern",
            description=(f"{pattern.pattern_type} pattern detected affecting {len(pattern.affected_routes)} routes "
                         f"with {round(pattern.pattern_strength * 100)}% strength."),
            implementation_steps=pattern.suggested_mitigation or [
                "Investigate pattern root cause",
                "Implement targeted optimizations",
                "Monitor pattern resolution",
            ],
            deadline=now + timedelta(days=21),
        ))
    return sorted(recommendations, key=lambda r: PRIORITY_ORDER[r.priority], reverse=True)


class RouteInsightsService:
    """
    Builds the route insights report from an existing route analysis.
    """

    def __init__(
        self,
        correlation_analyzer: Optional[CorrelationAnalyzer] = None,
        prediction_engine: Optional[RoutePredictionEngine] = None,
    ):
        self.correlation_analyzer = correlation_analyzer or CorrelationAnalyzer()
        self.prediction_engine = prediction_engine or RoutePredictionEngine()

    def generate(
        self,
        analysis: RoutePerformanceAnalysis,
        include_correlations: bool = True,
        include_predictions: bool = True,
        include_flows: bool = True,
        include_patterns: bool = True,
        now: Optional[datetime] = None,
    ) -> RouteInsightsReport:
        """
        Args:
            analysis: Route analysis of the period
            include_*: Sections to compute, skipped sections stay empty
            now: Reference time for deadlines

        Returns:
            RouteInsightsReport
        """
        started = time.perf_counter()
        now = now or datetime.now(timezone.utc)
        routes = analysis.routes

        correlations = self.correlation_analyzer.analyze_all(routes) if include_correlations else []
        predictions = self.prediction_engine.predict_all(routes, analysis.app_averages) if include_predictions else []
        flows = analyze_flows(extract_route_sequences(routes)) if include_flows else []
        patterns = detect_cross_route_patterns(routes) if include_patterns else []

        report = RouteInsightsReport(
            generated_at=now,
            processing_time_ms=0,
            route_correlations=correlations,
            performance_predictions=predictions,
            navigation_flows=flows,
            cross_route_patterns=patterns,
            insights=build_insights(correlations, predictions, flows, patterns),
            proactive_recommendations=proactive_recommendations(correlations, predictions, patterns, now),
            sessions_processed=analysis.summary.total_sessions,
            routes_analyzed=len(routes),
        )
        report.processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            f"Route insights: {len(correlations)} correlations, {len(predictions)} predictions, "
            f"{len(flows)} flows, {len(patterns)} patterns in {report.processing_time_ms}ms"
        )
        return report
