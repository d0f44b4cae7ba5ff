"""
Journey-level analyses built on reconstructed journeys: regressions between
periods, completion by length, abandonment-prone routes, flow efficiency and
per-device statistics.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from perfscope.analyzer.models import (
    AbandonmentRoute, CompletionByLength, DeviceJourneyStats, FlowEfficiency,
    JourneyAnalysisReport, JourneyPattern, JourneyRegression, UserJourney,
)
from perfscope.analyzer.utils.stats import clamp, mean
from perfscope.services.journey_tracker import UserJourneyTracker, visit_score

logger = logging.getLogger(__name__)

REGRESSION_MIN_SAMPLES = 3
REGRESSION_MIN_CHANGE = 5
BASELINE_TIME_PER_ROUTE_MS = 30_000


def detect_journey_regressions(
    current: List[UserJourney], historical: List[UserJourney]
) -> List[JourneyRegression]:
    """Per-route visit score change between two periods, largest change first"""
    current_scores = _route_scores(current)
    historical_scores = _route_scores(historical)

    regressions = []
    for route, scores in current_scores.items():
        baseline = historical_scores.get(route)
        if not baseline or len(scores) < REGRESSION_MIN_SAMPLES or len(baseline) < REGRESSION_MIN_SAMPLES:
            continue
        change = mean(scores) - mean(baseline)
        if abs(change) <= REGRESSION_MIN_CHANGE:
            continue
        if abs(change) > 20:
            significance = 'high'
        elif abs(change) > 10:
            significance = 'medium'
        else:
            significance = 'low'
        regressions.append(JourneyRegression(
            route_pattern=route,
            performance_change=round(change, 2),
            significance=significance,
            sample_size=len(scores),
        ))
    return sorted(regressions, key=lambda r: abs(r.performance_change), reverse=True)


def completion_by_length(journeys: List[UserJourney]) -> List[CompletionByLength]:
    groups: Dict[int, List[UserJourney]] = defaultdict(list)
    for journey in journeys:
        groups[len(journey.route_sequence)].append(journey)
    return [
        CompletionByLength(
            sequence_length=length,
            total_journeys=len(group),
            completion_rate=round(sum(1 for j in group if j.completion_status == 'completed') / len(group), 4),
            avg_performance_score=round(mean([j.journey_score for j in group]), 2),
        )
        for length, group in sorted(groups.items())
    ]


def abandonment_routes(journeys: List[UserJourney]) -> List[AbandonmentRoute]:
    """Routes seen in at least 3 abandoned journeys and abandoned more than 30% of the time"""
    abandoned: Counter = Counter()
    completed: Counter = Counter()
    impact: Dict[str, float] = defaultdict(float)
    for journey in journeys:
        for visit in journey.route_sequence:
            if journey.completion_status == 'abandoned':
                abandoned[visit.route_pattern] += 1
                impact[visit.route_pattern] += 100 - visit_score(visit)
            elif journey.completion_status == 'completed':
                completed[visit.route_pattern] += 1

    routes = []
    for route in set(abandoned) | set(completed):
        total = abandoned[route] + completed[route]
        correlation = abandoned[route] / total if total else 0.0
        if abandoned[route] < 3 or correlation <= 0.3:
            continue
        routes.append(AbandonmentRoute(
            route_pattern=route,
            abandonment_correlation=round(correlation, 4),
            frequency_in_abandoned_journeys=abandoned[route],
            avg_performance_impact=round(impact[route] / abandoned[route], 2),
        ))
    return sorted(routes, key=lambda r: (-r.abandonment_correlation, r.route_pattern))


def flow_efficiency(journeys: List[UserJourney]) -> FlowEfficiency:
    if not journeys:
        return FlowEfficiency()
    avg_duration = mean([j.journey_duration for j in journeys])
    avg_routes = mean([len(j.route_sequence) for j in journeys])
    time_per_route = avg_duration / avg_routes if avg_routes > 0 else 0.0
    efficiency = clamp(
        100 - (time_per_route - BASELINE_TIME_PER_ROUTE_MS) / BASELINE_TIME_PER_ROUTE_MS * 100, 0.0, 100.0
    )
    return FlowEfficiency(
        avg_journey_duration=round(avg_duration, 2),
        avg_routes_per_journey=round(avg_routes, 2),
        avg_time_per_route=round(time_per_route, 2),
        efficiency_score=round(efficiency, 2),
        bottleneck_frequency=round(mean([len(j.bottleneck_points) for j in journeys]), 2),
    )


def high_value_paths(patterns: List[JourneyPattern]) -> List[JourneyPattern]:
    """Frequent paths that usually complete"""
    return sorted(
        (p for p in patterns if p.completion_rate > 0.7 and p.frequency >= 5),
        key=lambda p: p.completion_rate * p.frequency,
        reverse=True,
    )


def journeys_by_device(journeys: List[UserJourney]) -> List[DeviceJourneyStats]:
    groups: Dict[str, List[UserJourney]] = defaultdict(list)
    for journey in journeys:
        groups[journey.device_type or 'unknown'].append(journey)

    stats = []
    for device_type, group in groups.items():
        counts = Counter(b.route_pattern for j in group for b in j.bottleneck_points)
        threshold = max(2, len(group) * 0.2)
        stats.append(DeviceJourneyStats(
            device_type=device_type,
            total_journeys=len(group),
            avg_completion_rate=round(sum(1 for j in group if j.completion_status == 'completed') / len(group), 4),
            avg_performance_score=round(mean([j.journey_score for j in group]), 2),
            common_bottlenecks=[route for route, count in counts.most_common(3) if count >= threshold],
        ))
    return sorted(stats, key=lambda s: (-s.total_journeys, s.device_type))


def build_journey_report(
    tracker: UserJourneyTracker,
    journeys: List[UserJourney],
    baseline_before: Optional[datetime] = None,
    include_journeys: bool = True,
    limit: Optional[int] = None,
) -> JourneyAnalysisReport:
    """
    Full journey report. When `baseline_before` is given, journeys starting after
    it are compared per route with the ones starting before it and the score
    changes are reported as regressions.
    """
    patterns = tracker.analyze_journey_patterns(journeys)
    logger.debug(f"{len(patterns)} journey patterns across {len(journeys)} journeys")
    regressions = []
    if baseline_before is not None:
        regressions = detect_journey_regressions(
            [j for j in journeys if j.journey_start >= baseline_before],
            [j for j in journeys if j.journey_start < baseline_before],
        )
    shown = journeys[:limit] if limit is not None else journeys
    return JourneyAnalysisReport(
        journeys=shown if include_journeys else [],
        patterns=patterns,
        abandonment=tracker.analyze_abandonment(journeys),
        high_value_paths=high_value_paths(patterns),
        completion_by_length=completion_by_length(journeys),
        problematic_routes=abandonment_routes(journeys),
        flow_efficiency=flow_efficiency(journeys),
        by_device=journeys_by_device(journeys),
        regressions=regressions,
    )


def _route_scores(journeys: List[UserJourney]) -> Dict[str, List[float]]:
    scores: Dict[str, List[float]] = defaultdict(list)
    for journey in journeys:
        for visit in journey.route_sequence:
            scores[visit.route_pattern].append(visit_score(visit))
    return scores
