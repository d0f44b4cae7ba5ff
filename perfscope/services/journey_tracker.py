"""
User Journey Tracking Service.
Reconstructs journeys from session history, finds bottlenecks inside them and
mines route sequences that many journeys share.
"""

import hashlib
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from perfscope.analyzer.config import AnalyzerConfig
from perfscope.analyzer.models import (
    AbandonmentPattern, BottleneckPoint, JourneyPattern, PerformancePoint,
    RouteVisit, RouteVisitMetrics, TransitionPerformance, UserJourney,
)
from perfscope.analyzer.utils.routes import RouteNormalizer, default_normalizer, parse_screen_context
from perfscope.analyzer.utils.stats import clamp, mean
from perfscope.domain.entities.metric_sample import CPU_USAGE, FPS, MEMORY_USAGE, SCREEN_TIME, MetricSample
from perfscope.domain.entities.session import Session
from perfscope.services.cpu_inference import infer_cpu_usage
from perfscope.services.route_analyzer import performance_score

logger = logging.getLogger(__name__)

PATTERN_SEPARATOR = ' -> '
UNKNOWN_PATTERN = '/unknown'

MIN_VISIT_MS = 1000
ROUTE_LOOKUP_WINDOW = timedelta(minutes=2)

# trajectory defaults for a minute without a reading of that type
DEFAULT_FPS = 30.0
DEFAULT_MEMORY = 200.0
DEFAULT_CPU = 30.0

FPS_DROP_PERCENT = 20
MEMORY_INCREASE_PERCENT = 50
MEMORY_ABSOLUTE_MB = 400
CPU_INCREASE_PERCENT = 30
SLOW_VISIT_MS = 30_000
CRITICAL_VISIT_MS = 60_000

COMPLETED_BONUS = 1.1
ABANDONED_PENALTY = 0.8
BOTTLENECK_PENALTY = 5
MAX_BOTTLENECK_PENALTY = 20
DEFAULT_JOURNEY_SCORE = 50.0


def _percent_change(previous: float, current: float) -> Optional[float]:
    if previous <= 0:
        return None
    return (current - previous) / previous * 100


def point_score(point: PerformancePoint) -> float:
    return performance_score(point.fps, point.memory_usage, point.cpu_usage)


def visit_score(visit: RouteVisit) -> float:
    metrics = visit.performance_metrics
    load_time = metrics.avg_load_time if metrics.avg_load_time > 0 else None
    return performance_score(metrics.avg_fps, metrics.avg_memory, metrics.avg_cpu, load_time)


def pattern_key(journey: UserJourney) -> str:
    return PATTERN_SEPARATOR.join(v.route_pattern for v in journey.route_sequence)


class UserJourneyTracker:
    """
    Journey reconstruction and pattern mining over already fetched sessions.

    Completion cutoffs come from AnalyzerConfig:
        completed: at least `completed_min_routes` visits and longer than `completed_min_duration_ms`
        abandoned: at most `abandoned_max_routes` visits or shorter than `abandoned_max_duration_ms`
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None, normalizer: RouteNormalizer = default_normalizer):
        config = config or AnalyzerConfig()
        self.window_hours = config.journey_window_hours
        self.completed_min_routes = config.completed_min_routes
        self.completed_min_duration_ms = config.completed_min_duration_ms
        self.abandoned_max_routes = config.abandoned_max_routes
        self.abandoned_max_duration_ms = config.abandoned_max_duration_ms
        self.normalizer = normalizer

    def reconstruct_journeys(
        self,
        sessions: List[Session],
        samples: List[MetricSample],
        window_hours: Optional[float] = None,
    ) -> List[UserJourney]:
        """
        Group each user's sessions into journeys. A new journey starts when the next
        session begins more than `window_hours` after the previous session ended
        (or started, while it is still open).

        Returns:
            Journeys, most recent first
        """
        window = timedelta(hours=self.window_hours if window_hours is None else window_hours)
        by_session: Dict[str, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            by_session[sample.session_id].append(sample)

        by_user: Dict[str, List[Session]] = defaultdict(list)
        for session in sessions:
            by_user[session.anonymous_user_id].append(session)

        journeys = []
        for user_id, user_sessions in by_user.items():
            ordered = sorted(user_sessions, key=lambda s: s.session_start)
            group = [ordered[0]]
            for session in ordered[1:]:
                previous = group[-1]
                previous_end = previous.session_end or previous.session_start
                if session.session_start - previous_end > window:
                    journeys.append(self._build_journey(user_id, group, by_session))
                    group = [session]
                else:
                    group.append(session)
            journeys.append(self._build_journey(user_id, group, by_session))

        logger.info(f"Reconstructed {len(journeys)} journeys from {len(sessions)} sessions")
        return sorted(journeys, key=lambda j: j.journey_start, reverse=True)

    def _build_journey(
        self, user_id: str, sessions: List[Session], by_session: Dict[str, List[MetricSample]]
    ) -> UserJourney:
        route_sequence: List[RouteVisit] = []
        trajectory: List[PerformancePoint] = []
        for session in sessions:
            session_samples = sorted(by_session.get(session.id, []), key=lambda s: s.timestamp)
            visits = self.extract_route_visits(session, session_samples)
            route_sequence.extend(visits)
            trajectory.extend(self.extract_trajectory(session_samples, visits))

        route_sequence.sort(key=lambda v: v.entry_timestamp)
        _link_transitions(route_sequence)
        trajectory.sort(key=lambda p: p.timestamp)

        first = sessions[0]
        journey = UserJourney(
            journey_id=f'journey_{user_id}_{first.id}',
            session_id=first.id,
            session_ids=[s.id for s in sessions],
            device_id=first.device_key,
            device_type=first.device_type or 'unknown',
            anonymous_user_id=user_id,
            route_sequence=route_sequence,
            performance_trajectory=trajectory,
            journey_start=first.session_start,
        )
        if route_sequence:
            journey.journey_end = route_sequence[-1].exit_timestamp
            journey.journey_duration = (
                route_sequence[-1].exit_timestamp - route_sequence[0].entry_timestamp
            ).total_seconds() * 1000
        journey.completion_status = self.completion_status(journey)
        journey.bottleneck_points = self.detect_journey_bottlenecks(journey)
        journey.journey_score = round(self.calculate_journey_score(journey), 2)
        return journey

    def extract_route_visits(self, session: Session, samples: List[MetricSample]) -> List[RouteVisit]:
        """
        One visit per screen_time sample. The sample value is the time spent on the
        screen; consecutive visits of the same route are merged.
        """
        raw = []
        for sample in samples:
            if sample.metric_type != SCREEN_TIME:
                continue
            screen = parse_screen_context(sample.context)
            if screen is None:
                continue
            entry = screen.screen_start_time or sample.timestamp
            duration = max(MIN_VISIT_MS, sample.value)
            raw.append((entry, entry + timedelta(milliseconds=duration), screen))
        raw.sort(key=lambda item: item[0])

        merged = []
        for entry, exit_, screen in raw:
            pattern = self.normalizer.pattern_for(screen)
            if merged and merged[-1][2] == pattern:
                merged[-1][1] = max(merged[-1][1], exit_)
                continue
            merged.append([entry, exit_, pattern, self.normalizer.display_name(screen)])

        visits = []
        for entry, exit_, pattern, name in merged:
            inside = [s for s in samples if entry <= s.timestamp <= exit_]
            visits.append(RouteVisit(
                route_pattern=pattern,
                route_name=name,
                entry_timestamp=entry,
                exit_timestamp=exit_,
                duration=(exit_ - entry).total_seconds() * 1000,
                performance_metrics=_visit_metrics(inside, session.device_type),
            ))
        return visits

    def extract_trajectory(self, samples: List[MetricSample], visits: List[RouteVisit]) -> List[PerformancePoint]:
        """Per-minute fps, memory and cpu, attributed to the route on screen at that time"""
        minutes: Dict[datetime, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            if sample.metric_type in (FPS, MEMORY_USAGE, CPU_USAGE):
                minutes[sample.timestamp.replace(second=0, microsecond=0)].append(sample)

        points = []
        for minute in sorted(minutes):
            readings = minutes[minute]
            points.append(PerformancePoint(
                timestamp=minute,
                fps=mean([r.value for r in readings if r.metric_type == FPS], DEFAULT_FPS),
                memory_usage=mean([r.value for r in readings if r.metric_type == MEMORY_USAGE], DEFAULT_MEMORY),
                cpu_usage=mean([r.value for r in readings if r.metric_type == CPU_USAGE], DEFAULT_CPU),
                route_pattern=self._route_at(minute, readings, samples, visits),
            ))
        return points

    def _route_at(
        self, moment: datetime, readings: List[MetricSample], samples: List[MetricSample], visits: List[RouteVisit]
    ) -> str:
        for visit in visits:
            if visit.entry_timestamp <= moment < visit.exit_timestamp:
                return visit.route_pattern
        for reading in readings:
            route = self.normalizer.route_for_sample(reading)
            if route:
                return route
        nearby = [s for s in samples if abs(s.timestamp - moment) <= ROUTE_LOOKUP_WINDOW]
        for sample in sorted(nearby, key=lambda s: abs(s.timestamp - moment)):
            route = self.normalizer.route_for_sample(sample)
            if route:
                return route
        return UNKNOWN_PATTERN

    def completion_status(self, journey: UserJourney) -> str:
        routes = len(journey.route_sequence)
        if routes == 0:
            return 'in_progress'
        if routes >= self.completed_min_routes and journey.journey_duration > self.completed_min_duration_ms:
            return 'completed'
        if routes <= self.abandoned_max_routes or journey.journey_duration < self.abandoned_max_duration_ms:
            return 'abandoned'
        return 'in_progress'

    def detect_journey_bottlenecks(self, journey: UserJourney) -> List[BottleneckPoint]:
        """
        Trajectory transitions are checked for fps drops, memory spikes and cpu jumps,
        route visits for slow screens. Sorted by impact score, highest first.
        """
        bottlenecks = []
        trajectory = journey.performance_trajectory
        for previous, current in zip(trajectory, trajectory[1:]):
            bottlenecks.extend(_transition_bottlenecks(previous, current))

        for visit in journey.route_sequence:
            if visit.duration > SLOW_VISIT_MS:
                bottlenecks.append(BottleneckPoint(
                    route_pattern=visit.route_pattern,
                    timestamp=visit.entry_timestamp,
                    bottleneck_type='slow_transition',
                    severity='critical' if visit.duration > CRITICAL_VISIT_MS else 'high',
                    impact_score=round(min(100.0, visit.duration / 1000), 2),
                    description=f'Route {visit.route_pattern} took {visit.duration / 1000:.1f}s',
                ))

        return sorted(bottlenecks, key=lambda b: b.impact_score, reverse=True)

    def calculate_journey_score(self, journey: UserJourney) -> float:
        """
        Mean trajectory score, scaled by completion (x1.1 completed, x0.8 abandoned)
        minus 5 per bottleneck (at most 20). A journey without trajectory scores 50.
        """
        if not journey.performance_trajectory:
            return DEFAULT_JOURNEY_SCORE

        base = mean([point_score(p) for p in journey.performance_trajectory])
        if journey.completion_status == 'completed':
            base *= COMPLETED_BONUS
        elif journey.completion_status == 'abandoned':
            base *= ABANDONED_PENALTY
        penalty = min(MAX_BOTTLENECK_PENALTY, len(journey.bottleneck_points) * BOTTLENECK_PENALTY)
        return clamp(base - penalty, 0.0, 100.0)

    def analyze_journey_patterns(self, journeys: List[UserJourney]) -> List[JourneyPattern]:
        """Route sequences shared by at least two journeys, highest user impact first"""
        groups: Dict[str, List[UserJourney]] = defaultdict(list)
        for journey in journeys:
            if journey.route_sequence:
                groups[pattern_key(journey)].append(journey)

        patterns = [
            _pattern_from_group(key, group)
            for key, group in groups.items()
            if len(group) >= 2
        ]
        return sorted(patterns, key=lambda p: (-p.user_impact_score, -p.frequency, p.pattern_id))

    def analyze_abandonment(self, journeys: List[UserJourney]) -> List[AbandonmentPattern]:
        """Abandoned journeys grouped by the last route they reached"""
        groups: Dict[str, List[UserJourney]] = defaultdict(list)
        for journey in journeys:
            if journey.completion_status == 'abandoned' and journey.route_sequence:
                groups[journey.route_sequence[-1].route_pattern].append(journey)

        patterns = []
        for point, group in groups.items():
            preceding = [[v.route_pattern for v in j.route_sequence[:-1]] for j in group]
            patterns.append(AbandonmentPattern(
                abandonment_point=point,
                frequency=len(group),
                avg_time_to_abandonment=round(mean([j.journey_duration for j in group]), 2),
                common_preceding_routes=_common_routes(preceding),
            ))
        return sorted(patterns, key=lambda p: (-p.frequency, p.abandonment_point))


def _visit_metrics(samples: List[MetricSample], device_type: Optional[str]) -> RouteVisitMetrics:
    fps_values = [s.value for s in samples if s.metric_type == FPS]
    memory_values = [s.value for s in samples if s.metric_type == MEMORY_USAGE]
    cpu_values = [s.value for s in samples if s.metric_type == CPU_USAGE]
    load_values = [s.value for s in samples if s.is_load_time]

    avg_fps = mean(fps_values, DEFAULT_FPS)
    avg_memory = mean(memory_values, DEFAULT_MEMORY)
    if cpu_values:
        avg_cpu = mean(cpu_values)
    else:
        avg_cpu = infer_cpu_usage(avg_fps, avg_memory, mean(load_values) if load_values else None, device_type)
    return RouteVisitMetrics(
        avg_fps=round(avg_fps, 2),
        avg_memory=round(avg_memory, 2),
        avg_cpu=round(avg_cpu, 2),
        avg_load_time=round(mean(load_values), 2),
    )


def _link_transitions(visits: List[RouteVisit]):
    for previous, current in zip(visits, visits[1:]):
        gap = (current.entry_timestamp - previous.exit_timestamp).total_seconds() * 1000
        current.transition_performance = TransitionPerformance(
            transition_time=round(max(0.0, gap), 2),
            memory_spike=round(max(0.0, current.performance_metrics.avg_memory - previous.performance_metrics.avg_memory), 2),
            cpu_spike=round(max(0.0, current.performance_metrics.avg_cpu - previous.performance_metrics.avg_cpu), 2),
        )


def _transition_bottlenecks(previous: PerformancePoint, current: PerformancePoint) -> List[BottleneckPoint]:
    found = []
    route = current.route_pattern

    fps_change = _percent_change(previous.fps, current.fps)
    if fps_change is not None and -fps_change > FPS_DROP_PERCENT:
        drop = -fps_change
        found.append(BottleneckPoint(
            route_pattern=route,
            timestamp=current.timestamp,
            bottleneck_type='performance_drop',
            severity='critical' if drop > 40 else 'high' if drop > 30 else 'medium',
            impact_score=round(drop, 2),
            description=f'FPS dropped by {drop:.1f}% transitioning to {route}',
        ))

    memory_change = _percent_change(previous.memory_usage, current.memory_usage)
    crossed = previous.memory_usage <= MEMORY_ABSOLUTE_MB < current.memory_usage
    if (memory_change is not None and memory_change > MEMORY_INCREASE_PERCENT) or crossed:
        increase = memory_change or 0.0
        found.append(BottleneckPoint(
            route_pattern=route,
            timestamp=current.timestamp,
            bottleneck_type='memory_spike',
            severity='critical' if increase > 100 else 'high',
            impact_score=round(max(increase, 0.0), 2),
            description=f'Memory usage increased by {increase:.1f}% to {current.memory_usage:.0f}MB at {route}',
        ))

    cpu_change = _percent_change(previous.cpu_usage, current.cpu_usage)
    if cpu_change is not None and cpu_change > CPU_INCREASE_PERCENT:
        found.append(BottleneckPoint(
            route_pattern=route,
            timestamp=current.timestamp,
            bottleneck_type='high_cpu',
            severity='critical' if cpu_change > 60 else 'high',
            impact_score=round(cpu_change, 2),
            description=f'CPU usage increased by {cpu_change:.1f}% at {route}',
        ))
    return found


def _pattern_from_group(key: str, journeys: List[UserJourney]) -> JourneyPattern:
    frequency = len(journeys)
    avg_score = mean([j.journey_score for j in journeys])
    completion_rate = sum(1 for j in journeys if j.completion_status == 'completed') / frequency
    abandonment_rate = sum(1 for j in journeys if j.completion_status == 'abandoned') / frequency

    bottleneck_routes = Counter(b.route_pattern for j in journeys for b in j.bottleneck_points)
    threshold = max(2, frequency * 0.3)
    common = [route for route, count in bottleneck_routes.most_common() if count >= threshold]

    avg_bottlenecks = sum(len(j.bottleneck_points) for j in journeys) / frequency
    impact = round(((100 - avg_score) + abandonment_rate * 100) * min(1.0, frequency / 20))

    return JourneyPattern(
        pattern_id='pattern_' + hashlib.md5(key.encode()).hexdigest()[:10],
        route_sequence=key.split(PATTERN_SEPARATOR),
        frequency=frequency,
        avg_performance_score=round(avg_score, 2),
        common_bottlenecks=common,
        optimization_potential=round(min(100.0, avg_bottlenecks * 20), 2),
        user_impact_score=impact,
        avg_journey_duration=round(mean([j.journey_duration for j in journeys]), 2),
        completion_rate=round(completion_rate, 4),
    )


def _common_routes(route_lists: List[List[str]], top: int = 5) -> List[str]:
    counts = Counter(route for routes in route_lists for route in routes)
    threshold = max(2, len(route_lists) * 0.3)
    return [route for route, count in counts.most_common() if count >= threshold][:top]
