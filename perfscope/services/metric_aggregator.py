"""
Metric Aggregation Service.
Groups raw metric samples by session and time bucket and computes averages.
"""

import logging
import math
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from perfscope.analyzer.constants import (
    DEVICE_RISK, FPS_DISTRIBUTION, HEALTH_FLOOR, HEALTH_FPS_STEPS, HEALTH_LOAD_TIME_STEPS, HEALTH_MEMORY_STEPS,
    HEALTH_SCORE_RISK, SESSION_RISK, RiskThresholds,
)
from perfscope.analyzer.models import (
    CountBucket, DeviceProfile, PerformanceSummary, PlatformHealth, SessionAggregate, TrendPoint,
)
from perfscope.analyzer.utils.routes import RouteNormalizer, default_normalizer
from perfscope.analyzer.utils.stats import mean
from perfscope.domain.entities.metric_sample import (
    CPU_USAGE, FPS, LOAD_TIME, MEMORY_USAGE, SCREEN_TIME, MetricSample,
)
from perfscope.domain.entities.session import Session
from perfscope.services.cpu_inference import infer_cpu_usage

logger = logging.getLogger(__name__)

SESSION_TIMELINE_INTERVAL_MS = 5000
LIVE_INTERVAL_MS = 1000


def bucket_timestamp(timestamp: datetime, interval_ms: int) -> datetime:
    """Round to the nearest interval: round(epoch_ms / interval) * interval, halves round up"""
    epoch_ms = timestamp.timestamp() * 1000
    bucket_ms = math.floor(epoch_ms / interval_ms + 0.5) * interval_ms
    return datetime.fromtimestamp(bucket_ms / 1000, tz=timezone.utc)


def average_by_type(samples: Iterable[MetricSample]) -> Dict[str, float]:
    """
    Average value per metric family. navigation_time, screen_load and load_time
    fold into `load_time`. Families without samples average to 0.
    """
    values: Dict[str, List[float]] = defaultdict(list)
    for sample in samples:
        key = LOAD_TIME if sample.is_load_time else sample.metric_type
        values[key].append(sample.value)
    return {
        metric_type: mean(values.get(metric_type, []))
        for metric_type in (FPS, MEMORY_USAGE, CPU_USAGE, LOAD_TIME, SCREEN_TIME)
    }


class MetricAggregator:
    """
    Pure aggregation over already fetched samples. Holds no state besides its
    route normalizer, so repeated calls with the same input give the same output.
    """

    def __init__(self, normalizer: RouteNormalizer = default_normalizer, risk_table: RiskThresholds = SESSION_RISK):
        self.normalizer = normalizer
        self.risk_table = risk_table

    def count_transitions(self, samples: Iterable[MetricSample]) -> int:
        """Route changes between consecutive route-bearing samples"""
        transitions = 0
        previous: Optional[str] = None
        for sample in sorted(samples, key=lambda s: s.timestamp):
            route = self.normalizer.route_for_sample(sample)
            if route is None:
                continue
            if previous is not None and route != previous:
                transitions += 1
            previous = route
        return transitions

    def session_averages(self, samples: List[MetricSample], device_type: Optional[str] = None) -> Dict[str, float]:
        """
        Averages of one session. CPU is inferred when the session has no
        cpu_usage samples but has fps or memory readings.
        """
        averages = average_by_type(samples)
        has_cpu = any(s.metric_type == CPU_USAGE for s in samples)
        has_signal = any(s.metric_type in (FPS, MEMORY_USAGE) for s in samples)
        cpu_inferred = False
        if not has_cpu and has_signal:
            has_load = any(s.is_load_time for s in samples)
            averages[CPU_USAGE] = infer_cpu_usage(
                averages[FPS],
                averages[MEMORY_USAGE],
                averages[LOAD_TIME] if has_load else None,
                device_type,
            )
            cpu_inferred = True
        averages['cpu_inferred'] = cpu_inferred
        return averages

    def aggregate_sessions(self, sessions: List[Session], samples: List[MetricSample]) -> List[SessionAggregate]:
        by_session: Dict[str, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            by_session[sample.session_id].append(sample)

        aggregates = []
        for session in sessions:
            session_samples = by_session.get(session.id, [])
            averages = self.session_averages(session_samples, session.device_type)
            has_cpu_value = averages['cpu_inferred'] or any(s.metric_type == CPU_USAGE for s in session_samples)
            has_load_value = any(s.is_load_time for s in session_samples)
            aggregates.append(SessionAggregate(
                session_id=session.id,
                device_type=session.device_type,
                sample_count=len(session_samples),
                avg_fps=round(averages[FPS], 2),
                avg_memory=round(averages[MEMORY_USAGE], 2),
                avg_cpu=round(averages[CPU_USAGE], 2),
                avg_load_time=round(averages[LOAD_TIME], 2),
                cpu_inferred=averages['cpu_inferred'],
                transition_count=self.count_transitions(session_samples),
                risk_level=self.risk_table.classify(
                    averages[FPS],
                    averages[MEMORY_USAGE],
                    cpu=averages[CPU_USAGE] if has_cpu_value else None,
                    load_time=averages[LOAD_TIME] if has_load_value else None,
                ) if session_samples else 'low',
            ))
        return aggregates

    def build_timeline(
        self,
        samples: List[MetricSample],
        interval_ms: int = SESSION_TIMELINE_INTERVAL_MS,
        device_type: Optional[str] = None,
    ) -> List[TrendPoint]:
        """
        Per-bucket averages in chronological order. Samples of different metric
        types that land in the same bucket are merged into one point.
        """
        buckets: Dict[datetime, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            buckets[bucket_timestamp(sample.timestamp, interval_ms)].append(sample)

        points = []
        for bucket in sorted(buckets):
            bucket_samples = buckets[bucket]
            averages = self.session_averages(bucket_samples, device_type)
            route = None
            for sample in sorted(bucket_samples, key=lambda s: s.timestamp):
                route = self.normalizer.route_for_sample(sample) or route
            session_ids = {s.session_id for s in bucket_samples}
            points.append(TrendPoint(
                timestamp=bucket,
                fps=round(averages[FPS], 2),
                memory_usage=round(averages[MEMORY_USAGE], 2),
                cpu_usage=round(averages[CPU_USAGE], 2),
                load_time=round(averages[LOAD_TIME], 2),
                cpu_inferred=averages['cpu_inferred'],
                route_pattern=route,
                session_id=session_ids.pop() if len(session_ids) == 1 else None,
            ))
        return points

    def summarize(self, sessions: List[Session], samples: List[MetricSample]) -> PerformanceSummary:
        """App-wide totals. Empty input gives a zero-valued summary."""
        if not sessions and not samples:
            return PerformanceSummary()

        averages = self.session_averages(samples)

        platforms = Counter(s.device_type or 'unknown' for s in sessions)

        fps_counts = Counter()
        for sample in samples:
            if sample.metric_type == FPS:
                fps_counts[_fps_bucket(sample.value)] += 1

        logger.debug(f"Summarized {len(sessions)} sessions, {len(samples)} samples")
        return PerformanceSummary(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.is_active),
            total_metrics=len(samples),
            avg_fps=round(averages[FPS], 2),
            avg_memory=round(averages[MEMORY_USAGE], 2),
            avg_cpu=round(averages[CPU_USAGE], 2),
            cpu_inferred=averages['cpu_inferred'],
            avg_load_time=round(averages[LOAD_TIME], 2),
            device_count=len({s.device_key for s in sessions}),
            platform_breakdown=[CountBucket(label=label, count=count) for label, count in platforms.most_common()],
            fps_distribution=[CountBucket(label=label, count=fps_counts.get(label, 0)) for label, _ in FPS_DISTRIBUTION],
        )

    def device_profiles(
        self, sessions: List[Session], samples: List[MetricSample], risk_table: RiskThresholds = DEVICE_RISK
    ) -> List[DeviceProfile]:
        """One profile per device, riskiest first"""
        by_session: Dict[str, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            by_session[sample.session_id].append(sample)
        by_device: Dict[str, List[Session]] = defaultdict(list)
        for session in sessions:
            by_device[session.device_key].append(session)

        profiles = []
        for device_id, device_sessions in by_device.items():
            ordered = sorted(device_sessions, key=lambda s: s.session_start)
            device_samples = [m for s in ordered for m in by_session.get(s.id, [])]
            latest = ordered[-1]
            averages = self.session_averages(device_samples, latest.device_type)
            profiles.append(DeviceProfile(
                device_id=device_id,
                device_type=latest.device_type,
                app_version=latest.app_version,
                total_sessions=len(ordered),
                avg_fps=round(averages[FPS], 1),
                avg_memory=round(averages[MEMORY_USAGE]),
                avg_cpu=round(averages[CPU_USAGE], 1),
                cpu_inferred=averages['cpu_inferred'],
                last_seen=max(s.session_end or s.session_start for s in ordered),
                risk_level=risk_table.classify(averages[FPS], averages[MEMORY_USAGE], len(ordered)),
            ))
        rank = {'high': 0, 'medium': 1, 'low': 2}
        return sorted(profiles, key=lambda p: (rank[p.risk_level], p.device_id))

    def platform_health(self, sessions: List[Session], samples: List[MetricSample]) -> List[PlatformHealth]:
        """Health score and risk per device type, busiest platform first"""
        by_session: Dict[str, List[MetricSample]] = defaultdict(list)
        for sample in samples:
            by_session[sample.session_id].append(sample)
        by_platform: Dict[str, List[Session]] = defaultdict(list)
        for session in sessions:
            by_platform[session.device_type or 'unknown'].append(session)

        platforms = []
        for platform, platform_sessions in by_platform.items():
            platform_samples = [m for s in platform_sessions for m in by_session.get(s.id, [])]
            averages = self.session_averages(platform_samples, platform)
            score = platform_health_score(averages[FPS], averages[MEMORY_USAGE], averages[LOAD_TIME])
            platforms.append(PlatformHealth(
                platform=platform,
                total_sessions=len(platform_sessions),
                total_devices=len({s.device_key for s in platform_sessions}),
                avg_fps=round(averages[FPS], 1),
                avg_memory=round(averages[MEMORY_USAGE]),
                avg_cpu=round(averages[CPU_USAGE], 1),
                avg_load_time=round(averages[LOAD_TIME]),
                health_score=score,
                risk_level=HEALTH_SCORE_RISK.classify(score),
            ))
        return sorted(platforms, key=lambda p: (-p.total_sessions, p.platform))


def _step_score(value: float, steps, higher_is_better: bool) -> int:
    for bound, score in steps:
        if (value >= bound) if higher_is_better else (value <= bound):
            return score
    return HEALTH_FLOOR


def platform_health_score(avg_fps: float, avg_memory: float, avg_load_time: float) -> int:
    """Mean of stepped fps, memory and load time scores (90/70/50/30)"""
    return round((
        _step_score(avg_fps, HEALTH_FPS_STEPS, True)
        + _step_score(avg_memory, HEALTH_MEMORY_STEPS, False)
        + _step_score(avg_load_time, HEALTH_LOAD_TIME_STEPS, False)
    ) / 3)


def _fps_bucket(value: float) -> str:
    label = FPS_DISTRIBUTION[0][0]
    for bucket_label, lower in FPS_DISTRIBUTION:
        if value >= lower:
            label = bucket_label
    return label
