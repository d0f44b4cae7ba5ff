"""
Trend, regression and seasonality engine.

Fits trends over metric series, compares a recent window against its
baseline, finds periodic patterns and produces short horizon forecasts.
"""

import calendar
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from perfscope.analyzer.models import Anomaly, PerformancePrediction, RegressionResult, SeasonalPattern
from perfscope.analyzer.utils.stats import (
    clamp, describe, exponential_smoothing, linear_trend, mann_kendall, mean,
    moving_average, percentile_rank, residual_standard_error, z_score_severity,
)
from perfscope.domain.entities.metric_sample import FPS, LOAD_TIME, MetricSample

logger = logging.getLogger(__name__)

__all__ = [
    'TrendEngine', 'HORIZON_HOURS', 'ISSUE_THRESHOLDS', 'LOWER_IS_WORSE',
    'linear_trend', 'exponential_smoothing', 'moving_average', 'describe', 'mann_kendall',
]

PERFORMANCE_SCORE = 'performance_score'

HORIZON_HOURS = {'1h': 1, '24h': 24, '7d': 24 * 7, '30d': 24 * 30}

# metric -> level past which a forecast counts as an issue
ISSUE_THRESHOLDS = {
    PERFORMANCE_SCORE: 60.0,
    FPS: 45.0,
    'memory_usage': 500.0,
    'cpu_usage': 80.0,
    LOAD_TIME: 3000.0,
}
LOWER_IS_WORSE = frozenset({PERFORMANCE_SCORE, FPS})
BOUNDED_0_100 = frozenset({PERFORMANCE_SCORE, 'cpu_usage'})

WEEKDAYS = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


def _normal_cdf(z: float) -> float:
    return 0.5 * (1 + math.erf(z / math.sqrt(2)))


def _matches(sample: MetricSample, metric_type: str) -> bool:
    if metric_type == LOAD_TIME:
        return sample.is_load_time
    return sample.metric_type == metric_type


class _Cycle:
    """One candidate period for seasonality detection"""

    def __init__(
        self,
        pattern_type: str,
        bins: int,
        min_span: timedelta,
        bin_of: Callable[[datetime], int],
        label_of: Callable[[int], str],
        next_occurrence: Callable[[int, datetime], datetime],
    ):
        self.pattern_type = pattern_type
        self.bins = bins
        self.min_span = min_span
        self.bin_of = bin_of
        self.label_of = label_of
        self.next_occurrence = next_occurrence


def _next_minute_slot(bin_index: int, now: datetime) -> datetime:
    candidate = now.replace(minute=bin_index * 5, second=0, microsecond=0)
    return candidate if candidate > now else candidate + timedelta(hours=1)


def _next_hour(bin_index: int, now: datetime) -> datetime:
    candidate = now.replace(hour=bin_index, minute=0, second=0, microsecond=0)
    return candidate if candidate > now else candidate + timedelta(days=1)


def _next_weekday(bin_index: int, now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    candidate = midnight + timedelta(days=(bin_index - now.weekday()) % 7)
    return candidate if candidate > now else candidate + timedelta(days=7)


def _next_month_day(bin_index: int, now: datetime) -> datetime:
    day = bin_index + 1
    year, month = now.year, now.month
    for _ in range(13):
        if day <= calendar.monthrange(year, month)[1]:
            candidate = now.replace(year=year, month=month, day=day, hour=0, minute=0, second=0, microsecond=0)
            if candidate > now:
                return candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1
    raise ValueError(f'no day {day} within a year of {now}')


CYCLES = (
    _Cycle('hourly', 12, timedelta(hours=2), lambda ts: ts.minute // 5,
           lambda b: f'xx:{b * 5:02d}', _next_minute_slot),
    _Cycle('daily', 24, timedelta(days=2), lambda ts: ts.hour,
           lambda b: f'{b}:00', _next_hour),
    _Cycle('weekly', 7, timedelta(days=14), lambda ts: ts.weekday(),
           lambda b: WEEKDAYS[b], _next_weekday),
    _Cycle('monthly', 31, timedelta(days=60), lambda ts: ts.day - 1,
           lambda b: f'day {b + 1}', _next_month_day),
)


class TrendEngine:
    """
    Regression, seasonality, forecasting and anomaly detection over metric samples.

    Args:
        regression_threshold: relative worsening that counts as a regression
        critical_regression: relative worsening that makes it critical
        min_confidence: seasonal patterns at or below this confidence are dropped
        min_strength: seasonal patterns at or below this strength are dropped
    """

    def __init__(
        self,
        regression_threshold: float = 0.2,
        critical_regression: float = 0.5,
        min_confidence: float = 0.7,
        min_strength: float = 0.3,
    ):
        self.regression_threshold = regression_threshold
        self.critical_regression = critical_regression
        self.min_confidence = min_confidence
        self.min_strength = min_strength

    def detect_regression(
        self,
        samples: Sequence[MetricSample],
        metric_type: str,
        now: datetime,
        recent_window: timedelta = timedelta(hours=6),
        lookback: timedelta = timedelta(hours=24),
        min_samples: int = 10,
        min_per_window: int = 3,
    ) -> Optional[RegressionResult]:
        """
        Compare the mean of the recent window with the mean of the rest of the lookback.

        Returns None when there is not enough data to decide. fps regresses when it
        drops, every other metric when it rises.
        """
        window_start = now - lookback
        recent_start = now - recent_window
        in_window = [s for s in samples if _matches(s, metric_type) and window_start <= s.timestamp <= now]
        if len(in_window) < min_samples:
            return None

        recent = [s.value for s in in_window if s.timestamp >= recent_start]
        baseline = [s.value for s in in_window if s.timestamp < recent_start]
        if len(recent) < min_per_window or len(baseline) < min_per_window:
            return None

        recent_avg = mean(recent)
        baseline_avg = mean(baseline)
        if baseline_avg == 0:
            change = 0.0
        elif metric_type in LOWER_IS_WORSE:
            change = (baseline_avg - recent_avg) / baseline_avg
        else:
            change = (recent_avg - baseline_avg) / baseline_avg

        is_regression = change > self.regression_threshold
        severity = None
        if is_regression:
            severity = 'critical' if change > self.critical_regression else 'warning'
            logger.info(f"Regression in {metric_type}: {change * 100:.1f}% worse than baseline")

        return RegressionResult(
            metric_type=metric_type,
            recent_average=round(recent_avg, 2),
            baseline_average=round(baseline_avg, 2),
            change_ratio=round(change, 4),
            recent_count=len(recent),
            baseline_count=len(baseline),
            is_regression=is_regression,
            severity=severity,
        )

    def detect_seasonality(
        self, samples: Sequence[MetricSample], metric_type: str, now: datetime
    ) -> List[SeasonalPattern]:
        """
        Try hourly, daily, weekly and monthly cycles. A cycle is considered when the
        data spans at least two of its periods and fills half of its bins.

        confidence is the share of variance explained by the bin means,
        seasonal_strength the bin range relative to the mean.
        """
        points = sorted(
            ((s.timestamp.astimezone(timezone.utc), s.value) for s in samples if _matches(s, metric_type)),
            key=lambda p: p[0],
        )
        if len(points) < 2:
            return []
        now = now.astimezone(timezone.utc)
        span = points[-1][0] - points[0][0]
        values = np.asarray([v for _, v in points], dtype=float)
        overall = float(values.mean())
        total_variance = float(values.var())
        if total_variance == 0:
            return []

        patterns = []
        for cycle in CYCLES:
            if span < cycle.min_span:
                continue
            binned: Dict[int, List[float]] = defaultdict(list)
            for ts, value in points:
                binned[cycle.bin_of(ts)].append(value)
            if len(binned) * 2 < cycle.bins:
                continue

            bin_means = {b: float(np.mean(v)) for b, v in binned.items()}
            between = sum(len(binned[b]) * (m - overall) ** 2 for b, m in bin_means.items()) / len(values)
            confidence = clamp(between / total_variance, 0.0, 1.0)
            spread = max(bin_means.values()) - min(bin_means.values())
            strength = clamp(spread / abs(overall), 0.0, 1.0) if overall else 0.0
            if confidence <= self.min_confidence or strength <= self.min_strength:
                continue

            means = np.asarray(list(bin_means.values()))
            centre, deviation = float(means.mean()), float(means.std())
            peak_bin = max(bin_means, key=bin_means.get)
            low_bin = min(bin_means, key=bin_means.get)
            peaks = sorted(b for b, m in bin_means.items() if m > centre + 0.5 * deviation) or [peak_bin]
            lows = sorted(b for b, m in bin_means.items() if m < centre - 0.5 * deviation) or [low_bin]

            patterns.append(SeasonalPattern(
                pattern_id=f'{metric_type}_{cycle.pattern_type}',
                metric_type=metric_type,
                pattern_type=cycle.pattern_type,
                confidence=round(confidence, 3),
                seasonal_strength=round(strength, 3),
                amplitude=round(spread / 2, 2),
                peak_times=[cycle.label_of(b) for b in peaks],
                low_times=[cycle.label_of(b) for b in lows],
                next_predicted_peak=cycle.next_occurrence(peak_bin, now),
                next_predicted_low=cycle.next_occurrence(low_bin, now),
            ))

        return sorted(patterns, key=lambda p: p.confidence, reverse=True)

    def forecast(
        self,
        timestamps: Sequence[datetime],
        values: Sequence[float],
        metric_type: str,
        horizon: str = '24h',
        now: Optional[datetime] = None,
        route_pattern: Optional[str] = None,
    ) -> Optional[PerformancePrediction]:
        """
        Linear regression over hours since the first point, projected `horizon`
        past now, with a 95% interval from the residual standard error.
        """
        if horizon not in HORIZON_HOURS:
            raise ValueError(f'unknown horizon {horizon}')
        if len(values) < 3 or len(values) != len(timestamps):
            return None

        first = min(timestamps)
        now = now or max(timestamps)
        xs = [(ts - first).total_seconds() / 3600 for ts in timestamps]
        trend = linear_trend(values, xs)
        target_x = (now - first).total_seconds() / 3600 + HORIZON_HOURS[horizon]
        predicted = trend.slope * target_x + trend.intercept

        upper_bound = 100.0 if metric_type in BOUNDED_0_100 else math.inf
        predicted = clamp(predicted, 0.0, upper_bound)
        standard_error = residual_standard_error(xs, values, trend) or 0.0
        margin = 1.96 * standard_error
        interval = (
            round(clamp(predicted - margin, 0.0, upper_bound), 2),
            round(clamp(predicted + margin, 0.0, upper_bound), 2),
        )

        return PerformancePrediction(
            prediction_id=f"{metric_type}_{horizon}" + (f"_{route_pattern}" if route_pattern else ""),
            metric_type=metric_type,
            predicted_value=round(predicted, 2),
            confidence_interval=interval,
            probability_of_issue=round(self.probability_of_issue(metric_type, predicted, standard_error), 3),
            time_horizon=horizon,
            route_pattern=route_pattern,
        )

    @staticmethod
    def probability_of_issue(metric_type: str, predicted: float, standard_error: float) -> float:
        """Chance that the metric ends up past its issue threshold, assuming normal error"""
        threshold = ISSUE_THRESHOLDS.get(metric_type)
        if threshold is None:
            return 0.0
        lower_is_worse = metric_type in LOWER_IS_WORSE
        if standard_error <= 0:
            violated = predicted < threshold if lower_is_worse else predicted > threshold
            return 1.0 if violated else 0.0
        below = _normal_cdf((threshold - predicted) / standard_error)
        return below if lower_is_worse else 1 - below

    def detect_anomalies(
        self,
        values: Sequence[float],
        metric_type: str,
        timestamps: Optional[Sequence[datetime]] = None,
        route_patterns: Optional[Sequence[Optional[str]]] = None,
        threshold: float = 2.5,
    ) -> List[Anomaly]:
        """z-score outliers; needs at least 5 values and some spread"""
        if len(values) < 5:
            return []
        stats = describe(values)
        if stats.standard_deviation == 0:
            return []

        anomalies = []
        for index, value in enumerate(values):
            z_score = abs((value - stats.mean) / stats.standard_deviation)
            if z_score <= threshold:
                continue
            anomalies.append(Anomaly(
                metric_type=metric_type,
                value=round(value, 2),
                expected_value=round(stats.mean, 2),
                deviation=round(value - stats.mean, 2),
                z_score=round(z_score, 2),
                severity=z_score_severity(z_score),
                timestamp=timestamps[index] if timestamps else None,
                route_pattern=route_patterns[index] if route_patterns else None,
                percentile_rank=round(percentile_rank(value, values), 1),
            ))
        return anomalies

    @staticmethod
    def smoothed_forecast(values: Sequence[float], alpha: float = 0.3, steps: int = 3) -> Optional[float]:
        """Level after exponential smoothing held `steps` ahead"""
        if not values:
            return None
        return exponential_smoothing(values, alpha, steps)[-1]


def series_from_samples(samples: Sequence[MetricSample], metric_type: str) -> Tuple[List[datetime], List[float]]:
    ordered = sorted((s for s in samples if _matches(s, metric_type)), key=lambda s: s.timestamp)
    return [s.timestamp for s in ordered], [s.value for s in ordered]
