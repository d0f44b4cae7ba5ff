"""
Early Warning Engine.
Turns metric forecasts, route predictions, seasonal patterns and the memory
history into a ranked list of proactive alerts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

from perfscope.analyzer.constants import (
    EW_CONFIDENCE_THRESHOLD, EW_FPS_DEGRADATION_THRESHOLD, EW_MAX_ALERTS,
    EW_MEMORY_SPIKE_THRESHOLD, EW_SEASONAL_LOOKAHEAD_HOURS, FPS_DROP_RATIO,
    MEMORY_SPIKE_MULTIPLIER, SCORE_CRITICAL, SCORE_HIGH, SCORE_MEDIUM, SEVERITY_RANK,
)
from perfscope.analyzer.models import (
    EarlyWarningAlert, PerformancePrediction, PerformanceSummary, RoutePrediction, SeasonalPattern,
)
from perfscope.domain.entities.metric_sample import FPS
from perfscope.services.trend_engine import TrendEngine

logger = logging.getLogger(__name__)

HORIZON_HOURS = {'1h': 1, '24h': 24, '1d': 24, '7d': 24 * 7, '30d': 24 * 30}
DEFAULT_HORIZON_HOURS = 24

MEMORY_MIN_VALUES = 10
MEMORY_SMOOTHING_ALPHA = 0.3
MEMORY_SMOOTHING_STEPS = 3

BASE_RECOMMENDATIONS = {
    'performance_degradation': [
        "Review and optimize critical performance bottlenecks",
        "Implement caching strategies for frequently accessed data",
        "Consider horizontal scaling if possible",
        "Review recent deployments for performance regressions",
    ],
    'memory_spike': [
        "Implement memory cleanup procedures immediately",
        "Review memory-intensive operations and optimize",
        "Consider implementing memory pooling or recycling",
        "Monitor for memory leaks in recent code changes",
    ],
    'fps_drop': [
        "Optimize rendering pipeline and draw calls",
        "Review GPU-intensive operations",
        "Implement frame rate limiting or adaptive quality",
        "Check for background processes affecting rendering",
    ],
}
URGENT_RECOMMENDATION = "URGENT: Immediate intervention required - predicted severe degradation"

SEASONAL_PREPARATION = {
    'daily': "Implement time-based auto-scaling",
    'weekly': "Plan weekend/weekday performance adjustments",
    'monthly': "Coordinate with business calendar for peak planning",
}


def confidence_from_interval(interval: Tuple[float, float]) -> float:
    """Narrower intervals relative to their midpoint give higher confidence, never below 0.1"""
    low, high = interval
    midpoint = (low + high) / 2
    if midpoint <= 0:
        return 0.1
    return max(0.1, 1 - min((high - low) / midpoint, 1))


def trend_confidence(values: Sequence[float]) -> float:
    """Share of steps moving in the dominant direction, capped at 0.95"""
    if len(values) < 5:
        return 0.3
    diffs = [b - a for a, b in zip(values, values[1:])]
    rising = sum(1 for d in diffs if d > 0)
    falling = sum(1 for d in diffs if d < 0)
    return min(0.95, max(rising, falling) / len(diffs))


def degradation_severity(probability: float, predicted: float) -> str:
    if probability > 0.8 and predicted < SCORE_CRITICAL:
        return 'critical'
    if probability > 0.6 and predicted < SCORE_HIGH:
        return 'high'
    if probability > 0.4:
        return 'medium'
    return 'low'


def horizon_hours(horizon: str) -> int:
    return HORIZON_HOURS.get(horizon, DEFAULT_HORIZON_HOURS)


def time_to_issue(horizon: str) -> str:
    hours = horizon_hours(horizon)
    if hours < 24:
        return f"{hours} hours"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''}"


def format_time_to_issue(hours: float) -> str:
    """
    >>> format_time_to_issue(30)
    '1 day and 6 hours'
    """
    if hours < 1:
        return "Less than 1 hour"
    if hours < 24:
        return f"{round(hours)} hours"
    days = int(hours // 24)
    remaining = round(hours % 24)
    plural = 's' if days > 1 else ''
    if remaining == 0:
        return f"{days} day{plural}"
    return f"{days} day{plural} and {remaining} hours"


def prevention_recommendations(alert_type: str, predicted: float, current: float) -> List[str]:
    recommendations = list(BASE_RECOMMENDATIONS.get(alert_type, []))
    if predicted > 0 and current / predicted > 2:
        recommendations.insert(0, URGENT_RECOMMENDATION)
    return recommendations


def route_recommendations(prediction: RoutePrediction) -> List[str]:
    recommendations = [
        f"Optimize performance for route: {prediction.route_pattern}",
        "Review route-specific resource usage patterns",
        "Consider route-level caching or preloading strategies",
    ]
    for factor in prediction.contributing_factors:
        if 'memory' in factor:
            recommendations.append("Focus on memory optimization for this route")
        if 'FPS' in factor:
            recommendations.append("Optimize rendering performance for this route")
        if 'CPU' in factor:
            recommendations.append("Optimize CPU-intensive operations in this route")
    return recommendations


def seasonal_recommendations(pattern: SeasonalPattern) -> List[str]:
    recommendations = [
        f"Prepare for predicted {pattern.pattern_type} peak in {pattern.metric_type}",
        "Scale resources in advance of peak period",
        "Review historical mitigation strategies from similar peaks",
    ]
    if pattern.pattern_type in SEASONAL_PREPARATION:
        recommendations.append(SEASONAL_PREPARATION[pattern.pattern_type])
    return recommendations


class EarlyWarningEngine:
    def __init__(
        self,
        confidence_threshold: float = EW_CONFIDENCE_THRESHOLD,
        fps_threshold: float = EW_FPS_DEGRADATION_THRESHOLD,
        memory_threshold: float = EW_MEMORY_SPIKE_THRESHOLD,
        max_alerts: int = EW_MAX_ALERTS,
        trend_engine: Optional[TrendEngine] = None,
    ):
        self.confidence_threshold = confidence_threshold
        self.fps_threshold = fps_threshold
        self.memory_threshold = memory_threshold
        self.max_alerts = max_alerts
        self.trend_engine = trend_engine or TrendEngine()

    def generate(
        self,
        predictions: Sequence[PerformancePrediction],
        route_predictions: Sequence[RoutePrediction],
        seasonal_patterns: Sequence[SeasonalPattern],
        current: PerformanceSummary,
        memory_history: Optional[Sequence[float]] = None,
        now: Optional[datetime] = None,
    ) -> List[EarlyWarningAlert]:
        """
        Run every check, drop invalid alerts and rank the rest.

        Args:
            predictions: Metric forecasts (performance score, fps, ...)
            route_predictions: Per-route score predictions
            seasonal_patterns: Detected seasonal patterns
            current: Summary of the current period
            memory_history: Chronological memory readings, skipped when None
            now: Reference time, defaults to the current UTC time

        Returns:
            At most `max_alerts` alerts, by severity then confidence
        """
        now = now or datetime.now(timezone.utc)
        alerts: List[EarlyWarningAlert] = []
        alerts.extend(self.check_degradation(predictions, now))
        alerts.extend(self.check_routes(route_predictions, now))
        alerts.extend(self.check_seasonal_peaks(seasonal_patterns, now))
        if memory_history is not None:
            alerts.extend(self.check_memory_spike(memory_history, current, now))
        alerts.extend(self.check_fps_drop(predictions, current, now))

        valid = [a for a in alerts if self.is_valid(a, now)]
        valid.sort(key=lambda a: (-SEVERITY_RANK[a.severity], -a.confidence))
        logger.info(f"Early warnings: {len(valid)} valid of {len(alerts)} raised")
        return valid[:self.max_alerts]

    def is_valid(self, alert: EarlyWarningAlert, now: datetime) -> bool:
        return (
            alert.confidence >= self.confidence_threshold
            and alert.severity != 'low'
            and alert.predicted_issue_date > now
        )

    def check_degradation(self, predictions: Sequence[PerformancePrediction], now: datetime) -> List[EarlyWarningAlert]:
        alerts = []
        for prediction in predictions:
            confidence = confidence_from_interval(prediction.confidence_interval)
            if (
                prediction.probability_of_issue <= 0.5
                or prediction.predicted_value >= SCORE_MEDIUM
                or confidence <= self.confidence_threshold
            ):
                continue
            alerts.append(EarlyWarningAlert(
                id=f"perf_degradation_{prediction.prediction_id}",
                type='performance_degradation',
                severity=degradation_severity(prediction.probability_of_issue, prediction.predicted_value),
                confidence=round(confidence, 3),
                predicted_issue_date=now + timedelta(hours=horizon_hours(prediction.time_horizon)),
                time_to_issue=time_to_issue(prediction.time_horizon),
                affected_routes=[prediction.route_pattern] if prediction.route_pattern else [],
                # current performance is taken as 20 points above the forecast
                prevention_recommendations=prevention_recommendations(
                    'performance_degradation', prediction.predicted_value, prediction.predicted_value + 20
                ),
                monitoring_suggestions=[
                    "Monitor performance metrics every hour until risk passes",
                    "Set up automated alerts for performance threshold breaches",
                    "Prepare rollback strategies for recent deployments",
                    "Review resource usage patterns for anomalies",
                ],
                prediction_basis='trend_analysis',
            ))
        return alerts

    def check_routes(self, predictions: Sequence[RoutePrediction], now: datetime) -> List[EarlyWarningAlert]:
        alerts = []
        for prediction in predictions:
            if (
                prediction.predicted_performance_score >= SCORE_HIGH
                or prediction.forecast_accuracy <= self.confidence_threshold
            ):
                continue
            critical = prediction.predicted_performance_score < SCORE_CRITICAL
            alerts.append(EarlyWarningAlert(
                id=f"route_perf_{prediction.route_pattern}",
                type='performance_degradation',
                severity='critical' if critical else 'high',
                confidence=prediction.forecast_accuracy,
                predicted_issue_date=now + timedelta(hours=horizon_hours(prediction.prediction_horizon)),
                time_to_issue=time_to_issue(prediction.prediction_horizon),
                affected_routes=[prediction.route_pattern],
                prevention_recommendations=route_recommendations(prediction),
                monitoring_suggestions=[
                    f"Focus monitoring on {prediction.route_pattern} route",
                    "Check route-specific resource usage patterns",
                    "Review recent route-specific deployments or changes",
                    "Consider temporary route optimization measures",
                ],
                prediction_basis=prediction.prediction_model,
            ))
        return alerts

    def check_seasonal_peaks(self, patterns: Sequence[SeasonalPattern], now: datetime) -> List[EarlyWarningAlert]:
        alerts = []
        for pattern in patterns:
            if pattern.confidence <= 0.7 or pattern.seasonal_strength <= 0.3:
                continue
            hours_to_peak = (pattern.next_predicted_peak - now).total_seconds() / 3600
            if not 0 < hours_to_peak <= EW_SEASONAL_LOOKAHEAD_HOURS:
                continue
            alerts.append(EarlyWarningAlert(
                id=f"seasonal_peak_{pattern.pattern_id}",
                type='seasonal_peak',
                severity='high' if pattern.seasonal_strength > 0.5 else 'medium',
                confidence=pattern.confidence,
                predicted_issue_date=pattern.next_predicted_peak,
                time_to_issue=format_time_to_issue(hours_to_peak),
                prevention_recommendations=seasonal_recommendations(pattern),
                monitoring_suggestions=[
                    f"Monitor {pattern.metric_type} closely during predicted peak period",
                    "Prepare additional resources for increased load",
                    "Review historical performance during similar peak periods",
                    "Set up enhanced alerting during peak window",
                ],
                prediction_basis='seasonal_pattern',
            ))
        return alerts

    def check_memory_spike(
        self, history: Sequence[float], current: PerformanceSummary, now: datetime
    ) -> List[EarlyWarningAlert]:
        values = [v for v in history if v is not None and v > 0]
        if len(values) < MEMORY_MIN_VALUES:
            return []
        predicted = self.trend_engine.smoothed_forecast(values, MEMORY_SMOOTHING_ALPHA, MEMORY_SMOOTHING_STEPS)
        if predicted is None or predicted <= self.memory_threshold:
            return []
        if predicted <= current.avg_memory * MEMORY_SPIKE_MULTIPLIER:
            return []

        return [EarlyWarningAlert(
            id=f"memory_spike_{int(now.timestamp())}",
            type='memory_spike',
            severity='critical' if predicted > self.memory_threshold * 1.5 else 'high',
            confidence=round(trend_confidence(values), 3),
            predicted_issue_date=now + timedelta(hours=24),
            time_to_issue="24 hours",
            prevention_recommendations=prevention_recommendations('memory_spike', predicted, current.avg_memory),
            monitoring_suggestions=[
                "Monitor memory usage every 15 minutes",
                "Identify memory-intensive processes or routes",
                "Prepare memory cleanup procedures",
                "Review recent changes that might affect memory usage",
            ],
            prediction_basis='trend_analysis',
        )]

    def check_fps_drop(
        self, predictions: Sequence[PerformancePrediction], current: PerformanceSummary, now: datetime
    ) -> List[EarlyWarningAlert]:
        alerts = []
        for prediction in predictions:
            if prediction.metric_type != FPS:
                continue
            if prediction.predicted_value >= self.fps_threshold:
                continue
            if prediction.predicted_value >= current.avg_fps * FPS_DROP_RATIO:
                continue
            confidence = confidence_from_interval(prediction.confidence_interval)
            if confidence <= self.confidence_threshold:
                continue
            alerts.append(EarlyWarningAlert(
                id=f"fps_drop_{prediction.prediction_id}",
                type='fps_drop',
                severity='critical' if prediction.predicted_value < SCORE_CRITICAL else 'high',
                confidence=round(confidence, 3),
                predicted_issue_date=now + timedelta(hours=horizon_hours(prediction.time_horizon)),
                time_to_issue=time_to_issue(prediction.time_horizon),
                affected_routes=[prediction.route_pattern] if prediction.route_pattern else [],
                prevention_recommendations=prevention_recommendations(
                    'fps_drop', prediction.predicted_value, current.avg_fps
                ),
                monitoring_suggestions=[
                    "Monitor FPS metrics in real-time",
                    "Check GPU and rendering performance",
                    "Review draw call optimization opportunities",
                    "Prepare frame rate optimization strategies",
                ],
                prediction_basis='model_ensemble',
            ))
        return alerts
