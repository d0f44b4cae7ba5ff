"""
Route performance predictions.

Fits a line through the per-visit performance scores of a route (x in days
since the first visit) and projects it 1, 7 and 30 days past the last visit.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np

from perfscope.analyzer.models import AppAverages, RoutePerformanceData, RoutePrediction, RouteSessionSample
from perfscope.analyzer.utils.stats import clamp, linear_trend, residual_standard_error
from perfscope.services.route_analyzer import sample_score

logger = logging.getLogger(__name__)

HORIZON_DAYS = {'1d': 1, '7d': 7, '30d': 30}
PRIMARY_HORIZON = '7d'

MIN_SESSIONS = 3
DEFAULT_SCORE = 50.0
DEFAULT_INTERVAL = (30.0, 70.0)
DEFAULT_STANDARD_ERROR = 20.0

LOW_ACCURACY = 0.6
FULL_SAMPLE_SIZE = 20
FULL_TIME_SPAN_DAYS = 30

SECONDS_PER_DAY = 24 * 60 * 60


def contributing_factors(route: RoutePerformanceData, averages: AppAverages) -> List[str]:
    factors = []
    if route.avg_fps < averages.avg_fps * 0.8:
        factors.append('Below average FPS performance')
    if route.avg_memory > averages.avg_memory * 1.2:
        factors.append('High memory usage pattern')
    if route.avg_cpu > averages.avg_cpu * 1.2:
        factors.append('Elevated CPU usage')
    if route.performance_trend == 'degrading':
        factors.append('Declining performance trend')
    if route.unique_devices < 3:
        factors.append('Limited device diversity in data')
    return factors or ['Stable performance pattern']


def recommendation_priority(predicted_score: float, route: RoutePerformanceData) -> str:
    if predicted_score < 50 or route.risk_level == 'high':
        return 'high'
    if predicted_score < 70 or route.performance_trend == 'degrading':
        return 'medium'
    return 'low'


def forecast_accuracy(sessions: Sequence[RouteSessionSample]) -> float:
    """
    Heuristic accuracy from data consistency, sample size and time span, each in [0, 1].
    Fewer than 5 visits always give 0.6.
    """
    if len(sessions) < 5:
        return LOW_ACCURACY

    fps_std = float(np.std([s.avg_fps for s in sessions]))
    memory_std = float(np.std([s.avg_memory for s in sessions]))
    consistency = (max(0.0, 1 - fps_std / 30) + max(0.0, 1 - memory_std / 200)) / 2
    sample_size = min(1.0, len(sessions) / FULL_SAMPLE_SIZE)
    span_days = (sessions[-1].timestamp - sessions[0].timestamp).total_seconds() / SECONDS_PER_DAY
    time_span = min(1.0, span_days / FULL_TIME_SPAN_DAYS)
    return clamp((consistency + sample_size + time_span) / 3, 0.0, 1.0)


class RoutePredictionEngine:
    def predict_for_horizon(
        self, sessions: Sequence[RouteSessionSample], horizon_days: int
    ) -> Tuple[float, Tuple[float, float]]:
        """
        Predicted score and 95% interval `horizon_days` after the last visit.

        Args:
            sessions: Visits of one route ordered by timestamp
            horizon_days: Days past the last visit

        Returns:
            (score, (low, high)), all clamped to [0, 100]
        """
        if len(sessions) < MIN_SESSIONS:
            return DEFAULT_SCORE, DEFAULT_INTERVAL

        first = sessions[0].timestamp
        xs = [(s.timestamp - first).total_seconds() / SECONDS_PER_DAY for s in sessions]
        ys = [sample_score(s) for s in sessions]
        trend = linear_trend(ys, xs)
        raw = trend.slope * (max(xs) + horizon_days) + trend.intercept

        standard_error = residual_standard_error(xs, ys, trend)
        if standard_error is None:
            standard_error = DEFAULT_STANDARD_ERROR
        margin = 1.96 * standard_error
        interval = (round(clamp(raw - margin, 0, 100), 2), round(clamp(raw + margin, 0, 100), 2))
        return round(clamp(raw, 0, 100), 2), interval

    def predict_route(self, route: RoutePerformanceData, averages: AppAverages) -> RoutePrediction:
        ordered = sorted(route.sessions, key=lambda s: s.timestamp)
        horizons = {name: self.predict_for_horizon(ordered, days) for name, days in HORIZON_DAYS.items()}
        score, interval = horizons[PRIMARY_HORIZON]

        return RoutePrediction(
            route_pattern=route.route_pattern,
            predicted_performance_score=score,
            confidence_interval=interval,
            prediction_horizon=PRIMARY_HORIZON,
            horizon_scores={name: value[0] for name, value in horizons.items()},
            contributing_factors=contributing_factors(route, averages),
            recommendation_priority=recommendation_priority(score, route),
            forecast_accuracy=round(forecast_accuracy(ordered), 3),
            trend_direction=route.performance_trend,
            prediction_model='linear_regression' if len(ordered) >= MIN_SESSIONS else 'insufficient_data',
        )

    def predict_all(self, routes: List[RoutePerformanceData], averages: AppAverages) -> List[RoutePrediction]:
        """Predictions for every route with at least one visit, most accurate first"""
        predictions = [self.predict_route(route, averages) for route in routes if route.total_sessions >= 1]
        predictions.sort(key=lambda p: p.forecast_accuracy, reverse=True)
        logger.debug(f"Predicted {len(predictions)} routes")
        return predictions
