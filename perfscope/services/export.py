"""
Report export as JSON or section-delimited CSV.

CSV layout: one block per collection, a `# <name>` line, a header row in fixed
column order, the rows, then a blank line. Column order is stable so that
downstream parsers can rely on it.
"""

import csv
import io
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import attr
import orjson

from perfscope.analyzer.models import AnalyticsReport
from perfscope.domain.entities.alert import AlertInstance

logger = logging.getLogger(__name__)

ROUTE_COLUMNS = (
    'route_pattern', 'route_name', 'total_sessions', 'unique_devices', 'avg_fps', 'avg_memory',
    'avg_cpu', 'avg_load_time', 'performance_score', 'risk_level', 'performance_trend',
)
PREDICTION_COLUMNS = (
    'route_pattern', 'predicted_performance_score', 'confidence_min', 'confidence_max',
    'prediction_horizon', 'trend_direction', 'recommendation_priority', 'forecast_accuracy',
)
CORRELATION_COLUMNS = (
    'source_route', 'target_route', 'correlation_strength', 'correlation_type',
    'performance_impact', 'confidence_level', 'statistical_significance', 'sample_size',
)
JOURNEY_PATTERN_COLUMNS = (
    'pattern_id', 'route_sequence', 'frequency', 'completion_rate', 'avg_journey_duration',
    'avg_performance_score', 'user_impact_score', 'optimization_potential',
)
EARLY_WARNING_COLUMNS = (
    'id', 'type', 'severity', 'confidence', 'predicted_issue_date', 'time_to_issue',
    'affected_routes', 'prediction_basis',
)
ALERT_COLUMNS = (
    'id', 'config_id', 'severity', 'status', 'metric_value', 'threshold_violated',
    'message', 'source', 'created_at',
)


def _default(obj):
    if attr.has(type(obj)):
        return attr.asdict(obj)
    raise TypeError


def to_json(report: AnalyticsReport, alerts: Optional[Sequence[AlertInstance]] = None) -> bytes:
    payload = report.model_dump(mode='json')
    if alerts is not None:
        payload['alerts'] = list(alerts)
    return orjson.dumps(payload, default=_default)


def _route_rows(report: AnalyticsReport) -> Iterable[tuple]:
    routes = report.route_analysis.routes if report.route_analysis else []
    for r in routes:
        yield (r.route_pattern, r.route_name, r.total_sessions, r.unique_devices, r.avg_fps, r.avg_memory,
               r.avg_cpu, r.avg_load_time, r.performance_score, r.risk_level, r.performance_trend)


def _prediction_rows(report: AnalyticsReport) -> Iterable[tuple]:
    for p in report.route_predictions or []:
        yield (p.route_pattern, p.predicted_performance_score, p.confidence_interval[0], p.confidence_interval[1],
               p.prediction_horizon, p.trend_direction, p.recommendation_priority, p.forecast_accuracy)


def _correlation_rows(report: AnalyticsReport) -> Iterable[tuple]:
    for c in report.route_correlations or []:
        yield (c.source_route, c.target_route, c.correlation_strength, c.correlation_type,
               c.performance_impact, c.confidence_level, c.statistical_significance, c.sample_size)


def _journey_pattern_rows(report: AnalyticsReport) -> Iterable[tuple]:
    patterns = report.journey_analysis.patterns if report.journey_analysis else []
    for p in patterns:
        yield (p.pattern_id, ' -> '.join(p.route_sequence), p.frequency, p.completion_rate, p.avg_journey_duration,
               p.avg_performance_score, p.user_impact_score, p.optimization_potential)


def _early_warning_rows(report: AnalyticsReport) -> Iterable[tuple]:
    for w in report.early_warnings or []:
        yield (w.id, w.type, w.severity, w.confidence, w.predicted_issue_date.isoformat(), w.time_to_issue,
               ';'.join(w.affected_routes), w.prediction_basis)


def _alert_rows(alerts: Sequence[AlertInstance]) -> Iterable[tuple]:
    for a in alerts:
        yield (a.id, a.config_id, a.severity, a.status, a.metric_value, a.threshold_violated,
               a.message, a.source, a.created_at.isoformat())


def to_csv(report: AnalyticsReport, alerts: Optional[Sequence[AlertInstance]] = None) -> str:
    """Every block is written even when it has no rows"""
    blocks: List[Tuple[str, Tuple[str, ...], Callable[[], Iterable[tuple]]]] = [
        ('routes', ROUTE_COLUMNS, lambda: _route_rows(report)),
        ('predictions', PREDICTION_COLUMNS, lambda: _prediction_rows(report)),
        ('correlations', CORRELATION_COLUMNS, lambda: _correlation_rows(report)),
        ('journey_patterns', JOURNEY_PATTERN_COLUMNS, lambda: _journey_pattern_rows(report)),
        ('early_warnings', EARLY_WARNING_COLUMNS, lambda: _early_warning_rows(report)),
        ('alerts', ALERT_COLUMNS, lambda: _alert_rows(alerts or [])),
    ]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    for index, (name, columns, rows) in enumerate(blocks):
        if index:
            buffer.write('\n')
        buffer.write(f'# {name}\n')
        writer.writerow(columns)
        writer.writerows(rows())
    return buffer.getvalue()
