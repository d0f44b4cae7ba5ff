"""
Tests for report export
"""

import pytest
import orjson
from datetime import datetime, timezone

from perfscope.analyzer.models import (
    AnalyticsReport, EarlyWarningAlert, RoutePerformanceAnalysis, RoutePrediction, RouteSessionSample,
)
from perfscope.domain.entities.alert import AlertInstance
from perfscope.services.export import ALERT_COLUMNS, ROUTE_COLUMNS, to_csv, to_json
from perfscope.services.route_analyzer import RoutePerformanceAnalyzer


NOW = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)


def create_report() -> AnalyticsReport:
    visit = RouteSessionSample(
        session_id='s1',
        device_id='d1',
        device_type='iPhone 14',
        route_pattern='/game/:id',
        route_name='Game',
        timestamp=NOW,
        screen_duration=10_000,
        avg_fps=60,
        avg_memory=0,
        avg_cpu=0,
        avg_load_time=0,
    )
    route = RoutePerformanceAnalyzer().build_route('/game/:id', [visit])
    return AnalyticsReport(
        generated_at=NOW,
        time_range={'start': None, 'end': NOW},
        route_analysis=RoutePerformanceAnalysis(routes=[route]),
        route_predictions=[RoutePrediction(
            route_pattern='/game/:id',
            predicted_performance_score=70,
            confidence_interval=(60, 80),
            recommendation_priority='medium',
            forecast_accuracy=0.8,
            trend_direction='stable',
        )],
        early_warnings=[EarlyWarningAlert(
            id='w1',
            type='seasonal_peak',
            severity='high',
            confidence=0.9,
            predicted_issue_date=NOW,
            time_to_issue='10 hours',
            affected_routes=['/home', '/game/:id'],
            prediction_basis='seasonal_analysis',
        )],
    )


def create_alert() -> AlertInstance:
    return AlertInstance(
        id='a1',
        config_id='cpu-high',
        severity='critical',
        metric_value=91,
        threshold_violated=90,
        message='CRITICAL: High CPU - cpu usage reached 91.0% (threshold: 90.0%)',
        source='threshold_check',
        created_at=NOW,
    )


def blocks(text: str) -> dict:
    """CSV text -> block name -> list of lines after the name line"""
    result = {}
    for chunk in text.strip('\n').split('\n\n'):
        lines = chunk.split('\n')
        result[lines[0].removeprefix('# ')] = lines[1:]
    return result


class TestCsvExport:
    def test_all_blocks_present_in_order(self):
        text = to_csv(AnalyticsReport(generated_at=NOW, time_range={}))
        parsed = blocks(text)

        assert list(parsed) == ['routes', 'predictions', 'correlations', 'journey_patterns', 'early_warnings', 'alerts']
        # header only
        assert all(len(lines) == 1 for lines in parsed.values())
        assert parsed['routes'][0] == ','.join(ROUTE_COLUMNS)
        assert parsed['alerts'][0] == ','.join(ALERT_COLUMNS)

    def test_rows(self):
        parsed = blocks(to_csv(create_report(), [create_alert()]))

        assert parsed['routes'][1].startswith('/game/:id,Game,1,1,60')
        assert parsed['predictions'][1] == '/game/:id,70.0,60.0,80.0,7d,stable,medium,0.8'
        assert parsed['early_warnings'][1].endswith('/home;/game/:id,seasonal_analysis')
        assert parsed['alerts'][1].startswith('a1,cpu-high,critical,active,91,90,')
        assert 'High CPU - cpu usage reached 91.0% (threshold: 90.0%)' in parsed['alerts'][1]


class TestJsonExport:
    def test_report(self):
        payload = orjson.loads(to_json(create_report()))

        assert payload['generated_at'].startswith('2025-03-04T12:00:00')
        assert payload['route_analysis']['routes'][0]['route_pattern'] == '/game/:id'
        assert 'alerts' not in payload

    def test_with_alerts(self):
        payload = orjson.loads(to_json(create_report(), [create_alert()]))

        assert payload['alerts'][0]['id'] == 'a1'
        assert payload['alerts'][0]['status'] == 'active'
        assert payload['alerts'][0]['created_at'].startswith('2025-03-04T12:00:00')


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
