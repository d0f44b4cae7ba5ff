"""
Alerting Service.
Checks metric values against configured thresholds, detects regressions and
manages the alert lifecycle (active -> acknowledged -> resolved).
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from perfscope.analyzer.errors import AlertNotFoundError, AlertStateError
from perfscope.domain.entities.alert import (
    SEVERITY_CRITICAL, SEVERITY_WARNING, STATUS_ACKNOWLEDGED, STATUS_ACTIVE, STATUS_RESOLVED,
    AlertConfig, AlertInstance,
)
from perfscope.domain.entities.metric_sample import CPU_USAGE, FPS, LOAD_TIME, MEMORY_USAGE, MetricSample
from perfscope.domain.repositories.alert_repo import IAlertRepository
from perfscope.services.trend_engine import TrendEngine

logger = logging.getLogger(__name__)

REGRESSION_SOURCE = 'regression_detector'
THRESHOLD_SOURCE = 'threshold_check'
REGRESSION_METRICS = (CPU_USAGE, MEMORY_USAGE, LOAD_TIME, FPS)

PERCENT_METRICS = frozenset({CPU_USAGE, MEMORY_USAGE})
MILLISECOND_METRICS = frozenset({LOAD_TIME, 'navigation_time', 'screen_load', 'page_load_time', 'response_time'})
# metrics where a lower value is the problem
LOWER_IS_WORSE = frozenset({FPS})


def format_metric_value(value: float, metric_type: str) -> str:
    if metric_type in PERCENT_METRICS:
        return f"{value:.1f}%"
    if metric_type in MILLISECOND_METRICS:
        return f"{value:.0f}ms"
    return f"{value:g}"


def generate_alert_message(config: AlertConfig, value: float, severity: str) -> str:
    """e.g. 'CRITICAL: High CPU - cpu usage reached 91.0% (threshold: 90.0%)'"""
    threshold = config.threshold_critical if severity == SEVERITY_CRITICAL else config.threshold_warning
    return (
        f"{severity.upper()}: {config.name} - {config.metric_type.replace('_', ' ', 1)} reached "
        f"{format_metric_value(value, config.metric_type)} "
        f"(threshold: {format_metric_value(threshold, config.metric_type)})"
    )


def classify_value(config: AlertConfig, value: float) -> Optional[str]:
    """Severity of a value for the config, critical checked first; None when no threshold is crossed"""
    if config.metric_type in LOWER_IS_WORSE:
        if value <= config.threshold_critical:
            return SEVERITY_CRITICAL
        if value <= config.threshold_warning:
            return SEVERITY_WARNING
        return None
    if value >= config.threshold_critical:
        return SEVERITY_CRITICAL
    if value >= config.threshold_warning:
        return SEVERITY_WARNING
    return None


def regression_config_id(metric_type: str) -> str:
    return f'regression:{metric_type}'


class AlertingService:
    def __init__(self, repository: IAlertRepository, trend_engine: Optional[TrendEngine] = None):
        self.repository = repository
        self.trend_engine = trend_engine or TrendEngine()

    async def check_performance_metrics(
        self, metrics: Dict[str, float], now: Optional[datetime] = None
    ) -> List[AlertInstance]:
        """
        Evaluate the latest value per metric type against every active config.

        Args:
            metrics: metric type -> latest value
            now: Creation time of new alerts

        Returns:
            Newly created alerts. Configs that already have an active alert are skipped.
        """
        now = now or datetime.now(timezone.utc)
        triggered = []
        for config in await self.repository.list_configs(only_active=True):
            if config.metric_type not in metrics:
                continue
            if await self.repository.get_active_instance(config.id) is not None:
                continue
            value = metrics[config.metric_type]
            severity = classify_value(config, value)
            if severity is None:
                continue
            threshold = config.threshold_critical if severity == SEVERITY_CRITICAL else config.threshold_warning
            alert = await self.create_alert(AlertInstance(
                id=str(uuid.uuid4()),
                config_id=config.id,
                severity=severity,
                metric_value=value,
                threshold_violated=threshold,
                message=generate_alert_message(config, value, severity),
                source=THRESHOLD_SOURCE,
                created_at=now,
            ), config)
            triggered.append(alert)
        return triggered

    async def create_alert(self, alert: AlertInstance, config: Optional[AlertConfig] = None) -> AlertInstance:
        stored = await self.repository.add_instance(alert)
        channels = config.notification_channels if config else []
        if channels:
            logger.warning(f"Alert {stored.id} triggered ({stored.severity}): {stored.message} -> {', '.join(channels)}")
        else:
            logger.info(f"Alert {stored.id} triggered ({stored.severity}): {stored.message}")
        return stored

    async def evaluate_regressions(
        self,
        samples: Sequence[MetricSample],
        now: Optional[datetime] = None,
        metric_types: Sequence[str] = REGRESSION_METRICS,
    ) -> List[AlertInstance]:
        """Regression alerts for the last 24 hours, one active alert per metric at most"""
        now = now or datetime.now(timezone.utc)
        alerts = []
        for metric_type in metric_types:
            result = self.trend_engine.detect_regression(samples, metric_type, now)
            if result is None or not result.is_regression:
                continue
            config_id = regression_config_id(metric_type)
            if await self.repository.get_active_instance(config_id) is not None:
                continue

            direction = 'dropped' if metric_type in LOWER_IS_WORSE else 'increased'
            threshold_factor = 1 - self.trend_engine.regression_threshold if metric_type in LOWER_IS_WORSE \
                else 1 + self.trend_engine.regression_threshold
            alert = await self.create_alert(AlertInstance(
                id=str(uuid.uuid4()),
                config_id=config_id,
                severity=result.severity,
                metric_value=result.recent_average,
                threshold_violated=round(result.baseline_average * threshold_factor, 2),
                message=(f"Performance regression detected: {metric_type} {direction} "
                         f"by {result.change_ratio * 100:.1f}%"),
                source=REGRESSION_SOURCE,
                created_at=now,
                metadata={
                    'recent_average': result.recent_average,
                    'historical_average': result.baseline_average,
                    'percentage_increase': result.change_ratio,
                    'detection_type': 'regression',
                },
            ))
            alerts.append(alert)
        return alerts

    async def acknowledge(self, alert_id: str, user: str, now: Optional[datetime] = None) -> AlertInstance:
        alert = await self._get(alert_id)
        if alert.status != STATUS_ACTIVE:
            raise AlertStateError(f"Alert {alert_id} is {alert.status}, only active alerts can be acknowledged")
        alert.status = STATUS_ACKNOWLEDGED
        alert.acknowledged_at = now or datetime.now(timezone.utc)
        alert.acknowledged_by = user
        return await self.repository.update_instance(alert)

    async def resolve(self, alert_id: str, user: str, now: Optional[datetime] = None) -> AlertInstance:
        alert = await self._get(alert_id)
        if alert.status not in (STATUS_ACTIVE, STATUS_ACKNOWLEDGED):
            raise AlertStateError(f"Alert {alert_id} is already {alert.status}")
        alert.status = STATUS_RESOLVED
        alert.resolved_at = now or datetime.now(timezone.utc)
        alert.resolved_by = user
        return await self.repository.update_instance(alert)

    async def history(
        self, status: Optional[str] = None, severity: Optional[str] = None, limit: int = 50
    ) -> List[AlertInstance]:
        return await self.repository.list_instances(status=status, severity=severity, limit=limit)

    async def list_configs(self) -> List[AlertConfig]:
        return await self.repository.list_configs(only_active=False)

    async def save_config(self, config: AlertConfig) -> AlertConfig:
        if config.threshold_warning is None or config.threshold_critical is None:
            raise ValueError("Both warning and critical thresholds are required")
        return await self.repository.save_config(config)

    async def delete_config(self, config_id: str) -> None:
        if not await self.repository.delete_config(config_id):
            raise AlertNotFoundError(config_id)

    async def _get(self, alert_id: str) -> AlertInstance:
        alert = await self.repository.get_instance(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert
