from datetime import datetime
from typing import Any

from attr import dataclass, field


SEVERITY_WARNING = 'warning'
SEVERITY_CRITICAL = 'critical'
SEVERITY_EMERGENCY = 'emergency'

STATUS_ACTIVE = 'active'
STATUS_ACKNOWLEDGED = 'acknowledged'
STATUS_RESOLVED = 'resolved'


@dataclass(slots=True, frozen=True)
class AlertConfig:
    id: str
    name: str
    metric_type: str
    threshold_warning: float
    threshold_critical: float
    notification_channels: list[str] = field(factory=list)
    suppression_rules: dict[str, Any] = field(factory=dict)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class AlertInstance:
    """Triggered alert. Status moves active -> acknowledged -> resolved."""

    id: str
    config_id: str
    severity: str
    metric_value: float
    threshold_violated: float
    message: str
    source: str
    created_at: datetime
    status: str = STATUS_ACTIVE
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    metadata: dict[str, Any] = field(factory=dict)
