from datetime import datetime
from typing import Any

from attr import dataclass, field


FPS = 'fps'
MEMORY_USAGE = 'memory_usage'
CPU_USAGE = 'cpu_usage'
NAVIGATION_TIME = 'navigation_time'
SCREEN_LOAD = 'screen_load'
LOAD_TIME = 'load_time'
SCREEN_TIME = 'screen_time'

LOAD_TIME_TYPES = frozenset({NAVIGATION_TIME, SCREEN_LOAD, LOAD_TIME})
METRIC_TYPES = frozenset({FPS, MEMORY_USAGE, CPU_USAGE, SCREEN_TIME}) | LOAD_TIME_TYPES


@dataclass(slots=True, frozen=True)
class MetricSample:
    session_id: str
    timestamp: datetime
    metric_type: str
    value: float
    context: dict[str, Any] = field(factory=dict)

    @property
    def epoch_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    @property
    def is_load_time(self) -> bool:
        return self.metric_type in LOAD_TIME_TYPES
