"""
CPU usage inference.

Most clients cannot read CPU utilisation directly, so when a session has no
cpu_usage samples an estimate is derived from FPS, memory and load time.
The result is an approximation for ranking and dashboards, not a measurement:
never alert on an inferred value as if it were a real reading.
"""

import logging
from typing import List, Optional

from attr import dataclass, field

logger = logging.getLogger(__name__)

TARGET_FPS = 60

# (lower bound, factor), checked top down
MEMORY_PRESSURE_BUCKETS = ((600, 0.8), (400, 0.6), (200, 0.4), (100, 0.2))
LOAD_TIME_BUCKETS = ((3000, 0.7), (2000, 0.5), (1000, 0.3), (500, 0.1))

DEVICE_MULTIPLIERS = (
    ('iphone', 0.8),
    ('ipad', 0.9),
    ('simulator', 1.2),
    ('android', 1.1),
)

WEIGHT_FPS = 0.4
WEIGHT_MEMORY = 0.3
WEIGHT_LOAD = 0.2
WEIGHT_DEVICE = 0.1

DEFAULT_LOAD_TIME = 1000.0


@dataclass(slots=True, frozen=True)
class InferenceCheck:
    is_realistic: bool
    confidence: float
    warnings: List[str] = field(factory=list)


def _bucket(value: float, buckets) -> float:
    for lower, factor in buckets:
        if value >= lower:
            return factor
    return 0.0


def device_multiplier(device_type: Optional[str]) -> float:
    name = (device_type or '').lower()
    for marker, multiplier in DEVICE_MULTIPLIERS:
        if marker in name:
            return multiplier
    return 1.0


def device_minimum_cpu(device_type: Optional[str]) -> float:
    """Idle floor: a running app never sits at 0% CPU"""
    name = (device_type or '').lower()
    if 'simulator' in name:
        return 15.0
    if 'iphone' in name or 'ipad' in name:
        return 5.0
    if 'android' in name:
        return 8.0
    return 10.0


def infer_cpu_usage(
    fps: float,
    memory_usage: float,
    load_time: Optional[float] = None,
    device_type: Optional[str] = None,
) -> float:
    """
    Estimate CPU usage in percent.

    Args:
        fps: Average frames per second
        memory_usage: Average memory usage in MB
        load_time: Average load time in ms, 1000 when unknown
        device_type: Free-form device name (iPhone 14, Android, iOS Simulator...)

    Returns:
        Approximate CPU usage within [device minimum, 100]
    """
    if load_time is None:
        load_time = DEFAULT_LOAD_TIME
    multiplier = device_multiplier(device_type)

    fps_load = max(0.0, 1 - min(fps / TARGET_FPS, 1.0))
    memory_pressure = _bucket(memory_usage, MEMORY_PRESSURE_BUCKETS)
    load_factor = _bucket(load_time, LOAD_TIME_BUCKETS)

    base = (
        WEIGHT_FPS * fps_load
        + WEIGHT_MEMORY * memory_pressure
        + WEIGHT_LOAD * load_factor
        + WEIGHT_DEVICE * (multiplier - 1)
    )
    inferred = max(0.0, min(100.0, base * 100 * multiplier))
    return max(device_minimum_cpu(device_type), inferred)


def cpu_grade(cpu_usage: float) -> str:
    if cpu_usage <= 30:
        return 'Excellent'
    if cpu_usage <= 50:
        return 'Good'
    if cpu_usage <= 70:
        return 'Fair'
    return 'Poor'


def validate_inference(fps: float, memory_usage: float, load_time: float, inferred_cpu: float) -> InferenceCheck:
    """Flag metric combinations where the estimate is unlikely to hold"""
    warnings = []
    confidence = 1.0

    if fps > 55 and inferred_cpu > 70:
        warnings.append('High FPS with high CPU inference may indicate calculation error')
        confidence *= 0.7
    if memory_usage < 100 and inferred_cpu > 60:
        warnings.append('Low memory with high CPU inference is unusual')
        confidence *= 0.8
    if load_time < 500 and inferred_cpu > 50:
        warnings.append('Fast load times with high CPU inference needs review')
        confidence *= 0.9

    if warnings:
        logger.debug(f"CPU inference {inferred_cpu:.1f}% flagged: {'; '.join(warnings)}")
    return InferenceCheck(is_realistic=confidence > 0.7, confidence=confidence, warnings=warnings)
