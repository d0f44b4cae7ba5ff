"""
Live trend buffer.

Samples of different metric types for the same instant arrive one by one and
out of order. They are held per time bucket and a bucket only becomes visible
once no sample has landed in it for the grace period.
"""

import logging
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from perfscope.analyzer.models import TrendPoint
from perfscope.domain.entities.metric_sample import MetricSample
from perfscope.services.metric_aggregator import LIVE_INTERVAL_MS, MetricAggregator, bucket_timestamp

logger = logging.getLogger(__name__)


class _PendingBucket:
    def __init__(self, deadline: float):
        self.samples: List[MetricSample] = []
        self.deadline = deadline


class LiveTrendBuffer:
    def __init__(
        self,
        interval_ms: int = LIVE_INTERVAL_MS,
        grace_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        max_points: int = 300,
        aggregator: Optional[MetricAggregator] = None,
        device_type: Optional[str] = None,
    ):
        self.interval_ms = interval_ms
        self.grace_seconds = grace_seconds
        self.clock = clock
        self.max_points = max_points
        self.aggregator = aggregator or MetricAggregator()
        self.device_type = device_type

        self._pending: Dict[datetime, _PendingBucket] = {}
        # closed buckets keep their samples so a late sample can be merged in
        self._closed: "OrderedDict[datetime, List[MetricSample]]" = OrderedDict()
        self._points: "OrderedDict[datetime, TrendPoint]" = OrderedDict()

    def add(self, sample: MetricSample) -> datetime:
        """Put a sample in its bucket and push the bucket's deadline out by the grace period"""
        bucket = bucket_timestamp(sample.timestamp, self.interval_ms)
        pending = self._pending.get(bucket)
        if pending is None:
            pending = _PendingBucket(self.clock() + self.grace_seconds)
            pending.samples.extend(self._closed.get(bucket, []))
            self._pending[bucket] = pending
        pending.samples.append(sample)
        pending.deadline = self.clock() + self.grace_seconds
        return bucket

    def flush(self, now: Optional[float] = None) -> List[TrendPoint]:
        """Close every bucket idle for the grace period. Returns the points closed by this call."""
        now = self.clock() if now is None else now
        ready = sorted(b for b, pending in self._pending.items() if pending.deadline <= now)
        closed = []
        for bucket in ready:
            samples = self._pending.pop(bucket).samples
            points = self.aggregator.build_timeline(samples, self.interval_ms, self.device_type)
            if not points:
                continue
            self._closed[bucket] = samples
            self._points[bucket] = points[0]
            closed.append(points[0])

        if closed:
            self._points = OrderedDict(sorted(self._points.items()))
            while len(self._points) > self.max_points:
                oldest, _ = self._points.popitem(last=False)
                self._closed.pop(oldest, None)
            logger.debug(f"Closed {len(closed)} live buckets, {len(self._pending)} pending")
        return closed

    def series(self) -> List[TrendPoint]:
        """Visible points, oldest first"""
        return list(self._points.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)
