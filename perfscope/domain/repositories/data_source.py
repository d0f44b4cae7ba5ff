from abc import ABC, abstractmethod
from datetime import datetime

from attr import dataclass, field

from perfscope.domain.entities.metric_sample import MetricSample
from perfscope.domain.entities.session import Session


@dataclass(slots=True, frozen=True)
class SessionFilter:
    time_start: datetime | None = None
    time_end: datetime | None = None
    device_type: str | None = None
    app_version: str | None = None
    anonymous_user_id: str | None = None
    limit: int = 500


@dataclass(slots=True, frozen=True)
class MetricFilter:
    time_start: datetime | None = None
    time_end: datetime | None = None
    metric_types: tuple[str, ...] = field(factory=tuple)
    ascending: bool = True
    limit: int = 5000


class IDataSource(ABC):
    """Read side of the metric store. Implementations raise UpstreamError on failure."""

    @abstractmethod
    async def list_sessions(self, session_filter: SessionFilter) -> list[Session]: ...

    @abstractmethod
    async def list_metrics(self, session_ids: list[str] | None, metric_filter: MetricFilter) -> list[MetricSample]:
        """session_ids=None means every session"""
