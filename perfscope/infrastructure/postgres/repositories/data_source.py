from datetime import timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from perfscope.analyzer.errors import UpstreamError
from perfscope.domain.entities.metric_sample import MetricSample
from perfscope.domain.entities.session import Session
from perfscope.domain.repositories.data_source import IDataSource, MetricFilter, SessionFilter
from perfscope.infrastructure.postgres.on_startup.init_tables import MetricTable, SessionTable


def to_aware_utc(dt):
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SqlDataSource(IDataSource):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_sessions(self, session_filter: SessionFilter) -> list[Session]:
        stmt = select(SessionTable)
        if session_filter.time_start is not None:
            stmt = stmt.where(SessionTable.session_start >= session_filter.time_start)
        if session_filter.time_end is not None:
            stmt = stmt.where(SessionTable.session_start <= session_filter.time_end)
        if session_filter.device_type:
            stmt = stmt.where(SessionTable.device_type == session_filter.device_type)
        if session_filter.app_version:
            stmt = stmt.where(SessionTable.app_version == session_filter.app_version)
        if session_filter.anonymous_user_id:
            stmt = stmt.where(SessionTable.anonymous_user_id == session_filter.anonymous_user_id)
        stmt = stmt.order_by(SessionTable.session_start.desc()).limit(session_filter.limit)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise UpstreamError(f'Failed to fetch sessions: {e}') from e
        return [
            Session(
                id=row.id,
                anonymous_user_id=row.anonymous_user_id,
                device_type=row.device_type or 'unknown',
                session_start=to_aware_utc(row.session_start),
                session_end=to_aware_utc(row.session_end),
                app_version=row.app_version,
                device_id=row.device_id,
            )
            for row in result.scalars().all()
        ]

    async def list_metrics(self, session_ids: list[str] | None, metric_filter: MetricFilter) -> list[MetricSample]:
        if session_ids is not None and not session_ids:
            return []
        stmt = select(MetricTable)
        if session_ids is not None:
            stmt = stmt.where(MetricTable.session_id.in_(session_ids))
        if metric_filter.metric_types:
            stmt = stmt.where(MetricTable.metric_type.in_(metric_filter.metric_types))
        if metric_filter.time_start is not None:
            stmt = stmt.where(MetricTable.timestamp >= metric_filter.time_start)
        if metric_filter.time_end is not None:
            stmt = stmt.where(MetricTable.timestamp <= metric_filter.time_end)
        order = MetricTable.timestamp.asc() if metric_filter.ascending else MetricTable.timestamp.desc()
        stmt = stmt.order_by(order).limit(metric_filter.limit)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise UpstreamError(f'Failed to fetch metrics: {e}') from e
        return [
            MetricSample(
                session_id=row.session_id,
                timestamp=to_aware_utc(row.timestamp),
                metric_type=row.metric_type,
                value=row.metric_value,
                context=row.context or {},
            )
            for row in result.scalars().all()
        ]
