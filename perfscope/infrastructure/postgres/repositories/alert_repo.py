from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from perfscope.domain.entities.alert import STATUS_ACTIVE, AlertConfig, AlertInstance
from perfscope.domain.repositories.alert_repo import IAlertRepository
from perfscope.infrastructure.postgres.on_startup.init_tables import AlertConfigTable, AlertHistoryTable
from perfscope.infrastructure.postgres.repositories.data_source import to_aware_utc


def _to_config(row: AlertConfigTable) -> AlertConfig:
    return AlertConfig(
        id=row.id,
        name=row.name,
        metric_type=row.metric_type,
        threshold_warning=row.threshold_warning,
        threshold_critical=row.threshold_critical,
        notification_channels=list(row.notification_channels or []),
        suppression_rules=dict(row.suppression_rules or {}),
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=to_aware_utc(row.created_at),
        updated_at=to_aware_utc(row.updated_at),
    )


def _to_instance(row: AlertHistoryTable) -> AlertInstance:
    return AlertInstance(
        id=row.id,
        config_id=row.config_id,
        severity=row.severity,
        metric_value=row.metric_value,
        threshold_violated=row.threshold_violated,
        message=row.message,
        source=row.source,
        created_at=to_aware_utc(row.created_at),
        status=row.status,
        acknowledged_at=to_aware_utc(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        resolved_at=to_aware_utc(row.resolved_at),
        resolved_by=row.resolved_by,
        metadata=dict(row.alert_metadata or {}),
    )


class SqlAlertRepository(IAlertRepository):
    """Writes are flushed; the caller commits through the unit of work."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_configs(self, only_active: bool = True) -> list[AlertConfig]:
        stmt = select(AlertConfigTable).order_by(AlertConfigTable.name)
        if only_active:
            stmt = stmt.where(AlertConfigTable.is_active.is_(True))
        result = await self.session.execute(stmt)
        return [_to_config(row) for row in result.scalars().all()]

    async def get_config(self, config_id: str) -> AlertConfig | None:
        row = await self.session.get(AlertConfigTable, config_id)
        return _to_config(row) if row else None

    async def save_config(self, config: AlertConfig) -> AlertConfig:
        await self.session.merge(AlertConfigTable(
            id=config.id,
            name=config.name,
            metric_type=config.metric_type,
            threshold_warning=config.threshold_warning,
            threshold_critical=config.threshold_critical,
            notification_channels=list(config.notification_channels),
            suppression_rules=dict(config.suppression_rules),
            is_active=config.is_active,
            created_by=config.created_by,
            created_at=config.created_at,
            updated_at=config.updated_at,
        ))
        await self.session.flush()
        return config

    async def delete_config(self, config_id: str) -> bool:
        result = await self.session.execute(delete(AlertConfigTable).where(AlertConfigTable.id == config_id))
        return result.rowcount > 0

    async def get_instance(self, alert_id: str) -> AlertInstance | None:
        row = await self.session.get(AlertHistoryTable, alert_id)
        return _to_instance(row) if row else None

    async def get_active_instance(self, config_id: str) -> AlertInstance | None:
        stmt = (
            select(AlertHistoryTable)
            .where(AlertHistoryTable.config_id == config_id, AlertHistoryTable.status == STATUS_ACTIVE)
            .order_by(AlertHistoryTable.created_at.desc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalars().first()
        return _to_instance(row) if row else None

    async def add_instance(self, instance: AlertInstance) -> AlertInstance:
        self.session.add(self._row(instance))
        await self.session.flush()
        return instance

    async def update_instance(self, instance: AlertInstance) -> AlertInstance:
        await self.session.merge(self._row(instance))
        await self.session.flush()
        return instance

    async def list_instances(
        self, status: str | None = None, severity: str | None = None, limit: int = 50
    ) -> list[AlertInstance]:
        stmt = select(AlertHistoryTable)
        if status:
            stmt = stmt.where(AlertHistoryTable.status == status)
        if severity:
            stmt = stmt.where(AlertHistoryTable.severity == severity)
        stmt = stmt.order_by(AlertHistoryTable.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [_to_instance(row) for row in result.scalars().all()]

    @staticmethod
    def _row(instance: AlertInstance) -> AlertHistoryTable:
        return AlertHistoryTable(
            id=instance.id,
            config_id=instance.config_id,
            severity=instance.severity,
            metric_value=instance.metric_value,
            threshold_violated=instance.threshold_violated,
            message=instance.message,
            source=instance.source,
            status=instance.status,
            acknowledged_at=instance.acknowledged_at,
            acknowledged_by=instance.acknowledged_by,
            resolved_at=instance.resolved_at,
            resolved_by=instance.resolved_by,
            created_at=instance.created_at,
            alert_metadata=dict(instance.metadata),
        )
