import attr

from perfscope.domain.entities.alert import STATUS_ACTIVE, AlertConfig, AlertInstance
from perfscope.domain.repositories.alert_repo import IAlertRepository


class InMemoryAlertRepository(IAlertRepository):
    """Alert storage for a single process. Instances are copied in and out."""

    def __init__(self):
        self._configs: dict[str, AlertConfig] = {}
        self._instances: dict[str, AlertInstance] = {}

    async def list_configs(self, only_active: bool = True) -> list[AlertConfig]:
        configs = [c for c in self._configs.values() if c.is_active or not only_active]
        return sorted(configs, key=lambda c: c.name)

    async def get_config(self, config_id: str) -> AlertConfig | None:
        return self._configs.get(config_id)

    async def save_config(self, config: AlertConfig) -> AlertConfig:
        self._configs[config.id] = config
        return config

    async def delete_config(self, config_id: str) -> bool:
        return self._configs.pop(config_id, None) is not None

    async def get_instance(self, alert_id: str) -> AlertInstance | None:
        instance = self._instances.get(alert_id)
        return attr.evolve(instance) if instance else None

    async def get_active_instance(self, config_id: str) -> AlertInstance | None:
        active = [
            i for i in self._instances.values()
            if i.config_id == config_id and i.status == STATUS_ACTIVE
        ]
        if not active:
            return None
        return attr.evolve(max(active, key=lambda i: i.created_at))

    async def add_instance(self, instance: AlertInstance) -> AlertInstance:
        self._instances[instance.id] = attr.evolve(instance)
        return instance

    async def update_instance(self, instance: AlertInstance) -> AlertInstance:
        if instance.id not in self._instances:
            raise KeyError(instance.id)
        self._instances[instance.id] = attr.evolve(instance)
        return instance

    async def list_instances(
        self, status: str | None = None, severity: str | None = None, limit: int = 50
    ) -> list[AlertInstance]:
        instances = [
            i for i in self._instances.values()
            if (status is None or i.status == status) and (severity is None or i.severity == severity)
        ]
        instances.sort(key=lambda i: i.created_at, reverse=True)
        return [attr.evolve(i) for i in instances[:limit]]
