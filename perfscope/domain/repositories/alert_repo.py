from abc import ABC, abstractmethod

from perfscope.domain.entities.alert import AlertConfig, AlertInstance


class IAlertRepository(ABC):
    @abstractmethod
    async def list_configs(self, only_active: bool = True) -> list[AlertConfig]: ...

    @abstractmethod
    async def get_config(self, config_id: str) -> AlertConfig | None: ...

    @abstractmethod
    async def save_config(self, config: AlertConfig) -> AlertConfig: ...

    @abstractmethod
    async def delete_config(self, config_id: str) -> bool: ...

    @abstractmethod
    async def get_instance(self, alert_id: str) -> AlertInstance | None: ...

    @abstractmethod
    async def get_active_instance(self, config_id: str) -> AlertInstance | None:
        """Instance of the config that is still active (not acknowledged, not resolved)"""

    @abstractmethod
    async def add_instance(self, instance: AlertInstance) -> AlertInstance: ...

    @abstractmethod
    async def update_instance(self, instance: AlertInstance) -> AlertInstance: ...

    @abstractmethod
    async def list_instances(
        self, status: str | None = None, severity: str | None = None, limit: int = 50
    ) -> list[AlertInstance]: ...
