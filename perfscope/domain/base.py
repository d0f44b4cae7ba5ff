from abc import ABC, abstractmethod

from sqlalchemy.ext.asyncio import AsyncSession

from perfscope.domain.repositories.alert_repo import IAlertRepository
from perfscope.domain.repositories.data_source import IDataSource


class IUnitOfWork(ABC):
    session: AsyncSession
    data_source: 'IDataSource'
    alert_repo: 'IAlertRepository'

    @abstractmethod
    async def __aenter__(self):
        raise NotImplementedError

    @abstractmethod
    async def __aexit__(self, *args):
        raise NotImplementedError

    @abstractmethod
    async def commit(self):
        raise NotImplementedError

    @abstractmethod
    async def rollback(self):
        raise NotImplementedError
