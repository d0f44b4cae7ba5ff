from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from perfscope.domain.base import IUnitOfWork
from perfscope.infrastructure.postgres.repositories.alert_repo import SqlAlertRepository
from perfscope.infrastructure.postgres.repositories.data_source import SqlDataSource


class UnitOfWork(IUnitOfWork):
    def __init__(self, engine):
        self.engine = engine
        self.session: AsyncSession = None
        self.data_source = None
        self.alert_repo = None

    async def __aenter__(self):
        async_session = async_sessionmaker(self.engine, expire_on_commit=False)
        self.session = async_session()
        self.data_source = SqlDataSource(self.session)
        self.alert_repo = SqlAlertRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            await self.rollback()
        await self.session.close()

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()
