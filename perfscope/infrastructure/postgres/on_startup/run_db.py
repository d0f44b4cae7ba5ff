import asyncio
import logging
import os

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from perfscope.infrastructure.postgres.on_startup.init_tables import Base
from perfscope.infrastructure.settings import DB_URL


logger = logging.getLogger(__name__)

engine = create_async_engine(DB_URL, echo=os.getenv('DB_ECHO', 'false').lower() == 'true')
Session = async_sessionmaker(engine)


async def init_db_and_tables(max_attempts: int = 5, delay: float = 2):
    """
    Create tables that do not exist yet, retrying while the database starts up.
    """
    for attempt in range(max_attempts):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return
        except Exception as e:
            if attempt < max_attempts - 1:
                logger.warning(f'Attempt {attempt + 1} to reach the database failed: {e}. Retrying in {delay} seconds...')
                await asyncio.sleep(delay)
            else:
                raise
