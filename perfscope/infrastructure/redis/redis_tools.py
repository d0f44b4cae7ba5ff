import logging
from typing import Any, AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

import orjson
from redis.asyncio import Redis, RedisCluster
from redis.cluster import ClusterNode

from perfscope.domain.entities.cached_value import CachedValue
from perfscope.domain.repositories.kv_store import IKeyValueStore


logger = logging.getLogger(__name__)


@asynccontextmanager
async def redis_conn_context(
    redis_host: str,
    redis_port: str,
    redis_user: str | None = None,
    redis_password: str | None = None,
    redis_is_cluster: bool = False,
) -> AsyncGenerator[RedisCluster | Redis, None]:
    if redis_is_cluster:
        conn = RedisCluster(
            startup_nodes=[ClusterNode(host=host, port=redis_port) for host in redis_host.split(',')],
            username=redis_user,
            password=redis_password,
            decode_responses=True,
        )
        await conn.initialize()
    else:
        conn = Redis(
            host=redis_host,
            port=redis_port,
            username=redis_user,
            password=redis_password,
            decode_responses=True,
        )
        await conn.initialize()
    try:
        yield conn
    finally:
        await conn.close()


class RedisCache(IKeyValueStore):
    def __init__(self, cache_client: Redis | RedisCluster):
        self._cache_client = cache_client

    async def set_value(self, key: str, value: Any, ex: int | timedelta | None = None):
        await self._cache_client.set(key, orjson.dumps(value).decode(), ex=ex)

    async def get_value(self, key: str) -> CachedValue | None:
        value = await self._cache_client.get(key)
        if value is None:
            return None
        try:
            return CachedValue(key=key, value=orjson.loads(value))
        except orjson.JSONDecodeError:
            logger.error('Wrong redis value: %s', value)
            raise

    async def delete(self, key: str):
        await self._cache_client.delete(key)

    async def incr(self, key: str, ex: int | timedelta | None = None) -> int:
        value = await self._cache_client.incr(key)
        if value == 1 and ex is not None:
            await self._cache_client.expire(key, ex)
        return value
