"""
Tests for the in-process stores
"""

import pytest
from datetime import datetime, timedelta, timezone

from perfscope.domain.entities.alert import AlertInstance
from perfscope.infrastructure.memory.alert_repo import InMemoryAlertRepository
from perfscope.infrastructure.memory.kv_store import InMemoryKeyValueStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryKeyValueStore:
    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        store = InMemoryKeyValueStore()
        await store.set_value('key', {'a': 1})

        cached = await store.get_value('key')
        assert cached.key == 'key'
        assert cached.value == {'a': 1}

        await store.delete('key')
        assert await store.get_value('key') is None
        # deleting twice is fine
        await store.delete('key')

    @pytest.mark.asyncio
    async def test_expiry(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        await store.set_value('seconds', 1, ex=10)
        await store.set_value('delta', 1, ex=timedelta(seconds=20))

        clock.now = 10
        assert await store.get_value('seconds') is None
        assert await store.get_value('delta') is not None

    @pytest.mark.asyncio
    async def test_incr_keeps_original_expiry(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        assert await store.incr('counter', ex=10) == 1
        clock.now = 5
        assert await store.incr('counter', ex=10) == 2

        clock.now = 10
        assert await store.get_value('counter') is None
        assert await store.incr('counter') == 1

    @pytest.mark.asyncio
    async def test_writes_drop_expired_keys(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        for index in range(100):
            await store.incr(f'login:user{index}', ex=60)
        await store.set_value('permanent', 1)
        assert len(store) == 101

        clock.now = 60
        await store.incr('login:fresh', ex=60)
        assert len(store) == 2

        clock.now = 120
        await store.set_value('other', 1, ex=60)
        assert len(store) == 2
        assert await store.get_value('permanent') is not None


class TestInMemoryAlertRepository:
    def create_instance(self, alert_id: str, minutes: int) -> AlertInstance:
        return AlertInstance(
            id=alert_id,
            config_id='cpu-high',
            severity='warning',
            metric_value=75,
            threshold_violated=70,
            message='WARNING',
            source='threshold_check',
            created_at=datetime(2025, 3, 4, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        )

    @pytest.mark.asyncio
    async def test_instances_are_copies(self):
        repository = InMemoryAlertRepository()
        instance = self.create_instance('a1', 0)
        await repository.add_instance(instance)

        instance.status = 'resolved'
        assert (await repository.get_instance('a1')).status == 'active'

    @pytest.mark.asyncio
    async def test_active_instance_is_newest(self):
        repository = InMemoryAlertRepository()
        await repository.add_instance(self.create_instance('a1', 0))
        await repository.add_instance(self.create_instance('a2', 5))

        assert (await repository.get_active_instance('cpu-high')).id == 'a2'
        assert await repository.get_active_instance('other') is None

    @pytest.mark.asyncio
    async def test_update_unknown(self):
        with pytest.raises(KeyError):
            await InMemoryAlertRepository().update_instance(self.create_instance('a1', 0))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
