"""
Tests for the HTTP layer
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from aiohttp import test_utils
from aiohttp.test_utils import make_mocked_request

from perfscope import main
from perfscope.analyzer.config import AnalyzerConfig
from perfscope.analyzer.errors import UpstreamError
from perfscope.domain.entities.metric_sample import FPS, MEMORY_USAGE, SCREEN_TIME, MetricSample
from perfscope.domain.entities.session import Session
from perfscope.domain.repositories.data_source import IDataSource
from perfscope.infrastructure.memory.alert_repo import InMemoryAlertRepository
from perfscope.infrastructure.memory.kv_store import InMemoryKeyValueStore
from perfscope.services.live_buffer import LiveTrendBuffer


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class StaticDataSource(IDataSource):
    def __init__(self, sessions, samples, error: Exception | None = None):
        self.sessions = sessions
        self.samples = samples
        self.error = error

    async def list_sessions(self, session_filter):
        if self.error:
            raise self.error
        return list(self.sessions)

    async def list_metrics(self, session_ids, metric_filter):
        if self.error:
            raise self.error
        return list(self.samples)


def create_data_source(error: Exception | None = None) -> StaticDataSource:
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    session = Session(
        id='s1',
        anonymous_user_id='user1',
        device_type='iPhone 14',
        session_start=start,
        session_end=start + timedelta(minutes=5),
    )
    samples = [
        MetricSample(
            session_id='s1', timestamp=start, metric_type=SCREEN_TIME, value=60_000,
            context={'routeName': 'Home', 'routePath': '/home', 'segments': ['home']},
        ),
        MetricSample(session_id='s1', timestamp=start + timedelta(seconds=10), metric_type=FPS, value=60),
        MetricSample(session_id='s1', timestamp=start + timedelta(seconds=10), metric_type=MEMORY_USAGE, value=200),
    ]
    return StaticDataSource([session], samples, error)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_source():
    return create_data_source()


@pytest.fixture
async def client(data_source, clock):
    app = main.create_app()
    app.on_startup.remove(main.on_startup)
    app.on_cleanup.remove(main.on_cleanup)
    with patch.object(main, 'config', AnalyzerConfig(data_source='rest', login_max_attempts=2)), \
            patch.object(main, 'data_store', data_source), \
            patch.object(main, 'alert_repository', InMemoryAlertRepository()), \
            patch.object(main, 'kv_store', InMemoryKeyValueStore()), \
            patch.object(main, 'live_buffer', LiveTrendBuffer(clock=clock)):
        async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
            yield test_client


class TestHealthcheck:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        resp = await client.get('/health')

        assert resp.status == 200
        data = await resp.json()
        assert data['status'] == 'healthy'
        assert data['service'] == 'perfscope'
        assert isinstance(data['timestamp'], (int, float))

    @pytest.mark.asyncio
    async def test_degraded_when_data_store_is_down(self, client):
        data_store = AsyncMock()
        data_store.health_check.side_effect = UpstreamError('connection refused')
        with patch.object(main, 'data_store', data_store):
            resp = await client.get('/health')

        data = await resp.json()
        assert data['status'] == 'degraded'
        assert data['data_source'] == 'unhealthy'


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_summary(self, client):
        resp = await client.get('/api/v1/performance/summary')

        assert resp.status == 200
        data = await resp.json()
        assert data['total_sessions'] == 1
        assert data['avg_fps'] == 60

    @pytest.mark.asyncio
    async def test_route_analysis(self, client):
        data = await (await client.get('/api/v1/routes/analysis')).json()
        assert [r['route_pattern'] for r in data['routes']] == ['/home']

    @pytest.mark.asyncio
    async def test_devices_and_platforms(self, client):
        devices = await (await client.get('/api/v1/devices')).json()
        platforms = await (await client.get('/api/v1/platforms')).json()

        assert [d['device_id'] for d in devices['devices']] == ['user1']
        assert len(platforms['platforms']) == 1

    @pytest.mark.asyncio
    async def test_journeys(self, client):
        resp = await client.get('/api/v1/journeys?window_hours=2&limit=5')

        assert resp.status == 200
        data = await resp.json()
        assert len(data['journeys']) == 1

    @pytest.mark.asyncio
    async def test_upstream_error_is_bad_gateway(self, client):
        with patch.object(main, 'data_store', create_data_source(UpstreamError('HTTP 401', status=401))):
            resp = await client.get('/api/v1/performance/summary')

        assert resp.status == 502
        data = await resp.json()
        assert data == {'error': 'HTTP 401', 'status': 401, 'retryable': True}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, client):
        with patch.object(main, 'data_store', create_data_source(RuntimeError('boom'))):
            resp = await client.get('/api/v1/routes/analysis')

        assert resp.status == 500
        assert await resp.json() == {'error': 'Internal server error'}

    @pytest.mark.asyncio
    async def test_report_csv(self, client):
        resp = await client.get('/api/v1/report?format=csv')

        assert resp.status == 200
        assert resp.content_type == 'text/csv'
        text = await resp.text()
        assert text.startswith('# routes\n')
        assert '# alerts\n' in text

    @pytest.mark.asyncio
    async def test_report_json(self, client):
        data = await (await client.get('/api/v1/report')).json()

        assert data['errors'] == []
        assert data['alerts'] == []

    @pytest.mark.asyncio
    async def test_report_unknown_format(self, client):
        resp = await client.get('/api/v1/report?format=xml')
        assert resp.status == 400


class TestLive:
    @pytest.mark.asyncio
    async def test_ingest_then_read(self, client, clock):
        payload = {'samples': [
            {'session_id': 's1', 'timestamp': '2025-03-04T12:00:00Z', 'metric_type': 'fps', 'value': 58},
            {'session_id': 's1', 'timestamp': '2025-03-04T12:00:00.300Z', 'metric_type': 'memory_usage', 'value': 210},
        ]}
        resp = await client.post('/api/v1/performance/live', json=payload)

        assert resp.status == 200
        assert await resp.json() == {'accepted': 2, 'pending_buckets': 1}
        assert (await (await client.get('/api/v1/performance/live')).json())['trends'] == []

        clock.now = 5
        trends = (await (await client.get('/api/v1/performance/live')).json())['trends']
        assert len(trends) == 1
        assert trends[0]['fps'] == 58

    @pytest.mark.asyncio
    async def test_invalid_samples(self, client):
        resp = await client.post('/api/v1/performance/live', json={'samples': [{'metric_type': 'fps'}]})
        assert resp.status == 400

        resp = await client.post('/api/v1/performance/live', json={'samples': 'nope'})
        assert resp.status == 400


class TestAlerts:
    async def create_alert(self, client) -> dict:
        resp = await client.post('/api/v1/alerts/configs', json={
            'id': 'cpu-high',
            'name': 'High CPU',
            'metric_type': 'cpu_usage',
            'threshold_warning': 70,
            'threshold_critical': 90,
        })
        assert resp.status == 201

        resp = await client.post('/api/v1/alerts/check', json={'metrics': {'cpu_usage': 95}})
        assert resp.status == 200
        [alert] = (await resp.json())['triggered']
        return alert

    @pytest.mark.asyncio
    async def test_check_and_list(self, client):
        alert = await self.create_alert(client)

        assert alert['severity'] == 'critical'
        assert alert['message'] == 'CRITICAL: High CPU - cpu usage reached 95.0% (threshold: 90.0%)'
        alerts = (await (await client.get('/api/v1/alerts?status=active')).json())['alerts']
        assert [a['id'] for a in alerts] == [alert['id']]

    @pytest.mark.asyncio
    async def test_lifecycle(self, client):
        alert = await self.create_alert(client)

        resp = await client.post(f"/api/v1/alerts/{alert['id']}/acknowledge", json={'user': 'alice'})
        assert resp.status == 200
        assert (await resp.json())['acknowledged_by'] == 'alice'

        resp = await client.post(f"/api/v1/alerts/{alert['id']}/acknowledge")
        assert resp.status == 409

        resp = await client.post(f"/api/v1/alerts/{alert['id']}/resolve")
        assert resp.status == 200
        assert (await resp.json())['resolved_by'] == 'system'

    @pytest.mark.asyncio
    async def test_unknown_alert(self, client):
        resp = await client.post('/api/v1/alerts/missing/resolve')
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_invalid_config(self, client):
        resp = await client.post('/api/v1/alerts/configs', json={'name': 'No thresholds'})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_check_skips_inferred_cpu(self, client):
        for alert_config in (
            {'id': 'cpu-any', 'name': 'Any CPU', 'metric_type': 'cpu_usage',
             'threshold_warning': 1, 'threshold_critical': 2},
            {'id': 'mem-high', 'name': 'High memory', 'metric_type': 'memory_usage',
             'threshold_warning': 100, 'threshold_critical': 150},
        ):
            resp = await client.post('/api/v1/alerts/configs', json=alert_config)
            assert resp.status == 201

        # the window holds fps and memory readings only
        resp = await client.post('/api/v1/alerts/check?regressions=false')

        assert resp.status == 200
        triggered = (await resp.json())['triggered']
        assert [a['config_id'] for a in triggered] == ['mem-high']

    @pytest.mark.asyncio
    async def test_invalid_metrics(self, client):
        resp = await client.post('/api/v1/alerts/check', json={'metrics': {'fps': 'low'}})
        assert resp.status == 400


class TestKeyValueEndpoints:
    @pytest.mark.asyncio
    async def test_login_locked_after_failures(self, client):
        first = await client.post('/api/v1/auth/attempts', json={'identifier': 'alice', 'success': False})
        assert first.status == 200
        assert (await first.json())['remaining_attempts'] == 1

        second = await client.post('/api/v1/auth/attempts', json={'identifier': 'alice', 'success': False})
        assert second.status == 429

        status = await client.post('/api/v1/auth/attempts', json={'identifier': 'alice'})
        assert status.status == 429
        assert (await status.json())['locked'] is True

    @pytest.mark.asyncio
    async def test_login_requires_identifier(self, client):
        resp = await client.post('/api/v1/auth/attempts', json={})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_realtime_sessions(self, client):
        resp = await client.post('/api/v1/realtime/sessions/rt1/heartbeat')
        assert resp.status == 404

        resp = await client.post('/api/v1/realtime/sessions/rt1', json={'user': 'alice'})
        assert resp.status == 201

        resp = await client.post('/api/v1/realtime/sessions/rt1/heartbeat')
        assert resp.status == 200
        assert await resp.json() == {'alive': True}


class TestParams:
    def test_parse_int_param(self):
        assert main.parse_int_param(make_mocked_request('GET', '/?limit=20'), 'limit', 50) == 20
        assert main.parse_int_param(make_mocked_request('GET', '/?limit=abc'), 'limit', 50) == 50
        assert main.parse_int_param(make_mocked_request('GET', '/?limit=0'), 'limit', 50) == 50
        assert main.parse_int_param(make_mocked_request('GET', '/?limit=5000'), 'limit', 50) == 50
        assert main.parse_int_param(make_mocked_request('GET', '/'), 'limit', 50) == 50

    def test_parse_float_and_bool(self):
        request = make_mocked_request('GET', '/?window_hours=1.5&includeFlows=false')
        assert main.parse_float_param(request, 'window_hours', None) == 1.5
        assert main.parse_float_param(request, 'missing', None) is None
        assert main.parse_bool_param(request, 'includeFlows') is False
        assert main.parse_bool_param(request, 'includePatterns') is True


class TestStartup:
    @pytest.mark.asyncio
    async def test_rest_mode_uses_in_memory_stores(self):
        with patch.object(main, 'config', AnalyzerConfig(data_source='rest')), \
                patch.object(main, 'data_store', None), \
                patch.object(main, 'alert_repository', None), \
                patch.object(main, 'kv_store', None), \
                patch.object(main, 'live_buffer', None), \
                patch.object(main, 'init_db_and_tables', new=AsyncMock()) as mock_init:
            await main.on_startup(None)

            assert isinstance(main.data_store, main.DataStoreClient)
            assert isinstance(main.alert_repository, InMemoryAlertRepository)
            assert isinstance(main.kv_store, InMemoryKeyValueStore)
            mock_init.assert_not_called()
            await main.on_cleanup(None)
            assert main.data_store is None

    @pytest.mark.asyncio
    async def test_postgres_mode_initializes_db(self):
        with patch.object(main, 'config', AnalyzerConfig(data_source='postgres')), \
                patch.object(main, 'kv_store', None), \
                patch.object(main, 'live_buffer', None), \
                patch.object(main, 'init_db_and_tables', new=AsyncMock()) as mock_init:
            await main.on_startup(None)

        mock_init.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
