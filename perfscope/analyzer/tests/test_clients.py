"""
Tests for the REST data store client
"""

import httpx
import pytest
from datetime import datetime, timezone

from perfscope.analyzer.clients.api import DataStoreClient
from perfscope.analyzer.errors import UpstreamError
from perfscope.domain.repositories.data_source import MetricFilter, SessionFilter


SESSION_ROWS = [
    {
        "id": "s1",
        "anonymous_user_id": "user1",
        "device_type": "iPhone 14",
        "session_start": "2025-01-01T10:00:00Z",
        "session_end": None,
        "app_version": "1.2.0",
    },
    {"id": None, "session_start": "2025-01-01T10:00:00Z"},
]

METRIC_ROWS = [
    {
        "session_id": "s1",
        "timestamp": "2025-01-01T10:00:05Z",
        "metric_type": "fps",
        "metric_value": 58.5,
        "context": {"screen_name": "Home"},
    },
    {"session_id": "s1", "timestamp": "2025-01-01T10:00:06Z", "metric_type": "fps", "metric_value": None},
]


def create_client(handler) -> DataStoreClient:
    """Helper to create a client backed by a mock transport"""
    return DataStoreClient(
        base_url="http://store.test/rest/v1/",
        api_key="test_key",
        transport=httpx.MockTransport(handler),
    )


class TestDataStoreClient:
    """Tests for DataStoreClient"""

    @pytest.mark.asyncio
    async def test_init(self):
        """Test client initialization"""
        client = DataStoreClient(base_url="http://store.test/", api_key="test_key")
        assert client.base_url == "http://store.test"
        assert client._get_headers()["Authorization"] == "Bearer test_key"
        await client.close()

    @pytest.mark.asyncio
    async def test_list_sessions(self):
        """Test session rows are mapped and filters become query params"""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = request.url.params
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, json=SESSION_ROWS)

        async with create_client(handler) as client:
            sessions = await client.list_sessions(SessionFilter(
                time_start=datetime(2025, 1, 1, tzinfo=timezone.utc),
                device_type="iPhone 14",
                limit=10,
            ))

        assert seen["path"] == "/rest/v1/performance_sessions"
        assert seen["params"]["device_type"] == "eq.iPhone 14"
        assert seen["params"]["limit"] == "10"
        assert seen["params"]["session_start"].startswith("gte.2025-01-01T00:00:00")
        assert seen["apikey"] == "test_key"

        assert len(sessions) == 1
        session = sessions[0]
        assert session.id == "s1"
        assert session.is_active is True
        assert session.session_start == datetime(2025, 1, 1, 10, tzinfo=timezone.utc)
        assert session.device_key == "user1"

    @pytest.mark.asyncio
    async def test_list_metrics(self):
        """Test metric rows are mapped and rows without a value are skipped"""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            return httpx.Response(200, json=METRIC_ROWS)

        async with create_client(handler) as client:
            samples = await client.list_metrics(["s1", "s2"], MetricFilter(ascending=False, limit=50))

        assert seen["params"]["session_id"] == 'in.("s1","s2")'
        assert seen["params"]["order"] == "timestamp.desc"
        assert len(samples) == 1
        assert samples[0].value == 58.5
        assert samples[0].context == {"screen_name": "Home"}

    @pytest.mark.asyncio
    async def test_list_metrics_empty_session_list(self):
        """Test an empty session id list does not hit the network"""
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with create_client(handler) as client:
            assert await client.list_metrics([], MetricFilter()) == []

    @pytest.mark.asyncio
    async def test_http_error_becomes_upstream_error(self):
        """Test a failing status is raised as UpstreamError with the status code"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="invalid api key")

        async with create_client(handler) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.list_sessions(SessionFilter())

        assert exc_info.value.status == 401
        assert "invalid api key" in exc_info.value.message
        assert exc_info.value.to_dict()["retryable"] is True

    @pytest.mark.asyncio
    async def test_network_error_becomes_upstream_error(self):
        """Test a connection failure is raised as UpstreamError"""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with create_client(handler) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.list_metrics(None, MetricFilter())

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_health_check(self):
        """Test health check maps status codes and network failures"""
        async with create_client(lambda request: httpx.Response(200, json=[])) as client:
            assert await client.health_check() is True

        async with create_client(lambda request: httpx.Response(503)) as client:
            assert await client.health_check() is False

        def failing(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        async with create_client(failing) as client:
            assert await client.health_check() is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
