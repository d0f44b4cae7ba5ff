"""
Client for the hosted REST data store (PostgREST dialect)
"""

import httpx
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
import logging

from ..errors import UpstreamError
from ..utils.routes import to_datetime
from ...domain.entities.metric_sample import MetricSample
from ...domain.entities.session import Session
from ...domain.repositories.data_source import IDataSource, MetricFilter, SessionFilter

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "performance_sessions"
METRICS_TABLE = "performance_metrics"


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _in_list(values) -> str:
    return "in.(" + ",".join(f'"{v}"' for v in values) + ")"


class DataStoreClient(IDataSource):
    """
    Reads sessions and metric samples from a hosted data store exposing
    PostgREST style endpoints (`/performance_sessions`, `/performance_metrics`).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Base URL of the REST endpoint, e.g. https://host/rest/v1
            api_key: Optional API key, sent as `apikey` and bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self._client.aclose()

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _select(self, table: str, params: List[tuple]) -> List[Dict[str, Any]]:
        endpoint = f"{self.base_url}/{table}"
        try:
            response = await self._client.get(endpoint, params=params, headers=self._get_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Data store error on {table}: {e.response.status_code} - {e.response.text}")
            raise UpstreamError(
                f"Failed to fetch {table}: {e.response.status_code} {e.response.text}",
                status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Data store unreachable ({table}): {e}")
            raise UpstreamError(f"Failed to fetch {table}: {e}") from e

        rows = response.json() if response.content else []
        logger.debug(f"Fetched {len(rows)} rows from {table}")
        return rows

    async def list_sessions(self, session_filter: SessionFilter) -> list[Session]:
        params = [("select", "*")]
        if session_filter.time_start is not None:
            params.append(("session_start", f"gte.{_iso(session_filter.time_start)}"))
        if session_filter.time_end is not None:
            params.append(("session_start", f"lte.{_iso(session_filter.time_end)}"))
        if session_filter.device_type:
            params.append(("device_type", f"eq.{session_filter.device_type}"))
        if session_filter.app_version:
            params.append(("app_version", f"eq.{session_filter.app_version}"))
        if session_filter.anonymous_user_id:
            params.append(("anonymous_user_id", f"eq.{session_filter.anonymous_user_id}"))
        params.append(("order", "session_start.desc"))
        params.append(("limit", str(session_filter.limit)))

        sessions = []
        for row in await self._select(SESSIONS_TABLE, params):
            start = to_datetime(row.get("session_start") or row.get("created_at"))
            if start is None or not row.get("id"):
                logger.warning(f"Skipping session row without id or start: {row.get('id')}")
                continue
            sessions.append(Session(
                id=str(row["id"]),
                anonymous_user_id=str(row.get("anonymous_user_id") or row["id"]),
                device_type=row.get("device_type") or "unknown",
                session_start=start,
                session_end=to_datetime(row.get("session_end")),
                app_version=row.get("app_version"),
                device_id=row.get("device_id"),
            ))
        return sessions

    async def list_metrics(self, session_ids: list[str] | None, metric_filter: MetricFilter) -> list[MetricSample]:
        if session_ids is not None and not session_ids:
            return []
        params = [("select", "*")]
        if session_ids is not None:
            params.append(("session_id", _in_list(session_ids)))
        if metric_filter.metric_types:
            params.append(("metric_type", _in_list(metric_filter.metric_types)))
        if metric_filter.time_start is not None:
            params.append(("timestamp", f"gte.{_iso(metric_filter.time_start)}"))
        if metric_filter.time_end is not None:
            params.append(("timestamp", f"lte.{_iso(metric_filter.time_end)}"))
        params.append(("order", "timestamp.asc" if metric_filter.ascending else "timestamp.desc"))
        params.append(("limit", str(metric_filter.limit)))

        samples = []
        for row in await self._select(METRICS_TABLE, params):
            timestamp = to_datetime(row.get("timestamp"))
            value = row.get("metric_value")
            if timestamp is None or value is None:
                continue
            samples.append(MetricSample(
                session_id=str(row.get("session_id")),
                timestamp=timestamp,
                metric_type=row.get("metric_type"),
                value=float(value),
                context=row.get("context") or {},
            ))
        return samples

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(
                f"{self.base_url}/{SESSIONS_TABLE}",
                params={"select": "id", "limit": "1"},
                headers=self._get_headers(),
            )
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"Health check failed: {str(e)}")
            return False
