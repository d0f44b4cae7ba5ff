import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import attr
import orjson
from aiohttp import web

from perfscope.analyzer.clients import DataStoreClient
from perfscope.analyzer.config import AnalyzerConfig, load_config
from perfscope.analyzer.errors import AlertNotFoundError, AlertStateError, UpstreamError
from perfscope.analyzer.orchestrator import AnalysisOrchestrator
from perfscope.analyzer.utils.routes import to_datetime
from perfscope.domain.entities.alert import AlertConfig
from perfscope.domain.entities.metric_sample import CPU_USAGE, FPS, LOAD_TIME, MEMORY_USAGE, MetricSample
from perfscope.domain.repositories.alert_repo import IAlertRepository
from perfscope.domain.repositories.kv_store import IKeyValueStore
from perfscope.infrastructure.memory.alert_repo import InMemoryAlertRepository
from perfscope.infrastructure.memory.kv_store import InMemoryKeyValueStore
from perfscope.infrastructure.postgres.on_startup.run_db import engine, init_db_and_tables
from perfscope.infrastructure.postgres.uow import UnitOfWork
from perfscope.infrastructure.redis.redis_tools import RedisCache, redis_conn_context
from perfscope.infrastructure.settings import REDIS_HOST, REDIS_IS_CLUSTER, REDIS_PASSWORD, REDIS_PORT, REDIS_USER
from perfscope.services.access_control import LoginThrottle, RealtimeSessionRegistry
from perfscope.services.alerting import AlertingService
from perfscope.services.export import to_csv, to_json
from perfscope.services.live_buffer import LiveTrendBuffer

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

config: AnalyzerConfig | None = None
# shared client of the hosted data store, only set when DATA_SOURCE=rest
data_store: DataStoreClient | None = None
# alert repository used when postgres is not the data source
alert_repository: IAlertRepository | None = None
kv_store: IKeyValueStore | None = None
live_buffer: LiveTrendBuffer | None = None

_redis_context = None


def get_config() -> AnalyzerConfig:
    global config
    if config is None:
        config = load_config()
    return config


async def on_startup(app):
    """Initialize the data source, the key-value store and the live buffer"""
    global data_store, alert_repository, kv_store, live_buffer, _redis_context
    cfg = get_config()

    if cfg.data_source == 'rest':
        data_store = DataStoreClient(cfg.data_store_url, cfg.data_store_key, cfg.request_timeout)
        alert_repository = InMemoryAlertRepository()
        logger.info(f'Reading data from {cfg.data_store_url}')
    else:
        try:
            await init_db_and_tables()
            logger.info('Successfully setup db')
        except Exception as e:
            logger.error(f'Failed to initialize the database: {e}')
            raise

    if cfg.kv_backend == 'redis':
        _redis_context = redis_conn_context(
            redis_host=REDIS_HOST,
            redis_port=REDIS_PORT,
            redis_user=REDIS_USER,
            redis_password=REDIS_PASSWORD,
            redis_is_cluster=REDIS_IS_CLUSTER,
        )
        kv_store = RedisCache(await _redis_context.__aenter__())
        logger.info('Using redis key-value store')
    else:
        kv_store = InMemoryKeyValueStore()
        logger.info('Using in-memory key-value store')

    live_buffer = LiveTrendBuffer(interval_ms=cfg.live_bucket_ms, grace_seconds=cfg.live_grace_seconds)


async def on_cleanup(app):
    """Cleanup resources on shutdown"""
    global data_store, _redis_context
    if data_store:
        try:
            await data_store.close()
            logger.info('Data store client closed')
        except Exception as e:
            logger.error(f'Error closing data store client: {e}')
        data_store = None
    if _redis_context is not None:
        await _redis_context.__aexit__(None, None, None)
        _redis_context = None


def _default(obj):
    if attr.has(type(obj)):
        return attr.asdict(obj)
    if hasattr(obj, 'model_dump'):
        return obj.model_dump(mode='json')
    raise TypeError


def _dumps(obj) -> str:
    return orjson.dumps(obj, default=_default).decode()


def json_response(data, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def error_response(e: Exception, handler: str) -> web.Response:
    if isinstance(e, UpstreamError):
        logger.error(f'Data store failed in {handler}: {e.message}')
        return web.json_response(e.to_dict(), status=502)
    if isinstance(e, AlertNotFoundError):
        return web.json_response({'error': f'Not found: {e}'}, status=404)
    if isinstance(e, AlertStateError):
        return web.json_response({'error': str(e)}, status=409)
    logger.exception(f'Error in {handler} handler')
    return web.json_response({'error': 'Internal server error'}, status=500)


def parse_int_param(request: web.Request, name: str, default: int, minimum: int = 1, maximum: int = 1000) -> int:
    """Malformed or out of range values fall back to the default"""
    try:
        value = int(request.query.get(name, default))
    except ValueError:
        return default
    if value < minimum or value > maximum:
        return default
    return value


def parse_float_param(request: web.Request, name: str, default: float | None) -> float | None:
    try:
        value = float(request.query[name])
    except (KeyError, ValueError):
        return default
    return value if value > 0 else default


def parse_bool_param(request: web.Request, name: str, default: bool = True) -> bool:
    return request.query.get(name, 'true' if default else 'false').lower() == 'true'


@asynccontextmanager
async def analysis_context() -> AsyncIterator[AnalysisOrchestrator]:
    """Orchestrator over the configured data source; postgres reads go through a unit of work"""
    if data_store is not None:
        yield AnalysisOrchestrator(data_store, get_config())
        return
    async with UnitOfWork(engine) as uow:
        yield AnalysisOrchestrator(uow.data_source, get_config())


@asynccontextmanager
async def alerting_context() -> AsyncIterator[AlertingService]:
    """Alerting service; changes are committed when the block exits cleanly"""
    if alert_repository is not None:
        yield AlertingService(alert_repository)
        return
    async with UnitOfWork(engine) as uow:
        yield AlertingService(uow.alert_repo)
        await uow.commit()


async def healthcheck(request):
    health_data = {
        'status': 'healthy',
        'timestamp': asyncio.get_event_loop().time(),
        'service': 'perfscope',
    }
    if kv_store is not None:
        await kv_store.set_value('healthcheck', health_data['timestamp'])
    if data_store is not None:
        try:
            healthy = await data_store.health_check()
        except UpstreamError as e:
            logger.warning(f'Data store health check failed: {e.message}')
            healthy = False
        health_data['data_source'] = 'healthy' if healthy else 'unhealthy'
        if not healthy:
            health_data['status'] = 'degraded'
    return web.json_response(health_data)


async def performance_summary(request: web.Request) -> web.Response:
    """GET /api/v1/performance/summary"""
    try:
        async with analysis_context() as orchestrator:
            summary = await orchestrator.summary()
        return web.json_response(summary.model_dump(mode='json'))
    except Exception as e:
        return error_response(e, 'performance_summary')


async def devices(request: web.Request) -> web.Response:
    """GET /api/v1/devices"""
    try:
        async with analysis_context() as orchestrator:
            profiles = await orchestrator.devices()
        return web.json_response({'devices': [p.model_dump(mode='json') for p in profiles]})
    except Exception as e:
        return error_response(e, 'devices')


async def platforms(request: web.Request) -> web.Response:
    """GET /api/v1/platforms"""
    try:
        async with analysis_context() as orchestrator:
            health = await orchestrator.platforms()
        return web.json_response({'platforms': [p.model_dump(mode='json') for p in health]})
    except Exception as e:
        return error_response(e, 'platforms')


async def performance_trends(request: web.Request) -> web.Response:
    """GET /api/v1/performance/trends?limit=50"""
    limit = parse_int_param(request, 'limit', 50)
    try:
        async with analysis_context() as orchestrator:
            points = await orchestrator.trends(limit)
        return web.json_response({'trends': [p.model_dump(mode='json') for p in points]})
    except Exception as e:
        return error_response(e, 'performance_trends')


async def live_ingest(request: web.Request) -> web.Response:
    """
    POST /api/v1/performance/live

    Request body:
    {
        "samples": [
            {"session_id": "...", "timestamp": "2024-01-01T00:00:00Z", "metric_type": "fps", "value": 58.2}
        ]
    }
    """
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)

    raw_samples = payload.get('samples') if isinstance(payload, dict) else None
    if not isinstance(raw_samples, list):
        return web.json_response({'error': "'samples' (list) is required"}, status=400)

    samples = []
    for raw in raw_samples:
        if not isinstance(raw, dict):
            return web.json_response({'error': 'Each sample must be an object'}, status=400)
        timestamp = to_datetime(raw.get('timestamp'))
        try:
            value = float(raw['value'])
            metric_type = str(raw['metric_type'])
        except (KeyError, TypeError, ValueError):
            return web.json_response({'error': "Each sample needs 'metric_type' and a numeric 'value'"}, status=400)
        if timestamp is None:
            return web.json_response({'error': 'Invalid sample timestamp'}, status=400)
        samples.append(MetricSample(
            session_id=str(raw.get('session_id', '')),
            timestamp=timestamp,
            metric_type=metric_type,
            value=value,
            context=raw.get('context') or {},
        ))

    for sample in samples:
        live_buffer.add(sample)
    return web.json_response({'accepted': len(samples), 'pending_buckets': live_buffer.pending_count})


async def live_trends(request: web.Request) -> web.Response:
    """GET /api/v1/performance/live"""
    live_buffer.flush()
    return web.json_response({'trends': [p.model_dump(mode='json') for p in live_buffer.series()]})


async def route_analysis(request: web.Request) -> web.Response:
    """GET /api/v1/routes/analysis"""
    try:
        async with analysis_context() as orchestrator:
            analysis = await orchestrator.route_analysis()
        return web.json_response(analysis.model_dump(mode='json'))
    except Exception as e:
        return error_response(e, 'route_analysis')


async def route_insights(request: web.Request) -> web.Response:
    """GET /api/v1/analytics/route-insights"""
    try:
        async with analysis_context() as orchestrator:
            report = await orchestrator.route_insights(
                include_correlations=parse_bool_param(request, 'includeCorrelations'),
                include_predictions=parse_bool_param(request, 'includePredictions'),
                include_flows=parse_bool_param(request, 'includeFlows'),
                include_patterns=parse_bool_param(request, 'includePatterns'),
            )
        return web.json_response(report.model_dump(mode='json'))
    except Exception as e:
        return error_response(e, 'route_insights')


async def journeys(request: web.Request) -> web.Response:
    """GET /api/v1/journeys?window_hours=1&limit=100"""
    window_hours = parse_float_param(request, 'window_hours', None)
    limit = parse_int_param(request, 'limit', 100)
    try:
        async with analysis_context() as orchestrator:
            report = await orchestrator.journeys(window_hours=window_hours, limit=limit)
        return web.json_response(report.model_dump(mode='json'))
    except Exception as e:
        return error_response(e, 'journeys')


async def early_warnings(request: web.Request) -> web.Response:
    """GET /api/v1/early-warnings"""
    try:
        async with analysis_context() as orchestrator:
            warnings = await orchestrator.early_warnings()
        return web.json_response({'early_warnings': [w.model_dump(mode='json') for w in warnings]})
    except Exception as e:
        return error_response(e, 'early_warnings')


async def report(request: web.Request) -> web.Response:
    """GET /api/v1/report?format=json|csv&device_type=...&app_version=..."""
    export_format = request.query.get('format', 'json').lower()
    if export_format not in ('json', 'csv'):
        return web.json_response({'error': "format must be 'json' or 'csv'"}, status=400)
    try:
        async with analysis_context() as orchestrator:
            analytics = await orchestrator.build_report(
                device_type=request.query.get('device_type'),
                app_version=request.query.get('app_version'),
            )
        async with alerting_context() as alerting:
            alerts = await alerting.history(limit=100)
    except Exception as e:
        return error_response(e, 'report')

    if export_format == 'csv':
        return web.Response(
            text=to_csv(analytics, alerts),
            content_type='text/csv',
            headers={'Content-Disposition': 'attachment; filename="performance-report.csv"'},
        )
    return web.Response(body=to_json(analytics, alerts), content_type='application/json')


async def list_alert_configs(request: web.Request) -> web.Response:
    """GET /api/v1/alerts/configs"""
    try:
        async with alerting_context() as alerting:
            configs = await alerting.list_configs()
        return json_response({'configs': configs})
    except Exception as e:
        return error_response(e, 'list_alert_configs')


async def save_alert_config(request: web.Request) -> web.Response:
    """
    POST /api/v1/alerts/configs

    Request body:
    {
        "id": "high-cpu",  // optional
        "name": "High CPU",
        "metric_type": "cpu_usage",
        "threshold_warning": 70,
        "threshold_critical": 90,
        "notification_channels": ["email"]  // optional
    }
    """
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)

    try:
        now = datetime.now(timezone.utc)
        alert_config = AlertConfig(
            id=str(payload.get('id') or uuid.uuid4()),
            name=str(payload['name']),
            metric_type=str(payload['metric_type']),
            threshold_warning=float(payload['threshold_warning']),
            threshold_critical=float(payload['threshold_critical']),
            notification_channels=list(payload.get('notification_channels') or []),
            suppression_rules=dict(payload.get('suppression_rules') or {}),
            is_active=bool(payload.get('is_active', True)),
            created_by=payload.get('created_by'),
            created_at=now,
            updated_at=now,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        return web.json_response({'error': f'Invalid alert config: {e}'}, status=400)

    try:
        async with alerting_context() as alerting:
            saved = await alerting.save_config(alert_config)
        return json_response(saved, status=201)
    except Exception as e:
        return error_response(e, 'save_alert_config')


async def check_alerts(request: web.Request) -> web.Response:
    """
    POST /api/v1/alerts/check

    Request body (optional):
    {
        "metrics": {"cpu_usage": 91.5, "fps": 24}
    }

    Without explicit metrics the current summary averages are checked. Regression
    alerts are evaluated over the fetched samples unless `regressions=false`.
    """
    metrics = None
    if request.can_read_body:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return web.json_response({'error': 'Invalid JSON'}, status=400)
        raw_metrics = payload.get('metrics') if isinstance(payload, dict) else None
        if raw_metrics is not None:
            try:
                metrics = {str(k): float(v) for k, v in raw_metrics.items()}
            except (AttributeError, TypeError, ValueError):
                return web.json_response({'error': "'metrics' must map metric types to numbers"}, status=400)

    try:
        now = datetime.now(timezone.utc)
        async with analysis_context() as orchestrator:
            sessions, samples = await orchestrator.fetch(*orchestrator.window(now))
            if metrics is None:
                summary = orchestrator.aggregator.summarize(sessions, samples)
                averages = {
                    FPS: summary.avg_fps,
                    MEMORY_USAGE: summary.avg_memory,
                    LOAD_TIME: summary.avg_load_time,
                }
                # inferred cpu never raises an alert
                if not summary.cpu_inferred:
                    averages[CPU_USAGE] = summary.avg_cpu
                # zero means no readings in the window
                metrics = {k: v for k, v in averages.items() if v > 0}
        async with alerting_context() as alerting:
            triggered = await alerting.check_performance_metrics(metrics, now)
            if parse_bool_param(request, 'regressions'):
                triggered += await alerting.evaluate_regressions(samples, now)
        return json_response({'triggered': triggered})
    except Exception as e:
        return error_response(e, 'check_alerts')


async def list_alerts(request: web.Request) -> web.Response:
    """GET /api/v1/alerts?status=active&severity=critical&limit=50"""
    limit = parse_int_param(request, 'limit', 50)
    try:
        async with alerting_context() as alerting:
            alerts = await alerting.history(
                status=request.query.get('status'),
                severity=request.query.get('severity'),
                limit=limit,
            )
        return json_response({'alerts': alerts})
    except Exception as e:
        return error_response(e, 'list_alerts')


async def _alert_user(request: web.Request) -> str:
    if not request.can_read_body:
        return 'system'
    payload = await request.json()
    return str(payload.get('user') or 'system') if isinstance(payload, dict) else 'system'


async def acknowledge_alert(request: web.Request) -> web.Response:
    """POST /api/v1/alerts/{alert_id}/acknowledge"""
    try:
        user = await _alert_user(request)
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)
    try:
        async with alerting_context() as alerting:
            alert = await alerting.acknowledge(request.match_info['alert_id'], user)
        return json_response(alert)
    except Exception as e:
        return error_response(e, 'acknowledge_alert')


async def resolve_alert(request: web.Request) -> web.Response:
    """POST /api/v1/alerts/{alert_id}/resolve"""
    try:
        user = await _alert_user(request)
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)
    try:
        async with alerting_context() as alerting:
            alert = await alerting.resolve(request.match_info['alert_id'], user)
        return json_response(alert)
    except Exception as e:
        return error_response(e, 'resolve_alert')


async def login_attempts(request: web.Request) -> web.Response:
    """
    POST /api/v1/auth/attempts

    Request body:
    {
        "identifier": "user@example.com",
        "success": false  // optional, omitted to only read the status
    }

    Responds 429 while the identifier is locked.
    """
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)

    identifier = payload.get('identifier') if isinstance(payload, dict) else None
    if not identifier:
        return web.json_response({'error': "'identifier' is required"}, status=400)

    cfg = get_config()
    throttle = LoginThrottle(kv_store, cfg.login_max_attempts, cfg.login_window_seconds)
    try:
        success = payload.get('success')
        if success is True:
            status = await throttle.status(identifier)
            if status.allowed:
                await throttle.record_success(identifier)
                status = await throttle.status(identifier)
        elif success is False:
            status = await throttle.record_failure(identifier)
        else:
            status = await throttle.status(identifier)
    except Exception as e:
        return error_response(e, 'login_attempts')

    return json_response(status, status=200 if status.allowed else 429)


async def register_realtime_session(request: web.Request) -> web.Response:
    """POST /api/v1/realtime/sessions/{session_id}"""
    try:
        payload = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError:
        return web.json_response({'error': 'Invalid JSON'}, status=400)

    registry = RealtimeSessionRegistry(kv_store, get_config().realtime_session_ttl_seconds)
    try:
        await registry.register(request.match_info['session_id'], payload if isinstance(payload, dict) else {})
    except Exception as e:
        return error_response(e, 'register_realtime_session')
    return web.json_response({'registered': True}, status=201)


async def realtime_heartbeat(request: web.Request) -> web.Response:
    """POST /api/v1/realtime/sessions/{session_id}/heartbeat"""
    registry = RealtimeSessionRegistry(kv_store, get_config().realtime_session_ttl_seconds)
    try:
        alive = await registry.heartbeat(request.match_info['session_id'])
    except Exception as e:
        return error_response(e, 'realtime_heartbeat')
    if not alive:
        return web.json_response({'error': 'Session expired'}, status=404)
    return web.json_response({'alive': True})


def create_app() -> web.Application:
    app = web.Application()
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get('/health', healthcheck)

    # Analytics
    app.router.add_get('/api/v1/performance/summary', performance_summary)
    app.router.add_get('/api/v1/performance/trends', performance_trends)
    app.router.add_get('/api/v1/devices', devices)
    app.router.add_get('/api/v1/platforms', platforms)
    app.router.add_get('/api/v1/performance/live', live_trends)
    app.router.add_post('/api/v1/performance/live', live_ingest)
    app.router.add_get('/api/v1/routes/analysis', route_analysis)
    app.router.add_get('/api/v1/analytics/route-insights', route_insights)
    app.router.add_get('/api/v1/journeys', journeys)
    app.router.add_get('/api/v1/early-warnings', early_warnings)
    app.router.add_get('/api/v1/report', report)

    # Alerts
    app.router.add_get('/api/v1/alerts/configs', list_alert_configs)
    app.router.add_post('/api/v1/alerts/configs', save_alert_config)
    app.router.add_post('/api/v1/alerts/check', check_alerts)
    app.router.add_get('/api/v1/alerts', list_alerts)
    app.router.add_post('/api/v1/alerts/{alert_id}/acknowledge', acknowledge_alert)
    app.router.add_post('/api/v1/alerts/{alert_id}/resolve', resolve_alert)

    # Key-value store consumers
    app.router.add_post('/api/v1/auth/attempts', login_attempts)
    app.router.add_post('/api/v1/realtime/sessions/{session_id}', register_realtime_session)
    app.router.add_post('/api/v1/realtime/sessions/{session_id}/heartbeat', realtime_heartbeat)
    return app


app = create_app()


if __name__ == '__main__':
    port = int(os.getenv('APP_PORT', 9002))
    logger.info(f'Starting perfscope service on port {port}')
    web.run_app(app, host='0.0.0.0', port=port)
