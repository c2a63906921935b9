import asyncio
import contextlib
import logging
from time import time
from typing import Optional

import aiohttp
from aio_statsd import TelegrafStatsdClient
from aiohttp import web
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.authcore.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    SweepTasksAppKey,
    TickHealthTaskAppKey,
)
from social.graze.authcore.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.authcore.app.metrics import MetricsClient, create_metrics_client
from social.graze.authcore.app.services import AuthServicesAppKey, build_auth_services
from social.graze.authcore.app.tasks import start_sweep_tasks, tick_health_task
from social.graze.authcore.model.health import HealthGauge
from social.graze.authcore.store.factory import build_stores

logger = logging.getLogger(__name__)


async def create_metrics(settings: Settings) -> MetricsClient:
    if settings.metrics_backend.lower() != "telegraf":
        return create_metrics_client(settings.metrics_backend)

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    return create_metrics_client("telegraf", telegraf_client=statsd_client)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    database_session = None
    if settings.store_backend.lower() == "postgres":
        engine = create_async_engine(str(settings.pg_dsn))
        app[DatabaseAppKey] = engine
        database_session = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app[DatabaseSessionMakerAppKey] = database_session

    app[SessionAppKey] = aiohttp.ClientSession()

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    app[MetricsClientAppKey] = await create_metrics(settings)

    stores = build_stores(
        settings.store_backend,
        database_session_maker=database_session,
        timeout_seconds=settings.store_timeout_seconds,
    )
    app[AuthServicesAppKey] = build_auth_services(
        settings,
        stores,
        app[MetricsClientAppKey],
        health_gauge=app[HealthGaugeAppKey],
        redis_client=app[RedisClientAppKey],
        http_session=app[SessionAppKey],
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[SweepTasksAppKey] = start_sweep_tasks(app)

    yield

    logger.info("Shutting down background tasks")

    tasks = [app[TickHealthTaskAppKey], *app[SweepTasksAppKey]]
    for task in tasks:
        task.cancel()

    for task in tasks:
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await task

    if DatabaseAppKey in app:
        await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except Exception as e:
        metrics_client.increment(
            "authcore.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "authcore.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "authcore.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
