import logging

from aiohttp import web

from social.graze.authcore.app.config import HealthGaugeAppKey

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    """
    Readiness probe. Store outages and failing sweeps push the health gauge up; once it crosses its threshold the
    worker reports 503 until the gauge drains.
    """
    health_gauge = request.app[HealthGaugeAppKey]
    gauge = await health_gauge.value()
    body = {"gauge": gauge, "threshold": health_gauge.health_threshold}

    if await health_gauge.is_healthy():
        return web.json_response(body, status=200)

    logger.warning(
        "readiness check failed, health gauge at %d of %d", gauge, health_gauge.health_threshold
    )
    return web.json_response(body, status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
