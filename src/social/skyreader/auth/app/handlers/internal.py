import logging

from aiohttp import web
from redis.exceptions import RedisError

from social.skyreader.auth.app.config import HealthGaugeAppKey, RedisClientAppKey

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    """
    Readiness probe.

    Not ready while the error gauge is over its threshold or Redis does not
    answer, since every authenticated request needs the session store.
    """
    health_gauge = request.app[HealthGaugeAppKey]
    if not await health_gauge.is_healthy():
        return web.json_response(status=503, data={"ready": False, "reason": "errors"})

    try:
        await request.app[RedisClientAppKey].ping()
    except (RedisError, OSError) as e:
        logger.warning("readiness check could not reach redis: %s", e)
        return web.json_response(status=503, data={"ready": False, "reason": "redis"})

    return web.json_response({"ready": True})


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
