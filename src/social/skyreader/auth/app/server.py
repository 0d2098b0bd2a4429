import asyncio
import contextlib
import functools
import logging
from time import time
from typing import (
    Optional,
)
from aiohttp import web
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.skyreader.auth.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    SweepTaskAppKey,
    TickHealthTaskAppKey,
)
from social.skyreader.auth.app.cors import cors_middleware
from social.skyreader.auth.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.skyreader.auth.app.handlers.oauth import (
    handle_callback,
    handle_client_metadata,
    handle_login,
    handle_logout,
    handle_me,
)
from social.skyreader.auth.app.handlers.proxy import handle_xrpc_proxy
from social.skyreader.auth.app.metrics import (
    TelegrafCompatibilityClient,
    create_metrics_client,
)
from social.skyreader.auth.app.ratelimit import RateLimiter
from social.skyreader.auth.app.tasks import sweep_task, tick_health_task
from social.skyreader.auth.atproto.oauth import oauth_refresh, oauth_revoke
from social.skyreader.auth.model.health import HealthGauge
from social.skyreader.auth.session.store import SessionStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(
        trace_configs=[trace_config],
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
    )
    app[SessionAppKey] = http_session

    redis_client = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )
    app[RedisClientAppKey] = redis_client

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    if isinstance(metrics_client, TelegrafCompatibilityClient):
        await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    app[SessionStoreAppKey] = SessionStore(
        redis_client,
        settings,
        refresher=functools.partial(
            oauth_refresh, settings, metrics_client, http_session
        ),
        revoker=functools.partial(oauth_revoke, settings, metrics_client, http_session),
        metrics_client=metrics_client,
    )
    app[RateLimiterAppKey] = RateLimiter(
        redis_client,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[SweepTaskAppKey] = asyncio.create_task(sweep_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[SweepTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[SweepTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    resource = request.match_info.route.resource
    request_path = resource.canonical if resource is not None else request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "skyreader.auth.server.request.exception",
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
            "skyreader.auth.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "skyreader.auth.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def create_app(settings: Settings) -> web.Application:
    """
    Build the application with its routes and middleware.

    Shared resources (database, cache, HTTP session, session store) are not
    created here; :func:`start_web_server` attaches them through the cleanup
    context, tests attach their own.
    """
    app = web.Application(
        middlewares=[cors_middleware, metrics_middleware, sentry_middleware]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [web.get("/.well-known/client-metadata", handle_client_metadata)]
    )

    app.add_routes(
        [
            web.get("/api/auth/login", handle_login),
            web.get("/api/auth/callback", handle_callback),
            web.get("/api/auth/me", handle_me),
            web.post("/api/auth/logout", handle_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.add_routes(
        [
            web.get("/xrpc/{method}", handle_xrpc_proxy),
            web.post("/xrpc/{method}", handle_xrpc_proxy),
        ]
    )

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
