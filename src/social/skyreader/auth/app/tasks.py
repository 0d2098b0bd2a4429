import asyncio
import logging
from time import time
from typing import NoReturn, Optional

from aiohttp import web
import sentry_sdk

from social.skyreader.auth.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SessionStoreAppKey,
    SettingsAppKey,
)
from social.skyreader.auth.app.metrics import MetricsClient
from social.skyreader.auth.session.store import SessionStore, SweepResult

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Decay the health gauge every 30 seconds and report its score.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    metrics_client = app[MetricsClientAppKey]
    while True:
        score = await health_gauge.tick()
        metrics_client.gauge("skyreader.auth.health", score)
        await asyncio.sleep(30)


async def sweep_once(
    session_store: SessionStore, metrics_client: MetricsClient
) -> Optional[SweepResult]:
    """
    Run one sweep with timing and metrics.

    Returns the sweep counts, or None when the sweep failed. A failed sweep is
    reported and retried on the next interval.
    """
    start_time = time()
    try:
        result = await session_store.sweep()
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("Error sweeping sessions")
        metrics_client.increment(
            "skyreader.auth.task.sweep.exception",
            1,
            tag_dict={"exception": type(e).__name__},
        )
        return None
    finally:
        metrics_client.timer("skyreader.auth.task.sweep.time", time() - start_time)

    metrics_client.increment(
        "skyreader.auth.task.sweep.pending", result.pending
    )
    metrics_client.increment(
        "skyreader.auth.task.sweep.expired", result.expired
    )
    metrics_client.increment(
        "skyreader.auth.task.sweep.locked_out", result.locked_out
    )
    logger.info(
        "sweep removed %d pending authorizations, %d expired and %d locked out sessions",
        result.pending,
        result.expired,
        result.locked_out,
    )
    return result


async def sweep_task(app: web.Application) -> NoReturn:
    """
    Background process that removes abandoned logins and dead sessions every
    ``sweep_interval`` seconds.
    """
    logger.info("Starting sweep task")

    settings = app[SettingsAppKey]
    session_store = app[SessionStoreAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        await asyncio.sleep(settings.sweep_interval)
        await sweep_once(session_store, metrics_client)
