import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import Optional, Set

from aiohttp import web
import sentry_sdk

from social.skyreader.auth.app.config import (
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    SessionStoreAppKey,
)
from social.skyreader.auth.atproto.errors import (
    RefreshError,
    SessionExpiredError,
    SessionNotFoundError,
    UNAUTHORIZED,
)
from social.skyreader.auth.model.oauth import Session
from social.skyreader.auth.model.users import touch_user_stmt

logger = logging.getLogger(__name__)

# Strong references to fire-and-forget tasks until they finish.
_background_tasks: Set[asyncio.Task] = set()


class AuthenticationException(Exception):
    """
    Exception raised for authentication failures.

    Every instance renders as the same 401 response; the code in the message
    is only for logs.
    """

    @staticmethod
    def bearer_missing() -> "AuthenticationException":
        """The request carries no bearer session id."""
        return AuthenticationException("error-auth-helper-1000 Bearer token missing")

    @staticmethod
    def session_not_found() -> "AuthenticationException":
        """No session exists for the presented id."""
        return AuthenticationException("error-auth-helper-1002 No valid session found")

    @staticmethod
    def session_expired() -> "AuthenticationException":
        """The session exists but can no longer be used."""
        return AuthenticationException("error-auth-helper-1003 Session has expired")


def unauthorized() -> web.HTTPUnauthorized:
    return web.HTTPUnauthorized(
        body=json.dumps({"error": UNAUTHORIZED}),
        content_type="application/json",
    )


def bearer_token(request: web.Request) -> Optional[str]:
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None
    return authorization[7:].strip()


async def authenticate(request: web.Request) -> Session:
    """
    Resolve the bearer session id to a usable session.

    Raises:
        AuthenticationException: Missing, unknown, expired or locked-out
            session, or a failed refresh of an expired token.
    """
    session_id = bearer_token(request)
    if not session_id:
        raise AuthenticationException.bearer_missing()

    session_store = request.app[SessionStoreAppKey]
    try:
        return await session_store.get(session_id)
    except SessionNotFoundError as e:
        raise AuthenticationException.session_not_found() from e
    except (SessionExpiredError, RefreshError) as e:
        raise AuthenticationException.session_expired() from e


async def session_from_request(
    request: web.Request, rate_limited: bool = True
) -> Session:
    """
    Authenticate the request, apply the rate limit and record user activity.

    Raises:
        web.HTTPUnauthorized: Authentication failed. The body is identical for
            every cause.
        web.HTTPTooManyRequests: The identity used up its budget for this path.
    """
    metrics_client = request.app[MetricsClientAppKey]
    try:
        session = await authenticate(request)
    except AuthenticationException as e:
        logger.debug("rejected request to %s: %s", request.path, e)
        metrics_client.increment(
            "skyreader.auth.unauthorized", 1, tag_dict={"path": request.path}
        )
        raise unauthorized() from e

    if rate_limited:
        rate_limiter = request.app[RateLimiterAppKey]
        decision = await rate_limiter.check(session.did, request.path)
        if not decision.allowed:
            metrics_client.increment(
                "skyreader.auth.rate_limited", 1, tag_dict={"path": request.path}
            )
            raise web.HTTPTooManyRequests(
                body=json.dumps({"error": "Rate limit exceeded"}),
                content_type="application/json",
                headers={
                    "Retry-After": str(decision.retry_after),
                    "X-RateLimit-Limit": str(rate_limiter.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

    touch_user_later(request.app, session.did)
    return session


async def touch_user(app: web.Application, did: str) -> None:
    database_session_maker = app[DatabaseSessionMakerAppKey]
    try:
        async with database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    touch_user_stmt(did, datetime.now(timezone.utc))
                )
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.warning("could not record activity for %s: %s", did, e)


def touch_user_later(app: web.Application, did: str) -> None:
    """Record ``last_active_at`` without making the request wait for it."""
    task = asyncio.create_task(touch_user(app, did))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
