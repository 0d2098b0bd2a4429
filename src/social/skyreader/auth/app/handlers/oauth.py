"""
AT Protocol OAuth Handlers

This module implements the web request handlers for logging in with an AT Protocol
identity. The browser-facing flow is:

1. The frontend calls the login endpoint with the handle the user typed
2. The service resolves the account and answers with the authorization URL
3. The user authenticates with their authorization server
4. The authorization server redirects back to the callback endpoint
5. The service exchanges the code for tokens and creates a session
6. The user is redirected to the frontend with the opaque session id

The handlers in this module provide the following endpoints:
- GET /.well-known/client-metadata - OAuth client metadata
- GET /api/auth/login - Start a login, returns {"authUrl": ...}
- GET /api/auth/callback - OAuth callback from the authorization server
- GET /api/auth/me - Public profile of the session's user
- POST /api/auth/logout - Revoke and delete the session
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from aiohttp import web
import sentry_sdk

from social.skyreader.auth.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    SettingsAppKey,
)
from social.skyreader.auth.app.handlers.helpers import (
    bearer_token,
    session_from_request,
    unauthorized,
)
from social.skyreader.auth.atproto.errors import (
    AuthFlowException,
    AuthorizationRequestError,
    LOGIN_FAILED,
)
from social.skyreader.auth.atproto.oauth import (
    client_metadata,
    oauth_complete,
    oauth_init,
)

logger = logging.getLogger(__name__)

CALLBACK_ERRORS = {
    "access_denied": "Login was cancelled",
}


def safe_return_url(value: Optional[str]) -> Optional[str]:
    """Only same-site paths are carried through the login."""
    if not value or not value.startswith("/") or value.startswith("//"):
        return None
    return value


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(client_metadata(settings))


async def handle_login(request: web.Request):
    """
    Start a login for the handle in the ``handle`` query parameter.

    Query Parameters:
        handle: AT Protocol handle or DID
        returnUrl: Optional frontend path to return to after login

    Returns:
        JSON ``{"authUrl": ...}`` pointing at the user's authorization server.
        400 when the account cannot be found, 502 when the authorization
        server rejected the request.
    """
    handle: Optional[str] = request.query.get("handle", None)
    if handle is None or not handle.strip():
        return web.json_response(status=400, data={"error": "Handle is required"})

    settings = request.app[SettingsAppKey]
    session_store = request.app[SessionStoreAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    try:
        auth_url = await oauth_init(
            settings,
            metrics_client,
            request.app[SessionAppKey],
            session_store.pending,
            handle,
            return_url=safe_return_url(request.query.get("returnUrl", None)),
        )
    except AuthorizationRequestError as e:
        logger.warning("authorization request for %s failed: %s", handle, e)
        metrics_client.increment(
            "skyreader.auth.login.init.error", 1, tag_dict={"code": e.code}
        )
        return web.json_response(status=502, data={"error": e.public_message})
    except AuthFlowException as e:
        logger.info("login for %s failed: %s", handle, e)
        metrics_client.increment(
            "skyreader.auth.login.init.error", 1, tag_dict={"code": e.code}
        )
        return web.json_response(status=400, data={"error": e.public_message})
    except Exception as e:
        logger.exception("login error")
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_error()
        return web.json_response(status=500, data={"error": LOGIN_FAILED})

    return web.json_response({"authUrl": auth_url})


def frontend_error_redirect(frontend_url: str, message: str) -> web.HTTPFound:
    return web.HTTPFound(
        f"{frontend_url}/auth/error?{urlencode({'error': message})}"
    )


async def handle_callback(request: web.Request):
    """
    Handle OAuth callback from AT Protocol authorization server.

    Query Parameters:
        code: Authorization code to exchange for tokens
        state: OAuth state parameter issued by the login endpoint
        iss: Issuer identifier (authorization server), optional
        error: Set instead of ``code`` when the user or server aborted

    Raises:
        HTTPFound: To the frontend callback page with the session id, or to
            the frontend error page with a message safe to display.
    """
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    error: Optional[str] = request.query.get("error", None)
    if error is not None:
        logger.info("authorization server returned error %s", error)
        metrics_client.increment(
            "skyreader.auth.login.callback.error", 1, tag_dict={"code": error}
        )
        raise frontend_error_redirect(
            settings.frontend_url, CALLBACK_ERRORS.get(error, LOGIN_FAILED)
        )

    try:
        login_result = await oauth_complete(
            settings,
            metrics_client,
            request.app[SessionAppKey],
            request.app[DatabaseSessionMakerAppKey],
            request.app[SessionStoreAppKey],
            code=request.query.get("code", None),
            state=request.query.get("state", None),
            issuer=request.query.get("iss", None),
        )
    except AuthFlowException as e:
        logger.warning("login callback failed: %s", e)
        metrics_client.increment(
            "skyreader.auth.login.callback.error", 1, tag_dict={"code": e.code}
        )
        raise frontend_error_redirect(settings.frontend_url, e.public_message)
    except Exception as e:
        logger.exception("login callback error")
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_error()
        raise frontend_error_redirect(settings.frontend_url, LOGIN_FAILED)

    query = urlencode(
        {
            "sessionId": login_result.session_id,
            "returnUrl": login_result.return_url or "/",
        }
    )
    raise web.HTTPFound(f"{settings.frontend_url}/auth/callback?{query}")


async def handle_me(request: web.Request):
    session = await session_from_request(request)
    return web.json_response(
        {
            "did": session.did,
            "handle": session.handle,
            "displayName": session.display_name,
            "avatarUrl": session.avatar_url,
            "pdsUrl": session.pds_url,
        }
    )


async def handle_logout(request: web.Request):
    """
    Revoke upstream (best effort) and delete the session.

    Succeeds whenever a bearer session id is presented, even when the session
    is already gone or the authorization server is unreachable.
    """
    session_id = bearer_token(request)
    if not session_id:
        raise unauthorized()

    await request.app[SessionStoreAppKey].logout(session_id)
    return web.json_response({"success": True})
