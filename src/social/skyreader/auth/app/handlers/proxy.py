import logging
import re
from time import time
from typing import (
    List,
    Optional,
    Dict,
    Any,
)
from aiohttp import ClientError, web
from cryptography.fernet import InvalidToken
import sentry_sdk
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from social.skyreader.auth.app.config import (
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from social.skyreader.auth.app.handlers.helpers import session_from_request
from social.skyreader.auth.atproto.chain import (
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    MetricsMiddleware,
    RequestMiddlewareBase,
)
from social.skyreader.auth.atproto.errors import AuthFlowException
from social.skyreader.auth.atproto.jwt import import_dpop_key

logger = logging.getLogger(__name__)

NSID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*(\.[a-zA-Z0-9-]+){2,}$")


async def handle_xrpc_proxy(request: web.Request) -> web.Response:
    """
    Forward an XRPC call to the session user's PDS.

    The upstream request carries ``Authorization: DPoP <access token>`` and a
    proof bound to the same token, signed with the session key.
    """
    metrics_client = request.app[MetricsClientAppKey]

    xrpc_method: Optional[str] = request.match_info.get("method", None)
    if xrpc_method is None or NSID_PATTERN.match(xrpc_method) is None:
        metrics_client.increment("skyreader.auth.proxy.invalid_method", 1)
        return web.json_response(status=400, data={"error": "Invalid XRPC method"})

    session = await session_from_request(request)
    settings = request.app[SettingsAppKey]

    try:
        dpop_key = import_dpop_key(session.dpop_private_key, settings.encryption_key)
    except InvalidToken as e:
        sentry_sdk.capture_exception(e)
        logger.error("session key for %s cannot be decrypted", session.did)
        return web.json_response(status=401, data={"error": "Unauthorized"})

    parsed_destination = urlparse(f"{session.pds_url}/xrpc/{xrpc_method}")
    parsed_destination_query = parse_qsl(request.query_string, keep_blank_values=True)
    parsed_destination = parsed_destination._replace(
        query=urlencode(parsed_destination_query)
    )
    xrpc_url = urlunparse(parsed_destination)

    headers = {
        "Content-Type": request.headers.get("Content-Type", "application/json"),
        "Authorization": f"DPoP {session.access_token}",
    }

    chain_middleware: List[RequestMiddlewareBase] = [
        MetricsMiddleware(metrics_client, "xrpc_proxy"),
        GenerateDpopMiddleware(dpop_key, access_token=session.access_token),
    ]

    rargs: Dict[str, Any] = {}

    if request.method == "POST":
        rargs["data"] = await request.read()

    chain_client = ChainMiddlewareClient(
        client_session=request.app[SessionAppKey],
        raise_for_status=False,
        middleware=chain_middleware,
    )

    start_time = time()
    try:
        async with chain_client.request(
            request.method, xrpc_url, raise_for_status=None, headers=headers, **rargs
        ) as (
            client_response,
            chain_response,
        ):
            return chain_response.to_web_response()
    except (AuthFlowException, ClientError, TimeoutError) as e:
        logger.warning("xrpc proxy %s for %s failed: %s", xrpc_method, session.did, e)
        return web.json_response(status=502, data={"error": "Upstream request failed"})
    finally:
        metrics_client.timer(
            "skyreader.auth.proxy.request.time",
            time() - start_time,
            tag_dict={
                "xrpc_service": session.pds_url.removeprefix("https://"),
                "xrpc_method": xrpc_method,
                "method": request.method.lower(),
            },
        )
