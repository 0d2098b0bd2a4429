from typing import Dict, Optional
from urllib.parse import urlparse

from aiohttp import web

from social.skyreader.auth.app.config import SettingsAppKey


def get_cors_headers(
    origin_value: Optional[str], frontend_url: str, debug: bool
) -> Dict[str, str]:
    """Return CORS headers for the frontend origin.

    Only the configured frontend origin is echoed back. In debug mode any
    localhost origin is accepted as well.
    """
    allowed_debug_hosts = {
        "localhost",
        "127.0.0.1",
    }

    headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }

    allowed_origin = frontend_url
    if origin_value:
        parsed = urlparse(origin_value)
        if origin_value.rstrip("/") == frontend_url:
            allowed_origin = origin_value
        elif debug and parsed.hostname in allowed_debug_hosts:
            allowed_origin = origin_value

    headers["Access-Control-Allow-Origin"] = allowed_origin
    return headers


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    headers = get_cors_headers(
        request.headers.get("Origin"), settings.frontend_url, settings.debug
    )

    if request.method == "OPTIONS":
        return web.Response(status=204, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        # Redirects and error responses raised by handlers carry CORS headers too.
        e.headers.update(headers)
        raise

    response.headers.update(headers)
    return response
