"""Discovery documents and read calls against a user's PDS."""

import logging
from typing import Optional, Any, Dict

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import ValidationError

from social.skyreader.auth.app.metrics import MetricsClient
from social.skyreader.auth.atproto.chain import (
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    MetricsMiddleware,
)
from social.skyreader.auth.atproto.errors import (
    AuthFlowException,
    MetadataFetchError,
)
from social.skyreader.auth.model.oauth import AuthServerMetadata

logger = logging.getLogger(__name__)


async def _get_json(session: ClientSession, url: str) -> Optional[Any]:
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                logger.debug("%s returned %d", url, resp.status)
                return None
            return await resp.json(content_type=None)
    except (ClientError, TimeoutError, ValueError) as e:
        logger.debug("could not fetch %s: %s", url, e)
        return None


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    return await _get_json(session, f"{pds}/.well-known/oauth-protected-resource")


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Any]:
    return await _get_json(
        session, f"{authorization_server}/.well-known/oauth-authorization-server"
    )


async def fetch_auth_server_metadata(
    session: ClientSession, pds_url: str
) -> AuthServerMetadata:
    """
    Discover the authorization server that protects ``pds_url``.

    Reads the protected-resource document of the PDS, takes its first
    authorization server and loads that server's metadata document.

    Raises:
        MetadataFetchError: A document is missing or malformed, the issuer
            does not match the server it was fetched from, or the server
            advertises DPoP algorithms without ES256.
    """
    protected_resource = await oauth_protected_resource(session, pds_url)
    if not isinstance(protected_resource, dict):
        raise MetadataFetchError(f"no protected resource document at {pds_url}")

    authorization_servers = protected_resource.get("authorization_servers", []) or []
    first_authorization_server = next(iter(authorization_servers), None)
    if not isinstance(first_authorization_server, str):
        raise MetadataFetchError(f"no authorization server listed by {pds_url}")
    first_authorization_server = first_authorization_server.rstrip("/")

    document = await oauth_authorization_server(session, first_authorization_server)
    if not isinstance(document, dict):
        raise MetadataFetchError(
            f"no metadata document at {first_authorization_server}"
        )

    try:
        metadata = AuthServerMetadata.model_validate(document)
    except ValidationError as e:
        raise MetadataFetchError(
            f"malformed metadata from {first_authorization_server}"
        ) from e

    if metadata.issuer.rstrip("/") != first_authorization_server:
        raise MetadataFetchError(
            f"issuer {metadata.issuer} does not match {first_authorization_server}"
        )

    if (
        metadata.dpop_signing_alg_values_supported
        and "ES256" not in metadata.dpop_signing_alg_values_supported
    ):
        raise MetadataFetchError(
            f"{first_authorization_server} does not support ES256 DPoP proofs"
        )

    return metadata


async def fetch_profile(
    http_session: ClientSession,
    metrics_client: MetricsClient,
    pds_url: str,
    did: str,
    access_token: str,
    dpop_key: jwk.JWK,
) -> Dict[str, Any]:
    """
    Fetch ``app.bsky.actor.getProfile`` for ``did`` from its PDS.

    Best effort: any failure is logged and an empty dict returned, login
    never fails because a profile is unavailable.
    """
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        raise_for_status=False,
        middleware=[
            MetricsMiddleware(metrics_client, "get_profile"),
            GenerateDpopMiddleware(dpop_key, access_token=access_token),
        ],
    )

    try:
        async with chain_client.get(
            f"{pds_url}/xrpc/app.bsky.actor.getProfile",
            params={"actor": did},
            headers={"Authorization": f"DPoP {access_token}"},
        ) as (client_response, chain_response):
            if chain_response.ok and isinstance(chain_response.body, dict):
                return chain_response.body
            logger.info(
                "profile fetch for %s returned %d", did, chain_response.status
            )
    except (AuthFlowException, ClientError, TimeoutError) as e:
        logger.info("profile fetch for %s failed: %s", did, e)

    return {}
