"""
AT Protocol OAuth Client Implementation

This module implements the OAuth 2.0 public client used to log users in with
their AT Protocol identity and keep their tokens fresh.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The OAuth flow is implemented in three stages:
1. Initialization (`oauth_init`): Resolve user identity, prepare PKCE challenge,
   push the authorization request when the server supports PAR, and return
   the URL to send the user to
2. Completion (`oauth_complete`): Consume the pending state, exchange the
   authorization code for DPoP-bound tokens, verify the token subject and
   create the session
3. Refresh (`oauth_refresh`): Use the refresh token and the session's DPoP
   key to obtain new tokens before the current ones expire

`oauth_revoke` is a best-effort courtesy call made on logout.

The client is a public client (`token_endpoint_auth_method: none`): there is
no client secret and no client assertion, the DPoP key is what binds tokens
to this backend.
"""

from datetime import datetime, timezone, timedelta
import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from aiohttp import ClientError, ClientSession
from cryptography.fernet import InvalidToken
import sentry_sdk
from sqlalchemy.ext.asyncio import (
    async_sessionmaker,
    AsyncSession,
)

from social.skyreader.auth.app.config import Settings
from social.skyreader.auth.app.metrics import MetricsClient
from social.skyreader.auth.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    GenerateDpopMiddleware,
    MetricsMiddleware,
)
from social.skyreader.auth.atproto.errors import (
    AuthFlowException,
    AuthorizationRequestError,
    IdentityMismatchError,
    InvalidStateError,
    RefreshError,
    TokenExchangeError,
)
from social.skyreader.auth.atproto.jwt import (
    export_dpop_key,
    generate_dpop_key,
    import_dpop_key,
)
from social.skyreader.auth.atproto.pds import (
    fetch_auth_server_metadata,
    fetch_profile,
)
from social.skyreader.auth.atproto.pkce import generate_pkce
from social.skyreader.auth.model.oauth import (
    LoginResult,
    PendingAuthorization,
    Session,
    TokenSet,
)
from social.skyreader.auth.model.users import upsert_user_stmt
from social.skyreader.auth.resolve.handle import resolve_subject
from social.skyreader.auth.session.pending import PendingAuthorizationStore
from social.skyreader.auth.session.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def client_metadata(settings: Settings) -> Dict[str, Any]:
    """The client metadata document served at ``settings.client_id``."""
    return {
        "client_id": settings.client_id,
        "client_name": settings.client_name,
        "client_uri": settings.public_base_url,
        "redirect_uris": [settings.redirect_uri],
        "scope": settings.oauth_scope,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "none",
        "application_type": "web",
        "dpop_bound_access_tokens": True,
    }


def build_authorization_url(authorization_endpoint: str, params: Dict[str, str]) -> str:
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(params)
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


def build_token_set(
    token_response: Dict[str, Any],
    now: datetime,
    default_subject: Optional[str] = None,
) -> TokenSet:
    """
    Validate a token endpoint response.

    Raises:
        TokenExchangeError: A required field is missing or the token is not
            DPoP-bound.
    """
    access_token = token_response.get("access_token", None)
    if not isinstance(access_token, str) or not access_token:
        raise TokenExchangeError("No access token")

    refresh_token = token_response.get("refresh_token", None)
    if not isinstance(refresh_token, str) or not refresh_token:
        raise TokenExchangeError("No refresh token")

    subject = token_response.get("sub", default_subject)
    if not isinstance(subject, str) or not subject:
        raise TokenExchangeError("No subject")

    token_type = token_response.get("token_type", "DPoP")
    if str(token_type).lower() != "dpop":
        raise TokenExchangeError(f"Unexpected token type {token_type}")

    expires_in = token_response.get("expires_in", DEFAULT_EXPIRES_IN)
    if not isinstance(expires_in, (int, float)) or expires_in <= 0:
        expires_in = DEFAULT_EXPIRES_IN

    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=expires_in),
        subject=subject,
        scope=token_response.get("scope", None),
    )


async def oauth_init(
    settings: Settings,
    metrics_client: MetricsClient,
    http_session: ClientSession,
    pending_store: PendingAuthorizationStore,
    subject: str,
    return_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Initialize OAuth flow with AT Protocol.

    This function starts the OAuth authorization code flow:
    1. Resolves the user's handle or DID to a DID and PDS
    2. Discovers the authorization server protecting the PDS
    3. Generates PKCE verification codes and the state value
    4. Pushes the authorization request when PAR is advertised
    5. Stores the pending authorization for the callback
    6. Returns a redirect URL to the authorization server

    Nothing is stored unless every step before it succeeded.

    Raises:
        HandleResolutionError, DidResolutionError, MetadataFetchError: The
            account or its authorization server could not be found.
        AuthorizationRequestError: The pushed authorization request was
            rejected.
    """
    now = now or datetime.now(timezone.utc)

    resolved_subject = await resolve_subject(
        http_session,
        settings.plc_hostname,
        subject,
        default_suffix=settings.default_handle_suffix,
        dns_timeout=settings.http_timeout,
    )

    metadata = await fetch_auth_server_metadata(http_session, resolved_subject.pds)

    state = secrets.token_urlsafe(32)
    pkce = generate_pkce()

    authorization_params = {
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "response_type": "code",
        "scope": settings.oauth_scope,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": pkce.code_challenge_method,
        "state": state,
        "login_hint": resolved_subject.did,
    }

    if metadata.pushed_authorization_request_endpoint:
        request_uri = await _push_authorization_request(
            metrics_client,
            http_session,
            metadata.pushed_authorization_request_endpoint,
            authorization_params,
        )
        redirect_destination = build_authorization_url(
            metadata.authorization_endpoint,
            {"client_id": settings.client_id, "request_uri": request_uri},
        )
    else:
        redirect_destination = build_authorization_url(
            metadata.authorization_endpoint, authorization_params
        )

    await pending_store.put(
        PendingAuthorization(
            state=state,
            code_verifier=pkce.code_verifier,
            did=resolved_subject.did,
            handle=resolved_subject.handle,
            pds_url=resolved_subject.pds,
            authorization_server=metadata.issuer,
            return_url=return_url,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.pending_authorization_ttl),
        )
    )

    metrics_client.increment("skyreader.auth.login.init.count", 1)
    return redirect_destination


async def _push_authorization_request(
    metrics_client: MetricsClient,
    http_session: ClientSession,
    par_url: str,
    authorization_params: Dict[str, str],
) -> str:
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        raise_for_status=False,
        middleware=[MetricsMiddleware(metrics_client, "par")],
    )

    try:
        async with chain_client.post(par_url, data=authorization_params) as (
            client_response,
            chain_response,
        ):
            pass
    except (ClientError, TimeoutError) as e:
        raise AuthorizationRequestError(f"PAR request failed: {e}") from e

    if chain_response.status not in (200, 201):
        raise AuthorizationRequestError(
            f"PAR rejected with {chain_response.status} {chain_response.error_code()}"
        )

    if not isinstance(chain_response.body, dict):
        raise AuthorizationRequestError("Invalid PAR response")

    request_uri = chain_response.body.get("request_uri", None)
    if not isinstance(request_uri, str) or not request_uri:
        raise AuthorizationRequestError("No PAR request URI found")

    return request_uri


async def _token_request(
    metrics_client: MetricsClient,
    http_session: ClientSession,
    token_endpoint: str,
    dpop_middleware: GenerateDpopMiddleware,
    data: Dict[str, str],
    operation: str,
) -> ChainResponse:
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        raise_for_status=False,
        middleware=[MetricsMiddleware(metrics_client, operation), dpop_middleware],
    )

    try:
        async with chain_client.post(token_endpoint, data=data) as (
            client_response,
            chain_response,
        ):
            return chain_response
    except (ClientError, TimeoutError) as e:
        raise TokenExchangeError(f"{operation} request failed: {e}") from e


async def oauth_complete(
    settings: Settings,
    metrics_client: MetricsClient,
    http_session: ClientSession,
    database_session_maker: async_sessionmaker[AsyncSession],
    session_store: SessionStore,
    code: Optional[str],
    state: Optional[str],
    issuer: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LoginResult:
    """
    Complete OAuth flow by exchanging authorization code for tokens.

    This function completes the OAuth authorization code flow:
    1. Consumes the pending authorization for ``state`` (exactly once)
    2. Checks the ``iss`` callback parameter when supplied
    3. Exchanges the code for DPoP-bound tokens with a fresh session key
    4. Verifies the token subject is the DID the login was started for
    5. Fetches the profile, upserts the user record and creates the session

    Raises:
        InvalidStateError: Unknown, replayed or expired state, or issuer
            mismatch.
        TokenExchangeError: The token endpoint rejected the exchange or
            answered with an incomplete response.
        NonceRetryExhaustedError: The token endpoint demanded a second nonce.
        IdentityMismatchError: The token belongs to a different account.
    """
    if not code or not state:
        raise InvalidStateError("missing code or state")

    now = now or datetime.now(timezone.utc)

    pending = await session_store.pending.consume(state, now)

    if issuer is not None and issuer.rstrip("/") != pending.authorization_server.rstrip(
        "/"
    ):
        logger.warning(
            "callback issuer %s does not match %s for %s",
            issuer,
            pending.authorization_server,
            pending.did,
        )
        raise InvalidStateError("issuer mismatch")

    metadata = await fetch_auth_server_metadata(http_session, pending.pds_url)
    if metadata.issuer.rstrip("/") != pending.authorization_server.rstrip("/"):
        raise TokenExchangeError(
            f"authorization server for {pending.did} changed during login"
        )

    dpop_key, dpop_public_key = generate_dpop_key()

    chain_response = await _token_request(
        metrics_client,
        http_session,
        metadata.token_endpoint,
        GenerateDpopMiddleware(dpop_key, dpop_public_key),
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.redirect_uri,
            "client_id": settings.client_id,
            "code_verifier": pending.code_verifier,
        },
        "token_exchange",
    )

    if not chain_response.ok:
        raise TokenExchangeError(
            f"token endpoint returned {chain_response.status} {chain_response.error_code()}"
        )
    if not isinstance(chain_response.body, dict):
        raise TokenExchangeError("Invalid token response")

    tokens = build_token_set(chain_response.body, now)

    if tokens.subject != pending.did:
        error = IdentityMismatchError(pending.did, tokens.subject)
        logger.error(
            "token subject mismatch during login: expected %s got %s",
            pending.did,
            tokens.subject,
        )
        sentry_sdk.capture_exception(error)
        metrics_client.increment("skyreader.auth.login.identity_mismatch.count", 1)
        raise error

    profile = await fetch_profile(
        http_session,
        metrics_client,
        pending.pds_url,
        pending.did,
        tokens.access_token,
        dpop_key,
    )
    handle = profile.get("handle", None) or pending.handle
    display_name = profile.get("displayName", None)
    avatar_url = profile.get("avatar", None)

    async with database_session_maker() as database_session:
        async with database_session.begin():
            await database_session.execute(
                upsert_user_stmt(
                    did=pending.did,
                    handle=handle,
                    pds_url=pending.pds_url,
                    display_name=display_name,
                    avatar_url=avatar_url,
                    now=now,
                )
            )

    session = await session_store.create(
        did=pending.did,
        handle=handle,
        pds_url=pending.pds_url,
        authorization_server=pending.authorization_server,
        tokens=tokens,
        dpop_private_key=export_dpop_key(dpop_key, settings.encryption_key),
        display_name=display_name,
        avatar_url=avatar_url,
        now=now,
    )

    metrics_client.increment("skyreader.auth.login.complete.count", 1)
    logger.info("login completed for %s", pending.did)

    return LoginResult(
        session_id=session.session_id,
        did=session.did,
        handle=session.handle,
        display_name=session.display_name,
        avatar_url=session.avatar_url,
        return_url=pending.return_url,
    )


async def oauth_refresh(
    settings: Settings,
    metrics_client: MetricsClient,
    http_session: ClientSession,
    session: Session,
) -> TokenSet:
    """
    Refresh OAuth tokens before they expire.

    Uses the session's own DPoP key; a session keeps one key for its whole
    life. The caller owns persisting the result, see
    :meth:`SessionStore.get_or_refresh`.

    Raises:
        RefreshError: The refresh was rejected. ``terminal`` is set when the
            refresh token itself is no longer valid.
        IdentityMismatchError: The refreshed token belongs to another account.
    """
    now = datetime.now(timezone.utc)

    metadata = await fetch_auth_server_metadata(http_session, session.pds_url)
    if metadata.issuer.rstrip("/") != session.authorization_server.rstrip("/"):
        raise RefreshError(
            f"authorization server for {session.did} changed", terminal=True
        )

    try:
        dpop_key = import_dpop_key(session.dpop_private_key, settings.encryption_key)
    except InvalidToken as e:
        raise RefreshError("session key cannot be decrypted", terminal=True) from e

    try:
        chain_response = await _token_request(
            metrics_client,
            http_session,
            metadata.token_endpoint,
            GenerateDpopMiddleware(dpop_key),
            {
                "grant_type": "refresh_token",
                "refresh_token": session.refresh_token,
                "client_id": settings.client_id,
            },
            "token_refresh",
        )
    except TokenExchangeError as e:
        raise RefreshError(e.detail) from e

    if not chain_response.ok:
        error_code = chain_response.error_code()
        raise RefreshError(
            f"token endpoint returned {chain_response.status} {error_code}",
            terminal=error_code == "invalid_grant",
        )
    if not isinstance(chain_response.body, dict):
        raise RefreshError("Invalid token response")

    try:
        tokens = build_token_set(chain_response.body, now, default_subject=session.did)
    except TokenExchangeError as e:
        raise RefreshError(e.detail) from e

    if tokens.subject != session.did:
        logger.error(
            "token subject mismatch during refresh: expected %s got %s",
            session.did,
            tokens.subject,
        )
        raise IdentityMismatchError(session.did, tokens.subject)

    return tokens


async def oauth_revoke(
    settings: Settings,
    metrics_client: MetricsClient,
    http_session: ClientSession,
    session: Session,
) -> None:
    """
    Ask the authorization server to revoke the session's refresh token.

    Best effort: every failure is logged and swallowed so that logout always
    completes locally.
    """
    try:
        metadata = await fetch_auth_server_metadata(http_session, session.pds_url)
        if not metadata.revocation_endpoint:
            logger.debug("no revocation endpoint for %s", session.did)
            return

        dpop_key = import_dpop_key(session.dpop_private_key, settings.encryption_key)
        chain_response = await _token_request(
            metrics_client,
            http_session,
            metadata.revocation_endpoint,
            GenerateDpopMiddleware(dpop_key),
            {
                "token": session.refresh_token,
                "token_type_hint": "refresh_token",
                "client_id": settings.client_id,
            },
            "token_revoke",
        )
        if not chain_response.ok:
            logger.info(
                "revocation for %s returned %d", session.did, chain_response.status
            )
    except (AuthFlowException, InvalidToken) as e:
        logger.warning("revocation for %s failed: %s", session.did, e)
