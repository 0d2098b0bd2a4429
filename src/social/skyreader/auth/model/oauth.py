"""OAuth flow records kept in the TTL cache.

Pending authorizations and sessions are short-lived and high-churn, so they
live in Redis as JSON documents rather than in the relational store.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class AuthServerMetadata(BaseModel):
    """Subset of RFC 8414 authorization server metadata used by the client."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    dpop_signing_alg_values_supported: List[str] = Field(default_factory=list)


class PendingAuthorization(BaseModel):
    """State of one in-flight login, keyed by the unguessable ``state`` value."""

    state: str
    code_verifier: str
    did: str
    handle: str
    pds_url: str
    authorization_server: str
    return_url: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class TokenSet(BaseModel):
    """Tokens returned by a successful code exchange or refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    subject: str
    scope: Optional[str] = None


class Session(BaseModel):
    """
    An authenticated user-agent.

    ``dpop_private_key`` holds the serialized (and, when configured, encrypted)
    private JWK. It is written once when the session is created and reused by
    every refresh.
    """

    session_id: str
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    pds_url: str
    authorization_server: str
    access_token: str
    refresh_token: str
    dpop_private_key: str
    expires_at: datetime
    created_at: datetime
    refresh_failures: int = 0
    refresh_locked_until: Optional[datetime] = None
    last_refresh_attempt: Optional[datetime] = None
    last_refresh_error: Optional[str] = None

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now <= timedelta(seconds=seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_within(0, now)

    def is_refresh_locked(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.refresh_locked_until is not None and self.refresh_locked_until > now

    def apply_tokens(self, tokens: TokenSet) -> "Session":
        """Return a copy with new tokens and a cleared failure record."""
        return self.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": tokens.expires_at,
                "refresh_failures": 0,
                "refresh_locked_until": None,
                "last_refresh_error": None,
            }
        )


class LoginResult(BaseModel):
    """What a completed callback hands back to the HTTP layer."""

    session_id: str
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    return_url: Optional[str] = None
