"""
Session storage and refresh coordination.

A session record lives at ``session:{session_id}`` with a TTL that is renewed
on every write. Two sorted sets index sessions for the periodic sweep:

* ``sessions:expiry`` scored by access token expiry
* ``sessions:lockout`` scored by ``refresh_locked_until`` for sessions that
  reached the failure ceiling

Token refresh is serialized per session across every worker process with a
Redis lock (``SET NX PX``). The winner keeps extending the lock while the
refresh runs and performs the refresh; everyone else waits for the lock to
disappear and then reads whatever the winner stored. Losers never refresh.
"""

import asyncio
import contextlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

import sentry_sdk

from social.skyreader.auth.app.metrics import MetricsClient, NoOpMetricsClient
from social.skyreader.auth.atproto.errors import (
    AuthFlowException,
    IdentityMismatchError,
    RefreshError,
    SessionExpiredError,
    SessionNotFoundError,
)
from social.skyreader.auth.model.oauth import Session, TokenSet
from social.skyreader.auth.session.pending import PendingAuthorizationStore

if TYPE_CHECKING:
    from social.skyreader.auth.app.config import Settings

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
SESSION_EXPIRY_INDEX = "sessions:expiry"
SESSION_LOCKOUT_INDEX = "sessions:lockout"
REFRESH_LOCK_PREFIX = "refresh:lock:"

# Delete the lock only if we still own it.
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extend the lock only if we still own it.
EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

Refresher = Callable[[Session], Awaitable[TokenSet]]
Revoker = Callable[[Session], Awaitable[None]]


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def refresh_lock_key(session_id: str) -> str:
    return f"{REFRESH_LOCK_PREFIX}{session_id}"


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


@dataclass
class SweepResult:
    pending: int = 0
    expired: int = 0
    locked_out: int = 0


class SessionStore:
    """
    Owns every read and write of session records.

    ``refresher`` performs the upstream refresh-token grant for a session and
    returns the new tokens. ``revoker`` is called on logout and is expected to
    be best-effort. Both are injected so the store has no HTTP dependency of
    its own.
    """

    def __init__(
        self,
        redis_client: Any,
        settings: "Settings",
        refresher: Optional[Refresher] = None,
        revoker: Optional[Revoker] = None,
        metrics_client: Optional[MetricsClient] = None,
        lock_poll_interval: float = 0.1,
    ):
        self.redis_client = redis_client
        self.settings = settings
        self.refresher = refresher
        self.revoker = revoker
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.lock_poll_interval = lock_poll_interval
        self.pending = PendingAuthorizationStore(
            redis_client, ttl=settings.pending_authorization_ttl
        )

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_urlsafe(32)

    async def create(
        self,
        did: str,
        handle: str,
        pds_url: str,
        authorization_server: str,
        tokens: TokenSet,
        dpop_private_key: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        now = now or datetime.now(timezone.utc)
        session = Session(
            session_id=self.new_session_id(),
            did=did,
            handle=handle,
            display_name=display_name,
            avatar_url=avatar_url,
            pds_url=pds_url,
            authorization_server=authorization_server,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            dpop_private_key=dpop_private_key,
            expires_at=tokens.expires_at,
            created_at=now,
        )
        await self.store(session)
        return session

    async def store(self, session: Session, ttl: Optional[int] = None) -> None:
        """Write the whole record and its index rows in one transaction."""
        if ttl is None:
            ttl = self.settings.session_ttl

        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.set(
                session_key(session.session_id), session.model_dump_json(), ex=ttl
            )
            redis_pipe.zadd(
                SESSION_EXPIRY_INDEX,
                {session.session_id: int(session.expires_at.timestamp())},
            )
            if session.refresh_failures >= self.settings.refresh_max_failures:
                locked_until = session.refresh_locked_until or session.expires_at
                redis_pipe.zadd(
                    SESSION_LOCKOUT_INDEX,
                    {session.session_id: int(locked_until.timestamp())},
                )
            else:
                redis_pipe.zrem(SESSION_LOCKOUT_INDEX, session.session_id)
            await redis_pipe.execute()

    async def load(self, session_id: str) -> Optional[Session]:
        value = await self.redis_client.get(session_key(session_id))
        if value is None:
            return None
        return Session.model_validate_json(value)

    async def delete(self, session_id: str) -> None:
        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.delete(session_key(session_id))
            redis_pipe.zrem(SESSION_EXPIRY_INDEX, session_id)
            redis_pipe.zrem(SESSION_LOCKOUT_INDEX, session_id)
            await redis_pipe.execute()

    def is_locked_out(self, session: Session) -> bool:
        return session.refresh_failures >= self.settings.refresh_max_failures

    async def get(self, session_id: str, now: Optional[datetime] = None) -> Session:
        """
        Return a usable session, refreshing it first when its access token is
        about to expire.

        Raises:
            SessionNotFoundError: No such session.
            SessionExpiredError: The session is locked out and its access
                token has expired, or a refresh returned tokens for another
                account and the session was ended.
            RefreshError: A needed refresh failed and the access token can no
                longer be used.
        """
        now = now or datetime.now(timezone.utc)

        session = await self.load(session_id)
        if session is None:
            raise SessionNotFoundError()

        if self.is_locked_out(session) and session.is_expired(now):
            raise SessionExpiredError()

        if not session.expires_within(self.settings.refresh_threshold, now):
            return session

        # The refresh token is known to be dead, serve what is left.
        if self.is_locked_out(session):
            return session

        if session.is_refresh_locked(now):
            if session.is_expired(now):
                raise RefreshError("refresh backoff in effect")
            return session

        try:
            return await self.get_or_refresh(session_id)
        except RefreshError as e:
            if session.is_expired(now):
                raise
            logger.info(
                "refresh failed for session of %s, serving current token: %s",
                session.did,
                e.detail,
            )
            return session

    async def get_or_refresh(self, session_id: str) -> Session:
        """
        Refresh the session unless another caller is already doing so.

        Only the caller that wins the refresh lock talks to the authorization
        server. Losers wait for the lock to be released and return the stored
        session.
        """
        lock_key = refresh_lock_key(session_id)
        lock_token = secrets.token_hex(16)
        lock_ttl_ms = self.settings.refresh_lock_ttl * 1000

        acquired = await self.redis_client.set(
            lock_key, lock_token, nx=True, px=lock_ttl_ms
        )
        if not acquired:
            return await self._wait_for_refresh(session_id, lock_key)

        keep_alive = asyncio.create_task(
            self._keep_lock(lock_key, lock_token, lock_ttl_ms)
        )
        try:
            # Another worker may have refreshed between our read and the lock.
            session = await self.load(session_id)
            if session is None:
                raise SessionNotFoundError()

            now = datetime.now(timezone.utc)
            if not session.expires_within(self.settings.refresh_threshold, now):
                return session
            if self.is_locked_out(session):
                if session.is_expired(now):
                    raise SessionExpiredError()
                return session

            return await self._refresh(session, now)
        finally:
            keep_alive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keep_alive
            await self.redis_client.eval(RELEASE_LOCK_SCRIPT, 1, lock_key, lock_token)

    async def _keep_lock(
        self, lock_key: str, lock_token: str, lock_ttl_ms: int
    ) -> None:
        """Push the lock expiry forward every third of its TTL until cancelled."""
        while True:
            await asyncio.sleep(lock_ttl_ms / 3000)
            extended = await self.redis_client.eval(
                EXTEND_LOCK_SCRIPT, 1, lock_key, lock_token, lock_ttl_ms
            )
            if not extended:
                logger.error("lost refresh lock %s while refreshing", lock_key)
                return

    async def _wait_for_refresh(self, session_id: str, lock_key: str) -> Session:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.refresh_lock_wait

        while loop.time() < deadline:
            await asyncio.sleep(self.lock_poll_interval)
            if not await self.redis_client.exists(lock_key):
                break
        else:
            logger.warning("timed out waiting for refresh of session %s", session_id)

        session = await self.load(session_id)
        if session is None:
            raise SessionNotFoundError()
        if session.is_expired():
            raise RefreshError("concurrent refresh did not produce a usable token")
        return session

    async def _refresh(self, session: Session, now: datetime) -> Session:
        if self.refresher is None:
            raise RefreshError("no refresher configured")

        try:
            tokens = await self.refresher(session)
        except IdentityMismatchError as e:
            sentry_sdk.capture_exception(e)
            logger.error(
                "refresh for %s returned tokens for %s, ending session",
                e.expected,
                e.actual,
            )
            self.metrics_client.increment(
                "skyreader.auth.session.refresh.count",
                1,
                tag_dict={"result": "identity_mismatch"},
            )
            await self.delete(session.session_id)
            raise SessionExpiredError() from e
        except AuthFlowException as e:
            await self._record_failure(session, e, now)
            if isinstance(e, RefreshError):
                raise
            raise RefreshError(e.detail) from e
        except Exception as e:
            sentry_sdk.capture_exception(e)
            await self._record_failure(session, e, now)
            raise RefreshError(type(e).__name__) from e

        refreshed = session.apply_tokens(tokens).model_copy(
            update={"last_refresh_attempt": now}
        )
        await self.store(refreshed)

        self.metrics_client.increment(
            "skyreader.auth.session.refresh.count", 1, tag_dict={"result": "success"}
        )
        logger.debug("refreshed session for %s", session.did)
        return refreshed

    async def _record_failure(
        self, session: Session, error: Exception, now: datetime
    ) -> Session:
        failures = session.refresh_failures + 1
        if isinstance(error, RefreshError) and error.terminal:
            failures = max(failures, self.settings.refresh_max_failures)

        delay = min(
            (2**failures) * self.settings.refresh_backoff_base,
            self.settings.refresh_backoff_cap,
        )

        updated = session.model_copy(
            update={
                "refresh_failures": failures,
                "refresh_locked_until": now + timedelta(seconds=delay),
                "last_refresh_attempt": now,
                "last_refresh_error": str(error)[:255],
            }
        )
        await self.store(updated)

        locked_out = self.is_locked_out(updated)
        self.metrics_client.increment(
            "skyreader.auth.session.refresh.count",
            1,
            tag_dict={"result": "locked_out" if locked_out else "failure"},
        )
        logger.warning(
            "refresh failure %d for %s, next attempt in %d seconds",
            failures,
            session.did,
            delay,
        )
        return updated

    async def logout(self, session_id: str) -> None:
        """Revoke upstream if possible, then delete the session locally."""
        session = await self.load(session_id)
        if session is not None and self.revoker is not None:
            try:
                await self.revoker(session)
            except Exception as e:
                logger.warning("revocation failed for %s: %s", session.did, e)

        await self.delete(session_id)

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Remove abandoned logins, sessions whose access token expired longer
        than the grace period ago, and locked-out sessions whose backoff
        has elapsed.
        """
        now = now or datetime.now(timezone.utc)
        result = SweepResult()

        result.pending = await self.pending.sweep_expired(now)

        grace_cutoff = now - timedelta(seconds=self.settings.refresh_grace_period)
        expired = await self.redis_client.zrange(
            SESSION_EXPIRY_INDEX, 0, int(grace_cutoff.timestamp()), byscore=True
        )
        for value in expired:
            await self.delete(_decode(value))
            result.expired += 1

        locked = await self.redis_client.zrange(
            SESSION_LOCKOUT_INDEX, 0, int(now.timestamp()), byscore=True
        )
        locked_ids: List[str] = [_decode(value) for value in locked]
        for session_id in locked_ids:
            session = await self.load(session_id)
            if session is not None and (
                not self.is_locked_out(session) or session.is_refresh_locked(now)
            ):
                continue
            await self.delete(session_id)
            result.locked_out += 1

        return result
