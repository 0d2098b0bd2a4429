import logging
from datetime import datetime, timezone
from typing import Any, Optional

from social.skyreader.auth.atproto.errors import InvalidStateError
from social.skyreader.auth.model.oauth import PendingAuthorization

logger = logging.getLogger(__name__)

PENDING_KEY_PREFIX = "oauth:pending:"
PENDING_INDEX_KEY = "oauth:pending:index"


def pending_key(state: str) -> str:
    return f"{PENDING_KEY_PREFIX}{state}"


class PendingAuthorizationStore:
    """
    Consume-once storage for in-flight logins.

    Entries expire on their own through the Redis TTL. The index sorted set
    (score = expiry timestamp) only exists so that :meth:`sweep_expired` can
    trim index rows whose keys are already gone.
    """

    def __init__(self, redis_client: Any, ttl: int = 600):
        self.redis_client = redis_client
        self.ttl = ttl

    async def put(self, pending: PendingAuthorization) -> None:
        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.set(
                pending_key(pending.state),
                pending.model_dump_json(),
                ex=self.ttl,
            )
            redis_pipe.zadd(
                PENDING_INDEX_KEY,
                {pending.state: int(pending.expires_at.timestamp())},
            )
            await redis_pipe.execute()

    async def consume(
        self, state: str, now: Optional[datetime] = None
    ) -> PendingAuthorization:
        """
        Atomically read and delete the pending authorization for ``state``.

        Raises:
            InvalidStateError: The state is unknown, was already used, or has
                expired.
        """
        now = now or datetime.now(timezone.utc)

        value = await self.redis_client.getdel(pending_key(state))
        await self.redis_client.zrem(PENDING_INDEX_KEY, state)

        if value is None:
            logger.warning("rejected unknown or replayed state")
            raise InvalidStateError("state not found")

        pending = PendingAuthorization.model_validate_json(value)
        if pending.expires_at <= now:
            logger.warning("rejected expired state for %s", pending.did)
            raise InvalidStateError("state expired")

        return pending

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired pending authorizations and their index rows."""
        now = now or datetime.now(timezone.utc)
        cutoff = int(now.timestamp())

        expired = await self.redis_client.zrange(
            PENDING_INDEX_KEY, 0, cutoff, byscore=True
        )
        if not expired:
            return 0

        states = [s.decode() if isinstance(s, bytes) else str(s) for s in expired]
        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.delete(*[pending_key(state) for state in states])
            redis_pipe.zrem(PENDING_INDEX_KEY, *states)
            await redis_pipe.execute()

        return len(states)
