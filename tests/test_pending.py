"""Tests for the consume-once pending authorization store."""

from datetime import datetime, timedelta, timezone

import pytest

from social.skyreader.auth.atproto.errors import InvalidStateError
from social.skyreader.auth.model.oauth import PendingAuthorization
from social.skyreader.auth.session.pending import (
    PENDING_INDEX_KEY,
    PendingAuthorizationStore,
    pending_key,
)


def create_pending(state: str = "state-1", expires_in: int = 600) -> PendingAuthorization:
    now = datetime.now(timezone.utc)
    return PendingAuthorization(
        state=state,
        code_verifier="verifier",
        did="did:plc:alice",
        handle="alice.example.com",
        pds_url="https://pds.example.com",
        authorization_server="https://auth.example.com",
        return_url="/feeds",
        created_at=now,
        expires_at=now + timedelta(seconds=expires_in),
    )


class TestPendingAuthorizationStore:
    """Test put, consume and sweep."""

    @pytest.mark.asyncio
    async def test_put_sets_ttl(self, fake_redis_client):
        store = PendingAuthorizationStore(fake_redis_client, ttl=600)
        await store.put(create_pending())

        ttl = await fake_redis_client.ttl(pending_key("state-1"))
        assert 0 < ttl <= 600
        assert await fake_redis_client.zscore(PENDING_INDEX_KEY, "state-1")

    @pytest.mark.asyncio
    async def test_consume_once(self, fake_redis_client):
        store = PendingAuthorizationStore(fake_redis_client)
        await store.put(create_pending())

        pending = await store.consume("state-1")
        assert pending.did == "did:plc:alice"
        assert pending.return_url == "/feeds"

        with pytest.raises(InvalidStateError):
            await store.consume("state-1")

        assert await fake_redis_client.zscore(PENDING_INDEX_KEY, "state-1") is None

    @pytest.mark.asyncio
    async def test_unknown_state(self, fake_redis_client):
        store = PendingAuthorizationStore(fake_redis_client)
        with pytest.raises(InvalidStateError):
            await store.consume("never-issued")

    @pytest.mark.asyncio
    async def test_expired_state(self, fake_redis_client):
        store = PendingAuthorizationStore(fake_redis_client)
        await store.put(create_pending(expires_in=60))

        with pytest.raises(InvalidStateError):
            await store.consume(
                "state-1", now=datetime.now(timezone.utc) + timedelta(seconds=61)
            )

        assert await fake_redis_client.get(pending_key("state-1")) is None

    @pytest.mark.asyncio
    async def test_sweep_expired(self, fake_redis_client):
        store = PendingAuthorizationStore(fake_redis_client)
        await store.put(create_pending("old", expires_in=-5))
        await store.put(create_pending("current", expires_in=600))

        assert await store.sweep_expired() == 1
        assert await fake_redis_client.get(pending_key("old")) is None
        assert await fake_redis_client.get(pending_key("current")) is not None
        assert await store.sweep_expired() == 0
