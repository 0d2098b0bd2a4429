"""Tests for the fixed window rate limiter."""

import pytest

from social.skyreader.auth.app.ratelimit import RateLimiter


class TestRateLimiter:
    """Test budget accounting per identity and resource."""

    @pytest.mark.asyncio
    async def test_denies_after_limit(self, fake_redis_client):
        limiter = RateLimiter(fake_redis_client, limit=3, window=60)

        decisions = [
            await limiter.check("did:plc:alice", "/api/auth/me", now=1000.0)
            for _ in range(4)
        ]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert decisions[-1].retry_after == 20

    @pytest.mark.asyncio
    async def test_budgets_are_independent(self, fake_redis_client):
        limiter = RateLimiter(fake_redis_client, limit=1, window=60)

        assert await limiter.allow("did:plc:alice", "/api/auth/me", now=1000.0)
        assert not await limiter.allow("did:plc:alice", "/api/auth/me", now=1000.0)
        assert await limiter.allow("did:plc:alice", "/xrpc/a.b.c", now=1000.0)
        assert await limiter.allow("did:plc:bob", "/api/auth/me", now=1000.0)

    @pytest.mark.asyncio
    async def test_new_window_resets(self, fake_redis_client):
        limiter = RateLimiter(fake_redis_client, limit=1, window=60)

        assert await limiter.allow("did:plc:alice", "/api/auth/me", now=1000.0)
        assert not await limiter.allow("did:plc:alice", "/api/auth/me", now=1019.0)
        assert await limiter.allow("did:plc:alice", "/api/auth/me", now=1020.0)

    @pytest.mark.asyncio
    async def test_counter_expires(self, fake_redis_client):
        limiter = RateLimiter(fake_redis_client, limit=5, window=60)
        await limiter.check("did:plc:alice", "/api/auth/me", now=1000.0)

        keys = await fake_redis_client.keys("ratelimit:*")
        assert len(keys) == 1
        assert 0 < await fake_redis_client.ttl(keys[0]) <= 60
