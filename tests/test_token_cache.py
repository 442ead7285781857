"""
Tests for the gateway access token cache
"""

import asyncio

import pytest

from services.gateways.token_cache import TokenCache


class TestTokenCache:

    def test_token_fresh_until_refresh_margin(self, fake_clock):
        cache = TokenCache(clock=fake_clock, refresh_margin=60)
        cache.store("token-1", expires_in=3600)

        assert cache.get() == "token-1"
        fake_clock.advance(3600 - 61)
        assert cache.get() == "token-1"
        fake_clock.advance(2)
        assert cache.get() is None

    def test_short_lived_token_uses_half_its_lifetime_as_margin(self, fake_clock):
        cache = TokenCache(clock=fake_clock, refresh_margin=60)
        cache.store("short", expires_in=30)

        assert cache.get() == "short"
        fake_clock.advance(16)
        assert cache.get() is None

    def test_invalidate(self, fake_clock):
        cache = TokenCache(clock=fake_clock)
        cache.store("token-1", expires_in=3600)
        cache.invalidate()
        assert cache.get() is None
        assert cache.expires_at == 0.0

    @pytest.mark.asyncio
    async def test_get_or_refresh_fetches_once_for_concurrent_callers(self, fake_clock):
        cache = TokenCache(clock=fake_clock)
        fetches = []

        async def fetch():
            fetches.append(1)
            await asyncio.sleep(0)
            return f"token-{len(fetches)}", 3600.0

        tokens = await asyncio.gather(*(cache.get_or_refresh(fetch) for _ in range(5)))

        assert tokens == ["token-1"] * 5
        assert len(fetches) == 1

    @pytest.mark.asyncio
    async def test_get_or_refresh_renews_after_expiry(self, fake_clock):
        cache = TokenCache(clock=fake_clock, refresh_margin=60)
        issued = iter(["first", "second"])

        async def fetch():
            return next(issued), 120.0

        assert await cache.get_or_refresh(fetch) == "first"
        fake_clock.advance(30)
        assert await cache.get_or_refresh(fetch) == "first"
        fake_clock.advance(60)
        assert await cache.get_or_refresh(fetch) == "second"
