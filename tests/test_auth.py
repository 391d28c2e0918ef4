import asyncio

import pytest

from bcsync_auth import AccessToken, TokenCache


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TokenEndpoint:
    def __init__(self, clock, lifetime=3600):
        self.clock = clock
        self.lifetime = lifetime
        self.issued = 0

    async def __call__(self):
        self.issued += 1
        await asyncio.sleep(0)
        return AccessToken(f"t{self.issued}", self.clock() + self.lifetime)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def endpoint(clock):
    return TokenEndpoint(clock)


@pytest.mark.asyncio
async def test_token_is_cached(clock, endpoint):
    cache = TokenCache(endpoint, clock=clock)

    assert await cache.get_token() == "t1"
    assert await cache.get_token() == "t1"
    assert endpoint.issued == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch(clock, endpoint):
    cache = TokenCache(endpoint, clock=clock)

    tokens = await asyncio.gather(*[cache.get_token() for _ in range(5)])

    assert tokens == ["t1"] * 5
    assert endpoint.issued == 1


@pytest.mark.asyncio
async def test_expiring_token_is_fetched_again(clock, endpoint):
    cache = TokenCache(endpoint, leeway_seconds=60, clock=clock)
    await cache.get_token()

    clock.now += 3600 - 30

    assert await cache.get_token() == "t2"


@pytest.mark.asyncio
async def test_refresh_of_rejected_token(clock, endpoint):
    cache = TokenCache(endpoint, clock=clock)
    stale = await cache.get_token()

    assert await cache.refresh(stale) == "t2"
    assert await cache.get_token() == "t2"


@pytest.mark.asyncio
async def test_racing_refreshes_renew_once(clock, endpoint):
    cache = TokenCache(endpoint, clock=clock)
    stale = await cache.get_token()

    tokens = await asyncio.gather(cache.refresh(stale), cache.refresh(stale), cache.refresh(stale))

    assert tokens == ["t2", "t2", "t2"]
    assert endpoint.issued == 2


@pytest.mark.asyncio
async def test_refresh_without_stale_token_always_fetches(clock, endpoint):
    cache = TokenCache(endpoint, clock=clock)
    await cache.get_token()

    assert await cache.refresh() == "t2"
    assert endpoint.issued == 2
