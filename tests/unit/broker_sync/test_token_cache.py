import asyncio

import pytest

from services.broker_sync.token_cache import TokenCache, settings_token_provider
from tests.mocks.fakes import FakeMetaApiClient, StaticTokenProvider


@pytest.mark.asyncio
async def test_token_is_cached_per_account():
    provider = StaticTokenProvider()
    cache = TokenCache(provider)

    assert await cache.get("1001") == "tok-1"
    assert await cache.get("1001") == "tok-1"
    assert provider.calls == 1

    # A different account never reuses the cached token
    assert await cache.get("2002") == "tok-2"


@pytest.mark.asyncio
async def test_invalidate_forces_new_provider_call():
    provider = StaticTokenProvider()
    cache = TokenCache(provider)
    await cache.get("1001")

    cache.invalidate()
    assert cache.token is None
    assert await cache.get("1001") == "tok-2"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_provider_call():
    release = asyncio.Event()
    calls = []

    async def slow_provider(account_id):
        calls.append(account_id)
        await release.wait()
        return "shared"

    cache = TokenCache(slow_provider)
    waiters = [asyncio.create_task(cache.get("1001")) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()

    assert await asyncio.gather(*waiters) == ["shared"] * 3
    assert calls == ["1001"]


@pytest.mark.asyncio
async def test_missing_token_is_not_cached():
    provider = StaticTokenProvider(token=None)
    cache = TokenCache(provider)

    assert await cache.get("1001") is None
    assert await cache.get("1001") is None
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_settings_provider_prefers_static_token(test_settings):
    client = FakeMetaApiClient()
    provide = settings_token_provider(test_settings, client)

    assert await provide("1001") == "test-token"
    assert client.calls_named("login") == []


@pytest.mark.asyncio
async def test_settings_provider_logs_in_with_password(test_settings):
    test_settings.metaapi.access_token = None
    test_settings.metaapi.password = "secret"
    client = FakeMetaApiClient()

    assert await settings_token_provider(test_settings, client)("1001") == "login-token"
    assert client.calls_named("login") == [("login", ("1001",), {})]


@pytest.mark.asyncio
async def test_settings_provider_without_credentials(test_settings):
    test_settings.metaapi.access_token = None

    assert await settings_token_provider(test_settings, FakeMetaApiClient())("1001") is None
