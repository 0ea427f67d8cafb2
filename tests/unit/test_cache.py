import os

import pytest

from marketflow.cache import InMemoryCache
from marketflow.cache.redis import RedisCache


@pytest.mark.asyncio
async def test_inmemory_cache_set_get_delete():
    cache = InMemoryCache()
    value = {"nodes": [{"id": "t"}]}

    await cache.set("workflow:1", value, ttl=60)
    cached = await cache.get("workflow:1")
    assert cached == value

    # Stored and returned values are copies.
    cached["nodes"].append({"id": "x"})
    value["nodes"].clear()
    assert await cache.get("workflow:1") == {"nodes": [{"id": "t"}]}

    await cache.delete("workflow:1")
    assert await cache.get("workflow:1") is None
    await cache.delete("workflow:1")


@pytest.mark.asyncio
async def test_inmemory_cache_expiry(monkeypatch):
    class FakeTime:
        now = 1000.0

        @classmethod
        def monotonic(cls):
            return cls.now

    monkeypatch.setattr("marketflow.cache.inmemory.time", FakeTime)
    cache = InMemoryCache()

    await cache.set("short", "v", ttl=10)
    await cache.set("forever", "v")

    FakeTime.now += 9
    assert await cache.get("short") == "v"
    FakeTime.now += 1
    assert await cache.get("short") is None
    assert await cache.get("forever") == "v"


@pytest.mark.asyncio
async def test_redis_cache_round_trip():
    cache = RedisCache(
        host=os.getenv("TEST_REDIS_HOST", "localhost"), prefix="marketflow-test:"
    )
    try:
        await cache.connect()
    except Exception:
        pytest.skip("Redis server not available")

    try:
        await cache.set("wf", {"name": "Welcome"}, ttl=30)
        assert await cache.get("wf") == {"name": "Welcome"}
        await cache.delete("wf")
        assert await cache.get("wf") is None
    finally:
        await cache.disconnect()
