import pytest

from forum_exchange.cache import SettingsCache

pytestmark = pytest.mark.asyncio


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_cache_reads_through_and_expires(db):
    ticker = Ticker()
    cache = SettingsCache(db, ttl_seconds=60, clock=ticker)
    await db.set_forum_channel(900, 500)

    assert await cache.get_forum_channel(900) == 500
    assert await cache.get_forum_channel(900) == 500
    assert (cache.hits, cache.misses) == (1, 1)

    # A write that bypasses the cache stays invisible until the entry expires.
    await db.set_forum_channel(900, 501)
    assert await cache.get_forum_channel(900) == 500
    ticker.now = 61
    assert await cache.get_forum_channel(900) == 501


async def test_writes_through_cache_invalidate(db):
    cache = SettingsCache(db, ttl_seconds=3600, clock=Ticker())
    assert await cache.get_forum_channel(900) is None
    await cache.set_forum_channel(900, 502)
    assert await cache.get_forum_channel(900) == 502


async def test_invalidate_all(db):
    cache = SettingsCache(db, clock=Ticker())
    await cache.get_forum_channel(1)
    await cache.get_forum_channel(2)
    assert len(cache) == 2
    cache.invalidate()
    assert len(cache) == 0
