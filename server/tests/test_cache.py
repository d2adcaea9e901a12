"""
Tests for the read-through query cache.
"""

import asyncio

import pytest

from weshop.cache import QueryCache, cache_for
from weshop.db import MemoryDatabase
from weshop.errors import DatabaseError


def _counting_loader(result="rows"):
    calls = []

    async def loader():
        calls.append(1)
        await asyncio.sleep(0)
        return [result]

    return loader, calls


class TestQueryCache:

    def test_fresh_data_is_reused(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0)
        loader, calls = _counting_loader()

        async def scenario():
            await cache.fetch("products:all", loader)
            return await cache.fetch("products:all", loader)

        assert asyncio.run(scenario()) == ["rows"]
        assert len(calls) == 1

    def test_concurrent_fetches_share_one_load(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0)
        loader, calls = _counting_loader()

        async def scenario():
            return await asyncio.gather(*(cache.fetch("orders:all", loader) for _ in range(5)))

        results = asyncio.run(scenario())
        assert results == [["rows"]] * 5
        assert len(calls) == 1

    def test_invalidate_by_prefix(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0)
        loader, calls = _counting_loader()

        async def scenario():
            await cache.fetch("orders:all", loader)
            await cache.fetch("orders:user:u1", loader)
            await cache.fetch("products:all", loader)
            marked = cache.invalidate("orders")
            await cache.fetch("orders:all", loader)
            await cache.fetch("products:all", loader)
            return marked

        assert asyncio.run(scenario()) == 2
        assert len(calls) == 4

    def test_retries_then_succeeds(self):
        cache = QueryCache(stale_seconds=60, retries=3, base_delay=0)
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise DatabaseError("connection reset", "08006")
            return ["ok"]

        assert asyncio.run(cache.fetch("products:all", flaky)) == ["ok"]
        assert len(attempts) == 3

    def test_gives_up_after_retries(self):
        cache = QueryCache(stale_seconds=60, retries=2, base_delay=0)
        attempts = []

        async def failing():
            attempts.append(1)
            raise DatabaseError("connection reset", "08006")

        with pytest.raises(DatabaseError):
            asyncio.run(cache.fetch("products:all", failing))
        assert len(attempts) == 3

    def test_set_data_patches_cached_value(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0)

        async def loader():
            return [{"id": "o1", "status": "placed"}]

        asyncio.run(cache.fetch("orders:all", loader))
        assert cache.set_data("orders:all", lambda rows: [{**r, "status": "packed"} for r in rows])
        assert cache.get("orders:all")[0]["status"] == "packed"
        assert cache.set_data("orders:missing", lambda rows: rows) is False

    def test_returned_data_is_a_copy(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0)

        async def loader():
            return [{"id": "p1"}]

        first = asyncio.run(cache.fetch("products:all", loader))
        first.append({"id": "p2"})
        assert cache.get("products:all") == [{"id": "p1"}]

    def test_least_recently_used_key_is_evicted(self):
        cache = QueryCache(stale_seconds=60, retries=0, base_delay=0, max_entries=2)
        loader, calls = _counting_loader()

        async def scenario():
            await cache.fetch("products:list:a", loader)
            await cache.fetch("products:list:b", loader)
            await cache.fetch("products:list:a", loader)  # a is now most recent
            await cache.fetch("products:list:c", loader)

        asyncio.run(scenario())
        assert len(cache) == 2
        assert cache.get("products:list:b") is None
        assert cache.get("products:list:a") == ["rows"]
        assert len(calls) == 3


class TestCacheFor:

    def test_change_feed_invalidates(self):
        database = MemoryDatabase()
        cache = cache_for(database)
        assert cache_for(database) is cache

        async def loader():
            return []

        async def scenario():
            await cache.fetch("products:list:all", loader)
            await database.insert("products", {"name": "Kurta", "price": 10})

        asyncio.run(scenario())
        assert cache._entries["products:list:all"].stale is True

    def test_search_terms_do_not_grow_cache_unbounded(self, client, database):
        cache = cache_for(database)
        cache.max_entries = 5
        for i in range(20):
            assert client.get("/products", params={"search": f"term-{i}"}).status_code == 200
        assert len(cache) == 5
