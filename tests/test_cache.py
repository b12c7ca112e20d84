"""
Tests for the read-through cache and the cached client wrapper
"""

import pytest

from cadenza.cache import CacheLayer, CacheNamespace, CachedClient

from conftest import FakeClient


@pytest.fixture
def cache(store, cache_config):
    return CacheLayer(store, cache_config)


class Counter:
    """Compute function that counts its calls"""

    def __init__(self, value=None):
        self.value = value if value is not None else {"items": [1, 2, 3]}
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


class TestKeys:

    def test_key_without_params(self):
        assert CacheLayer.make_key(CacheNamespace.NOW_PLAYING, "alice") == "now-playing:alice"

    def test_param_order_does_not_matter(self):
        first = CacheLayer.make_key("search", "alice", {"q": "jazz", "limit": 10})
        second = CacheLayer.make_key("search", "alice", {"limit": 10, "q": "jazz"})

        assert first == second
        assert first.startswith("search:alice:")

    def test_different_params_give_different_keys(self):
        assert (
            CacheLayer.make_key("search", "alice", {"q": "jazz"})
            != CacheLayer.make_key("search", "alice", {"q": "blues"})
        )

    def test_ttl_for_uses_namespace_default(self, cache):
        assert cache.ttl_for("now-playing:alice") == 10
        assert cache.ttl_for("track-info:alice:abc") == 24 * 60 * 60
        assert cache.ttl_for("unknown:alice") == cache.config.default_ttl_seconds


class TestGetOrCompute:

    @pytest.mark.asyncio
    async def test_computes_once_within_ttl(self, cache, clock):
        compute = Counter()

        first = await cache.get_or_compute("search:alice", compute, ttl=60)
        second = await cache.get_or_compute("search:alice", compute, ttl=60)

        assert first == second == compute.value
        assert compute.calls == 1
        assert cache.get_stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_recomputes_after_expiry(self, cache, clock):
        compute = Counter()

        await cache.get_or_compute("search:alice", compute, ttl=60)
        clock.advance(61)
        await cache.get_or_compute("search:alice", compute, ttl=60)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_namespace_ttl_applies_by_default(self, cache, store):
        await cache.get_or_compute("now-playing:alice", Counter())

        assert await store.ttl("cache:now-playing:alice") == 10

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self, cache):
        calls = []

        async def nothing():
            calls.append(1)
            return None

        assert await cache.get_or_compute("devices:alice", nothing) is None
        assert await cache.get_or_compute("devices:alice", nothing) is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_sync_compute_function(self, cache):
        assert await cache.get_or_compute("queue:alice", lambda: [1, 2]) == [1, 2]

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.get_or_compute("search:alice", Counter(), ttl=0)

    @pytest.mark.asyncio
    async def test_compute_errors_propagate_and_are_not_cached(self, cache, store):
        async def broken():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("search:alice", broken)
        assert not await store.exists("cache:search:alice")

    @pytest.mark.asyncio
    async def test_fails_open_when_store_reads_fail(self, failing_store, cache_config):
        cache = CacheLayer(failing_store, cache_config)
        compute = Counter()
        failing_store.fail_reads = True

        assert await cache.get_or_compute("search:alice", compute) == compute.value
        assert await cache.get_or_compute("search:alice", compute) == compute.value
        assert compute.calls == 2
        assert cache.get_stats()["errors"] == 2
        assert cache.get_stats()["last_error"]["error_type"] == "CacheInfrastructureError"

    @pytest.mark.asyncio
    async def test_failed_read_skips_write_back(self, failing_store, cache_config):
        cache = CacheLayer(failing_store, cache_config)
        failing_store.fail_reads = True

        await cache.get_or_compute("search:alice", Counter())

        failing_store.fail_reads = False
        assert not await failing_store.exists("cache:search:alice")
        assert cache.get_stats()["writes"] == 0

    @pytest.mark.asyncio
    async def test_fails_open_when_store_writes_fail(self, failing_store, cache_config):
        cache = CacheLayer(failing_store, cache_config)
        compute = Counter()
        failing_store.fail_writes = True

        assert await cache.get_or_compute("search:alice", compute) == compute.value
        assert not await failing_store.exists("cache:search:alice")

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_recomputed(self, cache, store):
        await store.set("cache:search:alice", "{not json", 60)
        compute = Counter()

        assert await cache.get_or_compute("search:alice", compute) == compute.value
        assert compute.calls == 1


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_prefix_removes_exactly_matching_keys(self, cache, store):
        for key in ("search:alice", "search:alice:1", "search:alicia", "search:bob"):
            await cache.get_or_compute(key, Counter(), ttl=60)

        removed = await cache.invalidate_by_prefix("search:alice:")

        assert removed == 1
        remaining = sorted(await store.scan_keys("cache:"))
        assert remaining == ["cache:search:alice", "cache:search:alicia", "cache:search:bob"]

    @pytest.mark.asyncio
    async def test_invalidate_namespace_for_tenant(self, cache, store):
        search_key = CacheLayer.make_key(CacheNamespace.SEARCH, "alice", {"q": "jazz"})
        for key in ("search:alice", search_key, "search:alicia", "queue:alice"):
            await cache.get_or_compute(key, Counter(), ttl=60)

        removed = await cache.invalidate_namespace(CacheNamespace.SEARCH, "alice")

        assert removed == 2
        remaining = sorted(await store.scan_keys("cache:"))
        assert remaining == ["cache:queue:alice", "cache:search:alicia"]

    @pytest.mark.asyncio
    async def test_invalidate_tenant_spans_namespaces(self, cache, store):
        for key in ("search:alice", "queue:alice", "now-playing:alice", "queue:bob"):
            await cache.get_or_compute(key, Counter(), ttl=60)

        assert await cache.invalidate_tenant("alice") == 3
        assert await store.scan_keys("cache:") == ["cache:queue:bob"]

    @pytest.mark.asyncio
    async def test_invalidate_single_key(self, cache):
        await cache.get_or_compute("devices:alice", Counter(), ttl=60)

        assert await cache.invalidate("devices:alice") == 1
        assert await cache.invalidate("devices:alice") == 0

    @pytest.mark.asyncio
    async def test_invalidation_fails_open(self, failing_store, cache_config):
        cache = CacheLayer(failing_store, cache_config)
        failing_store.fail_writes = True

        assert await cache.invalidate("devices:alice") == 0


class TestCachedClient:

    @pytest.mark.asyncio
    async def test_read_is_cached_per_tenant(self, cache):
        client = FakeClient("alice", None)
        cached = CachedClient(client, cache, "alice")

        first = await cached.read(CacheNamespace.NOW_PLAYING, "now_playing")
        second = await cached.read(CacheNamespace.NOW_PLAYING, client.now_playing)

        assert first == second
        assert client.calls == ["now_playing"]

    @pytest.mark.asyncio
    async def test_mutate_invalidates_namespaces(self, cache):
        client = FakeClient("alice", None)
        cached = CachedClient(client, cache, "alice")
        await cached.read(CacheNamespace.NOW_PLAYING, "now_playing")

        await cached.mutate("skip", invalidates=[CacheNamespace.NOW_PLAYING])
        await cached.read(CacheNamespace.NOW_PLAYING, "now_playing")

        assert client.calls == ["now_playing", "skip", "now_playing"]

    def test_unknown_attributes_are_forwarded(self, cache):
        client = FakeClient("alice", None)

        assert CachedClient(client, cache, "alice").tenant_id == "alice"
        assert CachedClient(client, cache, "alice").closed is False
