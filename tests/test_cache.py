"""Tests for the TTL cache and the refresh poller."""

import asyncio
import json

import pytest

from cache import FileStorage, MemoryStorage, NullCache, PriceRefresher, TTLCache


class VirtualClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def virtual_clock():
    return VirtualClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage, virtual_clock):
    return TTLCache(storage, ttl_seconds=3600, clock=virtual_clock)


class TestTTLCache:
    """Envelope storage with lazy expiry."""

    def test_hit_within_ttl(self, cache, virtual_clock):
        cache.set("price:silver:india", {"per_gram": 95.2})
        virtual_clock.advance(3599)
        assert cache.get("price:silver:india") == {"per_gram": 95.2}

    def test_boundary_is_a_miss(self, cache, storage, virtual_clock):
        cache.set("price:silver:india", {"per_gram": 95.2})
        virtual_clock.advance(3600)
        assert cache.get("price:silver:india") is None
        assert storage.get_item("metalrates:price:silver:india") is None

    def test_envelope_shape(self, cache, storage, virtual_clock):
        cache.set("k", [1, 2])
        envelope = json.loads(storage.get_item("metalrates:k"))
        assert envelope == {"data": [1, 2], "timestamp": virtual_clock.now}

    def test_corrupt_entry_is_a_miss(self, cache, storage):
        storage.set_item("metalrates:k", "{truncated")
        assert cache.get("k") is None
        assert storage.get_item("metalrates:k") is None

    def test_malformed_envelope_is_a_miss(self, cache, storage):
        storage.set_item("metalrates:k", json.dumps({"data": 1, "timestamp": "yesterday"}))
        assert cache.get("k") is None

    def test_missing_key(self, cache):
        assert cache.get("absent") is None

    def test_age_seconds(self, cache, virtual_clock):
        cache.set("k", 1)
        virtual_clock.advance(90)
        assert cache.age_seconds("k") == 90
        assert cache.age_seconds("absent") is None
        virtual_clock.advance(3600)
        assert cache.age_seconds("k") is None

    def test_unserializable_value_is_not_stored(self, cache):
        cache.set("k", object())
        assert cache.get("k") is None

    def test_file_storage_survives_reopen(self, tmp_path, virtual_clock):
        path = tmp_path / "cache.json"
        TTLCache(FileStorage(path), clock=virtual_clock).set("k", {"a": 1})
        assert TTLCache(FileStorage(path), clock=virtual_clock).get("k") == {"a": 1}

    def test_corrupt_cache_file_is_replaced_on_write(self, tmp_path, virtual_clock):
        path = tmp_path / "cache.json"
        path.write_text("{truncated")
        cache = TTLCache(FileStorage(path), clock=virtual_clock)

        assert cache.get("k") is None
        cache.set("k", {"v": 1})

        assert cache.get("k") == {"v": 1}
        assert TTLCache(FileStorage(path), clock=virtual_clock).get("k") == {"v": 1}

    def test_null_cache(self):
        cache = NullCache()
        cache.set("k", 1)
        assert cache.get("k") is None


class TestPriceRefresher:
    """Repeating refresh with clean cancellation."""

    @pytest.mark.asyncio
    async def test_delivers_updates_until_stopped(self):
        updates = []
        counter = {"n": 0}

        async def fetch():
            counter["n"] += 1
            return counter["n"]

        refresher = PriceRefresher(fetch, updates.append, interval_seconds=0.01)
        refresher.start()
        await asyncio.sleep(0.05)
        await refresher.stop()
        delivered = len(updates)
        await asyncio.sleep(0.03)

        assert delivered >= 1
        assert len(updates) == delivered
        assert not refresher.running

    @pytest.mark.asyncio
    async def test_result_after_stop_is_discarded(self):
        updates = []

        async def slow_fetch():
            await asyncio.sleep(0.05)
            return "late"

        refresher = PriceRefresher(slow_fetch, updates.append, interval_seconds=1)
        refresher.start()
        await asyncio.sleep(0.01)
        await refresher.stop()
        await asyncio.sleep(0.06)

        assert updates == []

    @pytest.mark.asyncio
    async def test_fetch_errors_do_not_stop_the_loop(self):
        updates = []
        attempts = {"n": 0}

        async def flaky_fetch():
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise RuntimeError("upstream down")
            return attempts["n"]

        refresher = PriceRefresher(flaky_fetch, updates.append, interval_seconds=0.01)
        refresher.start()
        await asyncio.sleep(0.06)
        await refresher.stop()

        assert updates and updates[0] == 2
