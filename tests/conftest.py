"""
Shared fixtures for the cache test suite.
"""

import fnmatch
import os

# Keep the logging system from reconfiguring root handlers on import.
os.environ.setdefault("TESTING", "1")

import pytest
import pytest_asyncio

from src.shared.caching import (
    CacheManager,
    CacheSerializer,
    CacheService,
    EntityDataSource,
    MemoryCache,
    RedisCache,
)
from src.shared.metrics_collector import MetricsCollector


class ManualClock:
    """Clock the memory tier reads instead of wall time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticDataSource(EntityDataSource):
    """Fixed entity collections; the `failing` collection raises on fetch."""

    def __init__(self, failing=None):
        self.failing = failing
        self.fetch_counts = {}

    async def _fetch(self, name, items):
        self.fetch_counts[name] = self.fetch_counts.get(name, 0) + 1
        if name == self.failing:
            raise RuntimeError(f"{name} store unavailable")
        return items

    async def fetch_all_providers(self):
        return await self._fetch("providers", [{"id": 1, "name": "Dr. Adams"}, {"id": 2, "name": "Dr. Baker"}])

    async def fetch_all_patients(self):
        return await self._fetch("patients", [{"id": "p-1"}])

    async def fetch_all_claims(self):
        return await self._fetch("claims", [{"id": "c-1"}, {"id": "c-2"}])

    async def fetch_all_fhir_resources(self):
        return await self._fetch("fhir_resources", [{"resourceType": "Patient", "id": "f-1"}])


class FakeRedis:
    """In-process stand-in for the redis.asyncio client surface the cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.calls = []
        self.fail_with = None
        self.closed = False

    def _command(self, name):
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self):
        self._command("ping")
        return True

    async def get(self, key):
        self._command("get")
        return self.store.get(key)

    async def set(self, key, value):
        self._command("set")
        self.store[key] = value
        self.ttls.pop(key, None)
        return True

    async def setex(self, key, ttl, value):
        self._command("setex")
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        self._command("delete")
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        self._command("scan_iter")
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode("utf-8")

    async def flushdb(self):
        self._command("flushdb")
        self.store.clear()
        self.ttls.clear()
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with an empty metrics collector."""
    MetricsCollector.reset_instance()
    yield
    MetricsCollector.reset_instance()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(max_size=100, default_ttl=300, check_period=60, clock=clock)


@pytest.fixture
def redis_cache(fake_redis):
    # No monitor task: tests drive reconnection explicitly.
    return RedisCache(client=fake_redis, serializer=CacheSerializer("json"), reconnect_interval=0)


@pytest_asyncio.fixture
async def connected_redis_cache(redis_cache):
    await redis_cache.connect()
    yield redis_cache
    await redis_cache.close()


@pytest.fixture
def memory_only_service(memory_cache):
    return CacheService(memory=memory_cache, distributed=None, default_ttl=300)


@pytest_asyncio.fixture
async def two_tier_service(memory_cache, connected_redis_cache):
    return CacheService(memory=memory_cache, distributed=connected_redis_cache, default_ttl=300)


@pytest.fixture
def memory_only_manager(memory_only_service):
    return CacheManager(memory_only_service, redis_url=None)


@pytest_asyncio.fixture
async def two_tier_manager(two_tier_service):
    return CacheManager(two_tier_service, redis_url="redis://localhost:6379/0")


@pytest.fixture
def make_data_source():
    return StaticDataSource


@pytest.fixture(autouse=True)
def isolate_redis_env(monkeypatch):
    """Tests never pick up a Redis endpoint from the host environment."""
    for name in ("REDIS_URL", "REDISCLOUD_URL", "REDISTOGO_URL"):
        monkeypatch.delenv(name, raising=False)
