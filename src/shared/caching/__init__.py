"""
Multi-tier caching system for Smart Health Hub.

- In-memory LRU tier with TTL expiry for hot data
- Optional Redis tier shared across instances
- Policy facade mapping cache levels to tiers
- Cache warming for entity collections

`create_cache_manager` builds one manager at process bootstrap; pass it
around explicitly (FastAPI apps keep it on `app.state.cache_manager`).
"""

from typing import Optional

from redis.asyncio import Redis

from ..config import Settings, get_settings
from .cache_manager import (
    CacheLevel,
    CacheManager,
    EdgeCacheOptions,
    build_cache_control,
    cached,
    tag_prefix,
)
from .cache_service import CacheOptions, CacheService, generate_cache_key
from .cache_warming import (
    WARM_TTL_SECONDS,
    CacheWarmer,
    EntityDataSource,
    WarmTask,
    WarmUpSchedule,
    create_default_warm_tasks,
)
from .exceptions import CacheError, ConnectionUnavailable, OperationFailure, SerializationError
from .memory_cache import CacheEntry, MemoryCache
from .redis_cache import ConnectionState, RedisCache
from .serialization import CacheSerializer


def create_cache_manager(settings: Optional[Settings] = None, client: Optional[Redis] = None) -> CacheManager:
    """Build the memory tier, the optional Redis tier and the manager over them.

    Nothing connects here; call `await manager.initialize()` from the app
    lifespan. An injected client counts as a configured distributed tier.
    """
    settings = settings or get_settings()
    redis_settings = settings.redis
    cache_settings = settings.cache

    memory = MemoryCache(
        max_size=cache_settings.cache_memory_max_size,
        default_ttl=cache_settings.cache_default_ttl,
        check_period=cache_settings.cache_check_period,
    )

    distributed = None
    if redis_settings.redis_url or client is not None:
        distributed = RedisCache(
            redis_url=redis_settings.redis_url,
            client=client,
            serializer=CacheSerializer(cache_settings.cache_serialization_format),
            socket_timeout=redis_settings.redis_socket_timeout,
            connect_timeout=redis_settings.redis_connect_timeout,
            reconnect_interval=redis_settings.redis_reconnect_interval,
            scan_batch_size=redis_settings.redis_scan_batch_size,
        )

    service = CacheService(memory=memory, distributed=distributed, default_ttl=cache_settings.cache_default_ttl)
    redis_endpoint = redis_settings.redis_url or ("injected-client" if client is not None else None)
    return CacheManager(service, redis_url=redis_endpoint)


__all__ = [
    # Tiers
    'MemoryCache',
    'CacheEntry',
    'RedisCache',
    'ConnectionState',
    'CacheSerializer',

    # Service and policy
    'CacheService',
    'CacheOptions',
    'generate_cache_key',
    'CacheManager',
    'CacheLevel',
    'EdgeCacheOptions',
    'build_cache_control',
    'tag_prefix',
    'cached',

    # Cache warming
    'CacheWarmer',
    'WarmTask',
    'WarmUpSchedule',
    'EntityDataSource',
    'WARM_TTL_SECONDS',
    'create_default_warm_tasks',

    # Errors
    'CacheError',
    'ConnectionUnavailable',
    'SerializationError',
    'OperationFailure',

    # Factory functions
    'create_cache_manager',
]
