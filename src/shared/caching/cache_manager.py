"""
Cache policy facade for Smart Health Hub.

Callers state a cache level (memory, distributed or both) and the manager
turns it into tier flags for the cache service, so call sites do not need to
know whether the current deployment has a distributed store.
"""

import inspect
import dataclasses
import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import mask_redis_url
from ..logging_config import get_logger
from .cache_service import CacheOptions, CacheService

TAG_PREFIX = "api"


class CacheLevel(str, Enum):
    """Cache level enumeration."""
    MEMORY = "memory"
    DISTRIBUTED = "distributed"
    ALL = "all"


@dataclass
class EdgeCacheOptions:
    """HTTP edge caching directives for a response."""
    max_age: Optional[int] = None
    s_max_age: Optional[int] = None
    stale_while_revalidate: Optional[int] = None
    private: bool = False
    immutable: bool = False
    tags: List[str] = field(default_factory=list)


def build_cache_control(options: EdgeCacheOptions) -> str:
    """Render a Cache-Control header value. Non-positive durations are omitted."""
    directives = ["private" if options.private else "public"]

    if options.max_age is not None and options.max_age > 0:
        directives.append(f"max-age={options.max_age}")
    if options.s_max_age is not None and options.s_max_age > 0:
        directives.append(f"s-maxage={options.s_max_age}")
    if options.stale_while_revalidate is not None and options.stale_while_revalidate > 0:
        directives.append(f"stale-while-revalidate={options.stale_while_revalidate}")
    if options.immutable:
        directives.append("immutable")

    return ", ".join(directives)


def tag_prefix(tag: str) -> str:
    """Key prefix a tag maps to: list keys `api:<tag>` and item keys `api:<tag>:<id>`."""
    return f"{TAG_PREFIX}:{tag}"


class CacheManager:
    """Maps cache levels and explicit options onto the cache service."""

    def __init__(self, service: CacheService, redis_url: Optional[str] = None):
        self.service = service
        self.redis_url = redis_url
        self.logger = get_logger(__name__, 'cache_manager')

        if redis_url:
            self.logger.info("Cache manager initialized with distributed cache support",
                             operation="init", url=mask_redis_url(redis_url))
        else:
            self.logger.info("Cache manager initialized with memory cache only", operation="init")

    @property
    def default_level(self) -> CacheLevel:
        return CacheLevel.ALL if self.redis_url else CacheLevel.MEMORY

    def is_distributed_available(self) -> bool:
        """Whether a distributed endpoint was configured at construction."""
        return bool(self.redis_url)

    def resolve_options(self, options: Optional[CacheOptions] = None) -> CacheOptions:
        """Resolve tier flags: explicit option, then level default, then global default."""
        options = options or CacheOptions()
        has_distributed = self.is_distributed_available()
        level = options.level or self.default_level

        if level == CacheLevel.MEMORY:
            use_memory, use_distributed = True, False
        elif level == CacheLevel.DISTRIBUTED:
            # Without an endpoint this degrades to memory-only.
            use_memory, use_distributed = not has_distributed, has_distributed
        else:
            use_memory, use_distributed = True, has_distributed

        return dataclasses.replace(
            options,
            level=level,
            use_memory_cache=options.use_memory_cache if options.use_memory_cache is not None else use_memory,
            use_distributed_cache=(
                options.use_distributed_cache if options.use_distributed_cache is not None else use_distributed
            ),
        )

    async def initialize(self) -> None:
        await self.service.initialize()

    async def get(self, key: str, options: Optional[CacheOptions] = None) -> Optional[Any]:
        return await self.service.get(key, self.resolve_options(options))

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None) -> bool:
        return await self.service.set(key, value, self.resolve_options(options))

    async def delete(self, key: str, namespace: Optional[str] = None) -> bool:
        return await self.service.delete(key, namespace)

    async def clear(self) -> bool:
        """Clear all tiers."""
        return await self.service.flush()

    async def invalidate_pattern(self, prefix: str, namespace: Optional[str] = None) -> bool:
        return await self.service.invalidate_pattern(prefix, namespace)

    async def invalidate_by_tag(self, tag: str) -> bool:
        """Invalidate every key under the tag's `api:<tag>` prefix."""
        self.logger.debug(f"Invalidating cache tag {tag}", operation="invalidate_by_tag", tag=tag)
        return await self.service.invalidate_pattern(tag_prefix(tag))

    def get_stats(self) -> Dict[str, Any]:
        return self.service.get_stats()

    async def health_check(self) -> Dict[str, Any]:
        return await self.service.health_check()

    async def close(self) -> None:
        await self.service.shutdown()

    def get_edge_cache_headers(self, edge_options: EdgeCacheOptions) -> Dict[str, str]:
        """Response headers for edge caching."""
        headers = {
            "Cache-Control": build_cache_control(edge_options),
            "Vary": "Accept-Encoding",
        }
        if edge_options.tags:
            headers["Cache-Tag"] = ",".join(edge_options.tags)
        return headers


def cached(
    manager: CacheManager,
    namespace: str,
    ttl: Optional[int] = None,
    key_func: Optional[Callable[..., str]] = None,
    level: Optional[CacheLevel] = None,
):
    """Decorator for caching async function results. None results are not cached."""
    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("cached() can only decorate async functions")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            if key_func:
                cache_key = key_func(*args, **kwargs)
            else:
                key_parts = [func.__name__]
                key_parts.extend(str(arg) for arg in args)
                key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
                cache_key = ":".join(key_parts)

            options = CacheOptions(ttl=ttl, namespace=namespace, level=level)
            cached_result = await manager.get(cache_key, options)
            if cached_result is not None:
                return cached_result

            result = await func(*args, **kwargs)
            await manager.set(cache_key, result, options)
            return result

        return async_wrapper

    return decorator
