"""
Two-tier cache service.

Composes the memory tier and the optional distributed tier. Reads check
memory first and promote distributed hits into memory; writes go to every
enabled tier independently. Tier errors are absorbed here: callers only ever
see booleans and misses.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .exceptions import CacheError
from .memory_cache import MemoryCache
from .redis_cache import RedisCache

if TYPE_CHECKING:
    from .cache_manager import CacheLevel, EdgeCacheOptions


def generate_cache_key(key: str, namespace: Optional[str] = None) -> str:
    """Build the stored key: `namespace:key`, or the key verbatim without a namespace."""
    if namespace:
        return f"{namespace}:{key}"
    return key


@dataclass
class CacheOptions:
    """Per-call cache options. None means not specified."""
    ttl: Optional[int] = None
    use_memory_cache: Optional[bool] = None
    use_distributed_cache: Optional[bool] = None
    namespace: Optional[str] = None
    level: Optional["CacheLevel"] = None
    edge_cache: Optional["EdgeCacheOptions"] = None


class CacheService:
    """Coordinates the memory and distributed tiers."""

    def __init__(
        self,
        memory: Optional[MemoryCache] = None,
        distributed: Optional[RedisCache] = None,
        default_ttl: int = 300,
    ):
        self.memory = memory
        self.distributed = distributed
        self.default_ttl = default_ttl
        self.logger = get_logger(__name__, 'cache_service')
        self.metrics = get_metrics_collector()

        self.stats = {
            'total_requests': 0,
            'memory_hits': 0,
            'distributed_hits': 0,
            'cache_misses': 0,
            'promotions': 0,
            'write_operations': 0,
            'write_failures': 0,
            'invalidations': 0,
        }

    async def initialize(self) -> None:
        """Connect the distributed tier and start the memory expiry sweep."""
        if self.memory is not None:
            self.memory.start_sweeper()
        if self.distributed is not None:
            await self.distributed.connect()
        self.logger.info(
            "Cache service initialized",
            operation="initialize",
            distributed_configured=self._distributed_configured(),
            distributed_connected=self._distributed_available(),
        )

    async def shutdown(self) -> None:
        if self.memory is not None:
            await self.memory.stop_sweeper()
        if self.distributed is not None:
            await self.distributed.close()
        self.logger.info("Cache service shutdown completed", operation="shutdown")

    def _distributed_configured(self) -> bool:
        return self.distributed is not None and self.distributed.configured

    def _distributed_available(self) -> bool:
        return self.distributed is not None and self.distributed.is_available()

    def _flags(self, options: Optional[CacheOptions]):
        options = options or CacheOptions()
        use_memory = options.use_memory_cache is not False and self.memory is not None
        use_distributed = options.use_distributed_cache is not False
        ttl = options.ttl if options.ttl is not None else self.default_ttl
        return use_memory, use_distributed, ttl, options.namespace

    async def get(self, key: str, options: Optional[CacheOptions] = None) -> Optional[Any]:
        """Get a value, checking memory then the distributed tier. Never raises."""
        use_memory, use_distributed, ttl, namespace = self._flags(options)
        cache_key = generate_cache_key(key, namespace)
        self.stats['total_requests'] += 1

        if use_memory:
            value = self.memory.get(cache_key)
            if value is not None:
                self.stats['memory_hits'] += 1
                self.metrics.get_counter('cache_hits_total').increment(tier='memory')
                self.logger.debug(f"Cache hit (memory): {cache_key}", operation="get")
                return value

        if use_distributed and self._distributed_available():
            try:
                value = await self.distributed.get(cache_key)
            except CacheError as e:
                self.logger.warning(f"Distributed cache get failed for {cache_key}: {e.message}",
                                    operation="get", error_code=e.error_code)
                value = None

            if value is not None:
                self.stats['distributed_hits'] += 1
                self.metrics.get_counter('cache_hits_total').increment(tier='distributed')
                self.logger.debug(f"Cache hit (distributed): {cache_key}", operation="get")
                if use_memory:
                    try:
                        self.memory.set(cache_key, value, ttl)
                        self.stats['promotions'] += 1
                    except ValueError as e:
                        self.logger.warning(f"Memory cache promotion rejected for {cache_key}: {e}",
                                            operation="get")
                return value

        self.stats['cache_misses'] += 1
        self.metrics.get_counter('cache_misses_total').increment()
        self.logger.debug(f"Cache miss: {cache_key}", operation="get")
        return None

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None) -> bool:
        """Write a value to every enabled tier.

        Returns the memory result when memory is enabled, otherwise whether the
        distributed write succeeded. Storing None is a no-op.
        """
        use_memory, use_distributed, ttl, namespace = self._flags(options)
        cache_key = generate_cache_key(key, namespace)

        if value is None:
            self.logger.debug(f"Skipping cache set of None for {cache_key}", operation="set")
            return False

        self.stats['write_operations'] += 1
        memory_result = False
        distributed_result = False

        if use_memory:
            try:
                memory_result = self.memory.set(cache_key, value, ttl)
            except ValueError as e:
                self.logger.warning(f"Memory cache set rejected for {cache_key}: {e}", operation="set")
            self.metrics.get_counter('cache_writes_total').increment(
                tier='memory', status='success' if memory_result else 'failure'
            )

        if use_distributed and self._distributed_available():
            try:
                distributed_result = await self.distributed.set(cache_key, value, ttl)
            except CacheError as e:
                self.stats['write_failures'] += 1
                self.logger.warning(f"Distributed cache set failed for {cache_key}: {e.message}",
                                    operation="set", error_code=e.error_code)
            self.metrics.get_counter('cache_writes_total').increment(
                tier='distributed', status='success' if distributed_result else 'failure'
            )

        return memory_result if use_memory else distributed_result

    async def delete(self, key: str, namespace: Optional[str] = None) -> bool:
        """Remove a key from both tiers.

        An absent key is not an error; False means a reachable distributed
        tier failed the delete.
        """
        cache_key = generate_cache_key(key, namespace)
        if self.memory is not None:
            self.memory.delete(cache_key)

        if self._distributed_available():
            try:
                await self.distributed.delete(cache_key)
            except CacheError as e:
                self.logger.warning(f"Distributed cache delete failed for {cache_key}: {e.message}",
                                    operation="delete", error_code=e.error_code)
                return False

        self.logger.debug(f"Cache delete: {cache_key}", operation="delete")
        return True

    async def invalidate_pattern(self, prefix: str, namespace: Optional[str] = None) -> bool:
        """Delete every key starting with the prefix from both tiers."""
        full_prefix = generate_cache_key(prefix, namespace)
        self.stats['invalidations'] += 1

        memory_removed = 0
        if self.memory is not None:
            for cache_key in self.memory.keys():
                if cache_key.startswith(full_prefix):
                    memory_removed += int(self.memory.delete(cache_key))

        distributed_removed = 0
        if self._distributed_available():
            try:
                distributed_removed = await self.distributed.delete_by_prefix(full_prefix)
            except CacheError as e:
                self.metrics.get_counter('cache_invalidations_total').increment(status='failure')
                self.logger.warning(f"Distributed pattern invalidation failed for {full_prefix}: {e.message}",
                                    operation="invalidate_pattern", error_code=e.error_code)
                return False

        self.metrics.get_counter('cache_invalidations_total').increment(status='success')
        self.logger.info(
            f"Invalidated cache prefix {full_prefix}",
            operation="invalidate_pattern",
            memory_removed=memory_removed,
            distributed_removed=distributed_removed,
        )
        return True

    async def flush(self) -> bool:
        """Clear every tier."""
        if self.memory is not None:
            self.memory.flush_all()

        if self._distributed_available():
            try:
                await self.distributed.flush()
            except CacheError as e:
                self.logger.error(f"Distributed cache flush failed: {e.message}",
                                  operation="flush", error_code=e.error_code)
                return False

        self.logger.info("Cache flushed", operation="flush")
        return True

    async def health_check(self) -> Dict[str, Any]:
        """Report healthy iff memory is present and the distributed tier is absent or connected."""
        memory_available = self.memory is not None
        details: Dict[str, Any] = {
            'memory': {'available': memory_available},
            'distributed': {'configured': self._distributed_configured()},
        }

        distributed_ok = True
        if self._distributed_configured():
            connected = self._distributed_available()
            ping_ok = False
            if connected:
                try:
                    ping_ok = await self.distributed.ping()
                except CacheError as e:
                    details['distributed']['error'] = e.message
            details['distributed'].update({
                'state': self.distributed.state.value,
                'connected': self._distributed_available(),
                'ping': ping_ok,
            })
            distributed_ok = ping_ok

        status = "healthy" if memory_available and distributed_ok else "degraded"
        if status == "degraded":
            self.logger.warning("Cache health degraded", operation="health_check")
        return {'status': status, 'details': details}

    def get_stats(self) -> Dict[str, Any]:
        total_hits = self.stats['memory_hits'] + self.stats['distributed_hits']
        total_requests = self.stats['total_requests']
        hit_rate = total_hits / total_requests if total_requests > 0 else 0
        self.metrics.set_cache_hit_rate('cache_service', hit_rate)

        return {
            'overall': {
                **self.stats,
                'total_hits': total_hits,
                'hit_rate': hit_rate,
            },
            'memory': self.memory.get_stats() if self.memory is not None else None,
            'distributed': self.distributed.get_stats() if self.distributed is not None else None,
        }
