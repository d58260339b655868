"""
Process-local memory tier.

A bounded LRU store with per-entry TTL. Expiry is enforced lazily on access
and by a periodic sweep task. Values are stored by reference: callers must
treat what `get` returns as a read-only snapshot.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..logging_config import get_logger


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: Any
    expires_at: Optional[float]
    tier: str = "memory"
    created_at: float = field(default_factory=time.time)
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryCache:
    """In-process cache tier."""

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: int = 300,
        check_period: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.clock = clock
        self.logger = get_logger(__name__, 'memory_cache')

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweeper_task: Optional[asyncio.Task] = None

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
            'expirations': 0,
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a live value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats['misses'] += 1
            return None

        if entry.is_expired(self.clock()):
            del self._entries[key]
            self.stats['expirations'] += 1
            self.stats['misses'] += 1
            return None

        self._entries.move_to_end(key)
        entry.access_count += 1
        self.stats['hits'] += 1
        return entry.value

    def has(self, key: str) -> bool:
        """Check for a live entry without touching hit/miss counters."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock())

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a value. ttl=None uses the tier default; ttl=0 never expires."""
        if ttl is None:
            ttl = self.default_ttl
        if ttl < 0:
            raise ValueError("ttl must not be negative")

        now = self.clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl if ttl > 0 else None,
            created_at=now,
        )
        self._entries.move_to_end(key)
        self.stats['sets'] += 1

        while len(self._entries) > self.max_size:
            evicted_key, _ = self._entries.popitem(last=False)
            self.stats['evictions'] += 1
            self.logger.debug(f"Evicted {evicted_key}", operation="set")

        return True

    def delete(self, key: str) -> bool:
        """Delete a key. Returns whether it was present."""
        if self._entries.pop(key, None) is not None:
            self.stats['deletes'] += 1
            return True
        return False

    def keys(self) -> List[str]:
        """Snapshot of live keys. Not linearizable under concurrent mutation."""
        now = self.clock()
        return [key for key, entry in list(self._entries.items()) if not entry.is_expired(now)]

    def flush_all(self) -> None:
        self._entries.clear()

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self.clock()
        expired = [key for key, entry in list(self._entries.items()) if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        self.stats['expirations'] += len(expired)
        return len(expired)

    def start_sweeper(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper_task is not None or self.check_period <= 0:
            return
        self._sweeper_task = asyncio.create_task(self._sweeper_worker())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweeper_worker(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            removed = self.sweep_expired()
            if removed:
                self.logger.debug(f"Swept {removed} expired entries", operation="sweep", count=removed)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self.stats['hits'] + self.stats['misses']
        return {
            **self.stats,
            'keys': len(self._entries),
            'max_size': self.max_size,
            'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
            'total_requests': total_requests,
        }
