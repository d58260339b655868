"""
Distributed cache tier backed by Redis.

The tier is optional. Without a URL or client it reports itself
unavailable and every caller falls back to memory. A single shared client is
used per process; connection state is tracked from command outcomes and a
background ping so callers can check availability before each call instead
of going down an error path.
"""

import asyncio
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import mask_redis_url
from ..logging_config import get_logger
from .exceptions import ConnectionUnavailable, OperationFailure, SerializationError
from .serialization import CacheSerializer

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape Redis MATCH metacharacters so a prefix is matched literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class ConnectionState(str, Enum):
    """Distributed tier connection state."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RedisCache:
    """Redis-based cache tier."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[Redis] = None,
        serializer: Optional[CacheSerializer] = None,
        socket_timeout: Optional[float] = 5.0,
        connect_timeout: Optional[float] = 5.0,
        reconnect_interval: float = 5.0,
        scan_batch_size: int = 500,
    ):
        self.redis_url = redis_url
        self.serializer = serializer or CacheSerializer()
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.reconnect_interval = reconnect_interval
        self.scan_batch_size = scan_batch_size
        self.logger = get_logger(__name__, 'redis_cache')

        self._client: Optional[Redis] = client
        self._owns_client = client is None
        self._monitor_task: Optional[asyncio.Task] = None
        self.state = ConnectionState.DISCONNECTED

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'deserialization_errors': 0,
            'state_changes': 0,
        }

    @property
    def configured(self) -> bool:
        """Whether a distributed endpoint was supplied at all."""
        return self.redis_url is not None or self._client is not None

    @property
    def client(self) -> Optional[Redis]:
        return self._client

    def is_available(self) -> bool:
        return self._client is not None and self.state == ConnectionState.CONNECTED

    async def connect(self) -> bool:
        """Create the client if needed, ping it and start the connection monitor.

        Never raises: an unreachable server leaves the tier disconnected and
        the monitor keeps retrying in the background.
        """
        if not self.configured:
            self.logger.info("Redis URL not provided, using memory cache only", operation="connect")
            return False

        if self._client is None:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=False,
                    socket_timeout=self.socket_timeout,
                    socket_connect_timeout=self.connect_timeout,
                )
            except ValueError as e:
                self.logger.error(
                    f"Invalid Redis URL, distributed cache disabled: {e}",
                    operation="connect",
                    url=mask_redis_url(self.redis_url),
                )
                return False

        connected = await self._check_connection()
        self._start_monitor()
        return connected

    async def close(self) -> None:
        """Stop the monitor and release the client if this tier created it."""
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                self.logger.warning(f"Error closing Redis client: {e}", operation="close")
            self._client = None

        self._transition(ConnectionState.DISCONNECTED)

    def _transition(self, new_state: ConnectionState, error: Optional[str] = None) -> None:
        if new_state == self.state:
            return

        old_state = self.state
        self.state = new_state
        self.stats['state_changes'] += 1

        if new_state == ConnectionState.CONNECTED:
            self.logger.info("Redis cache connected", operation="connection_state",
                             url=mask_redis_url(self.redis_url))
        elif new_state == ConnectionState.DISCONNECTED and old_state == ConnectionState.CONNECTED:
            self.logger.warning(f"Redis cache connection lost: {error}", operation="connection_state")
        elif new_state == ConnectionState.DISCONNECTED and error:
            self.logger.warning(f"Redis cache unreachable: {error}", operation="connection_state")
        else:
            self.logger.debug(f"Redis cache {old_state.value} -> {new_state.value}", operation="connection_state")

    async def _check_connection(self) -> bool:
        """Ping the server and update the connection state from the outcome."""
        if self.state != ConnectionState.CONNECTED:
            self._transition(ConnectionState.CONNECTING)
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._transition(ConnectionState.DISCONNECTED, error=str(e))
            return False
        self._transition(ConnectionState.CONNECTED)
        return True

    def _start_monitor(self) -> None:
        if self._monitor_task is None and self.reconnect_interval > 0:
            self._monitor_task = asyncio.create_task(self._monitor_worker())

    async def _monitor_worker(self) -> None:
        """Re-check on an interval: reconnects when down, notices drops when up."""
        while True:
            await asyncio.sleep(self.reconnect_interval)
            try:
                await self._check_connection()
            except Exception as e:
                self.logger.error(f"Error in Redis connection monitor: {e}", operation="monitor")

    async def _execute(self, operation: str, key: Optional[str], command: Callable[[], Awaitable[Any]]) -> Any:
        if not self.is_available():
            raise ConnectionUnavailable(operation=operation)

        try:
            return await command()
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self.stats['errors'] += 1
            self._transition(ConnectionState.DISCONNECTED, error=str(e))
            raise ConnectionUnavailable(
                f"Distributed cache connection lost during {operation}",
                operation=operation,
                original_error=e,
            )
        except RedisError as e:
            self.stats['errors'] += 1
            raise OperationFailure(operation, key=key, original_error=e)

    async def get(self, key: str) -> Optional[Any]:
        """Get and decode a value. Undecodable payloads count as misses."""
        data = await self._execute("get", key, lambda: self._client.get(key))
        if data is None:
            self.stats['misses'] += 1
            return None

        try:
            value = self.serializer.loads(data)
        except SerializationError as e:
            self.stats['deserialization_errors'] += 1
            self.stats['misses'] += 1
            self.logger.warning(
                f"Failed to parse Redis cache value for {key}: {e.details.get('original_error', e.message)}",
                operation="get",
                key=key,
            )
            return None

        self.stats['hits'] += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Encode and store a value; ttl of None or 0 stores without expiry."""
        data = self.serializer.dumps(value)
        if ttl:
            await self._execute("set", key, lambda: self._client.setex(key, ttl, data))
        else:
            await self._execute("set", key, lambda: self._client.set(key, data))
        self.stats['sets'] += 1
        return True

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns whether it existed."""
        removed = await self._execute("delete", key, lambda: self._client.delete(key))
        self.stats['deletes'] += 1
        return bool(removed)

    async def keys_by_prefix(self, prefix: str) -> List[str]:
        """Collect keys starting with prefix using incremental SCAN."""
        match = f"{escape_glob(prefix)}*"

        async def scan() -> List[str]:
            return [
                key.decode("utf-8") if isinstance(key, bytes) else key
                async for key in self._client.scan_iter(match=match, count=self.scan_batch_size)
            ]

        return await self._execute("keys_by_prefix", prefix, scan)

    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, in batches. Returns the count removed."""
        keys = await self.keys_by_prefix(prefix)
        deleted = 0
        for start in range(0, len(keys), self.scan_batch_size):
            batch = keys[start:start + self.scan_batch_size]
            deleted += await self._execute(
                "delete_by_prefix", prefix, lambda batch=batch: self._client.delete(*batch)
            )
        self.stats['deletes'] += deleted
        return deleted

    async def flush(self) -> bool:
        await self._execute("flush", None, lambda: self._client.flushdb())
        return True

    async def ping(self) -> bool:
        await self._execute("ping", None, lambda: self._client.ping())
        return True

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self.stats['hits'] + self.stats['misses']
        return {
            **self.stats,
            'configured': self.configured,
            'state': self.state.value,
            'connected': self.is_available(),
            'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
            'total_requests': total_requests,
        }
