"""Cache Manager for the shared Redis tier

Provides the fast cache tier, single-flight locks and pending markers on top
of Redis. Every operation is bounded by a timeout and degrades to a miss (or a
failed acquisition) instead of propagating errors to callers.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Awaitable, Dict, Optional
import logging

import redis.asyncio as redis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError, WatchError

from .config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Redis-based cache manager for the analysis core."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        operation_timeout: float = settings.CACHE_OPERATION_TIMEOUT
    ):
        self.redis_client: Optional[redis.Redis] = redis_client
        self.connection_pool: Optional[ConnectionPool] = None
        self.operation_timeout = operation_timeout
        self._metrics = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
            "timeouts": 0
        }

    async def initialize(self, redis_url: str = settings.REDIS_URL):
        """Initialize Redis connection pool and client."""
        if self.redis_client is not None:
            return
        try:
            self.connection_pool = ConnectionPool.from_url(
                redis_url,
                max_connections=20,
                retry_on_timeout=True,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
                health_check_interval=30,
                decode_responses=True
            )
            self.redis_client = redis.Redis(connection_pool=self.connection_pool)

            await self.redis_client.ping()
            logger.info("Cache manager initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize cache manager: {e}")
            raise

    async def close(self):
        """Close Redis connections."""
        if self.redis_client:
            await self.redis_client.close()
        if self.connection_pool:
            await self.connection_pool.disconnect()

    async def _bounded(self, operation: str, awaitable: Awaitable, default: Any = None) -> Any:
        """Run a Redis call under the operation timeout, returning default on failure."""
        if not self.redis_client:
            logger.warning(f"Redis client not initialized, skipping {operation}")
            return default
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError:
            self._metrics["timeouts"] += 1
            logger.warning(f"Cache {operation} timed out after {self.operation_timeout}s")
            return default
        except RedisError as e:
            self._metrics["errors"] += 1
            logger.error(f"Cache {operation} failed: {e}")
            return default

    async def health_check(self) -> Dict[str, Any]:
        """Health check for Redis connection."""
        try:
            if not self.redis_client:
                return {"status": "unhealthy", "error": "Redis client not initialized"}

            started = time.perf_counter()
            await asyncio.wait_for(self.redis_client.ping(), timeout=self.operation_timeout)

            return {
                "status": "healthy",
                "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
                "hits": self._metrics["hits"],
                "misses": self._metrics["misses"]
            }

        except Exception as e:
            logger.error(f"Cache health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    async def get_metrics(self) -> Dict[str, Any]:
        """Get cache performance metrics."""
        hit_rate = 0
        if self._metrics["hits"] + self._metrics["misses"] > 0:
            hit_rate = self._metrics["hits"] / (self._metrics["hits"] + self._metrics["misses"])

        return {
            **self._metrics,
            "hit_rate": hit_rate,
            "timestamp": time.time()
        }

    # Key/value methods
    async def get_json(self, key: str) -> Optional[Any]:
        """Retrieve and decode a JSON value, None on miss."""
        data = await self._bounded(f"get {key}", self.redis_client.get(key) if self.redis_client else None)
        if data is None:
            self._metrics["misses"] += 1
            logger.debug(f"Cache miss: {key}")
            return None
        self._metrics["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            self._metrics["errors"] += 1
            logger.error(f"Discarding undecodable cache entry {key}: {e}")
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> bool:
        """Encode and store a JSON value with TTL in seconds."""
        if ttl <= 0:
            return False
        payload = json.dumps(value, default=str)
        ok = await self._bounded(
            f"set {key}",
            self.redis_client.set(key, payload, ex=int(ttl)) if self.redis_client else None,
            default=False
        )
        if ok:
            self._metrics["sets"] += 1
            logger.debug(f"Cached: {key} (TTL: {ttl}s)")
        return bool(ok)

    async def set_json_if_newer(self, key: str, value: Dict[str, Any], ttl: int, version_field: str) -> bool:
        """Compare-and-set: only replace the entry when the numeric value[version_field] is not older."""
        if ttl <= 0 or not self.redis_client:
            return False
        return bool(await self._bounded(
            f"cas {key}",
            self._cas_newer(key, value, ttl, version_field),
            default=False
        ))

    async def _cas_newer(self, key: str, value: Dict[str, Any], ttl: int, version_field: str) -> bool:
        payload = json.dumps(value, default=str)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is not None:
                        try:
                            existing_version = json.loads(current).get(version_field)
                        except (TypeError, ValueError, AttributeError):
                            existing_version = None
                        if existing_version is not None and float(existing_version) > float(value[version_field]):
                            await pipe.unwatch()
                            logger.debug(f"Skipped older write for {key}")
                            return False
                    pipe.multi()
                    pipe.set(key, payload, ex=int(ttl))
                    await pipe.execute()
                    self._metrics["sets"] += 1
                    return True
                except WatchError:
                    continue

    async def delete(self, key: str) -> bool:
        """Delete a cache entry."""
        removed = await self._bounded(
            f"delete {key}",
            self.redis_client.delete(key) if self.redis_client else None,
            default=0
        )
        if removed:
            self._metrics["deletes"] += 1
        return bool(removed)

    # Single-flight methods
    async def try_acquire_lock(self, key: str, ttl: int) -> Optional[str]:
        """Take a mutual-exclusion token. Returns the owner token or None if held."""
        token = uuid.uuid4().hex
        acquired = await self._bounded(
            f"lock {key}",
            self.redis_client.set(key, token, nx=True, ex=int(ttl)) if self.redis_client else None,
            default=False
        )
        if acquired:
            logger.debug(f"Lock acquired: {key}")
            return token
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock only if it is still owned by token."""
        if not self.redis_client:
            return False
        return bool(await self._bounded(f"unlock {key}", self._compare_and_delete(key, token), default=False))

    async def _compare_and_delete(self, key: str, expected: str) -> bool:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current != expected:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def delete_if_value(self, key: str, expected: str) -> bool:
        """Delete key only while it still holds expected."""
        if not self.redis_client:
            return False
        return bool(await self._bounded(f"delete-if {key}", self._compare_and_delete(key, expected), default=False))

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """SET NX with TTL; False when the key exists or Redis is unavailable."""
        return bool(await self._bounded(
            f"setnx {key}",
            self.redis_client.set(key, value, nx=True, ex=int(ttl)) if self.redis_client else None,
            default=False
        ))

    async def get_value(self, key: str) -> Optional[str]:
        """Raw string read."""
        return await self._bounded(f"get {key}", self.redis_client.get(key) if self.redis_client else None)
