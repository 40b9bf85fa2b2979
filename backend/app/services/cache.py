"""
Key-value cache with TTL.

Backs both the per-user sync status blackboard and the read-through caches for
task / interview lists. Redis in production; an in-process backend for
single-worker dev and tests.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..config import settings

logger = logging.getLogger(__name__)

# String payloads left behind by clients that serialized objects badly.
_CORRUPTED_MARKERS = ("undefined", "null")


class CacheBackend:
    """Minimal async key-value interface."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError

    async def compare_and_set(
        self, key: str, transform: Callable[[Optional[str]], Optional[str]], ttl_s: int
    ) -> bool:
        """
        Atomically replace the value at key with transform(current raw value).

        transform returns None to leave the key untouched; the call then returns False.
        """
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RedisBackend(CacheBackend):
    def __init__(self, url: str):
        self._client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        await self._client.set(key, value, ex=ttl_s)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    async def compare_and_set(
        self, key: str, transform: Callable[[Optional[str]], Optional[str]], ttl_s: int
    ) -> bool:
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                value = transform(await pipe.get(key))
                if value is None:
                    return False
                pipe.multi()
                pipe.set(key, value, ex=ttl_s)
                await pipe.execute()
                return True
            except WatchError:
                # Another writer touched the key between WATCH and EXEC.
                return False

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class MemoryBackend(CacheBackend):
    """Process-local store with per-key expiry. Only valid for a single worker process."""

    def __init__(self):
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _get_locked(self, key: str) -> Optional[str]:
        """Assume caller holds _lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    def _set_locked(self, key: str, value: str, ttl_s: int) -> None:
        expires_at = time.monotonic() + ttl_s if ttl_s and ttl_s > 0 else None
        self._data[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get_locked(key)

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        with self._lock:
            self._set_locked(key, value, ttl_s)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    async def compare_and_set(
        self, key: str, transform: Callable[[Optional[str]], Optional[str]], ttl_s: int
    ) -> bool:
        with self._lock:
            value = transform(self._get_locked(key))
            if value is None:
                return False
            self._set_locked(key, value, ttl_s)
            return True

    async def ping(self) -> bool:
        return True


def decode_cached(raw: Any) -> Any:
    """
    Parse a cached JSON payload.

    Raises ValueError for entries that are present but unusable so callers can evict them.
    """
    if not isinstance(raw, str):
        raise ValueError(f"unexpected cache payload type {type(raw).__name__}")
    if raw.startswith("[object ") or raw in _CORRUPTED_MARKERS:
        raise ValueError("corrupted cache entry")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON in cache: {e}") from e


class CacheService:
    """
    Read-through cache helpers. Never authoritative: backend errors are logged and
    reported as a miss so callers fall back to the database.
    """

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache get error for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return decode_cached(raw)
        except ValueError as e:
            logger.warning(f"{e} for key {key}, clearing")
            await self.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl_s: int) -> bool:
        try:
            await self.backend.set(key, json.dumps(value, default=str), ttl_s)
            return True
        except Exception as e:
            logger.warning(f"Cache set error for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> bool:
        try:
            await self.backend.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache delete error for {keys}: {e}")
            return False

    async def clear_user_cache(self, user_id: int) -> bool:
        """Drop every cached list derived from this user's tasks."""
        return await self.delete(
            CacheKeys.user_tasks(user_id),
            CacheKeys.user_interviews(user_id),
            CacheKeys.user_stats(user_id),
        )

    async def get_stats(self) -> dict:
        try:
            ok = await self.backend.ping()
            return {"status": "connected" if ok else "unavailable", "backend": type(self.backend).__name__}
        except Exception as e:
            return {"status": "error", "error": str(e)}


class CacheKeys:
    @staticmethod
    def user_tasks(user_id: int) -> str:
        return f"tasks:user:{user_id}"

    @staticmethod
    def user_interviews(user_id: int) -> str:
        return f"interviews:user:{user_id}"

    @staticmethod
    def user_stats(user_id: int) -> str:
        return f"stats:user:{user_id}"

    @staticmethod
    def sync_status(user_id: int) -> str:
        return f"sync:status:{user_id}"


_backend: Optional[CacheBackend] = None


def create_backend(kind: Optional[str] = None) -> CacheBackend:
    kind = (kind or settings.cache_backend or "redis").strip().lower()
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend(settings.redis_url)
    raise ValueError(f"Unknown CACHE_BACKEND {kind!r} (expected 'redis' or 'memory')")


def get_cache_backend() -> CacheBackend:
    """Process-wide backend shared by the status store and read-through caches."""
    global _backend
    if _backend is None:
        _backend = create_backend()
        logger.info(f"Cache backend: {type(_backend).__name__}")
    return _backend


def get_cache_service() -> CacheService:
    """FastAPI dependency."""
    return CacheService(get_cache_backend())


async def close_cache_backend() -> None:
    global _backend
    if _backend is not None:
        await _backend.close()
        _backend = None
