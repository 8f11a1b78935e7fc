import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class MemoryTTLCache:
    """Per-process cache with explicit expiry.

    ``clock`` returns seconds and is injectable so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return default
        return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RedisTTLCache:
    """Cache shared by every handler instance; expiry is delegated to Redis ``EX``."""

    def __init__(self, client: redis.Redis, prefix: str = "cfg"):
        self.redis = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "cfg") -> "RedisTTLCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.redis.get(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Cache get error: {e}")
            return default
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(value), ex=ttl)
        except redis.RedisError as e:
            logger.error(f"Cache set error: {e}")

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Cache delete error: {e}")

    def clear(self) -> None:
        try:
            keys = list(self.redis.scan_iter(match=f"{self.prefix}:*"))
            if keys:
                self.redis.delete(*keys)
        except redis.RedisError as e:
            logger.error(f"Cache clear error: {e}")


def build_cache(backend: str, redis_url: Optional[str] = None):
    if backend == "redis":
        return RedisTTLCache.from_url(redis_url)
    return MemoryTTLCache()
