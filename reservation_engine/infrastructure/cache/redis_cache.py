# reservation_engine/infrastructure/cache/redis_cache.py

import json
import logging
from typing import Any, Protocol

import redis

from reservation_engine.domain.exceptions import CacheUnavailableError


logger = logging.getLogger(__name__)


def serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class Cache(Protocol):
    """Single-key operations the lock layer relies on."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None, only_if_absent: bool = False) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def delete_if_equals(self, key: str, expected: Any) -> bool: ...

    def replace_if_equals(self, key: str, expected: Any, value: Any, ttl_seconds: int) -> bool: ...

    def expire(self, key: str, ttl_seconds: int) -> bool: ...


# Ownership check and delete in one server-side step.
_COMPARE_AND_DELETE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

_COMPARE_AND_REPLACE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""


class RedisCache:
    """
    JSON-valued wrapper around a redis client.

    Connection problems surface as CacheUnavailableError so that
    callers fail closed instead of treating an outage as a miss.
    """

    def __init__(self, client: redis.Redis):
        self.client = client
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE_LUA)
        self._compare_and_replace = client.register_script(_COMPARE_AND_REPLACE_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            logger.error("Redis GET failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache read failed for {key}") from exc
        if raw is None:
            return None
        return json.loads(raw)

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
        only_if_absent: bool = False,
    ) -> bool:
        try:
            result = self.client.set(
                key,
                serialize(value),
                ex=ttl_seconds,
                nx=only_if_absent,
            )
        except redis.RedisError as exc:
            logger.error("Redis SET failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache write failed for {key}") from exc
        return bool(result)

    def delete(self, key: str) -> bool:
        try:
            return self.client.delete(key) > 0
        except redis.RedisError as exc:
            logger.error("Redis DEL failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache delete failed for {key}") from exc

    def delete_if_equals(self, key: str, expected: Any) -> bool:
        try:
            return bool(self._compare_and_delete(keys=[key], args=[serialize(expected)]))
        except redis.RedisError as exc:
            logger.error("Redis compare-and-delete failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache delete failed for {key}") from exc

    def replace_if_equals(self, key: str, expected: Any, value: Any, ttl_seconds: int) -> bool:
        try:
            return bool(
                self._compare_and_replace(
                    keys=[key],
                    args=[serialize(expected), serialize(value), int(ttl_seconds)],
                )
            )
        except redis.RedisError as exc:
            logger.error("Redis compare-and-replace failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache write failed for {key}") from exc

    def expire(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.expire(key, ttl_seconds))
        except redis.RedisError as exc:
            logger.error("Redis EXPIRE failed. key=%s error=%s", key, exc)
            raise CacheUnavailableError(f"Cache expire failed for {key}") from exc

