import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis

from chaintrace.core.interfaces.token_source import IKeyValueCache

logger = logging.getLogger(__name__)


def _serialize(value: Any) -> str:
    # Handle Pydantic models & lists of them
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json()
    return json.dumps(value, default=lambda o: o.model_dump() if hasattr(o, "model_dump") else str(o))


class RedisService(IKeyValueCache):
    """
    JSON values in Redis. Errors are logged and treated as misses so a
    flaky cache never breaks a request.
    """

    def __init__(self, redis_url: Optional[str], client=None):
        self.redis_url = redis_url
        self.client = client
        if self.client is not None:
            return
        if self.redis_url:
            try:
                self.client = redis.from_url(self.redis_url, decode_responses=True)
                # Test connection
                self.client.ping()
                logger.info("Connected to Redis for caching.")
            except redis.RedisError as e:
                logger.warning(f"Failed to connect to Redis: {e}. Caching disabled.")
                self.client = None
        else:
            logger.info("REDIS_URL not set. Caching disabled.")

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            data = self.client.get(key)
            if data:
                return json.loads(data)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis get error: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        if not self.client:
            return
        try:
            self.client.setex(key, ttl_seconds, _serialize(value))
        except redis.RedisError as e:
            logger.warning(f"Redis set error: {e}")

    def delete(self, key: str) -> None:
        if not self.client:
            return
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Redis delete error: {e}")


class MemoryCache(IKeyValueCache):
    """In-process stand-in for RedisService, used when REDIS_URL is unset."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return json.loads(payload)

    def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        self._data[key] = (self._clock() + ttl_seconds, _serialize(value))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


def build_cache(redis_url: Optional[str]) -> IKeyValueCache:
    service = RedisService(redis_url)
    if service.enabled:
        return service
    return MemoryCache()
