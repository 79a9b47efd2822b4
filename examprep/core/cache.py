import json
import logging
from typing import Any, Optional
import redis
from examprep.core.config import settings

logger = logging.getLogger(__name__)


class ContentCache:
    """Redis-backed cache for section content. Failures are logged and treated as misses."""

    def __init__(self, url: str, ttl: int):
        self.redis = redis.Redis.from_url(url, decode_responses=True)
        self.ttl = ttl

    @staticmethod
    def content_key(level: str, mode: str, json_id: str) -> str:
        return f"content:{level}:{mode}:{json_id}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get error: {e}")
            return None
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Any) -> None:
        try:
            self.redis.set(key, json.dumps(value), ex=self.ttl)
        except redis.RedisError as e:
            logger.warning(f"Cache set error: {e}")


_cache: Optional[ContentCache] = None


def get_content_cache() -> Optional[ContentCache]:
    global _cache
    if not settings.CONTENT_CACHE_ENABLED:
        return None
    if _cache is None:
        _cache = ContentCache(settings.REDIS_URL, settings.CACHE_TTL)
    return _cache
