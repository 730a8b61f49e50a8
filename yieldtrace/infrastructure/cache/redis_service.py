import hashlib
import json
import logging
from typing import Any, Optional

import redis
from pydantic import BaseModel

from yieldtrace.core.interfaces.cache import ICache

logger = logging.getLogger(__name__)


def cache_key(prefix: str, payload: BaseModel) -> str:
    """Stable key for a validated query: prefix plus a digest of its canonical JSON."""
    canonical = json.dumps(payload.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return f"yieldtrace:{prefix}:{hashlib.sha256(canonical.encode()).hexdigest()}"


class RedisService(ICache):
    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.client = None
        if self.redis_url:
            try:
                self.client = redis.from_url(self.redis_url, decode_responses=True)
                # Test connection
                self.client.ping()
                logger.info("Connected to Redis for caching.")
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Failed to connect to Redis: {e}. Caching disabled.")
                self.client = None
        else:
            logger.info("REDIS_URL not set. Caching disabled.")

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

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        if not self.client:
            return
        try:
            if isinstance(value, BaseModel):
                serialized = value.model_dump_json(by_alias=True)
            else:
                serialized = json.dumps(value, default=str)
            self.client.setex(key, ttl_seconds, serialized)
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Redis set error: {e}")

    def delete(self, key: str):
        if not self.client:
            return
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Redis delete error: {e}")
