import json
import logging
import os
from typing import Any, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger("advisory-router.audit")

DEFAULT_KEY = "router:audit"


class AuditSink:
    """
    Hands dispatch audit entries to the analytics pipeline.

    With REDIS_URL set, entries are appended to a capped Redis list that the
    external pipeline drains. Without it (or if Redis is unreachable at
    startup) entries are only written to the log.
    """

    def __init__(self, redis_url: Optional[str] = None, key: str = DEFAULT_KEY, max_entries: int = 10000):
        self._redis_url = redis_url if redis_url is not None else os.getenv("REDIS_URL")
        self._enabled = bool(self._redis_url)
        self._redis = None
        self.key = key
        self.max_entries = max_entries
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def connect(self):
        if not self._enabled:
            return
        if not self._redis:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
            try:
                await self._redis.ping()
                logger.info(f"Audit sink connected to Redis ({self.key})")
            except Exception as e:
                logger.warning(f"Failed to connect audit sink to Redis: {e}. Falling back to log-only.")
                self._enabled = False

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def record(self, entry: Dict[str, Any]):
        payload = json.dumps(entry, default=str)
        if not self._enabled or not self._redis:
            logger.info(f"AUDIT: {payload}")
            return
        try:
            pipe = self._redis.pipeline()
            pipe.rpush(self.key, payload)
            pipe.ltrim(self.key, -self.max_entries, -1)
            await pipe.execute()
        except Exception as e:
            # The answer is already produced; losing an audit row must not fail the request.
            self.dropped += 1
            logger.error(f"Audit write failed ({e}); entry logged instead: {payload}")

    async def get_metrics(self) -> Dict[str, Any]:
        if not self._enabled or not self._redis:
            return {"enabled": False, "dropped": self.dropped}
        depth = await self._redis.llen(self.key)
        return {"enabled": True, "key": self.key, "depth": depth, "dropped": self.dropped}
