"""Webhook idempotency filter backed by Redis."""

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bizmate.core.config import settings

logger = logging.getLogger(__name__)


class EventDeduplicator:
    """Remembers delivered event ids for a while so redeliveries are dropped.

    Uses ``SET key 1 NX EX ttl``: the first delivery sets the key, repeats
    within the TTL find it already present. If Redis is unreachable every
    event is treated as new.
    """

    KEY_PREFIX = "bizmate:event:"

    def __init__(self, redis: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.event_dedupe_ttl_seconds

    async def first_seen(self, event_id: str) -> bool:
        """True the first time ``event_id`` is seen within the TTL."""
        try:
            created = await self.redis.set(
                f"{self.KEY_PREFIX}{event_id}", "1", nx=True, ex=self.ttl_seconds
            )
        except RedisError as e:
            logger.warning(f"Dedupe check unavailable, processing {event_id}: {e}")
            return True
        return bool(created)
