"""
Webhook event deduplication backed by Redis.
Records which Square event IDs have already been processed so at-least-once
delivery turns into at-most-once effectful processing within the TTL window.
"""

from typing import Optional

import structlog
from redis.asyncio import Redis

from square_reconciler.config import settings

logger = structlog.get_logger()

KEY_PREFIX = "square:webhook:processed:"


class EventDedupStore:
    """
    Key/TTL store of processed webhook event IDs.

    Callers must only mark an event processed after its signature validated.
    """

    def __init__(self, client: Optional[Redis] = None, ttl_seconds: Optional[int] = None):
        self.client = client or Redis.from_url(settings.redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds or settings.webhook_dedup_ttl_seconds

    @staticmethod
    def _key(event_id: str) -> str:
        return f"{KEY_PREFIX}{event_id}"

    async def is_processed(self, event_id: str) -> bool:
        return bool(await self.client.exists(self._key(event_id)))

    async def mark_processed(self, event_id: str) -> None:
        """Idempotent; (re)sets the expiry on every call."""
        await self.client.set(self._key(event_id), "1", ex=self.ttl_seconds)
        logger.debug("Marked webhook event processed", event_id=event_id, ttl=self.ttl_seconds)

    async def claim(self, event_id: str) -> bool:
        """
        Atomically mark an event processed.

        Returns:
            True if this caller claimed the event, False if it was already processed
        """
        claimed = await self.client.set(self._key(event_id), "1", ex=self.ttl_seconds, nx=True)
        return bool(claimed)

    async def release(self, event_id: str) -> None:
        """Forget an event so a redelivery is processed again."""
        await self.client.delete(self._key(event_id))

    async def close(self) -> None:
        await self.client.aclose()
