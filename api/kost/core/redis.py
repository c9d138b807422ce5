import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from kost.core.config import settings
from kost.core.errors import RemoteError
from kost.core.gateway import ChangeCallback, ChangeEvent, Entity, Filters, Subscription, record_matches

logger = logging.getLogger(__name__)

# Shared async Redis client (created once, reused across requests)
_redis: aioredis.Redis | None = None


def new_redis_client(url: str | None = None) -> aioredis.Redis:
    return aioredis.from_url(url or settings.redis_url, decode_responses=True)


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = new_redis_client()
    return _redis


# ─── Change feed ───────────────────────────────────────────────────────────────

_CHANNEL_PREFIX = "kost:changes:"


def channel_for(entity: Entity) -> str:
    return f"{_CHANNEL_PREFIX}{entity.value}"


class RedisChangeFeed:
    """Pub/sub change feed: one channel per entity, filtering happens on the listener side."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    async def publish(self, event: ChangeEvent) -> None:
        await self._client.publish(channel_for(event.entity), event.to_json())

    async def subscribe(self, entity: Entity, filters: Filters, callback: ChangeCallback) -> Subscription:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel_for(entity))
        except RedisError as exc:
            await pubsub.aclose()
            raise RemoteError(f"Could not subscribe to {entity.value} changes") from exc

        task = asyncio.create_task(_listen(pubsub, filters, callback))

        async def _close() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            try:
                await pubsub.unsubscribe()
            finally:
                await pubsub.aclose()

        handle = Subscription(entity=entity, filters=filters, _close=_close)
        logger.debug("Opened change feed %s on %s filters=%s", handle.id, entity.value, filters)
        return handle

    async def aclose(self) -> None:
        await self._client.aclose()


async def _listen(pubsub, filters: Filters, callback: ChangeCallback) -> None:
    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue
        try:
            event = ChangeEvent.from_json(message["data"])
        except (ValueError, KeyError):
            logger.warning("Dropping malformed change event: %r", message.get("data"))
            continue
        if not record_matches(event.record, filters):
            continue
        try:
            await callback(event)
        except Exception:
            # One failing listener must not kill the feed
            logger.exception("Change feed callback failed for %s", event.entity.value)
