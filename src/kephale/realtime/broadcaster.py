"""Event fan-out over Redis pub/sub.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for real-time UI updates (the client re-fetches state
on reconnect, and calls survive in the pending-call slot). So a failed
publish is logged and swallowed, never surfaced to the HTTP caller.

Wire format, identical for every channel:
    {"channel": "private-user-42", "event": "call:incoming", "data": {...}}
"""

import asyncio
import json
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Depends
from redis.exceptions import RedisError

from kephale.realtime.channels import conversation_channel, redis_topic, user_channel
from kephale.realtime.redis import get_redis_optional

logger = structlog.get_logger()

# Max channels per trigger call, so one event to a huge group doesn't
# turn into a single giant pipeline.
MAX_CHANNELS_PER_TRIGGER = 100


def encode_event(channel: str, event: str, data: dict[str, Any]) -> str:
    return json.dumps({"channel": channel, "event": event, "data": data}, default=str)


class Broadcaster:
    """Publishes events to user and conversation channels."""

    def __init__(self, redis: Optional[aioredis.Redis]):
        self.redis = redis

    async def trigger(
        self,
        channels: str | Iterable[str],
        event: str,
        data: dict[str, Any],
    ) -> int:
        """Publish an event to one or more channels.

        Returns the number of channels the event was published to
        (0 when Redis is unavailable or the publish failed).
        """
        if isinstance(channels, str):
            channels = [channels]
        channels = list(channels)
        if not channels:
            return 0
        if self.redis is None:
            logger.warning("realtime.publish_skipped", event=event, reason="redis_unavailable")
            return 0

        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for channel in channels:
                    pipe.publish(redis_topic(channel), encode_event(channel, event, data))
                await pipe.execute()
        except RedisError as e:
            logger.warning(
                "realtime.publish_failed",
                event=event,
                channels=len(channels),
                error=str(e),
            )
            return 0
        return len(channels)

    async def emit_to_user(self, user_id: str, event: str, data: dict[str, Any]) -> int:
        """Send an event to a user's private channel."""
        return await self.trigger(user_channel(user_id), event, data)

    async def emit_to_conversation(
        self, conversation_id: str, event: str, data: dict[str, Any]
    ) -> int:
        """Send an event to everyone watching a conversation."""
        return await self.trigger(conversation_channel(conversation_id), event, data)

    async def emit_to_users(
        self, user_ids: Iterable[str], event: str, data: dict[str, Any]
    ) -> int:
        """Send the same event to many users' private channels.

        Channels are batched in chunks of MAX_CHANNELS_PER_TRIGGER and the
        chunks are published concurrently.
        """
        channels = [user_channel(uid) for uid in user_ids]
        chunks = [
            channels[i:i + MAX_CHANNELS_PER_TRIGGER]
            for i in range(0, len(channels), MAX_CHANNELS_PER_TRIGGER)
        ]
        results = await asyncio.gather(
            *(self.trigger(chunk, event, data) for chunk in chunks)
        )
        return sum(results)


def get_broadcaster(
    redis: Optional[aioredis.Redis] = Depends(get_redis_optional),
) -> Broadcaster:
    """FastAPI dependency — a broadcaster bound to the shared pool."""
    return Broadcaster(redis)
