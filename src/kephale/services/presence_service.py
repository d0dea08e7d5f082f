"""Presence service — who is online right now.

Learn: Presence is a heartbeat with expiry. Each open client calls
heartbeat() periodically; that SETs presence:user:{id} with a TTL.
If the client goes quiet (tab closed, network lost), Redis expires
the key and the user is offline. No sweeper process needed.

An explicit set_offline() deletes the key immediately (logout,
page unload).
"""

import time
from typing import Iterable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from kephale.config import settings

logger = structlog.get_logger()

PRESENCE_PREFIX = "presence:user:"
PRESENCE_KEY_PATTERN = f"{PRESENCE_PREFIX}*"


def presence_key(user_id: str) -> str:
    return f"{PRESENCE_PREFIX}{user_id}"


class PresenceService:
    """Online/offline tracking backed by Redis TTL keys."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis],
        ttl_seconds: Optional[int] = None,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.presence_ttl_seconds

    @property
    def available(self) -> bool:
        return self.redis is not None

    # ─── Writes ───────────────────────────────────────────

    async def heartbeat(self, user_id: str) -> bool:
        """Mark a user online for the next ttl_seconds.

        Returns False if the write didn't land (Redis down).
        """
        if self.redis is None:
            return False
        try:
            await self.redis.set(
                presence_key(user_id),
                int(time.time() * 1000),
                ex=self.ttl_seconds,
            )
            return True
        except RedisError as e:
            logger.warning("presence.heartbeat_failed", user_id=user_id, error=str(e))
            return False

    async def set_offline(self, user_id: str) -> bool:
        """Mark a user offline immediately."""
        if self.redis is None:
            return False
        try:
            await self.redis.delete(presence_key(user_id))
            return True
        except RedisError as e:
            logger.warning("presence.set_offline_failed", user_id=user_id, error=str(e))
            return False

    # ─── Reads ────────────────────────────────────────────

    async def get_online(self, user_ids: Iterable[str]) -> dict[str, bool]:
        """Map each user id to whether it currently has a live heartbeat.

        Learn: One pipelined round-trip of EXISTS per id, regardless of
        how many ids are asked for.
        """
        ids = list(user_ids)
        if not ids:
            return {}
        if self.redis is None:
            return {uid: False for uid in ids}
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for uid in ids:
                    pipe.exists(presence_key(uid))
                replies = await pipe.execute()
        except RedisError as e:
            logger.warning("presence.query_failed", count=len(ids), error=str(e))
            return {uid: False for uid in ids}
        return {uid: bool(reply) for uid, reply in zip(ids, replies)}

    async def is_online(self, user_id: str) -> bool:
        return (await self.get_online([user_id]))[user_id]

    async def last_seen(self, user_id: str) -> Optional[int]:
        """Epoch milliseconds of the latest heartbeat, if still online."""
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(presence_key(user_id))
        except RedisError as e:
            logger.warning("presence.query_failed", user_id=user_id, error=str(e))
            return None
        return int(value) if value is not None else None

    async def count_online(self) -> int:
        """Number of users with a live heartbeat (admin dashboard)."""
        if self.redis is None:
            return 0
        total = 0
        try:
            async for _ in self.redis.scan_iter(match=PRESENCE_KEY_PATTERN, count=200):
                total += 1
        except RedisError as e:
            logger.warning("presence.count_failed", error=str(e))
            return 0
        return total
