"""Call state store — who is in a call, and who has a call waiting.

Learn: Two kinds of Redis keys, both with a TTL so nothing is left
behind if a client vanishes mid-call:

    call:user:{id}     → CallState    (active call, TTL 5 min, refreshed on answer)
    call:pending:{id}  → PendingCall  (incoming call, TTL 60 s)
    call:claimed:{id}  → PendingCall  (taken by a device, kept until answered, TTL 60 s)

The pending key is a single-slot mailbox: a new invite overwrites the
previous one. It lets a recipient who opens the app on another device
(or after the push notification) pick up the call. claim_pending() takes
and removes it in one GETDEL so two devices can't both answer, and
keeps a copy under call:claimed so the answer that follows still knows
which conversation the call belongs to.

Taking a call "only if it is from this caller" is a WATCH/MULTI
compare-and-delete: a newer invite from someone else is never touched.
"""

import time
from typing import Iterable, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from kephale.config import settings
from kephale.schemas.call import CallState, PendingCall

logger = structlog.get_logger()

CALL_PREFIX = "call:user:"
PENDING_PREFIX = "call:pending:"
CLAIMED_PREFIX = "call:claimed:"


def call_key(user_id: str) -> str:
    return f"{CALL_PREFIX}{user_id}"


def pending_key(user_id: str) -> str:
    return f"{PENDING_PREFIX}{user_id}"


def claimed_key(user_id: str) -> str:
    return f"{CLAIMED_PREFIX}{user_id}"


def _decode(model, raw: Optional[str]):
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError:
        logger.warning("call.state_corrupt", model=model.__name__)
        return None


class CallStateStore:
    """Redis-backed active/pending call state."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis],
        active_ttl: Optional[int] = None,
        pending_ttl: Optional[int] = None,
    ):
        self.redis = redis
        self.active_ttl = active_ttl or settings.call_active_ttl_seconds
        self.pending_ttl = pending_ttl or settings.call_pending_ttl_seconds

    # ─── Active calls ─────────────────────────────────────

    async def set_in_call(
        self, user_id: str, conversation_id: Optional[str], with_user_id: str
    ) -> bool:
        if self.redis is None:
            return False
        state = CallState(
            conversation_id=conversation_id,
            with_user_id=with_user_id,
            started_at=int(time.time() * 1000),
        )
        try:
            await self.redis.set(
                call_key(user_id),
                state.model_dump_json(by_alias=True),
                ex=self.active_ttl,
            )
            return True
        except RedisError as e:
            logger.warning("call.set_in_call_failed", user_id=user_id, error=str(e))
            return False

    async def end_call(self, *user_ids: str) -> bool:
        """Clear the active-call state of one or more users."""
        if self.redis is None or not user_ids:
            return False
        try:
            await self.redis.delete(*(call_key(uid) for uid in user_ids))
            return True
        except RedisError as e:
            logger.warning("call.end_call_failed", user_ids=list(user_ids), error=str(e))
            return False

    async def get_calls(self, user_ids: Iterable[str]) -> dict[str, Optional[CallState]]:
        """Active call of each user (None when not in a call)."""
        ids = list(user_ids)
        if not ids:
            return {}
        if self.redis is None:
            return {uid: None for uid in ids}
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for uid in ids:
                    pipe.get(call_key(uid))
                replies = await pipe.execute()
        except RedisError as e:
            logger.warning("call.query_failed", count=len(ids), error=str(e))
            return {uid: None for uid in ids}
        return {uid: _decode(CallState, raw) for uid, raw in zip(ids, replies)}

    async def get_call_state(self, user_id: str) -> Optional[CallState]:
        return (await self.get_calls([user_id]))[user_id]

    async def is_in_call(self, user_id: str) -> bool:
        return await self.get_call_state(user_id) is not None

    # ─── Pending calls (single-slot mailbox) ──────────────

    async def set_pending(self, recipient_id: str, call: PendingCall) -> bool:
        """Store (or replace) the recipient's waiting call."""
        if self.redis is None:
            return False
        try:
            await self.redis.set(
                pending_key(recipient_id),
                call.model_dump_json(by_alias=True),
                ex=self.pending_ttl,
            )
            return True
        except RedisError as e:
            logger.warning("call.set_pending_failed", recipient_id=recipient_id, error=str(e))
            return False

    async def peek_pending(self, recipient_id: str) -> Optional[PendingCall]:
        """Read the waiting call without consuming it."""
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(pending_key(recipient_id))
        except RedisError as e:
            logger.warning("call.peek_pending_failed", recipient_id=recipient_id, error=str(e))
            return None
        return _decode(PendingCall, raw)

    async def claim_pending(self, recipient_id: str) -> Optional[PendingCall]:
        """Atomically take the waiting call out of the mailbox.

        The claimed call is remembered under call:claimed so a later
        answer from the same device can still be tied to its conversation.
        """
        if self.redis is None:
            return None
        try:
            raw = await self.redis.getdel(pending_key(recipient_id))
            if raw is not None:
                await self.redis.set(claimed_key(recipient_id), raw, ex=self.pending_ttl)
        except RedisError as e:
            logger.warning("call.claim_pending_failed", recipient_id=recipient_id, error=str(e))
            return None
        return _decode(PendingCall, raw)

    async def _delete_if_from(self, key: str, caller_id: str) -> Optional[PendingCall]:
        """Compare-and-delete: remove key only if it holds caller_id's call.

        WATCH makes the DEL fail if the key changed after we read it (a
        new invite landed); we then re-read and decide again.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    call = _decode(PendingCall, await pipe.get(key))
                    if call is None or call.caller_id != caller_id:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return call
                except WatchError:
                    continue

    async def take_pending_from(
        self, recipient_id: str, caller_id: str
    ) -> Optional[PendingCall]:
        """Take the recipient's call from caller_id, waiting or already claimed.

        A call from anyone else stays where it is, TTL untouched.
        """
        if self.redis is None:
            return None
        try:
            call = await self._delete_if_from(pending_key(recipient_id), caller_id)
            if call is None:
                call = await self._delete_if_from(claimed_key(recipient_id), caller_id)
        except RedisError as e:
            logger.warning("call.take_pending_failed", recipient_id=recipient_id, error=str(e))
            return None
        return call

    async def clear_pending(self, recipient_id: str) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.delete(pending_key(recipient_id), claimed_key(recipient_id))
            return True
        except RedisError as e:
            logger.warning("call.clear_pending_failed", recipient_id=recipient_id, error=str(e))
            return False
