"""Call signaling — WebRTC offer/answer relay plus call-state bookkeeping.

Learn: Media never touches the server. We relay the SDP offer, answer and
ICE candidates between the two browsers over their private user channels,
and keep just enough state in Redis to survive a device switch:

    invite  → pending slot for recipient, call:incoming, push notification
    answer  → take pending slot, both parties marked in-call, call:answered
    reject  → take pending slot, call:rejected
    end     → clear both in-call records (and an unanswered invite), call:ended

A recipient who was offline when the invite went out opens the app from
the push notification, asks for /call/status, and finds the pending call.
"""

from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.config import settings
from kephale.db.models import User, parse_uuid
from kephale.events.types import (
    CALL_ANSWERED,
    CALL_ENDED,
    CALL_ICE_CANDIDATE,
    CALL_INCOMING,
    CALL_REJECTED,
)
from kephale.realtime.authorizer import ChannelAccessDenied, ChannelAuthorizer
from kephale.realtime.broadcaster import Broadcaster
from kephale.schemas.call import ActiveCall, CallStatusRead, PendingCall
from kephale.services.call_state import CallStateStore
from kephale.services.push_service import PushService

logger = structlog.get_logger()

DEFAULT_DISPLAY_NAME = "Utilisateur"


class CallService:
    """Relays call signals and tracks who is ringing or talking."""

    def __init__(
        self,
        db: AsyncSession,
        store: CallStateStore,
        broadcaster: Broadcaster,
        push: PushService,
    ):
        self.db = db
        self.store = store
        self.broadcaster = broadcaster
        self.push = push
        self.access = ChannelAuthorizer(db)

    async def display_name(self, user_id: str) -> str:
        uid = parse_uuid(user_id)
        user = await self.db.get(User, uid) if uid else None
        return user.display_name if user else DEFAULT_DISPLAY_NAME

    # ─── Signals ──────────────────────────────────────────

    async def invite(
        self,
        caller_id: str,
        *,
        recipient_id: str,
        conversation_id: str,
        offer: dict[str, Any],
    ) -> PendingCall:
        """Ring a recipient: store the pending call, notify live and via push."""
        for uid in (caller_id, recipient_id):
            if not await self.access.is_member(uid, conversation_id):
                raise ChannelAccessDenied("Both parties must belong to the conversation")

        caller_name = await self.display_name(caller_id)
        pending = PendingCall(
            caller_id=caller_id,
            caller_name=caller_name,
            offer=offer,
            conversation_id=conversation_id,
        )
        await self.store.set_pending(recipient_id, pending)

        await self.broadcaster.emit_to_user(
            recipient_id, CALL_INCOMING, pending.model_dump(by_alias=True)
        )

        # Reaches the recipient when the app is in the background or closed
        await self.push.send_to_user(
            recipient_id,
            {
                "title": f"Appel entrant de {caller_name}",
                "body": "Appuyez pour répondre",
                "icon": settings.push_icon,
                "url": f"/chat/discussion/{conversation_id}",
                "type": "call",
                "data": {"conversationId": conversation_id, "callerId": caller_id},
            },
        )
        logger.info(
            "call.invited",
            caller_id=caller_id,
            recipient_id=recipient_id,
            conversation_id=conversation_id,
        )
        return pending

    async def answer(
        self,
        responder_id: str,
        *,
        caller_id: str,
        answer: dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        """Connect the call: both parties are marked in-call, caller gets the SDP answer.

        The conversation comes from the invite (still waiting, or already
        claimed by the answering device), else from the signal itself.
        """
        pending = await self.store.take_pending_from(responder_id, caller_id)
        if pending is not None:
            conversation_id = pending.conversation_id
        elif conversation_id is None:
            logger.info("call.answered_without_invite", caller_id=caller_id, responder_id=responder_id)

        await self.store.set_in_call(responder_id, conversation_id, caller_id)
        await self.store.set_in_call(caller_id, conversation_id, responder_id)

        await self.broadcaster.emit_to_user(
            caller_id, CALL_ANSWERED, {"answer": answer, "responderId": responder_id}
        )

    async def reject(self, responder_id: str, *, caller_id: str) -> None:
        await self.store.take_pending_from(responder_id, caller_id)
        await self.broadcaster.emit_to_user(
            caller_id, CALL_REJECTED, {"responderId": responder_id}
        )

    async def end(self, ender_id: str, *, target_user_id: str) -> None:
        await self.store.end_call(ender_id, target_user_id)
        # Caller hanging up before an answer cancels the ringing invite
        await self.store.take_pending_from(target_user_id, ender_id)
        await self.broadcaster.emit_to_user(
            target_user_id, CALL_ENDED, {"enderId": ender_id}
        )

    async def ice_candidate(
        self, sender_id: str, *, target_user_id: str, candidate: dict[str, Any]
    ) -> None:
        await self.broadcaster.emit_to_user(
            target_user_id,
            CALL_ICE_CANDIDATE,
            {"candidate": candidate, "senderId": sender_id},
        )

    # ─── Status ───────────────────────────────────────────

    async def status(self, user_id: str, *, claim: bool = False) -> CallStatusRead:
        """Active and pending call for a user.

        claim=True consumes the pending call (the device that is about to
        show the ringing screen); claim=False only peeks.
        """
        state = await self.store.get_call_state(user_id)
        pending = (
            await self.store.claim_pending(user_id)
            if claim
            else await self.store.peek_pending(user_id)
        )

        active = None
        if state is not None:
            active = ActiveCall(
                **state.model_dump(),
                with_user_name=await self.display_name(state.with_user_id),
            )
        return CallStatusRead(active_call=active, pending_call=pending)
