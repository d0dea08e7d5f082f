"""Call API — signaling relay and call status.

Learn: One POST endpoint for every signal; the body's "event" field
selects the handler. GET /call/status is what a freshly opened app
asks to find out whether it should show a ringing screen (pending
call) or an in-call banner (active call).
"""

from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.auth.dependencies import CurrentUser, get_current_user
from kephale.db.engine import get_db
from kephale.realtime.authorizer import ChannelAccessDenied
from kephale.realtime.broadcaster import Broadcaster, get_broadcaster
from kephale.realtime.redis import get_redis_optional
from kephale.schemas.call import (
    CallAnswer,
    CallEnd,
    CallIceCandidate,
    CallInvite,
    CallReject,
    CallSignal,
    CallStatusRead,
    SignalAck,
)
from kephale.services.call_service import CallService
from kephale.services.call_state import CallStateStore
from kephale.services.push_service import PushService
from kephale.services.webpush import WebPushSender, get_push_sender

router = APIRouter()


def _get_service(
    db: AsyncSession = Depends(get_db),
    redis: Optional[aioredis.Redis] = Depends(get_redis_optional),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    sender: WebPushSender = Depends(get_push_sender),
) -> CallService:
    return CallService(
        db=db,
        store=CallStateStore(redis),
        broadcaster=broadcaster,
        push=PushService(db, sender),
    )


@router.post("/call/signal", response_model=SignalAck)
async def call_signal(
    body: CallSignal,
    user: CurrentUser = Depends(get_current_user),
    svc: CallService = Depends(_get_service),
):
    """Relay a call signal to the other party."""
    signal = body.root
    if isinstance(signal, CallInvite):
        try:
            await svc.invite(
                user.user_id,
                recipient_id=signal.recipient_id,
                conversation_id=signal.conversation_id,
                offer=signal.offer,
            )
        except ChannelAccessDenied as e:
            raise HTTPException(status_code=403, detail=str(e))
    elif isinstance(signal, CallAnswer):
        await svc.answer(
            user.user_id,
            caller_id=signal.caller_id,
            answer=signal.answer,
            conversation_id=signal.conversation_id,
        )
    elif isinstance(signal, CallReject):
        await svc.reject(user.user_id, caller_id=signal.caller_id)
    elif isinstance(signal, CallEnd):
        await svc.end(user.user_id, target_user_id=signal.target_user_id)
    elif isinstance(signal, CallIceCandidate):
        await svc.ice_candidate(
            user.user_id, target_user_id=signal.target_user_id, candidate=signal.candidate
        )
    return SignalAck()


@router.get("/call/status", response_model=CallStatusRead)
async def call_status(
    claim: bool = Query(False, description="Consume the pending call (1) or just peek"),
    user: CurrentUser = Depends(get_current_user),
    svc: CallService = Depends(_get_service),
):
    """Active and pending call for the current user."""
    return await svc.status(user.user_id, claim=claim)
