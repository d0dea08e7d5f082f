"""Real-time API — typing indicators, channel auth, message fan-out hook.

Learn: The WebSocket carries events server → client. Client → server
signals that need authorization (typing) come in over plain HTTP so
they pass through the same auth + membership checks as everything else.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.auth.dependencies import CurrentUser, get_current_user
from kephale.db.engine import get_db
from kephale.events.types import TYPING_USER
from kephale.realtime.authorizer import (
    ChannelAccessDenied,
    ChannelAuthorizer,
    presence_member_info,
)
from kephale.realtime.broadcaster import Broadcaster, get_broadcaster
from kephale.realtime.channels import CONVERSATION
from kephale.schemas.call import SignalAck
from kephale.schemas.realtime import (
    ChannelAuthRead,
    ChannelAuthRequest,
    FanoutRead,
    NewMessage,
    TypingSignal,
)
from kephale.services.notification_service import NotificationService
from kephale.services.push_service import PushService
from kephale.services.webpush import WebPushSender, get_push_sender

router = APIRouter(prefix="/realtime")


def _get_authorizer(db: AsyncSession = Depends(get_db)) -> ChannelAuthorizer:
    return ChannelAuthorizer(db)


def _get_notifications(
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    sender: WebPushSender = Depends(get_push_sender),
) -> NotificationService:
    return NotificationService(db, broadcaster, PushService(db, sender))


@router.post("/typing", response_model=SignalAck)
async def typing_indicator(
    body: TypingSignal,
    user: CurrentUser = Depends(get_current_user),
    access: ChannelAuthorizer = Depends(_get_authorizer),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Tell a conversation that the current user started/stopped typing."""
    if not await access.is_member(user.user_id, body.conversation_id):
        raise HTTPException(status_code=403, detail="Not a member of this conversation")
    await broadcaster.emit_to_conversation(
        body.conversation_id,
        TYPING_USER,
        {
            "userId": user.user_id,
            "conversationId": body.conversation_id,
            "isTyping": body.is_typing,
        },
    )
    return SignalAck()


@router.post("/auth", response_model=ChannelAuthRead)
async def authorize_channel(
    body: ChannelAuthRequest,
    user: CurrentUser = Depends(get_current_user),
    access: ChannelAuthorizer = Depends(_get_authorizer),
):
    """Check whether the current user may subscribe to a channel."""
    try:
        kind, _ = await access.authorize(user.user_id, body.channel_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChannelAccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))

    channel_data: Optional[dict] = None
    if kind == CONVERSATION:
        channel_data = presence_member_info(user.user_id, user.email)
    return ChannelAuthRead(channel=body.channel_name, channel_data=channel_data)


@router.post("/messages", response_model=FanoutRead)
async def fan_out_message(
    body: NewMessage,
    user: CurrentUser = Depends(get_current_user),
    access: ChannelAuthorizer = Depends(_get_authorizer),
    svc: NotificationService = Depends(_get_notifications),
):
    """Broadcast a just-stored message and notify the other members.

    Called by the messaging API right after it persists a message, with the
    sender's own token.
    """
    if body.sender_id != user.user_id:
        raise HTTPException(status_code=403, detail="Can only fan out your own messages")
    if not await access.is_member(user.user_id, body.conversation_id):
        raise HTTPException(status_code=403, detail="Not a member of this conversation")
    return await svc.notify_new_message(body)
