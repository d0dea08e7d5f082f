"""Channel authorization — who may listen to which channel.

Learn: A user channel (private-user-{id}) carries calls and notifications,
so only its owner may subscribe. A conversation channel carries messages
and typing indicators, so only conversation members may subscribe.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.db.models import ConversationMember, parse_uuid
from kephale.realtime.channels import CONVERSATION, USER, parse_channel


class ChannelAccessDenied(Exception):
    """Raised when a user may not subscribe to a channel."""


class ChannelAuthorizer:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_member(self, user_id: str, conversation_id: str) -> bool:
        uid = parse_uuid(user_id)
        cid = parse_uuid(conversation_id)
        if uid is None or cid is None:
            return False
        result = await self.db.execute(
            select(ConversationMember.id).where(
                ConversationMember.conversation_id == cid,
                ConversationMember.user_id == uid,
            )
        )
        return result.first() is not None

    async def authorize(self, user_id: str, channel: str) -> tuple[str, str]:
        """Check a subscription request.

        Returns (kind, id) of the channel. Raises ValueError for an
        unknown channel name and ChannelAccessDenied when not allowed.
        """
        kind, ident = parse_channel(channel)
        if kind == USER and ident != user_id:
            raise ChannelAccessDenied("Cannot subscribe to another user's channel")
        if kind == CONVERSATION and not await self.is_member(user_id, ident):
            raise ChannelAccessDenied("Not a member of this conversation")
        return kind, ident


def presence_member_info(user_id: str, email: Optional[str]) -> dict:
    """Member payload announced on conversation channels."""
    return {"user_id": user_id, "user_info": {"email": email or ""}}
