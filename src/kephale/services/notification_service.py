"""New-message fan-out — live broadcast, in-app notification, Web Push.

Learn: After the messaging API stores a message it hands it here. Three
audiences, three transports:
1. Clients with the conversation open → message:new on the conversation channel
2. Members elsewhere in the app → Notification row + notification:new on their user channel
3. Members with the app closed → Web Push to each of their devices

Each step is independent: a failed publish doesn't stop the notifications,
a failed push doesn't stop the next member.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.config import settings
from kephale.db.models import ConversationMember, Notification, parse_uuid
from kephale.events.types import MESSAGE_NEW, NOTIFICATION_NEW
from kephale.realtime.broadcaster import Broadcaster
from kephale.schemas.realtime import FanoutRead, NewMessage
from kephale.services.push_service import PushService

logger = structlog.get_logger()

PREVIEW_LENGTH = 50
ATTACHMENT_PREVIEW = "Pièce jointe"


def message_preview(content: Optional[str]) -> str:
    if not content:
        return ATTACHMENT_PREVIEW
    if len(content) > PREVIEW_LENGTH:
        return content[:PREVIEW_LENGTH] + "..."
    return content


class NotificationService:
    def __init__(self, db: AsyncSession, broadcaster: Broadcaster, push: PushService):
        self.db = db
        self.broadcaster = broadcaster
        self.push = push

    async def recipients(self, conversation_id: str, sender_id: str) -> list[str]:
        """Member ids of a conversation, sender excluded."""
        cid = parse_uuid(conversation_id)
        if cid is None:
            return []
        q = select(ConversationMember.user_id).where(
            ConversationMember.conversation_id == cid
        )
        sid = parse_uuid(sender_id)
        if sid is not None:
            q = q.where(ConversationMember.user_id != sid)
        result = await self.db.execute(q)
        return [str(uid) for uid in result.scalars().all()]

    async def notify_new_message(self, message: NewMessage) -> FanoutRead:
        log = logger.bind(message_id=message.id, conversation_id=message.conversation_id)
        payload = message.model_dump(by_alias=True)

        published = await self.broadcaster.emit_to_conversation(
            message.conversation_id,
            MESSAGE_NEW,
            {"conversationId": message.conversation_id, "message": payload},
        )

        recipients = await self.recipients(message.conversation_id, message.sender_id)
        title = f"Nouveau message de {message.sender_name}"

        notifications = []
        for user_id in recipients:
            notification = Notification(user_id=parse_uuid(user_id), content=title)
            self.db.add(notification)
            notifications.append((user_id, notification))
        await self.db.commit()

        push_sent = 0
        for user_id, notification in notifications:
            await self.broadcaster.emit_to_user(
                user_id,
                NOTIFICATION_NEW,
                {
                    "id": str(notification.id),
                    "content": title,
                    "messageId": message.id,
                    "conversationId": message.conversation_id,
                    "senderName": message.sender_name,
                    "createdAt": notification.created_at,
                },
            )
            results = await self.push.send_to_user(
                user_id,
                {
                    "title": title,
                    "body": message_preview(message.content),
                    "icon": settings.push_icon,
                    "url": f"/chat/discussion/{message.conversation_id}",
                    "data": {
                        "conversationId": message.conversation_id,
                        "messageId": message.id,
                    },
                },
            )
            push_sent += sum(1 for r in results if r.status == "sent")

        log.info("message.fanned_out", recipients=len(recipients), push_sent=push_sent)
        return FanoutRead(
            channel_published=bool(published),
            notified_users=len(recipients),
            push_sent=push_sent,
        )
