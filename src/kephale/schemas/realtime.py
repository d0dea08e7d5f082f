"""Pydantic schemas for presence, typing, channel auth and message fan-out."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from kephale.schemas.call import CamelModel


# ─── Presence ─────────────────────────────────────────────


class PresenceUpdate(BaseModel):
    """Heartbeat body. Empty = still here; offline=true = leaving now."""
    offline: bool = False


class PresenceAck(BaseModel):
    success: bool = True
    online: bool


class PresenceRead(BaseModel):
    presence: dict[str, bool]


# ─── Typing ───────────────────────────────────────────────


class TypingSignal(CamelModel):
    conversation_id: str = Field(..., min_length=1)
    is_typing: bool = False


# ─── Channel auth ─────────────────────────────────────────


class ChannelAuthRequest(CamelModel):
    channel_name: str = Field(..., min_length=1)
    socket_id: Optional[str] = None


class ChannelAuthRead(BaseModel):
    channel: str
    authorized: bool = True
    channel_data: Optional[dict[str, Any]] = None


# ─── Message fan-out ──────────────────────────────────────


class NewMessage(CamelModel):
    """A message the messaging API just persisted."""
    id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    sender_name: str
    content: Optional[str] = None
    created_at: Optional[str] = None


class FanoutRead(CamelModel):
    channel_published: bool
    notified_users: int
    push_sent: int
