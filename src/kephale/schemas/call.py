"""Pydantic schemas for call signaling and call state.

Learn: The web client speaks camelCase (callerId, conversationId), so
every model here uses a camelCase alias generator while Python code
keeps snake_case. populate_by_name lets tests and services use either.

The signal endpoint takes one body whose "event" field picks the shape:
a discriminated union, so a call:answer without an answer is rejected
by validation before any handler runs.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Stored state (Redis) ────────────────────────────────


class CallState(CamelModel):
    """A user's active call."""
    conversation_id: Optional[str] = None
    with_user_id: str
    started_at: int  # epoch ms


class ActiveCall(CallState):
    """Active call enriched with the other party's display name."""
    with_user_name: str


class PendingCall(CamelModel):
    """Incoming call waiting in the recipient's single-slot mailbox."""
    caller_id: str
    caller_name: str
    offer: Any
    conversation_id: str


class CallStatusRead(CamelModel):
    active_call: Optional[ActiveCall] = None
    pending_call: Optional[PendingCall] = None


# ─── Signals (client → platform) ─────────────────────────


class CallInvite(CamelModel):
    """Caller offers a call to a recipient."""
    event: Literal["call:invite"]
    recipient_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    offer: dict[str, Any] = Field(..., min_length=1, description="WebRTC SDP offer")


class CallAnswer(CamelModel):
    """Recipient accepts; the SDP answer goes back to the caller."""
    event: Literal["call:answer"]
    caller_id: str = Field(..., min_length=1)
    answer: dict[str, Any] = Field(..., min_length=1, description="WebRTC SDP answer")
    conversation_id: Optional[str] = Field(
        None, description="Used when the invite is no longer in the mailbox"
    )


class CallReject(CamelModel):
    event: Literal["call:reject"]
    caller_id: str = Field(..., min_length=1)


class CallEnd(CamelModel):
    """Either party hangs up (or the caller cancels before an answer)."""
    event: Literal["call:end"]
    target_user_id: str = Field(..., min_length=1)


class CallIceCandidate(CamelModel):
    event: Literal["call:ice-candidate"]
    target_user_id: str = Field(..., min_length=1)
    candidate: dict[str, Any] = Field(..., min_length=1)


class CallSignal(RootModel[Annotated[
    Union[CallInvite, CallAnswer, CallReject, CallEnd, CallIceCandidate],
    Field(discriminator="event"),
]]):
    """Any call signal; the "event" field picks the shape."""


class SignalAck(BaseModel):
    success: bool = True
