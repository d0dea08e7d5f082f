"""WebSocket endpoint — real-time event delivery to clients.

Learn: Each client connects to /ws?token=JWT. The handler:
1. Authenticates via JWT query param (closes with 4001 without one)
2. Subscribes to the caller's own private-user channel
3. Accepts subscribe/unsubscribe/ping messages from the client
4. Forwards every Redis message on subscribed channels to the client

One connection per browser tab. A ping doubles as a presence heartbeat,
so a tab with an open socket never needs the HTTP heartbeat.
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError
from starlette.websockets import WebSocketState

from kephale.auth.dependencies import CurrentUser
from kephale.auth.jwt import TokenError
from kephale.db.engine import session_scope
from kephale.realtime.authorizer import ChannelAccessDenied, ChannelAuthorizer
from kephale.realtime.channels import redis_topic, user_channel
from kephale.realtime.redis import get_redis_optional
from kephale.services.presence_service import PresenceService

logger = structlog.get_logger()
router = APIRouter()

Authorize = Callable[[str, str], Awaitable[object]]


async def _authorize_with_db(user_id: str, channel: str) -> object:
    async with session_scope() as db:
        return await ChannelAuthorizer(db).authorize(user_id, channel)


class ChannelSubscriptions:
    """The set of channels one connection listens to.

    Learn: Kept separate from the socket loop so the subscribe/ping
    protocol can be exercised without a live WebSocket.
    """

    def __init__(
        self,
        user: CurrentUser,
        pubsub,
        presence: PresenceService,
        authorize: Authorize = _authorize_with_db,
    ):
        self.user = user
        self.pubsub = pubsub
        self.presence = presence
        self.authorize = authorize
        self.channels: set[str] = set()

    async def add(self, channel: str) -> None:
        if channel in self.channels:
            return
        await self.pubsub.subscribe(redis_topic(channel))
        self.channels.add(channel)

    async def remove(self, channel: str) -> None:
        if channel not in self.channels:
            return
        await self.pubsub.unsubscribe(redis_topic(channel))
        self.channels.discard(channel)

    async def handle(self, raw: str) -> Optional[dict]:
        """Process one client message; returns the reply to send, if any."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": "error", "reason": "invalid_json"}
        if not isinstance(msg, dict):
            return {"type": "error", "reason": "invalid_message"}

        kind = msg.get("type")
        channel = msg.get("channel")

        if kind == "ping":
            await self.presence.heartbeat(self.user.user_id)
            return {"type": "pong"}

        if kind == "subscribe":
            if not isinstance(channel, str):
                return {"type": "subscription_error", "channel": channel, "reason": "missing_channel"}
            try:
                await self.authorize(self.user.user_id, channel)
            except ValueError:
                return {"type": "subscription_error", "channel": channel, "reason": "unknown_channel"}
            except ChannelAccessDenied:
                return {"type": "subscription_error", "channel": channel, "reason": "forbidden"}
            await self.add(channel)
            return {"type": "subscription_succeeded", "channel": channel}

        if kind == "unsubscribe":
            if isinstance(channel, str):
                await self.remove(channel)
            return {"type": "unsubscribed", "channel": channel}

        return {"type": "error", "reason": f"unknown_type:{kind}"}


@router.websocket("/ws")
async def realtime_websocket(websocket: WebSocket):
    """WebSocket endpoint for user and conversation events.

    Learn: Two concurrent tasks run:
    1. Redis listener — reads from pub/sub, sends to WebSocket
    2. Client listener — handles subscribe/unsubscribe/ping

    When either side finishes, the other is cancelled and every
    subscription of this connection is dropped.
    """
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")

    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        user = CurrentUser.from_token(token)
    except TokenError:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    redis: Optional[aioredis.Redis] = get_redis_optional()
    if redis is None:
        await websocket.close(code=1013, reason="Real-time service unavailable")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    log = logger.bind(user_id=user.user_id)

    pubsub = redis.pubsub()
    presence = PresenceService(redis)
    subs = ChannelSubscriptions(user, pubsub, presence)
    await subs.add(user_channel(user.user_id))
    await presence.heartbeat(user.user_id)
    log.info("ws.connected")

    async def redis_listener():
        """Forward Redis messages to the WebSocket client."""
        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is not None and message["type"] == "message":
                await websocket.send_text(message["data"])

    async def client_listener():
        """Handle incoming client protocol messages."""
        try:
            while True:
                reply = await subs.handle(await websocket.receive_text())
                if reply is not None:
                    await websocket.send_text(json.dumps(reply))
        except WebSocketDisconnect:
            pass

    redis_task = asyncio.create_task(redis_listener())
    client_task = asyncio.create_task(client_listener())

    try:
        done, pending = await asyncio.wait(
            [redis_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                log.warning("ws.listener_failed", error=str(task.exception()))
    finally:
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except RedisError as e:
            log.warning("ws.cleanup_failed", error=str(e))
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
        log.info("ws.disconnected", channels=len(subs.channels))
