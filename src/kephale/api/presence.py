"""Presence API — heartbeat in, online map out.

Learn: Open clients POST /presence every ~30s (half the TTL) so a
single dropped request doesn't flicker them offline. Lists and chat
headers GET /presence?userIds=a,b,c to render the green dots.
"""

from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, Query

from kephale.auth.dependencies import CurrentUser, get_current_user
from kephale.config import settings
from kephale.realtime.redis import get_redis_optional
from kephale.schemas.realtime import PresenceAck, PresenceRead, PresenceUpdate
from kephale.services.presence_service import PresenceService

router = APIRouter()


def get_presence_service(
    redis: Optional[aioredis.Redis] = Depends(get_redis_optional),
) -> PresenceService:
    return PresenceService(redis)


def parse_user_ids(raw: str, limit: int) -> list[str]:
    """Split a comma list: trimmed, blanks dropped, de-duplicated, capped."""
    ids = dict.fromkeys(part.strip() for part in raw.split(","))
    ids.pop("", None)
    return list(ids)[:limit]


@router.post("/presence", response_model=PresenceAck)
async def heartbeat(
    body: Optional[PresenceUpdate] = None,
    user: CurrentUser = Depends(get_current_user),
    svc: PresenceService = Depends(get_presence_service),
):
    """Heartbeat (mark online) or, with offline=true, mark offline now."""
    if body is not None and body.offline:
        await svc.set_offline(user.user_id)
        return PresenceAck(online=False)
    return PresenceAck(online=await svc.heartbeat(user.user_id))


@router.get("/presence", response_model=PresenceRead)
async def get_presence(
    user_ids: Optional[str] = Query(
        None, alias="userIds", description="Comma-separated user ids"
    ),
    svc: PresenceService = Depends(get_presence_service),
):
    """Online status for up to presence_query_limit users."""
    if user_ids is None:
        raise HTTPException(status_code=400, detail="userIds is required (e.g. ?userIds=id1,id2)")
    ids = parse_user_ids(user_ids, settings.presence_query_limit)
    return PresenceRead(presence=await svc.get_online(ids))
