"""Admin API — real-time health at a glance.

Learn: Mounted with require_admin, so every route here is ADMIN or
SUPER_ADMIN only.
"""

from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.config import settings
from kephale.db.engine import get_db
from kephale.realtime.redis import get_redis_optional
from kephale.schemas.push import AdminDeviceRead
from kephale.services.presence_service import PresenceService
from kephale.services.push_service import PushService
from kephale.services.webpush import WebPushSender, get_push_sender

router = APIRouter(prefix="/admin")


@router.get("/realtime")
async def realtime_overview(
    redis: Optional[aioredis.Redis] = Depends(get_redis_optional),
):
    """Redis availability, users online now, push readiness."""
    presence = PresenceService(redis)
    return {
        "redisAvailable": presence.available,
        "onlineUsers": await presence.count_online(),
        "vapidConfigured": settings.vapid_configured,
    }


@router.get("/push-subscriptions", response_model=list[AdminDeviceRead])
async def all_push_subscriptions(
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    sender: WebPushSender = Depends(get_push_sender),
):
    """Every registered device with its owner, newest first."""
    return await PushService(db, sender).list_all(limit=limit)
