"""Push API — device registration, diagnostics and a test notification."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.auth.dependencies import CurrentUser, get_current_user
from kephale.config import settings
from kephale.db.engine import get_db
from kephale.schemas.call import SignalAck
from kephale.schemas.push import (
    DeviceRead,
    DevicesRead,
    PushStatusRead,
    PushSubscribe,
    PushTestRead,
    VapidKeyRead,
)
from kephale.services.push_service import (
    InvalidSubscriptionError,
    PushService,
    SubscriptionNotFoundError,
)
from kephale.services.webpush import PushNotConfiguredError, WebPushSender, get_push_sender

router = APIRouter(prefix="/push")


def _get_service(
    db: AsyncSession = Depends(get_db),
    sender: WebPushSender = Depends(get_push_sender),
) -> PushService:
    return PushService(db, sender)


@router.get("/vapid-public-key", response_model=VapidKeyRead)
async def vapid_public_key():
    """Application server key the browser needs for PushManager.subscribe()."""
    if not settings.vapid_configured:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return VapidKeyRead(public_key=settings.vapid_public_key)


@router.post("/subscribe", response_model=SignalAck)
async def subscribe(
    body: PushSubscribe,
    user: CurrentUser = Depends(get_current_user),
    svc: PushService = Depends(_get_service),
):
    """Register (or re-assign) this browser for push notifications."""
    try:
        await svc.subscribe(
            user.user_id,
            endpoint=body.subscription.endpoint,
            p256dh=body.subscription.keys.p256dh,
            auth=body.subscription.keys.auth,
            device_name=body.device_name,
        )
    except InvalidSubscriptionError as e:
        # Account deleted since the token was issued
        raise HTTPException(status_code=401, detail=f"{e}. Please sign in again.")
    return SignalAck()


@router.get("/status", response_model=PushStatusRead)
async def push_status(
    user: CurrentUser = Depends(get_current_user),
    svc: PushService = Depends(_get_service),
):
    """Diagnostics: is VAPID configured, how many devices are registered."""
    count = await svc.count(user.user_id)
    message = None
    if not settings.vapid_configured:
        message = "The server has no VAPID keys; notifications cannot be sent."
    elif count == 0:
        message = "No device registered. Enable notifications to receive them."
    return PushStatusRead(
        vapid_configured=settings.vapid_configured,
        subscription_count=count,
        message=message,
    )


@router.get("/subscriptions", response_model=DevicesRead)
async def list_devices(
    user: CurrentUser = Depends(get_current_user),
    svc: PushService = Depends(_get_service),
):
    """Devices registered for the current user, newest first."""
    subs = await svc.list_devices(user.user_id)
    return DevicesRead(devices=[DeviceRead.model_validate(s) for s in subs])


@router.delete("/subscriptions/{subscription_id}", response_model=SignalAck)
async def delete_device(
    subscription_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: PushService = Depends(_get_service),
):
    try:
        await svc.delete_device(user.user_id, subscription_id)
    except SubscriptionNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    return SignalAck()


@router.post("/test", response_model=PushTestRead)
async def send_test(
    user: CurrentUser = Depends(get_current_user),
    svc: PushService = Depends(_get_service),
):
    """Send a test notification to every device of the current user."""
    try:
        results = await svc.send_test(user.user_id, icon=settings.push_icon)
    except PushNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except SubscriptionNotFoundError as e:
        raise HTTPException(
            status_code=404,
            detail=f"{e}. On iOS Safari the app must be installed to the home screen first.",
        )
    return PushTestRead(
        message=f"Push sent to {len(results)} subscription(s)",
        results=[r.as_dict() for r in results],
    )
