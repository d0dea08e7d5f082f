"""Push subscription registry + delivery fan-out.

Learn: One PushSubscription row per browser install. A user with the app
on a phone and a laptop has two rows, and every notification goes to both.

Delivery is best-effort: each device is tried independently, failures are
reported per device, and subscriptions the push service says are gone
(404/410) are deleted so we stop paying for dead endpoints.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kephale.db.models import PushSubscription, User, parse_uuid
from kephale.services.webpush import (
    GONE_STATUSES,
    PushDeliveryError,
    PushNotConfiguredError,
    PushTarget,
    WebPushSender,
)

logger = structlog.get_logger()

# The test endpoint also prunes 400s: a malformed subscription can
# only be fixed by the browser re-subscribing.
TEST_PRUNE_STATUSES = GONE_STATUSES | {400}


class SubscriptionNotFoundError(Exception):
    """Raised when a device doesn't exist or isn't the caller's."""


class InvalidSubscriptionError(Exception):
    """Raised when a subscription can't be registered."""


@dataclass
class DeliveryResult:
    subscription_id: uuid.UUID
    endpoint: str
    status: str  # sent, failed
    error: Optional[str] = None
    status_code: Optional[int] = None
    pruned: bool = False

    @property
    def needs_resubscribe(self) -> bool:
        return self.status_code == 400

    def as_dict(self) -> dict[str, Any]:
        preview = self.endpoint[:50] + "..." if len(self.endpoint) > 50 else self.endpoint
        out: dict[str, Any] = {"endpoint": preview, "status": self.status}
        if self.status == "failed":
            out["error"] = self.status_code or self.error
            out["needsResubscribe"] = self.needs_resubscribe
        return out


class PushService:
    """Registers devices and delivers notifications to them."""

    def __init__(self, db: AsyncSession, sender: WebPushSender):
        self.db = db
        self.sender = sender

    # ─── Registry ─────────────────────────────────────────

    async def subscribe(
        self,
        user_id: str,
        *,
        endpoint: str,
        p256dh: str,
        auth: str,
        device_name: Optional[str] = None,
    ) -> PushSubscription:
        """Register a device for a user.

        Learn: endpoint is unique across all users. If the device is already
        registered to someone else (shared browser, new login), it moves to
        the current user with the fresh keys.
        """
        uid = parse_uuid(user_id)
        if uid is None or await self.db.get(User, uid) is None:
            raise InvalidSubscriptionError("User not found")

        device_name = (device_name or "").strip() or None

        result = await self.db.execute(
            select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        )
        sub = result.scalars().first()

        if sub is not None and sub.user_id == uid:
            return sub

        if sub is None:
            sub = PushSubscription(
                user_id=uid,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                device_name=device_name,
            )
            self.db.add(sub)
        else:
            logger.info("push.subscription_reassigned", previous_user_id=str(sub.user_id))
            sub.user_id = uid
            sub.p256dh = p256dh
            sub.auth = auth
            sub.device_name = device_name

        await self.db.commit()
        await self.db.refresh(sub)
        return sub

    async def list_devices(self, user_id: str) -> list[PushSubscription]:
        uid = parse_uuid(user_id)
        if uid is None:
            return []
        result = await self.db.execute(
            select(PushSubscription)
            .where(PushSubscription.user_id == uid)
            .order_by(PushSubscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def count(self, user_id: str) -> int:
        uid = parse_uuid(user_id)
        if uid is None:
            return 0
        result = await self.db.execute(
            select(func.count())
            .select_from(PushSubscription)
            .where(PushSubscription.user_id == uid)
        )
        return result.scalar_one()

    async def delete_device(self, user_id: str, subscription_id: str) -> None:
        """Remove one of the caller's own devices."""
        uid = parse_uuid(user_id)
        sid = parse_uuid(subscription_id)
        sub = await self.db.get(PushSubscription, sid) if sid else None
        if sub is None or sub.user_id != uid:
            raise SubscriptionNotFoundError(f"Device {subscription_id} not found")
        await self.db.delete(sub)
        await self.db.commit()

    async def list_all(self, limit: int = 200) -> list[PushSubscription]:
        """Every registered device, newest first (admin view)."""
        result = await self.db.execute(
            select(PushSubscription)
            .order_by(PushSubscription.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ─── Delivery ─────────────────────────────────────────

    async def send_to_user(
        self,
        user_id: str,
        payload: str | dict[str, Any],
        *,
        prune_statuses: frozenset[int] = GONE_STATUSES,
    ) -> list[DeliveryResult]:
        """Send a payload to every device of a user.

        Devices are tried concurrently; one failing device never blocks
        the others. Returns one DeliveryResult per device.
        """
        if not self.sender.configured:
            logger.warning("push.skipped", user_id=user_id, reason="vapid_not_configured")
            return []

        subs = await self.list_devices(user_id)
        if not subs:
            return []

        results = await asyncio.gather(*(self._deliver(sub, payload) for sub in subs))

        dead = [r for r in results if r.status_code in prune_statuses]
        if dead:
            await self.db.execute(
                delete(PushSubscription).where(
                    PushSubscription.id.in_([r.subscription_id for r in dead])
                )
            )
            await self.db.commit()
            for r in dead:
                r.pruned = True
            logger.info("push.subscription_pruned", user_id=user_id, count=len(dead))

        return list(results)

    async def _deliver(
        self, sub: PushSubscription, payload: str | dict[str, Any]
    ) -> DeliveryResult:
        target = PushTarget(endpoint=sub.endpoint, p256dh=sub.p256dh, auth=sub.auth)
        try:
            await self.sender.send(target, payload)
        except PushDeliveryError as e:
            log = logger.info if e.is_gone else logger.warning
            log(
                "push.delivery_failed",
                subscription_id=str(sub.id),
                status_code=e.status_code,
                gone=e.is_gone,
                error=str(e),
            )
            return DeliveryResult(
                subscription_id=sub.id,
                endpoint=sub.endpoint,
                status="failed",
                error=str(e),
                status_code=e.status_code,
            )
        return DeliveryResult(subscription_id=sub.id, endpoint=sub.endpoint, status="sent")

    async def send_test(self, user_id: str, icon: str, now: Optional[datetime] = None) -> list[DeliveryResult]:
        """Send a test notification to all of the caller's devices."""
        if not self.sender.configured:
            raise PushNotConfiguredError("VAPID keys are not configured")
        if await self.count(user_id) == 0:
            raise SubscriptionNotFoundError("No push subscription for this user")

        now = now or datetime.now()
        payload = {
            "title": "Test Notification",
            "body": f"Les notifications fonctionnent! {now.strftime('%H:%M:%S')}",
            "icon": icon,
            "url": "/chat",
            "type": "message",
            "data": {"conversationId": "test"},
        }
        return await self.send_to_user(user_id, payload, prune_statuses=TEST_PRUNE_STATUSES)
