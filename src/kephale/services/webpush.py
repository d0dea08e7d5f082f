"""Web Push delivery — VAPID-signed notifications to browser endpoints.

Learn: pywebpush encrypts the payload for the subscription's p256dh/auth
keys, signs a VAPID JWT with our private key, and POSTs to the push
service (FCM, Mozilla autopush, Apple). It is a blocking requests-based
call, so it runs in a worker thread to keep the event loop free.

The push service's status code tells us what to do with the subscription:
404/410 mean the browser unsubscribed and the row should be deleted.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import requests
import structlog
from pywebpush import WebPushException, webpush

from kephale.config import settings, vapid_keys_present

logger = structlog.get_logger()

GONE_STATUSES = frozenset({404, 410})


class PushNotConfiguredError(Exception):
    """Raised when VAPID keys are missing."""


class PushDeliveryError(Exception):
    """The push service refused a notification."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_gone(self) -> bool:
        """The subscription no longer exists on the push service."""
        return self.status_code in GONE_STATUSES


@dataclass
class PushTarget:
    """Where to deliver: a subscription endpoint and its encryption keys."""
    endpoint: str
    p256dh: str
    auth: str

    def subscription_info(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }


class WebPushSender:
    """Sends one notification to one device."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        subject: Optional[str] = None,
        ttl: Optional[int] = None,
        urgency: Optional[str] = None,
        public_key: Optional[str] = None,
    ):
        self.public_key = public_key if public_key is not None else settings.vapid_public_key
        self.private_key = private_key if private_key is not None else settings.vapid_private_key
        self.subject = subject or settings.vapid_subject
        self.ttl = ttl or settings.push_ttl_seconds
        self.urgency = urgency or settings.push_urgency

    @property
    def configured(self) -> bool:
        return vapid_keys_present(self.public_key, self.private_key)

    async def send(self, target: PushTarget, payload: str | dict[str, Any]) -> None:
        """Deliver a payload. Raises PushDeliveryError on refusal."""
        if not self.configured:
            raise PushNotConfiguredError("VAPID keys are not configured")
        data = payload if isinstance(payload, str) else json.dumps(payload)
        await asyncio.to_thread(self._send_blocking, target, data)

    def _send_blocking(self, target: PushTarget, data: str) -> None:
        try:
            webpush(
                subscription_info=target.subscription_info(),
                data=data,
                vapid_private_key=self.private_key,
                # pywebpush adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self.subject},
                ttl=self.ttl,
                headers={"Urgency": self.urgency},
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            raise PushDeliveryError(str(e), status_code=status) from e
        except requests.RequestException as e:
            # Push service unreachable or timed out
            raise PushDeliveryError(f"Push transport error: {e}") from e
        except ValueError as e:
            # Undecodable subscription keys or VAPID key
            raise PushDeliveryError(f"Invalid push keys: {e}") from e


def get_push_sender() -> WebPushSender:
    """FastAPI dependency."""
    return WebPushSender()
