"""Pydantic schemas for push subscriptions.

Learn: The subscribe body is exactly what the browser's
PushManager.subscribe() returns (subscription.toJSON()), plus an
optional human-readable device name for the devices list.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from kephale.schemas.call import CamelModel


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class BrowserSubscription(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys
    expiration_time: Optional[float] = Field(None, alias="expirationTime")


class PushSubscribe(CamelModel):
    subscription: BrowserSubscription
    device_name: Optional[str] = Field(None, max_length=200)


class DeviceRead(CamelModel):
    id: uuid.UUID
    endpoint: str
    device_name: Optional[str]
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


class AdminDeviceRead(DeviceRead):
    user_id: uuid.UUID


class DevicesRead(BaseModel):
    devices: list[DeviceRead]


class PushStatusRead(CamelModel):
    vapid_configured: bool
    subscription_count: int
    message: Optional[str] = None


class PushTestRead(BaseModel):
    message: str
    results: list[dict[str, Any]]


class VapidKeyRead(CamelModel):
    public_key: str
