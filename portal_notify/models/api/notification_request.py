# portal_notify/models/api/notification_request.py
from typing import Any, Literal

from pydantic import BaseModel, Field


class SubscribeRequest(BaseModel):
    """Request body for registering a device for push."""

    endpoint_token: str | None = Field(None, description="Endpoint obtained by the client, if any")
    user_agent: str = Field("Unknown", max_length=512)
    platform: str = Field("web", max_length=32)
    device_id: str | None = Field(None, max_length=128)
    permission: Literal["granted", "denied", "default"] = "default"


class NotifyRequest(BaseModel):
    category: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., max_length=2000)
    data: dict[str, Any] = Field(default_factory=dict)


class BulkNotifyRequest(NotifyRequest):
    """Admin broadcast of one notification to many users."""

    user_ids: list[str] = Field(..., min_length=1, max_length=5000)


class InteractionRequest(BaseModel):
    notification_id: str
    category: str
    action: Literal["opened", "acted", "dismissed"]
    response_time_ms: int | None = Field(None, ge=0)


class MuteRequest(BaseModel):
    minutes: int = Field(60, ge=1, le=7 * 24 * 60)


class RemindLaterRequest(BaseModel):
    notification_id: str
    category: str
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field("", max_length=2000)
    minutes: int = Field(15, ge=1, le=24 * 60)


class NetworkStateRequest(BaseModel):
    online: bool
