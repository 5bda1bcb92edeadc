# models/domain/subscription_domain.py
"""
Push subscription domain model.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    STALE = "STALE"
    REVOKED = "REVOKED"


class DeviceInfo(BaseModel):
    """What the client reports about the device registering for push."""

    endpoint_token: str | None = None
    user_agent: str = "Unknown"
    platform: str = "web"
    device_id: str | None = None
    permission: str = "default"  # granted | denied | default


class Subscription(BaseModel):
    id: str = Field(default_factory=lambda: f"sub_{uuid.uuid4().hex[:16]}")
    user_id: str
    endpoint_token: str
    user_agent: str = "Unknown"
    platform: str = "web"
    device_fingerprint: str
    registered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_validated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def device(self) -> DeviceInfo:
        """Rebuild the device description used for renewal."""
        return DeviceInfo(
            user_agent=self.user_agent,
            platform=self.platform,
            permission="granted",
        )
