# portal_notify/models/api/notification_response.py
from datetime import datetime

from pydantic import BaseModel

from portal_notify.models.domain.notification_domain import DeliveryResult
from portal_notify.models.domain.subscription_domain import Subscription


class SubscriptionResponse(BaseModel):
    """A subscription as shown to its owner. The endpoint token is never returned."""

    id: str
    platform: str
    user_agent: str
    status: str
    registered_at: datetime
    last_validated_at: datetime

    @classmethod
    def from_domain(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            platform=subscription.platform,
            user_agent=subscription.user_agent,
            status=subscription.status.value,
            registered_at=subscription.registered_at,
            last_validated_at=subscription.last_validated_at,
        )


class DeliveryResponse(BaseModel):
    notification_id: str
    status: str
    deliver_at: datetime | None = None
    reason: str | None = None
    retry_after: float | None = None

    @classmethod
    def from_result(cls, result: DeliveryResult) -> "DeliveryResponse":
        return cls(
            notification_id=result.notification_id,
            status=result.status.value,
            deliver_at=result.deliver_at,
            reason=result.reason,
            retry_after=result.retry_after,
        )


class BulkDeliveryResponse(BaseModel):
    successful: int
    failed: int
    batches: int
    results: list[DeliveryResponse]


class CancelResponse(BaseModel):
    notification_id: str
    cancelled: bool


class NetworkStateResponse(BaseModel):
    online: bool
    changed: bool
