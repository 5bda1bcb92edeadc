# models/domain/notification_domain.py
"""
Notification delivery domain models.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from portal_notify.models.domain.policy_domain import Priority


def generate_notification_id() -> str:
    """Timestamp plus random suffix, e.g. notif_1760680000000_3f9a1c2b7."""
    return f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class Notification(BaseModel):
    """Immutable once created; adjustments produce a copy."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_notification_id)
    category: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self, requires_interaction: bool = False, vibration: list[int] | None = None) -> dict:
        """Payload handed to the push sender."""
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "tag": self.id,
            "category": self.category,
            "priority": self.priority.value,
            "requireInteraction": requires_interaction,
            "vibrate": vibration or [],
            "data": {
                **self.data,
                "category": self.category,
                "timestamp": self.created_at.isoformat(),
            },
        }


class InteractionAction(str, Enum):
    DELIVERED = "delivered"
    OPENED = "opened"
    ACTED = "acted"
    DISMISSED = "dismissed"


class InteractionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    notification_id: str
    category: str
    action: InteractionAction
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    response_time_ms: int | None = None


class ScheduledEntry(BaseModel):
    notification: Notification
    user_id: str
    deliver_at: datetime
    attempt: int = 0


class OfflineEntry(BaseModel):
    notification: Notification
    user_id: str
    attempt: int = 0
    reason: str = "send_failure"
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    next_attempt_at: datetime | None = None


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SCHEDULED = "scheduled"
    QUEUED_OFFLINE = "queued_offline"
    RATE_LIMITED = "rate_limited"
    DROPPED = "dropped"
    NO_SUBSCRIPTION = "no_subscription"
    # only returned when the caller owns retries (offline queue drain)
    SEND_FAILED = "send_failed"


ACCEPTED_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.SCHEDULED})


@dataclass(slots=True)
class DeliveryResult:
    notification_id: str
    status: DeliveryStatus
    deliver_at: datetime | None = None
    reason: str | None = None
    # seconds until a rate-limited recipient frees a slot
    retry_after: float | None = None

    @property
    def accepted(self) -> bool:
        return self.status in ACCEPTED_STATUSES

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "status": self.status.value,
            "deliver_at": self.deliver_at.isoformat() if self.deliver_at else None,
            "reason": self.reason,
            "retry_after": self.retry_after,
        }


@dataclass(slots=True)
class DeliveryRequest:
    notification: Notification
    user_id: str
    attempt: int = 0


@dataclass(slots=True)
class BulkResult:
    successful: int = 0
    failed: int = 0
    batches: int = 0
    results: list[DeliveryResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "batches": self.batches,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class EngagementMetrics:
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    acted: int = 0
    dismissed: int = 0
    engagement_score: float = 0.5

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "delivered": self.delivered,
            "opened": self.opened,
            "acted": self.acted,
            "dismissed": self.dismissed,
            "engagement_score": round(self.engagement_score, 4),
        }
