"""
Notification service exceptions.

Permission and subscription errors are raised to callers because they need
user action. Transient send failures never leave the dispatcher; they are
absorbed by the offline queue.
"""


class NotificationError(Exception):
    """Base exception for notification operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class PermissionDenied(NotificationError):
    """The platform declined the push permission request."""

    def __init__(self, message: str = "Notification permission was not granted"):
        super().__init__(message, operation="subscribe", recoverable=False)


class AlreadySubscribed(NotificationError):
    """An ACTIVE subscription already exists for this device."""

    def __init__(self, subscription_id: str):
        super().__init__(
            f"Device already has an active subscription: {subscription_id}",
            operation="subscribe",
            recoverable=False,
        )
        self.subscription_id = subscription_id


class SubscriptionNotFound(NotificationError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription not found: {subscription_id}", operation="lookup")
        self.subscription_id = subscription_id


class SubscriptionRenewalFailed(NotificationError):
    """Renewal attempts were exhausted; the subscription is now REVOKED."""

    def __init__(self, subscription_id: str, attempts: int):
        super().__init__(
            f"Subscription {subscription_id} could not be renewed after {attempts} attempts",
            operation="renew",
            recoverable=False,
        )
        self.subscription_id = subscription_id
        self.attempts = attempts


class CategoryNotFound(NotificationError):
    def __init__(self, category_id: str):
        super().__init__(f"Unknown notification category: {category_id}", operation="policy")
        self.category_id = category_id


class CategoryDisabled(NotificationError):
    """Not a failure: the notification is dropped and logged."""

    def __init__(self, category_id: str, reason: str = "category_disabled"):
        super().__init__(f"Category {category_id} is disabled ({reason})", operation="schedule")
        self.category_id = category_id
        self.reason = reason


class SendFailure(NotificationError):
    """Transient sender or network failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, operation="send", recoverable=True)
        self.status_code = status_code


class PermanentlyFailed(NotificationError):
    """An offline entry exhausted its retry budget."""

    def __init__(self, notification_id: str, attempts: int):
        super().__init__(
            f"Notification {notification_id} failed permanently after {attempts} attempts",
            operation="offline_retry",
            recoverable=False,
        )
        self.notification_id = notification_id
        self.attempts = attempts
