"""
Delivery Dispatcher - the send pipeline.

    policy + preferences -> AdaptiveScheduler.plan
        future deliver_at          -> ScheduledStore         (SCHEDULED)
        network offline            -> OfflineQueue           (QUEUED_OFFLINE)
        recipient over rate limit  -> OfflineQueue           (RATE_LIMITED)
        send to active devices     -> DELIVERED | QUEUED_OFFLINE

Transient failures never raise out of send(); they are absorbed by the
offline queue. When the caller owns retries (offline drain) it passes
enqueue_on_failure=False and gets SEND_FAILED / RATE_LIMITED back instead.
"""

import asyncio

from portal_notify.infrastructure.observability.logging import get_logger, log_delivery
from portal_notify.models.domain.notification_domain import (
    BulkResult,
    DeliveryRequest,
    DeliveryResult,
    DeliveryStatus,
    InteractionAction,
    InteractionEvent,
    Notification,
    ScheduledEntry,
)
from portal_notify.models.domain.policy_domain import CategoryPolicy
from portal_notify.models.domain.subscription_domain import Subscription
from portal_notify.services.adaptive_scheduler import AdaptiveScheduler
from portal_notify.services.behavior_analytics import BehaviorAnalytics
from portal_notify.services.errors import (
    CategoryDisabled,
    CategoryNotFound,
    SendFailure,
    SubscriptionRenewalFailed,
)
from portal_notify.services.interfaces import PushSender
from portal_notify.services.network_state import NetworkStateSignal
from portal_notify.services.offline_queue import OfflineQueue
from portal_notify.services.policy_store import PolicyStore
from portal_notify.services.rate_limiter import RateLimiter
from portal_notify.services.scheduled_store import ScheduledStore
from portal_notify.services.subscription_manager import SubscriptionManager
from portal_notify.utils.clock import Clock, utc_now

logger = get_logger(__name__)

# push services answer these when an endpoint no longer exists
GONE_STATUS_CODES = frozenset({404, 410})


class DeliveryDispatcher:
    def __init__(
        self,
        policies: PolicyStore,
        scheduler: AdaptiveScheduler,
        analytics: BehaviorAnalytics,
        subscriptions: SubscriptionManager,
        sender: PushSender,
        rate_limiter: RateLimiter,
        scheduled: ScheduledStore,
        offline: OfflineQueue,
        network: NetworkStateSignal,
        batch_size: int = 10,
        inter_batch_delay_ms: int = 100,
        clock: Clock = utc_now,
    ):
        self.policies = policies
        self.scheduler = scheduler
        self.analytics = analytics
        self.subscriptions = subscriptions
        self.sender = sender
        self.rate_limiter = rate_limiter
        self.scheduled = scheduled
        self.offline = offline
        self.network = network
        self.batch_size = batch_size
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self.clock = clock

        self.scheduled.set_handler(self.deliver_scheduled)

    # ------------------------------------------------------------------
    # Single send
    # ------------------------------------------------------------------

    async def send(
        self,
        notification: Notification,
        user_id: str,
        attempt: int = 0,
        enqueue_on_failure: bool = True,
    ) -> DeliveryResult:
        """
        Run one notification through the pipeline.

        Raises:
            CategoryNotFound: The notification's category is not in the catalog
        """
        policy = self.policies.get_category_policy(notification.category)
        preferences = await self.policies.get_user_preferences(user_id)
        now = self.clock()

        try:
            decision = await self.scheduler.plan(notification, user_id, preferences, policy, now)
        except CategoryDisabled as e:
            return self._finish(notification, user_id, DeliveryStatus.DROPPED, reason=e.reason)

        notification = decision.notification

        if decision.deliver_at > now:
            accepted = await self.scheduled.schedule(
                ScheduledEntry(
                    notification=notification,
                    user_id=user_id,
                    deliver_at=decision.deliver_at,
                    attempt=attempt,
                )
            )
            if not accepted:
                return self._finish(notification, user_id, DeliveryStatus.DROPPED, reason="duplicate")
            return self._finish(
                notification,
                user_id,
                DeliveryStatus.SCHEDULED,
                reason=decision.reason,
                deliver_at=decision.deliver_at,
            )

        if not self.network.is_online():
            return await self._defer(
                notification, user_id, "network_offline", attempt, enqueue_on_failure
            )

        allowed, info = await self.rate_limiter.check_rate_limit(user_id)
        if not allowed:
            if enqueue_on_failure:
                await self.offline.enqueue(
                    notification,
                    user_id,
                    reason="rate_limited",
                    attempt=attempt,
                    retry_after=info["retry_after"],
                )
            result = self._finish(notification, user_id, DeliveryStatus.RATE_LIMITED, reason="rate_limited")
            result.retry_after = info["retry_after"]
            return result

        active = await self.subscriptions.active_subscriptions(user_id)
        if not active:
            return self._finish(notification, user_id, DeliveryStatus.NO_SUBSCRIPTION, reason="no_active_subscription")

        await self.analytics.note_sent(user_id)
        if await self._send_to_devices(notification, policy, active):
            await self.analytics.record(
                user_id,
                InteractionEvent(
                    notification_id=notification.id,
                    category=notification.category,
                    action=InteractionAction.DELIVERED,
                    timestamp=self.clock(),
                ),
            )
            return self._finish(notification, user_id, DeliveryStatus.DELIVERED, reason=decision.reason)

        return await self._defer(notification, user_id, "send_failure", attempt + 1, enqueue_on_failure)

    async def _defer(
        self,
        notification: Notification,
        user_id: str,
        reason: str,
        attempt: int,
        enqueue_on_failure: bool,
    ) -> DeliveryResult:
        if not enqueue_on_failure:
            return self._finish(notification, user_id, DeliveryStatus.SEND_FAILED, reason=reason)

        await self.offline.enqueue(notification, user_id, reason=reason, attempt=attempt)
        return self._finish(notification, user_id, DeliveryStatus.QUEUED_OFFLINE, reason=reason)

    async def _send_to_devices(
        self, notification: Notification, policy: CategoryPolicy, subscriptions: list[Subscription]
    ) -> bool:
        """True when at least one device accepted the payload."""
        payload = notification.to_payload(
            requires_interaction=policy.requires_interaction,
            vibration=policy.vibration_pattern,
        )
        payload["sound"] = policy.sound_profile

        delivered = False
        for subscription in subscriptions:
            try:
                if await self.sender.send(subscription, payload):
                    delivered = True
                    continue
                logger.warning(
                    "Push sender rejected notification",
                    notification_id=notification.id,
                    subscription_id=subscription.id,
                )
            except SendFailure as e:
                logger.warning(
                    "Push send failed",
                    notification_id=notification.id,
                    subscription_id=subscription.id,
                    status_code=e.status_code,
                    error=str(e),
                )
                if e.status_code in GONE_STATUS_CODES:
                    await self._revalidate(subscription)
            except Exception as e:
                logger.error(
                    "Unexpected push sender error",
                    notification_id=notification.id,
                    subscription_id=subscription.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return delivered

    async def _revalidate(self, subscription: Subscription) -> None:
        try:
            await self.subscriptions.validate(subscription)
        except SubscriptionRenewalFailed as e:
            logger.warning("Gone subscription could not be renewed", subscription_id=e.subscription_id)
        except Exception as e:
            logger.error("Subscription revalidation failed", subscription_id=subscription.id, error=str(e))

    def _finish(
        self,
        notification: Notification,
        user_id: str,
        status: DeliveryStatus,
        reason: str | None = None,
        deliver_at=None,
    ) -> DeliveryResult:
        log_delivery(
            notification.id,
            user_id,
            notification.category,
            status.value,
            reason=reason,
            deliver_at=deliver_at.isoformat() if deliver_at else None,
        )
        return DeliveryResult(notification.id, status, deliver_at, reason)

    async def deliver_scheduled(self, entry: ScheduledEntry) -> DeliveryResult:
        """Fire-time re-entry; preferences and quiet hours are evaluated again."""
        try:
            return await self.send(entry.notification, entry.user_id, attempt=entry.attempt)
        except CategoryNotFound as e:
            # catalog replaced while the entry waited
            return self._finish(entry.notification, entry.user_id, DeliveryStatus.DROPPED, reason=str(e))

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def _send_request(self, request: DeliveryRequest, enqueue_on_failure: bool) -> DeliveryResult:
        try:
            return await self.send(
                request.notification,
                request.user_id,
                attempt=request.attempt,
                enqueue_on_failure=enqueue_on_failure,
            )
        except CategoryNotFound:
            return self._finish(
                request.notification, request.user_id, DeliveryStatus.DROPPED, reason="unknown_category"
            )

    async def send_bulk(
        self,
        requests: list[DeliveryRequest],
        batch_size: int | None = None,
        inter_batch_delay_ms: int | None = None,
        enqueue_on_failure: bool = True,
    ) -> BulkResult:
        """
        Sequential batches, concurrent within a batch.

        An exception inside one request is reported as that request's
        SEND_FAILED result; it never aborts the batch or later batches.
        """
        batch_size = batch_size or self.batch_size
        delay_ms = self.inter_batch_delay_ms if inter_batch_delay_ms is None else inter_batch_delay_ms
        result = BulkResult()

        for start in range(0, len(requests), batch_size):
            if start:
                await asyncio.sleep(delay_ms / 1000)

            batch = requests[start : start + batch_size]
            outcomes = await asyncio.gather(
                *(self._send_request(r, enqueue_on_failure) for r in batch),
                return_exceptions=True,
            )
            result.batches += 1

            for request, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Bulk send item failed",
                        notification_id=request.notification.id,
                        user_id=request.user_id,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    outcome = DeliveryResult(
                        request.notification.id, DeliveryStatus.SEND_FAILED, reason=str(outcome)
                    )

                result.results.append(outcome)
                if outcome.accepted:
                    result.successful += 1
                else:
                    result.failed += 1

        logger.info(
            "Bulk send finished",
            requests=len(requests),
            batches=result.batches,
            successful=result.successful,
            failed=result.failed,
        )
        return result
