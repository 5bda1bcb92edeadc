"""
Notification service facade.

Owns one instance of every component, wired once by
build_notification_service() during application startup. Routes and jobs
talk to this class only.

Background tasks started by start():
- the scheduled store loop
- a watcher that drains the offline queue on every offline->online change
- a periodic drain while online
- an optional push gateway probe that feeds the network signal
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from portal_notify.config import Settings
from portal_notify.infrastructure.observability.logging import get_logger
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
from portal_notify.models.domain.policy_domain import UserPreferences, UserPreferencesUpdate
from portal_notify.models.domain.subscription_domain import DeviceInfo, Subscription
from portal_notify.security.encryption import encryption_enabled
from portal_notify.services.adaptive_scheduler import AdaptiveScheduler, resolve_timezone
from portal_notify.services.behavior_analytics import BehaviorAnalytics
from portal_notify.services.delivery_dispatcher import DeliveryDispatcher
from portal_notify.services.interfaces import KeyValueStore, PushPlatform, PushSender
from portal_notify.services.network_state import NetworkStateSignal
from portal_notify.services.offline_queue import DrainReport, OfflineQueue
from portal_notify.services.policy_store import PolicyStore
from portal_notify.services.rate_limiter import RateLimiter
from portal_notify.services.scheduled_store import ScheduledStore
from portal_notify.services.subscription_manager import SubscriptionManager
from portal_notify.utils.clock import Clock, utc_now

logger = get_logger(__name__)

NetworkProbe = Callable[[], Awaitable[bool]]


class NotificationService:
    def __init__(
        self,
        policies: PolicyStore,
        subscriptions: SubscriptionManager,
        analytics: BehaviorAnalytics,
        dispatcher: DeliveryDispatcher,
        scheduled: ScheduledStore,
        offline: OfflineQueue,
        network: NetworkStateSignal,
        drain_max_entries: int | None = None,
        drain_interval_seconds: float = 60.0,
        probe: NetworkProbe | None = None,
        probe_interval_seconds: float = 30.0,
        clock: Clock = utc_now,
    ):
        self.policies = policies
        self.subscriptions = subscriptions
        self.analytics = analytics
        self.dispatcher = dispatcher
        self.scheduled = scheduled
        self.offline = offline
        self.network = network
        self.drain_max_entries = drain_max_entries
        self.drain_interval_seconds = drain_interval_seconds
        self.probe = probe
        self.probe_interval_seconds = probe_interval_seconds
        self.clock = clock
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.scheduled.start()
        self._tasks = [
            asyncio.create_task(self._watch_network(), name="offline-drain-on-online"),
            asyncio.create_task(self._periodic_drain(), name="offline-drain-periodic"),
        ]
        if self.probe is not None:
            self._tasks.append(asyncio.create_task(self._probe_network(), name="network-probe"))
        logger.info("Notification service started", background_tasks=len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        await self.scheduled.stop()
        logger.info("Notification service stopped")

    async def _watch_network(self) -> None:
        async for online in self.network.transitions():
            if online:
                await self._drain_logged("online")

    async def _periodic_drain(self) -> None:
        while True:
            await asyncio.sleep(self.drain_interval_seconds)
            if self.network.is_online():
                await self._drain_logged("periodic")

    async def _probe_network(self) -> None:
        while True:
            try:
                reachable = await self.probe()
            except Exception as e:
                logger.warning("Network probe errored", error=str(e))
                reachable = False
            self.network.set_online(reachable, source="gateway_probe")
            await asyncio.sleep(self.probe_interval_seconds)

    async def _drain_logged(self, trigger: str) -> None:
        try:
            await self.drain_offline()
        except Exception as e:
            logger.error("Offline drain failed", trigger=trigger, error=str(e), error_type=type(e).__name__)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str, device: DeviceInfo) -> Subscription:
        return await self.subscriptions.subscribe(user_id, device)

    async def unsubscribe(self, user_id: str, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get_subscription(user_id, subscription_id)
        return await self.subscriptions.unsubscribe(subscription)

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self.subscriptions.list_subscriptions(user_id)

    async def subscription_stats(self) -> dict:
        return await self.subscriptions.stats()

    async def cleanup_subscriptions(self, inactive_days: int) -> dict:
        return await self.subscriptions.cleanup_inactive(inactive_days)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_preferences(self, user_id: str) -> UserPreferences:
        return await self.policies.get_user_preferences(user_id)

    async def update_preferences(self, user_id: str, partial: UserPreferencesUpdate) -> UserPreferences:
        return await self.policies.update_user_preferences(user_id, partial)

    async def mute_category(self, user_id: str, category_id: str, minutes: int) -> UserPreferences:
        until = self.clock() + timedelta(minutes=minutes)
        return await self.policies.mute_category(user_id, category_id, until)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def build_notification(
        self,
        user_id: str,
        category: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        """A user's per-category priority overrides the policy's."""
        policy = self.policies.get_category_policy(category)
        preferences = await self.policies.get_user_preferences(user_id)
        return Notification(
            category=category,
            title=title,
            body=body,
            data=data or {},
            priority=preferences.category(category).priority or policy.priority,
            created_at=self.clock(),
        )

    async def notify(
        self,
        user_id: str,
        category: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        notification = await self.build_notification(user_id, category, title, body, data)
        return await self.dispatcher.send(notification, user_id)

    async def notify_bulk(
        self,
        user_ids: list[str],
        category: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> BulkResult:
        requests = [
            DeliveryRequest(await self.build_notification(user_id, category, title, body, data), user_id)
            for user_id in user_ids
        ]
        return await self.dispatcher.send_bulk(requests)

    async def remind_later(
        self,
        user_id: str,
        notification_id: str,
        category: str,
        title: str,
        body: str,
        minutes: int,
    ) -> DeliveryResult:
        """Schedule a fresh copy of a notification the user asked to see again."""
        reminder = await self.build_notification(
            user_id, category, title, body, data={"reminder_of": notification_id}
        )
        deliver_at = self.clock() + timedelta(minutes=minutes)
        await self.scheduled.schedule(ScheduledEntry(notification=reminder, user_id=user_id, deliver_at=deliver_at))
        logger.info(
            "Reminder scheduled",
            user_id=user_id,
            notification_id=reminder.id,
            reminder_of=notification_id,
            deliver_at=deliver_at.isoformat(),
        )
        return DeliveryResult(reminder.id, DeliveryStatus.SCHEDULED, deliver_at, reason="remind_later")

    async def cancel_scheduled(self, notification_id: str) -> bool:
        return await self.scheduled.cancel(notification_id)

    async def pending_scheduled(self, user_id: str) -> list[ScheduledEntry]:
        return [e for e in await self.scheduled.pending() if e.user_id == user_id]

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def record_interaction(
        self,
        user_id: str,
        notification_id: str,
        category: str,
        action: InteractionAction,
        response_time_ms: int | None = None,
    ) -> None:
        await self.analytics.record(
            user_id,
            InteractionEvent(
                notification_id=notification_id,
                category=category,
                action=action,
                timestamp=self.clock(),
                response_time_ms=response_time_ms,
            ),
        )

    async def get_metrics(self, user_id: str) -> dict:
        preferences = await self.policies.get_user_preferences(user_id)
        tz = resolve_timezone(preferences.timezone)
        metrics = await self.analytics.metrics(user_id)
        return {
            **metrics.to_dict(),
            "patterns": await self.analytics.analyze_patterns(user_id, tz),
        }

    async def clear_history(self, user_id: str) -> None:
        await self.analytics.clear(user_id)

    # ------------------------------------------------------------------
    # Offline queue / network
    # ------------------------------------------------------------------

    def set_network(self, online: bool, source: str = "api") -> bool:
        return self.network.set_online(online, source=source)

    async def drain_offline(self) -> DrainReport:
        if not self.network.is_online():
            logger.info("Skipping offline drain while network is down")
            return DrainReport()
        return await self.offline.drain(
            lambda requests: self.dispatcher.send_bulk(requests, enqueue_on_failure=False),
            max_entries=self.drain_max_entries,
        )

    async def offline_status(self) -> dict:
        return {
            "online": self.network.is_online(),
            "size": await self.offline.size(),
            "permanently_failed": await self.offline.permanently_failed(),
        }


def build_notification_service(
    config: Settings,
    store: KeyValueStore,
    sender: PushSender,
    platform: PushPlatform,
    probe: NetworkProbe | None = None,
    clock: Clock = utc_now,
) -> NotificationService:
    """Wire every component from configuration."""
    rate_limits = config.get_rate_limits()
    offline_config = config.get_offline_queue_config()

    policies = PolicyStore(store, default_timezone=config.DEFAULT_TIMEZONE)
    analytics = BehaviorAnalytics(store, log_cap=config.ANALYTICS_LOG_CAP, window=config.ANALYTICS_WINDOW)
    subscriptions = SubscriptionManager(
        store,
        platform,
        max_renewal_attempts=config.SUBSCRIPTION_MAX_RENEWAL_ATTEMPTS,
        encrypt_endpoints=encryption_enabled(),
        clock=clock,
    )
    scheduled = ScheduledStore(store, clock=clock)
    offline = OfflineQueue(
        store,
        max_attempts=offline_config["max_attempts"],
        backoff_base_seconds=offline_config["backoff_base_seconds"],
        clock=clock,
    )
    network = NetworkStateSignal()

    dispatcher = DeliveryDispatcher(
        policies=policies,
        scheduler=AdaptiveScheduler(analytics, disengaged_threshold=config.DISENGAGED_THRESHOLD),
        analytics=analytics,
        subscriptions=subscriptions,
        sender=sender,
        rate_limiter=RateLimiter(
            default_limit=rate_limits["max_sends"],
            window_seconds=rate_limits["window_seconds"],
        ),
        scheduled=scheduled,
        offline=offline,
        network=network,
        batch_size=config.BULK_BATCH_SIZE,
        inter_batch_delay_ms=config.BULK_INTER_BATCH_DELAY_MS,
        clock=clock,
    )

    return NotificationService(
        policies=policies,
        subscriptions=subscriptions,
        analytics=analytics,
        dispatcher=dispatcher,
        scheduled=scheduled,
        offline=offline,
        network=network,
        drain_max_entries=offline_config["drain_max_entries"],
        drain_interval_seconds=config.OFFLINE_DRAIN_INTERVAL_SECONDS,
        probe=probe,
        probe_interval_seconds=config.NETWORK_PROBE_INTERVAL_SECONDS,
        clock=clock,
    )
