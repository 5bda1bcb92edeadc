"""
Push subscription lifecycle.

State machine per subscription:
    UNREGISTERED -> ACTIVE -> STALE -> ACTIVE (renew)
                           -> REVOKED

Subscriptions are stored per user (one record per device) plus an index of
users so maintenance jobs can walk every subscription.
"""

import asyncio
from collections import Counter, defaultdict
from datetime import timedelta

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.subscription_domain import (
    DeviceInfo,
    Subscription,
    SubscriptionStatus,
)
from portal_notify.security.encryption import decrypt_endpoint, encrypt_endpoint
from portal_notify.security.hashing import device_fingerprint
from portal_notify.services.errors import (
    AlreadySubscribed,
    PermissionDenied,
    SubscriptionNotFound,
    SubscriptionRenewalFailed,
)
from portal_notify.services.interfaces import KeyValueStore, PushPlatform
from portal_notify.utils.clock import Clock, utc_now

logger = get_logger(__name__)

SUBSCRIPTIONS_KEY = "subs:{user_id}"
INDEX_KEY = "subs:index"


class SubscriptionManager:
    def __init__(
        self,
        store: KeyValueStore,
        platform: PushPlatform,
        max_renewal_attempts: int = 3,
        encrypt_endpoints: bool = False,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.platform = platform
        self.max_renewal_attempts = max_renewal_attempts
        self.encrypt_endpoints = encrypt_endpoints
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._index_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _load(self, user_id: str) -> list[Subscription]:
        raw = await self.store.get(SUBSCRIPTIONS_KEY.format(user_id=user_id)) or []
        subscriptions = []
        for record in raw:
            if record.pop("endpoint_encrypted", False):
                record["endpoint_token"] = decrypt_endpoint(record["endpoint_token"])
            subscriptions.append(Subscription.model_validate(record))
        return subscriptions

    async def _save(self, user_id: str, subscriptions: list[Subscription]) -> None:
        records = []
        for subscription in subscriptions:
            record = subscription.model_dump(mode="json")
            if self.encrypt_endpoints:
                record["endpoint_token"] = encrypt_endpoint(record["endpoint_token"])
                record["endpoint_encrypted"] = True
            records.append(record)
        await self.store.set(SUBSCRIPTIONS_KEY.format(user_id=user_id), records)

    async def _add_to_index(self, user_id: str) -> None:
        async with self._index_lock:
            users = await self.store.get(INDEX_KEY) or []
            if user_id not in users:
                users.append(user_id)
                await self.store.set(INDEX_KEY, users)

    async def _replace(self, updated: Subscription) -> Subscription:
        async with self._locks[updated.user_id]:
            subscriptions = await self._load(updated.user_id)
            for index, current in enumerate(subscriptions):
                if current.id == updated.id:
                    subscriptions[index] = updated
                    break
            else:
                raise SubscriptionNotFound(updated.id)
            await self._save(updated.user_id, subscriptions)
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self._load(user_id)

    async def active_subscriptions(self, user_id: str) -> list[Subscription]:
        return [s for s in await self._load(user_id) if s.is_active]

    async def get_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        for subscription in await self._load(user_id):
            if subscription.id == subscription_id:
                return subscription
        raise SubscriptionNotFound(subscription_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str, device: DeviceInfo) -> Subscription:
        """
        Register a device for push.

        Raises:
            PermissionDenied: The platform declined permission
            AlreadySubscribed: The device already has an ACTIVE subscription
        """
        if not await self.platform.request_permission(device):
            logger.info("Push permission denied", user_id=user_id, platform=device.platform)
            raise PermissionDenied()

        fingerprint = device_fingerprint(
            user_id, device.user_agent, device.platform, device.device_id
        )

        async with self._locks[user_id]:
            subscriptions = await self._load(user_id)
            for existing in subscriptions:
                if existing.device_fingerprint == fingerprint and existing.is_active:
                    raise AlreadySubscribed(existing.id)

            endpoint = await self.platform.register(device)
            now = self.clock()
            subscription = Subscription(
                user_id=user_id,
                endpoint_token=endpoint,
                user_agent=device.user_agent,
                platform=device.platform,
                device_fingerprint=fingerprint,
                registered_at=now,
                last_validated_at=now,
            )
            subscriptions.append(subscription)
            await self._save(user_id, subscriptions)

        await self._add_to_index(user_id)

        logger.info(
            "Push subscription created",
            user_id=user_id,
            subscription_id=subscription.id,
            platform=subscription.platform,
        )
        return subscription

    async def validate(self, subscription: Subscription) -> bool:
        """
        Check the subscription with the platform.

        A failed validation marks it STALE and triggers renew(); the renewed
        subscription replaces it. Returns whether the original was valid.

        Raises:
            SubscriptionRenewalFailed: Renewal was attempted and exhausted
        """
        try:
            valid = await self.platform.validate(subscription)
        except Exception as e:
            logger.warning(
                "Subscription validation errored", subscription_id=subscription.id, error=str(e)
            )
            valid = False

        if valid:
            refreshed = subscription.model_copy(
                update={"last_validated_at": self.clock(), "status": SubscriptionStatus.ACTIVE}
            )
            await self._replace(refreshed)
            return True

        stale = subscription.model_copy(update={"status": SubscriptionStatus.STALE})
        await self._replace(stale)
        logger.info("Subscription marked stale", subscription_id=subscription.id, user_id=subscription.user_id)

        await self.renew(stale)
        return False

    async def renew(self, subscription: Subscription) -> Subscription:
        """
        Unsubscribe then re-subscribe the same device.

        Raises:
            SubscriptionRenewalFailed: All attempts failed; subscription REVOKED
        """
        device = subscription.device()

        for attempt in range(1, self.max_renewal_attempts + 1):
            try:
                try:
                    await self.platform.cancel(subscription)
                except Exception as e:
                    logger.debug("Cancel before renewal failed", subscription_id=subscription.id, error=str(e))

                if not await self.platform.request_permission(device):
                    raise PermissionDenied()
                endpoint = await self.platform.register(device)

            except Exception as e:
                logger.warning(
                    "Subscription renewal attempt failed",
                    subscription_id=subscription.id,
                    attempt=attempt,
                    max_attempts=self.max_renewal_attempts,
                    error=str(e),
                )
                continue

            now = self.clock()
            renewed = Subscription(
                user_id=subscription.user_id,
                endpoint_token=endpoint,
                user_agent=subscription.user_agent,
                platform=subscription.platform,
                device_fingerprint=subscription.device_fingerprint,
                registered_at=now,
                last_validated_at=now,
            )

            async with self._locks[subscription.user_id]:
                subscriptions = await self._load(subscription.user_id)
                subscriptions = [
                    s.model_copy(update={"status": SubscriptionStatus.REVOKED})
                    if s.id == subscription.id
                    else s
                    for s in subscriptions
                ]
                subscriptions.append(renewed)
                await self._save(subscription.user_id, subscriptions)

            logger.info(
                "Subscription renewed",
                old_subscription_id=subscription.id,
                subscription_id=renewed.id,
                attempt=attempt,
            )
            return renewed

        await self._replace(subscription.model_copy(update={"status": SubscriptionStatus.REVOKED}))
        logger.error(
            "Subscription renewal exhausted",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            attempts=self.max_renewal_attempts,
        )
        raise SubscriptionRenewalFailed(subscription.id, self.max_renewal_attempts)

    async def unsubscribe(self, subscription: Subscription) -> Subscription:
        """Cancel and revoke. Revoking an already REVOKED subscription is a no-op."""
        current = await self.get_subscription(subscription.user_id, subscription.id)
        if current.status == SubscriptionStatus.REVOKED:
            return current

        try:
            await self.platform.cancel(current)
        except Exception as e:
            logger.warning("Platform cancel failed, revoking locally", subscription_id=current.id, error=str(e))

        revoked = await self._replace(current.model_copy(update={"status": SubscriptionStatus.REVOKED}))
        logger.info("Push subscription revoked", user_id=current.user_id, subscription_id=current.id)
        return revoked

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def stats(self) -> dict:
        statuses: Counter[str] = Counter()
        platforms: Counter[str] = Counter()
        users = await self.store.get(INDEX_KEY) or []

        for user_id in users:
            for subscription in await self._load(user_id):
                statuses[subscription.status.value] += 1
                if subscription.is_active:
                    platforms[subscription.platform] += 1

        return {
            "total": sum(statuses.values()),
            "active": statuses[SubscriptionStatus.ACTIVE.value],
            "stale": statuses[SubscriptionStatus.STALE.value],
            "revoked": statuses[SubscriptionStatus.REVOKED.value],
            "users": len(users),
            "platforms": dict(platforms),
        }

    async def cleanup_inactive(self, inactive_days: int = 30) -> dict:
        """
        Revoke subscriptions not validated within `inactive_days` and drop
        REVOKED records.
        """
        cutoff = self.clock() - timedelta(days=inactive_days)
        users = await self.store.get(INDEX_KEY) or []
        revoked = removed = 0

        for user_id in users:
            for subscription in await self._load(user_id):
                if subscription.status != SubscriptionStatus.REVOKED and subscription.last_validated_at < cutoff:
                    await self.unsubscribe(subscription)
                    revoked += 1

            async with self._locks[user_id]:
                subscriptions = await self._load(user_id)
                kept = [s for s in subscriptions if s.status != SubscriptionStatus.REVOKED]
                removed += len(subscriptions) - len(kept)
                await self._save(user_id, kept)

        logger.info(
            "Inactive subscription cleanup finished",
            users_scanned=len(users),
            revoked=revoked,
            removed=removed,
            inactive_days=inactive_days,
        )
        return {"users_scanned": len(users), "revoked": revoked, "removed": removed}
