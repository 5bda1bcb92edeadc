"""
Behavioral analytics over per-user notification interaction logs.

Each user has an append-only log of InteractionEvents capped at the most
recent `log_cap` entries. Aggregates are recomputed on demand from a
snapshot copy, so readers never hold the per-user append lock.
"""

import asyncio
from collections import Counter, defaultdict
from datetime import tzinfo
from statistics import mean

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.notification_domain import (
    EngagementMetrics,
    InteractionAction,
    InteractionEvent,
)
from portal_notify.services.interfaces import KeyValueStore

logger = get_logger(__name__)

ANALYTICS_KEY = "analytics:{user_id}"

OPEN_WEIGHT = 0.7
ACTION_WEIGHT = 0.3
NEUTRAL_SCORE = 0.5
ACTIVE_HOUR_FRACTION = 0.1
PREFERRED_HOURS_LIMIT = 6


class _UserLog:
    __slots__ = ("events", "sent")

    def __init__(self, events: list[InteractionEvent] | None = None, sent: int = 0):
        self.events = events or []
        self.sent = sent


class BehaviorAnalytics:
    def __init__(self, store: KeyValueStore, log_cap: int = 1000, window: int = 100):
        self.store = store
        self.log_cap = log_cap
        self.window = window
        self.record_failures = 0
        self._logs: dict[str, _UserLog] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _load(self, user_id: str) -> _UserLog:
        log = self._logs.get(user_id)
        if log is not None:
            return log

        # a failed read raises before anything is cached
        raw = await self.store.get(ANALYTICS_KEY.format(user_id=user_id))

        # another task may have loaded it while we awaited the store
        if user_id in self._logs:
            return self._logs[user_id]

        if raw:
            events = [InteractionEvent.model_validate(item) for item in raw.get("events", [])]
            log = _UserLog(events[-self.log_cap :], int(raw.get("sent", 0)))
        else:
            log = _UserLog()

        self._logs[user_id] = log
        return log

    async def _persist(self, user_id: str, log: _UserLog) -> None:
        await self.store.set(
            ANALYTICS_KEY.format(user_id=user_id),
            {
                "events": [event.model_dump(mode="json") for event in log.events],
                "sent": log.sent,
            },
        )

    async def record(self, user_id: str, event: InteractionEvent) -> None:
        """Append an event. Never raises; failures are counted in record_failures."""
        try:
            async with self._locks[user_id]:
                log = await self._load(user_id)
                log.events.append(event)
                if len(log.events) > self.log_cap:
                    del log.events[: len(log.events) - self.log_cap]
                await self._persist(user_id, log)
        except Exception as e:
            self.record_failures += 1
            logger.warning(
                "Interaction record failed",
                user_id=user_id,
                notification_id=event.notification_id,
                action=event.action.value,
                error=str(e),
                failures=self.record_failures,
            )

    async def note_sent(self, user_id: str) -> None:
        """Count a send attempt; same best-effort contract as record()."""
        try:
            async with self._locks[user_id]:
                log = await self._load(user_id)
                log.sent += 1
                await self._persist(user_id, log)
        except Exception as e:
            self.record_failures += 1
            logger.warning("Send counter update failed", user_id=user_id, error=str(e))

    async def clear(self, user_id: str) -> None:
        async with self._locks[user_id]:
            self._logs[user_id] = _UserLog()
            await self.store.delete(ANALYTICS_KEY.format(user_id=user_id))
        logger.info("Interaction history cleared", user_id=user_id)

    async def snapshot(self, user_id: str) -> list[InteractionEvent]:
        log = await self._load(user_id)
        return list(log.events)

    async def _recent(self, user_id: str) -> list[InteractionEvent]:
        events = await self.snapshot(user_id)
        return events[-self.window :]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def active_hours(self, user_id: str, tz: tzinfo | None = None) -> set[int]:
        """
        Hours of day (in `tz`) with significant open activity.

        An hour qualifies when its open count exceeds 10% of the mean
        hourly count across the recent window. No data yields an empty set.
        """
        recent = await self._recent(user_id)
        hour_counts = [0] * 24
        for event in recent:
            if event.action == InteractionAction.OPENED:
                stamp = event.timestamp.astimezone(tz) if tz else event.timestamp
                hour_counts[stamp.hour] += 1

        if not any(hour_counts):
            return set()

        threshold = (sum(hour_counts) / 24) * ACTIVE_HOUR_FRACTION
        return {hour for hour, count in enumerate(hour_counts) if count > threshold}

    @staticmethod
    def _score(delivered: int, opened: int, acted: int) -> float:
        if delivered == 0:
            return NEUTRAL_SCORE
        # repeated opens, or opens whose delivery was evicted, cap at 1
        open_rate = min(1.0, opened / delivered)
        action_rate = min(1.0, acted / delivered)
        return OPEN_WEIGHT * open_rate + ACTION_WEIGHT * action_rate

    async def engagement_score(self, user_id: str) -> float:
        events = await self.snapshot(user_id)
        counts = Counter(event.action for event in events)
        return self._score(
            counts[InteractionAction.DELIVERED],
            counts[InteractionAction.OPENED],
            counts[InteractionAction.ACTED],
        )

    async def category_affinity(self, user_id: str) -> dict[str, float]:
        """Per-category opened/delivered ratio over the recent window."""
        recent = await self._recent(user_id)
        delivered: Counter[str] = Counter()
        opened: Counter[str] = Counter()
        for event in recent:
            if event.action == InteractionAction.DELIVERED:
                delivered[event.category] += 1
            elif event.action == InteractionAction.OPENED:
                opened[event.category] += 1

        return {
            category: min(1.0, opened[category] / delivered[category]) if delivered[category] else 0.0
            for category in set(delivered) | set(opened)
        }

    async def preferred_delivery_hours(self, user_id: str, tz: tzinfo | None = None) -> list[int]:
        """Hours with the fastest mean response time to opened notifications, best first."""
        recent = await self._recent(user_id)
        by_hour: dict[int, list[int]] = defaultdict(list)
        for event in recent:
            if event.action == InteractionAction.OPENED and event.response_time_ms:
                stamp = event.timestamp.astimezone(tz) if tz else event.timestamp
                by_hour[stamp.hour].append(event.response_time_ms)

        ranked = sorted(by_hour.items(), key=lambda item: mean(item[1]))
        return [hour for hour, _ in ranked[:PREFERRED_HOURS_LIMIT]]

    async def metrics(self, user_id: str) -> EngagementMetrics:
        log = await self._load(user_id)
        counts = Counter(event.action for event in list(log.events))
        delivered = counts[InteractionAction.DELIVERED]
        opened = counts[InteractionAction.OPENED]
        acted = counts[InteractionAction.ACTED]
        return EngagementMetrics(
            sent=log.sent,
            delivered=delivered,
            opened=opened,
            acted=acted,
            dismissed=counts[InteractionAction.DISMISSED],
            engagement_score=self._score(delivered, opened, acted),
        )

    async def analyze_patterns(self, user_id: str, tz: tzinfo | None = None) -> dict:
        return {
            "active_hours": sorted(await self.active_hours(user_id, tz)),
            "category_affinity": await self.category_affinity(user_id),
            "preferred_delivery_hours": await self.preferred_delivery_hours(user_id, tz),
            "engagement_score": round(await self.engagement_score(user_id), 4),
            "total_events": len(await self.snapshot(user_id)),
        }
