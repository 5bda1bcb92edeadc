"""
Offline Queue - persisted FIFO of notifications that could not be sent.

Entries arrive from the dispatcher when the network is down, the sender
failed, or the recipient was rate limited. drain() replays eligible entries
through the dispatcher in bulk batches:

    delivered / scheduled / dropped   -> removed
    rate limited or network offline   -> back to the tail, attempt unchanged,
                                         rate limited waits out retry_after
    any other failure                 -> back to the tail, attempt + 1,
                                         next_attempt_at = now + base * 2**(attempt-1)
    attempt reaches max_attempts      -> removed, reported as PermanentlyFailed
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta

from portal_notify.infrastructure.observability.logging import get_logger, log_delivery
from portal_notify.models.domain.notification_domain import (
    BulkResult,
    DeliveryRequest,
    DeliveryStatus,
    Notification,
    OfflineEntry,
)
from portal_notify.services.errors import PermanentlyFailed
from portal_notify.services.interfaces import KeyValueStore
from portal_notify.utils.clock import Clock, utc_now

logger = get_logger(__name__)

OFFLINE_KEY = "offline"
FAILED_KEY = "offline:failed"
FAILED_HISTORY_LIMIT = 100

# outcomes that say nothing about the entry itself
NOT_COUNTED_REASONS = frozenset({"network_offline"})

BulkSend = Callable[[list[DeliveryRequest]], Awaitable[BulkResult]]


@dataclass(slots=True)
class DrainReport:
    processed: int = 0
    delivered: int = 0
    removed: int = 0
    requeued: int = 0
    permanently_failed: list[PermanentlyFailed] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "delivered": self.delivered,
            "removed": self.removed,
            "requeued": self.requeued,
            "permanently_failed": [
                {"notification_id": e.notification_id, "attempts": e.attempts}
                for e in self.permanently_failed
            ],
        }


class OfflineQueue:
    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.clock = clock
        self._entries: list[OfflineEntry] | None = None
        self._failed: list[dict] | None = None
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> list[OfflineEntry]:
        if self._entries is None:
            raw = await self.store.get(OFFLINE_KEY) or []
            self._entries = [OfflineEntry.model_validate(item) for item in raw]
            if self._entries:
                logger.info("Offline queue restored", size=len(self._entries))
        return self._entries

    async def _persist(self) -> None:
        try:
            await self.store.set(OFFLINE_KEY, [e.model_dump(mode="json") for e in self._entries])
        except Exception as e:
            logger.error("Failed to persist offline queue", error=str(e), size=len(self._entries))

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.backoff_base_seconds * 2 ** max(0, attempt - 1))

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        notification: Notification,
        user_id: str,
        reason: str,
        attempt: int = 0,
        retry_after: float | None = None,
    ) -> bool:
        """
        Append to the tail. Returns False if the notification id is already queued.

        `attempt` is the number of failed sends so far; a positive value
        delays the first retry by the matching backoff.
        """
        now = self.clock()
        if retry_after is not None:
            next_attempt_at = now + timedelta(seconds=retry_after)
        elif attempt > 0:
            next_attempt_at = now + self.backoff(attempt)
        else:
            next_attempt_at = None

        async with self._lock:
            entries = await self._ensure_loaded()
            if any(e.notification.id == notification.id for e in entries):
                logger.warning("Duplicate offline entry ignored", notification_id=notification.id)
                return False

            entries.append(
                OfflineEntry(
                    notification=notification,
                    user_id=user_id,
                    attempt=attempt,
                    reason=reason,
                    enqueued_at=now,
                    next_attempt_at=next_attempt_at,
                )
            )
            await self._persist()

        logger.info(
            "Notification queued offline",
            notification_id=notification.id,
            user_id=user_id,
            reason=reason,
            attempt=attempt,
            queue_size=len(entries),
        )
        return True

    async def size(self) -> int:
        async with self._lock:
            return len(await self._ensure_loaded())

    async def entries(self) -> list[OfflineEntry]:
        async with self._lock:
            return list(await self._ensure_loaded())

    async def permanently_failed(self) -> list[dict]:
        if self._failed is None:
            self._failed = await self.store.get(FAILED_KEY) or []
        return list(self._failed)

    async def _take_eligible(self, max_entries: int | None) -> list[OfflineEntry]:
        now = self.clock()
        async with self._lock:
            entries = await self._ensure_loaded()
            taken, kept = [], []
            for entry in entries:
                eligible = entry.next_attempt_at is None or entry.next_attempt_at <= now
                if eligible and (max_entries is None or len(taken) < max_entries):
                    taken.append(entry)
                else:
                    kept.append(entry)
            if taken:
                self._entries = kept
                await self._persist()
            return taken

    async def _append(self, entries: list[OfflineEntry]) -> None:
        async with self._lock:
            current = await self._ensure_loaded()
            current.extend(entries)
            await self._persist()

    async def _record_permanent(self, entry: OfflineEntry, error: PermanentlyFailed) -> None:
        failed = await self.permanently_failed()
        failed.append(
            {
                "notification_id": entry.notification.id,
                "user_id": entry.user_id,
                "category": entry.notification.category,
                "attempts": error.attempts,
                "reason": entry.reason,
                "failed_at": self.clock().isoformat(),
            }
        )
        self._failed = failed[-FAILED_HISTORY_LIMIT:]
        try:
            await self.store.set(FAILED_KEY, self._failed)
        except Exception as e:
            logger.error("Failed to persist permanent failures", error=str(e))

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, send_bulk: BulkSend, max_entries: int | None = None) -> DrainReport:
        """
        Replay eligible entries through `send_bulk`.

        `send_bulk` must not enqueue failures itself; it reports them and this
        queue decides between requeue and permanent failure.
        """
        report = DrainReport()

        async with self._drain_lock:
            batch = await self._take_eligible(max_entries)
            if not batch:
                return report

            logger.info("Draining offline queue", entries=len(batch))
            requests = [DeliveryRequest(e.notification, e.user_id, e.attempt) for e in batch]

            try:
                bulk = await send_bulk(requests)
            except Exception as e:
                # nothing was confirmed; put everything back untouched
                await self._append(batch)
                logger.error("Offline drain aborted", error=str(e), entries=len(batch))
                report.requeued = len(batch)
                return report

            now = self.clock()
            requeue: list[OfflineEntry] = []

            for entry, result in zip(batch, bulk.results, strict=True):
                report.processed += 1

                if result.status == DeliveryStatus.DELIVERED:
                    report.delivered += 1
                    continue
                if result.status in (DeliveryStatus.SCHEDULED, DeliveryStatus.DROPPED):
                    report.removed += 1
                    continue

                if result.status == DeliveryStatus.RATE_LIMITED or result.reason in NOT_COUNTED_REASONS:
                    update = {"reason": result.reason or result.status.value}
                    if result.retry_after is not None:
                        update["next_attempt_at"] = now + timedelta(seconds=result.retry_after)
                    requeue.append(entry.model_copy(update=update))
                    continue

                attempt = entry.attempt + 1
                if attempt >= self.max_attempts:
                    error = PermanentlyFailed(entry.notification.id, attempt)
                    report.permanently_failed.append(error)
                    await self._record_permanent(entry, error)
                    log_delivery(
                        entry.notification.id,
                        entry.user_id,
                        entry.notification.category,
                        "permanently_failed",
                        reason=result.reason,
                    )
                    continue

                requeue.append(
                    entry.model_copy(
                        update={
                            "attempt": attempt,
                            "reason": result.reason or result.status.value,
                            "next_attempt_at": now + self.backoff(attempt),
                        }
                    )
                )

            if requeue:
                await self._append(requeue)
            report.requeued = len(requeue)

        logger.info(
            "Offline drain finished",
            processed=report.processed,
            delivered=report.delivered,
            removed=report.removed,
            requeued=report.requeued,
            permanently_failed=len(report.permanently_failed),
        )
        return report
