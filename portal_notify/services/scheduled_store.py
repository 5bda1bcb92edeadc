"""
Scheduled Store - future deliveries held in a min-heap keyed by deliver_at.

A single asyncio task owns the heap. schedule() and cancel() never touch it
directly; they post commands on an asyncio.Queue that the loop drains. The
loop waits on that queue with a timeout equal to the time until the next
due entry, so an insert wakes it immediately and there is no polling.

Entries are persisted after every change. On start, persisted entries are
reloaded; entries whose deliver_at passed during downtime fire immediately,
once. Until that reload succeeds nothing is written back, so a failed read
never replaces what is stored.
"""

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.notification_domain import ScheduledEntry
from portal_notify.services.interfaces import KeyValueStore
from portal_notify.utils.clock import Clock, utc_now

logger = get_logger(__name__)

SCHEDULED_KEY = "scheduled"

DueHandler = Callable[[ScheduledEntry], Awaitable[object]]


@dataclass(slots=True)
class _Schedule:
    entry: ScheduledEntry
    result: asyncio.Future


@dataclass(slots=True)
class _Cancel:
    notification_id: str
    result: asyncio.Future


@dataclass(slots=True)
class _Snapshot:
    result: asyncio.Future


@dataclass(order=True, slots=True)
class _HeapItem:
    deliver_at: float
    sequence: int
    entry: ScheduledEntry = field(compare=False)


class ScheduledStore:
    def __init__(self, store: KeyValueStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock
        self._on_due: DueHandler | None = None
        self._heap: list[_HeapItem] = []
        self._ids: set[str] = set()
        self._sequence = itertools.count()
        self._commands: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._restored = False

    def set_handler(self, on_due: DueHandler) -> None:
        self._on_due = on_due

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Public API (called from any task)
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        if self._on_due is None:
            raise RuntimeError("ScheduledStore needs a due handler before start()")

        await self._restore()
        self._task = asyncio.create_task(self._run(), name="scheduled-store-loop")
        logger.info("Scheduler loop started", pending=len(self._heap))

    async def stop(self) -> None:
        if self._task is None:
            return

        # in-flight deliveries may still schedule through the loop
        while self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler loop stopped", pending=len(self._heap))

    async def _submit(self, command) -> object:
        if not self.running:
            raise RuntimeError("ScheduledStore loop is not running")
        await self._commands.put(command)
        return await command.result

    async def schedule(self, entry: ScheduledEntry) -> bool:
        """Hand an entry to the loop. False if its notification id is already held."""
        return await self._submit(_Schedule(entry, asyncio.get_running_loop().create_future()))

    async def cancel(self, notification_id: str) -> bool:
        """
        Remove a pending entry. False when unknown or already dequeued for
        delivery (the send then proceeds).
        """
        return await self._submit(_Cancel(notification_id, asyncio.get_running_loop().create_future()))

    async def pending(self) -> list[ScheduledEntry]:
        return await self._submit(_Snapshot(asyncio.get_running_loop().create_future()))

    def __contains__(self, notification_id: str) -> bool:
        return notification_id in self._ids

    def __len__(self) -> int:
        return len(self._heap)

    # ------------------------------------------------------------------
    # Loop internals (only the loop task runs these)
    # ------------------------------------------------------------------

    async def _restore(self) -> None:
        try:
            raw = await self.store.get(SCHEDULED_KEY) or []
        except Exception as e:
            logger.error("Failed to load scheduled entries", error=str(e))
            return
        self._restored = True

        now = self.clock()
        overdue = 0
        for record in raw:
            entry = ScheduledEntry.model_validate(record)
            if entry.notification.id in self._ids:
                continue
            if entry.deliver_at <= now:
                overdue += 1
            self._push(entry)

        if raw:
            logger.info("Scheduled entries restored", restored=len(self._heap), overdue=overdue)

    def _push(self, entry: ScheduledEntry) -> None:
        heapq.heappush(
            self._heap,
            _HeapItem(entry.deliver_at.timestamp(), next(self._sequence), entry),
        )
        self._ids.add(entry.notification.id)

    async def _persist(self) -> None:
        if not self._restored:
            # stored entries are still unread; writing now would replace them
            await self._restore()
            if not self._restored:
                logger.warning("Scheduled entries not persisted", pending=len(self._heap))
                return
        try:
            await self.store.set(
                SCHEDULED_KEY, [item.entry.model_dump(mode="json") for item in self._heap]
            )
        except Exception as e:
            logger.error("Failed to persist scheduled entries", error=str(e), pending=len(self._heap))

    def _seconds_until_next(self) -> float | None:
        if not self._heap:
            return None
        return max(0.0, self._heap[0].deliver_at - self.clock().timestamp())

    async def _run(self) -> None:
        while True:
            timeout = self._seconds_until_next()
            try:
                command = await asyncio.wait_for(self._commands.get(), timeout=timeout)
            except TimeoutError:
                command = None

            if command is not None:
                await self._apply(command)
                # drain anything else already waiting before firing
                while not self._commands.empty():
                    await self._apply(self._commands.get_nowait())

            await self._fire_due()

    async def _apply(self, command) -> None:
        if isinstance(command, _Schedule):
            notification_id = command.entry.notification.id
            if notification_id in self._ids:
                logger.warning("Duplicate scheduled notification ignored", notification_id=notification_id)
                command.result.set_result(False)
                return
            self._push(command.entry)
            await self._persist()
            command.result.set_result(True)
            logger.info(
                "Notification scheduled",
                notification_id=notification_id,
                user_id=command.entry.user_id,
                deliver_at=command.entry.deliver_at.isoformat(),
            )

        elif isinstance(command, _Cancel):
            if command.notification_id not in self._ids:
                command.result.set_result(False)
                return
            self._heap = [i for i in self._heap if i.entry.notification.id != command.notification_id]
            heapq.heapify(self._heap)
            self._ids.discard(command.notification_id)
            await self._persist()
            command.result.set_result(True)
            logger.info("Scheduled notification cancelled", notification_id=command.notification_id)

        elif isinstance(command, _Snapshot):
            command.result.set_result([item.entry for item in sorted(self._heap)])

    async def _fire_due(self) -> None:
        now_ts = self.clock().timestamp()
        fired = []
        while self._heap and self._heap[0].deliver_at <= now_ts:
            item = heapq.heappop(self._heap)
            self._ids.discard(item.entry.notification.id)
            fired.append(item.entry)

        if not fired:
            return

        await self._persist()
        for entry in fired:
            task = asyncio.create_task(self._deliver(entry))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _deliver(self, entry: ScheduledEntry) -> None:
        try:
            await self._on_due(entry)
        except Exception as e:
            logger.error(
                "Scheduled delivery raised",
                notification_id=entry.notification.id,
                user_id=entry.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
