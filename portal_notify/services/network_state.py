"""
Network availability signal.

Producers call set_online(); consumers iterate transitions(). Each
subscriber gets its own queue, so a slow consumer never drops another's
transitions. Only changes are published; repeated reports of the same
state are ignored.
"""

import asyncio
from collections.abc import AsyncIterator

from portal_notify.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class NetworkStateSignal:
    def __init__(self, online: bool = True):
        self._online = online
        self._subscribers: set[asyncio.Queue] = set()

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool, source: str = "manual") -> bool:
        """Publish a state. Returns True when it changed."""
        if online == self._online:
            return False

        self._online = online
        logger.info("Network state changed", online=online, source=source)
        for queue in self._subscribers:
            queue.put_nowait(online)
        return True

    async def transitions(self) -> AsyncIterator[bool]:
        """Yield True on every offline->online change and False on the reverse."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)
