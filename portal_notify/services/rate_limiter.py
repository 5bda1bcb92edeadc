"""
Rate Limiter - per-recipient sliding window send limiting.

Design:
- Sliding window algorithm (fair and accurate)
- Exact send timestamps kept per recipient in a deque
- One asyncio.Lock per recipient; different recipients never contend
- Old entries are evicted on every check
- Recipients idle for a whole window are forgotten by a periodic sweep

Usage:
    limiter = RateLimiter(default_limit=100, window_seconds=60)

    allowed, info = await limiter.check_rate_limit("user-123")
    if not allowed:
        # defer the send
"""

import asyncio
import time
from collections import defaultdict, deque
from collections.abc import Callable

from portal_notify.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Sliding window rate limiter keyed by recipient.

    Example:
        If the limit is 100 sends/min and 100 sends happened at 10:00:00,
        the next send is allowed from 10:01:00 onwards.
    """

    def __init__(
        self,
        default_limit: int = 100,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            default_limit: Default sends per window
            window_seconds: Time window in seconds
            clock: Monotonic seconds source
        """
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, deque[float]] = defaultdict(deque)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._longest_window = window_seconds
        self._last_sweep: float | None = None

    async def check_rate_limit(
        self,
        key: str,
        limit: int | None = None,
        window_seconds: float | None = None,
    ) -> tuple[bool, dict]:
        """
        Check and consume one slot for the given key.

        Args:
            key: Recipient key (user id)
            limit: Send limit for this window (None = use default)
            window_seconds: Time window (None = use default)

        Returns:
            Tuple of (allowed: bool, info: dict)
            - info: limit, remaining, retry_after
        """
        limit = limit or self.default_limit
        window_seconds = window_seconds or self.window_seconds
        self._longest_window = max(self._longest_window, window_seconds)
        self._sweep()

        async with self._locks[key]:
            now = self.clock()
            window = self._windows[key]

            window_start = now - window_seconds
            while window and window[0] <= window_start:
                window.popleft()

            if len(window) >= limit:
                retry_after = max(0.0, (window[0] + window_seconds) - now)
                logger.info(
                    "Recipient rate limit exceeded",
                    key=key,
                    limit=limit,
                    window_seconds=window_seconds,
                    retry_after=round(retry_after, 2),
                )
                return False, self._create_info_dict(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=retry_after,
                    window_seconds=window_seconds,
                )

            window.append(now)
            return True, self._create_info_dict(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - len(window)),
                window_seconds=window_seconds,
            )

    def _sweep(self) -> None:
        """Forget recipients with no send inside any window; at most once per window."""
        now = self.clock()
        if self._last_sweep is not None and now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now

        cutoff = now - self._longest_window
        for key in set(self._windows) | set(self._locks):
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            window = self._windows.get(key)
            if not window or window[-1] <= cutoff:
                self._windows.pop(key, None)
                self._locks.pop(key, None)

    def reset(self, key: str | None = None) -> None:
        """Forget recorded sends for one key, or all keys."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    def _create_info_dict(
        self,
        allowed: bool,
        limit: int,
        remaining: int,
        retry_after: float | None = None,
        window_seconds: float | None = None,
    ) -> dict:
        info = {
            "allowed": allowed,
            "limit": limit,
            "remaining": remaining,
            "retry_after": retry_after,
        }

        if window_seconds is not None:
            info["window_seconds"] = window_seconds

        return info
