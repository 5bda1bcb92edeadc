import asyncio

import pytest

from portal_notify.services.rate_limiter import RateLimiter


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.mark.asyncio
async def test_hundred_and_first_send_is_limited():
    limiter = RateLimiter(default_limit=100, window_seconds=60, clock=FakeMonotonic())

    results = [await limiter.check_rate_limit("user-1") for _ in range(101)]

    assert [allowed for allowed, _ in results].count(False) == 1
    allowed, info = results[-1]
    assert allowed is False
    assert info["remaining"] == 0
    assert info["retry_after"] == pytest.approx(60)


@pytest.mark.asyncio
async def test_concurrent_checks_respect_limit():
    limiter = RateLimiter(default_limit=100, window_seconds=60, clock=FakeMonotonic())

    results = await asyncio.gather(*(limiter.check_rate_limit("user-1") for _ in range(150)))

    assert sum(1 for allowed, _ in results if allowed) == 100


@pytest.mark.asyncio
async def test_window_slides():
    clock = FakeMonotonic()
    limiter = RateLimiter(default_limit=2, window_seconds=60, clock=clock)

    assert (await limiter.check_rate_limit("user-1"))[0]
    clock.value += 30
    assert (await limiter.check_rate_limit("user-1"))[0]
    assert not (await limiter.check_rate_limit("user-1"))[0]

    clock.value += 31  # first send left the window
    assert (await limiter.check_rate_limit("user-1"))[0]


@pytest.mark.asyncio
async def test_recipients_are_independent():
    limiter = RateLimiter(default_limit=1, window_seconds=60, clock=FakeMonotonic())

    assert (await limiter.check_rate_limit("user-1"))[0]
    assert (await limiter.check_rate_limit("user-2"))[0]
    assert not (await limiter.check_rate_limit("user-1"))[0]

    limiter.reset("user-1")
    assert (await limiter.check_rate_limit("user-1"))[0]


@pytest.mark.asyncio
async def test_idle_recipients_are_forgotten():
    clock = FakeMonotonic()
    limiter = RateLimiter(default_limit=5, window_seconds=60, clock=clock)

    for i in range(50):
        await limiter.check_rate_limit(f"user-{i}")

    clock.value += 61
    await limiter.check_rate_limit("user-active")

    assert set(limiter._windows) == {"user-active"}
    assert set(limiter._locks) == {"user-active"}


@pytest.mark.asyncio
async def test_sweep_keeps_recipients_still_in_window():
    clock = FakeMonotonic()
    limiter = RateLimiter(default_limit=1, window_seconds=60, clock=clock)
    await limiter.check_rate_limit("user-2")

    clock.value += 30
    assert (await limiter.check_rate_limit("user-1"))[0]

    clock.value += 31  # sweep runs; user-1 sent 31s ago
    await limiter.check_rate_limit("user-2")

    assert "user-1" in limiter._windows
    assert not (await limiter.check_rate_limit("user-1"))[0]
