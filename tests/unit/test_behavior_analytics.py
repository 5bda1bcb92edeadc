from datetime import UTC, datetime

import pytest

from portal_notify.models.domain.notification_domain import InteractionAction, InteractionEvent
from portal_notify.services.behavior_analytics import BehaviorAnalytics
from portal_notify.services.redis_store import StorageError


def _event(action: InteractionAction, category: str = "academic", hour: int = 10, **kwargs) -> InteractionEvent:
    return InteractionEvent(
        notification_id=kwargs.pop("notification_id", f"n-{action.value}-{hour}"),
        category=category,
        action=action,
        timestamp=datetime(2026, 3, 10, hour, 0, tzinfo=UTC),
        **kwargs,
    )


@pytest.fixture
def analytics(store):
    return BehaviorAnalytics(store, log_cap=1000, window=100)


@pytest.mark.asyncio
async def test_engagement_is_neutral_without_deliveries(analytics):
    assert await analytics.engagement_score("nobody") == 0.5

    await analytics.record("user-1", _event(InteractionAction.OPENED))
    assert await analytics.engagement_score("user-1") == 0.5


@pytest.mark.asyncio
async def test_engagement_score_formula(analytics):
    for _ in range(10):
        await analytics.record("user-1", _event(InteractionAction.DELIVERED))
    for _ in range(5):
        await analytics.record("user-1", _event(InteractionAction.OPENED))
    for _ in range(2):
        await analytics.record("user-1", _event(InteractionAction.ACTED))

    # 0.7 * 5/10 + 0.3 * 2/10
    assert await analytics.engagement_score("user-1") == pytest.approx(0.41)


@pytest.mark.asyncio
async def test_log_is_capped_to_most_recent(store):
    analytics = BehaviorAnalytics(store, log_cap=5)
    for i in range(8):
        await analytics.record("user-1", _event(InteractionAction.DELIVERED, notification_id=f"n{i}"))

    events = await analytics.snapshot("user-1")
    assert [e.notification_id for e in events] == ["n3", "n4", "n5", "n6", "n7"]


@pytest.mark.asyncio
async def test_active_hours_from_opened_events(analytics):
    for _ in range(6):
        await analytics.record("user-1", _event(InteractionAction.OPENED, hour=8))
    await analytics.record("user-1", _event(InteractionAction.OPENED, hour=19))
    await analytics.record("user-1", _event(InteractionAction.DELIVERED, hour=3))

    assert await analytics.active_hours("user-1", UTC) == {8, 19}


@pytest.mark.asyncio
async def test_active_hours_empty_history(analytics):
    assert await analytics.active_hours("user-1") == set()


@pytest.mark.asyncio
async def test_category_affinity(analytics):
    for _ in range(4):
        await analytics.record("user-1", _event(InteractionAction.DELIVERED, category="academic"))
    await analytics.record("user-1", _event(InteractionAction.OPENED, category="academic"))
    await analytics.record("user-1", _event(InteractionAction.DELIVERED, category="social"))

    affinity = await analytics.category_affinity("user-1")
    assert affinity == {"academic": 0.25, "social": 0.0}


@pytest.mark.asyncio
async def test_preferred_delivery_hours_rank_by_response_time(analytics):
    await analytics.record("user-1", _event(InteractionAction.OPENED, hour=9, response_time_ms=60_000))
    await analytics.record("user-1", _event(InteractionAction.OPENED, hour=18, response_time_ms=5_000))
    await analytics.record("user-1", _event(InteractionAction.OPENED, hour=12, response_time_ms=20_000))

    assert await analytics.preferred_delivery_hours("user-1", UTC) == [18, 12, 9]


@pytest.mark.asyncio
async def test_record_never_raises_and_counts_failures(store, analytics):
    store.fail_writes = True

    await analytics.record("user-1", _event(InteractionAction.DELIVERED))
    await analytics.note_sent("user-1")

    assert analytics.record_failures == 2


@pytest.mark.asyncio
async def test_metrics_and_persistence(store, analytics):
    await analytics.note_sent("user-1")
    await analytics.note_sent("user-1")
    await analytics.record("user-1", _event(InteractionAction.DELIVERED))
    await analytics.record("user-1", _event(InteractionAction.DISMISSED))

    reloaded = BehaviorAnalytics(store)
    metrics = await reloaded.metrics("user-1")

    assert metrics.sent == 2
    assert metrics.delivered == 1
    assert metrics.dismissed == 1
    assert metrics.engagement_score == 0.0


@pytest.mark.asyncio
async def test_clear_history(store, analytics):
    await analytics.record("user-1", _event(InteractionAction.DELIVERED))
    await analytics.clear("user-1")

    assert await analytics.snapshot("user-1") == []
    assert await BehaviorAnalytics(store).snapshot("user-1") == []


@pytest.mark.asyncio
async def test_repeated_opens_keep_score_in_range(analytics):
    await analytics.record("user-1", _event(InteractionAction.DELIVERED, notification_id="n1"))
    for _ in range(3):
        await analytics.record("user-1", _event(InteractionAction.OPENED, notification_id="n1"))
        await analytics.record("user-1", _event(InteractionAction.ACTED, notification_id="n1"))

    assert await analytics.engagement_score("user-1") == pytest.approx(1.0)
    assert (await analytics.metrics("user-1")).engagement_score <= 1.0
    assert (await analytics.category_affinity("user-1"))["academic"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_failed_log_read_does_not_overwrite_history(store):
    writer = BehaviorAnalytics(store)
    for i in range(3):
        await writer.record("user-1", _event(InteractionAction.DELIVERED, notification_id=f"n{i}"))

    analytics = BehaviorAnalytics(store)
    store.fail_next_read("analytics:")
    await analytics.record("user-1", _event(InteractionAction.OPENED, notification_id="n0"))

    assert analytics.record_failures == 1
    assert len((await BehaviorAnalytics(store).snapshot("user-1"))) == 3

    await analytics.record("user-1", _event(InteractionAction.OPENED, notification_id="n1"))
    events = await BehaviorAnalytics(store).snapshot("user-1")
    assert [e.notification_id for e in events] == ["n0", "n1", "n2", "n1"]


@pytest.mark.asyncio
async def test_failed_log_read_propagates_to_readers(store, analytics):
    await analytics.record("user-1", _event(InteractionAction.DELIVERED))
    reader = BehaviorAnalytics(store)
    store.fail_next_read("analytics:")

    with pytest.raises(StorageError):
        await reader.engagement_score("user-1")

    assert await reader.engagement_score("user-1") == pytest.approx(0.0)
