import pytest

from portal_notify.jobs.subscription_cleanup_job import SubscriptionCleanupJob, SubscriptionCleanupJobError
from portal_notify.services.subscription_manager import SubscriptionManager


@pytest.mark.asyncio
async def test_run_once_revokes_stale_subscriptions(store, platform, clock, granted_device):
    manager = SubscriptionManager(store, platform, clock=clock)
    await manager.subscribe("user-1", granted_device)
    clock.advance(days=45)
    job = SubscriptionCleanupJob(manager, inactive_days=30)

    result = await job.run_once()

    assert result["revoked"] == 1
    assert result["job_run"] == "subscription_cleanup"
    status = job.get_job_status()
    assert status["is_running"] is False
    assert status["last_run_metrics"]["revoked"] == 1


@pytest.mark.asyncio
async def test_run_once_wraps_failures(store, platform, clock, granted_device):
    manager = SubscriptionManager(store, platform, clock=clock)
    await manager.subscribe("user-1", granted_device)
    clock.advance(days=45)
    store.fail_writes = True
    job = SubscriptionCleanupJob(manager, inactive_days=30)

    with pytest.raises(SubscriptionCleanupJobError):
        await job.run_once()
    assert job.is_running is False
