from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from portal_notify.models.domain.subscription_domain import DeviceInfo, SubscriptionStatus
from portal_notify.services.errors import (
    AlreadySubscribed,
    PermissionDenied,
    SubscriptionRenewalFailed,
)
from portal_notify.services.redis_store import StorageError
from portal_notify.services.subscription_manager import SubscriptionManager


@pytest.fixture
def manager(store, platform, clock):
    return SubscriptionManager(store, platform, max_renewal_attempts=3, clock=clock)


@pytest.mark.asyncio
async def test_subscribe_creates_active_subscription(manager, granted_device, clock):
    subscription = await manager.subscribe("user-1", granted_device)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.endpoint_token == "https://push.example/endpoint-1"
    assert subscription.registered_at == clock.now
    assert subscription.device_fingerprint != granted_device.device_id
    assert await manager.active_subscriptions("user-1") == [subscription]


@pytest.mark.asyncio
async def test_permission_denied(manager, platform):
    with pytest.raises(PermissionDenied):
        await manager.subscribe("user-1", DeviceInfo(permission="denied"))
    assert platform.registered == []


@pytest.mark.asyncio
async def test_same_device_twice_is_rejected(manager, granted_device):
    first = await manager.subscribe("user-1", granted_device)

    with pytest.raises(AlreadySubscribed) as exc:
        await manager.subscribe("user-1", granted_device)
    assert exc.value.subscription_id == first.id

    # another user on the same device model is a different fingerprint
    await manager.subscribe("user-2", granted_device)


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(manager, platform, granted_device):
    subscription = await manager.subscribe("user-1", granted_device)

    first = await manager.unsubscribe(subscription)
    second = await manager.unsubscribe(subscription)

    assert first.status == SubscriptionStatus.REVOKED
    assert second.status == SubscriptionStatus.REVOKED
    assert platform.cancelled == [subscription.id]
    assert await manager.active_subscriptions("user-1") == []


@pytest.mark.asyncio
async def test_unsubscribe_revokes_even_if_platform_cancel_fails(manager, platform, granted_device):
    subscription = await manager.subscribe("user-1", granted_device)
    platform.fail_cancel = True

    revoked = await manager.unsubscribe(subscription)
    assert revoked.status == SubscriptionStatus.REVOKED


@pytest.mark.asyncio
async def test_revoked_device_can_subscribe_again(manager, granted_device):
    subscription = await manager.subscribe("user-1", granted_device)
    await manager.unsubscribe(subscription)

    again = await manager.subscribe("user-1", granted_device)
    assert again.id != subscription.id


@pytest.mark.asyncio
async def test_failed_validation_renews(manager, platform, granted_device):
    subscription = await manager.subscribe("user-1", granted_device)
    platform.valid = False

    assert await manager.validate(subscription) is False

    subscriptions = await manager.list_subscriptions("user-1")
    statuses = {s.id: s.status for s in subscriptions}
    assert statuses[subscription.id] == SubscriptionStatus.REVOKED
    active = [s for s in subscriptions if s.is_active]
    assert len(active) == 1
    assert active[0].endpoint_token == "https://push.example/endpoint-2"
    assert active[0].device_fingerprint == subscription.device_fingerprint


@pytest.mark.asyncio
async def test_successful_validation_refreshes_timestamp(manager, granted_device, clock):
    subscription = await manager.subscribe("user-1", granted_device)
    clock.advance(days=3)

    assert await manager.validate(subscription) is True
    refreshed = await manager.get_subscription("user-1", subscription.id)
    assert refreshed.last_validated_at == clock.now


@pytest.mark.asyncio
async def test_renewal_exhausted_revokes(manager, platform, granted_device):
    subscription = await manager.subscribe("user-1", granted_device)
    platform.fail_register = True

    with pytest.raises(SubscriptionRenewalFailed) as exc:
        await manager.renew(subscription)

    assert exc.value.attempts == 3
    current = await manager.get_subscription("user-1", subscription.id)
    assert current.status == SubscriptionStatus.REVOKED


@pytest.mark.asyncio
async def test_cleanup_inactive_and_stats(manager, granted_device, clock):
    old = await manager.subscribe("user-1", granted_device)
    clock.advance(days=31)
    fresh = await manager.subscribe("user-2", granted_device)

    stats = await manager.stats()
    assert stats["active"] == 2
    assert stats["platforms"] == {"web": 2}

    result = await manager.cleanup_inactive(inactive_days=30)

    assert result == {"users_scanned": 2, "revoked": 1, "removed": 1}
    assert await manager.list_subscriptions("user-1") == []
    assert [s.id for s in await manager.list_subscriptions("user-2")] == [fresh.id]
    assert old.last_validated_at < clock.now - timedelta(days=30)


@pytest.mark.asyncio
async def test_endpoints_encrypted_at_rest(monkeypatch, store, platform, clock, granted_device):
    monkeypatch.setattr("portal_notify.config.settings.ENCRYPTION_KEY", Fernet.generate_key().decode())
    manager = SubscriptionManager(store, platform, encrypt_endpoints=True, clock=clock)

    subscription = await manager.subscribe("user-1", granted_device)

    raw = await store.get("subs:user-1")
    assert raw[0]["endpoint_encrypted"] is True
    assert raw[0]["endpoint_token"] != subscription.endpoint_token

    loaded = await manager.get_subscription("user-1", subscription.id)
    assert loaded.endpoint_token == subscription.endpoint_token


@pytest.mark.asyncio
async def test_subscribe_with_unreadable_devices_keeps_stored_list(store, manager, platform, granted_device):
    await manager.subscribe("user-1", granted_device)
    store.fail_next_read("subs:user-1")

    with pytest.raises(StorageError):
        await manager.subscribe("user-1", DeviceInfo(device_id="device-2", permission="granted"))

    assert len(platform.registered) == 1
    assert len(await manager.list_subscriptions("user-1")) == 1


@pytest.mark.asyncio
async def test_unreadable_index_is_not_reset(store, manager, granted_device):
    await manager.subscribe("user-1", granted_device)
    store.fail_next_read("subs:index")

    with pytest.raises(StorageError):
        await manager.subscribe("user-2", granted_device)

    assert await store.get("subs:index") == ["user-1"]
    assert len(await manager.list_subscriptions("user-2")) == 1
