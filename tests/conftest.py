import json
from collections import Counter
from datetime import UTC, datetime, timedelta

import pytest

from portal_notify.auth.verify import auth_dependency, require_admin
from portal_notify.config import Settings
from portal_notify.models.domain.subscription_domain import DeviceInfo
from portal_notify.services.errors import SendFailure
from portal_notify.services.notification_service import build_notification_service
from portal_notify.services.redis_store import StorageError

# Tuesday, 10:00 in America/Mexico_City (UTC-6, no DST)
TUESDAY_10AM_MX = datetime(2026, 3, 10, 16, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def security_settings(monkeypatch):
    monkeypatch.setattr("portal_notify.config.settings.HASHING_SECRET", "test-hashing-secret-0123456789")
    monkeypatch.setattr("portal_notify.config.settings.ENCRYPTION_KEY", None)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app, admin: bool = False):
        app.dependency_overrides[auth_dependency] = auth_override
        if admin:
            app.dependency_overrides[require_admin] = lambda: {"sub": "admin-1", "role": "admin"}

    return _apply


class FakeStore:
    """In-memory KeyValueStore; values go through JSON like the Redis adapter."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail_writes = False
        self.read_failures: Counter[str] = Counter()

    def fail_next_read(self, prefix: str, times: int = 1) -> None:
        """Make the next `times` reads of keys starting with `prefix` raise."""
        self.read_failures[prefix] += times

    async def get(self, key: str):
        for prefix, remaining in self.read_failures.items():
            if remaining and key.startswith(prefix):
                self.read_failures[prefix] -= 1
                raise StorageError(f"Failed to read key {key}", key=key)
        raw = self.data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value) -> None:
        if self.fail_writes:
            raise ConnectionError("store unavailable")
        self.data[key] = json.dumps(value, default=str)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FakeClock:
    def __init__(self, now: datetime = TUESDAY_10AM_MX):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePushPlatform:
    """Grants permission per DeviceInfo.permission; endpoints are sequential."""

    def __init__(self):
        self.registered: list[DeviceInfo] = []
        self.cancelled: list[str] = []
        self.valid = True
        self.fail_register = False
        self.fail_cancel = False

    async def request_permission(self, device: DeviceInfo) -> bool:
        return device.permission == "granted"

    async def register(self, device: DeviceInfo) -> str:
        if self.fail_register:
            raise ConnectionError("registration failed")
        self.registered.append(device)
        return f"https://push.example/endpoint-{len(self.registered)}"

    async def validate(self, subscription) -> bool:
        return self.valid

    async def cancel(self, subscription) -> None:
        self.cancelled.append(subscription.id)
        if self.fail_cancel:
            raise ConnectionError("cancel failed")


class FakeSender:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail = False
        self.status_code: int | None = None

    async def send(self, subscription, payload: dict) -> bool:
        self.calls.append((subscription.id, payload))
        if self.fail:
            raise SendFailure("gateway down", status_code=self.status_code)
        return True


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform():
    return FakePushPlatform()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def granted_device():
    return DeviceInfo(user_agent="Mozilla/5.0 Test", platform="web", device_id="device-1", permission="granted")


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="test",
        DEFAULT_TIMEZONE="America/Mexico_City",
        BULK_INTER_BATCH_DELAY_MS=0,
        OFFLINE_BACKOFF_BASE_SECONDS=30.0,
    )


@pytest.fixture
def make_service(test_settings, store, sender, platform, clock):
    """Build the whole notification stack on fakes; the caller starts/stops it."""

    def _make(**overrides):
        config = test_settings.model_copy(update=overrides) if overrides else test_settings
        return build_notification_service(config, store, sender=sender, platform=platform, clock=clock)

    return _make


class FakePushGateway(FakePushPlatform, FakeSender):
    """Sender and platform in one object, like HttpPushGateway."""

    def __init__(self):
        FakePushPlatform.__init__(self)
        FakeSender.__init__(self)
        self.reachable = True
        self.closed = False

    async def ping(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self, healthy: bool = True):
        self.healthy = healthy

    async def ping(self) -> bool:
        if not self.healthy:
            raise ConnectionError("redis down")
        return True


@pytest.fixture
def gateway():
    return FakePushGateway()


@pytest.fixture
def app_factory(store, gateway, clock):
    """create_app() on in-memory fakes; enter the TestClient to run the lifespan."""
    from portal_notify.main import create_app

    def _factory(redis_healthy: bool = True):
        return create_app(
            store=store, push_gateway=gateway, redis_client=FakeRedis(redis_healthy), clock=clock
        )

    return _factory
