"""
Capabilities the notification core consumes but does not implement.

Concrete adapters: RedisKeyValueStore (redis_store.py) and HttpPushGateway
(push_gateway.py). Tests provide in-memory fakes.
"""

from typing import Any, Protocol

from portal_notify.models.domain.subscription_domain import DeviceInfo, Subscription


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None:
        """None means the key is absent. An unreachable store raises."""
        ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class PushSender(Protocol):
    async def send(self, subscription: Subscription, payload: dict) -> bool:
        """Return True on success; raise SendFailure or return False otherwise."""
        ...


class PushPlatform(Protocol):
    async def request_permission(self, device: DeviceInfo) -> bool: ...

    async def register(self, device: DeviceInfo) -> str:
        """Return the push endpoint token for the device."""
        ...

    async def validate(self, subscription: Subscription) -> bool: ...

    async def cancel(self, subscription: Subscription) -> None: ...
