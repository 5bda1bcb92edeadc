# portal_notify/services/redis_store.py
"""
Key-value persistence for preferences, subscriptions, analytics logs, the
scheduled store and the offline queue. Values are stored as JSON strings.
"""

import json
from typing import Any

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.services.redis_client import FastRedisClient

logger = get_logger(__name__)

KEY_PREFIX = "notify:"


class StorageError(Exception):
    """Raised when a read or write could not reach the store."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class RedisKeyValueStore:
    def __init__(self, client: FastRedisClient, prefix: str = KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(self._key(key))
        except Exception as e:
            raise StorageError(f"Failed to read key {key}", key=key) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Corrupt JSON value in store", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any) -> None:
        ok = await self.client.set(self._key(key), json.dumps(value, default=str))
        if not ok:
            raise StorageError(f"Failed to persist key {key}", key=key)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

