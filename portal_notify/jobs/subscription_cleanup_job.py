"""
Subscription cleanup job.
Revokes push subscriptions that have not been validated for
SUBSCRIPTION_INACTIVE_DAYS and drops revoked records from storage.
"""

import asyncio
from datetime import UTC, datetime

from portal_notify.config import settings
from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.security.encryption import encryption_enabled
from portal_notify.services.push_gateway import HttpPushGateway
from portal_notify.services.redis_client import FastRedisClient
from portal_notify.services.redis_store import RedisKeyValueStore
from portal_notify.services.subscription_manager import SubscriptionManager

logger = get_logger(__name__)

# Job configuration
JOB_INTERVAL_HOURS = 24


class SubscriptionCleanupJobError(Exception):
    """Custom exception for subscription cleanup job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SubscriptionCleanupJob:
    def __init__(self, subscriptions: SubscriptionManager, inactive_days: int):
        self.subscriptions = subscriptions
        self.inactive_days = inactive_days
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_result: dict | None = None

    async def run_once(self) -> dict:
        """
        Run a single cleanup pass.

        Raises:
            SubscriptionCleanupJobError: If the pass fails
        """
        if self.is_running:
            logger.warning("Subscription cleanup already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        started = datetime.now(UTC)
        try:
            self.is_running = True
            logger.info("Starting subscription cleanup job", inactive_days=self.inactive_days)

            result = await self.subscriptions.cleanup_inactive(self.inactive_days)
            result["job_run"] = "subscription_cleanup"
            result["total_duration_seconds"] = round((datetime.now(UTC) - started).total_seconds(), 2)

            self.last_run_time = datetime.now(UTC)
            self.last_result = result
            logger.info("Subscription cleanup job completed", **result)
            return result

        except Exception as e:
            logger.error("Subscription cleanup job failed", error=str(e), error_type=type(e).__name__)
            raise SubscriptionCleanupJobError(
                f"Subscription cleanup failed: {e}", operation="run_once"
            ) from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "subscription_cleanup",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_hours": JOB_INTERVAL_HOURS,
            "inactive_days": self.inactive_days,
            "last_run_metrics": self.last_result,
        }


async def _build_job() -> tuple[SubscriptionCleanupJob, FastRedisClient, HttpPushGateway]:
    redis = FastRedisClient(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
    await redis.initialize()
    gateway = HttpPushGateway(
        settings.PUSH_GATEWAY_URL, token=settings.PUSH_GATEWAY_TOKEN, timeout=settings.PUSH_GATEWAY_TIMEOUT
    )
    subscriptions = SubscriptionManager(
        RedisKeyValueStore(redis),
        gateway,
        max_renewal_attempts=settings.SUBSCRIPTION_MAX_RENEWAL_ATTEMPTS,
        encrypt_endpoints=encryption_enabled(),
    )
    return SubscriptionCleanupJob(subscriptions, settings.SUBSCRIPTION_INACTIVE_DAYS), redis, gateway


async def run_subscription_cleanup_job() -> dict:
    """Run a single iteration of the cleanup job."""
    job, redis, gateway = await _build_job()
    try:
        return await job.run_once()
    finally:
        await gateway.close()
        await redis.close()


async def start_subscription_cleanup_scheduler():
    """Run the cleanup job every JOB_INTERVAL_HOURS until cancelled."""
    logger.info("Starting subscription cleanup scheduler", interval_hours=JOB_INTERVAL_HOURS)
    job, redis, gateway = await _build_job()

    try:
        while True:
            try:
                await job.run_once()
                await asyncio.sleep(JOB_INTERVAL_HOURS * 3600)
            except SubscriptionCleanupJobError as e:
                logger.error("Error in subscription cleanup scheduler", error=str(e))
                # Wait a bit before retrying to avoid tight error loops
                await asyncio.sleep(60)
    finally:
        await gateway.close()
        await redis.close()
