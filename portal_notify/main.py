# portal_notify/main.py
"""
Application entrypoint: builds Redis, the push gateway client and the
notification service in the lifespan and stores them on app.state.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from portal_notify.config import settings
from portal_notify.infrastructure.observability.logging import get_logger, setup_logging
from portal_notify.routes import health, notifications
from portal_notify.services.interfaces import KeyValueStore
from portal_notify.services.notification_service import build_notification_service
from portal_notify.services.push_gateway import HttpPushGateway
from portal_notify.services.redis_client import FastRedisClient
from portal_notify.services.redis_store import RedisKeyValueStore
from portal_notify.utils.clock import Clock, utc_now

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


def create_app(
    store: KeyValueStore | None = None,
    push_gateway=None,
    redis_client=None,
    clock: Clock = utc_now,
) -> FastAPI:
    """
    Build the application. Injected store / gateway / redis replace the
    real ones (used by tests and local tooling).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown with proper resource management."""
        logger.info("Application starting", environment=settings.environment, debug=settings.debug)

        startup_tasks = []
        redis = redis_client
        gateway = push_gateway

        try:
            if store is None:
                logger.info("Initializing Redis connection")
                redis = FastRedisClient(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
                await redis.initialize()
                kv_store = RedisKeyValueStore(redis)
            else:
                kv_store = store
            startup_tasks.append("redis")

            if gateway is None:
                gateway = HttpPushGateway(
                    settings.PUSH_GATEWAY_URL,
                    token=settings.PUSH_GATEWAY_TOKEN,
                    timeout=settings.PUSH_GATEWAY_TIMEOUT,
                )
            startup_tasks.append("push_gateway")

            service = build_notification_service(
                settings,
                kv_store,
                sender=gateway,
                platform=gateway,
                probe=gateway.ping if push_gateway is None else None,
                clock=clock,
            )
            await service.start()
            startup_tasks.append("notification_service")

            app.state.redis = redis
            app.state.push_gateway = gateway
            app.state.notifications = service

            logger.info("All services initialized successfully", services=startup_tasks)

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

            if "push_gateway" in startup_tasks and push_gateway is None:
                try:
                    await gateway.close()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up push gateway", error=str(cleanup_error))

            if "redis" in startup_tasks and redis_client is None and redis is not None:
                try:
                    await redis.close()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up Redis", error=str(cleanup_error))

            raise

        yield

        # Shutdown sequence (reverse order)
        logger.info("Application shutting down")

        shutdown_errors = []

        try:
            await app.state.notifications.stop()
        except Exception as e:
            logger.error("Error stopping notification service", error=str(e))
            shutdown_errors.append(f"Notifications: {e}")

        if push_gateway is None:
            try:
                await gateway.close()
            except Exception as e:
                logger.error("Error closing push gateway", error=str(e))
                shutdown_errors.append(f"Push gateway: {e}")

        if redis_client is None and redis is not None:
            try:
                logger.info("Closing Redis connection")
                await redis.close()
            except Exception as e:
                logger.error("Error closing Redis", error=str(e))
                shutdown_errors.append(f"Redis: {e}")

        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")

    app = FastAPI(
        title="Portal Notifications",
        description="Push notification delivery for the school portal",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(health.router)
    app.include_router(notifications.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        logger.info(
            "HTTP request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
