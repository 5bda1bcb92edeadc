# portal_notify/routes/health.py
"""
Health check endpoints with Redis and push gateway monitoring.
"""

import time

from fastapi import APIRouter, Request

from portal_notify.config import settings
from portal_notify.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "portal-notify"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check with all dependencies.
    """
    checks = {}
    overall_ok = True

    # 1) Redis health check
    t0 = time.time()
    try:
        redis_ok = await request.app.state.redis.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
        log_health_check("redis", bool(redis_ok), latency_ms)
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        log_health_check("redis", False, round((time.time() - t0) * 1000, 1), error=str(e))
        overall_ok = False

    # 2) Push gateway reachability
    t0 = time.time()
    try:
        gateway_ok = await request.app.state.push_gateway.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["push_gateway"] = {"ok": gateway_ok, "latency_ms": latency_ms}
        log_health_check("push_gateway", gateway_ok, latency_ms)
        overall_ok = overall_ok and gateway_ok
    except Exception as e:
        checks["push_gateway"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 3) Notification pipeline state
    service = request.app.state.notifications
    checks["delivery"] = {
        "ok": service.scheduled.running,
        "network_online": service.network.is_online(),
        "scheduled_pending": len(service.scheduled),
        "offline_queue_size": await service.offline.size(),
    }
    overall_ok = overall_ok and service.scheduled.running

    # 4) Configuration checks
    config_issues = []
    if not settings.JWT_SECRET:
        config_issues.append("JWT_SECRET not set")
    if not settings.HASHING_SECRET:
        config_issues.append("HASHING_SECRET not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues if config_issues else None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
