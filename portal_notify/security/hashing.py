"""
Deterministic HMAC-SHA256 helpers for device fingerprinting.

Subscriptions are matched to devices by a keyed digest so raw user agents
and client device ids are never used as stored identifiers.
"""

from __future__ import annotations

import hashlib
import hmac

from portal_notify.config import settings

SECRET_MIN_LENGTH = 16  # keep configurable but catch obvious misconfiguration

__all__ = [
    "compute_hmac",
    "device_fingerprint",
]


class HashingError(RuntimeError):
    """Raised when hashing prerequisites are not satisfied."""


def _secret_bytes() -> bytes:
    secret = getattr(settings, "HASHING_SECRET", None)
    if not secret:
        raise HashingError("HASHING_SECRET is not configured")
    if len(secret) < SECRET_MIN_LENGTH:
        raise HashingError("HASHING_SECRET is too short; please rotate it")
    return secret.encode("utf-8")


def compute_hmac(value: str, *, namespace: str) -> str:
    """
    Compute a namespaced hex HMAC-SHA256 digest.

    Args:
        value: Raw string value to hash (will be normalized by caller).
        namespace: Logical namespace/salt to avoid cross-field collisions.
    """
    payload = value or ""
    scoped = f"{namespace}:{payload}"
    digest = hmac.new(_secret_bytes(), scoped.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def device_fingerprint(
    user_id: str, user_agent: str | None, platform: str | None, device_id: str | None = None
) -> str:
    """
    Fingerprint a device for one user.

    A client supplied device id wins; otherwise user agent and platform
    identify the device.
    """
    if device_id:
        raw = f"{user_id}|id|{device_id.strip()}"
    else:
        raw = f"{user_id}|ua|{(user_agent or '').strip().lower()}|{(platform or '').strip().lower()}"
    return compute_hmac(raw, namespace="device")
