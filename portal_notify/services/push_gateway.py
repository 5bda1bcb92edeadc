"""
HTTP adapter to the push gateway.

The gateway owns the wire-level push protocol (VAPID, payload encryption).
This client implements both PushSender and PushPlatform against its REST
API:

    POST   /v1/push                     deliver a payload to one endpoint
    POST   /v1/subscriptions            register a device, returns {"endpoint"}
    POST   /v1/subscriptions/validate   {"valid": bool}
    DELETE /v1/subscriptions/{id}       cancel
    GET    /healthz
"""

import asyncio

import httpx

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.subscription_domain import DeviceInfo, Subscription
from portal_notify.services.errors import SendFailure

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class PushGatewayError(Exception):
    """Non-send gateway failure (registration, validation, cancel)."""

    def __init__(self, message: str, status_code: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class HttpPushGateway:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Push gateway retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Push gateway request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Push gateway retry loop exhausted")

    # ------------------------------------------------------------------
    # PushSender
    # ------------------------------------------------------------------

    async def send(self, subscription: Subscription, payload: dict) -> bool:
        """
        Raises:
            SendFailure: Network error or non-success status (status_code set)
        """
        try:
            response = await self._request_with_retry(
                "POST",
                "/v1/push",
                json={"endpoint": subscription.endpoint_token, "payload": payload},
            )
        except httpx.RequestError as e:
            raise SendFailure(f"Push gateway unreachable: {e}") from e

        if response.is_success:
            return True
        raise SendFailure(
            f"Push gateway rejected notification ({response.status_code})",
            status_code=response.status_code,
        )

    # ------------------------------------------------------------------
    # PushPlatform
    # ------------------------------------------------------------------

    async def request_permission(self, device: DeviceInfo) -> bool:
        # the browser prompt happened client-side; the gateway only sees the answer
        return device.permission == "granted"

    async def register(self, device: DeviceInfo) -> str:
        try:
            response = await self._request_with_retry(
                "POST", "/v1/subscriptions", json=device.model_dump(mode="json")
            )
        except httpx.RequestError as e:
            raise PushGatewayError(f"Registration failed: {e}", operation="register") from e

        if not response.is_success:
            raise PushGatewayError(
                "Registration rejected by push gateway",
                status_code=response.status_code,
                operation="register",
            )
        return response.json()["endpoint"]

    async def validate(self, subscription: Subscription) -> bool:
        try:
            response = await self._request_with_retry(
                "POST",
                "/v1/subscriptions/validate",
                json={"endpoint": subscription.endpoint_token},
            )
        except httpx.RequestError as e:
            raise PushGatewayError(f"Validation failed: {e}", operation="validate") from e

        if response.status_code in (404, 410):
            return False
        if not response.is_success:
            raise PushGatewayError(
                "Validation errored", status_code=response.status_code, operation="validate"
            )
        return bool(response.json().get("valid", False))

    async def cancel(self, subscription: Subscription) -> None:
        try:
            response = await self._request_with_retry(
                "DELETE", f"/v1/subscriptions/{subscription.id}", params={"endpoint": subscription.endpoint_token}
            )
        except httpx.RequestError as e:
            raise PushGatewayError(f"Cancel failed: {e}", operation="cancel") from e

        # already gone counts as cancelled
        if not response.is_success and response.status_code not in (404, 410):
            raise PushGatewayError("Cancel rejected", status_code=response.status_code, operation="cancel")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/healthz", timeout=5.0)
            return response.is_success
        except httpx.RequestError as e:
            logger.warning("Push gateway ping failed", error=str(e))
            return False
