import json

import httpx
import pytest

from portal_notify.models.domain.subscription_domain import DeviceInfo, Subscription
from portal_notify.services.errors import SendFailure
from portal_notify.services.push_gateway import HttpPushGateway, PushGatewayError


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    async def _no_sleep(_delay):
        return None

    monkeypatch.setattr("portal_notify.services.push_gateway.asyncio.sleep", _no_sleep)


@pytest.fixture
def subscription():
    return Subscription(
        id="sub_1",
        user_id="user-1",
        endpoint_token="https://push.example/endpoint-1",
        device_fingerprint="fp",
    )


def _gateway(handler) -> HttpPushGateway:
    return HttpPushGateway("https://gateway.test", token="secret", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_send_posts_payload(subscription):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    gateway = _gateway(handler)
    try:
        assert await gateway.send(subscription, {"title": "Aviso"}) is True
    finally:
        await gateway.close()

    request = seen[0]
    assert request.url.path == "/v1/push"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "endpoint": "https://push.example/endpoint-1",
        "payload": {"title": "Aviso"},
    }


@pytest.mark.asyncio
async def test_send_retries_transient_status(subscription):
    responses = iter([httpx.Response(503), httpx.Response(503), httpx.Response(200)])
    gateway = _gateway(lambda request: next(responses))
    try:
        assert await gateway.send(subscription, {}) is True
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_gone_endpoint_raises_with_status(subscription):
    gateway = _gateway(lambda request: httpx.Response(410))
    try:
        with pytest.raises(SendFailure) as exc:
            await gateway.send(subscription, {})
    finally:
        await gateway.close()

    assert exc.value.status_code == 410


@pytest.mark.asyncio
async def test_unreachable_gateway_is_send_failure(subscription):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler)
    try:
        with pytest.raises(SendFailure) as exc:
            await gateway.send(subscription, {})
    finally:
        await gateway.close()

    assert exc.value.status_code is None


@pytest.mark.asyncio
async def test_register_returns_endpoint():
    def handler(request):
        assert json.loads(request.content)["device_id"] == "device-1"
        return httpx.Response(201, json={"endpoint": "https://push.example/endpoint-9"})

    gateway = _gateway(handler)
    try:
        endpoint = await gateway.register(DeviceInfo(device_id="device-1", permission="granted"))
    finally:
        await gateway.close()

    assert endpoint == "https://push.example/endpoint-9"


@pytest.mark.asyncio
async def test_register_rejected():
    gateway = _gateway(lambda request: httpx.Response(400))
    try:
        with pytest.raises(PushGatewayError) as exc:
            await gateway.register(DeviceInfo(permission="granted"))
    finally:
        await gateway.close()

    assert exc.value.operation == "register"


@pytest.mark.asyncio
async def test_permission_follows_client_report():
    gateway = _gateway(lambda request: httpx.Response(500))
    try:
        assert await gateway.request_permission(DeviceInfo(permission="granted")) is True
        assert await gateway.request_permission(DeviceInfo(permission="denied")) is False
    finally:
        await gateway.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(200, json={"valid": True}), True),
        (httpx.Response(200, json={"valid": False}), False),
        (httpx.Response(410), False),
        (httpx.Response(404), False),
    ],
)
async def test_validate(subscription, response, expected):
    gateway = _gateway(lambda request: response)
    try:
        assert await gateway.validate(subscription) is expected
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_cancel_treats_missing_as_done(subscription):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(404)

    gateway = _gateway(handler)
    try:
        await gateway.cancel(subscription)
    finally:
        await gateway.close()

    assert seen[0].method == "DELETE"
    assert seen[0].url.path == "/v1/subscriptions/sub_1"


@pytest.mark.asyncio
async def test_ping():
    healthy = _gateway(lambda request: httpx.Response(200))

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    down = _gateway(refuse)
    try:
        assert await healthy.ping() is True
        assert await down.ping() is False
    finally:
        await healthy.close()
        await down.close()
