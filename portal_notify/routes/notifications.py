"""
Notification API Routes
HTTP endpoints for push subscriptions, preferences, sending and engagement.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from portal_notify.auth.verify import auth_dependency, require_admin
from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.api.notification_request import (
    BulkNotifyRequest,
    InteractionRequest,
    MuteRequest,
    NetworkStateRequest,
    NotifyRequest,
    RemindLaterRequest,
    SubscribeRequest,
)
from portal_notify.models.api.notification_response import (
    BulkDeliveryResponse,
    CancelResponse,
    DeliveryResponse,
    NetworkStateResponse,
    SubscriptionResponse,
)
from portal_notify.models.domain.notification_domain import InteractionAction
from portal_notify.models.domain.policy_domain import UserPreferences, UserPreferencesUpdate
from portal_notify.models.domain.subscription_domain import DeviceInfo
from portal_notify.services.errors import (
    AlreadySubscribed,
    CategoryNotFound,
    PermissionDenied,
    SubscriptionNotFound,
)
from portal_notify.services.notification_service import NotificationService
from portal_notify.services.push_gateway import PushGatewayError

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notifications


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def subscribe(
    body: SubscribeRequest,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    """Register the caller's device for push notifications."""
    user_id = _user_id(claims)

    try:
        subscription = await service.subscribe(user_id, DeviceInfo(**body.model_dump()))
    except PermissionDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except AlreadySubscribed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PushGatewayError as e:
        logger.error("Push registration failed", user_id=user_id, error=str(e), status_code=e.status_code)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Push gateway unavailable")

    return SubscriptionResponse.from_domain(subscription)


@router.get("/subscriptions", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    subscriptions = await service.list_subscriptions(_user_id(claims))
    return [SubscriptionResponse.from_domain(s) for s in subscriptions]


@router.get("/subscriptions/stats")
async def subscription_stats(
    claims: dict = Depends(require_admin),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.subscription_stats()


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def unsubscribe(
    subscription_id: str,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    """Revoke a subscription. Repeating the call is harmless."""
    try:
        subscription = await service.unsubscribe(_user_id(claims), subscription_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return SubscriptionResponse.from_domain(subscription)


# ----------------------------------------------------------------------
# Preferences
# ----------------------------------------------------------------------


@router.get("/preferences", response_model=UserPreferences)
async def get_preferences(
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.get_preferences(_user_id(claims))


@router.patch("/preferences", response_model=UserPreferences)
async def update_preferences(
    body: UserPreferencesUpdate,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    """Partial update; omitted fields keep their stored values."""
    user_id = _user_id(claims)
    try:
        return await service.update_preferences(user_id, body)
    except Exception as e:
        logger.error("Error updating preferences", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update preferences",
        )


@router.post("/categories/{category}/mute", response_model=UserPreferences)
async def mute_category(
    category: str,
    body: MuteRequest,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    try:
        return await service.mute_category(_user_id(claims), category, body.minutes)
    except CategoryNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ----------------------------------------------------------------------
# Sending
# ----------------------------------------------------------------------


@router.post("/notify", response_model=DeliveryResponse)
async def notify(
    body: NotifyRequest,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    """Send a notification to the caller's own devices."""
    try:
        result = await service.notify(_user_id(claims), body.category, body.title, body.body, body.data)
    except CategoryNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return DeliveryResponse.from_result(result)


@router.post("/send", response_model=BulkDeliveryResponse)
async def send_bulk(
    body: BulkNotifyRequest,
    claims: dict = Depends(require_admin),
    service: NotificationService = Depends(get_notification_service),
):
    """Broadcast one notification to many users in rate-friendly batches."""
    try:
        result = await service.notify_bulk(body.user_ids, body.category, body.title, body.body, body.data)
    except CategoryNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(
        "Bulk notification requested",
        admin_id=claims.get("sub"),
        category=body.category,
        recipients=len(body.user_ids),
        successful=result.successful,
        failed=result.failed,
    )
    return BulkDeliveryResponse(
        successful=result.successful,
        failed=result.failed,
        batches=result.batches,
        results=[DeliveryResponse.from_result(r) for r in result.results],
    )


@router.post("/remind", response_model=DeliveryResponse, status_code=status.HTTP_202_ACCEPTED)
async def remind_later(
    body: RemindLaterRequest,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    try:
        result = await service.remind_later(
            _user_id(claims), body.notification_id, body.category, body.title, body.body, body.minutes
        )
    except CategoryNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return DeliveryResponse.from_result(result)


@router.delete("/scheduled/{notification_id}", response_model=CancelResponse)
async def cancel_scheduled(
    notification_id: str,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    user_id = _user_id(claims)
    owned = {e.notification.id for e in await service.pending_scheduled(user_id)}
    if notification_id not in owned:
        return CancelResponse(notification_id=notification_id, cancelled=False)
    return CancelResponse(notification_id=notification_id, cancelled=await service.cancel_scheduled(notification_id))


# ----------------------------------------------------------------------
# Engagement
# ----------------------------------------------------------------------


@router.post("/interactions", status_code=status.HTTP_204_NO_CONTENT)
async def record_interaction(
    body: InteractionRequest,
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    await service.record_interaction(
        _user_id(claims),
        body.notification_id,
        body.category,
        InteractionAction(body.action),
        body.response_time_ms,
    )


@router.get("/metrics")
async def get_metrics(
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.get_metrics(_user_id(claims))


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_history(
    claims: dict = Depends(auth_dependency),
    service: NotificationService = Depends(get_notification_service),
):
    await service.clear_history(_user_id(claims))


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------


@router.get("/offline")
async def offline_status(
    claims: dict = Depends(require_admin),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.offline_status()


@router.post("/offline/drain")
async def drain_offline(
    claims: dict = Depends(require_admin),
    service: NotificationService = Depends(get_notification_service),
):
    report = await service.drain_offline()
    return report.to_dict()


@router.post("/network", response_model=NetworkStateResponse)
async def set_network_state(
    body: NetworkStateRequest,
    claims: dict = Depends(require_admin),
    service: NotificationService = Depends(get_notification_service),
):
    changed = service.set_network(body.online)
    return NetworkStateResponse(online=body.online, changed=changed)
