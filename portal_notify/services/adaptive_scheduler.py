"""
Adaptive delivery scheduling.

Decides when a notification should go out for a user:
- disabled or muted categories are rejected (CategoryDisabled)
- quiet hours defer to the window's end boundary, or to an earlier learned
  active hour when one falls outside the window
- disengaged users get an escalated, immediate notification
- everything else is immediate

Quiet-hour membership is inclusive at both ends. The end minute itself is
the release boundary: a deferred entry firing at 07:00 for a 22:00-07:00
window is delivered instead of being deferred another day.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.notification_domain import Notification
from portal_notify.models.domain.policy_domain import CategoryPolicy, QuietHours, UserPreferences
from portal_notify.services.behavior_analytics import NEUTRAL_SCORE, BehaviorAnalytics
from portal_notify.services.errors import CategoryDisabled

logger = get_logger(__name__)

URGENCY_MARKER = "¡Importante! "

# weekend rules can shift the end of a window by at most a day
MAX_SCAN_MINUTES = 2 * 24 * 60


@dataclass(slots=True)
class SchedulingDecision:
    notification: Notification
    deliver_at: datetime
    reason: str  # immediate | quiet_hours | active_hour | escalated

    @property
    def deferred(self) -> bool:
        return self.reason in ("quiet_hours", "active_hour")


def resolve_timezone(name: str | None) -> tzinfo:
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, falling back to UTC", timezone=name)
        return UTC


def is_quiet_hour(local_time: datetime, quiet_hours: QuietHours) -> bool:
    return quiet_hours.contains(local_time)


def _holds_delivery(local_time: datetime, quiet_hours: QuietHours) -> bool:
    """Inside the window and not yet at its release boundary."""
    if not quiet_hours.contains(local_time):
        return False
    minute_of_day = local_time.hour * 60 + local_time.minute
    return minute_of_day != quiet_hours.end_minutes


def next_quiet_end(local_now: datetime, quiet_hours: QuietHours) -> datetime:
    """First minute after `local_now` at which delivery is no longer held."""
    candidate = local_now.replace(second=0, microsecond=0)
    for _ in range(MAX_SCAN_MINUTES):
        candidate += timedelta(minutes=1)
        if not _holds_delivery(candidate, quiet_hours):
            return candidate
    # a window covering every minute never releases; deliver after the scan horizon
    return candidate


def next_active_hour(
    local_now: datetime, active_hours: set[int], quiet_hours: QuietHours
) -> datetime | None:
    """Start of the next learned active hour that lies outside quiet hours."""
    if not active_hours:
        return None
    top_of_hour = local_now.replace(minute=0, second=0, microsecond=0)
    for offset in range(1, 25):
        candidate = top_of_hour + timedelta(hours=offset)
        if candidate.hour in active_hours and not _holds_delivery(candidate, quiet_hours):
            return candidate
    return None


class AdaptiveScheduler:
    def __init__(self, analytics: BehaviorAnalytics, disengaged_threshold: float = 0.3):
        self.analytics = analytics
        self.disengaged_threshold = disengaged_threshold

    async def plan(
        self,
        notification: Notification,
        user_id: str,
        preferences: UserPreferences,
        policy: CategoryPolicy,
        now: datetime,
    ) -> SchedulingDecision:
        """
        Compute the delivery time for a notification.

        Args:
            notification: Notification to schedule
            user_id: Recipient
            preferences: Recipient's resolved preferences
            policy: Policy for the notification's category
            now: Current instant (timezone-aware)

        Returns:
            SchedulingDecision with the (possibly personalized) notification

        Raises:
            CategoryDisabled: Notifications or the category are off or muted
        """
        category = notification.category
        category_pref = preferences.category(category)

        if not preferences.enabled:
            raise CategoryDisabled(category, reason="notifications_disabled")
        if not category_pref.enabled:
            raise CategoryDisabled(category)
        if not category_pref.is_active(now):
            raise CategoryDisabled(category, reason="muted")

        tz = resolve_timezone(preferences.timezone)
        local_now = now.astimezone(tz)

        if policy.respects_quiet_hours and _holds_delivery(local_now, preferences.quiet_hours):
            deliver_at = next_quiet_end(local_now, preferences.quiet_hours)
            reason = "quiet_hours"

            if preferences.adaptive_scheduling_enabled:
                try:
                    active = await self.analytics.active_hours(user_id, tz)
                except Exception as e:
                    logger.warning("Active hours unavailable", user_id=user_id, error=str(e))
                    active = set()
                active_slot = next_active_hour(local_now, active, preferences.quiet_hours)
                if active_slot is not None and active_slot < deliver_at:
                    deliver_at = active_slot
                    reason = "active_hour"

            logger.debug(
                "Delivery deferred by quiet hours",
                user_id=user_id,
                notification_id=notification.id,
                deliver_at=deliver_at.isoformat(),
                reason=reason,
            )
            return SchedulingDecision(notification, deliver_at.astimezone(UTC), reason)

        # retried notifications were already escalated on their first pass
        already_escalated = notification.title.startswith(URGENCY_MARKER)

        if preferences.adaptive_scheduling_enabled and not already_escalated:
            try:
                score = await self.analytics.engagement_score(user_id)
            except Exception as e:
                logger.warning("Engagement score unavailable", user_id=user_id, error=str(e))
                score = NEUTRAL_SCORE
            if score < self.disengaged_threshold:
                escalated = notification.model_copy(
                    update={
                        "title": f"{URGENCY_MARKER}{notification.title}",
                        "priority": notification.priority.raised(),
                    }
                )
                logger.debug(
                    "Escalating notification for disengaged user",
                    user_id=user_id,
                    notification_id=notification.id,
                    engagement_score=round(score, 3),
                )
                return SchedulingDecision(escalated, now, "escalated")

        return SchedulingDecision(notification, now, "immediate")
