# models/domain/policy_domain.py
"""
Category policy and user preference domain models.

Policies are a static catalog replaced as a whole; preferences are per user
and only change through UserPreferences.merged().
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    def raised(self) -> "Priority":
        """One level up, CRITICAL stays CRITICAL."""
        return _PRIORITY_ORDER[min(self.rank + 1, len(_PRIORITY_ORDER) - 1)]


_PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]


class CategoryPolicy(BaseModel):
    """Delivery policy for one notification category."""

    model_config = ConfigDict(frozen=True)

    category_id: str
    name: str
    priority: Priority
    sound_profile: str
    vibration_pattern: list[int] = Field(default_factory=list)
    requires_interaction: bool = False
    respects_quiet_hours: bool = True


def _parse_hhmm(value: str) -> int:
    hours, minutes = value.split(":")
    hour, minute = int(hours), int(minutes)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value}")
    return hour * 60 + minute


class QuietHours(BaseModel):
    enabled: bool = True
    start: str = "22:00"
    end: str = "07:00"
    weekends_also: bool = True

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        _parse_hhmm(value)
        return value

    @property
    def start_minutes(self) -> int:
        return _parse_hhmm(self.start)

    @property
    def end_minutes(self) -> int:
        return _parse_hhmm(self.end)

    def contains(self, local_time: datetime) -> bool:
        """
        Check whether a local datetime falls inside the window.

        Times are compared as minutes since midnight. A window with
        start > end wraps midnight. Both boundaries are inclusive.
        """
        if not self.enabled:
            return False

        # Saturday=5, Sunday=6
        if not self.weekends_also and local_time.weekday() >= 5:
            return False

        current = local_time.hour * 60 + local_time.minute
        start, end = self.start_minutes, self.end_minutes

        if start > end:
            return current >= start or current <= end
        return start <= current <= end


class CategoryPreference(BaseModel):
    enabled: bool = True
    priority: Priority | None = None
    muted_until: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        return self.muted_until is None or now >= self.muted_until


class QuietHoursUpdate(BaseModel):
    enabled: bool | None = None
    start: str | None = None
    end: str | None = None
    weekends_also: bool | None = None


class CategoryPreferenceUpdate(BaseModel):
    enabled: bool | None = None
    priority: Priority | None = None
    muted_until: datetime | None = None


class UserPreferencesUpdate(BaseModel):
    """Partial preferences; unset fields keep their current value."""

    enabled: bool | None = None
    per_category: dict[str, CategoryPreferenceUpdate] | None = None
    quiet_hours: QuietHoursUpdate | None = None
    adaptive_scheduling_enabled: bool | None = None
    timezone: str | None = None


class UserPreferences(BaseModel):
    enabled: bool = True
    per_category: dict[str, CategoryPreference] = Field(default_factory=dict)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    adaptive_scheduling_enabled: bool = True
    timezone: str = "UTC"

    def category(self, category_id: str) -> CategoryPreference:
        return self.per_category.get(category_id, CategoryPreference())

    def merged(self, update: UserPreferencesUpdate) -> "UserPreferences":
        """Return a new preference set with the update's explicit fields applied."""
        data = self.model_dump()

        if update.enabled is not None:
            data["enabled"] = update.enabled
        if update.adaptive_scheduling_enabled is not None:
            data["adaptive_scheduling_enabled"] = update.adaptive_scheduling_enabled
        if update.timezone is not None:
            data["timezone"] = update.timezone

        if update.quiet_hours is not None:
            data["quiet_hours"].update(update.quiet_hours.model_dump(exclude_none=True))

        if update.per_category:
            for category_id, category_update in update.per_category.items():
                current = data["per_category"].get(category_id, CategoryPreference().model_dump())
                # explicit nulls clear priority/muted_until overrides
                changes = category_update.model_dump(exclude_unset=True)
                if changes.get("enabled") is None:
                    changes.pop("enabled", None)
                current.update(changes)
                data["per_category"][category_id] = current

        return UserPreferences.model_validate(data)
