"""
Category policy catalog and per-user notification preferences.
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime

from portal_notify.infrastructure.observability.logging import get_logger
from portal_notify.models.domain.policy_domain import (
    CategoryPolicy,
    CategoryPreference,
    CategoryPreferenceUpdate,
    Priority,
    UserPreferences,
    UserPreferencesUpdate,
)
from portal_notify.services.errors import CategoryNotFound
from portal_notify.services.interfaces import KeyValueStore

logger = get_logger(__name__)

PREFERENCES_KEY = "prefs:{user_id}"

DEFAULT_CATALOG: tuple[CategoryPolicy, ...] = (
    CategoryPolicy(
        category_id="academic",
        name="Académico",
        priority=Priority.HIGH,
        sound_profile="academic_bell.mp3",
        vibration_pattern=[200, 100, 200],
    ),
    CategoryPolicy(
        category_id="assignment",
        name="Tareas",
        priority=Priority.HIGH,
        sound_profile="assignment_alert.mp3",
        vibration_pattern=[300, 200, 300],
    ),
    CategoryPolicy(
        category_id="evaluation",
        name="Evaluaciones",
        priority=Priority.CRITICAL,
        sound_profile="evaluation_urgent.mp3",
        vibration_pattern=[500, 300, 500, 300, 500],
        requires_interaction=True,
        respects_quiet_hours=False,
    ),
    CategoryPolicy(
        category_id="social",
        name="Social",
        priority=Priority.MEDIUM,
        sound_profile="social_ping.mp3",
        vibration_pattern=[100, 50, 100],
    ),
    CategoryPolicy(
        category_id="announcement",
        name="Avisos",
        priority=Priority.MEDIUM,
        sound_profile="announcement.mp3",
        vibration_pattern=[200, 100, 200, 100, 200],
    ),
    CategoryPolicy(
        category_id="calendar",
        name="Calendario",
        priority=Priority.MEDIUM,
        sound_profile="calendar_reminder.mp3",
        vibration_pattern=[150, 100, 150],
    ),
    CategoryPolicy(
        category_id="system",
        name="Sistema",
        priority=Priority.LOW,
        sound_profile="system_beep.mp3",
        vibration_pattern=[100],
    ),
)


class PolicyStore:
    """
    Holds the category catalog and user preferences.

    The catalog is immutable at runtime; replace_catalog() swaps it whole.
    Preferences are cached in memory and written through to the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        catalog: Iterable[CategoryPolicy] = DEFAULT_CATALOG,
        default_timezone: str = "UTC",
    ):
        self.store = store
        self.default_timezone = default_timezone
        self._catalog: dict[str, CategoryPolicy] = {p.category_id: p for p in catalog}
        self._preferences: dict[str, UserPreferences] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Category catalog
    # ------------------------------------------------------------------

    def get_category_policy(self, category_id: str) -> CategoryPolicy:
        policy = self._catalog.get(category_id)
        if policy is None:
            raise CategoryNotFound(category_id)
        return policy

    def list_categories(self) -> list[CategoryPolicy]:
        return list(self._catalog.values())

    def replace_catalog(self, policies: Iterable[CategoryPolicy]) -> None:
        new_catalog = {p.category_id: p for p in policies}
        if not new_catalog:
            raise ValueError("Category catalog cannot be empty")
        self._catalog = new_catalog
        logger.info("Category catalog replaced", categories=sorted(new_catalog))

    # ------------------------------------------------------------------
    # User preferences
    # ------------------------------------------------------------------

    def default_preferences(self) -> UserPreferences:
        """All categories enabled except system; quiet hours 22:00-07:00 every day."""
        return UserPreferences(
            enabled=True,
            per_category={
                category_id: CategoryPreference(enabled=category_id != "system")
                for category_id in self._catalog
            },
            adaptive_scheduling_enabled=True,
            timezone=self.default_timezone,
        )

    async def _load_preferences(self, user_id: str) -> UserPreferences:
        """Read through the cache. Store errors propagate and nothing is cached."""
        cached = self._preferences.get(user_id)
        if cached is not None:
            return cached

        raw = await self.store.get(PREFERENCES_KEY.format(user_id=user_id))

        if user_id in self._preferences:
            return self._preferences[user_id]

        if raw:
            try:
                preferences = UserPreferences.model_validate(raw)
            except ValueError as e:
                logger.error("Stored preferences invalid, using defaults", user_id=user_id, error=str(e))
                preferences = self.default_preferences()
        else:
            preferences = self.default_preferences()

        self._preferences[user_id] = preferences
        return preferences

    async def get_user_preferences(self, user_id: str) -> UserPreferences:
        """
        Preferences for delivery decisions.

        If the store cannot be read, defaults apply to this call only; the
        next call reads the store again.
        """
        try:
            return await self._load_preferences(user_id)
        except Exception as e:
            logger.error("Failed to load preferences, using defaults", user_id=user_id, error=str(e))
            return self.default_preferences()

    async def update_user_preferences(
        self, user_id: str, partial: UserPreferencesUpdate
    ) -> UserPreferences:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            current = await self._load_preferences(user_id)
            merged = current.merged(partial)

            await self.store.set(
                PREFERENCES_KEY.format(user_id=user_id), merged.model_dump(mode="json")
            )
            self._preferences[user_id] = merged

        logger.info(
            "User preferences updated",
            user_id=user_id,
            fields=sorted(partial.model_dump(exclude_unset=True)),
        )
        return merged

    async def mute_category(self, user_id: str, category_id: str, until: datetime) -> UserPreferences:
        """Treat a category as disabled until the given instant."""
        self.get_category_policy(category_id)
        update = UserPreferencesUpdate(
            per_category={category_id: CategoryPreferenceUpdate(muted_until=until)}
        )
        return await self.update_user_preferences(user_id, update)
