"""
Preferences Store — per-user automation settings.

Read once per decision as an immutable snapshot; updated only by the user.
Threshold range and breaker tuning are validated here, at the boundary.
"""

from datetime import datetime, timezone
from typing import Dict

from pydantic import ValidationError

from scheduling_kernel.errors import InvalidPreferences
from scheduling_kernel.models.preferences import PreferencesUpdate, UserAutomationPreferences
from scheduling_kernel.observability.logging import get_logger

logger = get_logger(__name__)


class PreferencesStore:
    """In-memory preferences store. Unknown users get the defaults."""

    def __init__(self):
        self._prefs: Dict[str, UserAutomationPreferences] = {}

    def get(self, user_id: str) -> UserAutomationPreferences:
        """Snapshot of a user's preferences, creating defaults on first access."""
        prefs = self._prefs.get(user_id)
        if prefs is None:
            prefs = UserAutomationPreferences(
                user_id=user_id, updated_at=datetime.now(timezone.utc)
            )
            self._prefs[user_id] = prefs
            logger.info("Created default preferences", user_id=user_id)
        return prefs.model_copy(deep=True)

    def update(self, user_id: str, update: PreferencesUpdate) -> UserAutomationPreferences:
        """Apply a partial update. Raises InvalidPreferences on out-of-range values."""
        current = self.get(user_id)
        changes = update.model_dump(exclude_none=True)
        if not changes:
            logger.warning("No fields to update", user_id=user_id)
            return current

        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = datetime.now(timezone.utc)
        try:
            updated = UserAutomationPreferences.model_validate(merged)
        except ValidationError as e:
            raise InvalidPreferences(str(e)) from e

        self._prefs[user_id] = updated
        logger.info("Preferences updated", user_id=user_id, fields=sorted(changes))
        return updated.model_copy(deep=True)

    def set_automation_enabled(self, user_id: str, enabled: bool) -> UserAutomationPreferences:
        return self.update(user_id, PreferencesUpdate(automation_enabled=enabled))

    def add_vip(self, user_id: str, address: str) -> UserAutomationPreferences:
        current = self.get(user_id)
        return self.update(user_id, PreferencesUpdate(vip_list=current.vip_list + [address]))

    def remove_vip(self, user_id: str, address: str) -> UserAutomationPreferences:
        current = self.get(user_id)
        target = address.strip().lower()
        return self.update(
            user_id, PreferencesUpdate(vip_list=[a for a in current.vip_list if a != target])
        )

    def add_to_blacklist(self, user_id: str, address: str) -> UserAutomationPreferences:
        current = self.get(user_id)
        return self.update(user_id, PreferencesUpdate(blacklist=current.blacklist + [address]))

    def remove_from_blacklist(self, user_id: str, address: str) -> UserAutomationPreferences:
        current = self.get(user_id)
        target = address.strip().lower()
        return self.update(
            user_id, PreferencesUpdate(blacklist=[a for a in current.blacklist if a != target])
        )

