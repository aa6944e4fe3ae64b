"""User preferences persisted in the state database."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .config import ScheduleConfig
from .state_db import AgentStateDB

logger = logging.getLogger(__name__)


class PreferencesStore:
    """Loads and saves ScheduleConfig through the state database."""

    def __init__(self, db: AgentStateDB):
        self.db = db

    def load(self) -> ScheduleConfig:
        """
        Load preferences, falling back to defaults for invalid values.
        """
        stored = self.db.get_preferences()
        known = {k: v for k, v in stored.items() if k in ScheduleConfig.model_fields}
        try:
            return ScheduleConfig(**known)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid stored preferences: {e}")
            return ScheduleConfig()

    def save(self, config: ScheduleConfig) -> None:
        for key, value in config.model_dump().items():
            self.db.set_preference(key, value)

    def set_interval(self, minutes: int) -> ScheduleConfig:
        """Validate and persist a new scan interval."""
        config = self.load()
        config.interval_minutes = minutes
        self.db.set_preference("interval_minutes", minutes)
        return config

    def set_notifications_enabled(self, enabled: bool) -> ScheduleConfig:
        config = self.load()
        config.notifications_enabled = enabled
        self.db.set_preference("notifications_enabled", enabled)
        return config
