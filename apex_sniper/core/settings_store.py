"""
Settings Store

Per-user, per-mode strategy settings plus the open-position admission gate.
"""

import logging
from typing import Any

from ..config.strategy_config import StrategyDefaults, StrategySettings
from ..db.database import DatabaseManager
from ..exceptions import InvalidSettings
from .models import SnipeMode

logger = logging.getLogger(__name__)


class SettingsStore:
    """
    Usage:
        store = SettingsStore(db, StrategyDefaults())
        settings = store.get_settings("user-1", SnipeMode.PRIMARY)
        store.update_settings("user-1", SnipeMode.PRIMARY, stop_loss_percent=40)
        if store.admits("user-1", SnipeMode.PRIMARY): ...
    """

    def __init__(self, db: DatabaseManager, defaults: StrategyDefaults):
        self.db = db
        self.defaults = defaults

    def get_settings(self, user_id: str, mode: SnipeMode) -> StrategySettings:
        """Stored settings merged over the mode defaults"""
        mode = SnipeMode(mode)
        settings = self.defaults.for_mode(mode.value)
        stored = self.db.get_strategy_settings(user_id, mode.value)
        if stored:
            settings = settings.merged(stored)
        return settings

    def update_settings(self, user_id: str, mode: SnipeMode, **changes: Any) -> StrategySettings:
        """
        Apply `changes` and persist the full struct.

        Raises:
            InvalidSettings: listing every violation; nothing is written
        """
        mode = SnipeMode(mode)
        current = self.get_settings(user_id, mode)

        unknown = [k for k in changes if k not in current.to_dict()]
        if unknown:
            raise InvalidSettings([f"unknown setting: {k}" for k in unknown])

        try:
            updated = current.merged(changes)
            errors = updated.validate()
        except (TypeError, ValueError) as e:
            raise InvalidSettings([f"malformed value: {e}"])

        if errors:
            raise InvalidSettings(errors)

        self.db.save_strategy_settings(user_id, mode.value, updated.to_dict())
        logger.info(f"Settings updated for user {user_id} ({mode.value}): {sorted(changes)}")
        return updated

    def reset_settings(self, user_id: str, mode: SnipeMode) -> StrategySettings:
        """Drop back to the operator defaults for this mode"""
        mode = SnipeMode(mode)
        defaults = self.defaults.for_mode(mode.value)
        self.db.save_strategy_settings(user_id, mode.value, defaults.to_dict())
        return defaults

    def admits(self, user_id: str, mode: SnipeMode, pending: int = 0) -> bool:
        """
        True when the user may open another position in `mode`.

        The cap comes from the mode's settings but counts open and partial
        positions across all modes, plus `pending` buys still in flight;
        0 means unlimited.
        """
        limit = self.get_settings(user_id, mode).max_open_positions
        if limit == 0:
            return True
        active = self.db.count_active_positions(user_id) + pending
        if active >= limit:
            logger.info(f"Admission denied for user {user_id}: {active}/{limit} positions open")
            return False
        return True
