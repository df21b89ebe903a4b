import logging

from ..db.database import DatabaseManager

logger = logging.getLogger(__name__)


class StatsAggregator:
    """Rebuilds the derived user_stats rows from positions and trades."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def run_once(self) -> int:
        users = self.db.get_users_with_positions()
        for user_id in users:
            try:
                self.db.recompute_user_stats(user_id)
            except Exception:
                logger.exception(f"Stats recompute failed for user {user_id}")
        logger.info(f"User stats refreshed for {len(users)} users")
        return len(users)
