"""
Position Monitor

One sweep (tick) over every open/partial position of every user:

    price -> lease -> re-read row -> mark to market -> exit rules -> sell

Positions are processed concurrently up to a fixed bound. A busy position
(manual sell running) is skipped until the next tick, as is one whose price
is unavailable. Errors stay inside their position.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..constants import MONITOR_CONCURRENCY
from ..db.database import DatabaseManager
from ..utils.helpers import calculate_pnl_percent
from .exit_rules import evaluate
from .models import Position, TradeOutcome
from .position_locks import PositionLocks
from .price_feed import DexScreenerPriceFeed
from .settings_store import SettingsStore
from .trading_service import TradingService

logger = logging.getLogger(__name__)


class PositionMonitor:
    def __init__(
        self,
        db: DatabaseManager,
        trading: TradingService,
        settings: SettingsStore,
        price_feed: DexScreenerPriceFeed,
        locks: PositionLocks,
        concurrency: int = MONITOR_CONCURRENCY
    ):
        self.db = db
        self.trading = trading
        self.settings = settings
        self.price_feed = price_feed
        self.locks = locks
        self.concurrency = max(1, concurrency)

    async def tick(self) -> int:
        """Run one sweep. Returns the number of positions looked at."""
        rows = self.db.get_active_positions()
        if not rows:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(row: Dict[str, Any]):
            async with semaphore:
                await self._process(row)

        await asyncio.gather(*(guarded(row) for row in rows))
        logger.debug(f"Monitor tick done: {len(rows)} positions")
        return len(rows)

    async def _process(self, row: Dict[str, Any]):
        position_id = row["id"]
        try:
            price = await self.price_feed.get_price(row["token_id"])
            if not price:
                logger.debug(f"No price for position {position_id} ({row['token_id'][:8]}...), skipping")
                return

            async with self.locks.try_lease(position_id) as acquired:
                if not acquired:
                    logger.debug(f"Position {position_id} busy, skipping this tick")
                    return
                outcome = await self._evaluate_locked(position_id, price)
            self.trading.release_if_closed(position_id, outcome)

        except Exception:
            logger.exception(f"Monitor failed on position {position_id}")

    async def _evaluate_locked(self, position_id: int, price: float) -> Optional[TradeOutcome]:
        fresh = self.db.get_position(position_id)
        if fresh is None:
            return None
        position = Position.from_row(fresh)
        if not position.is_active:
            return None

        pnl = calculate_pnl_percent(position.entry_price, price)
        position.current_price = price
        position.unrealized_pnl_percent = pnl
        self.db.update_position_price(position_id, price, pnl)

        settings = self.settings.get_settings(position.user_id, position.mode)
        actions = evaluate(position, settings, price)
        if not actions:
            return None

        action = actions[0]
        logger.info(
            f"Exit triggered on position {position_id}: {action.reason} "
            f"(sell {action.fraction * 100:.1f}% at {pnl:+.1f}%)"
        )
        outcome = await self.trading.execute_exit(position, action, price)
        if not outcome.success:
            # Flags untouched: the same rule fires again next tick
            logger.warning(f"Exit {action.reason} failed for position {position_id}: {outcome.error}")
        return outcome
