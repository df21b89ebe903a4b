"""
Application context: builds and owns every engine component.

There are no module-level engine singletons; whoever needs a component gets
it from the context (or is handed it at construction).
"""

import logging
from dataclasses import dataclass

import aiohttp
import httpx
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed

from ..config import AppConfig
from ..config.strategy_config import StrategyDefaults
from ..db.database import DatabaseManager
from ..logger import TradeLogger
from .broadcast_client import BroadcastClient
from .jito_client import JitoClient
from .key_vault import KeyVault
from .position_locks import PositionLocks
from .position_monitor import PositionMonitor
from .price_feed import DexScreenerPriceFeed
from .quote_client import PumpPortalClient
from .settings_store import SettingsStore
from .stats_aggregator import StatsAggregator
from .trading_service import TradingService
from .tx_confirmer import TransactionConfirmer
from .wallet import WalletReader

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: AppConfig
    db: DatabaseManager
    rpc: AsyncClient
    session: aiohttp.ClientSession
    vault: KeyVault
    settings: SettingsStore
    locks: PositionLocks
    price_feed: DexScreenerPriceFeed
    broadcaster: BroadcastClient
    trading: TradingService
    monitor: PositionMonitor
    stats: StatsAggregator

    @classmethod
    async def create(cls, config: AppConfig) -> "AppContext":
        """Wire everything from config. Must run inside the event loop."""
        db = DatabaseManager(config.database_path)
        vault = KeyVault(
            db,
            config.wallet_encryption_key,
            salt=config.wallet_kdf_salt,
            kdf_cost=config.wallet_kdf_cost,
        )
        settings = SettingsStore(db, StrategyDefaults(config.strategy_defaults_path))

        rpc = AsyncClient(config.rpc_url, commitment=Confirmed)
        session = aiohttp.ClientSession()
        price_feed = DexScreenerPriceFeed(config.dexscreener_api_base, client=httpx.AsyncClient(timeout=10.0))
        wallet_reader = WalletReader(rpc)
        locks = PositionLocks()

        broadcaster = BroadcastClient(
            rpc=rpc,
            vault=vault,
            wallet_reader=wallet_reader,
            quotes=PumpPortalClient(session, api_url=config.pumpportal_api_url),
            jito=JitoClient(session) if config.jito_enabled else None,
            settings=settings,
            confirmer=TransactionConfirmer(
                rpc,
                timeout=config.confirm_timeout_seconds,
                status_poll_delay=config.status_poll_delay_seconds,
            ),
            jito_enabled=config.jito_enabled,
            simulate_before_send=config.simulate_before_send,
            buy_settle_delay=config.buy_settle_delay_seconds,
            buy_recheck_delay=config.buy_recheck_delay_seconds,
        )
        trading = TradingService(
            db=db,
            vault=vault,
            broadcaster=broadcaster,
            settings=settings,
            locks=locks,
            price_feed=price_feed,
            wallet_reader=wallet_reader,
            trade_logger=TradeLogger(),
        )
        monitor = PositionMonitor(
            db, trading, settings, price_feed, locks, concurrency=config.monitor_concurrency
        )

        logger.info(f"Engine wired (rpc={config.rpc_url}, jito={'on' if config.jito_enabled else 'off'})")
        return cls(
            config=config,
            db=db,
            rpc=rpc,
            session=session,
            vault=vault,
            settings=settings,
            locks=locks,
            price_feed=price_feed,
            broadcaster=broadcaster,
            trading=trading,
            monitor=monitor,
            stats=StatsAggregator(db),
        )

    async def close(self):
        """Release network resources"""
        await self.price_feed.close()
        if not self.session.closed:
            await self.session.close()
        await self.rpc.close()
        logger.info("Engine resources closed")
