"""
Shared fixtures: a temporary database, a fast vault and a fully wired engine
over the fakes in fakes.py.
"""

import os
import sys
from types import SimpleNamespace

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from solders.pubkey import Pubkey

from apex_sniper.config.strategy_config import StrategyDefaults
from apex_sniper.core.broadcast_client import BroadcastClient
from apex_sniper.core.key_vault import KeyVault
from apex_sniper.core.position_locks import PositionLocks
from apex_sniper.core.position_monitor import PositionMonitor
from apex_sniper.core.settings_store import SettingsStore
from apex_sniper.core.trading_service import TradingService
from apex_sniper.core.tx_confirmer import TransactionConfirmer
from apex_sniper.db.database import DatabaseManager
from apex_sniper.tests.fakes import (
    FakeChain,
    FakeJito,
    FakePriceFeed,
    FakeQuotes,
    FakeRpc,
    FakeWalletReader,
)


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(str(tmp_path / "sniper.db"))


@pytest.fixture
def vault(db):
    # Low scrypt cost keeps the suite fast
    return KeyVault(db, "operator-secret", kdf_cost=2 ** 4)


@pytest.fixture
def settings(db, tmp_path):
    return SettingsStore(db, StrategyDefaults(str(tmp_path / "no-such-defaults.yaml")))


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def mint():
    return str(Pubkey.new_unique())


@pytest.fixture
def engine(db, vault, settings, chain):
    """Fully wired engine over the fake chain, every delay zeroed"""
    rpc = FakeRpc(chain)
    wallet = FakeWalletReader(chain)
    quotes = FakeQuotes(chain)
    jito = FakeJito(chain)
    price_feed = FakePriceFeed()
    locks = PositionLocks()

    broadcaster = BroadcastClient(
        rpc=rpc,
        vault=vault,
        wallet_reader=wallet,
        quotes=quotes,
        jito=jito,
        settings=settings,
        confirmer=TransactionConfirmer(rpc, timeout=0.2, status_poll_delay=0),
        buy_settle_delay=0,
        buy_recheck_delay=0,
        retry_delay=0,
    )
    trading = TradingService(
        db=db,
        vault=vault,
        broadcaster=broadcaster,
        settings=settings,
        locks=locks,
        price_feed=price_feed,
        wallet_reader=wallet,
        retry_attempts=3,
        retry_delay=0,
        lease_timeout=0.1,
    )
    monitor = PositionMonitor(db, trading, settings, price_feed, locks, concurrency=2)

    def fund(user_id: str, sol: float = 10.0) -> str:
        public_key = vault.generate(user_id)
        chain.sol[public_key] = sol
        return public_key

    def open_position(user_id: str, token: str, size: float = 1000.0, entry_price: float = 1.0,
                      mode: str = "primary") -> int:
        """Seed a position directly, with matching tokens in the wallet"""
        public_key = vault.public_key(user_id) or fund(user_id)
        chain.tokens[(public_key, token)] = chain.tokens.get((public_key, token), 0.0) + size
        return db.create_position(
            user_id=user_id,
            token_id=token,
            mode=mode,
            entry_price=entry_price,
            entry_cost=size * entry_price,
            size_bought=size,
            broadcast_id="seed-signature",
        )

    return SimpleNamespace(
        db=db,
        vault=vault,
        settings=settings,
        chain=chain,
        rpc=rpc,
        wallet=wallet,
        quotes=quotes,
        jito=jito,
        price_feed=price_feed,
        locks=locks,
        broadcaster=broadcaster,
        trading=trading,
        monitor=monitor,
        fund=fund,
        open_position=open_position,
    )
