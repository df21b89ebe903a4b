"""Config package"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ..exceptions import ConfigurationException
from .strategy_config import (
    StrategySettings,
    StrategyDefaults,
    TakeProfitBracket,
    MAX_BRACKETS,
    SNIPE_MODES,
)
from ..constants import (
    DEXSCREENER_API_BASE,
    PUMPPORTAL_TRADE_API,
    MONITOR_INTERVAL_SECONDS,
    STATS_INTERVAL_SECONDS,
    MONITOR_CONCURRENCY,
    TX_CONFIRMATION_TIMEOUT,
    STATUS_POLL_DELAY,
    BUY_SETTLE_DELAY,
    BUY_RECHECK_DELAY,
)

# Load environment variables
load_dotenv()

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_KDF_SALT = "apex-sniper-wallet"
DEFAULT_KDF_COST = 2 ** 15


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast=float):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationException(f"{name} must be a number", value=value)


@dataclass
class AppConfig:
    """Process-level settings read from the environment"""
    wallet_encryption_key: str
    rpc_url: str = DEFAULT_RPC_URL
    wallet_kdf_salt: str = DEFAULT_KDF_SALT
    wallet_kdf_cost: int = DEFAULT_KDF_COST
    database_path: str = "data/apex_sniper.db"
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"

    # Loops
    monitor_interval_seconds: float = MONITOR_INTERVAL_SECONDS
    stats_interval_seconds: float = STATS_INTERVAL_SECONDS
    monitor_concurrency: int = MONITOR_CONCURRENCY

    # Swap pipeline timing
    confirm_timeout_seconds: float = TX_CONFIRMATION_TIMEOUT
    status_poll_delay_seconds: float = STATUS_POLL_DELAY
    buy_settle_delay_seconds: float = BUY_SETTLE_DELAY
    buy_recheck_delay_seconds: float = BUY_RECHECK_DELAY

    jito_enabled: bool = True
    simulate_before_send: bool = True

    pumpportal_api_url: str = PUMPPORTAL_TRADE_API
    dexscreener_api_base: str = DEXSCREENER_API_BASE
    strategy_defaults_path: Optional[str] = None


def load_config() -> AppConfig:
    """Build AppConfig from environment variables (.env already loaded)"""
    secret = os.getenv("WALLET_ENCRYPTION_KEY")
    if not secret:
        raise ConfigurationException("WALLET_ENCRYPTION_KEY is required")

    concurrency = _env_number("MONITOR_CONCURRENCY", MONITOR_CONCURRENCY, int)
    if concurrency < 1:
        raise ConfigurationException("MONITOR_CONCURRENCY must be >= 1", value=concurrency)

    return AppConfig(
        wallet_encryption_key=secret,
        rpc_url=os.getenv("RPC_URL") or DEFAULT_RPC_URL,
        wallet_kdf_salt=os.getenv("WALLET_KDF_SALT") or DEFAULT_KDF_SALT,
        wallet_kdf_cost=_env_number("WALLET_KDF_COST", DEFAULT_KDF_COST, int),
        database_path=os.getenv("DATABASE_PATH") or "data/apex_sniper.db",
        log_level=os.getenv("LOG_LEVEL") or "INFO",
        log_dir=os.getenv("LOG_DIR", "logs") or None,
        monitor_interval_seconds=_env_number("MONITOR_INTERVAL_SECONDS", MONITOR_INTERVAL_SECONDS),
        stats_interval_seconds=_env_number("STATS_INTERVAL_SECONDS", STATS_INTERVAL_SECONDS),
        monitor_concurrency=concurrency,
        confirm_timeout_seconds=_env_number("CONFIRM_TIMEOUT_SECONDS", TX_CONFIRMATION_TIMEOUT),
        status_poll_delay_seconds=_env_number("STATUS_POLL_DELAY_SECONDS", STATUS_POLL_DELAY),
        buy_settle_delay_seconds=_env_number("BUY_SETTLE_DELAY_SECONDS", BUY_SETTLE_DELAY),
        buy_recheck_delay_seconds=_env_number("BUY_RECHECK_DELAY_SECONDS", BUY_RECHECK_DELAY),
        jito_enabled=_env_bool("JITO_ENABLED", True),
        simulate_before_send=_env_bool("SIMULATE_BEFORE_SEND", True),
        pumpportal_api_url=os.getenv("PUMPPORTAL_API_URL") or PUMPPORTAL_TRADE_API,
        dexscreener_api_base=os.getenv("DEXSCREENER_API_BASE") or DEXSCREENER_API_BASE,
        strategy_defaults_path=os.getenv("STRATEGY_DEFAULTS_PATH") or None,
    )
