from solders.pubkey import Pubkey

# ============================================
# PROGRAM IDS
# ============================================
PUMP_PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
SYSTEM_PROGRAM = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

LAMPORTS_PER_SOL = 1_000_000_000

# ============================================
# SWAP LIMITS
# ============================================
# Below this the curve rounds the trade away and nothing registers on-chain
MIN_SWAP_SOL = 0.001

# Network fee + rent for a fresh token account, on top of amount + tip
FEE_HEADROOM_LAMPORTS = 50_000

# PumpPortal rejects a zero priority fee
MIN_PRIORITY_FEE_SOL = 0.0001

SECRET_KEY_LENGTH = 64

# ============================================
# API ENDPOINTS
# ============================================
PUMPPORTAL_TRADE_API = "https://pumpportal.fun/api/trade-local"
DEXSCREENER_API_BASE = "https://api.dexscreener.com"

JITO_BLOCK_ENGINES = [
    "https://mainnet.block-engine.jito.wtf",
    "https://amsterdam.mainnet.block-engine.jito.wtf",
    "https://frankfurt.mainnet.block-engine.jito.wtf",
    "https://ny.mainnet.block-engine.jito.wtf",
    "https://tokyo.mainnet.block-engine.jito.wtf",
]

JITO_TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4bVrUg5ABG4uw5wLPfAuquc",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]

# ============================================
# PROGRAM ERROR CODES (custom instruction errors)
# ============================================
SLIPPAGE_ERROR_CODES = {101, 6002, 6003}
CURVE_CLOSED_ERROR_CODES = {102, 6000, 6005}
INSUFFICIENT_FUNDS_ERROR_CODES = {1, 100}

SLIPPAGE_LOG_MARKERS = ("slippage", "toomuchsolrequired", "toolittlesolreceived")
CURVE_CLOSED_LOG_MARKERS = ("bondingcurvecomplete", "curve is complete", "not available for trading")
INSUFFICIENT_FUNDS_LOG_MARKERS = ("insufficientfunds", "insufficient funds", "insufficient lamports")

# ============================================
# MONITORING CONSTANTS
# ============================================
MONITOR_INTERVAL_SECONDS = 30
STATS_INTERVAL_SECONDS = 30 * 60
MONITOR_CONCURRENCY = 5

TX_CONFIRMATION_TIMEOUT = 60      # Blocking confirmation race
STATUS_POLL_DELAY = 3.0           # One-shot status poll after a timeout
BUY_SETTLE_DELAY = 2.0            # First token balance read after a buy
BUY_RECHECK_DELAY = 5.0           # Second read if the first shows nothing
BROADCAST_ATTEMPTS = 2            # Direct RPC submission attempts
RPC_SEND_MAX_RETRIES = 3          # Node-side rebroadcasts per submission
SELL_LEASE_TIMEOUT = 30.0         # Manual sell wait for a busy position
