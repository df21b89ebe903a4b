"""
Custom exception classes for the sniper engine.

Every exception carries a short human-readable ``user_message`` for the chat
and dashboard collaborators, and keeps the broadcast id (transaction
signature) whenever one exists so a human can look the trade up on-chain.
"""

from enum import Enum
from typing import List, Optional


class FailureKind(str, Enum):
    """Closed taxonomy shared by simulation and on-chain failures."""
    SLIPPAGE = "slippage"
    CURVE_CLOSED = "curve_closed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN = "unknown"


FAILURE_MESSAGES = {
    FailureKind.SLIPPAGE: "Slippage exceeded - try increasing slippage",
    FailureKind.CURVE_CLOSED: "Bonding curve complete - token no longer tradable here",
    FailureKind.INSUFFICIENT_FUNDS: "Insufficient funds in wallet",
    FailureKind.UNKNOWN: "Transaction failed",
}


class SniperException(Exception):
    """Base exception for all engine errors."""

    retryable = False
    default_message = "Trade failed"

    def __init__(self, message: Optional[str] = None, broadcast_id: Optional[str] = None, **context):
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.broadcast_id = broadcast_id
        self.context = context

    @property
    def user_message(self) -> str:
        if self.broadcast_id:
            return f"{self.message} (tx: {self.broadcast_id})"
        return self.message

    def __str__(self):
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


# ---------------------------------------------------------------------------
# Wallet / custody
# ---------------------------------------------------------------------------

class WalletException(SniperException):
    """Raised when custodial wallet operations fail."""


class InvalidKeyFormat(WalletException):
    default_message = "Invalid private key format. Use base58, base64, hex, or JSON array format."


class NoWallet(WalletException):
    default_message = "No wallet configured. Generate or import one first."


class KeyDecryptionFailed(WalletException):
    default_message = "Stored wallet could not be decrypted"


# ---------------------------------------------------------------------------
# Swap pipeline
# ---------------------------------------------------------------------------

class SwapException(SniperException):
    """Raised when a swap cannot be executed or verified."""


class InsufficientBalance(SwapException):
    default_message = "Insufficient balance"

    def __init__(self, needed_sol: float, available_sol: float, **context):
        super().__init__(
            f"Insufficient balance. Need {needed_sol:.4f} SOL, have {available_sol:.4f} SOL",
            **context,
        )
        self.needed_sol = needed_sol
        self.available_sol = available_sol


class BelowMinimumAmount(SwapException):
    default_message = "Amount is below the minimum swap size"


class RpcUnavailable(SwapException):
    retryable = True
    default_message = "Solana RPC unavailable - try again shortly"


class QuoteUnavailable(SwapException):
    retryable = True
    default_message = "Quote service unavailable"


class MalformedTransaction(SwapException):
    default_message = "Failed to parse transaction from quote service"


class SimulationFailed(SwapException):
    def __init__(self, kind: FailureKind, detail: str = "", **context):
        super().__init__(FAILURE_MESSAGES[kind], **context)
        self.kind = kind
        self.detail = detail


class BroadcastFailed(SwapException):
    retryable = True
    default_message = "Transaction could not be sent"


class OnChainError(SwapException):
    def __init__(self, kind: FailureKind, broadcast_id: Optional[str] = None, detail: str = "", **context):
        super().__init__(FAILURE_MESSAGES[kind], broadcast_id=broadcast_id, **context)
        self.kind = kind
        self.detail = detail


class ConfirmationUncertain(SwapException):
    default_message = "Transaction sent but could not be confirmed - check the explorer"


class NoTokensReceived(SwapException):
    default_message = "Transaction landed but no tokens were received"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateException(SniperException):
    """Raised when position state operations fail."""


class PositionNotFound(StateException):
    default_message = "Position not found"


class PositionBusy(StateException):
    default_message = "Another sell is already running for this position"


class StaleRecordError(StateException):
    default_message = "Position changed while it was being updated"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationException(SniperException):
    """Raised when configuration is invalid."""


class InvalidSettings(ConfigurationException):
    def __init__(self, errors: List[str]):
        super().__init__("Invalid settings: " + "; ".join(errors))
        self.errors = errors
