from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SnipeMode(str, Enum):
    PRIMARY = "primary"
    BUNDLE = "bundle"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"


@dataclass
class Position:
    id: int
    user_id: str
    token_id: str
    mode: SnipeMode
    entry_price: float
    entry_cost: float
    size_bought: float
    size_remaining: float
    status: PositionStatus = PositionStatus.OPEN
    token_symbol: Optional[str] = None
    current_price: float = 0.0
    unrealized_pnl_percent: float = 0.0
    bracket_1_hit: bool = False
    bracket_2_hit: bool = False
    bracket_3_hit: bool = False
    close_reason: Optional[str] = None
    entry_broadcast_id: Optional[str] = None
    version: int = 0
    created_at: Optional[str] = None
    closed_at: Optional[str] = None

    @property
    def bracket_flags(self) -> list[bool]:
        return [self.bracket_1_hit, self.bracket_2_hit, self.bracket_3_hit]

    @property
    def is_active(self) -> bool:
        return self.status != PositionStatus.CLOSED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Position:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            token_id=row["token_id"],
            mode=SnipeMode(row["mode"]),
            entry_price=row["entry_price"],
            entry_cost=row["entry_cost"],
            size_bought=row["size_bought"],
            size_remaining=row["size_remaining"],
            status=PositionStatus(row["status"]),
            token_symbol=row.get("token_symbol"),
            current_price=row.get("current_price") or 0.0,
            unrealized_pnl_percent=row.get("unrealized_pnl_percent") or 0.0,
            bracket_1_hit=bool(row.get("bracket_1_hit")),
            bracket_2_hit=bool(row.get("bracket_2_hit")),
            bracket_3_hit=bool(row.get("bracket_3_hit")),
            close_reason=row.get("close_reason"),
            entry_broadcast_id=row.get("entry_broadcast_id"),
            version=row.get("version", 0),
            created_at=row.get("created_at"),
            closed_at=row.get("closed_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "token_id": self.token_id,
            "token_symbol": self.token_symbol,
            "mode": self.mode.value,
            "entry_price": self.entry_price,
            "entry_cost": self.entry_cost,
            "size_bought": self.size_bought,
            "size_remaining": self.size_remaining,
            "current_price": self.current_price,
            "unrealized_pnl_percent": self.unrealized_pnl_percent,
            "bracket_1_hit": self.bracket_1_hit,
            "bracket_2_hit": self.bracket_2_hit,
            "bracket_3_hit": self.bracket_3_hit,
            "status": self.status.value,
            "close_reason": self.close_reason,
            "version": self.version,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
        }


@dataclass
class SellAction:
    fraction: float              # of size_remaining, 0 < fraction <= 1
    reason: str                  # stop_loss | tp{n}_{mult}x | moon_bag
    bracket_index: Optional[int] = None

    @property
    def is_full_exit(self) -> bool:
        return self.fraction >= 1.0


@dataclass
class SwapResult:
    broadcast_id: str
    side: TradeSide
    token_id: str
    amount_in: float             # SOL for buys, tokens for sells
    tokens_delta: float          # tokens received (buy) or sold (sell)
    confirmed: bool
    via_bundle: bool = False
    bundle_id: Optional[str] = None


@dataclass
class Signal:
    user_id: str
    token_id: str
    mode: SnipeMode = SnipeMode.PRIMARY
    token_symbol: Optional[str] = None
    source: str = "signal"


@dataclass
class TradeOutcome:
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    broadcast_id: Optional[str] = None
    position_id: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, broadcast_id: Optional[str] = None, position_id: Optional[int] = None, **data) -> TradeOutcome:
        return cls(success=True, broadcast_id=broadcast_id, position_id=position_id, data=data)

    @classmethod
    def failed(cls, exc: Exception, position_id: Optional[int] = None) -> TradeOutcome:
        return cls(
            success=False,
            error=getattr(exc, "user_message", str(exc)),
            error_type=type(exc).__name__,
            broadcast_id=getattr(exc, "broadcast_id", None),
            position_id=position_id,
        )
