"""
Trading Service

The engine's outward surface. Chat, dashboard and signal collaborators talk
to this class only; every public trading call returns a TradeOutcome instead
of raising for trade failures.

Responsibilities:
- in-flight guard for buys, position creation on verified receipt
- admission gate for signal-driven buys
- sells under a per-position lease, persisted atomically after verification
- retry of transient swap failures (quote service, broadcast, RPC)
- wallet and settings pass-throughs
- the signal queue and its dispatcher
"""

import asyncio
import logging
from typing import Any, List, Optional, Set, Tuple

from solders.pubkey import Pubkey

from ..config.strategy_config import StrategySettings
from ..constants import SELL_LEASE_TIMEOUT
from ..db.database import DatabaseManager
from ..exceptions import (
    BelowMinimumAmount,
    BroadcastFailed,
    InvalidSettings,
    PositionNotFound,
    QuoteUnavailable,
    RpcUnavailable,
    SniperException,
    StaleRecordError,
)
from ..logger import TradeLogger
from ..utils.helpers import calculate_pnl_percent
from ..utils.retry import async_retry
from .broadcast_client import BroadcastClient
from .exit_rules import STOP_LOSS
from .key_vault import KeyVault, format_secret
from .models import (
    Position,
    PositionStatus,
    SellAction,
    Signal,
    SnipeMode,
    SwapResult,
    TradeOutcome,
    TradeSide,
)
from .position_locks import PositionLocks
from .price_feed import DexScreenerPriceFeed
from .settings_store import SettingsStore
from .wallet import WalletReader

logger = logging.getLogger(__name__)

RETRYABLE_SWAP_ERRORS = (QuoteUnavailable, BroadcastFailed, RpcUnavailable)


class TradingService:
    """
    Usage:
        outcome = await trading.open_position("user-1", mint, SnipeMode.PRIMARY)
        if outcome.success:
            await trading.sell_fraction(outcome.position_id, 25)
    """

    def __init__(
        self,
        db: DatabaseManager,
        vault: KeyVault,
        broadcaster: BroadcastClient,
        settings: SettingsStore,
        locks: PositionLocks,
        price_feed: DexScreenerPriceFeed,
        wallet_reader: WalletReader,
        trade_logger: Optional[TradeLogger] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        lease_timeout: float = SELL_LEASE_TIMEOUT
    ):
        self.db = db
        self.vault = vault
        self.broadcaster = broadcaster
        self.settings = settings
        self.locks = locks
        self.price_feed = price_feed
        self.wallet_reader = wallet_reader
        self.trade_logger = trade_logger or TradeLogger()
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.lease_timeout = lease_timeout

        self.signal_queue: asyncio.Queue = asyncio.Queue()
        self._inflight_buys: Set[Tuple[str, str]] = set()
        self._signal_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Swaps
    # =========================================================================

    async def _swap(
        self,
        user_id: str,
        token: str,
        side: TradeSide,
        amount: float,
        mode: SnipeMode,
        est_sol_value: Optional[float] = None
    ) -> SwapResult:
        @async_retry(max_attempts=self.retry_attempts, delay=self.retry_delay, exceptions=RETRYABLE_SWAP_ERRORS)
        async def attempt() -> SwapResult:
            return await self.broadcaster.execute_swap(user_id, token, side, amount, mode, est_sol_value)

        return await attempt()

    # =========================================================================
    # Buying
    # =========================================================================

    async def open_position(
        self,
        user_id: str,
        token: str,
        mode: SnipeMode = SnipeMode.PRIMARY,
        token_symbol: Optional[str] = None,
        amount: Optional[float] = None,
        trigger_reason: str = "manual"
    ) -> TradeOutcome:
        """
        Buy `amount` SOL (default: the mode's buy_amount) of `token` and record
        the position once the received tokens are verified on-chain.

        The max_open_positions gate is not applied here; handle_signal applies
        it to signal-driven buys.
        """
        mode = SnipeMode(mode)
        key = (user_id, token)
        if key in self._inflight_buys:
            return TradeOutcome(
                success=False,
                error="A buy for this token is already in progress",
                error_type="BuyInFlight",
            )

        self._inflight_buys.add(key)
        try:
            settings = self.settings.get_settings(user_id, mode)
            amount = amount if amount is not None else settings.buy_amount

            result = await self._swap(user_id, token, TradeSide.BUY, amount, mode)

            entry_price = amount / result.tokens_delta
            position_id = self.db.create_position(
                user_id=user_id,
                token_id=token,
                mode=mode.value,
                entry_price=entry_price,
                entry_cost=amount,
                size_bought=result.tokens_delta,
                broadcast_id=result.broadcast_id,
                token_symbol=token_symbol,
                trigger_reason=trigger_reason,
            )
            self.trade_logger.log_buy(
                user_id=user_id,
                token=token,
                amount_sol=amount,
                signature=result.broadcast_id,
                mode=mode.value,
                token_amount=result.tokens_delta,
                position_id=position_id,
            )
            return TradeOutcome.ok(
                broadcast_id=result.broadcast_id,
                position_id=position_id,
                tokens=result.tokens_delta,
                entry_price=entry_price,
            )

        except SniperException as e:
            logger.warning(f"Buy failed for user {user_id} {token[:8]}...: {e}")
            self.trade_logger.log_failure(user_id, token, "buy", e.user_message, e.broadcast_id)
            return TradeOutcome.failed(e)

        finally:
            self._inflight_buys.discard(key)

    # =========================================================================
    # Signals
    # =========================================================================

    def submit_signal(self, signal: Signal):
        """Queue an external signal for the dispatcher"""
        self.signal_queue.put_nowait(signal)

    async def handle_signal(self, signal: Signal) -> Optional[TradeOutcome]:
        """
        Auto-buy for a signal. Returns None when the signal is skipped
        (auto-buy off or admission gate closed); skipped signals are not retried.
        """
        settings = self.settings.get_settings(signal.user_id, signal.mode)
        if not settings.auto_buy_enabled:
            logger.debug(f"Signal skipped for user {signal.user_id}: auto-buy disabled ({signal.mode.value})")
            return None

        pending = sum(1 for user_id, _ in self._inflight_buys if user_id == signal.user_id)
        if not self.settings.admits(signal.user_id, signal.mode, pending=pending):
            logger.info(f"Signal skipped for user {signal.user_id}: position limit reached")
            return None

        outcome = await self.open_position(
            signal.user_id,
            signal.token_id,
            signal.mode,
            token_symbol=signal.token_symbol,
            trigger_reason=signal.source,
        )
        if not outcome.success:
            logger.warning(f"Signal buy failed for user {signal.user_id}: {outcome.error}")
        return outcome

    async def run_signal_dispatcher(self, stop_event: asyncio.Event):
        """Consume the signal queue until stop_event is set, then wait for in-flight buys"""
        while not stop_event.is_set():
            try:
                signal = await asyncio.wait_for(self.signal_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            task = asyncio.create_task(self._dispatch(signal))
            self._signal_tasks.add(task)
            task.add_done_callback(self._signal_tasks.discard)

        if self._signal_tasks:
            await asyncio.gather(*self._signal_tasks, return_exceptions=True)

    async def _dispatch(self, signal: Signal):
        try:
            await self.handle_signal(signal)
        except Exception:
            logger.exception(f"Signal handling crashed for user {signal.user_id} {signal.token_id[:8]}...")
        finally:
            self.signal_queue.task_done()

    # =========================================================================
    # Selling
    # =========================================================================

    async def execute_exit(self, position: Position, action: SellAction, price: Optional[float]) -> TradeOutcome:
        """
        Sell `action.fraction` of what the position holds and persist the result.

        The caller holds the position lease and passes a freshly read row.
        """
        tokens = position.size_remaining * action.fraction
        if action.is_full_exit:
            tokens = await self._full_exit_amount(position)
        est_sol = tokens * price if price else None

        try:
            result = await self._swap(
                position.user_id, position.token_id, TradeSide.SELL, tokens, position.mode, est_sol
            )
        except BelowMinimumAmount as e:
            if action.is_full_exit:
                # Nothing worth selling is left; stop managing the position
                self.db.force_close_position(position.id, f"{action.reason}_dust")
                self.trade_logger.log_close(position.user_id, position.token_id, f"{action.reason}_dust", position.id)
                return TradeOutcome.ok(position_id=position.id, status=PositionStatus.CLOSED.value, dust=True)
            if action.bracket_index is not None:
                # Brackets fire in order; an unsellable one takes the whole remainder
                logger.info(
                    f"Bracket {action.reason} on position {position.id} is below the minimum swap, "
                    f"selling the remaining {position.size_remaining:g} tokens instead"
                )
                whole = SellAction(fraction=1.0, reason=action.reason, bracket_index=action.bracket_index)
                return await self.execute_exit(position, whole, price)
            return TradeOutcome.failed(e, position_id=position.id)
        except SniperException as e:
            logger.warning(f"Sell failed for position {position.id} ({action.reason}): {e}")
            self.trade_logger.log_failure(
                position.user_id, position.token_id, "sell", e.user_message, e.broadcast_id
            )
            return TradeOutcome.failed(e, position_id=position.id)

        sold = result.tokens_delta
        sol_amount = sold * price if price else 0.0
        updated = self._record_sell(position, action, result, sold, sol_amount, price or 0.0)

        pnl_pct = calculate_pnl_percent(position.entry_price, price) if price else 0.0
        self.trade_logger.log_sell(
            user_id=position.user_id,
            token=position.token_id,
            token_amount=sold,
            signature=result.broadcast_id,
            reason=action.reason,
            amount_sol=sol_amount,
            pnl_pct=pnl_pct,
            position_id=position.id,
        )
        if updated["status"] == PositionStatus.CLOSED.value:
            self.trade_logger.log_close(position.user_id, position.token_id, action.reason, position.id)
            if action.reason == STOP_LOSS:
                logger.warning(f"Stop loss hit on position {position.id} ({pnl_pct:.1f}%)")

        return TradeOutcome.ok(
            broadcast_id=result.broadcast_id,
            position_id=position.id,
            sold=sold,
            size_remaining=updated["size_remaining"],
            status=updated["status"],
            reason=action.reason,
        )

    async def _full_exit_amount(self, position: Position) -> float:
        """Everything the position holds, capped by what the wallet actually has"""
        owner = self.vault.public_key(position.user_id)
        if owner is None:
            return position.size_remaining
        on_chain = await self.wallet_reader.get_token_balance(Pubkey.from_string(owner), position.token_id)
        if on_chain is not None and 0 < on_chain < position.size_remaining:
            return on_chain
        return position.size_remaining

    def _record_sell(
        self,
        position: Position,
        action: SellAction,
        result: SwapResult,
        sold: float,
        sol_amount: float,
        unit_price: float
    ) -> dict:
        new_remaining = position.size_remaining - sold
        kwargs = dict(
            sold_amount=sold,
            sol_amount=sol_amount,
            unit_price=unit_price,
            broadcast_id=result.broadcast_id,
            trigger_reason=action.reason,
            bracket_index=action.bracket_index,
            close=action.is_full_exit,
        )
        try:
            return self.db.apply_sell(position.id, position.version, new_remaining, **kwargs)
        except StaleRecordError:
            # The sale happened on-chain; record it against the current row
            fresh = self.db.get_position(position.id)
            if fresh is None:
                raise
            logger.error(f"Position {position.id} changed during sell, re-applying on version {fresh['version']}")
            return self.db.apply_sell(
                position.id, fresh["version"], fresh["size_remaining"] - sold, **kwargs
            )

    async def sell_fraction(self, position_id: int, percent: float, reason: str = "manual") -> TradeOutcome:
        """Manually sell `percent` of what the position currently holds"""
        if not 0 < percent <= 100:
            return TradeOutcome(
                success=False,
                error="Percent must be between 0 and 100",
                error_type="InvalidAmount",
                position_id=position_id,
            )

        try:
            async with self.locks.lease(position_id, timeout=self.lease_timeout):
                row = self.db.get_position(position_id)
                if row is None:
                    raise PositionNotFound(position_id=position_id)
                position = Position.from_row(row)
                if not position.is_active:
                    return TradeOutcome(
                        success=False,
                        error="Position is already closed",
                        error_type="PositionClosed",
                        position_id=position_id,
                    )

                price = await self.price_feed.get_price(position.token_id)
                action = SellAction(fraction=percent / 100, reason=reason)
                outcome = await self.execute_exit(position, action, price)

        except SniperException as e:
            return TradeOutcome.failed(e, position_id=position_id)

        self.release_if_closed(position_id, outcome)
        return outcome

    async def close_position(self, position_id: int) -> TradeOutcome:
        """Sell everything and close"""
        return await self.sell_fraction(position_id, 100, reason="manual_close")

    async def sell_all(self, user_id: str) -> List[TradeOutcome]:
        """Close every active position of the user"""
        positions = self.db.get_active_positions(user_id)
        logger.info(f"Sell-all for user {user_id}: {len(positions)} positions")
        return [await self.close_position(row["id"]) for row in positions]

    async def force_close(self, position_id: int, reason: str = "force_closed") -> TradeOutcome:
        """Administrative close without a sale"""
        try:
            async with self.locks.lease(position_id, timeout=self.lease_timeout):
                row = self.db.force_close_position(position_id, reason)
        except SniperException as e:
            return TradeOutcome.failed(e, position_id=position_id)

        self.trade_logger.log_close(row["user_id"], row["token_id"], reason, position_id)
        self.locks.discard(position_id)
        return TradeOutcome.ok(position_id=position_id, status=row["status"])

    def release_if_closed(self, position_id: int, outcome: Optional[TradeOutcome]):
        """Drop the lease lock of a position the outcome closed; call after the lease is released"""
        if outcome is not None and outcome.data.get("status") == PositionStatus.CLOSED.value:
            self.locks.discard(position_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_open_positions(self, user_id: str) -> List[Position]:
        return [Position.from_row(r) for r in self.db.get_active_positions(user_id)]

    async def get_position_with_pnl(self, position_id: int) -> Optional[Position]:
        """Position with a freshly fetched price; stored price kept if the feed fails"""
        row = self.db.get_position(position_id)
        if row is None:
            return None
        position = Position.from_row(row)
        if not position.is_active:
            return position

        price = await self.price_feed.get_price(position.token_id)
        if price:
            position.current_price = price
            position.unrealized_pnl_percent = calculate_pnl_percent(position.entry_price, price)
            self.db.update_position_price(position.id, price, position.unrealized_pnl_percent)
        return position

    # =========================================================================
    # Settings
    # =========================================================================

    def get_settings(self, user_id: str, mode: SnipeMode) -> StrategySettings:
        return self.settings.get_settings(user_id, mode)

    def update_settings(self, user_id: str, mode: SnipeMode, **changes: Any) -> TradeOutcome:
        try:
            updated = self.settings.update_settings(user_id, mode, **changes)
        except InvalidSettings as e:
            return TradeOutcome(success=False, error=e.user_message, error_type="InvalidSettings", data={"errors": e.errors})
        return TradeOutcome.ok(settings=updated.to_dict())

    # =========================================================================
    # Wallet
    # =========================================================================

    def generate_wallet(self, user_id: str) -> TradeOutcome:
        return TradeOutcome.ok(public_key=self.vault.generate(user_id))

    def import_wallet(self, user_id: str, raw_key_material) -> TradeOutcome:
        try:
            return TradeOutcome.ok(public_key=self.vault.import_key(user_id, raw_key_material))
        except SniperException as e:
            return TradeOutcome.failed(e)

    def export_wallet(self, user_id: str, encoding: str = "json") -> TradeOutcome:
        try:
            secret = self.vault.export(user_id)
        except SniperException as e:
            return TradeOutcome.failed(e)
        return TradeOutcome.ok(
            public_key=self.vault.public_key(user_id),
            secret=format_secret(secret, encoding),
        )

    async def wallet_balance(self, user_id: str) -> TradeOutcome:
        try:
            owner = self.vault.pubkey(user_id)
            balance = await self.wallet_reader.get_sol_balance(owner)
        except SniperException as e:
            return TradeOutcome.failed(e)
        return TradeOutcome.ok(public_key=str(owner), sol=balance)
