"""
Broadcast Client

Turns a swap intent into a verified on-chain result:

    amount check -> wallet/balance check -> quote -> sign -> simulate
    -> broadcast (Jito bundle, RPC fallback) -> confirm -> verify balances

Every failure surfaces as a typed exception from ..exceptions. Nothing here
retries a failed swap or deduplicates submissions; callers own that policy.
"""

import asyncio
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from ..constants import (
    MIN_SWAP_SOL,
    FEE_HEADROOM_LAMPORTS,
    LAMPORTS_PER_SOL,
    BROADCAST_ATTEMPTS,
    RPC_SEND_MAX_RETRIES,
    BUY_SETTLE_DELAY,
    BUY_RECHECK_DELAY,
)
from ..exceptions import (
    BelowMinimumAmount,
    BroadcastFailed,
    ConfirmationUncertain,
    InsufficientBalance,
    NoTokensReceived,
    NoWallet,
    OnChainError,
    RpcUnavailable,
    SimulationFailed,
)
from ..logger import CorrelationLogger
from .jito_client import JitoClient
from .key_vault import KeyVault
from .models import SnipeMode, SwapResult, TradeSide
from .quote_client import PumpPortalClient
from .settings_store import SettingsStore
from .tx_confirmer import TransactionConfirmer, TxStatus, classify_failure
from .wallet import WalletReader

logger = CorrelationLogger(__name__)

# Balance comparisons in UI units; anything smaller is rounding noise
BALANCE_EPSILON = 1e-9


class BroadcastClient:
    """
    Executes swaps for custodial users.

    Usage:
        client = BroadcastClient(rpc, vault, wallet_reader, quotes, jito, settings, confirmer)
        result = await client.execute_swap("user-1", mint, TradeSide.BUY, 0.1, SnipeMode.PRIMARY)
    """

    def __init__(
        self,
        rpc: AsyncClient,
        vault: KeyVault,
        wallet_reader: WalletReader,
        quotes: PumpPortalClient,
        jito: Optional[JitoClient],
        settings: SettingsStore,
        confirmer: TransactionConfirmer,
        jito_enabled: bool = True,
        simulate_before_send: bool = True,
        buy_settle_delay: float = BUY_SETTLE_DELAY,
        buy_recheck_delay: float = BUY_RECHECK_DELAY,
        broadcast_attempts: int = BROADCAST_ATTEMPTS,
        retry_delay: float = 0.5
    ):
        self.rpc = rpc
        self.vault = vault
        self.wallet_reader = wallet_reader
        self.quotes = quotes
        self.jito = jito
        self.settings = settings
        self.confirmer = confirmer
        self.jito_enabled = jito_enabled and jito is not None
        self.simulate_before_send = simulate_before_send
        self.buy_settle_delay = buy_settle_delay
        self.buy_recheck_delay = buy_recheck_delay
        self.broadcast_attempts = max(1, broadcast_attempts)
        self.retry_delay = retry_delay

    async def execute_swap(
        self,
        user_id: str,
        token: str,
        side: TradeSide,
        amount: float,
        mode: SnipeMode,
        est_sol_value: Optional[float] = None
    ) -> SwapResult:
        """
        Execute one swap end to end.

        Args:
            amount: SOL for buys, UI token units for sells
            est_sol_value: Estimated SOL value of a sell, enables the minimum check for sells

        Raises:
            BelowMinimumAmount, NoWallet, InsufficientBalance, RpcUnavailable,
            QuoteUnavailable, MalformedTransaction, SimulationFailed,
            BroadcastFailed, OnChainError, NoTokensReceived, ConfirmationUncertain
        """
        with logger.correlation_context():
            logger.info(f"Swap requested: {side.value} {amount:g} {token[:8]}...", user_id=user_id, mode=mode.value)

            settings = self.settings.get_settings(user_id, mode)

            # 1. Minimum size
            sol_size = amount if side == TradeSide.BUY else est_sol_value
            if amount <= 0 or (sol_size is not None and sol_size < MIN_SWAP_SOL):
                raise BelowMinimumAmount(
                    f"Minimum swap is {MIN_SWAP_SOL} SOL",
                    amount=amount,
                    side=side.value,
                )

            # 2. Wallet and funds
            public_key = self.vault.public_key(user_id)
            if public_key is None:
                raise NoWallet(user_id=user_id)
            owner = Pubkey.from_string(public_key)

            use_bundle = self.jito_enabled and settings.tip_lamports > 0
            needed_lamports = FEE_HEADROOM_LAMPORTS + (settings.tip_lamports if use_bundle else 0)
            if side == TradeSide.BUY:
                needed_lamports += int(round(amount * LAMPORTS_PER_SOL))

            available = await self.wallet_reader.get_sol_balance(owner)
            if available * LAMPORTS_PER_SOL < needed_lamports:
                raise InsufficientBalance(
                    needed_sol=needed_lamports / LAMPORTS_PER_SOL,
                    available_sol=available,
                    user_id=user_id,
                )

            pre_tokens = await self.wallet_reader.get_token_balance(owner, token)

            # 3. Quote
            tx_bytes = await self.quotes.get_swap_transaction(
                public_key,
                token,
                side,
                amount,
                settings.slippage_percent,
                settings.priority_fee_sol,
            )

            # 4. Sign
            signed = self.vault.sign(user_id, tx_bytes)
            signature = str(signed.signatures[0])

            # 5. Simulate
            if self.simulate_before_send:
                await self._simulate(signed, token)

            # 6. Broadcast
            via_bundle, bundle_id = await self._broadcast(user_id, signed, settings.tip_lamports if use_bundle else 0)

            # 7. Confirm
            tx_result = await self.confirmer.confirm(signature)
            if tx_result.status == TxStatus.FAILED:
                raise OnChainError(tx_result.kind, broadcast_id=signature, detail=tx_result.error or "")

            # 8. Verify
            if side == TradeSide.BUY:
                received = await self._verify_buy(owner, token, pre_tokens, signature)
                logger.info(f"Buy verified: {received:g} tokens", signature=signature)
                return SwapResult(
                    broadcast_id=signature,
                    side=side,
                    token_id=token,
                    amount_in=amount,
                    tokens_delta=received,
                    confirmed=tx_result.is_success,
                    via_bundle=via_bundle,
                    bundle_id=bundle_id,
                )

            sold = amount
            if tx_result.is_uncertain:
                sold = await self._verify_sell(owner, token, pre_tokens, signature)
            logger.info(f"Sell verified: {sold:g} tokens", signature=signature)
            return SwapResult(
                broadcast_id=signature,
                side=side,
                token_id=token,
                amount_in=amount,
                tokens_delta=sold,
                confirmed=tx_result.is_success,
                via_bundle=via_bundle,
                bundle_id=bundle_id,
            )

    async def _simulate(self, signed: VersionedTransaction, token: str):
        try:
            resp = await self.rpc.simulate_transaction(signed, sig_verify=False)
        except Exception as e:
            raise RpcUnavailable("Simulation request failed", token=token, error=str(e))

        value = resp.value
        if value is not None and value.err:
            kind = classify_failure(value.err, value.logs)
            logger.warning(f"Simulation failed ({kind.value}): {value.err}", token=token)
            raise SimulationFailed(kind, detail=str(value.err), token=token)

    async def _broadcast(self, user_id: str, signed: VersionedTransaction, tip_lamports: int):
        """Bundle path first when tipping, direct RPC otherwise or on bundle failure"""
        if tip_lamports > 0:
            try:
                tip_tx = self.jito.build_tip_transaction(
                    self.vault.keypair(user_id),
                    tip_lamports,
                    signed.message.recent_blockhash,
                )
                result = await self.jito.send_bundle([signed, tip_tx])
                if result.is_success:
                    return True, result.bundle_id
                logger.warning(f"Bundle path failed, falling back to RPC: {result.error}")
            except Exception as e:
                logger.warning(f"Bundle path errored, falling back to RPC: {e}")

        last_error = None
        for attempt in range(self.broadcast_attempts):
            try:
                await self.rpc.send_raw_transaction(
                    bytes(signed),
                    opts=TxOpts(
                        skip_preflight=True,
                        preflight_commitment=Confirmed,
                        max_retries=RPC_SEND_MAX_RETRIES,
                    )
                )
                logger.info(f"Sent via RPC (attempt {attempt + 1})", signature=str(signed.signatures[0]))
                return False, None
            except Exception as e:
                last_error = e
                logger.warning(f"RPC send attempt {attempt + 1}/{self.broadcast_attempts} failed: {e}")
                if attempt < self.broadcast_attempts - 1:
                    await asyncio.sleep(self.retry_delay)

        # A timed-out bundle or a dropped send response may still have landed
        signature = str(signed.signatures[0])
        if await self.confirmer.has_landed(signature):
            logger.warning("Every send path reported failure but the swap landed", signature=signature)
            return tip_lamports > 0, None

        raise BroadcastFailed(user_id=user_id, error=str(last_error))

    async def _verify_buy(self, owner: Pubkey, token: str, pre_tokens: Optional[float], signature: str) -> float:
        baseline = pre_tokens or 0.0
        for delay in (self.buy_settle_delay, self.buy_recheck_delay):
            await asyncio.sleep(delay)
            post = await self.wallet_reader.get_token_balance(owner, token)
            if post is not None and post - baseline > BALANCE_EPSILON:
                return post - baseline
            logger.warning(f"No token increase yet for {token[:8]}... (balance={post})", signature=signature)

        raise NoTokensReceived(broadcast_id=signature, token=token)

    async def _verify_sell(self, owner: Pubkey, token: str, pre_tokens: Optional[float], signature: str) -> float:
        await asyncio.sleep(self.buy_settle_delay)
        post = await self.wallet_reader.get_token_balance(owner, token)
        if pre_tokens is not None and post is not None and pre_tokens - post > BALANCE_EPSILON:
            return pre_tokens - post
        raise ConfirmationUncertain(broadcast_id=signature, token=token)
