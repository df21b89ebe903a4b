"""
PumpPortal Local Trade Client

The quoting collaborator: given wallet, token, side and size it returns a
ready-to-sign serialized transaction. Curve math and routing stay on their
side.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from ..constants import PUMPPORTAL_TRADE_API, MIN_PRIORITY_FEE_SOL
from ..exceptions import QuoteUnavailable
from ..utils.retry import CircuitBreaker
from .models import TradeSide

logger = logging.getLogger(__name__)


class PumpPortalClient:
    """
    Fetch unsigned swap transactions from PumpPortal's trade-local endpoint.

    Usage:
        quotes = PumpPortalClient(session)
        tx_bytes = await quotes.get_swap_transaction(
            wallet_pubkey, mint, TradeSide.BUY, amount=0.1, slippage=20, priority_fee=0.0001
        )
    """

    REQUEST_TIMEOUT = 15

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_url: str = PUMPPORTAL_TRADE_API,
        pool: str = "pump",
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.session = session
        self.api_url = api_url
        self.pool = pool
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60.0,
            name="PumpPortal"
        )

    async def get_swap_transaction(
        self,
        wallet_pubkey: str,
        token: str,
        side: TradeSide,
        amount: float,
        slippage: float,
        priority_fee: float
    ) -> bytes:
        """
        Request a serialized versioned transaction.

        Args:
            wallet_pubkey: Fee payer / trader
            token: Token mint
            side: buy or sell
            amount: SOL for buys, UI token units for sells
            slippage: Percent
            priority_fee: SOL

        Raises:
            QuoteUnavailable: non-200 response, empty body, network error or open circuit
        """
        if not self.circuit_breaker.can_execute():
            raise QuoteUnavailable("Quote service temporarily disabled after repeated failures", token=token)

        payload = {
            "publicKey": wallet_pubkey,
            "action": side.value,
            "mint": token,
            "denominatedInSol": "true" if side == TradeSide.BUY else "false",
            "amount": amount,
            "slippage": slippage,
            "priorityFee": priority_fee if priority_fee > 0 else MIN_PRIORITY_FEE_SOL,
            "pool": self.pool,
        }

        try:
            async with self.session.post(
                self.api_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT)
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    self.circuit_breaker.record_failure()
                    logger.warning(f"PumpPortal {resp.status} for {side.value} {token[:8]}...: {body[:200]}")
                    raise QuoteUnavailable(
                        f"Quote service error ({resp.status})",
                        token=token,
                        status=resp.status,
                    )
                tx_bytes = await resp.read()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.circuit_breaker.record_failure()
            raise QuoteUnavailable(token=token, error=str(e))

        if not tx_bytes:
            self.circuit_breaker.record_failure()
            raise QuoteUnavailable("Quote service returned an empty transaction", token=token)

        self.circuit_breaker.record_success()
        logger.debug(f"PumpPortal {side.value} tx for {token[:8]}...: {len(tx_bytes)} bytes")
        return tx_bytes
