"""
Jito Bundle Client

Provides MEV protection through Jito bundle submission.
The swap and a tip transfer are sent together, privately, to a randomly
chosen block engine.
"""

import asyncio
import base64
import logging
import random
from dataclasses import dataclass
from typing import Optional, List, Sequence

import aiohttp
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from ..constants import JITO_BLOCK_ENGINES, JITO_TIP_ACCOUNTS

logger = logging.getLogger(__name__)


@dataclass
class BundleResult:
    """Result of bundle submission"""
    bundle_id: str
    status: str
    signatures: List[str]
    engine: str = ""
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == "submitted"


class JitoClient:
    """
    Jito Bundle Client for MEV-protected transactions.

    Usage:
        jito = JitoClient(session)
        tip_tx = jito.build_tip_transaction(payer, 5_000_000, swap_tx.message.recent_blockhash)
        result = await jito.send_bundle([swap_tx, tip_tx])

    Note:
        Submission success only means an engine accepted the bundle. Landing
        is confirmed separately through the swap signature.
    """

    MIN_TIP = 1000  # lamports

    def __init__(
        self,
        session: aiohttp.ClientSession,
        engines: Sequence[str] = JITO_BLOCK_ENGINES,
        tip_accounts: Sequence[str] = JITO_TIP_ACCOUNTS,
        rng: Optional[random.Random] = None
    ):
        self.session = session
        self.engines = list(engines)
        self.tip_accounts = [Pubkey.from_string(a) for a in tip_accounts]
        self._rng = rng or random.Random()

    def pick_engine(self) -> str:
        return self._rng.choice(self.engines)

    def pick_tip_account(self) -> Pubkey:
        return self._rng.choice(self.tip_accounts)

    def build_tip_transaction(self, payer: Keypair, tip_lamports: int, recent_blockhash: Hash) -> VersionedTransaction:
        """Signed SOL transfer from payer to a random tip account"""
        tip_lamports = max(tip_lamports, self.MIN_TIP)
        ix = transfer(TransferParams(
            from_pubkey=payer.pubkey(),
            to_pubkey=self.pick_tip_account(),
            lamports=tip_lamports,
        ))
        message = MessageV0.try_compile(payer.pubkey(), [ix], [], recent_blockhash)
        return VersionedTransaction(message, [payer])

    async def send_bundle(self, transactions: List[VersionedTransaction]) -> BundleResult:
        """
        Send bundle of signed transactions to one block engine.

        Returns:
            BundleResult, status "submitted" or "failed" (never raises for engine errors)
        """
        signatures = [str(tx.signatures[0]) for tx in transactions]
        encoded = [base64.b64encode(bytes(tx)).decode('utf-8') for tx in transactions]
        engine = self.pick_engine()

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendBundle",
            "params": [encoded, {"encoding": "base64"}]
        }

        try:
            async with self.session.post(
                f"{engine}/api/v1/bundles",
                json=payload,
                timeout=aiohttp.ClientTimeout(total=15)
            ) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Jito bundle submission to {engine} failed: {e}")
            return BundleResult(bundle_id="", status="failed", signatures=signatures, engine=engine, error=str(e))

        if isinstance(data, dict) and data.get("result"):
            logger.info(f"Jito bundle accepted by {engine}: {data['result']}")
            return BundleResult(
                bundle_id=data["result"],
                status="submitted",
                signatures=signatures,
                engine=engine,
            )

        error = data.get("error") if isinstance(data, dict) else None
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error or "Unknown response format")
        logger.warning(f"Jito bundle rejected by {engine}: {message}")
        return BundleResult(bundle_id="", status="failed", signatures=signatures, engine=engine, error=message)
