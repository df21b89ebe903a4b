import logging
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TokenAccountOpts
from solders.pubkey import Pubkey

from ..constants import LAMPORTS_PER_SOL
from ..exceptions import RpcUnavailable

logger = logging.getLogger(__name__)


class WalletReader:
    """On-chain balance reads for custodial wallets"""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def get_sol_balance(self, owner: Pubkey) -> float:
        """Returns SOL balance. Raises RpcUnavailable when the node can't answer."""
        try:
            resp = await self.client.get_balance(owner)
        except Exception as e:
            raise RpcUnavailable(owner=str(owner), error=str(e))
        if resp.value is None:
            raise RpcUnavailable(owner=str(owner))
        return resp.value / LAMPORTS_PER_SOL

    async def get_token_balance(self, owner: Pubkey, mint_str: str) -> Optional[float]:
        """
        Returns token balance in UI units, None if it could not be read.

        Sums ALL token accounts for the mint, not just the standard ATA,
        since swap programs may create non-standard ones. No account = 0.
        """
        try:
            mint = Pubkey.from_string(mint_str)

            resp = await self.client.get_token_accounts_by_owner_json_parsed(
                owner,
                TokenAccountOpts(mint=mint)
            )

            total_balance = 0.0
            for acc in resp.value or []:
                try:
                    token_amount = acc.account.data.parsed['info']['tokenAmount']
                    total_balance += float(
                        token_amount.get('uiAmountString') or token_amount.get('uiAmount') or 0
                    )
                except (KeyError, TypeError, AttributeError):
                    continue
            return total_balance

        except Exception as e:
            logger.warning(f"Token balance check failed for {mint_str[:8]}...: {e}")
            return None
