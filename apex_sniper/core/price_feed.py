from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..constants import DEXSCREENER_API_BASE

SOL_SYMBOLS = {"SOL", "WSOL"}


class DexScreenerPriceFeed:
    """Token price in SOL from DexScreener pairs (priceNative)."""

    def __init__(
        self,
        base_url: str = DEXSCREENER_API_BASE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.logger = logging.getLogger("apex_sniper.dexscreener")

    async def close(self) -> None:
        await self.client.aclose()

    async def get_price(self, token_address: str) -> float | None:
        """SOL per token from the most liquid SOL-quoted pair, None if unknown"""
        pairs = await self.get_token_pairs(token_address)
        # priceNative is in the quote token's units; only SOL quotes match entry prices
        candidates = [
            p for p in pairs
            if (p.get("quoteToken") or {}).get("symbol", "").upper() in SOL_SYMBOLS and p.get("priceNative")
        ]
        if not candidates:
            return None

        best = max(candidates, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        try:
            price = float(best["priceNative"])
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    async def get_token_pairs(self, token_address: str) -> list[dict[str, Any]]:
        url = f"{self.base_url}/latest/dex/tokens/{token_address}"
        payload = await self._request(url, log_level="debug")
        pairs = payload.get("pairs") if isinstance(payload, dict) else None
        return pairs or []

    async def _request(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        log_level: str = "warning",
    ) -> dict[str, Any] | list | None:
        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(url, params=params)
                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    delay = float(retry_after) if retry_after else self.retry_backoff * (attempt + 1)
                    self.logger.warning("DexScreener rate limited, retrying in %.1fs", delay)
                    await asyncio.sleep(delay)
                    continue
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as exc:
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_backoff)
                    continue
                getattr(self.logger, log_level)(
                    "DexScreener request failed for %s: %s", url, exc
                )
                return None
        return None
