"""DexScreener API client for token pair data."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from trade_engine.errors import PriceSourceError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.dexscreener.com/latest/dex"
USER_AGENT = "trade-engine/1.0 (DexScreener Client)"


@dataclass
class TokenPair:
    """Normalized token pair data."""
    chain_id: str
    dex_id: str
    pair_address: str
    base_token_address: str
    base_token_symbol: str
    quote_token_address: str
    quote_token_symbol: str
    price_usd: float
    price_native: float          # Price of the base token in quote token units
    liquidity_usd: float

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TokenPair":
        """Create TokenPair from DexScreener API response."""
        base = data.get("baseToken") or {}
        quote = data.get("quoteToken") or {}
        liquidity = data.get("liquidity") or {}

        return cls(
            chain_id=data.get("chainId", ""),
            dex_id=data.get("dexId", ""),
            pair_address=data.get("pairAddress", ""),
            base_token_address=base.get("address", ""),
            base_token_symbol=base.get("symbol", ""),
            quote_token_address=quote.get("address", ""),
            quote_token_symbol=quote.get("symbol", ""),
            price_usd=_safe_float(data.get("priceUsd")),
            price_native=_safe_float(data.get("priceNative")),
            liquidity_usd=_safe_float(liquidity.get("usd")),
        )


def _safe_float(value: Any, default: float = 0.0) -> float:
    """Safely convert value to float."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class DexScreenerClient:
    """Async client for the DexScreener token endpoint."""

    def __init__(
        self,
        base_url: str = None,
        timeout_seconds: float = 5.0,
        chain_id: Optional[str] = "solana",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.chain_id = chain_id
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout, headers={"User-Agent": USER_AGENT}
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def pairs_for_token(self, token_mint: str) -> List[TokenPair]:
        """
        All pairs trading this token on the configured chain.

        Raises:
            PriceSourceError: HTTP failure or unreadable response
        """
        session = await self._get_session()
        url = f"{self.base_url}/tokens/{token_mint}"
        try:
            async with session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise PriceSourceError(f"DexScreener HTTP {resp.status} for {token_mint[:8]}...")
                data = await resp.json()
        except (aiohttp.ClientError, ValueError) as e:
            raise PriceSourceError(f"DexScreener request failed: {e}") from e

        raw_pairs = (data or {}).get("pairs") or []
        pairs = [TokenPair.from_api(p) for p in raw_pairs if isinstance(p, dict)]
        if self.chain_id:
            pairs = [p for p in pairs if p.chain_id == self.chain_id]
        return pairs
