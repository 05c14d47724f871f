"""
Price Fetcher - token prices in the native asset and USD from DexScreener.

Prices are cached per mint in an injected PriceCache. Expired entries are
never served; a miss triggers one network call no matter how many callers
are waiting on the same mint.

Unavailable prices come back as None. Callers show "unknown" instead of
failing a whole valuation.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from trade_engine.async_utils import gather_tolerant, with_timeout
from trade_engine.config import EngineConfig
from trade_engine.dexscreener import DexScreenerClient, TokenPair
from trade_engine.errors import ExternalServiceError
from trade_engine.models import SOL_MINT, PriceQuote, utcnow

logger = logging.getLogger(__name__)

SOURCE = "dexscreener"


@dataclass
class _CacheEntry:
    quote: PriceQuote
    expires_at: float


class PriceCache:
    """
    TTL cache of PriceQuotes keyed by mint.

    Owned by a PriceFetcher; construct one per fetcher (or share one
    deliberately) instead of relying on module state.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, token_mint: str) -> Optional[PriceQuote]:
        entry = self._entries.get(token_mint)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[token_mint]
            self.misses += 1
            return None
        self.hits += 1
        return entry.quote

    def set(self, token_mint: str, quote: PriceQuote) -> None:
        self._entries[token_mint] = _CacheEntry(quote, self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, float]:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }

    def __len__(self) -> int:
        return len(self._entries)


class PriceFetcher:
    """Resolve token prices with caching and pair selection."""

    def __init__(
        self,
        client: DexScreenerClient,
        cache: PriceCache = None,
        native_mint: str = SOL_MINT,
        native_symbols: Iterable[str] = ("SOL", "WSOL"),
        timeout_seconds: float = 5.0,
    ):
        self.client = client
        self.cache = cache if cache is not None else PriceCache()
        self.native_mint = native_mint
        self.native_symbols = frozenset(s.upper() for s in native_symbols)
        self.timeout_seconds = timeout_seconds
        self._inflight: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, client: DexScreenerClient = None) -> "PriceFetcher":
        client = client or DexScreenerClient(
            config.dexscreener_api_url,
            timeout_seconds=config.price_request_timeout_seconds,
            chain_id=config.chain_id,
        )
        return cls(
            client,
            PriceCache(config.price_cache_ttl_seconds),
            timeout_seconds=config.price_request_timeout_seconds,
        )

    async def close(self):
        await self.client.close()

    async def get_price(self, token_mint: str) -> Optional[PriceQuote]:
        cached = self.cache.get(token_mint)
        if cached is not None:
            return cached

        task = self._inflight.get(token_mint)
        if task is None:
            task = asyncio.ensure_future(self._fetch(token_mint))
            self._inflight[token_mint] = task
            task.add_done_callback(lambda _t, mint=token_mint: self._inflight.pop(mint, None))

        # Shielded so one cancelled waiter does not cancel the shared lookup
        return await asyncio.shield(task)

    async def get_prices(self, token_mints: Iterable[str]) -> Dict[str, PriceQuote]:
        """Fetch several prices in parallel. Mints without a price are left out."""
        mints = list(dict.fromkeys(token_mints))
        results = await gather_tolerant(*(self.get_price(m) for m in mints))

        prices: Dict[str, PriceQuote] = {}
        for mint, result in zip(mints, results):
            if isinstance(result, PriceQuote):
                prices[mint] = result
            elif isinstance(result, BaseException):
                logger.warning(f"Price lookup for {mint[:8]}... raised {type(result).__name__}: {result}")
        return prices

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _fetch(self, token_mint: str) -> Optional[PriceQuote]:
        try:
            pairs = await with_timeout(
                self.client.pairs_for_token(token_mint), self.timeout_seconds, "price lookup"
            )
        except (ExternalServiceError, asyncio.TimeoutError) as e:
            logger.warning(f"Price unavailable for {token_mint[:8]}...: {e}")
            return None

        if token_mint == self.native_mint:
            quote = self._native_quote(pairs)
        else:
            quote = await self._token_quote(token_mint, pairs)

        if quote is None:
            logger.warning(f"No usable pairs for {token_mint[:8]}... ({len(pairs)} returned)")
            return None

        self.cache.set(token_mint, quote)
        return quote

    def _native_quote(self, pairs: List[TokenPair]) -> Optional[PriceQuote]:
        candidates = [
            p for p in pairs
            if p.base_token_address == self.native_mint and p.price_usd > 0
        ]
        if not candidates:
            return None
        pair = max(candidates, key=lambda p: p.liquidity_usd)
        return self._make_quote(self.native_mint, 1.0, pair.price_usd, pair)

    async def _token_quote(self, token_mint: str, pairs: List[TokenPair]) -> Optional[PriceQuote]:
        own = [
            p for p in pairs
            if token_mint in (p.base_token_address, p.quote_token_address)
        ]

        native_pairs = [p for p in own if self._is_native_pair(p, token_mint) and p.price_native > 0]
        if native_pairs:
            pair = max(native_pairs, key=lambda p: p.liquidity_usd)
            if pair.base_token_address == token_mint:
                return self._make_quote(token_mint, pair.price_native, pair.price_usd, pair)
            # Token is the quote side: priceNative is tokens per native unit
            return self._make_quote(
                token_mint,
                1.0 / pair.price_native,
                pair.price_usd / pair.price_native,
                pair,
            )

        priced = [p for p in own if p.price_usd > 0]
        if not priced:
            return None
        pair = max(priced, key=lambda p: p.liquidity_usd)

        if pair.base_token_address == token_mint:
            price_usd = pair.price_usd
        elif pair.price_native > 0:
            price_usd = pair.price_usd / pair.price_native
        else:
            return None

        native = await self.get_price(self.native_mint)
        if native is None or native.price_usd <= 0:
            logger.warning(f"Native USD price unknown, cannot value {token_mint[:8]}... in native units")
            return None

        return self._make_quote(token_mint, price_usd / native.price_usd, price_usd, pair)

    def _is_native_pair(self, pair: TokenPair, token_mint: str) -> bool:
        if pair.base_token_address == token_mint:
            address, symbol = pair.quote_token_address, pair.quote_token_symbol
        else:
            address, symbol = pair.base_token_address, pair.base_token_symbol
        return address == self.native_mint or symbol.upper() in self.native_symbols

    def _make_quote(self, token_mint: str, price_native: float, price_usd: float, pair: TokenPair) -> PriceQuote:
        return PriceQuote(
            token_mint=token_mint,
            price_native=price_native,
            price_usd=price_usd,
            liquidity_usd=pair.liquidity_usd if pair.liquidity_usd > 0 else None,
            fetched_at=utcnow(),
            source=SOURCE,
            pair_address=pair.pair_address,
        )
