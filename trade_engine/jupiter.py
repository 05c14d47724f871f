"""
Jupiter Aggregator client.

Only the two calls the executor needs: quote a route and build the unsigned
swap transaction for it. Retries are not done here; the executor owns the
retry loop so it can escalate fees between attempts.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from trade_engine.errors import AggregatorError, NoRouteError

logger = logging.getLogger(__name__)

# Error fragments Jupiter returns when there is nothing to route through
NO_ROUTE_MARKERS = (
    "could not find any route",
    "no_routes_found",
    "could_not_find_any_route",
    "token_not_tradable",
    "not tradable",
)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class SwapRoute:
    """Quote for a token swap."""
    input_mint: str
    output_mint: str
    in_amount: int              # In lamports/smallest unit
    out_amount: int             # Expected output in smallest unit
    other_amount_threshold: int  # Minimum output after slippage
    slippage_bps: int
    price_impact_pct: Optional[float]
    platform_fee_amount: int = 0
    route_plan: List[Dict] = field(default_factory=list)
    quote_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SwapRoute":
        platform_fee = data.get("platformFee") or {}
        impact = data.get("priceImpactPct")
        return cls(
            input_mint=data.get("inputMint", ""),
            output_mint=data.get("outputMint", ""),
            in_amount=int(data.get("inAmount", 0) or 0),
            out_amount=int(data.get("outAmount", 0) or 0),
            other_amount_threshold=int(data.get("otherAmountThreshold", 0) or 0),
            slippage_bps=int(data.get("slippageBps", 0) or 0),
            price_impact_pct=float(impact) if impact not in (None, "") else None,
            platform_fee_amount=int(platform_fee.get("amount", 0) or 0),
            route_plan=data.get("routePlan") or [],
            quote_response=data,
        )


def priority_level(lamports: int) -> str:
    """Map a lamport cap onto Jupiter's named priority levels."""
    if lamports < 50_000:
        return "min"
    if lamports < 500_000:
        return "low"
    if lamports < 5_000_000:
        return "medium"
    return "high"


class JupiterClient:
    """
    Jupiter Aggregator API client for Solana swaps.

    The session is created lazily; pass one in to share a connection pool or
    to substitute a test double.
    """

    JUPITER_API = "https://lite-api.jup.ag/swap/v1"

    def __init__(
        self,
        api_url: str = None,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = (api_url or self.JUPITER_API).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the client session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapRoute:
        """
        Get a swap quote.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit (lamports for SOL)
            slippage_bps: Slippage tolerance in basis points (50 = 0.5%)

        Raises:
            NoRouteError: no route exists (not worth retrying)
            AggregatorError: any other failure
        """
        session = await self._get_session()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "restrictIntermediateTokens": "true",
        }

        try:
            async with session.get(
                f"{self.api_url}/quote", params=params, timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    if _is_no_route(error_text):
                        raise NoRouteError()
                    raise AggregatorError(
                        f"Jupiter quote failed ({resp.status}): {error_text[:200]}",
                        retryable=resp.status in RETRYABLE_STATUSES or resp.status >= 500,
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise AggregatorError(f"Jupiter quote request failed: {e}") from e

        if "error" in data:
            error = str(data.get("errorCode") or data["error"])
            if _is_no_route(error) or _is_no_route(str(data["error"])):
                raise NoRouteError()
            raise AggregatorError(f"Jupiter quote error: {data['error']}")

        route = SwapRoute.from_api(data)
        if route.out_amount <= 0:
            raise NoRouteError("Route returned zero output")
        return route

    async def build_swap(
        self,
        route: SwapRoute,
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> bytes:
        """
        Build the unsigned swap transaction for a route.

        Returns:
            Serialized VersionedTransaction bytes ready for signing
        """
        session = await self._get_session()
        payload = {
            "quoteResponse": route.quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": priority_fee_lamports,
                    "priorityLevel": priority_level(priority_fee_lamports),
                }
            },
        }

        try:
            async with session.post(
                f"{self.api_url}/swap", json=payload, timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    raise AggregatorError(
                        f"Jupiter swap failed ({resp.status}): {error_text[:200]}"
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise AggregatorError(f"Jupiter swap request failed: {e}") from e

        swap_transaction = data.get("swapTransaction")
        if not swap_transaction:
            raise AggregatorError("Jupiter swap response missing swapTransaction")
        return base64.b64decode(swap_transaction)


def _is_no_route(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in NO_ROUTE_MARKERS)
