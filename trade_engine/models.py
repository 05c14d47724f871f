"""
Domain records shared by the executor, position manager and price fetcher.

All records are fully populated on construction. Optional values are only
used where absence is a real state (e.g. a position that is still open has
no closed_at).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
LAMPORTS_PER_SOL = 1_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TradeSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class ExecutionResult:
    """A confirmed swap.

    For a BUY, native_amount is the native asset spent and token_amount the
    tokens received. For a SELL, token_amount is the tokens sold and
    native_amount the native proceeds.
    """
    signature: str
    side: TradeSide
    token_mint: str
    native_amount: float
    token_amount: float          # UI units (decimals applied)
    token_amount_raw: int
    token_decimals: int
    priority_fee_paid: float     # Native units
    swap_fee_paid: float
    base_fee_paid: float
    total_fees: float
    slippage_bps: int
    price_impact_pct: Optional[float]
    attempt: int
    execution_ms: int
    executed_at: datetime = field(default_factory=utcnow)

    success = True

    @property
    def fee_pct(self) -> float:
        """Total fees as a percentage of native notional."""
        if self.native_amount > 0:
            return self.total_fees / self.native_amount * 100
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "side": self.side.value,
            "token_mint": self.token_mint,
            "native_amount": self.native_amount,
            "token_amount": self.token_amount,
            "token_amount_raw": self.token_amount_raw,
            "token_decimals": self.token_decimals,
            "priority_fee_paid": self.priority_fee_paid,
            "swap_fee_paid": self.swap_fee_paid,
            "base_fee_paid": self.base_fee_paid,
            "total_fees": self.total_fees,
            "fee_pct": self.fee_pct,
            "slippage_bps": self.slippage_bps,
            "price_impact_pct": self.price_impact_pct,
            "attempt": self.attempt,
            "execution_ms": self.execution_ms,
            "executed_at": _iso(self.executed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        return cls(
            signature=data["signature"],
            side=TradeSide(data["side"]),
            token_mint=data["token_mint"],
            native_amount=data["native_amount"],
            token_amount=data["token_amount"],
            token_amount_raw=data["token_amount_raw"],
            token_decimals=data["token_decimals"],
            priority_fee_paid=data["priority_fee_paid"],
            swap_fee_paid=data["swap_fee_paid"],
            base_fee_paid=data["base_fee_paid"],
            total_fees=data["total_fees"],
            slippage_bps=data["slippage_bps"],
            price_impact_pct=data.get("price_impact_pct"),
            attempt=data["attempt"],
            execution_ms=data["execution_ms"],
            executed_at=_parse_iso(data["executed_at"]),
        )


@dataclass
class Position:
    """Holdings of one token by one agent.

    quantity == 0 exactly when closed_at is set. entry_value_native is the
    native cost basis of the quantity currently held.
    """
    id: str
    agent_id: str
    token_mint: str
    quantity: float
    entry_value_native: float
    opened_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    targets_hit: List[int] = field(default_factory=list)
    realized_pnl_native: float = 0.0
    token_symbol: str = ""

    @property
    def entry_price(self) -> float:
        """Weighted average entry price in native units per token."""
        if self.quantity > 0:
            return self.entry_value_native / self.quantity
        return 0.0

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    @property
    def key(self) -> tuple:
        return (self.agent_id, self.token_mint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "token_mint": self.token_mint,
            "token_symbol": self.token_symbol,
            "quantity": self.quantity,
            "entry_value_native": self.entry_value_native,
            "entry_price": self.entry_price,
            "opened_at": _iso(self.opened_at),
            "updated_at": _iso(self.updated_at),
            "closed_at": _iso(self.closed_at),
            "targets_hit": list(self.targets_hit),
            "realized_pnl_native": self.realized_pnl_native,
        }


@dataclass
class SellRecord:
    """Outcome of booking a SELL against a position."""
    position: Position
    realized_pnl_native: float
    proceeds_native: float
    cost_basis_removed: float

    success = True


@dataclass
class PriceQuote:
    """Token price from the price discovery service."""
    token_mint: str
    price_native: float
    price_usd: float
    liquidity_usd: Optional[float]
    fetched_at: datetime
    source: str
    pair_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_mint": self.token_mint,
            "price_native": self.price_native,
            "price_usd": self.price_usd,
            "liquidity_usd": self.liquidity_usd,
            "fetched_at": _iso(self.fetched_at),
            "source": self.source,
            "pair_address": self.pair_address,
        }


@dataclass
class PositionValuation:
    current_value_native: float
    unrealized_pnl_native: float
    unrealized_pnl_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_value_native": self.current_value_native,
            "unrealized_pnl_native": self.unrealized_pnl_native,
            "unrealized_pnl_pct": self.unrealized_pnl_pct,
        }


@dataclass
class TradeRecord:
    """Ledger entry for a booked trade."""
    agent_id: str
    result: ExecutionResult
    position_id: str
    realized_pnl_native: Optional[float] = None   # Only set for sells

    @property
    def side(self) -> TradeSide:
        return self.result.side

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data["agent_id"] = self.agent_id
        data["position_id"] = self.position_id
        data["realized_pnl_native"] = self.realized_pnl_native
        return data


@dataclass
class TradeMetrics:
    total_trades: int = 0
    buy_count: int = 0
    sell_count: int = 0
    total_volume_native: float = 0.0
    total_fees_native: float = 0.0
    realized_pnl_native: float = 0.0

    @property
    def avg_fee_pct(self) -> float:
        if self.total_volume_native > 0:
            return self.total_fees_native / self.total_volume_native * 100
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "total_volume_native": self.total_volume_native,
            "total_fees_native": self.total_fees_native,
            "avg_fee_pct": self.avg_fee_pct,
            "realized_pnl_native": self.realized_pnl_native,
        }
