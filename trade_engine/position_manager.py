"""
Position Manager - per-(agent, token) positions built from executed trades.

Rules:
- BUY adds to quantity and cost basis; the entry price is their ratio, so
  repeated buys give a weighted average.
- SELL removes cost basis pro rata with the sold fraction and books
  realized PnL = proceeds - removed cost basis. Selling more than is held
  is rejected, never clamped.
- A position whose quantity reaches zero is closed and kept for history; the
  next BUY opens a new one.

Mutations of one (agent, token) key are serialized with a per-key lock.
Rejections come back as PositionError values and leave state untouched.
Queries return copies; callers never hold a live reference.

Usage:
    manager = PositionManager()
    position = await manager.record_buy("agent-1", mint, result)
    sale = await manager.record_sell("agent-1", mint, sell_result)
    if sale.success:
        print(sale.realized_pnl_native)
"""

import logging
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple, Union

from trade_engine.async_utils import KeyedLock
from trade_engine.errors import PositionError, PositionErrorKind
from trade_engine.models import (
    ExecutionResult,
    Position,
    PositionValuation,
    PriceQuote,
    SellRecord,
    TradeMetrics,
    TradeRecord,
    TradeSide,
    utcnow,
)
from trade_engine.storage import PositionStore

logger = logging.getLogger(__name__)

# Remaining quantity at or below this is treated as fully sold
CLOSE_EPSILON = 1e-9


def _dust_tolerance(decimals: int) -> float:
    """Half a base unit of the token, never below CLOSE_EPSILON."""
    return max(CLOSE_EPSILON, 0.5 / (10 ** decimals))


def _new_position_id() -> str:
    return uuid.uuid4().hex


class PositionManager:
    """Owns all Position records and the trade ledger."""

    def __init__(
        self,
        store: PositionStore = None,
        clock: Callable = utcnow,
        id_factory: Callable[[], str] = _new_position_id,
    ):
        self.store = store
        self._clock = clock
        self._id_factory = id_factory
        self._open: Dict[Tuple[str, str], Position] = {}
        self._closed: List[Position] = []
        self._trades: List[TradeRecord] = []
        self._locks = KeyedLock()

        if self.store is not None:
            self._load()

    def _load(self):
        for position in self.store.load_positions():
            if position.is_open:
                self._open[position.key] = position
            else:
                self._closed.append(position)
        self._trades = self.store.load_trades()
        logger.info(f"Loaded {len(self._open)} open positions and {len(self._trades)} trades")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def record_buy(
        self, agent_id: str, token_mint: str, result: ExecutionResult
    ) -> Union[Position, PositionError]:
        if result.side is not TradeSide.BUY:
            return self._error(PositionErrorKind.SIDE_MISMATCH,
                               f"record_buy given a {result.side.value} result", agent_id, token_mint)
        if result.token_amount <= 0 or result.native_amount < 0:
            return self._error(PositionErrorKind.INVALID_QUANTITY,
                               f"BUY must receive a positive token amount, got {result.token_amount}",
                               agent_id, token_mint)

        async with self._locks.hold((agent_id, token_mint)):
            now = self._clock()
            position = self._open.get((agent_id, token_mint))
            if position is None:
                position = Position(
                    id=self._id_factory(),
                    agent_id=agent_id,
                    token_mint=token_mint,
                    quantity=result.token_amount,
                    entry_value_native=result.native_amount,
                    opened_at=now,
                    updated_at=now,
                )
                self._open[position.key] = position
                logger.debug(f"Opened position {position.id} for {agent_id} in {token_mint[:8]}...")
            else:
                position.quantity += result.token_amount
                position.entry_value_native += result.native_amount
                position.updated_at = now

            self._book(TradeRecord(agent_id, result, position.id), position)
            return _snapshot(position)

    async def record_sell(
        self, agent_id: str, token_mint: str, result: ExecutionResult
    ) -> Union[SellRecord, PositionError]:
        if result.side is not TradeSide.SELL:
            return self._error(PositionErrorKind.SIDE_MISMATCH,
                               f"record_sell given a {result.side.value} result", agent_id, token_mint)
        sold = result.token_amount
        if sold <= 0:
            return self._error(PositionErrorKind.INVALID_QUANTITY,
                               f"SELL quantity must be positive, got {sold}", agent_id, token_mint)

        async with self._locks.hold((agent_id, token_mint)):
            position = self._open.get((agent_id, token_mint))
            if position is None:
                return self._error(PositionErrorKind.POSITION_NOT_FOUND,
                                   f"No open position for {agent_id} in {token_mint}", agent_id, token_mint)
            tolerance = _dust_tolerance(result.token_decimals)
            if sold > position.quantity + tolerance:
                return self._error(PositionErrorKind.INVALID_QUANTITY,
                                   f"Cannot sell {sold}, only {position.quantity} held", agent_id, token_mint)

            fraction = min(sold / position.quantity, 1.0)
            cost_removed = position.entry_value_native * fraction
            proceeds = result.native_amount
            realized = proceeds - cost_removed

            position.quantity -= sold
            position.entry_value_native -= cost_removed
            position.realized_pnl_native += realized
            position.updated_at = self._clock()

            if position.quantity <= tolerance:
                position.quantity = 0.0
                position.entry_value_native = 0.0
                position.closed_at = position.updated_at
                del self._open[position.key]
                self._closed.append(position)
                logger.debug(f"Closed position {position.id} (realized {position.realized_pnl_native:+.6f})")

            self._book(TradeRecord(agent_id, result, position.id, realized), position)
            return SellRecord(
                position=_snapshot(position),
                realized_pnl_native=realized,
                proceeds_native=proceeds,
                cost_basis_removed=cost_removed,
            )

    async def apply_milestones(self, agent_id: str, token_mint: str, targets_hit: List[int]) -> Optional[Position]:
        """Merge newly hit take-profit indices into the open position. Never removes any."""
        async with self._locks.hold((agent_id, token_mint)):
            position = self._open.get((agent_id, token_mint))
            if position is None:
                return None
            merged = sorted(set(position.targets_hit).union(targets_hit))
            if merged != position.targets_hit:
                position.targets_hit = merged
                position.updated_at = self._clock()
                if self.store is not None:
                    self.store.save_position(position)
            return _snapshot(position)

    def _book(self, record: TradeRecord, position: Position):
        self._trades.append(record)
        if self.store is not None:
            self.store.save_position(position)
            self.store.save_trade(record)

    def _error(self, kind: PositionErrorKind, message: str, agent_id: str, token_mint: str) -> PositionError:
        logger.debug(f"Position update rejected ({kind.value}): {message}")
        return PositionError(kind=kind, message=message, agent_id=agent_id, token_mint=token_mint)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, agent_id: str, token_mint: str) -> Optional[Position]:
        """The open position for this key, if any."""
        position = self._open.get((agent_id, token_mint))
        return _snapshot(position) if position else None

    def list_positions(self, agent_id: Optional[str] = None, include_closed: bool = False) -> List[Position]:
        positions = list(self._open.values())
        if include_closed:
            positions.extend(self._closed)
        if agent_id is not None:
            positions = [p for p in positions if p.agent_id == agent_id]
        positions.sort(key=lambda p: p.opened_at)
        return [_snapshot(p) for p in positions]

    def value_position(self, position: Position, quote: PriceQuote) -> PositionValuation:
        current = position.quantity * quote.price_native
        unrealized = current - position.entry_value_native
        if position.entry_value_native > 0:
            pct = unrealized / position.entry_value_native * 100
        else:
            pct = 0.0
        return PositionValuation(
            current_value_native=current,
            unrealized_pnl_native=unrealized,
            unrealized_pnl_pct=pct,
        )

    def get_trade_history(self, agent_id: str, limit: int = 50) -> List[TradeRecord]:
        """Most recent trades first."""
        trades = [t for t in reversed(self._trades) if t.agent_id == agent_id]
        return trades[:limit] if limit else trades

    def get_trade_metrics(self, agent_id: str) -> TradeMetrics:
        metrics = TradeMetrics()
        for trade in self._trades:
            if trade.agent_id != agent_id:
                continue
            metrics.total_trades += 1
            if trade.side is TradeSide.BUY:
                metrics.buy_count += 1
            else:
                metrics.sell_count += 1
            metrics.total_volume_native += trade.result.native_amount
            metrics.total_fees_native += trade.result.total_fees
            metrics.realized_pnl_native += trade.realized_pnl_native or 0.0
        return metrics


def _snapshot(position: Position) -> Position:
    return replace(position, targets_hit=list(position.targets_hit))
