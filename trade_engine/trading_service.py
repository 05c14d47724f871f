"""
Trading Service - the entry point the HTTP API calls.

execute_trade() validates a decision, runs it through the TradingExecutor
and books a confirmed swap into the PositionManager. The per-(agent, token)
lock is held across both steps, so bookkeeping happens in confirmation order.

get_portfolio() attaches live prices, valuations and take-profit progress to
an agent's open positions, ratcheting any targets that were hit.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from trade_engine.async_utils import KeyedLock
from trade_engine.config import EngineConfig
from trade_engine.errors import (
    ExecutionError,
    ExecutionErrorKind,
    PositionError,
    PositionErrorKind,
)
from trade_engine.logging_config import CorrelationContext, get_audit_logger, get_logger
from trade_engine.milestones import MilestoneProgress, MilestoneTracker, TakeProfitLadder
from trade_engine.models import (
    ExecutionResult,
    Position,
    PositionValuation,
    PriceQuote,
    TradeMetrics,
    TradeRecord,
    TradeSide,
)
from trade_engine.position_manager import CLOSE_EPSILON, PositionManager
from trade_engine.price_fetcher import PriceFetcher
from trade_engine.storage import PositionStore
from trade_engine.trading_executor import TradingExecutor
from trade_engine.wallets import EnvSignerProvider, Signer

logger = get_logger(__name__)
audit = get_audit_logger()


@dataclass
class TradeOutcome:
    """A confirmed trade and what it did to the position."""
    result: ExecutionResult
    position: Optional[Position]
    realized_pnl_native: Optional[float] = None
    bookkeeping_error: Optional[PositionError] = None

    success = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution": self.result.to_dict(),
            "position": self.position.to_dict() if self.position else None,
            "realized_pnl_native": self.realized_pnl_native,
            "bookkeeping_error": self.bookkeeping_error.to_dict() if self.bookkeeping_error else None,
        }


TradeResponse = Union[TradeOutcome, ExecutionError, PositionError]


@dataclass
class PortfolioEntry:
    position: Position
    price: Optional[PriceQuote] = None
    valuation: Optional[PositionValuation] = None
    milestones: Optional[MilestoneProgress] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.position.to_dict()
        data["price_native"] = self.price.price_native if self.price else None
        data["price_usd"] = self.price.price_usd if self.price else None
        if self.valuation:
            data.update(self.valuation.to_dict())
        else:
            data.update(current_value_native=None, unrealized_pnl_native=None, unrealized_pnl_pct=None)
        data["milestones"] = self.milestones.to_dict() if self.milestones else None
        return data


@dataclass
class Portfolio:
    agent_id: str
    positions: List[PortfolioEntry] = field(default_factory=list)
    total_cost_native: float = 0.0
    total_value_native: Optional[float] = None          # Priced positions only
    total_unrealized_pnl_native: Optional[float] = None
    total_unrealized_pnl_pct: Optional[float] = None
    unpriced_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "positions": [p.to_dict() for p in self.positions],
            "total_cost_native": self.total_cost_native,
            "total_value_native": self.total_value_native,
            "total_unrealized_pnl_native": self.total_unrealized_pnl_native,
            "total_unrealized_pnl_pct": self.total_unrealized_pnl_pct,
            "unpriced_count": self.unpriced_count,
        }


class TradingService:
    """Executes agent trades and answers portfolio queries."""

    def __init__(
        self,
        executor: TradingExecutor,
        positions: PositionManager,
        prices: PriceFetcher,
        tracker: MilestoneTracker,
        signers: Callable[[str], Signer],
        max_trade_native: float = 10.0,
        store: PositionStore = None,
    ):
        self.executor = executor
        self.positions = positions
        self.prices = prices
        self.tracker = tracker
        self.signers = signers
        self.max_trade_native = max_trade_native
        self.store = store
        self._locks = KeyedLock()

    @classmethod
    def from_config(cls, config: EngineConfig, signers: Callable[[str], Signer] = None) -> "TradingService":
        store = PositionStore(config.db_path) if config.db_path else None
        return cls(
            executor=TradingExecutor.from_config(config),
            positions=PositionManager(store=store),
            prices=PriceFetcher.from_config(config),
            tracker=MilestoneTracker(TakeProfitLadder(config.tp_ladder)),
            signers=signers or EnvSignerProvider(),
            max_trade_native=config.max_trade_native,
            store=store,
        )

    async def close(self):
        await self.executor.close()
        await self.prices.close()
        if self.store is not None:
            self.store.close()

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def execute_trade(
        self,
        agent_id: str,
        side: Union[TradeSide, str],
        token_mint: str,
        amount: float,
    ) -> TradeResponse:
        """
        Execute a BUY (amount in native units) or SELL (amount in tokens).

        Raises:
            SignerNotFoundError: no key is configured for the agent
        """
        try:
            side = side if isinstance(side, TradeSide) else TradeSide(str(side).upper())
        except ValueError:
            return self._invalid(str(side), token_mint, f"Unknown trade side: {side}")
        if amount is None or amount <= 0:
            return self._invalid(side.value, token_mint, f"Amount must be positive, got {amount}")
        if side is TradeSide.BUY and amount > self.max_trade_native:
            return self._invalid(
                side.value, token_mint,
                f"BUY amount {amount} exceeds the {self.max_trade_native} limit",
            )

        signer = self.signers(agent_id)

        with CorrelationContext(agent_id=agent_id, trade_id=uuid.uuid4().hex[:12]):
            async with self._locks.hold((agent_id, token_mint)):
                if side is TradeSide.BUY:
                    return await self._buy(agent_id, signer, token_mint, amount)
                return await self._sell(agent_id, signer, token_mint, amount)

    async def _buy(self, agent_id: str, signer: Signer, token_mint: str, amount: float) -> TradeResponse:
        logger.info("Executing BUY", token_mint=token_mint, amount=amount)
        outcome = await self.executor.execute_buy(signer, token_mint, amount)
        if not outcome.success:
            self._log_failure(outcome)
            return outcome

        booked = await self.positions.record_buy(agent_id, token_mint, outcome)
        if not booked.success:
            logger.error("Confirmed BUY could not be booked", signature=outcome.signature, reason=booked.message)
            return TradeOutcome(outcome, None, bookkeeping_error=booked)

        logger.info(
            "BUY confirmed",
            signature=outcome.signature,
            token_amount=outcome.token_amount,
            total_fees=outcome.total_fees,
            attempt=outcome.attempt,
        )
        return self._audited(agent_id, TradeOutcome(outcome, booked))

    async def _sell(self, agent_id: str, signer: Signer, token_mint: str, amount: float) -> TradeResponse:
        position = self.positions.get_position(agent_id, token_mint)
        if position is None:
            return PositionError(
                PositionErrorKind.POSITION_NOT_FOUND,
                f"No open position for {agent_id} in {token_mint}",
                agent_id, token_mint,
            )
        if amount > position.quantity + CLOSE_EPSILON:
            return PositionError(
                PositionErrorKind.INVALID_QUANTITY,
                f"Cannot sell {amount}, only {position.quantity} held",
                agent_id, token_mint,
            )

        logger.info("Executing SELL", token_mint=token_mint, amount=amount)
        outcome = await self.executor.execute_sell(signer, token_mint, amount)
        if not outcome.success:
            self._log_failure(outcome)
            return outcome

        sale = await self.positions.record_sell(agent_id, token_mint, outcome)
        if not sale.success:
            logger.error("Confirmed SELL could not be booked", signature=outcome.signature, reason=sale.message)
            return TradeOutcome(outcome, None, bookkeeping_error=sale)

        logger.info(
            "SELL confirmed",
            signature=outcome.signature,
            proceeds=outcome.native_amount,
            realized_pnl=sale.realized_pnl_native,
            attempt=outcome.attempt,
        )
        return self._audited(agent_id, TradeOutcome(outcome, sale.position, sale.realized_pnl_native))

    def _audited(self, agent_id: str, trade: TradeOutcome) -> TradeOutcome:
        audit.info(f"{trade.result.side.value} booked", agent_id=agent_id, **trade.to_dict())
        return trade

    def _invalid(self, side: str, token_mint: str, message: str) -> ExecutionError:
        return ExecutionError(ExecutionErrorKind.INVALID_REQUEST, message, side, token_mint)

    def _log_failure(self, error: ExecutionError):
        logger.warning(
            f"{error.side} failed: {error.message}",
            code=error.code,
            attempts=error.attempts,
            signatures=error.signatures,
        )

    async def get_balance(self, agent_id: str) -> float:
        signer = self.signers(agent_id)
        return await self.executor.get_balance(signer.address)

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    async def get_portfolio(self, agent_id: str) -> Portfolio:
        entries = await self._evaluate(self.positions.list_positions(agent_id))
        portfolio = Portfolio(agent_id=agent_id, positions=entries)

        priced_cost = 0.0
        priced_value = 0.0
        for entry in entries:
            portfolio.total_cost_native += entry.position.entry_value_native
            if entry.valuation is None:
                portfolio.unpriced_count += 1
                continue
            priced_cost += entry.position.entry_value_native
            priced_value += entry.valuation.current_value_native

        if entries and portfolio.unpriced_count < len(entries):
            portfolio.total_value_native = priced_value
            portfolio.total_unrealized_pnl_native = priced_value - priced_cost
            portfolio.total_unrealized_pnl_pct = (
                (priced_value - priced_cost) / priced_cost * 100 if priced_cost > 0 else 0.0
            )
        return portfolio

    async def refresh_milestones(self) -> List[PortfolioEntry]:
        """Re-price every open position; returns those that hit a new target."""
        entries = await self._evaluate(self.positions.list_positions())
        hits = [e for e in entries if e.milestones and e.milestones.newly_hit]
        for entry in hits:
            logger.info(
                "Take-profit target hit",
                agent_id=entry.position.agent_id,
                token_mint=entry.position.token_mint,
                targets=entry.milestones.newly_hit,
                multiplier=round(entry.milestones.current_multiplier, 4),
            )
        return hits

    async def _evaluate(self, positions: List[Position]) -> List[PortfolioEntry]:
        prices = await self.prices.get_prices(p.token_mint for p in positions)
        entries = []
        for position in positions:
            quote = prices.get(position.token_mint)
            entry = PortfolioEntry(position=position, price=quote)
            if quote is not None:
                entry.valuation = self.positions.value_position(position, quote)
                entry.milestones = self.tracker.evaluate(position, entry.valuation.current_value_native)
                if entry.milestones.newly_hit:
                    updated = await self.positions.apply_milestones(
                        position.agent_id, position.token_mint, entry.milestones.targets_hit
                    )
                    if updated is not None:
                        entry.position = updated
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def list_positions(self, agent_id: Optional[str] = None, include_closed: bool = False) -> List[Position]:
        return self.positions.list_positions(agent_id, include_closed)

    def get_trade_history(self, agent_id: str, limit: int = 50) -> List[TradeRecord]:
        return self.positions.get_trade_history(agent_id, limit)

    def get_trade_metrics(self, agent_id: str) -> TradeMetrics:
        return self.positions.get_trade_metrics(agent_id)
