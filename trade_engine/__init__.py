"""
Trade execution and position/PnL tracking for autonomous trading agents.

    TradingExecutor   - decision -> confirmed swap, with fee escalation
    PositionManager   - executed trades -> per-agent positions and PnL
    PriceFetcher      - cached native/USD prices
    MilestoneTracker  - take-profit ladder progress
"""

__version__ = "1.0.0"

from trade_engine.config import EngineConfig, get_engine_config
from trade_engine.errors import (
    ExecutionError,
    ExecutionErrorKind,
    PositionError,
    PositionErrorKind,
    TradeEngineError,
)
from trade_engine.milestones import MilestoneProgress, MilestoneTracker, TakeProfitLadder
from trade_engine.models import ExecutionResult, Position, PriceQuote, TradeSide
from trade_engine.position_manager import PositionManager
from trade_engine.price_fetcher import PriceCache, PriceFetcher
from trade_engine.trading_executor import TradingExecutor
from trade_engine.trading_service import TradingService

__all__ = [
    "EngineConfig",
    "ExecutionError",
    "ExecutionErrorKind",
    "ExecutionResult",
    "MilestoneProgress",
    "MilestoneTracker",
    "Position",
    "PositionError",
    "PositionErrorKind",
    "PositionManager",
    "PriceCache",
    "PriceFetcher",
    "PriceQuote",
    "TakeProfitLadder",
    "TradeEngineError",
    "TradeSide",
    "TradingExecutor",
    "TradingService",
    "get_engine_config",
]
