"""
Trading API Routes.

Provides endpoints for agent trading:
- Execute a BUY/SELL decision
- Portfolio with live valuation and take-profit progress
- Trade history and metrics
- Position listing across agents
- Wallet balance
"""

from typing import Optional

from fastapi import APIRouter, Query, Request

from trade_engine.api.errors import make_success_response, result_error_response
from trade_engine.api.schemas import TradeRequest
from trade_engine.trading_service import TradingService

router = APIRouter(prefix="/api/trading", tags=["Trading"])


def get_service(request: Request) -> TradingService:
    return request.app.state.service


@router.post("/trade")
async def execute_trade(body: TradeRequest, request: Request):
    """
    Execute a trade and book it into the agent's positions.

    Failures keep their specific cause: no liquidity (422), insufficient
    balance (400), unknown position (404), confirmation timeout (504).
    """
    service = get_service(request)
    outcome = await service.execute_trade(body.agent_id, body.side, body.token_mint, body.amount)
    if not outcome.success:
        return result_error_response(outcome)
    return make_success_response(outcome.to_dict())


@router.get("/portfolio/{agent_id}")
async def get_portfolio(agent_id: str, request: Request):
    """Open positions with live prices. Positions without a price report null valuation fields."""
    portfolio = await get_service(request).get_portfolio(agent_id)
    return make_success_response(portfolio.to_dict())


@router.get("/trades/{agent_id}")
async def get_trades(
    agent_id: str,
    request: Request,
    limit: int = Query(50, ge=1, le=500, description="Most recent trades to return"),
):
    trades = get_service(request).get_trade_history(agent_id, limit)
    return make_success_response({
        "agent_id": agent_id,
        "count": len(trades),
        "trades": [t.to_dict() for t in trades],
    })


@router.get("/metrics/{agent_id}")
async def get_metrics(agent_id: str, request: Request):
    metrics = get_service(request).get_trade_metrics(agent_id)
    return make_success_response({"agent_id": agent_id, **metrics.to_dict()})


@router.get("/positions")
async def list_positions(
    request: Request,
    agent_id: Optional[str] = Query(None, description="Only this agent's positions"),
    include_closed: bool = Query(False, description="Include closed positions"),
):
    positions = get_service(request).list_positions(agent_id, include_closed)
    return make_success_response({
        "count": len(positions),
        "positions": [p.to_dict() for p in positions],
    })


@router.get("/balance/{agent_id}")
async def get_balance(agent_id: str, request: Request):
    balance = await get_service(request).get_balance(agent_id)
    return make_success_response({"agent_id": agent_id, "balance_native": balance})
