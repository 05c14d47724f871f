"""
Integration tests for TradingService.

Executor, position manager, price fetcher and milestone tracker are real;
only the aggregator, RPC and price source are fakes.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import AGENT_ID, TOKEN_MINT, make_pair
from trade_engine.errors import (
    ExecutionErrorKind,
    NoRouteError,
    PositionErrorKind,
    SignerNotFoundError,
)
from trade_engine.models import SOL_MINT, TradeSide
from trade_engine.solana_rpc import ConfirmationStatus
from trade_engine.trading_service import TradingService
from trade_engine.wallets import EnvSignerProvider


def set_price(dexscreener, price_native: float):
    dexscreener.pairs[TOKEN_MINT] = [make_pair(TOKEN_MINT, SOL_MINT, price_native, price_native * 150)]


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_buy_then_value_at_double_entry(self, service, dexscreener):
        outcome = await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)

        assert outcome.success
        assert outcome.result.token_amount == pytest.approx(10.0)
        assert outcome.position.quantity == pytest.approx(10.0)
        assert outcome.position.entry_value_native == pytest.approx(0.01)

        set_price(dexscreener, 2 * outcome.position.entry_price)
        portfolio = await service.get_portfolio(AGENT_ID)

        entry = portfolio.positions[0]
        assert entry.valuation.unrealized_pnl_pct == pytest.approx(100.0)
        assert 0 in entry.milestones.targets_hit
        assert portfolio.total_value_native == pytest.approx(0.02)
        assert portfolio.total_unrealized_pnl_pct == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_first_target_hit_and_progress_toward_second(self, service, dexscreener):
        outcome = await service.execute_trade(AGENT_ID, TradeSide.BUY, TOKEN_MINT, 0.01)

        set_price(dexscreener, 1.8 * outcome.position.entry_price)
        portfolio = await service.get_portfolio(AGENT_ID)

        milestones = portfolio.positions[0].milestones
        assert milestones.targets_hit == [0]
        assert milestones.next_target == 2.0
        assert milestones.progress == pytest.approx(0.6)
        assert service.positions.get_position(AGENT_ID, TOKEN_MINT).targets_hit == [0]

    @pytest.mark.asyncio
    async def test_sell_books_realized_pnl(self, service, dexscreener):
        await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)
        service.executor.jupiter.tokens_per_native = 500.0  # Token doubled

        outcome = await service.execute_trade(AGENT_ID, "SELL", TOKEN_MINT, 4.0)

        assert outcome.success
        assert outcome.result.native_amount == pytest.approx(0.008)
        assert outcome.realized_pnl_native == pytest.approx(0.008 - 0.004)
        assert outcome.position.quantity == pytest.approx(6.0)
        assert outcome.position.entry_value_native == pytest.approx(0.006)

        metrics = service.get_trade_metrics(AGENT_ID)
        assert metrics.total_trades == 2
        assert metrics.realized_pnl_native == pytest.approx(0.004)

    @pytest.mark.asyncio
    async def test_ratchet_survives_price_retrace(self, service, dexscreener, clock):
        outcome = await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)
        entry_price = outcome.position.entry_price

        set_price(dexscreener, 2.1 * entry_price)
        hits = await service.refresh_milestones()
        assert hits[0].milestones.newly_hit == [0, 1]

        clock.advance(31)
        set_price(dexscreener, 1.6 * entry_price)
        portfolio = await service.get_portfolio(AGENT_ID)

        assert portfolio.positions[0].position.targets_hit == [0, 1]
        assert portfolio.positions[0].milestones.next_target == 3.0
        assert await service.refresh_milestones() == []


class TestValidation:

    @pytest.mark.asyncio
    async def test_sell_without_position_never_executes(self, service, rpc):
        error = await service.execute_trade(AGENT_ID, "SELL", TOKEN_MINT, 1.0)

        assert error.kind is PositionErrorKind.POSITION_NOT_FOUND
        assert rpc.sent == []

    @pytest.mark.asyncio
    async def test_sell_more_than_held_rejected(self, service, rpc):
        await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)

        error = await service.execute_trade(AGENT_ID, "SELL", TOKEN_MINT, 11.0)

        assert error.kind is PositionErrorKind.INVALID_QUANTITY
        assert len(rpc.sent) == 1
        assert service.positions.get_position(AGENT_ID, TOKEN_MINT).quantity == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_buy_above_limit_rejected(self, service, rpc):
        error = await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 25.0)

        assert error.kind is ExecutionErrorKind.INVALID_REQUEST
        assert rpc.sent == []

    @pytest.mark.asyncio
    async def test_unknown_side_rejected(self, service):
        error = await service.execute_trade(AGENT_ID, "HOLD", TOKEN_MINT, 1.0)

        assert error.kind is ExecutionErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_missing_signer_raises(self, service):
        service.signers = EnvSignerProvider(environ={})

        with pytest.raises(SignerNotFoundError):
            await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)


class TestFailures:

    @pytest.mark.asyncio
    async def test_failed_execution_creates_no_position(self, service, jupiter):
        jupiter.quote_errors = [NoRouteError()]

        error = await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)

        assert error.kind is ExecutionErrorKind.NO_LIQUIDITY
        assert service.list_positions(include_closed=True) == []
        assert service.get_trade_history(AGENT_ID) == []

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_attempts_without_position(self, service, rpc):
        rpc.confirm_results = [ConfirmationStatus.TIMEOUT] * 3

        error = await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)

        assert error.kind is ExecutionErrorKind.CONFIRMATION_TIMEOUT
        assert error.attempts == 3
        assert service.positions.get_position(AGENT_ID, TOKEN_MINT) is None

    @pytest.mark.asyncio
    async def test_unpriced_position_reported_as_unknown(self, service):
        await service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01)

        portfolio = await service.get_portfolio(AGENT_ID)

        entry = portfolio.positions[0]
        assert entry.price is None
        assert entry.valuation is None
        assert entry.to_dict()["unrealized_pnl_pct"] is None
        assert portfolio.unpriced_count == 1
        assert portfolio.total_value_native is None
        assert portfolio.total_cost_native == pytest.approx(0.01)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_trades_on_same_key_are_booked_in_order(self, service):
        results = await asyncio.gather(
            service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.01),
            service.execute_trade(AGENT_ID, "BUY", TOKEN_MINT, 0.02),
        )

        assert all(r.success for r in results)
        position = service.positions.get_position(AGENT_ID, TOKEN_MINT)
        assert position.quantity == pytest.approx(30.0)
        assert position.entry_value_native == pytest.approx(0.03)

    @pytest.mark.asyncio
    async def test_balance_lookup(self, service, rpc):
        rpc.balance_lamports = 1_500_000_000

        assert await service.get_balance(AGENT_ID) == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_close_releases_clients_and_store(self, positions, signer):
        executor = MagicMock()
        executor.close = AsyncMock()
        prices = MagicMock()
        prices.close = AsyncMock()
        store = MagicMock()
        service = TradingService(executor, positions, prices, MagicMock(), lambda agent_id: signer, store=store)

        await service.close()

        executor.close.assert_awaited_once()
        prices.close.assert_awaited_once()
        store.close.assert_called_once()
