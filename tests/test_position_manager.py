"""
Tests for PositionManager.

Covers weighted-average entry on repeated buys, pro-rata cost basis removal
on sells, rejection of oversells, close/reopen lifecycle, per-key
serialization and the trade ledger.
"""

import asyncio

import pytest

from conftest import AGENT_ID, OTHER_MINT, TOKEN_MINT, make_result
from trade_engine.errors import PositionErrorKind
from trade_engine.models import PriceQuote, TradeSide, utcnow
from trade_engine.position_manager import PositionManager
from trade_engine.storage import PositionStore


def quote(price_native: float, mint: str = TOKEN_MINT) -> PriceQuote:
    return PriceQuote(
        token_mint=mint,
        price_native=price_native,
        price_usd=price_native * 150,
        liquidity_usd=10_000.0,
        fetched_at=utcnow(),
        source="test",
    )


class TestRecordBuy:
    """Tests for BUY bookkeeping."""

    @pytest.mark.asyncio
    async def test_first_buy_opens_position(self, positions):
        position = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 0.01, 500))

        assert position.quantity == 500
        assert position.entry_value_native == 0.01
        assert position.is_open
        assert position.closed_at is None
        assert position.targets_hit == []

    @pytest.mark.asyncio
    async def test_equal_buys_average_entry_price(self, positions):
        # 1.0 native at price 10 -> 0.1 tokens; 1.0 native at price 20 -> 0.05 tokens
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 0.1))
        position = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 0.05))

        assert position.entry_value_native == pytest.approx(2.0)
        assert position.quantity == pytest.approx(0.15)
        assert position.entry_price == pytest.approx(2.0 / 0.15)

    @pytest.mark.asyncio
    async def test_equal_token_buys_average_to_midpoint(self, positions):
        # Same token quantity at native prices 10 and 20
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 1.0))
        position = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 20.0, 1.0))

        assert position.entry_price == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_unequal_buys_weight_entry_price(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 30.0, 3.0))
        position = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 20.0, 1.0))

        assert position.entry_price == pytest.approx(12.5)

    @pytest.mark.asyncio
    async def test_sell_result_rejected_by_record_buy(self, positions):
        error = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.0, 10))

        assert not error.success
        assert error.kind is PositionErrorKind.SIDE_MISMATCH
        assert positions.get_position(AGENT_ID, TOKEN_MINT) is None

    @pytest.mark.asyncio
    async def test_zero_token_buy_rejected(self, positions):
        error = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 0))

        assert error.kind is PositionErrorKind.INVALID_QUANTITY
        assert positions.list_positions() == []


class TestRecordSell:
    """Tests for SELL bookkeeping."""

    @pytest.mark.asyncio
    async def test_partial_sell_removes_cost_basis_pro_rata(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 7.0, 40))

        assert sale.success
        assert sale.position.quantity == pytest.approx(60)
        assert sale.position.entry_value_native == pytest.approx(6.0)
        assert sale.cost_basis_removed == pytest.approx(4.0)
        assert sale.realized_pnl_native == pytest.approx(7.0 - 4.0)
        assert sale.position.realized_pnl_native == pytest.approx(3.0)
        assert sale.position.entry_price == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_losing_sell_books_negative_pnl(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 2.5, 50))

        assert sale.realized_pnl_native == pytest.approx(-2.5)

    @pytest.mark.asyncio
    async def test_full_sell_closes_position(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 12.0, 100))

        assert sale.position.quantity == 0
        assert sale.position.entry_value_native == 0
        assert sale.position.closed_at is not None
        assert not sale.position.is_open
        assert positions.get_position(AGENT_ID, TOKEN_MINT) is None

    @pytest.mark.asyncio
    async def test_dust_remainder_closes_position(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 0.3))
        await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 0.5, 0.1))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.0, 0.2))

        assert sale.position.quantity == 0
        assert sale.position.closed_at is not None

    @pytest.mark.asyncio
    async def test_large_quantity_float_residue_closes_position(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 2.0, 123456789.123456))
        await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.5, 100000000.1))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 0.4, 23456789.023456))

        assert sale.success
        assert sale.position.quantity == 0
        assert sale.position.closed_at is not None
        assert positions.get_position(AGENT_ID, TOKEN_MINT) is None

    @pytest.mark.asyncio
    async def test_one_base_unit_remaining_stays_open(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 100))

        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.0, 99.999999))

        assert sale.position.is_open
        assert sale.position.quantity == pytest.approx(0.000001)

    @pytest.mark.asyncio
    async def test_oversell_rejected_and_position_unchanged(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))

        error = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 15.0, 150))

        assert not error.success
        assert error.kind is PositionErrorKind.INVALID_QUANTITY
        position = positions.get_position(AGENT_ID, TOKEN_MINT)
        assert position.quantity == 100
        assert position.entry_value_native == 10.0
        assert len(positions.get_trade_history(AGENT_ID)) == 1

    @pytest.mark.asyncio
    async def test_sell_without_position_not_found(self, positions):
        error = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.0, 10))

        assert error.kind is PositionErrorKind.POSITION_NOT_FOUND
        assert error.to_dict()["code"] == "POSITION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_buy_after_close_opens_new_position(self, positions):
        first = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10))
        await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 2.0, 10))

        second = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 3.0, 5))

        assert second.id != first.id
        assert second.quantity == 5
        assert second.entry_value_native == 3.0
        assert second.realized_pnl_native == 0.0
        assert len(positions.list_positions(AGENT_ID, include_closed=True)) == 2

    @pytest.mark.asyncio
    async def test_quantity_never_negative_over_sequence(self, positions):
        trades = [
            (TradeSide.BUY, 1.0, 10),
            (TradeSide.SELL, 0.5, 4),
            (TradeSide.SELL, 0.5, 7),     # Rejected: only 6 held
            (TradeSide.BUY, 2.0, 5),
            (TradeSide.SELL, 3.0, 11),
            (TradeSide.SELL, 1.0, 1),     # Rejected: closed
        ]
        for side, native, tokens in trades:
            result = make_result(side, native, tokens)
            if side is TradeSide.BUY:
                await positions.record_buy(AGENT_ID, TOKEN_MINT, result)
            else:
                await positions.record_sell(AGENT_ID, TOKEN_MINT, result)
            for position in positions.list_positions(include_closed=True):
                assert position.quantity >= 0
                assert (position.quantity == 0) == (position.closed_at is not None)


class TestConcurrency:
    """Mutations on one key are serialized; other keys proceed independently."""

    @pytest.mark.asyncio
    async def test_concurrent_buys_do_not_lose_updates(self, positions):
        await asyncio.gather(*(
            positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 0.1, 1))
            for _ in range(50)
        ))

        position = positions.get_position(AGENT_ID, TOKEN_MINT)
        assert position.quantity == pytest.approx(50)
        assert position.entry_value_native == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_concurrent_buy_and_sell_keep_totals_consistent(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))

        await asyncio.gather(
            positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100)),
            positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 5.0, 50)),
        )

        position = positions.get_position(AGENT_ID, TOKEN_MINT)
        assert position.quantity == pytest.approx(150)
        # Same totals whichever mutation ran first
        assert position.entry_value_native == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_different_keys_are_independent(self, positions):
        await asyncio.gather(
            positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10)),
            positions.record_buy(AGENT_ID, OTHER_MINT, make_result(TradeSide.BUY, 2.0, 20, token_mint=OTHER_MINT)),
            positions.record_buy("agent-2", TOKEN_MINT, make_result(TradeSide.BUY, 3.0, 30)),
        )

        assert len(positions.list_positions()) == 3
        assert len(positions.list_positions(AGENT_ID)) == 2
        assert positions.get_position("agent-2", TOKEN_MINT).quantity == 30


class TestQueries:
    """Tests for read-side operations."""

    @pytest.mark.asyncio
    async def test_queries_return_copies(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10))

        copy = positions.get_position(AGENT_ID, TOKEN_MINT)
        copy.quantity = 999
        copy.targets_hit.append(0)

        fresh = positions.get_position(AGENT_ID, TOKEN_MINT)
        assert fresh.quantity == 10
        assert fresh.targets_hit == []

    @pytest.mark.asyncio
    async def test_value_position_at_double_entry(self, positions):
        position = await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 0.01, 500))

        valuation = positions.value_position(position, quote(price_native=2 * position.entry_price))

        assert valuation.current_value_native == pytest.approx(0.02)
        assert valuation.unrealized_pnl_native == pytest.approx(0.01)
        assert valuation.unrealized_pnl_pct == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_value_closed_position_guards_zero_cost(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10))
        sale = await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 1.0, 10))

        valuation = positions.value_position(sale.position, quote(0.5))

        assert valuation.current_value_native == 0
        assert valuation.unrealized_pnl_pct == 0.0

    @pytest.mark.asyncio
    async def test_trade_history_most_recent_first(self, positions):
        for i in range(5):
            await positions.record_buy(
                AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10, signature=f"sig{i}")
            )

        history = positions.get_trade_history(AGENT_ID, limit=3)

        assert [t.result.signature for t in history] == ["sig4", "sig3", "sig2"]
        assert positions.get_trade_history("nobody") == []

    @pytest.mark.asyncio
    async def test_trade_metrics(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100, total_fees=0.05))
        await positions.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 6.0, 40, total_fees=0.03))

        metrics = positions.get_trade_metrics(AGENT_ID)

        assert metrics.total_trades == 2
        assert metrics.buy_count == 1
        assert metrics.sell_count == 1
        assert metrics.total_volume_native == pytest.approx(16.0)
        assert metrics.total_fees_native == pytest.approx(0.08)
        assert metrics.avg_fee_pct == pytest.approx(0.5)
        assert metrics.realized_pnl_native == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_apply_milestones_only_adds(self, positions):
        await positions.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 1.0, 10))

        await positions.apply_milestones(AGENT_ID, TOKEN_MINT, [0, 1])
        updated = await positions.apply_milestones(AGENT_ID, TOKEN_MINT, [0])

        assert updated.targets_hit == [0, 1]

    @pytest.mark.asyncio
    async def test_apply_milestones_without_position(self, positions):
        assert await positions.apply_milestones(AGENT_ID, TOKEN_MINT, [0]) is None


class TestPersistence:
    """PositionManager write-through to a PositionStore."""

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        db_path = tmp_path / "positions.db"
        manager = PositionManager(store=PositionStore(db_path))
        await manager.record_buy(AGENT_ID, TOKEN_MINT, make_result(TradeSide.BUY, 10.0, 100))
        await manager.record_sell(AGENT_ID, TOKEN_MINT, make_result(TradeSide.SELL, 7.0, 40))
        await manager.apply_milestones(AGENT_ID, TOKEN_MINT, [0])

        reloaded = PositionManager(store=PositionStore(db_path))

        position = reloaded.get_position(AGENT_ID, TOKEN_MINT)
        assert position.quantity == pytest.approx(60)
        assert position.entry_value_native == pytest.approx(6.0)
        assert position.targets_hit == [0]
        assert position.realized_pnl_native == pytest.approx(3.0)
        assert reloaded.get_trade_metrics(AGENT_ID).total_trades == 2
