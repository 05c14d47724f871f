"""
Trade Engine Test Configuration

Shared fakes for the external collaborators (swap aggregator, Solana RPC,
price source, signer) and fixtures wiring them into the engine.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from trade_engine.dexscreener import TokenPair
from trade_engine.jupiter import SwapRoute
from trade_engine.milestones import MilestoneTracker
from trade_engine.models import LAMPORTS_PER_SOL, SOL_MINT, ExecutionResult, TradeSide
from trade_engine.position_manager import PositionManager
from trade_engine.price_fetcher import PriceCache, PriceFetcher
from trade_engine.retry_policy import BackoffPolicy
from trade_engine.solana_rpc import ConfirmationResult, ConfirmationStatus, SignatureStatus
from trade_engine.trading_executor import TradingExecutor
from trade_engine.trading_service import TradingService

TOKEN_MINT = "TokenMint1111111111111111111111111111111111"
OTHER_MINT = "OtherMint1111111111111111111111111111111111"
AGENT_ID = "agent-1"
WALLET = "AgentWa11et1111111111111111111111111111111"
TOKEN_DECIMALS = 6


class FakeSigner:
    address = WALLET

    def sign_transaction(self, tx_bytes: bytes) -> bytes:
        return b"signed:" + tx_bytes


class FakeJupiter:
    """
    Quotes at a fixed rate of `tokens_per_native` tokens per native unit.

    quote_errors / build_errors are consumed one per call; None means succeed.
    """

    def __init__(self, tokens_per_native: float = 1000.0, decimals: int = TOKEN_DECIMALS):
        self.tokens_per_native = tokens_per_native
        self.decimals = decimals
        self.quote_errors: List[Optional[Exception]] = []
        self.build_errors: List[Optional[Exception]] = []
        self.platform_fee_amount = 0
        self.quotes: List[dict] = []
        self.builds: List[dict] = []
        self.closed = False

    async def quote(self, input_mint, output_mint, amount, slippage_bps) -> SwapRoute:
        self.quotes.append({
            "input_mint": input_mint,
            "output_mint": output_mint,
            "amount": amount,
            "slippage_bps": slippage_bps,
        })
        if self.quote_errors:
            error = self.quote_errors.pop(0)
            if error is not None:
                raise error

        if input_mint == SOL_MINT:
            native = amount / LAMPORTS_PER_SOL
            out_amount = int(round(native * self.tokens_per_native * 10 ** self.decimals))
        else:
            tokens = amount / 10 ** self.decimals
            out_amount = int(round(tokens / self.tokens_per_native * LAMPORTS_PER_SOL))

        return SwapRoute(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out_amount,
            other_amount_threshold=out_amount,
            slippage_bps=slippage_bps,
            price_impact_pct=0.01,
            platform_fee_amount=self.platform_fee_amount,
        )

    async def build_swap(self, route, user_public_key, priority_fee_lamports) -> bytes:
        self.builds.append({
            "route": route,
            "user_public_key": user_public_key,
            "priority_fee_lamports": priority_fee_lamports,
        })
        if self.build_errors:
            error = self.build_errors.pop(0)
            if error is not None:
                raise error
        return b"unsigned-tx"

    async def close(self):
        self.closed = True


class FakeRPC:
    """
    In-memory stand-in for SolanaRPC.

    send_results / confirm_results are consumed one per submission; when
    exhausted every send succeeds and every confirmation confirms.
    """

    def __init__(self):
        self.balance_lamports = 100 * LAMPORTS_PER_SOL
        self.token_balance = 1_000_000.0
        self.decimals: Dict[str, int] = {TOKEN_MINT: TOKEN_DECIMALS, OTHER_MINT: TOKEN_DECIMALS}
        self.send_results: List[object] = []
        self.confirm_results: List[ConfirmationStatus] = []
        self.statuses: Dict[str, SignatureStatus] = {}
        self.effects = None
        self.effects_error: Optional[Exception] = None
        self.sent: List[bytes] = []
        self.balance_error: Optional[Exception] = None
        self.decimals_calls = 0
        self.closed = False

    async def get_balance(self, address: str) -> int:
        if self.balance_error:
            raise self.balance_error
        return self.balance_lamports

    async def get_token_balance(self, owner: str, token_mint: str) -> float:
        return self.token_balance

    async def get_token_decimals(self, token_mint: str) -> int:
        self.decimals_calls += 1
        return self.decimals[token_mint]

    async def send_transaction(self, signed_tx: bytes) -> str:
        self.sent.append(signed_tx)
        if self.send_results:
            result = self.send_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return f"sig{len(self.sent)}"

    async def confirm_transaction(self, signature, timeout_seconds, poll_interval=0.5, commitment="confirmed"):
        status = self.confirm_results.pop(0) if self.confirm_results else ConfirmationStatus.CONFIRMED
        error = "" if status is ConfirmationStatus.CONFIRMED else f"{status.value}"
        return ConfirmationResult(signature, status, error, 0.1)

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        return self.statuses.get(signature)

    async def get_transaction_effects(self, signature, owner, token_mint):
        if self.effects_error:
            raise self.effects_error
        return self.effects

    async def close(self):
        self.closed = True


class FakeDexScreener:
    """Returns canned pairs per mint and counts lookups."""

    def __init__(self, pairs: Dict[str, List[TokenPair]] = None):
        self.pairs = pairs or {}
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def pairs_for_token(self, token_mint: str) -> List[TokenPair]:
        self.calls.append(token_mint)
        if self.error:
            raise self.error
        return list(self.pairs.get(token_mint, []))

    async def close(self):
        pass


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_pair(
    base_address: str,
    quote_address: str,
    price_native: float,
    price_usd: float,
    liquidity_usd: float = 50_000.0,
    base_symbol: str = "TKN",
    quote_symbol: str = "SOL",
    pair_address: str = "pair1",
) -> TokenPair:
    return TokenPair(
        chain_id="solana",
        dex_id="raydium",
        pair_address=pair_address,
        base_token_address=base_address,
        base_token_symbol=base_symbol,
        quote_token_address=quote_address,
        quote_token_symbol=quote_symbol,
        price_usd=price_usd,
        price_native=price_native,
        liquidity_usd=liquidity_usd,
    )


def make_result(
    side: TradeSide,
    native_amount: float,
    token_amount: float,
    token_mint: str = TOKEN_MINT,
    total_fees: float = 0.0,
    signature: str = "sig",
) -> ExecutionResult:
    return ExecutionResult(
        signature=signature,
        side=side,
        token_mint=token_mint,
        native_amount=native_amount,
        token_amount=token_amount,
        token_amount_raw=int(token_amount * 10 ** TOKEN_DECIMALS),
        token_decimals=TOKEN_DECIMALS,
        priority_fee_paid=0.0,
        swap_fee_paid=total_fees,
        base_fee_paid=0.0,
        total_fees=total_fees,
        slippage_bps=50,
        price_impact_pct=None,
        attempt=1,
        execution_ms=5,
        executed_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def jupiter():
    return FakeJupiter()


@pytest.fixture
def rpc():
    return FakeRPC()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(jupiter, rpc, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return TradingExecutor(
        jupiter,
        rpc,
        max_attempts=3,
        backoff=BackoffPolicy(base_delay=1.0, max_delay=8.0, jitter=0),
        confirm_timeout=60.0,
        sleep=fake_sleep,
    )


@pytest.fixture
def positions():
    return PositionManager()


@pytest.fixture
def dexscreener():
    return FakeDexScreener()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def price_fetcher(dexscreener, clock):
    return PriceFetcher(dexscreener, PriceCache(ttl_seconds=30.0, clock=clock))


@pytest.fixture
def service(executor, positions, price_fetcher, signer):
    return TradingService(
        executor=executor,
        positions=positions,
        prices=price_fetcher,
        tracker=MilestoneTracker(),
        signers=lambda agent_id: signer,
    )
