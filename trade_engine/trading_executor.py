"""
Trading Executor - turns a BUY/SELL decision into a confirmed swap.

Each logical request is driven by an ExecutionStateMachine: quote, build,
sign, submit and confirm; on a retryable failure the priority fee and
slippage are escalated, the route is re-quoted and the transaction is
resubmitted, up to max_attempts submissions.

Business failures are returned as ExecutionError, never raised. The executor
does not touch positions; feeding a successful result into the
PositionManager is the caller's job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Union

from trade_engine.async_utils import with_timeout
from trade_engine.config import EngineConfig
from trade_engine.errors import (
    AggregatorError,
    ExecutionError,
    ExecutionErrorKind,
    NoRouteError,
    RpcError,
)
from trade_engine.jupiter import JupiterClient, SwapRoute
from trade_engine.models import LAMPORTS_PER_SOL, SOL_MINT, ExecutionResult, TradeSide
from trade_engine.retry_policy import (
    AttemptPlan,
    BackoffPolicy,
    ExecutionState,
    ExecutionStateMachine,
    PriorityFeePolicy,
    SlippagePolicy,
)
from trade_engine.solana_rpc import ConfirmationStatus, SolanaRPC, TransactionEffects
from trade_engine.wallets import Signer

logger = logging.getLogger(__name__)

ExecutionOutcome = Union[ExecutionResult, ExecutionError]

NATIVE_DECIMALS = 9
BASE_FEE_LAMPORTS = 5_000          # Per signature
QUANTITY_TOLERANCE = 1e-9


@dataclass
class _Submission:
    """A transaction that reached the network, kept for late-confirmation checks."""
    signature: str
    plan: AttemptPlan
    route: SwapRoute
    decimals: int


class _AttemptFailed(Exception):
    def __init__(
        self,
        kind: ExecutionErrorKind,
        message: str,
        submission: Optional[_Submission] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.submission = submission


class TradingExecutor:
    """
    Executes swaps between the native asset and SPL tokens.

    Usage:
        executor = TradingExecutor.from_config(get_engine_config())
        result = await executor.execute_buy(signer, mint, 0.05)
        if result.success:
            ...
    """

    PROBE_LAMPORTS = 1_000_000     # 0.001 native
    PROBE_SLIPPAGE_BPS = 500

    def __init__(
        self,
        jupiter: JupiterClient,
        rpc: SolanaRPC,
        max_attempts: int = 3,
        fee_policy: PriorityFeePolicy = None,
        slippage_policy: SlippagePolicy = None,
        backoff: BackoffPolicy = None,
        swap_fee_bps: int = 50,
        request_timeout: float = 10.0,
        confirm_timeout: float = 60.0,
        poll_interval: float = 0.5,
        balance_reserve_native: float = 0.01,
        preflight_balance_check: bool = True,
        native_mint: str = SOL_MINT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jupiter = jupiter
        self.rpc = rpc
        self.max_attempts = max_attempts
        self.fee_policy = fee_policy or PriorityFeePolicy()
        self.slippage_policy = slippage_policy or SlippagePolicy()
        self.backoff = backoff or BackoffPolicy()
        self.swap_fee_bps = swap_fee_bps
        self.request_timeout = request_timeout
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.balance_reserve_native = balance_reserve_native
        self.preflight_balance_check = preflight_balance_check
        self.native_mint = native_mint
        self._sleep = sleep
        self._clock = clock
        self._decimals: Dict[str, int] = {native_mint: NATIVE_DECIMALS}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        jupiter: JupiterClient = None,
        rpc: SolanaRPC = None,
        **kwargs,
    ) -> "TradingExecutor":
        jupiter = jupiter or JupiterClient(config.jupiter_api_url, config.request_timeout_seconds)
        rpc = rpc or SolanaRPC(config.rpc_url, config.request_timeout_seconds)
        return cls(
            jupiter,
            rpc,
            max_attempts=config.max_attempts,
            fee_policy=PriorityFeePolicy(
                initial_lamports=config.priority_fee_lamports,
                multiplier=config.priority_fee_multiplier,
                max_lamports=config.max_priority_fee_lamports,
            ),
            slippage_policy=SlippagePolicy(
                min_bps=config.min_slippage_bps,
                step_bps=config.slippage_step_bps,
                max_bps=config.max_slippage_bps,
            ),
            backoff=BackoffPolicy(
                base_delay=config.backoff_base_seconds,
                max_delay=config.backoff_max_seconds,
                jitter=config.backoff_jitter,
            ),
            swap_fee_bps=config.swap_fee_bps,
            request_timeout=config.request_timeout_seconds,
            confirm_timeout=config.confirm_timeout_seconds,
            poll_interval=config.confirm_poll_interval_seconds,
            balance_reserve_native=config.balance_reserve_native,
            preflight_balance_check=config.preflight_balance_check,
            **kwargs,
        )

    async def close(self):
        await self.jupiter.close()
        await self.rpc.close()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def execute_buy(self, signer: Signer, token_mint: str, native_amount: float) -> ExecutionOutcome:
        """Spend `native_amount` of the native asset on `token_mint`."""
        side = TradeSide.BUY
        if native_amount is None or native_amount <= 0:
            return self._reject(side, token_mint, ExecutionErrorKind.INVALID_REQUEST,
                                f"BUY amount must be positive, got {native_amount}")

        if self.preflight_balance_check:
            needed = native_amount + self.balance_reserve_native
            try:
                lamports = await with_timeout(
                    self.rpc.get_balance(signer.address), self.request_timeout, "getBalance"
                )
            except (RpcError, asyncio.TimeoutError) as e:
                logger.warning(f"Balance pre-check skipped for {signer.address[:8]}...: {e}")
            else:
                balance = lamports / LAMPORTS_PER_SOL
                if balance < needed:
                    return self._reject(
                        side, token_mint, ExecutionErrorKind.INSUFFICIENT_BALANCE,
                        f"Insufficient balance: have {balance:.6f}, need {needed:.6f} "
                        f"including {self.balance_reserve_native} reserve",
                    )

        return await self._execute(side, signer, token_mint, native_amount)

    async def execute_sell(self, signer: Signer, token_mint: str, token_quantity: float) -> ExecutionOutcome:
        """Sell `token_quantity` (UI units) of `token_mint` for the native asset."""
        side = TradeSide.SELL
        if token_quantity is None or token_quantity <= 0:
            return self._reject(side, token_mint, ExecutionErrorKind.INVALID_REQUEST,
                                f"SELL quantity must be positive, got {token_quantity}")

        if self.preflight_balance_check:
            try:
                held = await with_timeout(
                    self.rpc.get_token_balance(signer.address, token_mint),
                    self.request_timeout, "getTokenAccountsByOwner",
                )
            except (RpcError, asyncio.TimeoutError) as e:
                logger.warning(f"Token balance pre-check skipped for {token_mint[:8]}...: {e}")
            else:
                if held + QUANTITY_TOLERANCE < token_quantity:
                    return self._reject(
                        side, token_mint, ExecutionErrorKind.INSUFFICIENT_BALANCE,
                        f"Insufficient token balance: have {held}, need {token_quantity}",
                    )

        return await self._execute(side, signer, token_mint, token_quantity)

    async def can_quote(self, token_mint: str) -> bool:
        """Cheap liquidity probe: is there any route from the native asset into this token?"""
        try:
            await with_timeout(
                self.jupiter.quote(self.native_mint, token_mint, self.PROBE_LAMPORTS, self.PROBE_SLIPPAGE_BPS),
                self.request_timeout, "quote",
            )
            return True
        except Exception as e:
            logger.debug(f"No quote for {token_mint[:8]}...: {e}")
            return False

    async def get_balance(self, address: str) -> float:
        """Native balance in whole units. Raises RpcError if the RPC is unavailable."""
        lamports = await with_timeout(self.rpc.get_balance(address), self.request_timeout, "getBalance")
        return lamports / LAMPORTS_PER_SOL

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    async def _execute(self, side: TradeSide, signer: Signer, token_mint: str, amount: float) -> ExecutionOutcome:
        started = self._clock()
        machine = ExecutionStateMachine(self.max_attempts, self.fee_policy, self.slippage_policy)
        signatures: List[str] = []
        unconfirmed: List[_Submission] = []

        while machine.can_attempt:
            if machine.state is ExecutionState.ESCALATING and unconfirmed:
                landed = await self._find_landed(unconfirmed)
                if landed is not None:
                    machine.succeed()
                    logger.info(f"Earlier submission {landed.signature[:12]}... confirmed late")
                    return await self._build_result(side, signer, token_mint, landed, started)

            plan = machine.begin_attempt()
            logger.debug(
                f"{side.value} {token_mint[:8]}... attempt {plan.attempt}/{self.max_attempts} "
                f"fee={plan.priority_fee_lamports} slippage={plan.slippage_bps}bps"
            )

            try:
                submission = await self._attempt(side, signer, token_mint, amount, plan)
            except _AttemptFailed as failure:
                if failure.submission is not None:
                    signatures.append(failure.submission.signature)
                    if failure.kind is ExecutionErrorKind.CONFIRMATION_TIMEOUT:
                        unconfirmed.append(failure.submission)

                state = machine.fail(failure.kind, failure.message)
                if state is ExecutionState.ESCALATING:
                    delay = self.backoff.delay_after(plan.attempt)
                    logger.warning(
                        f"{side.value} attempt {plan.attempt} failed ({failure.kind.value}): "
                        f"{failure.message}. Retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                continue

            signatures.append(submission.signature)
            machine.succeed()
            return await self._build_result(side, signer, token_mint, submission, started)

        if unconfirmed:
            landed = await self._find_landed(unconfirmed)
            if landed is not None:
                machine.succeed()
                logger.info(f"Submission {landed.signature[:12]}... confirmed after the last attempt")
                return await self._build_result(side, signer, token_mint, landed, started)

        return ExecutionError(
            kind=machine.last_error_kind,
            message=machine.last_error,
            side=side.value,
            token_mint=token_mint,
            attempts=machine.attempts,
            execution_ms=self._elapsed_ms(started),
            signatures=signatures,
        )

    async def _attempt(
        self,
        side: TradeSide,
        signer: Signer,
        token_mint: str,
        amount: float,
        plan: AttemptPlan,
    ) -> _Submission:
        """One quote/build/sign/submit/confirm pass. Raises _AttemptFailed."""
        try:
            decimals = await self._token_decimals(token_mint)
        except (RpcError, asyncio.TimeoutError) as e:
            raise _AttemptFailed(ExecutionErrorKind.QUOTE_FAILED, f"Token decimals lookup failed: {e}")

        if side is TradeSide.BUY:
            input_mint, output_mint = self.native_mint, token_mint
            in_amount = int(round(amount * LAMPORTS_PER_SOL))
        else:
            input_mint, output_mint = token_mint, self.native_mint
            in_amount = int(round(amount * (10 ** decimals)))
        if in_amount <= 0:
            raise _AttemptFailed(ExecutionErrorKind.INVALID_REQUEST, f"Amount {amount} rounds to zero base units")

        try:
            route = await with_timeout(
                self.jupiter.quote(input_mint, output_mint, in_amount, plan.slippage_bps),
                self.request_timeout, "quote",
            )
        except NoRouteError as e:
            raise _AttemptFailed(ExecutionErrorKind.NO_LIQUIDITY, e.message)
        except (AggregatorError, asyncio.TimeoutError) as e:
            raise _AttemptFailed(ExecutionErrorKind.QUOTE_FAILED, f"Quote failed: {e}")

        try:
            unsigned_tx = await with_timeout(
                self.jupiter.build_swap(route, signer.address, plan.priority_fee_lamports),
                self.request_timeout, "build swap",
            )
        except (AggregatorError, asyncio.TimeoutError) as e:
            raise _AttemptFailed(ExecutionErrorKind.QUOTE_FAILED, f"Swap build failed: {e}")

        try:
            signed_tx = signer.sign_transaction(unsigned_tx)
        except Exception as e:
            raise _AttemptFailed(ExecutionErrorKind.INVALID_REQUEST, f"Signing failed: {type(e).__name__}: {e}")

        try:
            signature = await with_timeout(
                self.rpc.send_transaction(signed_tx), self.request_timeout, "sendTransaction"
            )
        except RpcError as e:
            kind = (
                ExecutionErrorKind.INSUFFICIENT_BALANCE
                if e.is_insufficient_funds
                else ExecutionErrorKind.SUBMISSION_FAILED
            )
            raise _AttemptFailed(kind, f"Submission failed: {e}")
        except asyncio.TimeoutError as e:
            raise _AttemptFailed(ExecutionErrorKind.SUBMISSION_FAILED, f"Submission failed: {e}")

        submission = _Submission(signature=signature, plan=plan, route=route, decimals=decimals)

        try:
            confirmation = await with_timeout(
                self.rpc.confirm_transaction(
                    signature, timeout_seconds=self.confirm_timeout, poll_interval=self.poll_interval
                ),
                self.confirm_timeout + self.request_timeout, "confirmation",
            )
        except asyncio.TimeoutError:
            raise _AttemptFailed(
                ExecutionErrorKind.CONFIRMATION_TIMEOUT,
                f"Transaction {signature} not confirmed within {self.confirm_timeout}s",
                submission,
            )

        if confirmation.status is ConfirmationStatus.TIMEOUT:
            raise _AttemptFailed(
                ExecutionErrorKind.CONFIRMATION_TIMEOUT,
                f"Transaction {signature} not confirmed within {self.confirm_timeout}s",
                submission,
            )
        if confirmation.status is ConfirmationStatus.FAILED:
            raise _AttemptFailed(ExecutionErrorKind.SUBMISSION_FAILED, confirmation.error, submission)

        return submission

    async def _find_landed(self, unconfirmed: List[_Submission]) -> Optional[_Submission]:
        """Re-check timed-out submissions once; return the first that confirmed."""
        for submission in unconfirmed:
            try:
                status = await with_timeout(
                    self.rpc.get_signature_status(submission.signature),
                    self.request_timeout, "getSignatureStatuses",
                )
            except (RpcError, asyncio.TimeoutError) as e:
                logger.debug(f"Status re-check failed for {submission.signature[:12]}...: {e}")
                continue
            if status is not None and not status.err and status.reached("confirmed"):
                return submission
        return None

    async def _token_decimals(self, token_mint: str) -> int:
        if token_mint not in self._decimals:
            self._decimals[token_mint] = await with_timeout(
                self.rpc.get_token_decimals(token_mint), self.request_timeout, "getTokenSupply"
            )
        return self._decimals[token_mint]

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _build_result(
        self,
        side: TradeSide,
        signer: Signer,
        token_mint: str,
        submission: _Submission,
        started: float,
    ) -> ExecutionResult:
        route = submission.route
        effects: Optional[TransactionEffects] = None
        try:
            effects = await with_timeout(
                self.rpc.get_transaction_effects(submission.signature, signer.address, token_mint),
                self.request_timeout, "getTransaction",
            )
        except (RpcError, asyncio.TimeoutError) as e:
            logger.debug(f"Transaction metadata unavailable for {submission.signature[:12]}...: {e}")

        if side is TradeSide.BUY:
            native_lamports = route.in_amount
            token_raw = route.out_amount
            if effects is not None and effects.token_delta_raw > 0:
                token_raw = effects.token_delta_raw
            actual_output = token_raw
        else:
            token_raw = route.in_amount
            native_lamports = route.out_amount
            if effects is not None:
                received = effects.native_delta_lamports + effects.fee_lamports
                if received > 0:
                    native_lamports = received
            actual_output = native_lamports

        if effects is not None:
            base_lamports = min(effects.fee_lamports, BASE_FEE_LAMPORTS)
            priority_lamports = effects.fee_lamports - base_lamports
        else:
            base_lamports = BASE_FEE_LAMPORTS
            priority_lamports = submission.plan.priority_fee_lamports

        swap_lamports = self._swap_fee_lamports(side, route, actual_output)

        priority_fee = priority_lamports / LAMPORTS_PER_SOL
        base_fee = base_lamports / LAMPORTS_PER_SOL
        swap_fee = swap_lamports / LAMPORTS_PER_SOL

        return ExecutionResult(
            signature=submission.signature,
            side=side,
            token_mint=token_mint,
            native_amount=native_lamports / LAMPORTS_PER_SOL,
            token_amount=token_raw / (10 ** submission.decimals),
            token_amount_raw=token_raw,
            token_decimals=submission.decimals,
            priority_fee_paid=priority_fee,
            swap_fee_paid=swap_fee,
            base_fee_paid=base_fee,
            total_fees=priority_fee + swap_fee + base_fee,
            slippage_bps=submission.plan.slippage_bps,
            price_impact_pct=route.price_impact_pct,
            attempt=submission.plan.attempt,
            execution_ms=self._elapsed_ms(started),
        )

    def _swap_fee_lamports(self, side: TradeSide, route: SwapRoute, actual_output: int) -> float:
        """
        Aggregator fee plus the native value of any output shortfall versus the quote.

        Best effort: the shortfall includes price movement as well as fees.
        """
        if side is TradeSide.BUY:
            notional = route.in_amount
            # Lamports per raw token at the quoted rate
            rate = route.in_amount / route.out_amount if route.out_amount else 0.0
        else:
            notional = route.out_amount
            rate = 1.0

        if route.platform_fee_amount > 0:
            fee = route.platform_fee_amount * rate
        else:
            fee = notional * self.swap_fee_bps / 10_000

        shortfall = route.out_amount - actual_output
        if shortfall > 0:
            fee += shortfall * rate
        return fee

    def _reject(self, side: TradeSide, token_mint: str, kind: ExecutionErrorKind, message: str) -> ExecutionError:
        return ExecutionError(kind=kind, message=message, side=side.value, token_mint=token_mint, attempts=0)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)
