"""
Retry Policy - fee escalation, slippage widening and backoff for swap execution.

The executor drives an ExecutionStateMachine instead of an ad-hoc loop:

    PENDING -> ATTEMPTING -> (ESCALATING -> ATTEMPTING)* -> SUCCEEDED | FAILED

Each call to begin_attempt() hands out an AttemptPlan with the priority fee
and slippage to use. fail() decides whether another attempt is allowed; the
cap is enforced here, so no caller can submit more than max_attempts times.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from trade_engine.errors import ExecutionErrorKind
from trade_engine.models import utcnow


class ExecutionState(Enum):
    """Lifecycle of one logical trade request."""
    PENDING = "pending"
    ATTEMPTING = "attempting"      # Quote / build / submit / confirm in flight
    ESCALATING = "escalating"      # Last attempt failed, next one allowed
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PriorityFeePolicy:
    """Geometric priority fee ladder: initial * multiplier^(attempt-1), capped."""
    initial_lamports: int = 10_000
    multiplier: float = 10.0
    max_lamports: int = 10_000_000

    def fee_for_attempt(self, attempt: int) -> int:
        fee = self.initial_lamports * (self.multiplier ** max(attempt - 1, 0))
        return int(min(fee, self.max_lamports))


@dataclass
class SlippagePolicy:
    """Linear slippage widening: min + step * (attempt-1), capped."""
    min_bps: int = 50
    step_bps: int = 50
    max_bps: int = 300

    def slippage_for_attempt(self, attempt: int) -> int:
        return min(self.min_bps + self.step_bps * max(attempt - 1, 0), self.max_bps)


@dataclass
class BackoffPolicy:
    """Exponential backoff between attempts."""
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: float = 0.1            # Fraction of the delay, 0 disables
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after `attempt` failed, before the next one."""
        delay = self.base_delay * (2 ** max(attempt - 1, 0))

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += self.rng(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))


@dataclass
class AttemptPlan:
    """Parameters for one submission."""
    attempt: int                   # 1-based
    priority_fee_lamports: int
    slippage_bps: int


@dataclass
class AttemptRecord:
    plan: AttemptPlan
    started_at: datetime
    error_kind: Optional[ExecutionErrorKind] = None
    error: str = ""


class RetryBudgetExhausted(RuntimeError):
    """begin_attempt() called when no attempt is allowed."""


class ExecutionStateMachine:
    """
    Bounded retry state machine for one trade request.

    Non-retryable error kinds (no liquidity, insufficient balance, invalid
    request) move straight to FAILED regardless of remaining budget.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        fee_policy: PriorityFeePolicy = None,
        slippage_policy: SlippagePolicy = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.fee_policy = fee_policy or PriorityFeePolicy()
        self.slippage_policy = slippage_policy or SlippagePolicy()

        self.state = ExecutionState.PENDING
        self.history: List[AttemptRecord] = []

    @property
    def attempts(self) -> int:
        return len(self.history)

    @property
    def last_error_kind(self) -> Optional[ExecutionErrorKind]:
        return self.history[-1].error_kind if self.history else None

    @property
    def last_error(self) -> str:
        return self.history[-1].error if self.history else ""

    @property
    def can_attempt(self) -> bool:
        return (
            self.state in (ExecutionState.PENDING, ExecutionState.ESCALATING)
            and self.attempts < self.max_attempts
        )

    def begin_attempt(self) -> AttemptPlan:
        if not self.can_attempt:
            raise RetryBudgetExhausted(
                f"No attempt allowed in state {self.state.value} "
                f"after {self.attempts}/{self.max_attempts}"
            )
        attempt = self.attempts + 1
        plan = AttemptPlan(
            attempt=attempt,
            priority_fee_lamports=self.fee_policy.fee_for_attempt(attempt),
            slippage_bps=self.slippage_policy.slippage_for_attempt(attempt),
        )
        self.history.append(AttemptRecord(plan=plan, started_at=utcnow()))
        self.state = ExecutionState.ATTEMPTING
        return plan

    def fail(self, kind: ExecutionErrorKind, message: str) -> ExecutionState:
        """Record the current attempt's failure and move to ESCALATING or FAILED."""
        if self.state is not ExecutionState.ATTEMPTING:
            raise RuntimeError(f"fail() called in state {self.state.value}")
        record = self.history[-1]
        record.error_kind = kind
        record.error = message

        if kind.retryable and self.attempts < self.max_attempts:
            self.state = ExecutionState.ESCALATING
        else:
            self.state = ExecutionState.FAILED
        return self.state

    def succeed(self) -> None:
        """
        Mark the request done.

        From ESCALATING or FAILED this means a submission that timed out
        landed late, so at least one attempt must have ended in
        CONFIRMATION_TIMEOUT.
        """
        late = self.state in (ExecutionState.ESCALATING, ExecutionState.FAILED)
        timed_out = any(r.error_kind is ExecutionErrorKind.CONFIRMATION_TIMEOUT for r in self.history)
        if self.state is not ExecutionState.ATTEMPTING and not (late and timed_out):
            raise RuntimeError(f"succeed() called in state {self.state.value}")
        self.state = ExecutionState.SUCCEEDED
