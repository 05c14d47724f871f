"""
Error types for the trade engine.

Two families live here:

- Exceptions raised by collaborators (aggregator, RPC, price source, signer
  lookup). These follow a single hierarchy rooted at TradeEngineError.
- Typed *result* errors (ExecutionError, PositionError) returned by the
  executor and position manager instead of being raised, so the API layer can
  map the specific cause to a response without unwinding.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TradeEngineError(Exception):
    """Base exception for all trade engine errors."""
    code: str = "SYS_001"
    status_code: int = 500

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(TradeEngineError):
    """Configuration error."""
    code = "CFG_001"
    status_code = 500


class SignerNotFoundError(TradeEngineError):
    """No signing key is available for an agent."""
    code = "AUTH_002"
    status_code = 404

    def __init__(self, agent_id: str):
        super().__init__(
            f"Private key for agent {agent_id} not found",
            {"agent_id": agent_id},
        )
        self.agent_id = agent_id


class ExternalServiceError(TradeEngineError):
    """External API call failed."""
    code = "EXT_001"
    status_code = 502

    def __init__(self, message: str, service: str = None, retryable: bool = True):
        super().__init__(message, {"service": service})
        self.service = service
        self.retryable = retryable


class AggregatorError(ExternalServiceError):
    """Swap aggregator returned an error or was unreachable."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, service="jupiter", retryable=retryable)


class NoRouteError(AggregatorError):
    """Aggregator found no route (no liquidity / token not tradable)."""

    def __init__(self, message: str = "No liquidity route found for this token"):
        super().__init__(message, retryable=False)


class RpcError(ExternalServiceError):
    """Blockchain RPC call failed."""

    def __init__(self, message: str, rpc_code: Optional[int] = None):
        super().__init__(message, service="solana-rpc")
        self.rpc_code = rpc_code
        self.details["rpc_code"] = rpc_code

    @property
    def is_insufficient_funds(self) -> bool:
        text = self.message.lower()
        return any(marker in text for marker in (
            "insufficient funds",
            "insufficient lamports",
            "insufficientfundsforfee",
            "insufficient balance",
        ))


class PriceSourceError(ExternalServiceError):
    """Price discovery service failed."""

    def __init__(self, message: str):
        super().__init__(message, service="dexscreener")


# =============================================================================
# Typed result errors
# =============================================================================


class ExecutionErrorKind(Enum):
    """Why a trade execution request ended without a confirmed swap."""
    NO_LIQUIDITY = "NO_LIQUIDITY"
    QUOTE_FAILED = "QUOTE_FAILED"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_REQUEST = "INVALID_REQUEST"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_EXECUTION_ERRORS


RETRYABLE_EXECUTION_ERRORS = frozenset({
    ExecutionErrorKind.QUOTE_FAILED,
    ExecutionErrorKind.SUBMISSION_FAILED,
    ExecutionErrorKind.CONFIRMATION_TIMEOUT,
})


@dataclass
class ExecutionError:
    """Terminal failure of one logical trade request."""
    kind: ExecutionErrorKind
    message: str
    side: str
    token_mint: str
    attempts: int = 0           # Submissions made; 0 when rejected pre-flight
    execution_ms: int = 0
    signatures: list = field(default_factory=list)

    success = False

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {
                "side": self.side,
                "token_mint": self.token_mint,
                "attempts": self.attempts,
                "execution_ms": self.execution_ms,
                "signatures": list(self.signatures),
            },
        }


class PositionErrorKind(Enum):
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    SIDE_MISMATCH = "SIDE_MISMATCH"


@dataclass
class PositionError:
    """Rejected position mutation. The position is left untouched."""
    kind: PositionErrorKind
    message: str
    agent_id: str
    token_mint: str

    success = False

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {"agent_id": self.agent_id, "token_mint": self.token_mint},
        }
