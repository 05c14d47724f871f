"""
Standardized error responses for the trading API.

All API errors go through these helpers so every response uses the same
envelope:

    {"success": true, "data": {...}}
    {"success": false, "error": {"code": ..., "message": ..., "details": {...}}}
"""

from typing import Any, Dict, Optional, Union

from fastapi.responses import JSONResponse

from trade_engine.errors import (
    ExecutionError,
    ExecutionErrorKind,
    PositionError,
    PositionErrorKind,
)

# Default messages by code
ERROR_CODES = {
    # Execution errors
    "NO_LIQUIDITY": "No liquidity route found for this token",
    "QUOTE_FAILED": "Could not obtain a swap quote",
    "SUBMISSION_FAILED": "Transaction submission failed",
    "CONFIRMATION_TIMEOUT": "Transaction was not confirmed in time",
    "INSUFFICIENT_BALANCE": "Insufficient balance",
    "INVALID_REQUEST": "Invalid trade request",

    # Position errors
    "POSITION_NOT_FOUND": "Position not found",
    "INVALID_QUANTITY": "Invalid quantity",
    "SIDE_MISMATCH": "Trade side does not match the operation",

    # Auth errors
    "AUTH_002": "Signer not found",

    # Validation errors
    "VAL_001": "Invalid request body",

    # External services
    "EXT_001": "External service unavailable",

    # System errors
    "SYS_001": "Internal error",
    "SYS_002": "Not found",
    "SYS_003": "Internal server error",
    "CFG_001": "Configuration error",
}

EXECUTION_STATUS = {
    ExecutionErrorKind.NO_LIQUIDITY: 422,
    ExecutionErrorKind.QUOTE_FAILED: 502,
    ExecutionErrorKind.SUBMISSION_FAILED: 502,
    ExecutionErrorKind.CONFIRMATION_TIMEOUT: 504,
    ExecutionErrorKind.INSUFFICIENT_BALANCE: 400,
    ExecutionErrorKind.INVALID_REQUEST: 400,
}

POSITION_STATUS = {
    PositionErrorKind.POSITION_NOT_FOUND: 404,
    PositionErrorKind.INVALID_QUANTITY: 400,
    PositionErrorKind.SIDE_MISMATCH: 400,
}


def make_error_response(
    error_code: str,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a standardized error response dict."""
    response = {
        "success": False,
        "error": {
            "code": error_code,
            "message": message or ERROR_CODES.get(error_code, "Unknown error"),
        }
    }
    if details:
        response["error"]["details"] = details
    return response


def make_success_response(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def status_for(error: Union[ExecutionError, PositionError]) -> int:
    if isinstance(error, ExecutionError):
        return EXECUTION_STATUS.get(error.kind, 500)
    return POSITION_STATUS.get(error.kind, 500)


def result_error_response(error: Union[ExecutionError, PositionError]) -> JSONResponse:
    """JSON response for a typed execution/position failure."""
    body = error.to_dict()
    return JSONResponse(
        status_code=status_for(error),
        content=make_error_response(body["code"], body["message"], body["details"]),
    )
