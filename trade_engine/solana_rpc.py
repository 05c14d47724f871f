"""Solana JSON-RPC client: submit, confirm, balances and transaction effects."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from trade_engine.errors import RpcError

logger = logging.getLogger(__name__)

COMMITMENT_ORDER = {"processed": 0, "confirmed": 1, "finalized": 2}


class ConfirmationStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"        # Landed with an on-chain error
    TIMEOUT = "timeout"      # Not seen at the requested commitment in time


@dataclass
class SignatureStatus:
    confirmation_status: str
    err: Optional[Any] = None

    def reached(self, commitment: str) -> bool:
        have = COMMITMENT_ORDER.get(self.confirmation_status, -1)
        return have >= COMMITMENT_ORDER.get(commitment, 1)


@dataclass
class ConfirmationResult:
    signature: str
    status: ConfirmationStatus
    error: str = ""
    elapsed_seconds: float = 0.0

    @property
    def confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED


@dataclass
class TransactionEffects:
    """Balance changes of one landed transaction, from the owner's viewpoint."""
    fee_lamports: int
    native_delta_lamports: int   # Fee payer balance change, fee included
    token_delta_raw: int         # Owner's change in the traded token


class SolanaRPC:
    """
    Minimal async JSON-RPC client.

    Every request carries an aiohttp timeout; confirm_transaction additionally
    bounds the whole polling loop.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc_url = rpc_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._clock = clock
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _call(self, method: str, params: List[Any]) -> Any:
        session = await self._get_session()
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        try:
            async with session.post(self.rpc_url, json=payload, timeout=self.timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RpcError(f"{method} HTTP {resp.status}: {text[:200]}")
                data = await resp.json()
        except (aiohttp.ClientError, ValueError) as e:
            raise RpcError(f"{method} request failed: {e}") from e

        if not isinstance(data, dict):
            raise RpcError(f"{method}: unexpected response body {str(data)[:200]}")
        if data.get("error"):
            error = data["error"]
            raise RpcError(
                f"{method}: {error.get('message', 'Unknown error')}",
                rpc_code=error.get("code"),
            )
        return data.get("result")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def send_transaction(self, signed_tx: bytes) -> str:
        """Submit a signed transaction, returning its signature."""
        result = await self._call("sendTransaction", [
            base64.b64encode(signed_tx).decode(),
            {
                "encoding": "base64",
                "skipPreflight": True,
                "maxRetries": 0,  # Retries are driven by the executor
            },
        ])
        if not result:
            raise RpcError("sendTransaction returned no signature")
        return result

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        result = await self._call("getSignatureStatuses", [
            [signature],
            {"searchTransactionHistory": True},
        ])
        statuses = (result or {}).get("value") or []
        if not statuses or not statuses[0]:
            return None
        status = statuses[0]
        return SignatureStatus(
            confirmation_status=status.get("confirmationStatus") or "processed",
            err=status.get("err"),
        )

    async def confirm_transaction(
        self,
        signature: str,
        timeout_seconds: float,
        poll_interval: float = 0.5,
        commitment: str = "confirmed",
    ) -> ConfirmationResult:
        """
        Poll until the signature reaches `commitment`, fails, or times out.

        RPC errors while polling are logged and polling continues; they only
        end the wait through the timeout.
        """
        start = self._clock()
        while True:
            elapsed = self._clock() - start
            if elapsed >= timeout_seconds:
                return ConfirmationResult(
                    signature, ConfirmationStatus.TIMEOUT,
                    "Transaction confirmation timeout", elapsed,
                )

            try:
                status = await self.get_signature_status(signature)
            except RpcError as e:
                logger.warning(f"Error checking tx status for {signature[:12]}...: {e}")
                status = None

            if status is not None:
                if status.err:
                    return ConfirmationResult(
                        signature, ConfirmationStatus.FAILED,
                        f"Transaction failed: {status.err}", self._clock() - start,
                    )
                if status.reached(commitment):
                    return ConfirmationResult(
                        signature, ConfirmationStatus.CONFIRMED, "", self._clock() - start,
                    )

            await self._sleep(poll_interval)

    async def get_transaction_effects(
        self, signature: str, owner: str, token_mint: str
    ) -> Optional[TransactionEffects]:
        """Read fee and balance deltas of a landed transaction. None if unavailable."""
        result = await self._call("getTransaction", [
            signature,
            {
                "encoding": "jsonParsed",
                "maxSupportedTransactionVersion": 0,
                "commitment": "confirmed",
            },
        ])
        meta = (result or {}).get("meta")
        if not meta:
            return None

        pre_balances = meta.get("preBalances") or [0]
        post_balances = meta.get("postBalances") or [0]

        def token_total(entries: List[Dict[str, Any]]) -> int:
            total = 0
            for entry in entries or []:
                if entry.get("mint") == token_mint and entry.get("owner") == owner:
                    total += int((entry.get("uiTokenAmount") or {}).get("amount", 0) or 0)
            return total

        return TransactionEffects(
            fee_lamports=int(meta.get("fee", 0) or 0),
            native_delta_lamports=int(post_balances[0]) - int(pre_balances[0]),
            token_delta_raw=token_total(meta.get("postTokenBalances"))
            - token_total(meta.get("preTokenBalances")),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> int:
        """Native balance in lamports."""
        result = await self._call("getBalance", [address, {"commitment": "confirmed"}])
        return int((result or {}).get("value", 0) or 0)

    async def get_token_decimals(self, token_mint: str) -> int:
        result = await self._call("getTokenSupply", [token_mint])
        value = (result or {}).get("value") or {}
        if "decimals" not in value:
            raise RpcError(f"getTokenSupply returned no decimals for {token_mint}")
        return int(value["decimals"])

    async def get_token_balance(self, owner: str, token_mint: str) -> float:
        """Owner's balance of a token in UI units (0.0 when no account exists)."""
        result = await self._call("getTokenAccountsByOwner", [
            owner,
            {"mint": token_mint},
            {"encoding": "jsonParsed", "commitment": "confirmed"},
        ])
        total = 0.0
        for account in (result or {}).get("value") or []:
            info = (
                account.get("account", {})
                .get("data", {})
                .get("parsed", {})
                .get("info", {})
            )
            amount = info.get("tokenAmount") or {}
            try:
                total += float(amount.get("uiAmountString") or amount.get("uiAmount") or 0)
            except (TypeError, ValueError):
                continue
        return total
