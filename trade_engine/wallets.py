"""
Transaction signers.

The executor only needs an address and a way to sign serialized Jupiter
transactions. Where keys come from is up to the caller; EnvSignerProvider is
the simple environment-variable lookup used by the HTTP service.
"""

import logging
import os
from typing import Dict, Optional, Protocol

import base58
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

from trade_engine.errors import SignerNotFoundError

logging.getLogger('solders').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """Anything that can sign a serialized transaction for one address."""

    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx_bytes: bytes) -> bytes: ...


class KeypairSigner:
    """Signs VersionedTransactions with an in-memory solders Keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        """Load a 64-byte secret key encoded in base58 (solana-keygen / wallet export)."""
        return cls(Keypair.from_bytes(base58.b58decode(secret.strip())))

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    def sign_transaction(self, tx_bytes: bytes) -> bytes:
        """Sign a serialized VersionedTransaction, replacing the fee payer slot."""
        versioned = VersionedTransaction.from_bytes(bytes(tx_bytes))
        message_bytes = to_bytes_versioned(versioned.message)
        signature = self._keypair.sign_message(message_bytes)
        sigs = list(versioned.signatures)
        sigs[0] = signature
        versioned.signatures = sigs
        return bytes(versioned)

    def __repr__(self) -> str:
        return f"KeypairSigner({self.address})"


class EnvSignerProvider:
    """
    Resolve agent signers from AGENT_PRIVATE_KEY_<AGENT_ID> variables.

    Agent ids are upper-cased and non-alphanumerics become underscores, so
    agent "obs-7" reads AGENT_PRIVATE_KEY_OBS_7.
    """

    PREFIX = "AGENT_PRIVATE_KEY_"

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._cache: Dict[str, KeypairSigner] = {}

    @classmethod
    def env_var_for(cls, agent_id: str) -> str:
        suffix = "".join(ch if ch.isalnum() else "_" for ch in agent_id).upper()
        return f"{cls.PREFIX}{suffix}"

    def __call__(self, agent_id: str) -> KeypairSigner:
        if agent_id in self._cache:
            return self._cache[agent_id]

        secret = self._environ.get(self.env_var_for(agent_id))
        if not secret:
            raise SignerNotFoundError(agent_id)

        try:
            signer = KeypairSigner.from_base58(secret)
        except Exception as e:
            logger.error(f"Invalid key material for agent {agent_id}: {type(e).__name__}")
            raise SignerNotFoundError(agent_id) from e

        self._cache[agent_id] = signer
        return signer
