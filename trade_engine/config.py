"""
Engine Configuration - execution, pricing and milestone parameters.

Every value has a default and can be overridden through environment variables
prefixed with TRADE_ENGINE_ (a .env file in the working directory is loaded
first).

Environment Variables (override defaults):
    SOLANA_RPC_URL / TRADE_ENGINE_RPC_URL  - Solana RPC endpoint
    TRADE_ENGINE_JUPITER_API_URL           - Swap aggregator base URL
    TRADE_ENGINE_DEXSCREENER_API_URL       - Price discovery base URL
    TRADE_ENGINE_MAX_ATTEMPTS              - Submissions per trade (default: 3)
    TRADE_ENGINE_PRIORITY_FEE_LAMPORTS     - First-attempt priority fee (default: 10000)
    TRADE_ENGINE_MAX_PRIORITY_FEE_LAMPORTS - Priority fee ceiling (default: 10000000)
    TRADE_ENGINE_MIN_SLIPPAGE_BPS          - First-attempt slippage (default: 50)
    TRADE_ENGINE_MAX_SLIPPAGE_BPS          - Slippage ceiling (default: 300)
    TRADE_ENGINE_CONFIRM_TIMEOUT           - Seconds to wait for confirmation (default: 60)
    TRADE_ENGINE_REQUEST_TIMEOUT           - Seconds per HTTP call (default: 10)
    TRADE_ENGINE_PRICE_CACHE_TTL           - Price cache TTL seconds (default: 30)
    TRADE_ENGINE_TP_LADDER                 - Comma separated multipliers (default: 1.5,2.0,3.0)
    TRADE_ENGINE_MAX_TRADE_NATIVE          - Largest BUY accepted (default: 10)
    TRADE_ENGINE_DB_PATH                   - SQLite file for positions (default: in-memory)

Usage:
    from trade_engine.config import get_engine_config

    config = get_engine_config()
    executor = TradingExecutor.from_config(config)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from trade_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _parse_ladder(value: str) -> List[float]:
    return [float(part) for part in value.split(",") if part.strip()]


@dataclass
class EngineConfig:
    """Configuration for the execution and position tracking engine."""

    # === ENDPOINTS ===
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    jupiter_api_url: str = "https://lite-api.jup.ag/swap/v1"
    dexscreener_api_url: str = "https://api.dexscreener.com/latest/dex"
    chain_id: str = "solana"

    # === EXECUTION ===
    max_attempts: int = 3
    priority_fee_lamports: int = 10_000          # First attempt ("min")
    priority_fee_multiplier: float = 10.0        # 10k -> 100k -> 1M ...
    max_priority_fee_lamports: int = 10_000_000  # Ceiling ("high")
    min_slippage_bps: int = 50                   # 0.5%
    slippage_step_bps: int = 50
    max_slippage_bps: int = 300                  # 3%
    swap_fee_bps: int = 50                       # Aggregator fee estimate (0.5%)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 8.0
    backoff_jitter: float = 0.1
    request_timeout_seconds: float = 10.0
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval_seconds: float = 0.5
    balance_reserve_native: float = 0.01         # Kept back for rent + fees
    preflight_balance_check: bool = True

    # === TRADE LIMITS ===
    max_trade_native: float = 10.0

    # === PRICING ===
    price_cache_ttl_seconds: float = 30.0
    price_request_timeout_seconds: float = 5.0

    # === MILESTONES ===
    tp_ladder: List[float] = field(default_factory=lambda: [1.5, 2.0, 3.0])

    # === STORAGE / LOGGING ===
    db_path: Optional[str] = None
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = True

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineConfig":
        """
        Create config from environment variables.

        Environment variables override defaults. Values that fail to parse are
        logged and ignored.
        """
        if dotenv:
            load_dotenv()

        config = cls()

        rpc_url = os.environ.get("SOLANA_RPC_URL")
        if rpc_url:
            config.rpc_url = rpc_url

        env_mappings = {
            "TRADE_ENGINE_RPC_URL": ("rpc_url", str),
            "TRADE_ENGINE_JUPITER_API_URL": ("jupiter_api_url", str),
            "TRADE_ENGINE_DEXSCREENER_API_URL": ("dexscreener_api_url", str),
            "TRADE_ENGINE_CHAIN_ID": ("chain_id", str),
            "TRADE_ENGINE_MAX_ATTEMPTS": ("max_attempts", int),
            "TRADE_ENGINE_PRIORITY_FEE_LAMPORTS": ("priority_fee_lamports", int),
            "TRADE_ENGINE_PRIORITY_FEE_MULTIPLIER": ("priority_fee_multiplier", float),
            "TRADE_ENGINE_MAX_PRIORITY_FEE_LAMPORTS": ("max_priority_fee_lamports", int),
            "TRADE_ENGINE_MIN_SLIPPAGE_BPS": ("min_slippage_bps", int),
            "TRADE_ENGINE_SLIPPAGE_STEP_BPS": ("slippage_step_bps", int),
            "TRADE_ENGINE_MAX_SLIPPAGE_BPS": ("max_slippage_bps", int),
            "TRADE_ENGINE_SWAP_FEE_BPS": ("swap_fee_bps", int),
            "TRADE_ENGINE_BACKOFF_BASE": ("backoff_base_seconds", float),
            "TRADE_ENGINE_BACKOFF_MAX": ("backoff_max_seconds", float),
            "TRADE_ENGINE_REQUEST_TIMEOUT": ("request_timeout_seconds", float),
            "TRADE_ENGINE_CONFIRM_TIMEOUT": ("confirm_timeout_seconds", float),
            "TRADE_ENGINE_CONFIRM_POLL_INTERVAL": ("confirm_poll_interval_seconds", float),
            "TRADE_ENGINE_BALANCE_RESERVE": ("balance_reserve_native", float),
            "TRADE_ENGINE_PREFLIGHT_BALANCE_CHECK": ("preflight_balance_check", _parse_bool),
            "TRADE_ENGINE_MAX_TRADE_NATIVE": ("max_trade_native", float),
            "TRADE_ENGINE_PRICE_CACHE_TTL": ("price_cache_ttl_seconds", float),
            "TRADE_ENGINE_PRICE_TIMEOUT": ("price_request_timeout_seconds", float),
            "TRADE_ENGINE_TP_LADDER": ("tp_ladder", _parse_ladder),
            "TRADE_ENGINE_DB_PATH": ("db_path", str),
            "TRADE_ENGINE_LOG_LEVEL": ("log_level", str),
            "TRADE_ENGINE_LOG_DIR": ("log_dir", str),
            "TRADE_ENGINE_JSON_LOGS": ("json_logs", _parse_bool),
        }

        for env_var, (attr, converter) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    setattr(config, attr, converter(value))
                    logger.info(f"Config override: {attr} = {getattr(config, attr)}")
                except (ValueError, KeyError) as e:
                    logger.warning(f"Invalid value for {env_var}: {value} ({e})")

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigurationError when values cannot work together."""
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.priority_fee_lamports <= 0:
            raise ConfigurationError("priority_fee_lamports must be positive")
        if self.max_priority_fee_lamports < self.priority_fee_lamports:
            raise ConfigurationError("max_priority_fee_lamports is below the initial priority fee")
        if not 0 < self.min_slippage_bps <= self.max_slippage_bps:
            raise ConfigurationError("slippage bounds must satisfy 0 < min <= max")
        if self.confirm_timeout_seconds <= 0 or self.request_timeout_seconds <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.price_cache_ttl_seconds < 0:
            raise ConfigurationError("price_cache_ttl_seconds cannot be negative")
        if not self.tp_ladder:
            raise ConfigurationError("tp_ladder must contain at least one target")
        if any(b <= a for a, b in zip(self.tp_ladder, self.tp_ladder[1:])):
            raise ConfigurationError("tp_ladder must be strictly ascending")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {
            "rpc_url": self.rpc_url,
            "jupiter_api_url": self.jupiter_api_url,
            "dexscreener_api_url": self.dexscreener_api_url,
            "chain_id": self.chain_id,
            "max_attempts": self.max_attempts,
            "priority_fee_lamports": self.priority_fee_lamports,
            "max_priority_fee_lamports": self.max_priority_fee_lamports,
            "min_slippage_bps": self.min_slippage_bps,
            "max_slippage_bps": self.max_slippage_bps,
            "confirm_timeout_seconds": self.confirm_timeout_seconds,
            "price_cache_ttl_seconds": self.price_cache_ttl_seconds,
            "tp_ladder": list(self.tp_ladder),
            "max_trade_native": self.max_trade_native,
        }


# Singleton instance
_config_instance: Optional[EngineConfig] = None


def get_engine_config() -> EngineConfig:
    """Get the process-wide configuration (loaded once from the environment)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = EngineConfig.from_env()
    return _config_instance


def reload_engine_config() -> EngineConfig:
    """Reload configuration from environment."""
    global _config_instance
    _config_instance = EngineConfig.from_env()
    return _config_instance


__all__ = [
    "EngineConfig",
    "get_engine_config",
    "reload_engine_config",
]
