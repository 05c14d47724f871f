"""HTTP API for the trade engine."""

from trade_engine.api.app import create_app

__all__ = ["create_app"]
