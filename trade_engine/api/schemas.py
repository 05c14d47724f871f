"""Request models for the trading API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trade_engine.models import TradeSide


class TradeRequest(BaseModel):
    """A BUY (amount in native units) or SELL (amount in tokens) decision."""
    model_config = ConfigDict(populate_by_name=True)

    agent_id: str = Field(..., alias="agentId", min_length=1, max_length=128)
    side: TradeSide
    token_mint: str = Field(..., alias="tokenMint", min_length=32, max_length=44)
    amount: float = Field(..., gt=0)

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value
