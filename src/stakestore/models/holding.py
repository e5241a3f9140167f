"""Holding model."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Holding(BaseModel):
    """A user's principal-token position in one market, derived from on-chain balances."""

    model_config = ConfigDict(frozen=True)

    market_id: str = Field(description="Market (pool) address")
    market_name: str = Field(default="")
    user_address: str
    principal_token_address: str
    principal_token_balance: int = Field(gt=0, description="PT balance in smallest units")
    expiry: datetime
