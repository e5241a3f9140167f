"""Market data models."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def split_pendle_id(value: str) -> str:
    """Return the address part of a Pendle id such as ``"8453-0xabc..."``.

    Plain addresses are returned unchanged.
    """
    if value and "-" in value:
        return value.split("-", 1)[1]
    return value


class Market(BaseModel):
    """A Pendle market pairing a principal and a yield token for one expiry.

    Markets are frozen; a catalog refresh replaces them instead of mutating them.
    """

    model_config = ConfigDict(frozen=True)

    pool_id: str = Field(description="Market (pool) contract address")
    name: str = Field(default="", description="Human readable market name")
    principal_token_address: str = Field(description="PT token address")
    yield_token_address: str = Field(description="YT token address")
    underlying_asset: str = Field(default="", description="Underlying asset address")
    expiry: datetime = Field(description="Market maturity")
    annualized_yield_estimate: Optional[float] = Field(
        default=None, description="Implied APY as reported by the routing service"
    )

    def is_matured(self, now: Optional[datetime] = None) -> bool:
        """Check whether the market expiry has passed."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expiry

    @classmethod
    def from_api(cls, data: dict) -> "Market":
        """Build a market from a routing-service market entry.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Market entry must be an object")

        pool_id = split_pendle_id(data.get("address") or data.get("poolId") or "")
        pt = split_pendle_id(data.get("pt") or "")
        yt = split_pendle_id(data.get("yt") or "")
        expiry_raw = data.get("expiry")
        if not (pool_id and pt and yt and expiry_raw):
            raise ValueError(f"Market entry missing address/pt/yt/expiry: {data.get('name')}")

        if isinstance(expiry_raw, (int, float)):
            expiry = datetime.fromtimestamp(expiry_raw, tz=timezone.utc)
        else:
            expiry = datetime.fromisoformat(str(expiry_raw).replace("Z", "+00:00"))
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)

        details = data.get("details") or {}
        apy = details.get("impliedApy", data.get("impliedApy"))

        return cls(
            pool_id=pool_id,
            name=data.get("name", ""),
            principal_token_address=pt,
            yield_token_address=yt,
            underlying_asset=split_pendle_id(data.get("underlyingAsset") or ""),
            expiry=expiry,
            annualized_yield_estimate=float(apy) if apy is not None else None,
        )
