"""Transaction, quote and redemption models."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from stakestore.models.enums import TokenType


class TransactionDescriptor(BaseModel):
    """An unsigned contract call."""

    model_config = ConfigDict(frozen=True)

    to: str = Field(description="Target contract address")
    data: str = Field(description="ABI-encoded calldata (0x-prefixed hex)")
    value: int = Field(default=0, ge=0, description="Native value in wei")
    from_address: Optional[str] = Field(default=None, description="Intended sender")
    chain_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Render in the JSON-RPC style a wallet expects."""
        tx: dict[str, Any] = {"to": self.to, "data": self.data, "value": str(self.value)}
        if self.from_address:
            tx["from"] = self.from_address
        if self.chain_id is not None:
            tx["chainId"] = self.chain_id
        return tx


class TransactionReceipt(BaseModel):
    """The part of a mined transaction receipt the workflow cares about."""

    model_config = ConfigDict(frozen=True)

    transaction_hash: str
    block_number: int
    status: int
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class MintQuote(BaseModel):
    """A single-use mint payload from the routing service. Never cached or persisted."""

    model_config = ConfigDict(frozen=True)

    transaction_target: str
    transaction_data: str
    transaction_value: int = 0
    expected_amount_out: Optional[int] = None
    price_impact: Optional[float] = None

    def to_transaction(self) -> TransactionDescriptor:
        return TransactionDescriptor(
            to=self.transaction_target,
            data=self.transaction_data,
            value=self.transaction_value,
        )


class RedemptionIntent(BaseModel):
    """Input to the redemption builder."""

    model_config = ConfigDict(frozen=True)

    user_address: str
    market_address: str
    token_type: TokenType = TokenType.PT
