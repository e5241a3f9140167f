"""Data models for the stake workflow."""

from stakestore.models.enums import RequestSource, TokenType, WorkflowPhase
from stakestore.models.holding import Holding
from stakestore.models.market import Market
from stakestore.models.stake import StakeRequest, StakeWorkflowState
from stakestore.models.transaction import (
    MintQuote,
    RedemptionIntent,
    TransactionDescriptor,
    TransactionReceipt,
)

__all__ = [
    "Holding",
    "Market",
    "MintQuote",
    "RedemptionIntent",
    "RequestSource",
    "StakeRequest",
    "StakeWorkflowState",
    "TokenType",
    "TransactionDescriptor",
    "TransactionReceipt",
    "WorkflowPhase",
]
