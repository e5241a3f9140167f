"""Stake request and workflow state models."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from stakestore.models.enums import RequestSource, WorkflowPhase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StakeRequest(BaseModel):
    """A request to stake a user's tokens into a market.

    Shape rules (non-empty addresses, positive amount) are enforced by the
    orchestrator at intake so malformed requests surface as ``InvalidRequest``.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Idempotency key"
    )
    user_address: str = Field(description="Owner of the stake")
    input_token_address: str = Field(description="Token being staked")
    input_amount: int = Field(description="Amount in the token's smallest unit")
    target_market: str = Field(description="Market (pool) address")
    slippage_tolerance: float = Field(default=0.01, description="Max slippage as a fraction")
    source: RequestSource = Field(default=RequestSource.API)
    created_at: datetime = Field(default_factory=_utcnow)


class StakeWorkflowState(BaseModel):
    """Mutable progress record attached 1:1 to a StakeRequest."""

    request_id: str
    phase: WorkflowPhase = Field(default=WorkflowPhase.INTAKE)
    last_error: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    mint_tx_hash: Optional[str] = None
    attempts: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def transition(self, phase: WorkflowPhase, error: Optional[str] = None) -> None:
        """Move to a new phase, optionally recording the error that caused it."""
        self.phase = phase
        if error is not None:
            self.last_error = error
        self.updated_at = _utcnow()

    def record_attempt(self, step: str) -> int:
        """Increment and return the attempt counter for a step."""
        self.attempts[step] = self.attempts.get(step, 0) + 1
        self.updated_at = _utcnow()
        return self.attempts[step]

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal
