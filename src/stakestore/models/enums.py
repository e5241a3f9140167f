"""Enumerations for the stake workflow."""

from enum import Enum


class WorkflowPhase(str, Enum):
    """Stake workflow phase."""

    INTAKE = "intake"
    APPROVAL_PENDING = "approval_pending"
    APPROVED = "approved"
    MINT_QUOTED = "mint_quoted"
    MINT_SUBMITTED = "mint_submitted"
    CONFIRMED = "confirmed"
    RECORDED = "recorded"

    # Terminal failures
    APPROVAL_FAILED = "approval_failed"
    QUOTE_FAILED = "quote_failed"
    SUBMISSION_FAILED = "submission_failed"
    UNCONFIRMED = "unconfirmed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Unconfirmed counts as terminal: it is only left through reconciliation."""
        return self in TERMINAL_PHASES

    @property
    def is_pre_submission(self) -> bool:
        return self in PRE_SUBMISSION_PHASES


TERMINAL_PHASES = frozenset(
    {
        WorkflowPhase.RECORDED,
        WorkflowPhase.APPROVAL_FAILED,
        WorkflowPhase.QUOTE_FAILED,
        WorkflowPhase.SUBMISSION_FAILED,
        WorkflowPhase.UNCONFIRMED,
        WorkflowPhase.CANCELLED,
    }
)

PRE_SUBMISSION_PHASES = frozenset(
    {
        WorkflowPhase.INTAKE,
        WorkflowPhase.APPROVAL_PENDING,
        WorkflowPhase.APPROVED,
        WorkflowPhase.MINT_QUOTED,
    }
)


class TokenType(str, Enum):
    """Pendle token kind."""

    PT = "PT"
    YT = "YT"


class RequestSource(str, Enum):
    """Where a stake request came from."""

    API = "api"
    CHAIN_EVENT = "chain_event"
