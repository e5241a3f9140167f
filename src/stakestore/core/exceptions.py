"""Exceptions raised by the stake workflow and its collaborators."""

from typing import Optional


class StakeStoreError(Exception):
    """Base exception for StakeStore errors."""


class InvalidRequest(StakeStoreError):
    """Raised when a stake request is malformed. No side effect was attempted."""


class DuplicateRequest(StakeStoreError):
    """Raised when a request id is already known to the workflow store."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Stake request {request_id} already exists")


class WorkflowNotFound(StakeStoreError):
    """Raised when no workflow is recorded for a request id."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"No workflow recorded for {request_id}")


class ApprovalFailed(StakeStoreError):
    """Raised when an approve transaction reverts, times out or cannot be sent."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class QuoteFailed(StakeStoreError):
    """Raised when no usable mint quote could be obtained."""


class SubmissionFailed(StakeStoreError):
    """Raised when the node rejects a transaction or it reverts."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class TransactionReverted(StakeStoreError):
    """Raised when a mined transaction has a failed status."""

    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} reverted")


class ChainTimeout(StakeStoreError):
    """Raised when no receipt was seen: the wait timed out or the node stopped answering.

    The transaction's fate is unknown; it must be reconciled, never resubmitted.
    """

    def __init__(self, tx_hash: str, timeout: float, reason: Optional[str] = None):
        self.tx_hash = tx_hash
        self.timeout = timeout
        message = f"Transaction {tx_hash} not confirmed after {timeout}s"
        super().__init__(f"{message}: {reason}" if reason else message)


class ExternalServiceError(StakeStoreError):
    """Raised when the routing service or node fails to answer usefully."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = True,
    ):
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)


class InvalidQuote(StakeStoreError):
    """Raised when a mint quote lacks a transaction target or payload."""


class NoRedemptionAvailable(StakeStoreError):
    """Raised when there is nothing to redeem yet. Expected before maturity."""


class CancellationNotAllowed(StakeStoreError):
    """Raised when cancelling a workflow whose mint transaction was already signed."""
