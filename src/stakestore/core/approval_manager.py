"""Token allowance management."""

import logging
from typing import Optional

from stakestore.api.chain_gateway import ChainGateway
from stakestore.core.exceptions import (
    ApprovalFailed,
    ChainTimeout,
    ExternalServiceError,
    SubmissionFailed,
    TransactionReverted,
)


class ApprovalManager:
    """Makes sure a spender may move enough of a token before a mint.

    Approvals are for exactly the required amount, never unbounded.
    """

    def __init__(self, gateway: ChainGateway, logger: Optional[logging.Logger] = None):
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)

    def ensure_approval(
        self,
        token_address: str,
        spender: str,
        required_amount: int,
        owner_address: Optional[str] = None,
        on_signed=None,
    ) -> Optional[str]:
        """Approve ``spender`` for ``required_amount`` unless the allowance already covers it.

        Args:
            token_address: Token to approve
            spender: Contract that will pull the tokens
            required_amount: Amount needed, in smallest units
            owner_address: Token owner (defaults to the gateway's signer)
            on_signed: Optional callback receiving the approval hash before broadcast

        Returns:
            The confirmed approval transaction hash, or None when no approval was needed

        Raises:
            ApprovalFailed: If the approve transaction is rejected, reverts or times out
            ExternalServiceError: If the current allowance cannot be read (nothing was sent)
        """
        owner = owner_address or self.gateway.address
        allowance = self.gateway.read_allowance(token_address, owner, spender)

        if allowance >= required_amount:
            self.logger.info(
                f"Allowance {allowance} on {token_address} already covers {required_amount}"
            )
            return None

        self.logger.info(
            f"Approving {required_amount} of {token_address} for {spender} (current {allowance})"
        )
        tx = self.gateway.build_approve(token_address, spender, required_amount)

        try:
            tx_hash = self.gateway.submit(tx, on_signed=on_signed)
        except SubmissionFailed as e:
            raise ApprovalFailed(f"Approval rejected: {e}", tx_hash=e.tx_hash) from e
        except (ExternalServiceError, OSError) as e:
            raise ApprovalFailed(f"Approval submission failed: {e}") from e

        self._confirm(tx_hash)
        return tx_hash

    def await_approval(
        self,
        token_address: str,
        spender: str,
        required_amount: int,
        tx_hash: str,
        owner_address: Optional[str] = None,
    ) -> str:
        """Settle an approval that was signed earlier, without signing another.

        The allowance is checked first, since the approve may have been mined
        while nobody was watching.

        Raises:
            ApprovalFailed: If the recorded approve reverts, times out or cannot be watched
        """
        owner = owner_address or self.gateway.address
        try:
            allowance = self.gateway.read_allowance(token_address, owner, spender)
        except (ExternalServiceError, OSError) as e:
            raise ApprovalFailed(f"Approval {tx_hash} could not be checked: {e}", tx_hash=tx_hash) from e

        if allowance >= required_amount:
            self.logger.info(f"Recorded approval {tx_hash} already in effect ({allowance})")
            return tx_hash

        self.logger.info(f"Waiting for recorded approval {tx_hash}")
        self._confirm(tx_hash)
        return tx_hash

    def _confirm(self, tx_hash: str) -> None:
        try:
            self.gateway.wait_for_confirmation(tx_hash)
        except TransactionReverted as e:
            raise ApprovalFailed(f"Approval reverted: {tx_hash}", tx_hash=tx_hash) from e
        except (ChainTimeout, ExternalServiceError, OSError) as e:
            raise ApprovalFailed(f"Approval not confirmed: {e}", tx_hash=tx_hash) from e

        self.logger.info(f"Approval confirmed: {tx_hash}")
