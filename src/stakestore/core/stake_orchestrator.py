"""Stake workflow state machine."""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Optional

from web3 import Web3

from stakestore.api.chain_gateway import ChainGateway
from stakestore.core.approval_manager import ApprovalManager
from stakestore.core.event_bus import EventBus, WorkflowEventData
from stakestore.core.exceptions import (
    ApprovalFailed,
    CancellationNotAllowed,
    ChainTimeout,
    DuplicateRequest,
    ExternalServiceError,
    InvalidQuote,
    InvalidRequest,
    SubmissionFailed,
    TransactionReverted,
    WorkflowNotFound,
)
from stakestore.core.market_catalog import MarketCatalog
from stakestore.core.mint_coordinator import MintCoordinator
from stakestore.core.persistence import WorkflowDatabase
from stakestore.models.enums import WorkflowPhase
from stakestore.models.market import Market
from stakestore.models.stake import StakeRequest, StakeWorkflowState
from stakestore.models.transaction import MintQuote
from stakestore.utils.logger import log_workflow_event


class _CancelledBeforeBroadcast(Exception):
    """Raised from the signing callback to stop a cancelled mint from being broadcast."""


class StakeOrchestrator:
    """Drives a stake request through approval, mint and recording.

    Phases run sequentially per request and every transition is persisted
    before the next phase starts. The persisted mint hash is the only record of
    whether the mint was sent: once it is set, the mint is never signed again,
    not even after a restart.

    Example:
        orchestrator = StakeOrchestrator(gateway, catalog, approvals, minter, db, spender)
        state = await orchestrator.submit(request)
        state = await orchestrator.run(state.request_id)
    """

    def __init__(
        self,
        gateway: ChainGateway,
        catalog: MarketCatalog,
        approvals: ApprovalManager,
        minter: MintCoordinator,
        db: WorkflowDatabase,
        spender: str,
        event_bus: Optional[EventBus] = None,
        max_quote_attempts: int = 2,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize orchestrator.

        Args:
            gateway: Chain gateway holding the signer
            catalog: Known markets
            approvals: Allowance manager
            minter: Mint quote coordinator
            db: Workflow store
            spender: Contract approved to pull the input token (the Pendle router)
            event_bus: Optional event bus for transition events
            max_quote_attempts: Quote fetches per workflow (first try plus retries)
            logger: Optional logger instance
        """
        self.gateway = gateway
        self.catalog = catalog
        self.approvals = approvals
        self.minter = minter
        self.db = db
        self.spender = spender
        self.event_bus = event_bus
        self.max_quote_attempts = max_quote_attempts
        self.logger = logger or logging.getLogger(__name__)

        self._intake_lock = asyncio.Lock()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._live: dict[str, StakeWorkflowState] = {}

        # Guards cancellation against mint signing, which runs in a worker thread
        self._cancel_lock = threading.Lock()
        self._cancel_requested: set[str] = set()

    # ---------------------------
    # Intake
    # ---------------------------

    def validate_request(self, request: StakeRequest) -> Market:
        """Check a request's shape and resolve its market.

        Raises:
            InvalidRequest: If the request is malformed or targets an unknown or matured market
        """
        if not request.request_id or not request.request_id.strip():
            raise InvalidRequest("request_id is required")
        for name in ("user_address", "input_token_address", "target_market"):
            value = getattr(request, name)
            if not value or not Web3.is_address(value):
                raise InvalidRequest(f"{name} must be a non-empty address, got {value!r}")
        if isinstance(request.input_amount, bool) or request.input_amount <= 0:
            raise InvalidRequest(f"input_amount must be positive, got {request.input_amount}")
        if not 0.0 <= request.slippage_tolerance <= 1.0:
            raise InvalidRequest(
                f"slippage_tolerance must be within [0, 1], got {request.slippage_tolerance}"
            )

        market = self.catalog.get(request.target_market)
        if market is None:
            raise InvalidRequest(f"Unknown market {request.target_market}")
        if market.is_matured():
            raise InvalidRequest(f"Market {market.pool_id} matured at {market.expiry.isoformat()}")
        return market

    async def submit(self, request: StakeRequest) -> StakeWorkflowState:
        """Register a stake request.

        A request id that is already known is not registered again: its current
        state is returned instead.

        Returns:
            The workflow state (INTAKE for a new request)

        Raises:
            InvalidRequest: If the request is malformed; nothing is persisted
        """
        self.validate_request(request)

        async with self._intake_lock:
            existing = self._live.get(request.request_id) or self.db.load_state(request.request_id)
            if existing is not None:
                self.logger.warning(
                    f"Duplicate stake request {request.request_id} ignored "
                    f"(phase {existing.phase.value})"
                )
                return existing.model_copy(deep=True)

            state = StakeWorkflowState(request_id=request.request_id)
            try:
                self.db.create_workflow(request, state)
            except DuplicateRequest:
                return self.db.load_state(request.request_id)

        log_workflow_event(
            self.logger,
            "stake_received",
            request.request_id,
            f"Stake request received: {request.input_amount} of {request.input_token_address} "
            f"into {request.target_market}",
            market_id=request.target_market,
            phase=state.phase.value,
            extra_data={"user": request.user_address, "source": request.source.value},
        )
        await self._publish(state, {"user_address": request.user_address})
        return state

    # ---------------------------
    # Execution
    # ---------------------------

    async def run(self, request_id: str) -> StakeWorkflowState:
        """Drive a registered workflow until it reaches a terminal phase.

        Concurrent calls for the same request id share one execution.

        Raises:
            WorkflowNotFound: If the request id was never submitted
        """
        task = self._in_flight.get(request_id)
        if task is None:
            request = self.db.load_request(request_id)
            state = self.db.load_state(request_id)
            if request is None or state is None:
                raise WorkflowNotFound(request_id)
            if state.is_terminal:
                return state

            task = asyncio.create_task(self._drive(request, state))
            self._in_flight[request_id] = task
            task.add_done_callback(lambda _t: self._forget(request_id))

        return await asyncio.shield(task)

    async def execute(self, request: StakeRequest) -> StakeWorkflowState:
        """Submit and run a request to completion."""
        state = await self.submit(request)
        if state.is_terminal:
            return state
        return await self.run(request.request_id)

    def _forget(self, request_id: str) -> None:
        self._in_flight.pop(request_id, None)
        self._live.pop(request_id, None)
        with self._cancel_lock:
            self._cancel_requested.discard(request_id)

    async def _drive(self, request: StakeRequest, state: StakeWorkflowState) -> StakeWorkflowState:
        self._live[request.request_id] = state
        quote: Optional[MintQuote] = None

        while not state.is_terminal:
            if self._should_cancel(state):
                await self._transition(request, state, WorkflowPhase.CANCELLED, "Cancelled before mint submission")
                break

            phase = state.phase
            if phase == WorkflowPhase.INTAKE:
                await self._step_intake(request, state)
            elif phase == WorkflowPhase.APPROVAL_PENDING:
                await self._step_approval(request, state)
            elif phase == WorkflowPhase.APPROVED:
                quote = await self._step_quote(request, state)
            elif phase == WorkflowPhase.MINT_QUOTED:
                await self._step_submit(request, state, quote)
                quote = None
            elif phase == WorkflowPhase.MINT_SUBMITTED:
                await self._step_confirm(request, state)
            elif phase == WorkflowPhase.CONFIRMED:
                if not await self._step_record(request, state):
                    break
            else:
                raise RuntimeError(f"No handler for phase {phase.value}")

        return state.model_copy(deep=True)

    async def _step_intake(self, request: StakeRequest, state: StakeWorkflowState) -> None:
        try:
            self.validate_request(request)
        except InvalidRequest as e:
            # Only reachable on resume, e.g. the market matured meanwhile
            await self._transition(request, state, WorkflowPhase.APPROVAL_FAILED, str(e))
            return
        await self._transition(request, state, WorkflowPhase.APPROVAL_PENDING)

    async def _step_approval(self, request: StakeRequest, state: StakeWorkflowState) -> None:
        state.record_attempt("approval")

        def on_signed(tx_hash: str) -> None:
            state.approval_tx_hash = tx_hash
            self.db.save_state(state)

        try:
            if state.approval_tx_hash:
                # Signed before an interruption; settle that one instead of approving again
                tx_hash = await asyncio.to_thread(
                    self.approvals.await_approval,
                    request.input_token_address,
                    self.spender,
                    request.input_amount,
                    state.approval_tx_hash,
                )
            else:
                tx_hash = await asyncio.to_thread(
                    self.approvals.ensure_approval,
                    request.input_token_address,
                    self.spender,
                    request.input_amount,
                    None,
                    on_signed,
                )
        except (ApprovalFailed, ExternalServiceError) as e:
            await self._transition(request, state, WorkflowPhase.APPROVAL_FAILED, str(e))
            return

        if tx_hash:
            state.approval_tx_hash = tx_hash
        await self._transition(
            request,
            state,
            WorkflowPhase.APPROVED,
            details={"approval_tx_hash": state.approval_tx_hash, "approval_needed": tx_hash is not None},
        )

    async def _step_quote(
        self, request: StakeRequest, state: StakeWorkflowState
    ) -> Optional[MintQuote]:
        market = self.catalog.get(request.target_market)
        if market is None:
            await self._transition(
                request, state, WorkflowPhase.QUOTE_FAILED, f"Market {request.target_market} left the catalog"
            )
            return None

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_quote_attempts + 1):
            state.record_attempt("quote")
            try:
                quote = await asyncio.to_thread(
                    self.minter.quote_mint,
                    market,
                    request.input_token_address,
                    request.input_amount,
                    request.slippage_tolerance,
                    request.user_address,
                )
            except InvalidQuote as e:
                last_error = e
                self.logger.warning(
                    f"Invalid mint quote for {request.request_id} "
                    f"(attempt {attempt}/{self.max_quote_attempts}): {e}"
                )
                continue
            except ExternalServiceError as e:
                last_error = e
                break

            await self._transition(
                request,
                state,
                WorkflowPhase.MINT_QUOTED,
                details={
                    "target": quote.transaction_target,
                    "expected_amount_out": quote.expected_amount_out,
                },
            )
            return quote

        await self._transition(request, state, WorkflowPhase.QUOTE_FAILED, str(last_error))
        return None

    async def _step_submit(
        self,
        request: StakeRequest,
        state: StakeWorkflowState,
        quote: Optional[MintQuote],
    ) -> None:
        if state.mint_tx_hash:
            # Signed before a restart; its fate is decided by confirmation, not by resending
            await self._transition(
                request, state, WorkflowPhase.MINT_SUBMITTED, details={"resumed": True}
            )
            return
        if quote is None:
            # Quotes are not persisted; a resumed workflow needs a fresh one
            await self._transition(request, state, WorkflowPhase.APPROVED, details={"requote": True})
            return

        def on_signed(tx_hash: str) -> None:
            with self._cancel_lock:
                if request.request_id in self._cancel_requested:
                    raise _CancelledBeforeBroadcast()
                if not self.db.set_mint_tx_hash(request.request_id, tx_hash):
                    raise RuntimeError(f"Mint hash already recorded for {request.request_id}")
                state.mint_tx_hash = tx_hash

        state.record_attempt("submission")
        try:
            tx_hash = await asyncio.to_thread(self.gateway.submit, quote.to_transaction(), on_signed)
        except _CancelledBeforeBroadcast:
            await self._transition(request, state, WorkflowPhase.CANCELLED, "Cancelled before mint submission")
            return
        except (SubmissionFailed, ExternalServiceError) as e:
            await self._transition(request, state, WorkflowPhase.SUBMISSION_FAILED, str(e))
            return

        await self._transition(
            request, state, WorkflowPhase.MINT_SUBMITTED, details={"mint_tx_hash": tx_hash}
        )

    async def _step_confirm(self, request: StakeRequest, state: StakeWorkflowState) -> None:
        state.record_attempt("confirmation")
        try:
            receipt = await asyncio.to_thread(self.gateway.wait_for_confirmation, state.mint_tx_hash)
        except (ChainTimeout, ExternalServiceError, OSError) as e:
            # Outcome unknown; only reconciliation may settle it
            await self._transition(request, state, WorkflowPhase.UNCONFIRMED, str(e) or repr(e))
            return
        except TransactionReverted as e:
            await self._transition(request, state, WorkflowPhase.SUBMISSION_FAILED, str(e))
            return

        await self._transition(
            request,
            state,
            WorkflowPhase.CONFIRMED,
            details={"block_number": receipt.block_number, "gas_used": receipt.gas_used},
        )

    async def _step_record(self, request: StakeRequest, state: StakeWorkflowState) -> bool:
        """Persist the holding association. Returns False if it must be retried later."""
        state.record_attempt("record")
        market = self.catalog.get(request.target_market)
        pt_address = market.principal_token_address if market else ""

        try:
            balance = (
                await asyncio.to_thread(self.gateway.read_balance, pt_address, request.user_address)
                if market
                else 0
            )
        except ExternalServiceError as e:
            # Stays CONFIRMED; recording is idempotent and is retried on resume
            state.last_error = str(e)
            self.db.save_state(state)
            self.logger.warning(f"Recording {request.request_id} deferred: {e}")
            return False

        self.db.record_stake(
            request_id=request.request_id,
            user_address=request.user_address,
            market_id=request.target_market,
            principal_token_address=pt_address,
            principal_token_balance=balance,
            mint_tx_hash=state.mint_tx_hash,
        )
        await self._transition(
            request, state, WorkflowPhase.RECORDED, details={"principal_token_balance": str(balance)}
        )
        return True

    async def _transition(
        self,
        request: StakeRequest,
        state: StakeWorkflowState,
        phase: WorkflowPhase,
        error: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        previous = state.phase
        state.transition(phase, error)
        self.db.save_state(state)

        failed = phase.is_terminal and phase != WorkflowPhase.RECORDED
        log_workflow_event(
            self.logger,
            f"workflow_{phase.value}",
            request.request_id,
            f"{request.request_id}: {previous.value} -> {phase.value}"
            + (f" ({error})" if error else ""),
            market_id=request.target_market,
            phase=phase.value,
            extra_data=details,
            level=logging.WARNING if failed else logging.INFO,
        )
        await self._publish(state, {"previous": previous.value, **(details or {})})

    async def _publish(self, state: StakeWorkflowState, details: dict) -> None:
        if self.event_bus:
            await self.event_bus.publish(
                WorkflowEventData(
                    phase=state.phase,
                    request_id=state.request_id,
                    timestamp=datetime.now(),
                    state=state.model_copy(deep=True),
                    details=details,
                )
            )

    # ---------------------------
    # Cancellation, resume, reconciliation
    # ---------------------------

    def _should_cancel(self, state: StakeWorkflowState) -> bool:
        with self._cancel_lock:
            return (
                state.request_id in self._cancel_requested
                and state.phase.is_pre_submission
                and not state.mint_tx_hash
            )

    async def cancel(self, request_id: str) -> StakeWorkflowState:
        """Cancel a workflow that has not signed its mint transaction.

        An in-flight workflow stops at its next phase boundary; the returned state
        may still show the phase it is finishing.

        Raises:
            WorkflowNotFound: If the request id is unknown
            CancellationNotAllowed: If the mint was signed or the workflow already ended
        """
        live = self._live.get(request_id)
        if live is not None:
            with self._cancel_lock:
                if live.mint_tx_hash or not live.phase.is_pre_submission:
                    raise CancellationNotAllowed(
                        f"{request_id} is past mint submission ({live.phase.value})"
                    )
                self._cancel_requested.add(request_id)
            self.logger.info(f"Cancellation requested for {request_id}")
            return live.model_copy(deep=True)

        state = self.get_status(request_id)
        if state.phase == WorkflowPhase.CANCELLED:
            return state
        if state.is_terminal or state.mint_tx_hash or not state.phase.is_pre_submission:
            raise CancellationNotAllowed(f"{request_id} cannot be cancelled ({state.phase.value})")

        request = self.db.load_request(request_id)
        await self._transition(request, state, WorkflowPhase.CANCELLED, "Cancelled before mint submission")
        return state

    async def resume(self, request_id: str) -> StakeWorkflowState:
        """Continue a workflow after an interruption.

        Unconfirmed workflows are reconciled against the chain instead; nothing is
        ever resubmitted.
        """
        state = self.get_status(request_id)
        if state.phase == WorkflowPhase.UNCONFIRMED:
            return await self.reconcile(request_id)
        if state.is_terminal:
            return state
        return await self.run(request_id)

    async def reconcile(self, request_id: str) -> StakeWorkflowState:
        """Settle an Unconfirmed workflow from the chain's view of its mint transaction.

        A mined success is recorded, a revert becomes SUBMISSION_FAILED, and a
        transaction that is still unknown leaves the workflow Unconfirmed.
        """
        state = self.get_status(request_id)
        if state.phase != WorkflowPhase.UNCONFIRMED:
            return state

        request = self.db.load_request(request_id)
        state.record_attempt("reconcile")
        receipt = await asyncio.to_thread(self.gateway.get_receipt, state.mint_tx_hash)

        if receipt is None:
            self.db.save_state(state)
            self.logger.warning(f"{request_id}: {state.mint_tx_hash} still not mined")
            return state

        if not receipt.succeeded:
            await self._transition(
                request, state, WorkflowPhase.SUBMISSION_FAILED, f"Transaction {receipt.transaction_hash} reverted"
            )
            return state

        await self._transition(
            request,
            state,
            WorkflowPhase.CONFIRMED,
            details={"block_number": receipt.block_number, "reconciled": True},
        )
        return await self.run(request_id)

    async def recover(self) -> list[StakeWorkflowState]:
        """Resume every workflow interrupted by a previous process.

        A workflow that crashes is logged and left out of the result; it does
        not stop the others.
        """
        unfinished = self.db.load_unfinished_workflows()
        if unfinished:
            self.logger.info(f"Recovering {len(unfinished)} unfinished workflows")
        results = await asyncio.gather(
            *(self.run(request.request_id) for request, _state in unfinished),
            return_exceptions=True,
        )

        recovered = []
        for (request, _state), result in zip(unfinished, results):
            if isinstance(result, Exception):
                self.logger.error(
                    f"Recovery of {request.request_id} failed: {result!r}", exc_info=result
                )
            else:
                recovered.append(result)
        return recovered

    # ---------------------------
    # Queries
    # ---------------------------

    def get_status(self, request_id: str) -> StakeWorkflowState:
        """Current workflow state.

        Raises:
            WorkflowNotFound: If the request id is unknown
        """
        live = self._live.get(request_id)
        if live is not None:
            return live.model_copy(deep=True)
        state = self.db.load_state(request_id)
        if state is None:
            raise WorkflowNotFound(request_id)
        return state

    def is_in_flight(self, request_id: str) -> bool:
        return request_id in self._in_flight
