"""Main staking system integration.

This module provides the StakingSystem class that wires the chain gateway,
routing client, workflow store and orchestrator together and exposes the
inbound API used by the HTTP layer and the command line.
"""

import asyncio
import logging
from typing import Any, Optional

from stakestore.api.chain_gateway import ChainGateway
from stakestore.api.pendle_client import PendleClient
from stakestore.config.settings import StakeStoreConfig, load_config
from stakestore.core.approval_manager import ApprovalManager
from stakestore.core.event_bus import EventBus
from stakestore.core.exceptions import InvalidRequest
from stakestore.core.holdings_tracker import HoldingsTracker
from stakestore.core.intent_listener import StakeIntentListener
from stakestore.core.market_catalog import MarketCatalog
from stakestore.core.mint_coordinator import MintCoordinator
from stakestore.core.persistence import WorkflowDatabase
from stakestore.core.persistence_subscriber import PersistenceSubscriber
from stakestore.core.redemption_builder import RedemptionBuilder
from stakestore.core.stake_daemon import StakeDaemon
from stakestore.core.stake_orchestrator import StakeOrchestrator
from stakestore.models.enums import TokenType
from stakestore.models.holding import Holding
from stakestore.models.stake import StakeRequest, StakeWorkflowState
from stakestore.models.transaction import RedemptionIntent, TransactionDescriptor


class StakingSystem:
    """Staking backend that integrates all components.

    The StakingSystem coordinates:
    - Chain gateway (node connection and signer)
    - Pendle client for markets, mint and redeem payloads
    - Market catalog
    - SQLite workflow store with an event audit trail
    - Stake orchestrator and the daemon feeding it
    - Optional listener for on-chain stake intents

    Example:
        async with StakingSystem() as system:
            state = await system.submit_stake_request(request)
            status = system.get_workflow_status(state.request_id)
    """

    def __init__(
        self,
        config: Optional[StakeStoreConfig] = None,
        config_path: Optional[str] = None,
        gateway: Optional[ChainGateway] = None,
        client: Optional[PendleClient] = None,
        listen_for_intents: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize staking system.

        Args:
            config: Optional StakeStoreConfig instance
            config_path: Optional path to config file (e.g., ".env")
            gateway: Optional chain gateway (built from config otherwise)
            client: Optional Pendle client (built from config otherwise)
            listen_for_intents: Poll the StakeStore contract for stake intents while running
            logger: Optional logger instance
        """
        self.config = config if config is not None else load_config(config_path)
        self.logger = logger or logging.getLogger(__name__)

        self.gateway = gateway or ChainGateway(self.config, logger=self.logger)
        self.client = client or PendleClient(self.config, logger=self.logger)
        self.catalog = MarketCatalog(self.client, logger=self.logger)
        self.db = WorkflowDatabase(self.config.db_path, self.logger)
        self.event_bus = EventBus(logger=self.logger)

        persistence_sub = PersistenceSubscriber(self.db, self.logger)
        self.event_bus.subscribe(None, persistence_sub.handle_event)

        self.orchestrator = StakeOrchestrator(
            gateway=self.gateway,
            catalog=self.catalog,
            approvals=ApprovalManager(self.gateway, self.logger),
            minter=MintCoordinator(self.client, self.logger),
            db=self.db,
            spender=self.config.router_address,
            event_bus=self.event_bus,
            logger=self.logger,
        )
        self.daemon = StakeDaemon(
            self.orchestrator,
            max_queue_size=self.config.max_queue_size,
            max_concurrent=self.config.max_concurrent_workflows,
            logger=self.logger,
        )
        self.holdings = HoldingsTracker(
            self.gateway,
            self.catalog,
            max_concurrency=self.config.holdings_concurrency,
            logger=self.logger,
        )
        self.redemptions = RedemptionBuilder(self.client, self.gateway, self.catalog, self.logger)

        self.listener: Optional[StakeIntentListener] = None
        if listen_for_intents:
            if not self.config.stake_store_address:
                raise ValueError("stake_store_address is required to listen for stake intents")
            self.listener = StakeIntentListener(
                self.gateway,
                self.daemon,
                self.config.stake_store_address,
                default_slippage=self.config.default_slippage,
                poll_interval=self.config.intent_poll_interval,
                logger=self.logger,
            )

        self._running = False

    async def load_markets(self) -> int:
        """Fill the catalog from the configured snapshot file, else from the routing service."""
        if self.config.markets_file:
            return await asyncio.to_thread(self.catalog.load_from_file, self.config.markets_file)
        return await asyncio.to_thread(self.catalog.refresh)

    async def start(self) -> None:
        """Start all components.

        Loads the market catalog, then starts the event bus, the daemon (which
        recovers interrupted workflows) and the intent listener if enabled.

        Raises:
            RuntimeError: If system is already running
        """
        if self._running:
            raise RuntimeError("Staking system is already running")

        self.logger.info("Starting staking system...")

        await self.load_markets()
        await self.event_bus.start()
        await self.daemon.start()
        if self.listener:
            await self.listener.start()

        self._running = True

        self.logger.info(
            f"Staking system started "
            f"(signer: {self.gateway.address}, markets: {len(self.catalog)}, "
            f"db: {self.config.db_path})"
        )

    async def stop(self) -> None:
        """Stop all components gracefully, in reverse order."""
        if not self._running:
            self.logger.warning("Staking system is not running")
            return

        self.logger.info("Stopping staking system...")
        self._running = False

        if self.listener:
            await self.listener.stop()
        await self.daemon.stop()
        await self.event_bus.stop()
        self.client.close()

        self.logger.info("Staking system stopped")

    def is_running(self) -> bool:
        return self._running

    # ---------------------------
    # Inbound API
    # ---------------------------

    async def submit_stake_request(self, request: StakeRequest) -> StakeWorkflowState:
        """Register a stake request and start its workflow.

        Returns:
            The request's state: INTAKE for a new request, the current state for a duplicate
        """
        return await self.daemon.submit_stake_request(request)

    def get_workflow_status(self, request_id: str) -> StakeWorkflowState:
        return self.orchestrator.get_status(request_id)

    async def get_holdings(self, user_address: str) -> list[Holding]:
        return await self.holdings.current_holdings(user_address)

    async def get_redemption_candidates(self, user_address: str) -> list[Holding]:
        return await self.holdings.redemption_candidates(user_address)

    async def build_redemption(
        self,
        user_address: str,
        market_address: str,
        token_type: TokenType = TokenType.PT,
    ) -> TransactionDescriptor:
        intent = RedemptionIntent(
            user_address=user_address, market_address=market_address, token_type=token_type
        )
        return await asyncio.to_thread(self.redemptions.build_redemption, intent)

    async def get_redemption_options(self, user_address: str) -> Any:
        """The routing service's raw position data for a user."""
        return await asyncio.to_thread(self.client.get_positions, user_address)

    def build_stake_transaction(
        self, user_address: str, token: str, amount: int, pool: str
    ) -> TransactionDescriptor:
        """Unsigned ``stakeTokens`` call for a user's wallet to sign.

        Raises:
            InvalidRequest: If no StakeStore contract is configured or the pool is unknown
        """
        if not self.config.stake_store_address:
            raise InvalidRequest("No StakeStore contract configured")
        if self.catalog.get(pool) is None:
            raise InvalidRequest(f"Unknown market {pool}")
        if amount <= 0:
            raise InvalidRequest(f"amount must be positive, got {amount}")
        return self.gateway.build_stake_tokens(
            self.config.stake_store_address, token, amount, pool, user_address
        )

    async def cancel(self, request_id: str) -> StakeWorkflowState:
        return await self.orchestrator.cancel(request_id)

    async def reconcile(self, request_id: str) -> StakeWorkflowState:
        return await self.orchestrator.reconcile(request_id)

    async def resume(self, request_id: str) -> StakeWorkflowState:
        return await self.orchestrator.resume(request_id)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
