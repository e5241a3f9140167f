"""Poller turning on-chain StakeInitiated events into stake requests."""

import asyncio
import logging
from typing import Optional

from stakestore.api.chain_gateway import ChainGateway
from stakestore.core.exceptions import ExternalServiceError, InvalidRequest
from stakestore.core.stake_daemon import StakeDaemon
from stakestore.models.enums import RequestSource
from stakestore.models.stake import StakeRequest


class StakeIntentListener:
    """Polls the StakeStore contract for ``StakeInitiated`` logs.

    Each log becomes a StakeRequest whose id is ``"{txHash}:{logIndex}"``, so a
    log read twice (after a restart or an overlapping range) is a duplicate and
    never starts a second workflow.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        daemon: StakeDaemon,
        stake_store_address: str,
        default_slippage: float = 0.01,
        poll_interval: float = 15.0,
        start_block: Optional[int] = None,
        max_block_range: int = 2000,
        logger: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.daemon = daemon
        self.stake_store_address = stake_store_address
        self.default_slippage = default_slippage
        self.poll_interval = poll_interval
        self.max_block_range = max_block_range
        self.logger = logger or logging.getLogger(__name__)

        self._next_block = start_block
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def to_request(intent: dict, slippage: float) -> StakeRequest:
        return StakeRequest(
            request_id=f"{intent['transaction_hash']}:{intent['log_index']}",
            user_address=intent["user"],
            input_token_address=intent["token"],
            input_amount=intent["amount"],
            target_market=intent["pool"],
            slippage_tolerance=slippage,
            source=RequestSource.CHAIN_EVENT,
        )

    async def poll_once(self) -> int:
        """Read new logs and feed them to the daemon.

        Returns:
            Number of requests submitted
        """
        head = await asyncio.to_thread(self.gateway.block_number)
        if self._next_block is None:
            self._next_block = head
        if self._next_block > head:
            return 0

        from_block = self._next_block
        to_block = min(head, from_block + self.max_block_range - 1)
        intents = await asyncio.to_thread(
            self.gateway.fetch_stake_intents, self.stake_store_address, from_block, to_block
        )

        submitted = 0
        for intent in intents:
            request = self.to_request(intent, self.default_slippage)
            try:
                await self.daemon.submit_stake_request(request)
                submitted += 1
            except InvalidRequest as e:
                self.logger.warning(f"Ignoring stake intent {request.request_id}: {e}")

        self._next_block = to_block + 1
        if intents:
            self.logger.info(f"Blocks {from_block}-{to_block}: {len(intents)} stake intents")
        return submitted

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except ExternalServiceError as e:
                self.logger.warning(f"Intent poll failed: {e}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Unexpected error polling intents: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("Intent listener is already running")
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        self.logger.info(f"Listening for StakeInitiated on {self.stake_store_address}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.logger.info("Intent listener stopped")
