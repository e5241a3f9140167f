"""Stake daemon: the inbound channel feeding requests to the orchestrator."""

import asyncio
import logging
from typing import Optional

from stakestore.core.stake_orchestrator import StakeOrchestrator
from stakestore.models.enums import WorkflowPhase
from stakestore.models.stake import StakeRequest, StakeWorkflowState


class StakeDaemon:
    """Daemon that queues stake requests and runs their workflows concurrently.

    Requests are registered (validated and persisted) synchronously on submission,
    so callers get the request id and initial state back at once; the workflow then
    runs in the background.

    Features:
    - Asynchronous request queue
    - Bounded concurrent workflows
    - Recovery of interrupted workflows on start
    - Graceful shutdown
    """

    def __init__(
        self,
        orchestrator: StakeOrchestrator,
        max_queue_size: int = 100,
        max_concurrent: int = 5,
        recover_on_start: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize stake daemon.

        Args:
            orchestrator: Workflow orchestrator
            max_queue_size: Maximum queue size (default: 100)
            max_concurrent: Maximum concurrent workflows (default: 5)
            recover_on_start: Resume unfinished workflows when started
            logger: Optional logger instance
        """
        self.orchestrator = orchestrator
        self.recover_on_start = recover_on_start
        self.logger = logger or logging.getLogger(__name__)

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue_size)

        self._max_concurrent = max_concurrent
        self._task_semaphore = asyncio.Semaphore(max_concurrent)
        self._active_tasks: dict[str, asyncio.Task] = {}

        self._running = False
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            RuntimeError: If daemon is already running
        """
        if self._running:
            raise RuntimeError("Daemon is already running")

        self.logger.info("Starting stake daemon...")
        self._running = True

        if self.recover_on_start:
            unfinished = self.orchestrator.db.load_unfinished_workflows()
            if unfinished:
                self.logger.info(f"Re-queueing {len(unfinished)} unfinished workflows")
            for request, _state in unfinished:
                await self._queue.put(request.request_id)

        self._worker_task = asyncio.create_task(self._process_queue())

        self.logger.info(
            f"Stake daemon started (max concurrent: {self._max_concurrent}, "
            f"queue size: {self._queue.maxsize})"
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the daemon gracefully.

        Waits for active workflows to reach a stopping point. Workflows cut off
        by the timeout keep their persisted state and are recovered on next start.
        """
        if not self._running:
            self.logger.warning("Daemon is not running")
            return

        self.logger.info("Stopping stake daemon...")
        self._running = False

        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                self.logger.debug("Worker task cancelled")

        if self._active_tasks:
            self.logger.info(f"Waiting for {len(self._active_tasks)} active workflows...")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._active_tasks.values(), return_exceptions=True),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                self.logger.warning("Timeout waiting for active workflows, cancelling...")
                for task in self._active_tasks.values():
                    task.cancel()

        self.logger.info("Stake daemon stopped")

    async def submit_stake_request(self, request: StakeRequest) -> StakeWorkflowState:
        """Register a request and queue its workflow.

        Returns:
            Initial state (INTAKE), or the existing state for a known request id

        Raises:
            RuntimeError: If daemon is not running
            InvalidRequest: If the request is malformed
            asyncio.QueueFull: If queue is full
        """
        if not self._running:
            raise RuntimeError("Daemon is not running. Call start() first.")

        state = await self.orchestrator.submit(request)
        if state.phase != WorkflowPhase.INTAKE or self.orchestrator.is_in_flight(request.request_id):
            return state

        try:
            self._queue.put_nowait(request.request_id)
            self.logger.debug(f"Workflow queued (queue size: {self._queue.qsize()})")
        except asyncio.QueueFull:
            # Registered but not started: recovered on next start
            self.logger.error(f"Stake queue is full, {request.request_id} left in intake")
            raise
        return state

    async def _process_queue(self) -> None:
        """Start queued workflows as concurrency slots free up."""
        self.logger.info("Worker started, processing queue...")

        while self._running:
            try:
                try:
                    request_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                if request_id in self._active_tasks:
                    self._queue.task_done()
                    continue

                await self._task_semaphore.acquire()
                task = asyncio.create_task(self._run_with_tracking(request_id))
                self._active_tasks[request_id] = task
                self._queue.task_done()

            except asyncio.CancelledError:
                self.logger.info("Worker task cancelled")
                break
            except Exception as e:
                self.logger.error(f"Unexpected error in worker: {e}", exc_info=True)

        self.logger.info("Worker stopped")

    async def _run_with_tracking(self, request_id: str) -> None:
        try:
            state = await self.orchestrator.run(request_id)
            self.logger.info(f"Workflow {request_id} finished in {state.phase.value}")
        except Exception as e:
            self.logger.error(f"Workflow {request_id} crashed: {e}", exc_info=True)
        finally:
            self._task_semaphore.release()
            self._active_tasks.pop(request_id, None)

    def is_running(self) -> bool:
        return self._running

    def get_queue_size(self) -> int:
        return self._queue.qsize()

    def active_count(self) -> int:
        return len(self._active_tasks)

    async def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until the queue is empty and no workflow is running.

        Returns:
            True if idle, False if timed out
        """

        async def _idle():
            await self._queue.join()
            while self._active_tasks:
                await asyncio.gather(*list(self._active_tasks.values()), return_exceptions=True)

        try:
            await asyncio.wait_for(_idle(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
