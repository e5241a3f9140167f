"""Event bus for stake workflow notifications."""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from stakestore.models.enums import WorkflowPhase
from stakestore.models.stake import StakeWorkflowState


@dataclass
class WorkflowEventData:
    """Event data container: a workflow reached ``phase``."""

    phase: WorkflowPhase
    request_id: str
    timestamp: datetime
    state: Optional[StakeWorkflowState]
    details: dict[str, Any] = field(default_factory=dict)


CallbackType = Callable[[WorkflowEventData], Awaitable[None]]


class EventBus:
    """Async event bus for workflow events.

    Features:
    - Non-blocking publish (events queued, not awaited)
    - Async worker processes events in background
    - Failed callbacks don't crash the system
    - Queue bounded to prevent memory issues
    """

    def __init__(self, max_queue_size: int = 1000, logger: Optional[logging.Logger] = None):
        """Initialize event bus.

        Args:
            max_queue_size: Maximum number of undelivered events
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)
        self._subscribers: dict[Optional[WorkflowPhase], list[CallbackType]] = {}
        self._event_queue: asyncio.Queue[WorkflowEventData] = asyncio.Queue(maxsize=max_queue_size)
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        """Start event processing worker."""
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(self._process_events())
        self.logger.info("EventBus started")

    async def stop(self, drain_timeout: float = 5.0):
        """Deliver queued events (bounded by ``drain_timeout``), then stop."""
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._event_queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Dropping {self._event_queue.qsize()} undelivered events")
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        self.logger.info("EventBus stopped")

    def subscribe(self, phase: Optional[WorkflowPhase], callback: CallbackType):
        """Subscribe to a phase, or to every event when ``phase`` is None.

        Args:
            phase: Phase to subscribe to
            callback: Async callback function
        """
        self._subscribers.setdefault(phase, []).append(callback)
        self.logger.debug(f"Subscribed to {phase.value if phase else 'all events'}")

    async def publish(self, event_data: WorkflowEventData):
        """Publish event (non-blocking).

        Args:
            event_data: Event data to publish
        """
        try:
            self._event_queue.put_nowait(event_data)
        except asyncio.QueueFull:
            self.logger.error(f"Event queue full, dropping {event_data.phase.value}")

    async def _process_events(self):
        """Worker that dispatches events to subscribers."""
        while self._running:
            try:
                event_data = await asyncio.wait_for(self._event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._dispatch_event(event_data)
            except Exception as e:
                self.logger.error(f"Event processing error: {e}")
            finally:
                self._event_queue.task_done()

    async def _dispatch_event(self, event_data: WorkflowEventData):
        """Dispatch event to all subscribers.

        Args:
            event_data: Event data to dispatch
        """
        subscribers = self._subscribers.get(event_data.phase, []) + self._subscribers.get(None, [])
        for callback in subscribers:
            try:
                await callback(event_data)
            except Exception as e:
                self.logger.error(f"Subscriber error for {event_data.phase.value}: {e}")
