"""Event subscriber writing the workflow audit trail."""

import logging
from typing import Optional

from stakestore.core.event_bus import WorkflowEventData
from stakestore.core.persistence import WorkflowDatabase


class PersistenceSubscriber:
    """Subscribes to workflow events and records them in the audit table.

    Workflow state itself is written synchronously by the orchestrator; this
    subscriber only keeps the event history.
    """

    def __init__(self, db: WorkflowDatabase, logger: Optional[logging.Logger] = None):
        """Initialize persistence subscriber.

        Args:
            db: Workflow database instance
            logger: Optional logger instance
        """
        self.db = db
        self.logger = logger or logging.getLogger(__name__)

    async def handle_event(self, event_data: WorkflowEventData):
        """Handle workflow event by persisting it.

        Args:
            event_data: Event data to persist
        """
        details = dict(event_data.details)
        if event_data.state and event_data.state.last_error:
            details.setdefault("error", event_data.state.last_error)

        try:
            self.db.record_event(event_data.request_id, event_data.phase.value, details)
            self.logger.debug(f"Persisted {event_data.phase.value} for {event_data.request_id}")
        except Exception as e:
            self.logger.error(f"Failed to persist event: {e}")
