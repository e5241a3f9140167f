"""Logging setup for the staking backend.

Workflow log lines carry the request id and phase as record attributes, so
both the text and the JSON output can be filtered per stake request.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

WORKFLOW_FIELDS = ("request_id", "phase", "market_id", "event_type")

# Log every RPC call and HTTP request at INFO
NOISY_LOGGERS = ("web3", "urllib3", "httpx", "httpcore")


def _workflow_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in WORKFLOW_FIELDS
        if getattr(record, field, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line, workflow fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_workflow_context(record),
        }
        details = getattr(record, "extra_data", None)
        if details:
            entry["data"] = details
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class WorkflowTextFormatter(logging.Formatter):
    """Plain lines, prefixed with ``[request_id/phase]`` for workflow records."""

    def __init__(self):
        super().__init__(
            "%(asctime)s %(levelname)-7s %(name)s %(workflow)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        request_id = getattr(record, "request_id", None)
        phase = getattr(record, "phase", None)
        if request_id and phase:
            record.workflow = f"[{request_id}/{phase}] "
        elif request_id:
            record.workflow = f"[{request_id}] "
        else:
            record.workflow = ""
        return super().format(record)


def setup_logger(
    name: str = "stakestore",
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> logging.Logger:
    """Configure the package logger. Calling it again replaces earlier handlers.

    Chain and HTTP client libraries are held at WARNING or above.
    """
    formatter = JSONFormatter() if json_format else WorkflowTextFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logger = logging.getLogger(name)
    logger.setLevel(level.upper())
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logger.level, logging.WARNING))
    return logger


def log_workflow_event(
    logger: logging.Logger,
    event_type: str,
    request_id: str,
    message: str,
    *,
    phase: Optional[str] = None,
    market_id: Optional[str] = None,
    extra_data: Optional[dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """Log one stake workflow event; the keyword fields become record attributes."""
    logger.log(
        level,
        message,
        extra={
            "event_type": event_type,
            "request_id": request_id,
            "phase": phase,
            "market_id": market_id,
            "extra_data": dict(extra_data or {}),
        },
    )
