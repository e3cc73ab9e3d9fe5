"""
Observability and logging utilities for the ingestion pipeline.

Provides structured logging setup and in-memory task outcome metrics.

Architecture:
- configure_logging() is called once by app.py at startup
- log_task_outcome() is called by the task queue worker for every task
- TaskMetrics tracks recent outcomes in a ring buffer (with size limits)
- /health exposes the summary for inspection
"""

import logging
from collections import deque
from dataclasses import asdict
from datetime import datetime
from typing import Optional, Dict, Any

import structlog

from models import TaskOutcome

logger = structlog.get_logger()

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(level: str = "info") -> None:
    """Configure structlog for console output at the given level."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.lower(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


class TaskMetrics:
    """
    Track task success/failure rates and durations.

    Uses a ring buffer (deque) to limit memory growth over long uptimes.
    When the buffer is full, oldest entries are discarded.
    """

    MAX_ENTRIES = 1000

    def __init__(self):
        self.outcomes = deque(maxlen=self.MAX_ENTRIES)

    def record(self, outcome: TaskOutcome):
        self.outcomes.append(outcome)

    def get_recent(self, limit: int = 10) -> list:
        recent = list(self.outcomes)[-limit:] if self.outcomes else []
        return [asdict(o) for o in recent]

    def summary(self) -> Dict[str, Any]:
        """Return a high-level summary of all tracked tasks"""
        total = len(self.outcomes)
        succeeded = sum(1 for o in self.outcomes if o.status == "success")
        durations = [o.duration_ms for o in self.outcomes]

        return {
            "total_tasks": total,
            "succeeded": succeeded,
            "failed": total - succeeded,
            "success_rate": round(succeeded / total, 3) if total > 0 else 0,
            "avg_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0,
        }

    def reset(self):
        self.outcomes.clear()


# Global metrics instance
metrics = TaskMetrics()


def log_task_outcome(
    message_id: int,
    chat_id: int,
    duration_ms: float,
    error: Optional[str] = None,
    task_metrics: Optional[TaskMetrics] = None,
) -> TaskOutcome:
    """
    Record and log the result of one processed task.

    The error message is logged in full; only the reply sent to the user is truncated.
    """
    outcome = TaskOutcome(
        message_id=message_id,
        chat_id=chat_id,
        status="success" if error is None else "failed",
        duration_ms=round(duration_ms, 2),
        error=error,
    )
    (task_metrics or metrics).record(outcome)

    entry = asdict(outcome)
    entry["timestamp"] = datetime.utcnow().isoformat() + "Z"
    if error is None:
        logger.info("task_succeeded", **entry)
    else:
        logger.error("task_failed", **entry)
    return outcome
