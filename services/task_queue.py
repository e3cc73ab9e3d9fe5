"""
Task Queue

Strictly sequential work queue for ingestion tasks.

enqueue() returns immediately; a single consumer thread takes one task at a
time and hands it to the processor. The next task does not start until the
current call returns or raises. A failing task is logged and recorded, and
the worker moves on; failed tasks are not re-enqueued.
"""

import queue
import threading
import time
from typing import Callable, Optional

import structlog

from models import IngestionTask
from observability import TaskMetrics, log_task_outcome

logger = structlog.get_logger()

# Sentinel telling the consumer to exit
_STOP = object()


class TaskQueue:
    """
    FIFO channel with exactly one consumer.
    """

    def __init__(
        self,
        processor: Callable[[IngestionTask], None],
        task_metrics: Optional[TaskMetrics] = None,
    ):
        """
        Args:
            processor: Called once per task on the worker thread
            task_metrics: Where task outcomes are recorded (global metrics if None)
        """
        self._processor = processor
        self._metrics = task_metrics
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def enqueue(self, task: IngestionTask) -> bool:
        """
        Add a task to the queue without waiting for it to be processed.

        Tasks with neither text nor media are dropped.

        Returns:
            True if the task was queued, False if it was dropped
        """
        if not task.has_content():
            logger.warning("task_skipped_empty", message_id=task.message_id, chat_id=task.chat_id)
            return False

        self._queue.put(task)
        logger.info("task_enqueued", message_id=task.message_id, queue_length=self.length())
        return True

    def length(self) -> int:
        """Number of tasks waiting (the one being processed is not counted)."""
        return self._queue.qsize()

    def start(self) -> None:
        """Spawn the consumer thread."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.warning("task_queue_already_running")
                return
            self._worker = threading.Thread(target=self._run, name="task-queue-worker", daemon=True)
            self._worker.start()
            logger.info("task_queue_started")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the worker to exit once the tasks queued before this call are done.

        Args:
            timeout: Seconds to wait for the worker (None waits forever)

        Returns:
            True if the worker has exited
        """
        with self._lifecycle_lock:
            worker = self._worker
            if worker is None:
                return True
            self._queue.put(_STOP)

        worker.join(timeout)
        stopped = not worker.is_alive()
        if stopped:
            self._worker = None
            logger.info("task_queue_stopped")
        else:
            logger.warning("task_queue_stop_timeout", remaining=self.length())
        return stopped

    def join(self) -> None:
        """Block until every enqueued task has been processed."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._process_one(item)
            finally:
                self._queue.task_done()

            if self._queue.empty():
                logger.info("queue_drained")

    def _process_one(self, task: IngestionTask) -> None:
        logger.info("task_processing", message_id=task.message_id, chat_id=task.chat_id)
        started = time.monotonic()
        try:
            self._processor(task)
        except Exception as e:
            logger.error(
                "task_processing_error",
                message_id=task.message_id,
                error=str(e),
                task=task.redacted(),
                exc_info=True,
            )
            log_task_outcome(
                task.message_id,
                task.chat_id,
                (time.monotonic() - started) * 1000,
                error=str(e),
                task_metrics=self._metrics,
            )
            return

        log_task_outcome(
            task.message_id,
            task.chat_id,
            (time.monotonic() - started) * 1000,
            task_metrics=self._metrics,
        )
