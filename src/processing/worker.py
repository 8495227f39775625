"""Thread pool that drains the action queue.

Each worker claims a batch, hands items one at a time to the processor, and
settles them. A shared ``threading.Event`` is the only shutdown signal: it
stops the claim loop, interrupts retry backoff inside a run, and causes any
items already claimed but not yet started to be released back to pending.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time

from action_queue import ActionQueue, QueueError, QueueItemSnapshot
from config import settings
from processing.processor import EventProcessor, ProcessOutcome

logger = logging.getLogger(__name__)


class WorkerPool:
    """Run ``size`` claim/process loops against a shared queue."""

    def __init__(
        self,
        processor: EventProcessor,
        queue: ActionQueue | None = None,
        *,
        size: int | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        stale_reset_interval: float = 60.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._processor = processor
        self._queue = queue or ActionQueue()
        self._size = size if size is not None else settings.queue.workers
        self._batch_size = batch_size if batch_size is not None else settings.queue.batch_size
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.queue.poll_interval_seconds
        )
        self._stale_reset_interval = stale_reset_interval
        self._stop_event = stop_event or threading.Event()
        self._threads: list[threading.Thread] = []
        self._prefix = f"{socket.gethostname()}:{os.getpid()}"

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def worker_id(self, index: int) -> str:
        return f"{self._prefix}:{index}"

    def start(self) -> None:
        """Start the worker threads."""
        if self.running:
            logger.warning("Worker pool is already running")
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run,
                args=(index,),
                name=f"relay-worker-{index}",
                daemon=True,
            )
            for index in range(self._size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Worker pool started with %d worker(s)", self._size)

    def stop(self, timeout: float = 10.0) -> None:
        """Signal shutdown and wait for in-flight items to settle."""
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0.0))
            if thread.is_alive():
                logger.warning("Worker thread %s did not stop within %.1fs", thread.name, timeout)
        logger.info("Worker pool stopped")

    def run_once(self, index: int = 0) -> int:
        """Claim and process one batch; return the number of items settled."""
        worker_id = self.worker_id(index)
        batch = self._queue.claim_batch(worker_id, self._batch_size)
        settled = 0
        for position, item in enumerate(batch):
            if self._stop_event.is_set():
                self._release(batch[position:], worker_id)
                break
            if not self._queue.renew_claim(item.id, worker_id):
                continue
            if self._handle(item, worker_id):
                settled += 1
        return settled

    def _run(self, index: int) -> None:
        logger.info("Worker %s started", self.worker_id(index))
        last_reset = 0.0
        while not self._stop_event.is_set():
            try:
                if index == 0 and time.monotonic() - last_reset >= self._stale_reset_interval:
                    self._queue.reset_stale_claims()
                    last_reset = time.monotonic()
                settled = self.run_once(index)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s loop error", self.worker_id(index))
                self._stop_event.wait(self._poll_interval)
                continue
            if not settled:
                self._stop_event.wait(self._poll_interval)
        logger.info("Worker %s stopped", self.worker_id(index))

    def _handle(self, item: QueueItemSnapshot, worker_id: str) -> bool:
        """Process one item and settle it on the queue."""
        try:
            outcome = self._processor.process(item, self._stop_event)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Queue item %s raised during processing", item.id)
            outcome = ProcessOutcome(completed=False, error=f"{type(exc).__name__}: {exc}")

        try:
            if outcome.completed:
                self._queue.mark_completed(item.id, worker_id)
            else:
                self._queue.mark_failed(item.id, outcome.error or "processing failed", worker_id)
        except QueueError as exc:
            logger.error("Could not settle queue item %s: %s", item.id, exc)
            return False
        return True

    def _release(self, items: list[QueueItemSnapshot], worker_id: str) -> None:
        for item in items:
            try:
                self._queue.release(item.id, worker_id)
            except QueueError as exc:
                logger.error("Could not release queue item %s: %s", item.id, exc)
