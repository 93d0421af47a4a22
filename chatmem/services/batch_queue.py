"""
Priority queue for deferred operations, drained on a background thread.
"""

import threading
from typing import Callable, List, Optional

from ..models.core import BatchOperation
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class BatchQueue:
    """Lock-protected priority queue drained in batches.

    Operations above the high-priority threshold are refused: callers run
    those immediately instead of deferring them.
    """

    def __init__(self, batch_size: int = 10, high_priority_threshold: int = 8):
        self.batch_size = batch_size
        self.high_priority_threshold = high_priority_threshold
        self._lock = threading.Lock()
        self._queue: List[BatchOperation] = []
        self._stop_event = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0

    def enqueue(self, operation: BatchOperation) -> bool:
        """Add an operation; returns False for high-priority operations."""
        if operation.priority > self.high_priority_threshold:
            return False
        with self._lock:
            self._queue.append(operation)
        logger.debug(f'Queued {operation.type} operation with priority {operation.priority}')
        return True

    def _take_batch(self) -> List[BatchOperation]:
        with self._lock:
            self._queue.sort(key=lambda op: (-op.priority, op.enqueued_at))
            batch = self._queue[:self.batch_size]
            del self._queue[:self.batch_size]
        return batch

    def drain(self, handler: Callable[[BatchOperation], None]) -> int:
        """Process up to batch_size operations in descending priority.

        Args:
            handler: Called once per operation; failures are logged and skipped

        Returns:
            Number of operations handled successfully
        """
        batch = self._take_batch()
        if not batch:
            return 0

        succeeded = 0
        for operation in batch:
            try:
                handler(operation)
                succeeded += 1
            except Exception as e:
                self.failed += 1
                logger.error(f'Batch {operation.type} operation failed: {e}')
        self.processed += succeeded
        logger.info(f'Drained {len(batch)} batched operations ({succeeded} succeeded, {len(self)} remaining)')
        return succeeded

    def start(self,
              interval_seconds: float,
              handler: Callable[[BatchOperation], None],
              on_tick: Optional[Callable[[], None]] = None) -> None:
        """Drain periodically on a daemon thread.

        Args:
            interval_seconds: Time between drains
            handler: Operation handler passed to drain
            on_tick: Extra housekeeping run after each drain
        """
        with self._start_lock:
            if self.running:
                return
            self._stop_event.clear()
            self._spawn(interval_seconds, handler, on_tick)

    def _spawn(self, interval_seconds, handler, on_tick) -> None:
        def run() -> None:
            while not self._stop_event.wait(interval_seconds):
                try:
                    self.drain(handler)
                    if on_tick is not None:
                        on_tick()
                except Exception as e:
                    logger.error(f'Batch drainer iteration failed: {e}')

        self._thread = threading.Thread(target=run, name='chatmem-batch-drainer', daemon=True)
        self._thread.start()
        logger.info(f'Started batch drainer (interval {interval_seconds}s)')

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info('Stopped batch drainer')

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
