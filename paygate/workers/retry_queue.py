"""
Bounded in-process retry queue.

One daemon thread owns the schedule: every tick it runs the jobs that are due
and, every ``sweep_interval`` seconds, the expiry sweep. Jobs are
``(transaction_id, attempt)`` pairs; the handler claims the attempt in the
database before calling the provider, so a job that is somehow scheduled twice
still reaches the provider once.
"""

import heapq
import itertools
import logging
import threading
import time

from paygate.errors import PaymentError
from paygate.observability import get_metrics

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 2, maximum: float = 300) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at ``maximum``."""
    return min(base * (2 ** max(attempt - 1, 0)), maximum)


class RetryQueue:
    def __init__(self, handler, sweeper=None, on_exhausted=None, max_attempts=5,
                 backoff_base=2, backoff_max=300, maxsize=1000, tick_seconds=1,
                 sweep_interval=60, clock=time.monotonic):
        self.handler = handler
        self.sweeper = sweeper
        self.on_exhausted = on_exhausted
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.maxsize = maxsize
        self.tick_seconds = tick_seconds
        self.sweep_interval = sweep_interval
        self.clock = clock

        self._heap = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread = None
        self._last_sweep = None

    def __len__(self):
        with self._lock:
            return len(self._heap)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def enqueue(self, transaction_id: str, attempt: int = 1, delay: float = None) -> bool:
        """Schedule ``attempt`` for ``transaction_id``. False when the queue is full."""
        if delay is None:
            delay = backoff_delay(attempt, self.backoff_base, self.backoff_max)

        with self._lock:
            if len(self._heap) >= self.maxsize:
                logger.error(
                    "Retry queue full",
                    extra={"transaction_id": transaction_id, "queue_size": len(self._heap)},
                )
                return False
            heapq.heappush(self._heap, (self.clock() + delay, next(self._sequence), transaction_id, attempt))

        logger.info(
            "Retry scheduled",
            extra={"transaction_id": transaction_id, "attempt": attempt, "delay_seconds": delay},
        )
        return True

    def _pop_due(self, now):
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, transaction_id, attempt = heapq.heappop(self._heap)
                due.append((transaction_id, attempt))
        return due

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_pending(self, now: float = None) -> int:
        """Run every job due at ``now``; returns how many ran."""
        now = self.clock() if now is None else now
        jobs = self._pop_due(now)
        for transaction_id, attempt in jobs:
            self._run_job(transaction_id, attempt)
        return len(jobs)

    def _run_job(self, transaction_id, attempt):
        metrics = get_metrics()
        try:
            self.handler(transaction_id, attempt)
        except PaymentError as e:
            if not e.retryable:
                metrics.record_retry("rejected")
                logger.warning(
                    f"Retry attempt {attempt} rejected: {e.message}",
                    extra={"transaction_id": transaction_id, "attempt": attempt},
                )
                return
            metrics.record_retry("unavailable")
            logger.warning(
                f"Retry attempt {attempt} failed: {e.message}",
                extra={"transaction_id": transaction_id, "attempt": attempt},
            )
            self._retry_or_give_up(transaction_id, attempt)
        except Exception:
            metrics.record_retry("error")
            logger.exception(
                "Unexpected error in retry handler",
                extra={"transaction_id": transaction_id, "attempt": attempt},
            )
            self._retry_or_give_up(transaction_id, attempt)
        else:
            metrics.record_retry("ok")

    def _retry_or_give_up(self, transaction_id, attempt):
        if attempt < self.max_attempts and self.enqueue(transaction_id, attempt + 1):
            return

        metrics = get_metrics()
        metrics.record_retry("exhausted")
        logger.error(
            "Retries exhausted",
            extra={"transaction_id": transaction_id, "attempts": attempt},
        )
        if self.on_exhausted is None:
            return
        try:
            self.on_exhausted(transaction_id, attempt)
        except Exception:
            logger.exception("Exhaustion handler failed", extra={"transaction_id": transaction_id})

    def sweep_if_due(self, now: float = None) -> bool:
        if self.sweeper is None:
            return False
        now = self.clock() if now is None else now
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return False

        self._last_sweep = now
        try:
            self.sweeper()
        except Exception:
            logger.exception("Expiry sweep failed")
        return True

    def tick(self, now: float = None):
        now = self.clock() if now is None else now
        self.run_pending(now)
        self.sweep_if_due(now)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self.running:
            return self
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="paygate-retry-queue", daemon=True)
        self._thread.start()
        logger.info("Retry queue started", extra={"tick_seconds": self.tick_seconds})
        return self

    def _loop(self):
        while not self._stopping.is_set():
            self.tick()
            self._stopping.wait(self.tick_seconds)

    def drain(self) -> int:
        """Run every queued job now, ignoring its backoff. Jobs that fail are rescheduled."""
        with self._lock:
            jobs = [(transaction_id, attempt) for _, _, transaction_id, attempt in sorted(self._heap)]
            self._heap.clear()
        for transaction_id, attempt in jobs:
            self._run_job(transaction_id, attempt)
        return len(jobs)

    def stop(self, timeout: float = 5):
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Retry queue stopped", extra={"queued": len(self)})
