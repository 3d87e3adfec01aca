"""In-memory delivery queue.

Design notes / invariants:
- Fresh jobs are appended at the tail (FIFO). Failed jobs are re-inserted at
  the head so they retry before newer arrivals. Global ordering is therefore
  relaxed under retry, not strict FIFO.
- The queue is memory resident; pending jobs are lost on process exit.
- All operations are synchronous and guarded by one lock, so enqueue from any
  thread or task never interleaves with a batch dequeue.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from logging import getLogger

from .jobs import RelayJob

logger = getLogger(__name__)


class OverflowPolicy(StrEnum):
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"
    REJECT = "reject"


class QueueFullError(RuntimeError):
    """Raised by `enqueue` when the queue is full under `OverflowPolicy.REJECT`."""


@dataclass(slots=True)
class DeliveryQueue:
    """Ordered buffer of pending relay jobs.

    `max_size=None` keeps the queue unbounded.
    """

    max_size: int | None = None
    overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST

    _jobs: deque[RelayJob] = field(default_factory=deque, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_size is not None and self.max_size <= 0:
            raise ValueError(f"max_size must be > 0 or None; got {self.max_size}")

    def __len__(self) -> int:
        return self.size()

    def size(self) -> int:
        with self._lock:
            return len(self._jobs)

    def enqueue(self, job: RelayJob) -> RelayJob | None:
        """Append `job` at the tail.

        Returns:
            The job dropped to make room, or `None`. Under `DROP_NEWEST` the
            dropped job is `job` itself.

        Raises:
            QueueFullError: If the queue is full under `OverflowPolicy.REJECT`.
        """

        with self._lock:
            if self.max_size is None or len(self._jobs) < self.max_size:
                self._jobs.append(job)
                return None

            match self.overflow:
                case OverflowPolicy.REJECT:
                    raise QueueFullError(
                        f"Delivery queue is full ({len(self._jobs)}/{self.max_size})"
                    )
                case OverflowPolicy.DROP_NEWEST:
                    dropped = job
                case OverflowPolicy.DROP_OLDEST:
                    dropped = self._jobs.popleft()
                    self._jobs.append(job)

        logger.warning(
            "delivery queue full (max_size=%s); dropped job %s (%s)",
            self.max_size,
            dropped.id,
            dropped.label,
        )
        return dropped

    def dequeue_batch(self, n: int) -> list[RelayJob]:
        """Remove and return up to `n` jobs from the head, preserving order."""

        if n <= 0:
            return []
        with self._lock:
            count = min(n, len(self._jobs))
            return [self._jobs.popleft() for _ in range(count)]

    def requeue_front(self, job: RelayJob) -> RelayJob | None:
        """Re-insert `job` at the head.

        A requeued job is older than everything behind it, so when the queue is
        full the tail job is evicted instead, whatever the overflow policy.
        """

        return self.requeue_front_many([job])[0]

    def requeue_front_many(self, jobs: Iterable[RelayJob]) -> list[RelayJob | None]:
        """Re-insert `jobs` at the head keeping their relative order.

        Returns one entry per input job: the tail job evicted to make room for
        it, or `None`.
        """

        items = list(jobs)
        evicted: list[RelayJob | None] = [None] * len(items)
        with self._lock:
            for index in range(len(items) - 1, -1, -1):
                if self.max_size is not None and len(self._jobs) >= self.max_size:
                    evicted[index] = self._jobs.pop()
                self._jobs.appendleft(items[index])

        for dropped in evicted:
            if dropped is not None:
                logger.warning(
                    "delivery queue full (max_size=%s); evicted tail job %s (%s)",
                    self.max_size,
                    dropped.id,
                    dropped.label,
                )
        return evicted

    def clear(self) -> int:
        """Drop all pending jobs and return how many were dropped."""

        with self._lock:
            dropped = len(self._jobs)
            self._jobs.clear()
        return dropped

    def snapshot(self) -> list[RelayJob]:
        """Return a copy of the pending jobs in queue order."""

        with self._lock:
            return list(self._jobs)
