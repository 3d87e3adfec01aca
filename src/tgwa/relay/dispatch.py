"""Dispatch loop: drain the delivery queue while the readiness gate is open.

Concurrency model:
- At most one drain cycle runs at a time. `drain()` is guarded by an
  in-progress flag that is checked and set without an intervening `await`, so
  concurrent callers collapse into the active cycle.
- Within a cycle, the jobs of one batch are sent concurrently in a task group.
  Each job has its own timeout and its own failure boundary; one hung or
  failing send never affects its siblings.

Failure policy: failed jobs are re-queued at the head (as `RelayJob.retry()`
copies) until `max_attempts` is reached, then dropped with an error log line.
Send errors, send timeouts and media resolution errors all follow this path.
Jobs skipped because the gate closed mid-batch go back to the head unchanged.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from logging import getLogger
from typing import Final, Protocol

import anyio

from .gate import ReadinessGate
from .jobs import JobKind, MediaRef, RelayJob, ResolvedMedia, TextPayload
from .media import MediaDownloadFailed, MediaResolver
from .protocols import MediaContent, SendAs, SendOptions
from .queue import DeliveryQueue

logger = getLogger(__name__)

_SEND_AS_BY_KIND: Final[dict[JobKind, SendAs]] = {
    JobKind.PHOTO: "image",
    JobKind.VIDEO: "video",
    JobKind.DOCUMENT: "document",
    JobKind.STICKER: "sticker",
    JobKind.VOICE: "voice",
}


class OutboundSender(Protocol):
    async def send_message(
        self,
        chat_id: str,
        content: str | MediaContent,
        options: SendOptions,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class DispatchOptions:
    """Batching/timing knobs for `DispatchLoop` (times in seconds)."""

    concurrency: int = 5
    batch_delay_seconds: float = 0.1
    stagger_seconds: float = 0.01
    poll_interval_seconds: float = 1.0
    send_timeout_seconds: float = 30.0
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    max_attempts: int | None = 10

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be > 0; got {self.concurrency}")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise ValueError(
                f"max_attempts must be > 0 or None; got {self.max_attempts}"
            )


@dataclass(slots=True)
class BatchOutcome:
    sent: list[RelayJob] = field(default_factory=list)
    failed: list[RelayJob] = field(default_factory=list)
    requeued: list[RelayJob] = field(default_factory=list)
    dropped: list[RelayJob] = field(default_factory=list)
    deferred: list[RelayJob] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


class _Deferred:
    pass


_SENT: Final = True
_DEFERRED: Final = _Deferred()

type _JobResult = bool | _Deferred | BaseException | None


class DispatchLoop:
    """Drains a `DeliveryQueue` through an `OutboundSender`.

    `kick()` requests a drain without blocking; `run()` services kicks and
    also polls every `poll_interval_seconds` to recover from missed kicks.
    """

    def __init__(
        self,
        *,
        queue: DeliveryQueue,
        gate: ReadinessGate,
        sender: OutboundSender,
        resolver: MediaResolver | None = None,
        options: DispatchOptions | None = None,
    ) -> None:
        self.queue = queue
        self.gate = gate
        self.sender = sender
        self.resolver = resolver
        self.options = options or DispatchOptions()

        self._draining = False
        self._stopping = False
        self._kicked = False
        self._wake: anyio.Event | None = None
        self._finished: anyio.Event | None = None
        self._stop_signal: anyio.Event | None = None
        self._failed_batches = 0

        self.sent_total = 0
        self.dropped_total = 0

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def is_stopping(self) -> bool:
        return self._stopping

    def kick(self) -> None:
        """Request a drain cycle. Safe to call from sync code in the event loop."""

        self._kicked = True
        if self._wake is not None:
            self._wake.set()

    def stop(self) -> None:
        """Stop starting new batches; the in-flight batch is allowed to finish."""

        self._stopping = True
        if self._wake is not None:
            self._wake.set()
        if self._stop_signal is not None:
            self._stop_signal.set()

    async def wait_stopped(self) -> None:
        if self._finished is not None:
            await self._finished.wait()

    async def run(self) -> None:
        self._wake = anyio.Event()
        self._finished = anyio.Event()
        self._stop_signal = anyio.Event()
        if self._stopping:
            self._stop_signal.set()
        try:
            while not self._stopping:
                if not self._kicked:
                    with anyio.move_on_after(self.options.poll_interval_seconds):
                        await self._wake.wait()
                self._kicked = False
                self._wake = anyio.Event()
                if self._stopping:
                    break
                await self.drain()
        finally:
            self._finished.set()

    async def drain(self) -> int:
        """Run one drain cycle; return the number of batches dispatched.

        No-op when a cycle is already running, the gate is closed, or the
        queue is empty.
        """

        if self._draining or self._stopping:
            return 0
        if not self.gate.is_open() or self.queue.size() == 0:
            return 0

        self._draining = True
        batches = 0
        try:
            while not self._stopping:
                outcome = await self.dispatch_batch()
                if outcome is None:
                    break
                batches += 1
                if outcome.has_failures:
                    self._failed_batches += 1
                else:
                    self._failed_batches = 0

                if not self.gate.is_open() or self.queue.size() == 0:
                    break
                await self._pause(self._next_batch_delay())
        finally:
            self._draining = False

        if batches:
            logger.info(
                "drain cycle finished: batches=%d pending=%d",
                batches,
                self.queue.size(),
            )
        return batches

    async def _pause(self, delay: float) -> None:
        """Sleep between batches; `stop()` cuts the wait short."""

        if self._stop_signal is None:
            await anyio.sleep(delay)
            return
        with anyio.move_on_after(delay):
            await self._stop_signal.wait()

    def _next_batch_delay(self) -> float:
        if self._failed_batches == 0:
            return self.options.batch_delay_seconds
        backoff = self.options.retry_backoff_seconds * 2 ** (self._failed_batches - 1)
        return min(backoff, self.options.retry_backoff_max_seconds)

    async def dispatch_batch(self) -> BatchOutcome | None:
        """Pull one batch from the head and send it concurrently.

        Returns `None` when nothing was dequeued (gate closed or queue empty).
        """

        if not self.gate.is_open():
            return None
        batch = self.queue.dequeue_batch(self.options.concurrency)
        if not batch:
            return None

        results: list[_JobResult] = [None] * len(batch)
        async with anyio.create_task_group() as tg:
            for index, job in enumerate(batch):
                tg.start_soon(self._dispatch_one, index, job, results)

        outcome = BatchOutcome()
        to_requeue: list[RelayJob] = []
        now = datetime.datetime.now(datetime.UTC)
        for job, result in zip(batch, results, strict=True):
            if result is _SENT:
                outcome.sent.append(job)
                logger.info(
                    "sent %s job %s (latency=%.2fs)",
                    job.label,
                    job.id,
                    job.age_seconds(now),
                )
                continue
            if isinstance(result, _Deferred):
                outcome.deferred.append(job)
                to_requeue.append(job)
                continue

            outcome.failed.append(job)
            retry = job.retry()
            max_attempts = self.options.max_attempts
            if max_attempts is not None and retry.attempts >= max_attempts:
                outcome.dropped.append(job)
                logger.error(
                    "dropping %s job %s after %d failed attempts",
                    job.label,
                    job.id,
                    retry.attempts,
                )
                continue
            outcome.requeued.append(retry)
            to_requeue.append(retry)

        if to_requeue:
            evicted = self.queue.requeue_front_many(to_requeue)
            outcome.dropped.extend(job for job in evicted if job is not None)

        self.sent_total += len(outcome.sent)
        self.dropped_total += len(outcome.dropped)
        if outcome.deferred:
            logger.warning(
                "gate closed mid-batch; %d job(s) returned to the queue",
                len(outcome.deferred),
            )
        return outcome

    async def _dispatch_one(
        self,
        index: int,
        job: RelayJob,
        results: list[_JobResult],
    ) -> None:
        if index and self.options.stagger_seconds > 0:
            await anyio.sleep(index * self.options.stagger_seconds)

        destination = self.gate.destination
        if destination is None:
            results[index] = _DEFERRED
            return

        try:
            content, options = await self._prepare(job)
            with anyio.fail_after(self.options.send_timeout_seconds):
                await self.sender.send_message(destination.chat_id, content, options)
        except Exception as e:
            logger.warning(
                "send failed for %s job %s (attempt %d): %s: %s",
                job.label,
                job.id,
                job.attempts + 1,
                type(e).__name__,
                e,
            )
            results[index] = e
            return
        results[index] = _SENT

    async def _prepare(self, job: RelayJob) -> tuple[str | MediaContent, SendOptions]:
        payload = job.payload
        if isinstance(payload, MediaRef):
            if self.resolver is None:
                raise MediaDownloadFailed(
                    f"{payload.source_id}: no media resolver configured"
                )
            payload = await self.resolver.resolve(payload)

        if isinstance(payload, TextPayload):
            return payload.text, SendOptions()

        if not isinstance(payload, ResolvedMedia):
            raise TypeError(f"unsupported payload type: {type(payload).__name__}")
        send_as = _SEND_AS_BY_KIND.get(job.content_kind, "document")
        media = MediaContent(
            data=payload.data,
            mime_type=payload.mime_type,
            filename=payload.filename,
        )
        return media, SendOptions(send_as=send_as, caption=payload.caption)
