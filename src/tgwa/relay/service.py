"""Relay service: owns the queue, gate, dispatch loop and connection lifecycle.

Lifecycle: construct -> `run()` (inside a task group, or via `tg.start`) ->
`stop()`. Inbound transports hand jobs to `submit()`; operator tooling reads
`status()`.
"""

from __future__ import annotations

import math
import time
from collections.abc import Awaitable, Callable
from logging import getLogger

import anyio
from anyio.abc import ObjectReceiveStream, TaskStatus
from pydantic import BaseModel

from tgwa.config import Config, MatchMode

from .dispatch import DispatchLoop, DispatchOptions
from .gate import ConnectionState, ReadinessGate
from .jobs import RelayJob
from .lifecycle import (
    ConnectionLifecycle,
    LifecycleEvent,
    LifecycleOptions,
    SessionArchiver,
)
from .media import MediaFetcher, MediaResolver
from .protocols import Notifier, OutboundTransport
from .queue import DeliveryQueue, OverflowPolicy, QueueFullError

logger = getLogger(__name__)


class RelayStatus(BaseModel):
    """Read-only snapshot for operator tooling."""

    ready: bool
    destination_resolved: bool
    queue_size: int
    state: ConnectionState
    destination_name: str | None = None
    draining: bool = False
    sent_total: int = 0
    dropped_total: int = 0
    reconnect_attempts: int = 0
    uptime_seconds: float = 0.0


class RelayService:
    def __init__(
        self,
        *,
        transport: OutboundTransport,
        target_name: str,
        match: MatchMode = "exact",
        queue: DeliveryQueue | None = None,
        resolver: MediaResolver | None = None,
        archiver: SessionArchiver | None = None,
        notifier: Notifier | None = None,
        dispatch_options: DispatchOptions | None = None,
        lifecycle_options: LifecycleOptions | None = None,
        backup_interval_seconds: float = 0.0,
    ) -> None:
        if match not in ("exact", "substring"):
            raise ValueError(f"match must be 'exact' or 'substring'; got {match!r}")

        self.queue = queue if queue is not None else DeliveryQueue()
        self.lifecycle = ConnectionLifecycle(
            transport=transport,
            target_name=target_name,
            match=match,
            on_ready=self._kick,
            archiver=archiver,
            notifier=notifier,
            options=lifecycle_options,
        )
        self.gate = ReadinessGate(self.lifecycle)
        self.dispatch = DispatchLoop(
            queue=self.queue,
            gate=self.gate,
            sender=transport,
            resolver=resolver,
            options=dispatch_options,
        )
        self.backup_interval_seconds = backup_interval_seconds

        self._started_monotonic: float | None = None
        self._stop_requested = False
        self._stop_event: anyio.Event | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        transport: OutboundTransport,
        fetcher: MediaFetcher | None = None,
        archiver: SessionArchiver | None = None,
        notifier: Notifier | None = None,
    ) -> RelayService:
        resolver = (
            MediaResolver(
                fetcher=fetcher,
                max_bytes=config.media_max_bytes,
                timeout_seconds=config.media_fetch_timeout_seconds,
            )
            if fetcher is not None
            else None
        )
        return cls(
            transport=transport,
            target_name=config.whatsapp_target_name,
            match=config.whatsapp_match,
            queue=DeliveryQueue(
                max_size=config.max_queue_size,
                overflow=OverflowPolicy(config.overflow_policy),
            ),
            resolver=resolver,
            archiver=archiver,
            notifier=notifier,
            dispatch_options=DispatchOptions(
                concurrency=config.concurrent_messages,
                batch_delay_seconds=config.batch_delay_seconds,
                stagger_seconds=config.stagger_seconds,
                poll_interval_seconds=config.queue_poll_seconds,
                send_timeout_seconds=config.send_timeout_seconds,
                retry_backoff_seconds=config.retry_backoff_seconds,
                retry_backoff_max_seconds=config.retry_backoff_max_seconds,
                max_attempts=config.max_attempts,
            ),
            lifecycle_options=LifecycleOptions(
                reconnect_floor_seconds=config.reconnect_min_seconds,
                reconnect_base_seconds=config.reconnect_min_seconds,
                reconnect_max_seconds=config.reconnect_max_seconds,
                escalate_after=config.escalate_after,
                session_save_delay_seconds=config.session_save_delay_seconds,
            ),
            backup_interval_seconds=config.session_backup_interval_seconds,
        )

    def _kick(self) -> None:
        self.dispatch.kick()

    def submit(self, job: RelayJob) -> bool:
        """Queue `job` and request a drain.

        Returns `False` when the queue rejected the job or dropped it as the
        newest entry under its overflow policy.
        """

        try:
            dropped = self.queue.enqueue(job)
        except QueueFullError as e:
            logger.error("rejected %s job %s: %s", job.label, job.id, e)
            return False

        if not self.gate.is_open():
            logger.info(
                "outbound not ready; queued %s job %s (pending=%d)",
                job.label,
                job.id,
                self.queue.size(),
            )
        self._kick()
        return dropped is not job

    def clear_queue(self) -> int:
        dropped = self.queue.clear()
        logger.warning("delivery queue cleared by operator (%d job(s) dropped)", dropped)
        return dropped

    def status(self) -> RelayStatus:
        destination = self.lifecycle.destination
        uptime = (
            time.monotonic() - self._started_monotonic
            if self._started_monotonic is not None
            else 0.0
        )
        return RelayStatus(
            ready=self.gate.is_open(),
            destination_resolved=destination is not None,
            queue_size=self.queue.size(),
            state=self.lifecycle.state,
            destination_name=destination.name if destination is not None else None,
            draining=self.dispatch.is_draining,
            sent_total=self.dispatch.sent_total,
            dropped_total=self.dispatch.dropped_total,
            reconnect_attempts=self.lifecycle.reconnect_attempts,
            uptime_seconds=uptime,
        )

    def stop(self) -> None:
        """Request a graceful shutdown of `run()`."""

        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(
        self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        """Run until `stop()` is called.

        Shutdown stops new drain cycles, lets the in-flight batch finish (bounded
        by the send timeout), then closes the outbound transport.
        """

        self._stop_event = anyio.Event()
        if self._stop_requested:
            self._stop_event.set()
        self._started_monotonic = time.monotonic()

        send, receive = anyio.create_memory_object_stream[LifecycleEvent](
            max_buffer_size=math.inf
        )
        async with anyio.create_task_group() as tg:
            self.lifecycle.attach(tg, send.send_nowait)
            tg.start_soon(self.dispatch.run)
            tg.start_soon(self._consume_lifecycle_events, receive)
            if self.backup_interval_seconds > 0:
                tg.start_soon(self._backup_periodically)

            await self.lifecycle.start()
            task_status.started()

            try:
                await self._stop_event.wait()
            finally:
                with anyio.CancelScope(shield=True):
                    await self._shutdown()
                tg.cancel_scope.cancel()
        send.close()

    async def serve(self, inbound: Callable[[], Awaitable[object]]) -> None:
        """Run the relay alongside `inbound` (e.g. a polling loop).

        When `inbound` returns or raises, the relay shuts down via `stop()`.
        """

        async with anyio.create_task_group() as tg:
            await tg.start(self.run)
            try:
                await inbound()
            finally:
                self.stop()

    async def _shutdown(self) -> None:
        logger.info("relay stopping (pending=%d)", self.queue.size())
        self.dispatch.stop()
        with anyio.move_on_after(self.dispatch.options.send_timeout_seconds + 1):
            await self.dispatch.wait_stopped()
        await self.lifecycle.close()

    async def _consume_lifecycle_events(
        self, receive: ObjectReceiveStream[LifecycleEvent]
    ) -> None:
        async with receive:
            async for event in receive:
                try:
                    await self.lifecycle.handle(event)
                except Exception:
                    logger.exception("lifecycle event %s failed", event.kind)

    async def _backup_periodically(self) -> None:
        while True:
            await anyio.sleep(self.backup_interval_seconds)
            if self.gate.is_open():
                await self.lifecycle.backup_session()
