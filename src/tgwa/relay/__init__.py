"""Message relay core.

Inbound posts become `RelayJob`s, wait in a `DeliveryQueue` while the outbound
transport is not ready, and are drained by the `DispatchLoop` once the
`ReadinessGate` opens. `ConnectionLifecycle` tracks the outbound connection and
resolves the destination chat; `RelayService` wires everything together.

Design notes / boundaries:
- Delivery is at-least-once under transient failure: failed sends are
  re-queued at the head of the queue. Ordering is FIFO for fresh jobs and
  relaxed under retry.
- The queue is memory resident. Pending jobs do not survive a restart.
- One source, one destination.
"""

from __future__ import annotations

from .dispatch import BatchOutcome, DispatchLoop, DispatchOptions, OutboundSender
from .gate import ConnectionState, DestinationHandle, ReadinessGate
from .jobs import (
    JobKind,
    MediaRef,
    RelayJob,
    ResolvedMedia,
    TextPayload,
    poll_job,
    render_media_placeholder,
    text_job,
)
from .lifecycle import (
    ConnectionLifecycle,
    DestinationNotFound,
    LifecycleEvent,
    LifecycleEventKind,
    LifecycleOptions,
    SessionArchiver,
    resolve_destination,
    transition,
)
from .media import (
    MediaDownloadFailed,
    MediaFetcher,
    MediaNotFound,
    MediaResolveError,
    MediaResolver,
    MediaTooLarge,
)
from .protocols import (
    ChatInfo,
    MediaContent,
    Notifier,
    OutboundTransport,
    SendOptions,
    SessionStore,
)
from .queue import DeliveryQueue, OverflowPolicy, QueueFullError
from .service import RelayService, RelayStatus

__all__ = [
    "BatchOutcome",
    "ChatInfo",
    "ConnectionLifecycle",
    "ConnectionState",
    "DeliveryQueue",
    "DestinationHandle",
    "DestinationNotFound",
    "DispatchLoop",
    "DispatchOptions",
    "JobKind",
    "LifecycleEvent",
    "LifecycleEventKind",
    "LifecycleOptions",
    "MediaContent",
    "MediaDownloadFailed",
    "MediaFetcher",
    "MediaNotFound",
    "MediaRef",
    "MediaResolveError",
    "MediaResolver",
    "MediaTooLarge",
    "Notifier",
    "OutboundSender",
    "OutboundTransport",
    "OverflowPolicy",
    "QueueFullError",
    "ReadinessGate",
    "RelayJob",
    "RelayService",
    "RelayStatus",
    "ResolvedMedia",
    "SendOptions",
    "SessionArchiver",
    "SessionStore",
    "TextPayload",
    "poll_job",
    "render_media_placeholder",
    "resolve_destination",
    "text_job",
    "transition",
]
