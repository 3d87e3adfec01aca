"""Connection lifecycle state machine for the outbound transport.

The transport reports `LifecycleEvent`s; `transition()` is the single source of
truth for which state each event leads to, and `ConnectionLifecycle.handle()`
applies it and runs the side effects of the new state:

- `qr`: remember the QR payload and notify the operator.
- `authenticated`: schedule a session backup (fire-and-forget).
- `ready`: list chats, resolve the destination by name and, when found, open
  the gate and kick the dispatch loop. When not found, the gate stays closed
  and a `DestinationNotFound` diagnostic is recorded for the operator.
- `disconnected` / `auth_failure`: clear the destination (closing the gate) and
  schedule a reconnect with exponential backoff and a non-zero floor.

Events are expected to be handled one at a time (the relay service feeds them
from a single stream consumer).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from logging import getLogger
from typing import Final, Literal

import anyio
import anyio.to_thread as to_thread
from anyio.abc import TaskGroup

from .gate import ConnectionState, DestinationHandle
from .protocols import ChatInfo, Notifier, OutboundTransport, SessionStore

logger = getLogger(__name__)

__all__ = [
    "ConnectionLifecycle",
    "ConnectionState",
    "DestinationHandle",
    "DestinationNotFound",
    "LifecycleEvent",
    "LifecycleEventKind",
    "LifecycleOptions",
    "SessionArchiver",
    "resolve_destination",
    "transition",
]


class LifecycleEventKind(StrEnum):
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    kind: LifecycleEventKind
    qr: str | None = None
    reason: str | None = None

    @classmethod
    def qr_needed(cls, qr: str) -> LifecycleEvent:
        return cls(LifecycleEventKind.QR, qr=qr)

    @classmethod
    def authenticated(cls) -> LifecycleEvent:
        return cls(LifecycleEventKind.AUTHENTICATED)

    @classmethod
    def ready(cls) -> LifecycleEvent:
        return cls(LifecycleEventKind.READY)

    @classmethod
    def disconnected(cls, reason: str | None = None) -> LifecycleEvent:
        return cls(LifecycleEventKind.DISCONNECTED, reason=reason)

    @classmethod
    def auth_failure(cls, reason: str | None = None) -> LifecycleEvent:
        return cls(LifecycleEventKind.AUTH_FAILURE, reason=reason)


_S = ConnectionState
_E = LifecycleEventKind

_TRANSITIONS: Final[dict[tuple[ConnectionState, LifecycleEventKind], ConnectionState]] = {
    (_S.DISCONNECTED, _E.QR): _S.QR_PENDING,
    (_S.DISCONNECTED, _E.AUTHENTICATED): _S.AUTHENTICATED,
    (_S.QR_PENDING, _E.QR): _S.QR_PENDING,
    (_S.QR_PENDING, _E.AUTHENTICATED): _S.AUTHENTICATED,
    (_S.AUTHENTICATED, _E.AUTHENTICATED): _S.AUTHENTICATED,
    (_S.AUTHENTICATED, _E.READY): _S.READY,
    (_S.READY, _E.READY): _S.READY,
}


def transition(
    state: ConnectionState, event: LifecycleEventKind
) -> ConnectionState | None:
    """Return the next state, or `None` if `event` is not valid in `state`.

    `disconnected` and `auth_failure` are valid from every state.
    """

    if event in (_E.DISCONNECTED, _E.AUTH_FAILURE):
        return _S.DISCONNECTED
    return _TRANSITIONS.get((state, event))


@dataclass(frozen=True, slots=True)
class DestinationNotFound:
    """Diagnostic for a `ready` transition whose target chat was not found."""

    target: str
    available: tuple[str, ...]

    def render(self) -> str:
        lines = [f"Target chat not found: {self.target!r}", "Available chats:"]
        lines.extend(f"- {name}" for name in self.available)
        if not self.available:
            lines.append("(none)")
        return "\n".join(lines)


def resolve_destination(
    chats: Sequence[ChatInfo],
    target: str,
    *,
    match: Literal["exact", "substring"] = "exact",
) -> ChatInfo | None:
    """Find `target` among `chats` by case-insensitive name.

    `exact` compares whole names; `substring` accepts the first chat whose name
    contains the target. Groups win over direct chats when both match.
    """

    needle = target.strip().casefold()
    if not needle:
        return None

    def _matches(chat: ChatInfo) -> bool:
        name = chat.name.casefold()
        return name == needle if match == "exact" else needle in name

    candidates = [chat for chat in chats if chat.name and _matches(chat)]
    for chat in candidates:
        if chat.is_group:
            return chat
    return candidates[0] if candidates else None


def _available_names(chats: Sequence[ChatInfo]) -> tuple[str, ...]:
    groups = [c.name for c in chats if c.name and c.is_group]
    others = [c.name for c in chats if c.name and not c.is_group]
    return tuple(groups + others)


class SessionArchiver:
    """Moves the transport's session directory to and from a `SessionStore`."""

    def __init__(
        self,
        *,
        store: SessionStore,
        pack: Callable[[], bytes | None],
        unpack: Callable[[bytes], None],
    ) -> None:
        self.store = store
        self._pack = pack
        self._unpack = unpack

    async def backup(self) -> bool:
        try:
            blob = await to_thread.run_sync(self._pack)
            if blob is None:
                logger.warning("session backup skipped: nothing to pack")
                return False
            await self.store.save(blob)
        except Exception as e:
            logger.warning(
                "session backup failed: %s: %s", type(e).__name__, e, exc_info=True
            )
            return False
        logger.info("session backup saved (%d bytes)", len(blob))
        return True

    async def restore(self) -> bool:
        try:
            blob = await self.store.load()
            if blob is None:
                logger.info("no stored session found")
                return False
            await to_thread.run_sync(self._unpack, blob)
        except Exception as e:
            logger.warning(
                "session restore failed: %s: %s", type(e).__name__, e, exc_info=True
            )
            return False
        logger.info("session restored (%d bytes)", len(blob))
        return True


@dataclass(frozen=True, slots=True)
class LifecycleOptions:
    """Reconnect and session timing knobs (all in seconds)."""

    reconnect_floor_seconds: float = 1.0
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0
    escalate_after: int = 5
    session_save_delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.reconnect_floor_seconds <= 0:
            raise ValueError(
                "reconnect_floor_seconds must be > 0; "
                f"got {self.reconnect_floor_seconds}"
            )
        if self.escalate_after <= 0:
            raise ValueError(f"escalate_after must be > 0; got {self.escalate_after}")

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt number `attempt` (1-based)."""

        delay = self.reconnect_base_seconds * 2 ** max(attempt - 1, 0)
        delay = min(delay, self.reconnect_max_seconds)
        return max(delay, self.reconnect_floor_seconds)


class ConnectionLifecycle:
    """Owns `ConnectionState` and the resolved `DestinationHandle`."""

    def __init__(
        self,
        *,
        transport: OutboundTransport,
        target_name: str,
        match: Literal["exact", "substring"] = "exact",
        on_ready: Callable[[], None] | None = None,
        archiver: SessionArchiver | None = None,
        notifier: Notifier | None = None,
        options: LifecycleOptions | None = None,
    ) -> None:
        self.transport = transport
        self.target_name = target_name
        self.match: Literal["exact", "substring"] = match
        self.on_ready = on_ready
        self.archiver = archiver
        self.notifier = notifier
        self.options = options or LifecycleOptions()

        self._state = ConnectionState.DISCONNECTED
        self._destination: DestinationHandle | None = None
        self._tg: TaskGroup | None = None
        self._emit: Callable[[LifecycleEvent], None] | None = None
        self._reconnect_pending = False
        self._closing = False
        self._resolve_pending = False
        self._resolve_attempts = 0
        self._session_scope: anyio.CancelScope | None = None

        self.reconnect_attempts = 0
        self.last_qr: str | None = None
        self.last_diagnostic: DestinationNotFound | None = None
        self.session_restored = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def destination(self) -> DestinationHandle | None:
        return self._destination

    def attach(self, tg: TaskGroup, emit: Callable[[LifecycleEvent], None]) -> None:
        """Bind the task group used for background work and the event sink
        handed to the transport on (re)connect."""

        self._tg = tg
        self._emit = emit

    async def start(self) -> None:
        """Restore the stored session (if any) and connect the transport."""

        if self.archiver is not None:
            self.session_restored = await self.archiver.restore()
        self._connect()

    async def close(self) -> None:
        self._closing = True
        self._clear_destination()
        self._state = ConnectionState.DISCONNECTED
        self._cancel_session()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning("transport close failed: %s: %s", type(e).__name__, e)

    async def reconnect(self) -> None:
        """Operator-requested reconnect: drop the session and connect again."""

        logger.info("reconnect requested")
        self._clear_destination()
        self._state = ConnectionState.DISCONNECTED
        self._cancel_session()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning("transport close failed: %s: %s", type(e).__name__, e)
        self._schedule_reconnect(self.options.reconnect_floor_seconds)

    async def backup_session(self) -> bool:
        if self.archiver is None:
            return False
        return await self.archiver.backup()

    async def handle(self, event: LifecycleEvent) -> ConnectionState:
        """Apply `event` and run the side effects of the resulting state."""

        previous = self._state
        next_state = transition(previous, event.kind)
        if next_state is None:
            logger.warning(
                "ignoring lifecycle event %s in state %s", event.kind, previous
            )
            return previous

        self._state = next_state
        logger.info("lifecycle %s --(%s)--> %s", previous, event.kind, next_state)

        match event.kind:
            case LifecycleEventKind.QR:
                self._on_qr(event)
            case LifecycleEventKind.AUTHENTICATED:
                self._on_authenticated()
            case LifecycleEventKind.READY:
                await self._on_ready()
            case LifecycleEventKind.DISCONNECTED | LifecycleEventKind.AUTH_FAILURE:
                self._on_disconnected(event)
        return self._state

    def _on_qr(self, event: LifecycleEvent) -> None:
        self._clear_destination()
        self.last_qr = event.qr
        self._notify(
            "📱 WhatsApp QR code needed. Scan it in WhatsApp > Linked Devices:\n\n"
            + (event.qr or "(empty)")
        )

    def _on_authenticated(self) -> None:
        self.last_qr = None
        self._notify("🔐 WhatsApp authenticated.")
        if self.archiver is not None and self._tg is not None:
            self._tg.start_soon(self._delayed_backup)

    async def _delayed_backup(self) -> None:
        await anyio.sleep(self.options.session_save_delay_seconds)
        await self.backup_session()

    async def _on_ready(self) -> None:
        self._clear_destination()
        self.reconnect_attempts = 0
        self._resolve_attempts = 0
        await self._resolve()

    async def _resolve(self) -> None:
        try:
            chats = await self.transport.list_chats()
        except Exception as e:
            logger.error(
                "listing chats failed: %s: %s", type(e).__name__, e, exc_info=True
            )
            if self._resolve_attempts == 0:
                self._notify(f"❌ Could not list WhatsApp chats: {e}")
            self._schedule_resolve_retry()
            return
        if self._state is not ConnectionState.READY:
            return

        found = resolve_destination(chats, self.target_name, match=self.match)
        if found is None:
            diagnostic = DestinationNotFound(
                target=self.target_name,
                available=_available_names(chats),
            )
            self.last_diagnostic = diagnostic
            logger.error(diagnostic.render())
            self._notify("❌ " + diagnostic.render())
            return

        self._destination = DestinationHandle(chat_id=found.id, name=found.name)
        self.last_diagnostic = None
        logger.info("destination resolved: %s (%s)", found.name, found.id)
        self._notify(
            "✅ Bridge ready.\n"
            f"Target: {found.name}\n"
            f"Session: {'restored' if self.session_restored else 'new'}"
        )
        if self.on_ready is not None:
            self.on_ready()

    def _on_disconnected(self, event: LifecycleEvent) -> None:
        self._clear_destination()
        reason = event.reason or "unknown"
        if self._closing:
            return
        logger.warning("outbound transport %s: %s", event.kind, reason)
        self._notify(f"⚠️ WhatsApp {event.kind}: {reason}")
        self._schedule_next_reconnect()

    def _clear_destination(self) -> None:
        self._destination = None

    def _schedule_resolve_retry(self) -> None:
        if self._tg is None or self._resolve_pending:
            return
        self._resolve_attempts += 1
        self._resolve_pending = True
        self._tg.start_soon(
            self._resolve_after, self.options.reconnect_delay(self._resolve_attempts)
        )

    async def _resolve_after(self, delay: float) -> None:
        logger.info("retrying chat listing in %.1fs", delay)
        await anyio.sleep(delay)
        self._resolve_pending = False
        if self._closing or self._state is not ConnectionState.READY:
            return
        if self._destination is None:
            await self._resolve()

    def _schedule_next_reconnect(self) -> None:
        if self._reconnect_pending:
            return
        self.reconnect_attempts += 1
        attempt = self.reconnect_attempts
        if attempt % self.options.escalate_after == 0:
            logger.error("outbound transport still down after %d reconnects", attempt)
            self._notify(
                f"🚨 WhatsApp still disconnected after {attempt} reconnect attempts."
            )
        self._schedule_reconnect(self.options.reconnect_delay(attempt))

    def _schedule_reconnect(self, delay: float) -> None:
        if self._tg is None:
            logger.warning("no task group attached; reconnect not scheduled")
            return
        if self._reconnect_pending:
            return
        self._reconnect_pending = True
        self._tg.start_soon(self._reconnect_after, delay)

    async def _reconnect_after(self, delay: float) -> None:
        logger.info("reconnecting in %.1fs", delay)
        await anyio.sleep(delay)
        self._reconnect_pending = False
        if self._closing:
            return
        self._connect()

    def _connect(self) -> None:
        if self._tg is None or self._emit is None:
            raise RuntimeError("ConnectionLifecycle is not attached")
        self._cancel_session()
        self._tg.start_soon(self._run_session, self._emit)

    def _cancel_session(self) -> None:
        if self._session_scope is not None:
            self._session_scope.cancel()
            self._session_scope = None

    async def _run_session(self, emit: Callable[[LifecycleEvent], None]) -> None:
        with anyio.CancelScope() as scope:
            self._session_scope = scope
            try:
                await self.transport.run_session(emit)
            except Exception as e:
                logger.error(
                    "transport session failed: %s: %s",
                    type(e).__name__,
                    e,
                    exc_info=True,
                )
                emit(LifecycleEvent.disconnected(f"{type(e).__name__}: {e}"))
            else:
                logger.info("transport session ended")
        if self._session_scope is scope:
            self._session_scope = None

    def _notify(self, text: str) -> None:
        if self.notifier is None or self._tg is None:
            return
        self._tg.start_soon(_notify_now, self.notifier, text)


async def _notify_now(notifier: Notifier, text: str) -> None:
    try:
        await notifier.notify(text)
    except Exception as e:
        logger.warning("operator notification failed: %s: %s", type(e).__name__, e)
