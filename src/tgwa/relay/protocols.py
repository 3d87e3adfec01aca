"""Collaborator interfaces the relay core depends on.

The relay never talks to Telegram, WhatsApp or a blob store directly; it only
sees these structural protocols. Concrete implementations live in
`tgwa.starters.telegram`, `tgwa.whatsapp` and `tgwa.session`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .lifecycle import LifecycleEvent

type SendAs = Literal["text", "image", "video", "document", "sticker", "voice"]
type EventSink = Callable[["LifecycleEvent"], None]


@dataclass(frozen=True, slots=True)
class ChatInfo:
    id: str
    name: str
    is_group: bool = False


@dataclass(frozen=True, slots=True)
class MediaContent:
    data: bytes
    mime_type: str
    filename: str | None = None


@dataclass(frozen=True, slots=True)
class SendOptions:
    send_as: SendAs = "text"
    caption: str | None = None


@runtime_checkable
class OutboundTransport(Protocol):
    """Outbound chat client (e.g. a WhatsApp session)."""

    async def run_session(self, emit: EventSink) -> None:
        """Start the session and watch it, reporting lifecycle events via `emit`.

        Runs for the life of one session. Returns after emitting
        `disconnected` or `auth_failure` once the session has ended; raises if
        the session could not be started at all. Cancellation stops watching.
        `emit` is synchronous and non-blocking.
        """

    async def close(self) -> None:
        """Stop the session. Must be idempotent."""

    async def list_chats(self) -> list[ChatInfo]:
        """Return chats/groups visible to the session."""

    async def send_message(
        self,
        chat_id: str,
        content: str | MediaContent,
        options: SendOptions,
    ) -> None:
        """Send one message; raise on failure."""


@runtime_checkable
class SessionStore(Protocol):
    """Remote blob store for the outbound transport's login session."""

    async def save(self, blob: bytes) -> None: ...

    async def load(self) -> bytes | None: ...


@runtime_checkable
class Notifier(Protocol):
    """Operator notification channel (e.g. a Telegram admin chat)."""

    async def notify(self, text: str) -> None: ...
