"""Readiness gate: may jobs leave the queue right now?"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    QR_PENDING = "qr_pending"
    AUTHENTICATED = "authenticated"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class DestinationHandle:
    """Resolved target chat on the outbound transport."""

    chat_id: str
    name: str


class _GateSource(Protocol):
    @property
    def state(self) -> ConnectionState: ...

    @property
    def destination(self) -> DestinationHandle | None: ...


class ReadinessGate:
    """Pure view over the connection lifecycle.

    The gate is open only while the connection is `Ready` *and* a destination
    has been resolved. It holds no mutable state of its own.
    """

    __slots__ = ("_source",)

    def __init__(self, source: _GateSource) -> None:
        self._source = source

    def is_open(self) -> bool:
        return (
            self._source.state is ConnectionState.READY
            and self._source.destination is not None
        )

    @property
    def destination(self) -> DestinationHandle | None:
        """The destination to send to, or `None` while the gate is closed."""

        return self._source.destination if self.is_open() else None
